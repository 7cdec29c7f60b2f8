"""Clan applications, staff notes and ban reports"""

import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from clanhub.core.access import has_applicant_role, has_member_role, is_staff
from clanhub.core.audit import write_audit
from clanhub.core.ranks import RankLadder
from clanhub.core.resolver import has_tag_in_name
from clanhub.core.tenure import is_counting, utcnow
from clanhub.utils.constants import (
    APPLICATION_SETTINGS, APPLICATION_STATUS, BAN_REPORT_SETTINGS, RESOLUTION_STATUS,
    SYSTEM_MESSAGES
)
from clanhub.utils.errors import (
    BadRequest, Conflict, Forbidden, NotFound, ServiceUnavailable
)

logger = logging.getLogger('ClanHub')

def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of the target month"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)

class ApplicationService:
    def __init__(self, repos, discord, settings, ladder: Optional[RankLadder] = None):
        self.repos = repos
        self.discord = discord
        self.settings = settings
        self.ladder = ladder or RankLadder.from_role_ids(settings.rank_role_ids())

    async def _post_app_log(self, content: str, ping: bool) -> bool:
        channel_id = self.settings.app_log_channel_id
        if not channel_id:
            return False
        if ping and self.settings.discord_staff_ping_role_id:
            content = f"<@&{self.settings.discord_staff_ping_role_id}>\n{content}"
        return await self.discord.post_channel_message(channel_id, content)

    def _validate_answers(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        missing = [
            name for name in APPLICATION_SETTINGS['REQUIRED_FIELDS']
            if payload.get(name) in (None, '')
        ]
        if missing:
            raise BadRequest("All fields are required", code='MISSING_FIELDS', missing=missing)

        try:
            age = int(str(payload['age']).strip())
        except ValueError:
            age = 0
        if age <= 0:
            raise BadRequest("Age must be a valid number")

        answers: Dict[str, Any] = {
            name: str(payload[name]).strip()
            for name in APPLICATION_SETTINGS['REQUIRED_FIELDS']
        }
        answers['age'] = age
        for name in APPLICATION_SETTINGS['YES_NO_FIELDS']:
            answers[name] = str(payload[name]).strip().lower() == 'yes'
        return answers

    async def submit(self, user: Dict[str, Any], roles: List[str],
                     payload: Mapping[str, Any]) -> Dict[str, Any]:
        """File a new application for an applicant who is not yet a member"""
        discord_id = str(user['id'])
        if is_staff(roles, self.settings) or has_member_role(roles, self.settings):
            raise Forbidden("You already have clan access")
        if not has_applicant_role(roles, self.settings):
            raise Forbidden("You must verify in Discord before applying")

        override = payload.get('override') is True
        existing = await self.repos.applications.find_open(discord_id)
        if existing and not override:
            code = 'ALREADY_ACCEPTED' if existing['status'] == APPLICATION_STATUS['ACCEPTED'] else 'ALREADY_PENDING'
            raise Conflict(
                f"You already have a {existing['status']} application.",
                code=code,
                existing_id=existing['id'],
            )

        answers = self._validate_answers(payload)
        application = await self.repos.applications.insert({
            'discord_id': discord_id,
            'discord_name': user.get('username'),
            'status': APPLICATION_STATUS['PENDING'],
            'created_at': utcnow(),
            **answers,
        })

        if existing:
            await write_audit(self.repos.audit, 'application_reapply', discord_id,
                              target_id=str(application['id']), details={
                                  'previous_application_id': existing['id'],
                                  'previous_status': existing['status'],
                              })

        content = SYSTEM_MESSAGES['APPLICATION_SUBMITTED'].format(
            discord_id=discord_id,
            username=user.get('username'),
            uid=answers['uid'],
            review_url=f"{self.settings.public_base_url.rstrip('/')}/admin",
        )
        try:
            posted = await self._post_app_log(content, ping=True)
        except Exception as e:
            logger.error(f"Application log post failed: {e}")
            posted = False
        if not posted:
            await write_audit(self.repos.audit, 'application_log_message_failed', discord_id,
                              target_id=str(application['id']))

        await write_audit(self.repos.audit, 'application_submitted', discord_id,
                          target_id=str(application['id']),
                          details={'uid': answers['uid'], 'discord_name': user.get('username')})
        logger.info(f"Application {application['id']} submitted by {discord_id}")
        return {'ok': True, 'application': application}

    async def list_for_staff(self, status: Optional[str] = None,
                             show_archived: bool = False) -> Dict[str, Any]:
        if status and status not in APPLICATION_STATUS.values():
            raise BadRequest(f"Invalid status: {status}")

        applications = await self.repos.applications.list_applications(
            status=status, include_archived=show_archived
        )
        notes = await self.repos.notes.list_for([a['id'] for a in applications])
        return {
            'ok': True,
            'applications': [
                {**a, 'notes': notes.get(a['id'], [])} for a in applications
            ],
        }

    async def pending_count(self) -> Dict[str, Any]:
        count = await self.repos.applications.count(status=APPLICATION_STATUS['PENDING'])
        return {'ok': True, 'count': count}

    async def _upsert_clan_member(self, application: Dict[str, Any], actor_id: str,
                                  in_guild: bool, has_tag: bool, now: datetime) -> Dict[str, Any]:
        """Link an accepted applicant to the roster row carrying their UID, creating it if needed"""
        uid = (application.get('uid') or '').strip()
        if not uid:
            raise ValueError("Application has no UID")

        discord_name = application.get('discord_name') or application['discord_id']
        linked = {
            'discord_name': discord_name,
            'discord_id': application['discord_id'],
            'needs_resolution': False,
            'resolution_status': RESOLUTION_STATUS['MANUAL'],
            'resolved_at': now,
            'resolved_by': actor_id,
            'in_guild': in_guild,
            'updated_at': now,
        }

        existing = await self.repos.roster.get_by_uid(uid)
        if existing:
            updated = await self.repos.roster.update(existing['id'], {
                **linked,
                'left_guild_at': None,
                'archived_at': None,
                'archived_by': None,
                'archive_reason': None,
            })
            if updated is None:
                raise ValueError(f"Clan member {existing['id']} disappeared during update")
            return {'member': updated, 'created': False}

        counting = is_counting('active', has_tag)
        rank = self.ladder.bottom.name
        fields = self.ladder.promotion_fields(rank, 0, counting)
        created = await self.repos.roster.insert({
            **linked,
            'ign': discord_name,
            'uid': uid,
            'join_date': now.date(),
            'status': 'active',
            'has_420_tag': has_tag,
            'rank_current': rank,
            'rank_next': fields.rank_next,
            'frozen_days': 0,
            'counting_since': now if counting else None,
            'promote_eligible': fields.promote_eligible,
            'promote_reason': fields.promote_reason,
            'source': 'application',
            'created_at': now,
        })
        return {'member': created, 'created': True}

    async def _clan_member_outcome(self, application: Dict[str, Any], actor_id: str,
                                   in_guild: bool, has_tag: bool, now: datetime) -> Dict[str, Any]:
        try:
            upsert = await self._upsert_clan_member(application, actor_id, in_guild, has_tag, now)
        except Exception as e:
            logger.error(f"Clan member upsert for application {application['id']} failed: {e}")
            await write_audit(self.repos.audit, 'application_clan_member_upsert_failed', actor_id,
                              target_id=application['discord_id'],
                              details={'application_id': application['id'], 'error': str(e)})
            return {
                'clan_member_upsert_ok': False,
                'clan_member_error': f"Clan member upsert failed: {e}",
                'clan_member_id': None,
                'clan_member_created': False,
            }

        member = upsert['member']
        await write_audit(self.repos.audit, 'application_clan_member_upserted', actor_id,
                          target_id=application['discord_id'], details={
                              'application_id': application['id'],
                              'member_id': member['id'],
                              'created': upsert['created'],
                          })
        return {
            'clan_member_upsert_ok': True,
            'clan_member_error': None,
            'clan_member_id': member['id'],
            'clan_member_created': upsert['created'],
        }

    async def _post_review_log(self, application: Dict[str, Any], actor_id: str,
                               decision: str, icon: str, note: Optional[str]) -> None:
        content = SYSTEM_MESSAGES['APPLICATION_REVIEWED'].format(
            icon=icon,
            decision=decision,
            discord_id=application['discord_id'],
            username=application.get('discord_name'),
            actor_id=actor_id,
            note=note or '-',
        )
        try:
            posted = await self._post_app_log(content, ping=False)
        except Exception as e:
            logger.error(f"Review log post failed: {e}")
            posted = False
        if not posted:
            await write_audit(self.repos.audit, 'application_log_message_failed', actor_id,
                              target_id=str(application['id']))

    async def review(self, actor_id: str, application_id: int, action: Optional[str],
                     note: Optional[str] = None) -> Dict[str, Any]:
        """Accept or reject a pending application, or retry the roster entry of an accepted one.

        Accepting grants the member role, drops the applicant role and links the
        applicant to the clan list by UID. A failed roster step is reported in
        the result and can be re-run alone with retry_create_clan_member.
        """
        if action not in APPLICATION_SETTINGS['REVIEW_ACTIONS']:
            raise BadRequest("action must be accept, reject or retry_create_clan_member")
        text = (note or '').strip() or None
        limit = APPLICATION_SETTINGS['MAX_NOTE_LENGTH']
        if text and len(text) > limit:
            raise BadRequest(f"Note must be {limit} characters or less")

        application = await self.repos.applications.get(application_id)
        if not application:
            raise NotFound("Application not found")
        discord_id = application['discord_id']
        now = utcnow()

        if action == 'retry_create_clan_member':
            if application['status'] != APPLICATION_STATUS['ACCEPTED']:
                raise Conflict("Only accepted applications can be added to the clan list")
            member = await self.discord.fetch_member(discord_id)
            has_tag = member is not None and has_tag_in_name(member, self.settings.tag_marker)
            outcome = await self._clan_member_outcome(application, actor_id, member is not None,
                                                      has_tag, now)
            return {'ok': True, 'action': 'retried', **outcome}

        if application['status'] != APPLICATION_STATUS['PENDING']:
            raise Conflict(f"Application is already {application['status']}")
        if application.get('archived_at'):
            raise Conflict("Application is archived")

        decided = {
            'reviewer_note': text,
            'reviewed_at': now,
            'reviewed_by': actor_id,
        }

        if action == 'reject':
            updated = await self.repos.applications.update(application_id, {
                'status': APPLICATION_STATUS['REJECTED'], **decided,
            })
            await write_audit(self.repos.audit, 'application_rejected', actor_id,
                              target_id=discord_id,
                              details={'application_id': application_id, 'note': text})
            await self._post_review_log(application, actor_id, 'rejected', '❌', text)
            logger.info(f"Application {application_id} rejected by {actor_id}")
            return {'ok': True, 'action': 'rejected', 'application': updated}

        member = await self.discord.fetch_member(discord_id)
        if member is None:
            raise BadRequest("Applicant is no longer in the Discord server",
                             code='DISCORD_NOT_IN_GUILD')
        if not await self.discord.add_role(discord_id, self.settings.discord_member_role_id):
            raise ServiceUnavailable("Failed to grant member role", code='DISCORD_ROLE_FAILED')

        applicant_role_removed = True
        if self.settings.discord_applicant_role_id in member.roles:
            applicant_role_removed = await self.discord.remove_role(
                discord_id, self.settings.discord_applicant_role_id
            )
            if not applicant_role_removed:
                await write_audit(self.repos.audit, 'application_applicant_role_remove_failed',
                                  actor_id, target_id=discord_id,
                                  details={'application_id': application_id})

        updated = await self.repos.applications.update(application_id, {
            'status': APPLICATION_STATUS['ACCEPTED'], **decided,
        })
        await write_audit(self.repos.audit, 'application_accepted', actor_id,
                          target_id=discord_id,
                          details={'application_id': application_id, 'note': text})

        has_tag = has_tag_in_name(member, self.settings.tag_marker)
        outcome = await self._clan_member_outcome(updated, actor_id, True, has_tag, now)
        await self._post_review_log(application, actor_id, 'accepted', '✅', text)
        logger.info(f"Application {application_id} accepted by {actor_id}")

        return {
            'ok': True,
            'action': 'accepted',
            'application': updated,
            'applicant_role_removed': applicant_role_removed,
            **outcome,
        }

    async def archive(self, actor_id: str, application_id: int, action: str,
                      reason: Optional[str] = None) -> Dict[str, Any]:
        """Archive or restore one application"""
        if action not in ('archive', 'restore'):
            raise BadRequest("action must be archive or restore")

        application = await self.repos.applications.get(application_id)
        if not application:
            raise NotFound("Application not found")

        if action == 'archive':
            if application.get('archived_at'):
                raise Conflict("Already archived")
            await self.repos.applications.update(application_id, {
                'archived_at': utcnow(),
                'archived_by': actor_id,
                'archive_reason': reason or None,
            })
            await write_audit(self.repos.audit, 'application_archived', actor_id,
                              target_id=str(application_id),
                              details={'reason': reason, 'discord_name': application.get('discord_name')})
            return {'ok': True, 'action': 'archived'}

        if not application.get('archived_at'):
            raise Conflict("Not archived")
        await self.repos.applications.update(application_id, {
            'archived_at': None,
            'archived_by': None,
            'archive_reason': None,
        })
        await write_audit(self.repos.audit, 'application_restored', actor_id,
                          target_id=str(application_id),
                          details={'discord_name': application.get('discord_name')})
        return {'ok': True, 'action': 'restored'}

    async def archive_all(self, actor_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """Archive every decided (accepted or rejected) application"""
        reason = (reason or '').strip() or 'cleanup'
        count = await self.repos.applications.archive_decided(actor_id, reason, utcnow())

        await write_audit(self.repos.audit, 'applications_archive_all', actor_id,
                          details={'archived_count': count, 'reason': reason})
        if count:
            content = SYSTEM_MESSAGES['ARCHIVE_ALL'].format(
                count=count, plural='' if count == 1 else 's', actor_id=actor_id, reason=reason
            )
            try:
                await self._post_app_log(content, ping=False)
            except Exception as e:
                logger.error(f"Archive-all log post failed: {e}")
        return {'ok': True, 'archived_count': count}

    async def add_note(self, actor: Dict[str, Any], application_id: int,
                       note: Optional[str]) -> Dict[str, Any]:
        text = (note or '').strip()
        if not text:
            raise BadRequest("note is required")
        limit = APPLICATION_SETTINGS['MAX_NOTE_LENGTH']
        if len(text) > limit:
            raise BadRequest(f"Note must be {limit} characters or less")

        if not await self.repos.applications.get(application_id):
            raise NotFound("Application not found")

        actor_id = str(actor['id'])
        await self.repos.notes.add(application_id, text, actor_id, actor.get('username'))
        await write_audit(self.repos.audit, 'application_note_added', actor_id,
                          target_id=str(application_id),
                          details={'note_preview': text[:APPLICATION_SETTINGS['NOTE_PREVIEW_LENGTH']]})

        notes = await self.repos.notes.list_for([application_id])
        return {'ok': True, 'notes': notes.get(application_id, [])}

class BanReportService:
    """One self-reported ban per member per day, with an appeal date"""

    def __init__(self, repos, discord, settings):
        self.repos = repos
        self.discord = discord
        self.settings = settings

    async def submit(self, user: Dict[str, Any], payload: Mapping[str, Any],
                     now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        discord_id = str(user['id'])
        reasons = BAN_REPORT_SETTINGS['REASONS']

        reason = payload.get('reason')
        if reason not in reasons:
            raise BadRequest("Invalid or missing reason")
        custom_reason = (payload.get('custom_reason') or '').strip() or None
        if reason == 'other' and not custom_reason:
            raise BadRequest("Custom reason is required when selecting 'Other'")
        context = (payload.get('additional_context') or '').strip() or None

        since = now - timedelta(hours=BAN_REPORT_SETTINGS['DUPLICATE_WINDOW_HOURS'])
        if await self.repos.ban_reports.find_recent(discord_id, since):
            raise Conflict(
                "You already submitted a ban report within the last 24 hours.",
                code='DUPLICATE_BAN_REPORT',
                existing_report=True,
            )

        appeal_at = add_months(now, BAN_REPORT_SETTINGS['APPEAL_DELAY_MONTHS'])
        report = await self.repos.ban_reports.insert({
            'discord_id': discord_id,
            'discord_name': user.get('username'),
            'reason': reason,
            'custom_reason': custom_reason,
            'additional_context': context,
            'submitted_at': now,
            'appeal_available_at': appeal_at,
        })

        await write_audit(self.repos.audit, 'ban_report_submitted', discord_id,
                          target_id=str(report['id']), details={
                              'reason': reason,
                              'custom_reason': custom_reason,
                              'appeal_available_at': appeal_at.isoformat(),
                          })

        content = SYSTEM_MESSAGES['BAN_REPORT'].format(
            discord_id=discord_id, username=user.get('username'), reason=reasons[reason]
        )
        if reason == 'other':
            content += f"\n**Custom Reason:** {custom_reason}"
        if context:
            content += f"\n**Context:** {context[:BAN_REPORT_SETTINGS['CONTEXT_PREVIEW_LENGTH']]}"
        content += f"\n**Appeal Available After:** {appeal_at.strftime('%B %d, %Y')}"
        if self.settings.discord_owner_role_id:
            content = f"<@&{self.settings.discord_owner_role_id}>\n{content}"

        posted = False
        if self.settings.ban_report_channel_id:
            try:
                posted = await self.discord.post_channel_message(
                    self.settings.ban_report_channel_id, content
                )
            except Exception as e:
                logger.error(f"Ban report log post failed: {e}")
        if not posted:
            await write_audit(self.repos.audit, 'ban_report_discord_log_failed', discord_id,
                              target_id=str(report['id']))

        return {'ok': True, 'appeal_available_at': appeal_at.isoformat()}
