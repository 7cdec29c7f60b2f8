"""Clan roster administration: member records, Discord resolution, sync and import"""

import logging
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from clanhub.core.audit import write_audit
from clanhub.core.importer import (
    RowError, build_header_mapping, build_import_record, normalize_row, parse_date
)
from clanhub.core.ranks import RankLadder
from clanhub.core.resolver import (
    Candidate, UidDirectory, has_tag_in_name, is_snowflake, match_name,
    resolve_roster_row, search_candidates
)
from clanhub.core.tenure import (
    TenureState, apply_status_change, compute_time_days, is_counting, utcnow
)
from clanhub.utils.constants import (
    MEMBER_STATUSES, RESOLUTION_STATUS, ROSTER_SETTINGS, SYSTEM_MESSAGES
)
from clanhub.utils.errors import BadRequest, Conflict, NotFound, ServiceUnavailable

logger = logging.getLogger('ClanHub')

def _start_of_day(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)

def _text(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    return str(value).strip() if value is not None else ''

class RosterService:
    """Staff operations on the clan list"""

    def __init__(self, repos, discord, ladder: RankLadder, settings, tokens):
        self.repos = repos
        self.discord = discord
        self.ladder = ladder
        self.settings = settings
        self.tokens = tokens

    def decorate(self, member: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Attach live time-in-clan and countdown values"""
        now = now or utcnow()
        days = compute_time_days(member.get('frozen_days'), member.get('counting_since'), now)
        counting = is_counting(member.get('status'), member.get('has_420_tag'))
        fields = self.ladder.promotion_fields(member.get('rank_current'), days, counting)
        return {
            **member,
            'time_in_clan_days': days,
            'days_until_next_rank': fields.days_until_next_rank,
        }

    def _candidate_payload(self, candidate: Candidate) -> Dict[str, Any]:
        """UI-facing candidate; the Discord ID only travels inside the resolve token"""
        return {
            'label': candidate.display_name,
            'sublabel': candidate.sublabel,
            'score': candidate.score,
            'resolve_token': self.tokens.issue_resolve(candidate.discord_id),
        }

    async def _guild_members(self):
        members = await self.discord.fetch_all_guild_members()
        if not members:
            raise ServiceUnavailable(
                "Guild member list unavailable",
                code='GUILD_MEMBER_LIST_UNAVAILABLE',
            )
        return members

    async def _discord_id_from_token(self, token: str) -> str:
        discord_id = self.tokens.read_resolve(token)
        if not discord_id:
            raise BadRequest("Invalid or expired resolve token", code='INVALID_RESOLVE_TOKEN')
        if await self.discord.fetch_member(discord_id) is None:
            raise BadRequest("Discord user is not in the guild", code='DISCORD_NOT_IN_GUILD')
        return discord_id

    def _manual_resolution(self, discord_id: str, actor_id: str, now: datetime) -> Dict[str, Any]:
        return {
            'discord_id': discord_id,
            'needs_resolution': False,
            'resolution_status': RESOLUTION_STATUS['MANUAL'],
            'resolved_at': now,
            'resolved_by': actor_id,
            'in_guild': True,
        }

    async def list_members(self, page: int = 1, search: Optional[str] = None,
                           status: Optional[str] = None, archived: bool = False,
                           eligible_only: bool = False) -> Dict[str, Any]:
        page = max(1, page)
        page_size = ROSTER_SETTINGS['PAGE_SIZE']
        if status and status not in MEMBER_STATUSES:
            raise BadRequest(f"Invalid status: {status}")

        rows, total = await self.repos.roster.list_page(
            search=(search or '').strip() or None,
            status=status,
            archived=archived,
            eligible_only=eligible_only,
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        now = utcnow()
        return {
            'ok': True,
            'members': [self.decorate(r, now) for r in rows],
            'total': total,
            'page': page,
            'page_size': page_size,
        }

    async def save_member(self, actor_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Create a member, or update one when ``id`` is present"""
        if payload.get('id'):
            return await self._update_member(actor_id, int(payload['id']), payload)
        return await self._create_member(actor_id, payload)

    async def _check_uid_free(self, uid: str, member_id: Optional[int] = None) -> None:
        existing = await self.repos.roster.get_by_uid(uid)
        if existing and existing['id'] != member_id:
            raise Conflict(f"UID {uid} already exists on the clan list", code='DUPLICATE_UID')

    async def _create_member(self, actor_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        discord_name = _text(payload, 'discord_name')
        ign = _text(payload, 'ign')
        uid = _text(payload, 'uid')
        join_date = parse_date(payload.get('join_date'))

        missing = [label for label, value in (
            ('discord_name', discord_name), ('ign', ign), ('uid', uid), ('join_date', join_date)
        ) if not value]
        if missing:
            raise BadRequest(f"Missing required fields: {', '.join(missing)}")

        status = payload.get('status') or 'active'
        if status not in MEMBER_STATUSES:
            raise BadRequest(f"Invalid status: {status}")
        rank_name = self.ladder.normalize(payload.get('rank_current'))

        await self._check_uid_free(uid)

        has_tag = bool(payload.get('has_420_tag'))
        token = payload.get('resolve_token')
        if token:
            resolution = self._manual_resolution(
                await self._discord_id_from_token(token), actor_id, now
            )
        else:
            members = await self.discord.fetch_all_guild_members()
            match = match_name(discord_name, members, ROSTER_SETTINGS['AMBIGUOUS_CANDIDATE_LIMIT'])
            if match.ambiguous:
                raise Conflict(
                    "Multiple Discord members match this name",
                    code='DISCORD_AMBIGUOUS',
                    candidates=[self._candidate_payload(c) for c in match.candidates],
                )
            if match.discord_id:
                resolution = {
                    'discord_id': match.discord_id,
                    'needs_resolution': False,
                    'resolution_status': RESOLUTION_STATUS['AUTO'],
                    'resolved_at': now,
                    'resolved_by': actor_id,
                    'in_guild': True,
                }
                member = next((m for m in members if m.id == match.discord_id), None)
                if member is not None and has_tag_in_name(member, self.settings.tag_marker):
                    has_tag = True
            elif payload.get('allow_unresolved'):
                resolution = {
                    'discord_id': None,
                    'needs_resolution': True,
                    'resolution_status': RESOLUTION_STATUS['UNRESOLVED'],
                }
            else:
                raise NotFound("No Discord member matches this name", code='DISCORD_NOT_FOUND')

        counting = is_counting(status, has_tag)
        counting_since = _start_of_day(join_date) if counting else None
        days = compute_time_days(0, counting_since, now)
        fields = self.ladder.promotion_fields(rank_name, days, counting)

        created = await self.repos.roster.insert({
            'discord_name': discord_name,
            'ign': ign,
            'uid': uid,
            'join_date': join_date,
            'status': status,
            'has_420_tag': has_tag,
            'rank_current': rank_name,
            'rank_next': fields.rank_next,
            'frozen_days': 0,
            'counting_since': counting_since,
            'promote_eligible': fields.promote_eligible,
            'promote_reason': fields.promote_reason,
            'source': 'manual',
            'created_at': now,
            'updated_at': now,
            **resolution,
        })

        await write_audit(self.repos.audit, 'clan_member_created', actor_id,
                          target_id=created.get('discord_id'),
                          details={'member_id': created['id'], 'uid': uid})
        return {'ok': True, 'created': True, 'member': self.decorate(created, now)}

    async def _update_member(self, actor_id: str, member_id: int,
                             payload: Mapping[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        member = await self.repos.roster.get(member_id)
        if not member:
            raise NotFound("Member not found")

        fields: Dict[str, Any] = {}
        for key in ('discord_name', 'ign', 'uid'):
            if key in payload:
                value = _text(payload, key)
                if not value:
                    raise BadRequest(f"{key} cannot be empty")
                fields[key] = value

        if 'uid' in fields and fields['uid'] != member.get('uid'):
            await self._check_uid_free(fields['uid'], member_id)

        if 'join_date' in payload:
            join_date = parse_date(payload.get('join_date'))
            if join_date is None:
                raise BadRequest("Invalid join date")
            fields['join_date'] = join_date

        if 'status' in payload:
            if payload['status'] not in MEMBER_STATUSES:
                raise BadRequest(f"Invalid status: {payload['status']}")
            fields['status'] = payload['status']

        if 'has_420_tag' in payload:
            fields['has_420_tag'] = bool(payload['has_420_tag'])

        if 'rank_current' in payload:
            fields['rank_current'] = self.ladder.normalize(payload.get('rank_current'))

        if 'resolve_token' in payload:
            token = payload.get('resolve_token')
            if token:
                fields.update(self._manual_resolution(
                    await self._discord_id_from_token(token), actor_id, now
                ))
            else:
                fields.update({
                    'discord_id': None,
                    'needs_resolution': True,
                    'resolution_status': RESOLUTION_STATUS['UNRESOLVED'],
                    'resolved_at': None,
                    'resolved_by': None,
                })

        was_counting = is_counting(member.get('status'), member.get('has_420_tag'))
        now_counting = is_counting(
            fields.get('status', member.get('status')),
            fields.get('has_420_tag', member.get('has_420_tag')),
        )
        state = apply_status_change(
            TenureState(member.get('frozen_days') or 0, member.get('counting_since')),
            was_counting, now_counting, now,
        )
        promo = self.ladder.promotion_fields(
            fields.get('rank_current', member.get('rank_current')), state.days(now), now_counting
        )
        fields.update({
            'frozen_days': state.frozen_days,
            'counting_since': state.counting_since,
            'rank_next': promo.rank_next,
            'promote_eligible': promo.promote_eligible,
            'promote_reason': promo.promote_reason,
            'updated_at': now,
        })

        updated = await self.repos.roster.update(member_id, fields)
        await write_audit(self.repos.audit, 'clan_member_updated', actor_id,
                          target_id=updated.get('discord_id'),
                          details={'member_id': member_id, 'fields': sorted(payload.keys())})
        return {'ok': True, 'created': False, 'member': self.decorate(updated, now)}

    async def delete_member(self, actor_id: str, member_id: int) -> Dict[str, Any]:
        member = await self.repos.roster.get(member_id)
        if not member:
            raise NotFound("Member not found")

        await self.repos.roster.delete(member_id)
        await write_audit(self.repos.audit, 'clan_member_deleted', actor_id,
                          target_id=member.get('discord_id'), details={
                              'member_id': member_id,
                              'uid': member.get('uid'),
                              'discord_name': member.get('discord_name'),
                          })
        return {'ok': True, 'deleted': member_id}

    async def resolve_member(self, actor_id: str, member_id: int,
                             resolve_token: Optional[str]) -> Dict[str, Any]:
        """Attach a Discord account picked by staff"""
        if not resolve_token:
            raise BadRequest("resolve_token is required")
        member = await self.repos.roster.get(member_id)
        if not member:
            raise NotFound("Member not found")

        now = utcnow()
        discord_id = await self._discord_id_from_token(resolve_token)
        updated = await self.repos.roster.update(member_id, {
            **self._manual_resolution(discord_id, actor_id, now),
            'updated_at': now,
        })
        await write_audit(self.repos.audit, 'clan_member_resolved_manual', actor_id,
                          target_id=discord_id, details={'member_id': member_id})
        return {'ok': True, 'member': self.decorate(updated, now)}

    async def search_guild(self, actor_id: str, query: Optional[str]) -> Dict[str, Any]:
        """Find guild members for manual resolution; raw IDs never leave the server"""
        q = (query or '').strip()
        if not q:
            raise BadRequest("Query is required")

        if is_snowflake(q):
            member = await self.discord.fetch_member(q)
            candidates = [Candidate.from_member(member, 3)] if member else []
        else:
            members = await self._guild_members()
            candidates = search_candidates(members, q, ROSTER_SETTINGS['SEARCH_LIMIT'])

        await write_audit(self.repos.audit, 'guild_member_search', actor_id,
                          details={'query': q, 'count': len(candidates)})
        return {'ok': True, 'candidates': [self._candidate_payload(c) for c in candidates]}

    async def bulk_resolve(self, actor_id: str) -> Dict[str, Any]:
        """Resolve every unresolved member: UID map from applications, then names"""
        now = utcnow()
        guild = await self._guild_members()
        directory = UidDirectory.from_applications(await self.repos.applications.list_uid_mappings())
        members = await self.repos.roster.list_unresolved()

        counts = {'resolved': 0, 'ambiguous': 0, 'not_found': 0, 'skipped': 0, 'errors': 0}
        debug = {
            'uid_map_size': len(directory),
            'guild_member_count': len(guild),
            'uid_matched': 0, 'uid_ambiguous': 0, 'uid_no_match': 0, 'uid_missing': 0,
        }
        rows: List[Dict[str, Any]] = []

        for member in members:
            row = {'member_id': member['id'], 'discord_name': member.get('discord_name'),
                   'uid': member.get('uid')}
            if member.get('discord_id') and not member.get('needs_resolution'):
                counts['skipped'] += 1
                rows.append({**row, 'outcome': 'skipped', 'detail': 'already_has_id'})
                continue

            try:
                result = resolve_roster_row(
                    member.get('discord_name') or '', member.get('uid'),
                    directory, guild, ROSTER_SETTINGS['RESOLVE_LIMIT'],
                )
                debug[f"uid_{result.uid_outcome}"] += 1

                if result.discord_id:
                    await self.repos.roster.update(member['id'], {
                        'discord_id': result.discord_id,
                        'needs_resolution': False,
                        'resolution_status': RESOLUTION_STATUS['AUTO'],
                        'resolved_at': now,
                        'resolved_by': actor_id,
                        'in_guild': True,
                        'updated_at': now,
                    })
                    counts['resolved'] += 1
                    rows.append({**row, 'outcome': 'resolved', 'detail': result.outcome})
                elif result.outcome in ('ambiguous', 'ambiguous_uid'):
                    counts['ambiguous'] += 1
                    rows.append({**row, 'outcome': 'ambiguous', 'detail': result.detail})
                else:
                    counts['not_found'] += 1
                    rows.append({**row, 'outcome': 'not_found', 'detail': result.detail})
            except Exception as e:
                logger.error(f"Bulk resolve failed for member {member['id']}: {e}")
                counts['errors'] += 1
                rows.append({**row, 'outcome': 'error', 'detail': str(e)})

        await write_audit(self.repos.audit, 'clan_list_bulk_resolve', actor_id,
                          details={**counts, 'checked': len(members)})
        logger.info(f"Bulk resolve by {actor_id}: {counts}")
        return {'ok': True, 'checked': len(members), **counts, 'rows': rows, 'debug': debug}

    async def sync_discord(self, actor_id: str) -> Dict[str, Any]:
        """Archive members who left the guild and pull current ranks from Discord roles.

        Ranks are only taken from Discord when the member holds at least one
        ranked role, so members whose roles were never granted keep theirs.
        """
        now = utcnow()
        guild = {m.id: m for m in await self._guild_members()}
        members = await self.repos.roster.list_members_for_promotion()

        checked = still_in = ranks_synced = unresolved = 0
        archived_names: List[str] = []

        for member in members:
            discord_id = member.get('discord_id')
            if not discord_id:
                unresolved += 1
                continue
            checked += 1

            guild_member = guild.get(discord_id)
            if guild_member is None:
                await self.repos.roster.update(member['id'], {
                    'in_guild': False,
                    'left_guild_at': now,
                    'archived_at': now,
                    'archived_by': actor_id,
                    'archive_reason': 'left_guild',
                    'last_guild_check_at': now,
                    'updated_at': now,
                })
                archived_names.append(member.get('discord_name') or discord_id)
                continue

            still_in += 1
            rank_name = self.ladder.normalize(member.get('rank_current'))
            if self.ladder.holds_ranked_role(guild_member.roles):
                rank_name = self.ladder.highest_held_rank(guild_member.roles).name
            if rank_name != member.get('rank_current'):
                ranks_synced += 1

            counting = is_counting(member.get('status'), member.get('has_420_tag'))
            days = compute_time_days(member.get('frozen_days'), member.get('counting_since'), now)
            promo = self.ladder.promotion_fields(rank_name, days, counting)
            await self.repos.roster.update(member['id'], {
                'rank_current': rank_name,
                'rank_next': promo.rank_next,
                'promote_eligible': promo.promote_eligible,
                'promote_reason': promo.promote_reason,
                'in_guild': True,
                'last_guild_check_at': now,
                'updated_at': now,
            })

        summary = {
            'checked': checked,
            'still_in_guild': still_in,
            'archived': len(archived_names),
            'ranks_synced': ranks_synced,
            'unresolved_skipped': unresolved,
        }
        log_posted = await self._post_sync_summary(actor_id, summary, archived_names)

        await write_audit(self.repos.audit, 'clan_list_discord_sync', actor_id, details={
            **summary,
            'archived_names': archived_names[:ROSTER_SETTINGS['AUDIT_NAME_LIMIT']],
        })
        return {'ok': True, **summary, 'log_posted': log_posted}

    async def _post_sync_summary(self, actor_id: str, summary: Dict[str, int],
                                 archived_names: Sequence[str]) -> bool:
        channel_id = self.settings.sync_log_channel_id
        if not channel_id:
            return False

        content = SYSTEM_MESSAGES['SYNC_SUMMARY'].format(actor_id=actor_id, **{
            k: summary[k] for k in ('checked', 'still_in_guild', 'archived', 'ranks_synced')
        })
        limit = ROSTER_SETTINGS['SYNC_LOG_NAME_LIMIT']
        if archived_names:
            shown = ", ".join(archived_names[:limit])
            extra = len(archived_names) - limit
            content += f"\n**Archived:** {shown}" + (f" (+{extra} more)" if extra > 0 else "")
        if self.settings.discord_staff_ping_role_id:
            content = f"<@&{self.settings.discord_staff_ping_role_id}>\n{content}"

        try:
            return await self.discord.post_channel_message(channel_id, content)
        except Exception as e:
            logger.error(f"Error posting sync summary: {e}")
            return False

    async def import_rows(self, actor_id: str, rows: Sequence[Mapping[str, Any]],
                          headers: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """Upsert pre-parsed spreadsheet rows keyed by UID"""
        if not rows:
            raise BadRequest("No rows provided")
        if len(rows) > ROSTER_SETTINGS['MAX_IMPORT_ROWS']:
            raise BadRequest(f"Too many rows (max {ROSTER_SETTINGS['MAX_IMPORT_ROWS']})")

        headers = list(headers or rows[0].keys())
        header_map = build_header_mapping(headers)
        if header_map.missing:
            raise BadRequest(
                f"Missing required columns: {', '.join(header_map.missing)}. "
                f"Found headers: {', '.join(headers)}",
                code='MISSING_COLUMNS',
                missing=header_map.missing,
                found_headers=headers,
            )

        try:
            guild = await self.discord.fetch_all_guild_members()
        except Exception as e:
            logger.warning(f"Importing without guild member list: {e}")
            guild = []

        now = utcnow()
        imported = updated = unresolved = 0
        errors: List[Dict[str, Any]] = []

        # Row 1 is the header line in the source sheet
        for line, raw in enumerate(rows, start=2):
            try:
                record = build_import_record(
                    normalize_row(raw, header_map.mapping),
                    self.ladder, guild, self.settings.tag_marker, now,
                )
                existing = await self.repos.roster.get_by_uid(record['uid'])
                if existing:
                    if not record['discord_id'] and existing.get('discord_id'):
                        for key in ('discord_id', 'needs_resolution', 'resolution_status',
                                    'resolved_at', 'resolved_by'):
                            record[key] = existing.get(key)
                    await self.repos.roster.update(existing['id'], record)
                    updated += 1
                else:
                    await self.repos.roster.insert({**record, 'created_at': now})
                    imported += 1
                if not record['discord_id']:
                    unresolved += 1
            except RowError as e:
                errors.append({'row': line, 'error': str(e)})
            except Exception as e:
                logger.error(f"Import row {line} failed: {e}")
                errors.append({'row': line, 'error': str(e)})

        await write_audit(self.repos.audit, 'clan_list_imported', actor_id, details={
            'rows': len(rows),
            'imported': imported,
            'updated': updated,
            'unresolved': unresolved,
            'errors': len(errors),
        })
        logger.info(f"Roster import by {actor_id}: {imported} new, {updated} updated, {len(errors)} errors")
        return {
            'ok': True,
            'imported': imported,
            'updated': updated,
            'unresolved': unresolved,
            'errors': errors,
        }
