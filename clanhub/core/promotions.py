"""Promotion workflow: queue build, confirm, process, plus the single-shot run"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from clanhub.core.audit import write_audit
from clanhub.core.ranks import RankDef, RankLadder
from clanhub.core.tenure import compute_time_days, is_counting, utcnow
from clanhub.utils.constants import OPEN_QUEUE_STATUSES, QUEUE_STATUS, SYSTEM_MESSAGES
from clanhub.utils.errors import BadRequest, NotFound, ServiceUnavailable

logger = logging.getLogger('ClanHub')

class PromotionError(Exception):
    """A single promotion could not be applied"""

def member_days(member: Dict[str, Any], now: Optional[datetime] = None) -> int:
    return compute_time_days(member.get('frozen_days'), member.get('counting_since'), now)

def is_promotable(member: Dict[str, Any]) -> bool:
    """Active, tagged, not archived and still in the guild"""
    return (
        member.get('status') == 'active'
        and bool(member.get('has_420_tag'))
        and not member.get('archived_at')
        and member.get('in_guild', True) is not False
    )

def format_announcement(entries: List[Dict[str, Any]], ladder: RankLadder,
                        member_role_id: Optional[str] = None) -> str:
    """Render the promotion announcement, one line per member grouped by target rank"""
    groups = []
    for rank in ladder:
        lines = [
            f"<@{e['discord_id']}> -> {ladder.role_mention(rank.name)}"
            for e in entries if e['to_rank'] == rank.name
        ]
        if lines:
            groups.append("\n".join(lines))

    return SYSTEM_MESSAGES['PROMOTION_ANNOUNCEMENT'].format(
        promotions="\n\n".join(groups),
        member_ping=f"<@&{member_role_id}>" if member_role_id else "",
    )

class PromotionWorkflow:
    """Moves promotion candidates through queued -> confirmed -> processed/failed"""

    def __init__(self, repos, discord, ladder: RankLadder, settings):
        self.repos = repos
        self.discord = discord
        self.ladder = ladder
        self.settings = settings

    @property
    def threshold(self) -> int:
        return self.settings.promotion_batch_threshold

    def _due(self, members: List[Dict[str, Any]], now: datetime) -> List[Dict[str, Any]]:
        """Promotable members whose days earn a rank above their current one"""
        due = []
        for member in members:
            if not is_promotable(member):
                continue
            days = member_days(member, now)
            if self.ladder.is_promotion_due(member.get('rank_current'), days):
                due.append({
                    'member': member,
                    'days': days,
                    'earned': self.ladder.earned_rank(days),
                    'next': self.ladder.next_rank_for(member.get('rank_current'), days),
                })
        return due

    async def _announce(self, entries: List[Dict[str, Any]], actor_id: str) -> bool:
        """Post the grouped announcement; failure is logged and reported, never raised"""
        if not entries:
            return False
        if not self.settings.promotion_channel_id:
            logger.warning("Promotion channel not configured, skipping announcement")
            return False

        content = format_announcement(entries, self.ladder, self.settings.discord_member_role_id)
        try:
            posted = await self.discord.post_channel_message(
                self.settings.promotion_channel_id, content
            )
        except Exception as e:
            logger.error(f"Error posting promotion announcement: {e}")
            posted = False

        await write_audit(
            self.repos.audit,
            'promotion_queue_announced' if posted else 'promotion_queue_announce_failed',
            actor_id,
            details={'count': len(entries)},
        )
        return posted

    async def _apply_rank(self, member: Dict[str, Any], rank: RankDef) -> None:
        """Grant the rank's Discord role and record the new rank on the roster"""
        if not rank.role_id:
            raise PromotionError(f"Invalid rank: {rank.name}")
        if not member.get('discord_id'):
            raise PromotionError("Member has no resolved Discord ID")

        granted = await self.discord.add_role(member['discord_id'], rank.role_id)
        if not granted:
            raise PromotionError("Failed to assign Discord role")

        nxt = self.ladder.next_rank_for(rank.name)
        updated = await self.repos.roster.update(member['id'], {
            'rank_current': rank.name,
            'rank_next': nxt.name if nxt else None,
            'promote_eligible': False,
            'promote_reason': None,
            'updated_at': utcnow(),
        })
        if updated is None:
            raise PromotionError("Member not found")

    async def preview(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """List due promotions and cache the derived promotion columns"""
        now = now or utcnow()
        members = await self.repos.roster.list_members_for_promotion()

        for member in members:
            if member.get('archived_at'):
                continue
            counting = is_counting(member.get('status'), member.get('has_420_tag'))
            fields = self.ladder.promotion_fields(
                member.get('rank_current'), member_days(member, now), counting
            )
            cached = {
                'rank_next': fields.rank_next,
                'promote_eligible': fields.promote_eligible,
                'promote_reason': fields.promote_reason,
            }
            if any(member.get(k) != v for k, v in cached.items()):
                await self.repos.roster.update(member['id'], cached)

        promotions = []
        for entry in self._due(members, now):
            member = entry['member']
            promotions.append({
                'member_id': member['id'],
                'discord_name': member.get('discord_name'),
                'ign': member.get('ign'),
                'discord_id': member.get('discord_id'),
                'from_rank': self.ladder.normalize(member.get('rank_current')),
                'to_rank': entry['earned'].name,
                'time_in_clan_days': entry['days'],
                'resolvable': bool(member.get('discord_id')),
            })

        resolvable = sum(1 for p in promotions if p['resolvable'])
        return {
            'ok': True,
            'promotions': promotions,
            'total_due': len(promotions),
            'resolvable': resolvable,
            'unresolved': len(promotions) - resolvable,
            'threshold': self.threshold,
            'threshold_met': resolvable >= self.threshold,
        }

    async def list_queue(self) -> Dict[str, Any]:
        items = await self.repos.queue.list_items()
        counts: Dict[str, int] = {}
        for item in items:
            counts[item['status']] = counts.get(item['status'], 0) + 1
        return {'ok': True, 'items': items, 'counts': counts}

    async def build(self, actor_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Queue every due member one rank up; members already queued are skipped"""
        now = now or utcnow()
        members = await self.repos.roster.list_members_for_promotion()
        already = await self.repos.queue.open_member_ids()

        new_items = []
        for entry in self._due(members, now):
            member = entry['member']
            if member['id'] in already or entry['next'] is None:
                continue
            new_items.append({
                'member_id': member['id'],
                'discord_id': member.get('discord_id') or None,
                'discord_name': member.get('discord_name'),
                'ign': member.get('ign'),
                'uid': member.get('uid'),
                'from_rank': self.ladder.normalize(member.get('rank_current')),
                'to_rank': entry['next'].name,
                'status': QUEUE_STATUS['QUEUED'],
                'created_by': actor_id,
                'created_at': now,
            })

        if new_items:
            await self.repos.queue.insert_many(new_items)

        queued = await self.repos.queue.list_items(statuses=[QUEUE_STATUS['QUEUED']])
        unresolved = sum(1 for i in queued if not i.get('discord_id'))

        logger.info(f"Promotion queue built by {actor_id}: {len(new_items)} added, {len(queued)} queued")
        await write_audit(self.repos.audit, 'promotion_queue_built', actor_id, details={
            'added': len(new_items),
            'total_queued': len(queued),
            'unresolved': unresolved,
        })

        return {
            'ok': True,
            'queued_added_count': len(new_items),
            'total_queued_count': len(queued),
            'unresolved_count': unresolved,
        }

    async def confirm(self, actor_id: str, force: bool = False, dry_run: bool = False,
                      now: Optional[datetime] = None) -> Dict[str, Any]:
        """Move resolved queued items to confirmed once the batch threshold is met.

        ``force`` waives the threshold but never confirms unresolved items, so a
        forced confirm with nothing resolved is still rejected.
        """
        now = now or utcnow()
        queued = await self.repos.queue.list_items(statuses=[QUEUE_STATUS['QUEUED']])
        resolved = [i for i in queued if i.get('discord_id')]

        if not resolved or (len(resolved) < self.threshold and not force):
            raise BadRequest(
                f"At least {self.threshold} resolved queued promotions are required",
                code='INSUFFICIENT_QUEUE',
                resolved_count=len(resolved),
            )

        if dry_run:
            return {
                'ok': True,
                'dry_run': True,
                'confirmed_count': len(resolved),
                'items': resolved,
            }

        confirmed = []
        for item in resolved:
            updated = await self.repos.queue.update(item['id'], {
                'status': QUEUE_STATUS['CONFIRMED'],
                'confirmed_at': now,
                'confirmed_by': actor_id,
            })
            confirmed.append(updated)

        await write_audit(self.repos.audit, 'promotion_queue_confirmed', actor_id, details={
            'count': len(confirmed),
            'forced': bool(force and len(resolved) < self.threshold),
        })

        return {'ok': True, 'confirmed_count': len(confirmed), 'items': confirmed}

    async def process(self, actor_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Apply every confirmed item; failures are per item and never abort the batch"""
        now = now or utcnow()
        items = await self.repos.queue.list_items(statuses=[QUEUE_STATUS['CONFIRMED']])

        processed: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []

        for item in items:
            try:
                rank = self.ladder.get(item.get('to_rank'))
                if rank is None:
                    raise PromotionError(f"Invalid rank: {item.get('to_rank')}")

                member = {'id': item['member_id'], 'discord_id': item.get('discord_id')}
                await self._apply_rank(member, rank)
                await self.repos.queue.update(item['id'], {
                    'status': QUEUE_STATUS['PROCESSED'],
                    'processed_at': now,
                    'processed_by': actor_id,
                    'error': None,
                })
                processed.append({**item, 'status': QUEUE_STATUS['PROCESSED']})
                outcome = {'ok': True}

            except Exception as e:
                logger.error(f"Promotion of queue item {item['id']} failed: {e}")
                try:
                    await self.repos.queue.update(item['id'], {
                        'status': QUEUE_STATUS['FAILED'],
                        'processed_at': now,
                        'processed_by': actor_id,
                        'error': str(e),
                    })
                except Exception as db_error:
                    logger.error(f"Could not mark queue item {item['id']} failed: {db_error}")
                failed.append({**item, 'status': QUEUE_STATUS['FAILED'], 'error': str(e)})
                outcome = {'ok': False, 'error': str(e)}

            await write_audit(
                self.repos.audit, 'promotion_queue_processed_item', actor_id,
                target_id=item.get('discord_id'),
                details={'queue_id': item['id'], 'to_rank': item.get('to_rank'), **outcome},
            )

        announced = await self._announce(processed, actor_id) if processed else False

        await write_audit(self.repos.audit, 'promotion_queue_processed', actor_id, details={
            'processed': len(processed),
            'failed': len(failed),
            'announcement_posted': announced,
        })
        logger.info(
            f"Promotion queue processed by {actor_id}: "
            f"{len(processed)} processed, {len(failed)} failed"
        )

        return {
            'ok': True,
            'processed_count': len(processed),
            'failed_count': len(failed),
            'announcement_posted': announced,
            'processed': processed,
            'failed': failed,
        }

    async def clear(self, actor_id: str) -> Dict[str, Any]:
        """Delete every queued and confirmed item"""
        removed = await self.repos.queue.delete_open()
        await write_audit(self.repos.audit, 'promotion_queue_cleared', actor_id,
                          details={'removed': removed})
        return {'ok': True, 'removed_count': removed}

    async def remove_item(self, actor_id: str, item_id: int) -> Dict[str, Any]:
        item = await self.repos.queue.get(item_id)
        if not item:
            raise NotFound("Queue item not found")
        if item['status'] not in OPEN_QUEUE_STATUSES:
            raise BadRequest(f"Cannot remove a {item['status']} item")

        updated = await self.repos.queue.update(item_id, {'status': QUEUE_STATUS['REMOVED']})
        await write_audit(self.repos.audit, 'promotion_queue_item_removed', actor_id,
                          target_id=item.get('discord_id'), details={'queue_id': item_id})
        return {'ok': True, 'item': updated}

    async def run(self, actor_id: str, force: bool = False,
                  now: Optional[datetime] = None) -> Dict[str, Any]:
        """Single-shot promotion straight to each member's earned rank"""
        now = now or utcnow()
        members = await self.repos.roster.list_members_for_promotion()
        due = self._due(members, now)
        resolvable = [e for e in due if e['member'].get('discord_id')]
        unresolved = len(due) - len(resolvable)

        if len(resolvable) < self.threshold and not force:
            return {
                'ok': False,
                'message': (
                    f"Only {len(resolvable)} resolvable promotions due; "
                    f"at least {self.threshold} are needed"
                ),
                'total_due': len(due),
                'resolvable': len(resolvable),
                'unresolved': unresolved,
            }

        executed: List[Dict[str, Any]] = []
        failures: List[Dict[str, Any]] = []
        for entry in resolvable:
            member = entry['member']
            detail = {
                'member_id': member['id'],
                'discord_id': member['discord_id'],
                'discord_name': member.get('discord_name'),
                'from_rank': self.ladder.normalize(member.get('rank_current')),
                'to_rank': entry['earned'].name,
            }
            try:
                await self._apply_rank(member, entry['earned'])
                executed.append(detail)
            except Exception as e:
                logger.error(f"Promotion of member {member['id']} failed: {e}")
                failures.append({**detail, 'error': str(e)})

        announced = await self._announce(executed, actor_id)
        await write_audit(self.repos.audit, 'clan_promotion_applied', actor_id, details={
            'executed': len(executed),
            'failed': len(failures),
            'skipped_unresolved': unresolved,
            'forced': force,
        })

        return {
            'ok': True,
            'executed': len(executed),
            'failed': len(failures),
            'skipped_unresolved': unresolved,
            'announcement_posted': announced,
            'details': executed + failures,
        }

    async def force_promote(self, actor_id: str, member_id: int, rank_name: str,
                            now: Optional[datetime] = None) -> Dict[str, Any]:
        """Set a member to any rank without an announcement"""
        now = now or utcnow()
        rank = self.ladder.get(rank_name)
        if rank is None:
            raise BadRequest("Invalid rank")

        member = await self.repos.roster.get(member_id)
        if not member:
            raise NotFound("Member not found")

        role_updated = False
        if member.get('discord_id') and rank.role_id:
            if not await self.discord.add_role(member['discord_id'], rank.role_id):
                raise ServiceUnavailable("Failed to update Discord role", code='DISCORD_ROLE_FAILED')
            role_updated = True

        counting = is_counting(member.get('status'), member.get('has_420_tag'))
        fields = self.ladder.promotion_fields(rank.name, member_days(member, now), counting)
        updated = await self.repos.roster.update(member_id, {
            'rank_current': rank.name,
            'rank_next': fields.rank_next,
            'promote_eligible': fields.promote_eligible,
            'promote_reason': fields.promote_reason,
            'updated_at': now,
        })
        if updated is None:
            raise NotFound("Member not found")

        await write_audit(self.repos.audit, 'clan_promotion_forced', actor_id,
                          target_id=member.get('discord_id'), details={
                              'member_id': member_id,
                              'from_rank': member.get('rank_current'),
                              'to_rank': rank.name,
                              'role_updated': role_updated,
                          })

        return {'ok': True, 'role_updated': role_updated, 'member': updated}
