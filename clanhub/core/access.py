"""Staff tiers and live access checks.

Stored application status is history only. Every identity check reads the
user's current guild roles and rewrites a stale ``accepted`` application to
``revoked`` before any access decision is made.
"""

import logging
import time
from enum import IntEnum
from typing import Any, Callable, Dict, Iterable, List, Optional

from clanhub.core.audit import write_audit
from clanhub.core.resolver import GuildMember
from clanhub.core.tenure import utcnow
from clanhub.utils.constants import (
    APPLICATION_STATUS, DISCORD_SETTINGS, STAFF_LIST_CACHE_TTL, SYSTEM_MESSAGES
)

logger = logging.getLogger('ClanHub')

class StaffTier(IntEnum):
    """Ordered staff tiers; a larger value outranks a smaller one"""
    ADMIN = 1
    WEBDEV = 2
    OWNER = 3

    @property
    def label(self) -> str:
        return {'ADMIN': 'Admin', 'WEBDEV': 'Web Dev', 'OWNER': 'Owner'}[self.name]

def _tier_roles(settings) -> List[tuple]:
    return [
        (StaffTier.OWNER, settings.discord_owner_role_id),
        (StaffTier.WEBDEV, settings.discord_webdev_role_id),
        (StaffTier.ADMIN, settings.discord_admin_role_id),
    ]

def determine_staff_tier(roles: Iterable[str], settings) -> Optional[StaffTier]:
    """Highest staff tier whose role is held"""
    held = set(roles)
    matches = [tier for tier, role_id in _tier_roles(settings) if role_id and role_id in held]
    return max(matches) if matches else None

def staff_tier_rank(tier: Optional[StaffTier]) -> int:
    return int(tier) if tier is not None else 0

def staff_tier_label(tier: Optional[StaffTier]) -> Optional[str]:
    return tier.label if tier is not None else None

def is_staff(roles: Iterable[str], settings) -> bool:
    """Any staff tier, or the legacy staff role"""
    held = set(roles)
    if determine_staff_tier(held, settings) is not None:
        return True
    return bool(settings.discord_staff_role_id and settings.discord_staff_role_id in held)

def has_member_role(roles: Iterable[str], settings) -> bool:
    return bool(settings.discord_member_role_id and settings.discord_member_role_id in set(roles))

def has_applicant_role(roles: Iterable[str], settings) -> bool:
    return bool(settings.discord_applicant_role_id and settings.discord_applicant_role_id in set(roles))

def effective_status(roles: Iterable[str], settings) -> str:
    """accepted (member or staff), applicant, or none, from live roles only"""
    held = set(roles)
    if is_staff(held, settings) or has_member_role(held, settings):
        return 'accepted'
    if has_applicant_role(held, settings):
        return 'applicant'
    return 'none'

def avatar_url(user_id: str, avatar_hash: Optional[str]) -> str:
    base = DISCORD_SETTINGS['CDN_BASE']
    if avatar_hash:
        ext = 'gif' if avatar_hash.startswith('a_') else 'png'
        return f"{base}/avatars/{user_id}/{avatar_hash}.{ext}"
    try:
        index = int(user_id) % 6
    except (TypeError, ValueError):
        index = 0
    return f"{base}/embed/avatars/{index}.png"

async def revoke_stale_application(repos, application: Dict[str, Any], user_id: str,
                                   in_guild: bool) -> Dict[str, Any]:
    """Rewrite an accepted application whose holder lost access"""
    now = utcnow()
    fields: Dict[str, Any] = {
        'status': APPLICATION_STATUS['REVOKED'],
        'reviewer_note': SYSTEM_MESSAGES['AUTO_REVOKE_NOTE'],
        'reviewed_at': now,
    }
    if not in_guild:
        fields.update({'archived_at': now, 'archived_by': 'system', 'archive_reason': 'left_guild'})

    updated = await repos.applications.update(application['id'], fields)
    action = 'application_auto_revoked' if in_guild else 'application_auto_archived'
    logger.info(f"Application {application['id']} for {user_id}: {action}")
    await write_audit(repos.audit, action, 'system', target_id=user_id,
                      details={'application_id': application['id']})
    return updated

async def resolve_identity(repos, discord, settings, user: Dict[str, Any]) -> Dict[str, Any]:
    """Current access picture for a signed-in user, derived from live guild roles"""
    user_id = str(user['id'])
    member: Optional[GuildMember] = await discord.fetch_member(user_id)
    in_guild = member is not None
    roles = list(member.roles) if member else []

    tier = determine_staff_tier(roles, settings)
    staff = is_staff(roles, settings)
    status = effective_status(roles, settings)

    application = await repos.applications.latest_for(user_id)
    if (application and application['status'] == APPLICATION_STATUS['ACCEPTED']
            and not (staff or has_member_role(roles, settings))):
        await revoke_stale_application(repos, application, user_id, in_guild)
        application = None
    elif application and application['status'] == APPLICATION_STATUS['REVOKED']:
        application = None

    return {
        'user': {
            'id': user_id,
            'username': user.get('username'),
            'global_name': user.get('global_name'),
            'avatar_url': avatar_url(user_id, user.get('avatar')),
        },
        'in_guild': in_guild,
        'roles': roles,
        'status': status,
        'is_staff': staff,
        'staff_tier': tier.name.lower() if tier is not None else None,
        'staff_tier_rank': staff_tier_rank(tier),
        'staff_tier_label': staff_tier_label(tier),
        'application': application,
    }

class StaffDirectory:
    """Guild members holding a staff tier, cached briefly"""

    def __init__(self, discord, settings, ttl: int = STAFF_LIST_CACHE_TTL,
                 clock: Callable[[], float] = time.monotonic):
        self.discord = discord
        self.settings = settings
        self.ttl = ttl
        self._clock = clock
        self._cached: Optional[List[Dict[str, Any]]] = None
        self._cached_at = 0.0

    async def list_staff(self) -> List[Dict[str, Any]]:
        if self._cached is not None and self._clock() - self._cached_at < self.ttl:
            return self._cached

        staff = []
        for member in await self.discord.fetch_all_guild_members():
            tier = determine_staff_tier(member.roles, self.settings)
            if tier is None:
                continue
            staff.append({
                'id': member.id,
                'display_name': member.display_name,
                'username': member.username,
                'avatar_url': avatar_url(member.id, member.avatar),
                'tier': tier.name.lower(),
                'tier_label': tier.label,
                'tier_rank': int(tier),
            })

        staff.sort(key=lambda s: (-s['tier_rank'], s['display_name'].lower()))
        self._cached = staff
        self._cached_at = self._clock()
        return staff
