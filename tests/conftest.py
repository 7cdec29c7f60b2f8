"""Shared fixtures: in-memory repositories, a fake Discord client and settings."""

import copy
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pytest

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from clanhub.config.settings import Settings
from clanhub.core.ranks import RankLadder
from clanhub.core.resolver import GuildMember
from clanhub.core.tokens import TokenService

ROLE_IDS = {
    'owner': '900000000000000001',
    'webdev': '900000000000000002',
    'admin': '900000000000000003',
    'staff': '900000000000000004',
    'member': '900000000000000005',
    'applicant': '900000000000000006',
    'Corporal': '910000000000000001',
    'Sergeant': '910000000000000002',
    'Lieutenant': '910000000000000003',
    'Major': '910000000000000004',
}

def make_settings(**overrides: Any) -> Settings:
    values = dict(
        discord_bot_token='bot-token',
        discord_guild_id='800000000000000000',
        discord_owner_role_id=ROLE_IDS['owner'],
        discord_webdev_role_id=ROLE_IDS['webdev'],
        discord_admin_role_id=ROLE_IDS['admin'],
        discord_staff_role_id=ROLE_IDS['staff'],
        discord_staff_ping_role_id='900000000000000007',
        discord_member_role_id=ROLE_IDS['member'],
        discord_applicant_role_id=ROLE_IDS['applicant'],
        discord_corporal_role_id=ROLE_IDS['Corporal'],
        discord_sergeant_role_id=ROLE_IDS['Sergeant'],
        discord_lieutenant_role_id=ROLE_IDS['Lieutenant'],
        discord_major_role_id=ROLE_IDS['Major'],
        promotion_channel_id='700000000000000001',
        app_log_channel_id='700000000000000002',
        sync_log_channel_id='700000000000000003',
        ban_report_channel_id='700000000000000004',
        session_secret='session-secret-for-tests',
        resolve_token_secret='resolve-secret-for-tests',
        postgres_user='clanhub',
        postgres_password='clanhub',
        postgres_db='clanhub',
        redis_enabled=False,
    )
    values.update(overrides)
    return Settings(**values)

def guild_member(user_id: str, username: str, global_name: Optional[str] = None,
                 nick: Optional[str] = None, roles: Iterable[str] = ()) -> GuildMember:
    return GuildMember(id=user_id, username=username, global_name=global_name,
                       nick=nick, roles=tuple(roles))

def days_ago(days: int, now: Optional[datetime] = None) -> datetime:
    return (now or datetime.now(timezone.utc)) - timedelta(days=days, minutes=1)

def member_row(**overrides: Any) -> Dict[str, Any]:
    """Roster member dict with sensible defaults"""
    row = {
        'discord_name': 'player',
        'discord_id': None,
        'ign': 'player_ign',
        'uid': 'uid-0',
        'join_date': datetime(2024, 1, 1).date(),
        'status': 'active',
        'has_420_tag': True,
        'rank_current': 'Private',
        'rank_next': None,
        'frozen_days': 0,
        'counting_since': None,
        'promote_eligible': False,
        'promote_reason': None,
        'needs_resolution': True,
        'resolution_status': 'unresolved',
        'resolved_at': None,
        'resolved_by': None,
        'in_guild': True,
        'last_guild_check_at': None,
        'left_guild_at': None,
        'archived_at': None,
        'archived_by': None,
        'archive_reason': None,
        'source': 'manual',
    }
    row.update(overrides)
    return row

class FakeRoster:
    def __init__(self):
        self.rows: Dict[int, Dict[str, Any]] = {}
        self._next_id = 1
        self.fail_updates_for: set = set()

    def add(self, **overrides: Any) -> Dict[str, Any]:
        row = member_row(**overrides)
        row['id'] = self._next_id
        self._next_id += 1
        self.rows[row['id']] = row
        return copy.deepcopy(row)

    async def get(self, member_id):
        row = self.rows.get(member_id)
        return copy.deepcopy(row) if row else None

    async def get_by_uid(self, uid):
        for row in self.rows.values():
            if row['uid'] == uid:
                return copy.deepcopy(row)
        return None

    async def list_page(self, search=None, status=None, archived=False,
                        eligible_only=False, limit=50, offset=0):
        rows = [r for r in self.rows.values() if bool(r.get('archived_at')) == archived]
        if status:
            rows = [r for r in rows if r['status'] == status]
        if eligible_only:
            rows = [r for r in rows if r['promote_eligible']]
        if search:
            needle = search.lower()
            rows = [r for r in rows if any(
                needle in str(r.get(k) or '').lower()
                for k in ('discord_name', 'ign', 'uid', 'discord_id')
            )]
        rows.sort(key=lambda r: (r['discord_name'], r['id']))
        return [copy.deepcopy(r) for r in rows[offset:offset + limit]], len(rows)

    async def list_members_for_promotion(self):
        return [copy.deepcopy(r) for r in self.rows.values() if not r.get('archived_at')]

    async def list_unresolved(self):
        return [
            copy.deepcopy(r) for r in self.rows.values()
            if not r.get('archived_at') and (not r.get('discord_id') or r.get('needs_resolution'))
        ]

    async def insert(self, data):
        return self.add(**data)

    async def update(self, member_id, fields):
        if member_id in self.fail_updates_for:
            raise RuntimeError("database unavailable")
        row = self.rows.get(member_id)
        if row is None:
            return None
        row.update(fields)
        return copy.deepcopy(row)

    async def delete(self, member_id):
        return self.rows.pop(member_id, None) is not None

class FakeApplications:
    def __init__(self):
        self.rows: Dict[int, Dict[str, Any]] = {}
        self._next_id = 1

    def add(self, **data: Any) -> Dict[str, Any]:
        row = {
            'status': 'pending',
            'archived_at': None,
            'archived_by': None,
            'archive_reason': None,
            'reviewer_note': None,
            'created_at': datetime.now(timezone.utc) + timedelta(microseconds=self._next_id),
            **data,
        }
        row['id'] = self._next_id
        self._next_id += 1
        self.rows[row['id']] = row
        return copy.deepcopy(row)

    def _newest(self, rows):
        rows = sorted(rows, key=lambda r: r['created_at'], reverse=True)
        return copy.deepcopy(rows[0]) if rows else None

    async def get(self, application_id):
        row = self.rows.get(application_id)
        return copy.deepcopy(row) if row else None

    async def latest_for(self, discord_id):
        return self._newest([
            r for r in self.rows.values()
            if r['discord_id'] == discord_id and not r.get('archived_at')
        ])

    async def find_open(self, discord_id):
        return self._newest([
            r for r in self.rows.values()
            if r['discord_id'] == discord_id and r['status'] in ('pending', 'accepted')
        ])

    async def insert(self, data):
        return self.add(**data)

    async def update(self, application_id, fields):
        row = self.rows.get(application_id)
        if row is None:
            return None
        row.update(fields)
        return copy.deepcopy(row)

    async def list_applications(self, status=None, include_archived=False):
        rows = [
            r for r in self.rows.values()
            if (not status or r['status'] == status) and (include_archived or not r.get('archived_at'))
        ]
        rows.sort(key=lambda r: r['created_at'], reverse=True)
        return [copy.deepcopy(r) for r in rows]

    async def count(self, status):
        return sum(1 for r in self.rows.values() if r['status'] == status and not r.get('archived_at'))

    async def list_uid_mappings(self):
        return [
            {'uid': r.get('uid'), 'discord_id': r['discord_id']}
            for r in self.rows.values()
            if r['status'] in ('accepted', 'pending') and r.get('uid')
        ]

    async def archive_decided(self, actor_id, reason, now):
        count = 0
        for row in self.rows.values():
            if row['status'] in ('accepted', 'rejected') and not row.get('archived_at'):
                row.update(archived_at=now, archived_by=actor_id, archive_reason=reason)
                count += 1
        return count

class FakeNotes:
    def __init__(self):
        self.rows: List[Dict[str, Any]] = []

    async def add(self, application_id, note, created_by, created_by_username=None):
        row = {
            'id': len(self.rows) + 1,
            'application_id': application_id,
            'note': note,
            'created_by': created_by,
            'created_by_username': created_by_username,
            'created_at': datetime.now(timezone.utc) + timedelta(microseconds=len(self.rows)),
        }
        self.rows.append(row)
        return dict(row)

    async def list_for(self, application_ids):
        grouped: Dict[int, List[Dict[str, Any]]] = {}
        for row in sorted(self.rows, key=lambda r: r['created_at'], reverse=True):
            if row['application_id'] in application_ids:
                grouped.setdefault(row['application_id'], []).append(dict(row))
        return grouped

class FakeQueue:
    def __init__(self):
        self.rows: Dict[int, Dict[str, Any]] = {}
        self._next_id = 1

    def add(self, **data: Any) -> Dict[str, Any]:
        row = {'status': 'queued', 'error': None, 'discord_id': None, **data}
        row['id'] = self._next_id
        self._next_id += 1
        self.rows[row['id']] = row
        return copy.deepcopy(row)

    async def get(self, item_id):
        row = self.rows.get(item_id)
        return copy.deepcopy(row) if row else None

    async def list_items(self, statuses=None):
        return [
            copy.deepcopy(r) for _, r in sorted(self.rows.items())
            if not statuses or r['status'] in statuses
        ]

    async def open_member_ids(self):
        return {r['member_id'] for r in self.rows.values() if r['status'] in ('queued', 'confirmed')}

    async def insert_many(self, items):
        for item in items:
            self.add(**item)
        return len(items)

    async def update(self, item_id, fields):
        row = self.rows.get(item_id)
        if row is None:
            return None
        row.update(fields)
        return copy.deepcopy(row)

    async def delete_open(self):
        doomed = [i for i, r in self.rows.items() if r['status'] in ('queued', 'confirmed')]
        for item_id in doomed:
            del self.rows[item_id]
        return len(doomed)

class FakeAudit:
    def __init__(self):
        self.entries: List[Dict[str, Any]] = []
        self.fail = False

    async def log(self, action, actor_id, target_id=None, details=None):
        if self.fail:
            raise RuntimeError("audit store down")
        self.entries.append({
            'action': action, 'actor_id': actor_id, 'target_id': target_id, 'details': details or {},
        })

    def actions(self) -> List[str]:
        return [e['action'] for e in self.entries]

class FakeBanReports:
    def __init__(self):
        self.rows: List[Dict[str, Any]] = []

    async def find_recent(self, discord_id, since):
        for row in self.rows:
            if row['discord_id'] == discord_id and row['submitted_at'] >= since:
                return dict(row)
        return None

    async def insert(self, data):
        row = {**data, 'id': len(self.rows) + 1}
        self.rows.append(row)
        return dict(row)

class FakeRepositories:
    def __init__(self):
        self.roster = FakeRoster()
        self.applications = FakeApplications()
        self.notes = FakeNotes()
        self.queue = FakeQueue()
        self.audit = FakeAudit()
        self.ban_reports = FakeBanReports()

    def opener(self):
        @asynccontextmanager
        async def open_repositories():
            yield self

        return open_repositories

class FakeDiscord:
    def __init__(self, members: Iterable[GuildMember] = ()):
        self.members: Dict[str, GuildMember] = {m.id: m for m in members}
        self.failing_role_users: set = set()
        self.role_grants: List[tuple] = []
        self.role_removals: List[tuple] = []
        self.posts: List[tuple] = []
        self.post_ok = True

    def add_member(self, member: GuildMember) -> None:
        self.members[member.id] = member

    async def fetch_member(self, user_id):
        return self.members.get(str(user_id))

    async def fetch_all_guild_members(self):
        return list(self.members.values())

    async def add_role(self, user_id, role_id):
        if user_id in self.failing_role_users:
            return False
        self.role_grants.append((user_id, role_id))
        return True

    async def remove_role(self, user_id, role_id):
        if user_id in self.failing_role_users:
            return False
        self.role_removals.append((user_id, role_id))
        return True

    async def post_channel_message(self, channel_id, content):
        self.posts.append((channel_id, content))
        return self.post_ok

    def authorize_url(self, state):
        return f"https://discord.example/authorize?state={state}"

    async def exchange_code(self, code):
        return {'access_token': 'access'} if code == 'good-code' else None

    async def fetch_current_user(self, access_token):
        return {'id': '100000000000000001', 'username': 'oauth_user', 'avatar': None}

@pytest.fixture
def settings() -> Settings:
    return make_settings()

@pytest.fixture
def ladder(settings) -> RankLadder:
    return RankLadder.from_role_ids(settings.rank_role_ids())

@pytest.fixture
def repos() -> FakeRepositories:
    return FakeRepositories()

@pytest.fixture
def discord() -> FakeDiscord:
    return FakeDiscord()

@pytest.fixture
def tokens(settings) -> TokenService:
    return TokenService.from_settings(settings)
