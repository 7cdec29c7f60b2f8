import asyncio

from conftest import ROLE_IDS, guild_member

from clanhub.core.access import (
    StaffDirectory, StaffTier, avatar_url, determine_staff_tier, effective_status, is_staff,
    resolve_identity
)

USER = {'id': '100000000000000001', 'username': 'mike', 'global_name': 'Mike', 'avatar': None}


def test_staff_tier_picks_highest(settings):
    assert determine_staff_tier([ROLE_IDS['admin'], ROLE_IDS['owner']], settings) is StaffTier.OWNER
    assert determine_staff_tier([ROLE_IDS['webdev']], settings) is StaffTier.WEBDEV
    assert determine_staff_tier([ROLE_IDS['member']], settings) is None
    assert StaffTier.OWNER > StaffTier.WEBDEV > StaffTier.ADMIN
    assert StaffTier.WEBDEV.label == 'Web Dev'


def test_legacy_staff_role_counts_as_staff(settings):
    assert is_staff([ROLE_IDS['staff']], settings)
    assert not is_staff([ROLE_IDS['member']], settings)


def test_effective_status_from_live_roles(settings):
    assert effective_status([ROLE_IDS['member']], settings) == 'accepted'
    assert effective_status([ROLE_IDS['admin']], settings) == 'accepted'
    assert effective_status([ROLE_IDS['applicant']], settings) == 'applicant'
    assert effective_status([], settings) == 'none'


def test_avatar_urls():
    assert avatar_url('1', 'a_anim').endswith('/avatars/1/a_anim.gif')
    assert avatar_url('1', 'still').endswith('/avatars/1/still.png')
    assert avatar_url('100000000000000001', None).endswith('/embed/avatars/5.png')


def test_identity_for_member(repos, discord, settings):
    discord.add_member(guild_member(USER['id'], 'mike', roles=[ROLE_IDS['member']]))
    app = repos.applications.add(discord_id=USER['id'], status='accepted', uid='1')

    identity = asyncio.run(resolve_identity(repos, discord, settings, USER))

    assert identity['in_guild'] is True
    assert identity['status'] == 'accepted'
    assert identity['is_staff'] is False
    assert identity['staff_tier'] is None
    assert identity['staff_tier_rank'] == 0
    assert identity['application']['id'] == app['id']


def test_lost_member_role_revokes_accepted_application(repos, discord, settings):
    discord.add_member(guild_member(USER['id'], 'mike', roles=[ROLE_IDS['applicant']]))
    app = repos.applications.add(discord_id=USER['id'], status='accepted', uid='1')

    identity = asyncio.run(resolve_identity(repos, discord, settings, USER))

    assert identity['application'] is None
    assert identity['status'] == 'applicant'
    row = repos.applications.rows[app['id']]
    assert row['status'] == 'revoked'
    assert row['reviewer_note'] == "Auto-revoked: member role no longer present"
    assert row['archived_at'] is None
    assert repos.audit.actions() == ['application_auto_revoked']


def test_leaving_the_guild_archives_the_application(repos, discord, settings):
    app = repos.applications.add(discord_id=USER['id'], status='accepted', uid='1')

    identity = asyncio.run(resolve_identity(repos, discord, settings, USER))

    assert identity['in_guild'] is False
    assert identity['status'] == 'none'
    row = repos.applications.rows[app['id']]
    assert row['status'] == 'revoked'
    assert row['archived_by'] == 'system'
    assert row['archive_reason'] == 'left_guild'
    assert repos.audit.actions() == ['application_auto_archived']


def test_pending_application_is_left_alone(repos, discord, settings):
    discord.add_member(guild_member(USER['id'], 'mike', roles=[ROLE_IDS['applicant']]))
    repos.applications.add(discord_id=USER['id'], status='pending', uid='1')

    identity = asyncio.run(resolve_identity(repos, discord, settings, USER))

    assert identity['application']['status'] == 'pending'
    assert repos.audit.entries == []


def test_staff_identity_reports_tier(repos, discord, settings):
    discord.add_member(guild_member(USER['id'], 'mike', roles=[ROLE_IDS['webdev']]))
    identity = asyncio.run(resolve_identity(repos, discord, settings, USER))
    assert identity['is_staff'] is True
    assert identity['staff_tier'] == 'webdev'
    assert identity['staff_tier_rank'] == 2
    assert identity['staff_tier_label'] == 'Web Dev'


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_staff_directory_orders_and_caches(discord, settings):
    discord.add_member(guild_member('1', 'zed', roles=[ROLE_IDS['admin']]))
    discord.add_member(guild_member('2', 'amy', roles=[ROLE_IDS['admin']]))
    discord.add_member(guild_member('3', 'boss', roles=[ROLE_IDS['owner'], ROLE_IDS['admin']]))
    discord.add_member(guild_member('4', 'pleb', roles=[ROLE_IDS['member']]))
    clock = Clock()
    directory = StaffDirectory(discord, settings, ttl=60, clock=clock)

    staff = asyncio.run(directory.list_staff())
    assert [s['username'] for s in staff] == ['boss', 'amy', 'zed']
    assert staff[0]['tier'] == 'owner'

    discord.add_member(guild_member('5', 'new', roles=[ROLE_IDS['webdev']]))
    clock.now = 30
    assert len(asyncio.run(directory.list_staff())) == 3
    clock.now = 61
    assert len(asyncio.run(directory.list_staff())) == 4
