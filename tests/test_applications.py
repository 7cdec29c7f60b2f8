import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from conftest import ROLE_IDS, guild_member

from clanhub.core.applications import ApplicationService, BanReportService, add_months
from clanhub.utils.errors import BadRequest, Conflict, Forbidden, NotFound, ServiceUnavailable

USER = {'id': '100000000000000001', 'username': 'mike'}
APPLICANT = [ROLE_IDS['applicant']]

ANSWERS = {
    'uid': '12345',
    'age': '21',
    'speaks_english': 'Yes',
    'timezone': 'UTC+1',
    'activity': 'daily',
    'level': '40',
    'playstyle': 'aggressive',
    'banned_for_cheating': 'No',
    'looking_for': 'squad',
    'has_mic': 'yes',
    'clan_history': 'none',
}


@pytest.fixture
def applications(repos, discord, settings):
    return ApplicationService(repos, discord, settings)


@pytest.fixture
def ban_reports(repos, discord, settings):
    return BanReportService(repos, discord, settings)


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2025, 8, 31), 6) == datetime(2026, 2, 28)
    assert add_months(datetime(2025, 1, 15), 6) == datetime(2025, 7, 15)
    assert add_months(datetime(2025, 11, 30), 3) == datetime(2026, 2, 28)


def test_submit_stores_typed_answers_and_posts(repos, discord, applications):
    result = asyncio.run(applications.submit(USER, APPLICANT, ANSWERS))

    application = result['application']
    assert application['status'] == 'pending'
    assert application['age'] == 21
    assert application['speaks_english'] is True
    assert application['banned_for_cheating'] is False
    channel, content = discord.posts[0]
    assert channel == '700000000000000002'
    assert content.startswith('<@&900000000000000007>\n')
    assert 'UID: 12345' in content
    assert repos.audit.actions() == ['application_submitted']


def test_submit_requires_applicant_without_access(applications):
    with pytest.raises(Forbidden, match="already have clan access"):
        asyncio.run(applications.submit(USER, [ROLE_IDS['member']], ANSWERS))
    with pytest.raises(Forbidden, match="verify"):
        asyncio.run(applications.submit(USER, [], ANSWERS))


def test_duplicate_application_conflicts_unless_override(repos, applications):
    first = asyncio.run(applications.submit(USER, APPLICANT, ANSWERS))['application']

    with pytest.raises(Conflict) as excinfo:
        asyncio.run(applications.submit(USER, APPLICANT, ANSWERS))
    assert excinfo.value.code == 'ALREADY_PENDING'
    assert excinfo.value.extra['existing_id'] == first['id']

    asyncio.run(applications.submit(USER, APPLICANT, {**ANSWERS, 'override': True}))
    assert 'application_reapply' in repos.audit.actions()
    assert len(repos.applications.rows) == 2


def test_accepted_application_reports_accepted_code(repos, applications):
    repos.applications.add(discord_id=USER['id'], status='accepted', uid='1')
    with pytest.raises(Conflict) as excinfo:
        asyncio.run(applications.submit(USER, APPLICANT, ANSWERS))
    assert excinfo.value.code == 'ALREADY_ACCEPTED'


def test_submit_validation(applications):
    with pytest.raises(BadRequest) as excinfo:
        asyncio.run(applications.submit(USER, APPLICANT, {**ANSWERS, 'timezone': ''}))
    assert excinfo.value.code == 'MISSING_FIELDS'
    assert excinfo.value.extra['missing'] == ['timezone']

    with pytest.raises(BadRequest, match="Age"):
        asyncio.run(applications.submit(USER, APPLICANT, {**ANSWERS, 'age': 'old'}))


def test_log_failure_is_audited(repos, discord, applications):
    discord.post_ok = False
    result = asyncio.run(applications.submit(USER, APPLICANT, ANSWERS))
    assert result['ok'] is True
    assert 'application_log_message_failed' in repos.audit.actions()


def test_staff_listing_includes_notes(repos, applications):
    app = repos.applications.add(discord_id='1', status='pending', uid='1')
    repos.applications.add(discord_id='2', status='rejected', uid='2',
                           archived_at=datetime.now(timezone.utc))
    asyncio.run(applications.add_note({'id': '9', 'username': 'staff'}, app['id'], 'looks good'))

    listing = asyncio.run(applications.list_for_staff())
    assert [a['id'] for a in listing['applications']] == [app['id']]
    assert listing['applications'][0]['notes'][0]['note'] == 'looks good'

    everything = asyncio.run(applications.list_for_staff(show_archived=True))
    assert len(everything['applications']) == 2

    with pytest.raises(BadRequest):
        asyncio.run(applications.list_for_staff(status='maybe'))
    assert asyncio.run(applications.pending_count())['count'] == 1


REVIEWER = '900'


def pending_application(repos, discord, nick=None):
    discord.add_member(guild_member(USER['id'], 'mike', nick=nick, roles=APPLICANT))
    return repos.applications.add(discord_id=USER['id'], discord_name='mike', uid='UID-1')


def test_accept_grants_access_and_creates_clan_member(repos, discord, applications):
    app = pending_application(repos, discord, nick='[420] Mike')

    result = asyncio.run(applications.review(REVIEWER, app['id'], 'accept', ' welcome '))

    assert result['action'] == 'accepted'
    assert result['clan_member_upsert_ok'] is True
    assert result['clan_member_created'] is True
    stored = repos.applications.rows[app['id']]
    assert stored['status'] == 'accepted'
    assert stored['reviewer_note'] == 'welcome'
    assert stored['reviewed_by'] == REVIEWER
    assert discord.role_grants == [(USER['id'], ROLE_IDS['member'])]
    assert discord.role_removals == [(USER['id'], ROLE_IDS['applicant'])]

    member = repos.roster.rows[result['clan_member_id']]
    assert member['uid'] == 'UID-1'
    assert member['discord_id'] == USER['id']
    assert member['resolution_status'] == 'resolved_manual'
    assert member['rank_current'] == 'Private'
    assert member['has_420_tag'] is True
    assert member['counting_since'] is not None
    assert member['source'] == 'application'

    assert 'application_accepted' in repos.audit.actions()
    assert 'application_clan_member_upserted' in repos.audit.actions()
    channel, content = discord.posts[-1]
    assert channel == '700000000000000002'
    assert content.startswith('✅ **Application accepted**')


def test_accept_links_existing_roster_row_by_uid(repos, discord, applications):
    existing = repos.roster.add(uid='UID-1', discord_name='old name', archive_reason='left_guild',
                                archived_at=datetime(2025, 1, 1, tzinfo=timezone.utc))
    app = pending_application(repos, discord)

    result = asyncio.run(applications.review(REVIEWER, app['id'], 'accept'))

    assert result['clan_member_created'] is False
    assert result['clan_member_id'] == existing['id']
    assert len(repos.roster.rows) == 1
    row = repos.roster.rows[existing['id']]
    assert row['discord_id'] == USER['id']
    assert row['discord_name'] == 'mike'
    assert row['archived_at'] is None


def test_failed_roster_step_is_reported_and_retryable(repos, discord, applications):
    existing = repos.roster.add(uid='UID-1')
    repos.roster.fail_updates_for.add(existing['id'])
    app = pending_application(repos, discord)

    result = asyncio.run(applications.review(REVIEWER, app['id'], 'accept'))

    assert result['ok'] is True
    assert result['clan_member_upsert_ok'] is False
    assert 'database unavailable' in result['clan_member_error']
    assert repos.applications.rows[app['id']]['status'] == 'accepted'
    assert 'application_clan_member_upsert_failed' in repos.audit.actions()

    repos.roster.fail_updates_for.clear()
    retried = asyncio.run(applications.review(REVIEWER, app['id'], 'retry_create_clan_member'))
    assert retried['action'] == 'retried'
    assert retried['clan_member_upsert_ok'] is True
    assert repos.roster.rows[existing['id']]['discord_id'] == USER['id']


def test_reject_records_decision_without_role_changes(repos, discord, applications):
    app = pending_application(repos, discord)

    result = asyncio.run(applications.review(REVIEWER, app['id'], 'reject', 'too young'))

    assert result['action'] == 'rejected'
    stored = repos.applications.rows[app['id']]
    assert stored['status'] == 'rejected'
    assert stored['reviewer_note'] == 'too young'
    assert discord.role_grants == []
    assert repos.roster.rows == {}
    assert repos.audit.actions() == ['application_rejected']

    with pytest.raises(Conflict):
        asyncio.run(applications.review(REVIEWER, app['id'], 'accept'))
    with pytest.raises(Conflict):
        asyncio.run(applications.review(REVIEWER, app['id'], 'retry_create_clan_member'))


def test_review_validation_and_discord_failures(repos, discord, applications):
    app = pending_application(repos, discord)

    with pytest.raises(BadRequest):
        asyncio.run(applications.review(REVIEWER, app['id'], 'maybe'))
    with pytest.raises(BadRequest):
        asyncio.run(applications.review(REVIEWER, app['id'], 'reject', 'x' * 1001))
    with pytest.raises(NotFound):
        asyncio.run(applications.review(REVIEWER, 404, 'accept'))

    discord.failing_role_users.add(USER['id'])
    with pytest.raises(ServiceUnavailable) as excinfo:
        asyncio.run(applications.review(REVIEWER, app['id'], 'accept'))
    assert excinfo.value.code == 'DISCORD_ROLE_FAILED'

    del discord.members[USER['id']]
    with pytest.raises(BadRequest) as excinfo:
        asyncio.run(applications.review(REVIEWER, app['id'], 'accept'))
    assert excinfo.value.code == 'DISCORD_NOT_IN_GUILD'
    assert repos.applications.rows[app['id']]['status'] == 'pending'


def test_archive_and_restore(repos, applications):
    app = repos.applications.add(discord_id='1', status='rejected', uid='1')

    assert asyncio.run(applications.archive('9', app['id'], 'archive', 'spam'))['action'] == 'archived'
    assert repos.applications.rows[app['id']]['archive_reason'] == 'spam'
    with pytest.raises(Conflict):
        asyncio.run(applications.archive('9', app['id'], 'archive'))

    assert asyncio.run(applications.archive('9', app['id'], 'restore'))['action'] == 'restored'
    assert repos.applications.rows[app['id']]['archived_at'] is None
    with pytest.raises(Conflict):
        asyncio.run(applications.archive('9', app['id'], 'restore'))

    with pytest.raises(NotFound):
        asyncio.run(applications.archive('9', 404, 'archive'))
    with pytest.raises(BadRequest):
        asyncio.run(applications.archive('9', app['id'], 'shred'))


def test_archive_all_only_touches_decided(repos, discord, applications):
    repos.applications.add(discord_id='1', status='accepted', uid='1')
    repos.applications.add(discord_id='2', status='rejected', uid='2')
    pending = repos.applications.add(discord_id='3', status='pending', uid='3')

    result = asyncio.run(applications.archive_all('9', ''))

    assert result['archived_count'] == 2
    assert repos.applications.rows[pending['id']]['archived_at'] is None
    assert 'Archived: 2 applications' in discord.posts[0][1]
    assert 'Reason: cleanup' in discord.posts[0][1]


def test_note_validation(repos, applications):
    app = repos.applications.add(discord_id='1', uid='1')
    with pytest.raises(BadRequest):
        asyncio.run(applications.add_note({'id': '9'}, app['id'], '   '))
    with pytest.raises(BadRequest):
        asyncio.run(applications.add_note({'id': '9'}, app['id'], 'x' * 1001))
    with pytest.raises(NotFound):
        asyncio.run(applications.add_note({'id': '9'}, 404, 'hello'))


NOW = datetime(2025, 8, 31, 18, 0, tzinfo=timezone.utc)


def test_ban_report_sets_appeal_date_and_pings_owner(repos, discord, ban_reports):
    result = asyncio.run(ban_reports.submit(USER, {
        'reason': 'other', 'custom_reason': 'wrong place', 'additional_context': 'details',
    }, NOW))

    assert result['appeal_available_at'] == '2026-02-28T18:00:00+00:00'
    channel, content = discord.posts[0]
    assert channel == '700000000000000004'
    assert content.startswith(f"<@&{ROLE_IDS['owner']}>\n")
    assert '**Custom Reason:** wrong place' in content
    assert '**Appeal Available After:** February 28, 2026' in content
    assert repos.audit.actions() == ['ban_report_submitted']


def test_ban_report_duplicate_within_a_day(ban_reports):
    asyncio.run(ban_reports.submit(USER, {'reason': 'cheating'}, NOW))

    with pytest.raises(Conflict) as excinfo:
        asyncio.run(ban_reports.submit(USER, {'reason': 'cheating'}, NOW + timedelta(hours=23)))
    assert excinfo.value.code == 'DUPLICATE_BAN_REPORT'

    later = asyncio.run(ban_reports.submit(USER, {'reason': 'cheating'}, NOW + timedelta(hours=25)))
    assert later['ok'] is True


def test_ban_report_validation(ban_reports):
    with pytest.raises(BadRequest):
        asyncio.run(ban_reports.submit(USER, {'reason': 'bored'}, NOW))
    with pytest.raises(BadRequest):
        asyncio.run(ban_reports.submit(USER, {'reason': 'other', 'custom_reason': ' '}, NOW))
