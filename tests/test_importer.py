from datetime import date, datetime, timezone

import pytest
from conftest import guild_member

from clanhub.core.importer import (
    IGNORED_FIELD, RowError, build_header_mapping, build_import_record, canonical_key,
    normalize_row, parse_date, parse_days, parse_flag
)

NOW = datetime(2025, 6, 1, 9, 30, tzinfo=timezone.utc)

HEADERS = ['Discord Name', 'Known as (nickname)', 'UID', 'Join Date',
           'Time in Clan (days)', 'Role Given', 'Status', 'Has 420 Tag', 'Needs Role Updated?']


def test_canonical_key_strips_punctuation():
    assert canonical_key('Known as (nickname)') == 'known as nickname'
    assert canonical_key('  Time_in_Clan ') == 'time in clan'
    assert canonical_key(None) == ''


def test_header_mapping_resolves_aliases():
    result = build_header_mapping(HEADERS)
    assert result.missing == []
    assert result.resolved['ign'] == 'Known as (nickname)'
    assert result.mapping['Needs Role Updated?'] == IGNORED_FIELD
    assert 'Extra' not in result.mapping


def test_header_mapping_reports_missing_labels():
    result = build_header_mapping(['Discord', 'Rank'])
    assert result.missing == ['Ingame Name (IGN)', 'UID', 'Join Date']


def test_normalize_row_flattens_newlines_and_drops_unknown_columns():
    mapping = build_header_mapping(HEADERS + ['Notes']).mapping
    row = normalize_row({'Discord Name': 'Big\nMike ', 'Notes': 'x', 'UID': 42}, mapping)
    assert row == {'discord_name': 'Big Mike', 'uid': '42'}


@pytest.mark.parametrize('raw, expected', [
    ('45292', date(2024, 1, 1)),
    (45292.25, date(2024, 1, 1)),
    ('25/12/2023', date(2023, 12, 25)),
    ('12/25/2023', date(2023, 12, 25)),
    ('03/04/2024', date(2024, 4, 3)),
    ('2024-02-29', date(2024, 2, 29)),
    ('2024-02-29T10:00:00Z', date(2024, 2, 29)),
])
def test_parse_date_accepts_spreadsheet_formats(raw, expected):
    assert parse_date(raw) == expected


@pytest.mark.parametrize('raw', [None, '', 'soon', '31/02/2024', '2023-13-01', '999'])
def test_parse_date_rejects_garbage(raw):
    assert parse_date(raw) is None


def test_flag_and_day_parsing():
    assert parse_flag('Yes') and parse_flag('TRUE') and parse_flag('1')
    assert not parse_flag('no') and not parse_flag(None)
    assert parse_days('42 days') == 42
    assert parse_days('-5') == 0
    assert parse_days('n/a') == 0


def _row(**overrides):
    row = {
        'discord_name': 'M1K3', 'ign': 'mike', 'uid': '1001', 'join_date': '01/02/2024',
        'time_in_clan': '35', 'rank_current': 'Private', 'status': 'Active', 'has_420_tag': 'yes',
    }
    row.update(overrides)
    return row


def test_record_keeps_higher_of_sheet_rank_and_earned_rank(ladder):
    record = build_import_record(_row(), ladder, [], '420', NOW)
    assert record['rank_current'] == 'Sergeant'
    assert record['rank_next'] == 'Lieutenant'
    assert record['frozen_days'] == 35
    assert record['counting_since'] == NOW
    assert record['join_date'] == date(2024, 2, 1)
    assert record['source'] == 'csv'
    assert record['needs_resolution']
    assert record['resolution_status'] == 'unresolved'

    higher = build_import_record(_row(rank_current='major'), ladder, [], '420', NOW)
    assert higher['rank_current'] == 'Major'
    assert higher['rank_next'] is None


def test_inactive_rows_stay_frozen(ladder):
    record = build_import_record(_row(status='inactive'), ladder, [], '420', NOW)
    assert record['status'] == 'inactive'
    assert record['counting_since'] is None
    assert not record['promote_eligible']


def test_record_resolves_and_detects_tag_from_guild(ladder):
    members = [guild_member('123456789012345678', 'm1k3', nick='[420] M1K3')]
    record = build_import_record(_row(has_420_tag='no'), ladder, members, '420', NOW)
    assert record['discord_id'] == '123456789012345678'
    assert record['has_420_tag'] is True
    assert record['resolution_status'] == 'resolved_auto'
    assert record['resolved_at'] == NOW


@pytest.mark.parametrize('overrides, message', [
    ({'discord_name': ''}, 'empty Discord Name'),
    ({'ign': None}, 'empty Ingame Name'),
    ({'uid': ''}, 'missing UID'),
    ({'join_date': 'yesterday'}, 'invalid or missing Join date'),
])
def test_bad_rows_raise(ladder, overrides, message):
    with pytest.raises(RowError, match=message):
        build_import_record(_row(**overrides), ladder, [], '420', NOW)
