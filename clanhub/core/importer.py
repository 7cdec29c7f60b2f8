"""Roster spreadsheet import: header aliasing and row normalization.

Rows arrive already parsed (one string-keyed mapping per spreadsheet row).
Headers are matched through an alias table that tolerates punctuation and
casing differences, so "Known as (nickname)" and "IGN" both land on ``ign``.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from clanhub.core.ranks import RankLadder
from clanhub.core.resolver import GuildMember, has_tag_in_name, resolve_discord_id
from clanhub.core.tenure import compute_time_days, is_counting
from clanhub.utils.constants import RESOLUTION_STATUS

_NON_ALNUM_RE = re.compile(r'[^a-z0-9 ]')
_SPACES_RE = re.compile(r'\s+')
_NEWLINES_RE = re.compile(r'[\r\n]+')
_SLASH_DATE_RE = re.compile(r'^(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})$')
_ISO_DATE_RE = re.compile(r'^(\d{4})-(\d{2})-(\d{2})')
_LEADING_INT_RE = re.compile(r'^\s*(-?\d+)')

# Excel serial day 25569 is 1970-01-01
EXCEL_EPOCH_OFFSET = 25569

IGNORED_FIELD = '_needs_role_updated'

HEADER_ALIASES: Dict[str, str] = {
    # discord name
    'discord name': 'discord_name',
    'discord': 'discord_name',
    'discord username': 'discord_name',
    'username': 'discord_name',

    # in-game name
    'ingame name': 'ign',
    'in game name': 'ign',
    'ign': 'ign',
    'known as nickname': 'ign',
    'known as': 'ign',
    'nickname': 'ign',

    # uid
    'uid': 'uid',
    'user id': 'uid',
    'id': 'uid',

    # join date
    'join date': 'join_date',
    'joined': 'join_date',
    'date joined': 'join_date',

    # time in clan
    'time in clan days': 'time_in_clan',
    'time in clan': 'time_in_clan',
    'days in clan': 'time_in_clan',

    # rank
    'role given': 'rank_current',
    'role': 'rank_current',
    'rank': 'rank_current',
    'current role': 'rank_current',

    # status
    'status': 'status',
    'active status': 'status',
    'activity': 'status',

    # tag
    'has 420 tag': 'has_420_tag',
    '420 tag': 'has_420_tag',
    'tag': 'has_420_tag',

    # mapped so they are recognised, then ignored
    'needs role updated': IGNORED_FIELD,
    'needs role update': IGNORED_FIELD,
    'needs promotion': IGNORED_FIELD,
    'promotion due': IGNORED_FIELD,
}

REQUIRED_FIELDS = (
    ('discord_name', 'Discord Name'),
    ('ign', 'Ingame Name (IGN)'),
    ('uid', 'UID'),
    ('join_date', 'Join Date'),
)

class RowError(ValueError):
    """A single spreadsheet row could not be imported"""

def canonical_key(raw: str) -> str:
    """"Known as (nickname)" -> "known as nickname"; "time_in_clan" -> "time in clan" """
    text = _NON_ALNUM_RE.sub(' ', (raw or '').lower().strip())
    return _SPACES_RE.sub(' ', text).strip()

@dataclass
class HeaderMapping:
    mapping: Dict[str, str] = field(default_factory=dict)
    resolved: Dict[str, str] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)

def build_header_mapping(headers: Sequence[str]) -> HeaderMapping:
    """Map uploaded headers to internal fields and list missing required columns"""
    result = HeaderMapping()
    for header in headers:
        internal = HEADER_ALIASES.get(canonical_key(header))
        if internal:
            result.mapping[header] = internal
            result.resolved[internal] = header

    result.missing = [label for name, label in REQUIRED_FIELDS if name not in result.resolved]
    return result

def normalize_row(raw: Mapping[str, Any], mapping: Dict[str, str]) -> Dict[str, Optional[str]]:
    """Project a raw row onto internal field names, flattening embedded newlines"""
    out: Dict[str, Optional[str]] = {}
    for key, value in raw.items():
        internal = mapping.get(key)
        if not internal:
            continue
        out[internal] = None if value is None else _NEWLINES_RE.sub(' ', str(value)).strip()
    return out

def _checked_date(year: int, month: int, day: int) -> Optional[date]:
    if not (1900 <= year <= 2100 and 1 <= month <= 12 and 1 <= day <= 31):
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None

def parse_date(raw: Any) -> Optional[date]:
    """Parse spreadsheet dates.

    Accepts Excel serial numbers, DD/MM/YYYY, MM/DD/YYYY (only when the first
    part cannot be a month) and ISO YYYY-MM-DD. Ambiguous slash dates are read
    day-first.
    """
    if raw is None or raw == '':
        return None

    text = str(raw).strip()

    try:
        serial = float(text)
    except ValueError:
        serial = None
    if serial is not None and 1000 < serial < 200000:
        # Noon offset keeps the conversion off the day boundary
        moment = datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(
            days=serial - EXCEL_EPOCH_OFFSET, hours=12
        )
        return moment.date()

    match = _SLASH_DATE_RE.match(text)
    if match:
        a, b, year = (int(g) for g in match.groups())
        if a > 12:
            day, month = a, b
        elif b > 12:
            day, month = b, a
        else:
            day, month = a, b
        parsed = _checked_date(year, month, day)
        if parsed:
            return parsed

    match = _ISO_DATE_RE.match(text)
    if match:
        year, month, day = (int(g) for g in match.groups())
        return _checked_date(year, month, day)

    return None

def parse_flag(raw: Optional[str]) -> bool:
    return (raw or '').strip().lower() in ('true', 'yes', '1')

def parse_days(raw: Optional[str]) -> int:
    match = _LEADING_INT_RE.match(raw or '')
    return max(0, int(match.group(1))) if match else 0

def build_import_record(row: Dict[str, Optional[str]],
                        ladder: RankLadder,
                        guild_members: List[GuildMember],
                        tag_marker: str,
                        now: datetime) -> Dict[str, Any]:
    """Turn one normalized row into a roster record, raising RowError on bad data.

    The spreadsheet's time-in-clan column is the source of truth for banked
    days. Active tagged members start counting from ``now``; everyone else
    stays frozen at that value.
    """
    if not row.get('discord_name'):
        raise RowError("empty Discord Name")
    if not row.get('ign'):
        raise RowError("empty Ingame Name")
    if not row.get('uid'):
        raise RowError("missing UID")

    join_date = parse_date(row.get('join_date'))
    if join_date is None:
        raise RowError("invalid or missing Join date")

    status = 'inactive' if (row.get('status') or '').lower() == 'inactive' else 'active'
    csv_rank = ladder.normalize(row.get('rank_current'))
    csv_days = parse_days(row.get('time_in_clan'))
    csv_tag = parse_flag(row.get('has_420_tag'))

    discord_id = None
    has_tag = csv_tag
    if guild_members:
        discord_id = resolve_discord_id(row['discord_name'], guild_members)
        if discord_id:
            member = next((m for m in guild_members if m.id == discord_id), None)
            if member is not None and has_tag_in_name(member, tag_marker):
                has_tag = True

    counting = is_counting(status, has_tag)
    counting_since = now if counting else None
    days = compute_time_days(csv_days, counting_since, now)

    # Keep whichever is higher: the spreadsheet rank or the rank the days earn
    final_idx = max(ladder.rank_index(csv_rank), ladder.ranks.index(ladder.earned_rank(days)))
    final_rank = ladder.ranks[final_idx].name

    nxt = ladder.next_rank_for(final_rank, days)
    eligible = counting and nxt is not None and days >= nxt.days_required
    reason = (
        f"{days} days in clan, meets {nxt.name} threshold ({nxt.days_required} days)"
        if eligible else None
    )

    return {
        'discord_name': row['discord_name'],
        'discord_id': discord_id,
        'ign': row['ign'],
        'uid': row['uid'],
        'join_date': join_date,
        'status': status,
        'has_420_tag': has_tag,
        'rank_current': final_rank,
        'rank_next': nxt.name if nxt else None,
        'frozen_days': csv_days,
        'counting_since': counting_since,
        'promote_eligible': eligible,
        'promote_reason': reason,
        'needs_resolution': discord_id is None,
        'resolution_status': RESOLUTION_STATUS['AUTO'] if discord_id else RESOLUTION_STATUS['UNRESOLVED'],
        'resolved_at': now if discord_id else None,
        'resolved_by': None,
        'source': 'csv',
        'updated_at': now,
    }
