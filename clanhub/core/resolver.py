"""Identity resolution: map free-text names and game UIDs to guild members"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

SNOWFLAKE_RE = re.compile(r'^\d{17,20}$')
_WHITESPACE_RE = re.compile(r'\s+')
_NEWLINES_RE = re.compile(r'[\r\n]+')
_DISCRIMINATOR_RE = re.compile(r'#\d{2,6}$')
_BRACKETS_RE = re.compile(r'\[[^\]]*\]')
_SPECIAL_RE = re.compile(r'[^\w\s]|_')
_UID_STRIP_RE = re.compile(r'[^a-z0-9]')

SCORE_EXACT = 3
SCORE_PREFIX = 2
SCORE_SUBSTRING = 1

def normalize_lookup(value: Optional[str]) -> str:
    """Lowercase, flatten newlines, collapse whitespace"""
    text = _NEWLINES_RE.sub(' ', (value or '').lower())
    return _WHITESPACE_RE.sub(' ', text).strip()

def normalize_uid(value: Any) -> str:
    return _UID_STRIP_RE.sub('', str(value if value is not None else '').lower())

def is_snowflake(value: str) -> bool:
    return bool(SNOWFLAKE_RE.match(value or ''))

@dataclass(frozen=True)
class GuildMember:
    """One entry of the guild member directory"""
    id: str
    username: str
    global_name: Optional[str] = None
    nick: Optional[str] = None
    avatar: Optional[str] = None
    roles: tuple = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'GuildMember':
        user = payload.get('user') or {}
        return cls(
            id=str(user.get('id', '')),
            username=user.get('username') or '',
            global_name=user.get('global_name'),
            nick=payload.get('nick'),
            avatar=user.get('avatar'),
            roles=tuple(payload.get('roles') or ()),
        )

    @property
    def display_name(self) -> str:
        return self.nick or self.global_name or self.username

    def names(self) -> List[str]:
        return [n for n in (self.username, self.global_name, self.nick) if n]

    def normalized_names(self) -> List[str]:
        return [normalize_lookup(n) for n in (self.username, self.global_name or '', self.nick or '')]

@dataclass(frozen=True)
class Candidate:
    discord_id: str
    display_name: str
    username: str
    nick: Optional[str]
    score: int = 0

    @property
    def sublabel(self) -> str:
        suffix = f" (nick: {self.nick})" if self.nick else ""
        return f"@{self.username}{suffix}"

    @classmethod
    def from_member(cls, member: GuildMember, score: int = 0) -> 'Candidate':
        return cls(
            discord_id=member.id,
            display_name=member.display_name,
            username=member.username,
            nick=member.nick,
            score=score,
        )

def score_member(member: GuildMember, query: str) -> int:
    """3 exact, 2 prefix, 1 substring, 0 no match (``query`` pre-normalized)"""
    fields = [f for f in member.normalized_names() if f]
    if any(f == query for f in fields):
        return SCORE_EXACT
    if any(f.startswith(query) for f in fields):
        return SCORE_PREFIX
    if any(query in f for f in fields):
        return SCORE_SUBSTRING
    return 0

def search_candidates(members: Iterable[GuildMember], query: str,
                      limit: int = 20) -> List[Candidate]:
    """Rank guild members against ``query``; best score first, stable within a score"""
    q = normalize_lookup(query)
    if not q:
        return []

    scored = []
    for member in members:
        score = score_member(member, q)
        if score > 0:
            scored.append(Candidate.from_member(member, score))

    scored.sort(key=lambda c: c.score, reverse=True)
    return scored[:limit]

def resolve_discord_id(display_name: str, members: Iterable[GuildMember],
                       limit: int = 25) -> Optional[str]:
    """Discord ID when exactly one member matches, otherwise None"""
    candidates = search_candidates(members, display_name, limit)
    if len(candidates) == 1:
        return candidates[0].discord_id
    return None

def lookup_variants(name: str) -> List[str]:
    """Progressively cleaned spellings of a roster name, de-duplicated"""
    raw = (name or '').strip()
    if not raw:
        return []

    no_discriminator = _DISCRIMINATOR_RE.sub('', raw).strip()
    no_brackets = _BRACKETS_RE.sub(' ', no_discriminator).strip()
    no_special = _SPECIAL_RE.sub(' ', no_brackets).strip()

    variants = []
    for value in (raw, no_discriminator, no_brackets, no_special):
        normalized = normalize_lookup(value)
        if normalized and normalized not in variants:
            variants.append(normalized)
    return variants

def has_tag_in_name(member: GuildMember, marker: str) -> bool:
    """Substring check for the clan tag across all name fields"""
    needle = marker.upper()
    return any(needle in n.upper() for n in member.names())

def exact_matches(candidates: Iterable[Candidate], names: Set[str]) -> List[Candidate]:
    exact = []
    for c in candidates:
        fields = {normalize_lookup(n) for n in (c.username, c.display_name, c.nick or '')}
        if fields & names:
            exact.append(c)
    return exact

@dataclass
class NameMatch:
    """Outcome of matching one free-text name against the guild"""
    discord_id: Optional[str] = None
    candidates: List[Candidate] = field(default_factory=list)

    @property
    def ambiguous(self) -> bool:
        return self.discord_id is None and len(self.candidates) > 1

    @property
    def not_found(self) -> bool:
        return self.discord_id is None and not self.candidates

def match_name(name: str, members: List[GuildMember], limit: int = 20) -> NameMatch:
    """Exact matches win; a lone fuzzy match is accepted; several are ambiguous"""
    candidates = search_candidates(members, name, limit)
    exact = [c for c in candidates if c.score == SCORE_EXACT]

    if len(exact) == 1:
        return NameMatch(discord_id=exact[0].discord_id, candidates=exact)
    if len(exact) > 1:
        return NameMatch(candidates=exact)
    if len(candidates) == 1:
        return NameMatch(discord_id=candidates[0].discord_id, candidates=candidates)
    return NameMatch(candidates=candidates)

class UidDirectory:
    """UID -> Discord IDs, built from accepted and pending applications"""

    def __init__(self):
        self._map: Dict[str, Set[str]] = {}

    @classmethod
    def from_applications(cls, applications: Iterable[Mapping[str, Any]]) -> 'UidDirectory':
        directory = cls()
        for app in applications:
            directory.add(app.get('uid'), app.get('discord_id'))
        return directory

    def add(self, uid: Any, discord_id: Any) -> None:
        key = normalize_uid(uid)
        did = str(discord_id or '').strip()
        if key and did:
            self._map.setdefault(key, set()).add(did)

    def __len__(self) -> int:
        return len(self._map)

    def lookup(self, uid: Any) -> List[str]:
        return sorted(self._map.get(normalize_uid(uid), ()))

@dataclass
class RowResolution:
    discord_id: Optional[str]
    outcome: str  # resolved_uid | resolved_name | ambiguous_uid | ambiguous | not_found
    detail: str = ''
    uid_outcome: str = 'missing'  # matched | ambiguous | no_match | missing

def resolve_roster_row(discord_name: str, uid: Optional[str],
                       directory: UidDirectory,
                       members: List[GuildMember],
                       limit: int = 25) -> RowResolution:
    """Resolve one roster row: deterministic UID map first, then name variants.

    A UID mapped to several distinct Discord IDs is reported as ambiguous and
    never falls through to name matching.
    """
    uid_outcome = 'missing'
    if uid:
        mapped = directory.lookup(uid)
        if len(mapped) == 1:
            return RowResolution(mapped[0], 'resolved_uid', uid_outcome='matched')
        if len(mapped) > 1:
            return RowResolution(
                None, 'ambiguous_uid',
                detail=f"ambiguous_uid ({len(mapped)} application ids)",
                uid_outcome='ambiguous',
            )
        uid_outcome = 'no_match'

    variants = lookup_variants(discord_name)
    found: Dict[str, Candidate] = {}
    for variant in variants:
        for c in search_candidates(members, variant, limit):
            found.setdefault(c.discord_id, c)

    candidates = list(found.values())
    exact = exact_matches(candidates, set(variants))

    if len(exact) == 1:
        return RowResolution(exact[0].discord_id, 'resolved_name', uid_outcome=uid_outcome)
    if not exact and len(candidates) == 1:
        return RowResolution(candidates[0].discord_id, 'resolved_name', uid_outcome=uid_outcome)
    if len(exact) > 1 or len(candidates) > 1:
        return RowResolution(
            None, 'ambiguous',
            detail=f"ambiguous ({len(candidates)} matches)",
            uid_outcome=uid_outcome,
        )
    return RowResolution(None, 'not_found', detail='not_found', uid_outcome=uid_outcome)
