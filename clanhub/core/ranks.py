"""Rank ladder and promotion eligibility"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

from clanhub.utils.constants import RANK_DEFINITIONS

@dataclass(frozen=True)
class RankDef:
    name: str
    role_id: Optional[str]
    days_required: int

@dataclass(frozen=True)
class PromotionFields:
    """Derived, cacheable promotion columns for one roster member"""
    time_in_clan_days: int
    rank_next: Optional[str]
    promote_eligible: bool
    promote_reason: Optional[str]
    days_until_next_rank: Union[int, str]

class RankLadder:
    """Ordered rank table; list position is the total order used for comparison"""

    def __init__(self, ranks: Iterable[RankDef]):
        self.ranks: List[RankDef] = list(ranks)
        if not self.ranks:
            raise ValueError("Rank ladder must not be empty")
        for lower, upper in zip(self.ranks, self.ranks[1:]):
            if upper.days_required <= lower.days_required:
                raise ValueError(
                    f"Rank {upper.name} must require more days than {lower.name}"
                )

    @classmethod
    def from_role_ids(cls, role_ids: Dict[str, Optional[str]]) -> 'RankLadder':
        """Build the standard ladder, looking up each rank's Discord role ID"""
        return cls(
            RankDef(name=name, role_id=role_ids.get(key) if key else None, days_required=days)
            for name, key, days in RANK_DEFINITIONS
        )

    def __len__(self) -> int:
        return len(self.ranks)

    def __iter__(self):
        return iter(self.ranks)

    @property
    def bottom(self) -> RankDef:
        return self.ranks[0]

    @property
    def top_index(self) -> int:
        return len(self.ranks) - 1

    def rank_index(self, name: Optional[str]) -> int:
        """Position of ``name`` in the ladder (case-insensitive).

        Unknown or missing names fall back to 0 (the bottom rank); existing
        rows with malformed rank text keep working as the bottom rank.
        """
        if name:
            lowered = name.strip().lower()
            for idx, rank in enumerate(self.ranks):
                if rank.name.lower() == lowered:
                    return idx
        return 0

    def get(self, name: Optional[str]) -> Optional[RankDef]:
        """Exact rank by name, or None when the name is not on the ladder"""
        if not name:
            return None
        lowered = name.strip().lower()
        return next((r for r in self.ranks if r.name.lower() == lowered), None)

    def normalize(self, name: Optional[str]) -> str:
        """Canonical rank name, defaulting to the bottom rank"""
        return self.ranks[self.rank_index(name)].name

    def earned_rank(self, days: int) -> RankDef:
        """Highest rank whose threshold is met by ``days``"""
        earned = self.ranks[0]
        for rank in self.ranks:
            if days >= rank.days_required:
                earned = rank
        return earned

    def next_rank_for(self, current_rank: Optional[str], days: int = 0) -> Optional[RankDef]:
        """Rank immediately above ``current_rank``, or None at the top.

        The upcoming rank is returned whether or not ``days`` meets it yet.
        """
        idx = self.rank_index(current_rank)
        if idx >= self.top_index:
            return None
        return self.ranks[idx + 1]

    def is_promotion_due(self, current_rank: Optional[str], days: int) -> bool:
        current_idx = self.rank_index(current_rank)
        earned_idx = self.ranks.index(self.earned_rank(days))
        return earned_idx > current_idx and current_idx < self.top_index

    def role_ids(self) -> List[str]:
        return [r.role_id for r in self.ranks if r.role_id]

    def holds_ranked_role(self, roles: Iterable[str]) -> bool:
        """True if any promoted-rank role is held"""
        held = set(roles)
        return any(role_id in held for role_id in self.role_ids())

    def highest_held_rank(self, roles: Iterable[str]) -> RankDef:
        """Highest rank whose Discord role is held, else the bottom rank"""
        held = set(roles)
        for rank in reversed(self.ranks):
            if rank.role_id and rank.role_id in held:
                return rank
        return self.ranks[0]

    def role_mention(self, rank_name: str) -> str:
        rank = self.get(rank_name)
        return f"<@&{rank.role_id}>" if rank and rank.role_id else rank_name

    def promotion_reason(self, days: int) -> str:
        earned = self.earned_rank(days)
        return f"{days} days in clan, meets {earned.name} threshold ({earned.days_required} days)"

    def promotion_fields(self, current_rank: Optional[str], days: int,
                         counting: bool) -> PromotionFields:
        """Derive rank_next / promote_eligible / promote_reason / countdown"""
        current_idx = self.rank_index(current_rank)
        nxt = self.next_rank_for(current_rank, days)
        eligible = counting and self.is_promotion_due(current_rank, days)

        if current_idx >= self.top_index or nxt is None:
            until: Union[int, str] = "Max rank"
        elif not counting:
            until = "Paused"
        elif days >= nxt.days_required:
            until = "Ready"
        else:
            until = max(0, nxt.days_required - days)

        return PromotionFields(
            time_in_clan_days=days,
            rank_next=nxt.name if nxt else None,
            promote_eligible=eligible,
            promote_reason=self.promotion_reason(days) if eligible else None,
            days_until_next_rank=until,
        )
