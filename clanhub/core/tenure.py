"""Time-in-clan accounting.

Tenure is stored as a pair: ``frozen_days`` (whole days already banked) and
``counting_since`` (when the live counter last started, or ``None`` while
paused). The counter only runs while a member is both active and wearing the
clan tag.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

DAY_SECONDS = 86_400

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

def elapsed_days(since: datetime, now: Optional[datetime] = None) -> int:
    """Whole days between ``since`` and ``now``, never negative"""
    now = _as_aware(now or utcnow())
    seconds = (now - _as_aware(since)).total_seconds()
    return max(0, int(seconds // DAY_SECONDS))

def compute_time_days(frozen_days: Optional[int],
                      counting_since: Optional[datetime],
                      now: Optional[datetime] = None) -> int:
    """Effective days in clan: banked days plus the running counter"""
    frozen = max(0, frozen_days or 0)
    if counting_since is None:
        return frozen
    return frozen + elapsed_days(counting_since, now)

def is_counting(status: Optional[str], has_tag: Optional[bool]) -> bool:
    return status == 'active' and bool(has_tag)

@dataclass(frozen=True)
class TenureState:
    frozen_days: int
    counting_since: Optional[datetime]

    @property
    def paused(self) -> bool:
        return self.counting_since is None

    def days(self, now: Optional[datetime] = None) -> int:
        return compute_time_days(self.frozen_days, self.counting_since, now)

def apply_status_change(state: TenureState,
                        was_counting: bool,
                        now_counting: bool,
                        now: Optional[datetime] = None) -> TenureState:
    """Freeze or unfreeze the counter when the active+tagged condition flips.

    Counting -> paused folds the elapsed whole days into ``frozen_days`` and
    clears ``counting_since``. Paused -> counting starts the counter at
    ``now`` and leaves ``frozen_days`` untouched. Anything else is a no-op.
    """
    now = now or utcnow()

    if was_counting and not now_counting:
        frozen = max(0, state.frozen_days or 0)
        if state.counting_since is not None:
            frozen += elapsed_days(state.counting_since, now)
        return TenureState(frozen_days=frozen, counting_since=None)

    if not was_counting and now_counting:
        return TenureState(frozen_days=max(0, state.frozen_days or 0), counting_since=now)

    return state
