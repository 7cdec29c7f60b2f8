from datetime import datetime, timedelta, timezone

from clanhub.core.tenure import (
    TenureState, apply_status_change, compute_time_days, elapsed_days, is_counting
)

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_frozen_counter_returns_banked_days():
    assert compute_time_days(10, None, T0) == 10
    assert compute_time_days(10, None, T0 + timedelta(days=400)) == 10


def test_running_counter_adds_whole_days():
    assert compute_time_days(5, T0, T0 + timedelta(days=2, hours=23)) == 7
    assert compute_time_days(None, T0, T0 + timedelta(days=1)) == 1


def test_counter_is_monotonic_in_wall_clock():
    values = [compute_time_days(3, T0, T0 + timedelta(hours=h)) for h in range(0, 24 * 10, 7)]
    assert values == sorted(values)


def test_future_start_never_goes_negative():
    assert elapsed_days(T0 + timedelta(days=3), T0) == 0
    assert compute_time_days(4, T0 + timedelta(days=3), T0) == 4


def test_naive_timestamps_are_treated_as_utc():
    naive = T0.replace(tzinfo=None)
    assert compute_time_days(0, naive, T0 + timedelta(days=5)) == 5


def test_counting_requires_active_and_tag():
    assert is_counting('active', True)
    assert not is_counting('inactive', True)
    assert not is_counting('active', False)
    assert not is_counting(None, None)


def test_freeze_unfreeze_round_trip():
    state = TenureState(frozen_days=10, counting_since=None)

    state = apply_status_change(state, was_counting=False, now_counting=True, now=T0)
    assert state.frozen_days == 10
    assert state.counting_since == T0

    state = apply_status_change(state, was_counting=True, now_counting=False,
                                now=T0 + timedelta(days=3))
    assert state.frozen_days == 13
    assert state.counting_since is None

    resumed = apply_status_change(state, was_counting=False, now_counting=True,
                                  now=T0 + timedelta(days=3))
    assert resumed.frozen_days == 13
    assert resumed.counting_since == T0 + timedelta(days=3)


def test_repeated_toggles_within_a_day_fold_nothing():
    state = TenureState(frozen_days=7, counting_since=None)
    now = T0
    for _ in range(5):
        state = apply_status_change(state, False, True, now)
        now += timedelta(hours=2)
        state = apply_status_change(state, True, False, now)
    assert state.frozen_days == 7
    assert state.paused


def test_unchanged_condition_is_a_no_op():
    state = TenureState(frozen_days=2, counting_since=T0)
    assert apply_status_change(state, True, True, T0 + timedelta(days=9)) is state
    paused = TenureState(frozen_days=2, counting_since=None)
    assert apply_status_change(paused, False, False, T0) is paused
