"""
Rebase Engine — Window State Machine

Phase is a pure function of `now`:

    period_start = now - now % interval
    window       = [period_start + offset, period_start + offset + length)

A rebase is admissible when `now` is inside the window AND at least one full
interval has passed since the last rebase (or there was none).  A successful
rebase records the window-open boundary, never the raw `now`, so successive
rebases land exactly one interval apart.
"""

from __future__ import annotations

from typing import Optional

from rebase_types import (
    PolicyState,
    RebaseCallability,
    TimingParameters,
    WindowPhase,
)


def period_start(timing: TimingParameters, now: int) -> int:
    """Start of the period containing `now`."""
    return now - (now % timing.min_rebase_time_interval_sec)


def window_open_time(timing: TimingParameters, now: int) -> int:
    """Window-open boundary of the period containing `now`."""
    return period_start(timing, now) + timing.rebase_window_offset_sec


def window_phase(timing: TimingParameters, now: int) -> WindowPhase:
    position = now % timing.min_rebase_time_interval_sec
    if position < timing.rebase_window_offset_sec:
        return WindowPhase.BEFORE_WINDOW
    if position < timing.rebase_window_offset_sec + timing.rebase_window_length_sec:
        return WindowPhase.IN_WINDOW
    return WindowPhase.AFTER_WINDOW


def in_rebase_window(timing: TimingParameters, now: int) -> bool:
    return window_phase(timing, now) == WindowPhase.IN_WINDOW


def time_since_last_rebase(state: PolicyState, now: int) -> int:
    return now - state.last_rebase_timestamp_sec


def enough_time_elapsed(state: PolicyState, now: int) -> bool:
    """First rebase is constrained only by the window."""
    if state.last_rebase_timestamp_sec == 0:
        return True
    return time_since_last_rebase(state, now) >= state.timing.min_rebase_time_interval_sec


def snapped_rebase_timestamp(timing: TimingParameters, now: int) -> int:
    """Timestamp recorded on success: the open boundary of the current window."""
    return window_open_time(timing, now)


def timing_verdict(state: PolicyState, now: int) -> Optional[RebaseCallability]:
    """None when timing admits a rebase, else the blocking category (window first)."""
    if not in_rebase_window(state.timing, now):
        return RebaseCallability.NOT_IN_WINDOW
    if not enough_time_elapsed(state, now):
        return RebaseCallability.NOT_ENOUGH_TIME
    return None


def next_admissible_time(state: PolicyState, now: int) -> int:
    """Smallest t >= now at which timing_verdict(state, t) is None."""
    t = now
    if state.last_rebase_timestamp_sec != 0:
        t = max(t, state.last_rebase_timestamp_sec + state.timing.min_rebase_time_interval_sec)

    open_ = window_open_time(state.timing, t)
    if t < open_:
        return open_
    if t < open_ + state.timing.rebase_window_length_sec:
        return t
    return open_ + state.timing.min_rebase_time_interval_sec
