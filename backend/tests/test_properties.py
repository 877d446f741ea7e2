"""
Property-based tests for the billing invariants using Hypothesis.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

from billtrack.calculator import interval_durations
from billtrack.errors import ConflictingTimer
from billtrack.event_store import IntervalTracker, _check_interval, count_open_intervals
from billtrack.models import RateRecord, TimeLogEvent, TimerHead
from billtrack.rates import USER_DEFAULT, closing_date, resolve_from_records
from billtrack.retainers import allocate
from billtrack.state_machine import EventKind

from helpers import T0

# ============================================================================
# Duration conservation
# ============================================================================


@given(
    gaps=st.lists(st.tuples(st.integers(0, 3600), st.integers(0, 3600)), max_size=6),
    tail=st.integers(0, 7200),
)
def test_elapsed_is_wall_clock_minus_breaks(gaps, tail):
    """Breaks laid end to end inside the interval are subtracted exactly once."""
    cursor = T0
    spans = []
    break_seconds = 0
    for work, pause in gaps:
        start = cursor + dt.timedelta(seconds=work)
        end = start + dt.timedelta(seconds=pause)
        spans.append((start, end))
        break_seconds += pause
        cursor = end
    closed_at = cursor + dt.timedelta(seconds=tail)
    total_seconds = int((closed_at - T0).total_seconds())

    elapsed, paused = interval_durations(T0, closed_at, spans)
    assert elapsed >= 0
    assert elapsed == (total_seconds - break_seconds) // 60
    assert paused == break_seconds // 60
    assert elapsed + paused <= total_seconds // 60


@given(st.integers(-3600, 0))
def test_inverted_interval_is_empty(offset):
    assert interval_durations(T0, T0 + dt.timedelta(seconds=offset), []) == (0, 0)


# ============================================================================
# Retainer conservation
# ============================================================================


@given(st.integers(0, 10_000), st.integers(0, 10_000))
def test_allocation_conserves_minutes(remaining, requested):
    debited, overflow = allocate(remaining, requested)
    assert debited + overflow == requested
    assert 0 <= debited <= remaining


@given(st.integers(1, 6000), st.lists(st.integers(0, 600), max_size=30))
def test_block_is_never_overdrawn(purchased, intervals):
    used = 0
    direct = 0
    for minutes in intervals:
        debited, overflow = allocate(purchased - used, minutes)
        used += debited
        direct += overflow
    assert used <= purchased
    assert used + direct == sum(intervals)


# ============================================================================
# Rate stability
# ============================================================================


@settings(max_examples=50)
@given(
    steps=st.lists(
        st.tuples(st.integers(1, 60), st.integers(1, 500)),
        min_size=1,
        max_size=8,
    ),
    day_offset=st.integers(0, 500),
)
def test_later_rate_never_rewrites_history(steps, day_offset):
    """Every date keeps the rate that was in force before later records were assigned."""
    records = []
    seen = {}
    effective = dt.date(2024, 1, 1)
    for index, (delay, rate) in enumerate(steps):
        if records:
            effective = effective + dt.timedelta(days=delay)
            records[-1].end_date = closing_date(records[-1], effective)
        records.append(
            RateRecord(
                id=index + 1,
                org_id="acme",
                rate_type=USER_DEFAULT,
                user_id="alice",
                hourly_rate=Decimal(rate),
                effective_date=effective,
            )
        )
        day = dt.date(2024, 1, 1) + dt.timedelta(days=day_offset)
        resolved = resolve_from_records(records, "alice", None, None, day)
        if day < effective:
            assert resolved.hourly_rate == seen[day]
        seen[day] = resolved.hourly_rate


# ============================================================================
# Single open interval
# ============================================================================

COMMANDS = st.lists(
    st.tuples(
        st.sampled_from(list(EventKind)),
        st.integers(1, 3),
        st.integers(1, 3),
    ),
    max_size=40,
)


@given(COMMANDS)
def test_at_most_one_interval_is_open(commands):
    head = TimerHead(user_id="alice", last_sequence=0)
    tracker = IntervalTracker()
    events = []
    for sequence, (kind, task_id, previous_id) in enumerate(commands, start=1):
        previous = previous_id if kind is EventKind.SWITCH_TASK else None
        try:
            _check_interval(head, kind, task_id, None, previous)
        except ConflictingTimer:
            continue
        event = TimeLogEvent(
            id=sequence,
            sequence=sequence,
            kind=kind.value,
            macro_task_id=task_id,
            previous_task_id=previous,
            timestamp=T0 + dt.timedelta(minutes=sequence),
        )
        events.append(event)
        tracker.advance(event)
        head.open_task_id = tracker.open_task_id
        head.open_event_id = tracker.open_event_id

        open_count = count_open_intervals(events)
        assert open_count <= 1
        assert open_count == (1 if tracker.is_open else 0)
