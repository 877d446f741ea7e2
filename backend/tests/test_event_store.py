from __future__ import annotations

import base64

import pytest

from billtrack.errors import CLOCK_SKEW_CLAMPED, ClockSkewExceeded, ConflictingTimer
from billtrack.event_store import (
    CLAMP_STEP,
    append,
    decode_cursor,
    encode_cursor,
    events_since,
    load_head,
    page_events,
    rebuild_head,
)
from billtrack.state_machine import EventKind

from helpers import at

TOLERANCE_MS = 5000


def _append(session, head, kind, moment, **kwargs):
    return append(session, head, kind, moment, tolerance_ms=TOLERANCE_MS, org_id="acme", **kwargs)


def test_sequences_are_dense_per_user(session) -> None:
    head = load_head(session, "bob")
    other = load_head(session, "carol")
    first = _append(session, head, EventKind.START, at(0), macro_task_id=1).event
    second = _append(session, head, EventKind.PAUSE, at(5), macro_task_id=1).event
    foreign = _append(session, other, EventKind.START, at(1), macro_task_id=2).event
    assert (first.sequence, second.sequence) == (1, 2)
    assert foreign.sequence == 1
    assert head.last_sequence == 2
    assert head.open_task_id is None


def test_small_skew_is_clamped_after_last_event(session) -> None:
    head = load_head(session, "bob")
    _append(session, head, EventKind.START, at(10), macro_task_id=1)
    result = _append(session, head, EventKind.BREAK_START, at(10, -2), macro_task_id=1)
    assert result.event.at == at(10) + CLAMP_STEP
    assert [notice.code for notice in result.notices] == [CLOCK_SKEW_CLAMPED]


def test_large_skew_is_rejected(session) -> None:
    head = load_head(session, "bob")
    _append(session, head, EventKind.START, at(10), macro_task_id=1)
    with pytest.raises(ClockSkewExceeded) as excinfo:
        _append(session, head, EventKind.PAUSE, at(10, -6), macro_task_id=1)
    assert excinfo.value.to_detail()["tolerance_ms"] == TOLERANCE_MS
    assert head.last_sequence == 1


def test_second_opener_conflicts_with_open_interval(session) -> None:
    head = load_head(session, "bob")
    _append(session, head, EventKind.START, at(0), macro_task_id=1)
    with pytest.raises(ConflictingTimer) as excinfo:
        _append(session, head, EventKind.START, at(1), macro_task_id=2)
    assert excinfo.value.open_task_id == 1


def test_switch_must_name_the_open_task(session) -> None:
    head = load_head(session, "bob")
    _append(session, head, EventKind.START, at(0), macro_task_id=1)
    with pytest.raises(ConflictingTimer):
        _append(session, head, EventKind.SWITCH_TASK, at(1), macro_task_id=3, previous_task_id=2)
    switched = _append(session, head, EventKind.SWITCH_TASK, at(1), macro_task_id=3, previous_task_id=1)
    assert head.open_task_id == 3
    assert head.open_event_id == switched.event.id


def test_cancel_of_idle_task_keeps_interval_open(session) -> None:
    head = load_head(session, "bob")
    opener = _append(session, head, EventKind.START, at(0), macro_task_id=1).event
    _append(session, head, EventKind.CANCEL, at(1), macro_task_id=2)
    assert head.open_task_id == 1
    assert head.open_event_id == opener.id


def test_cursor_pages_resume_where_they_left_off(session) -> None:
    head = load_head(session, "bob")
    _append(session, head, EventKind.START, at(0), macro_task_id=1)
    _append(session, head, EventKind.BREAK_START, at(1), macro_task_id=1)
    _append(session, head, EventKind.BREAK_END, at(2), macro_task_id=1)
    _append(session, head, EventKind.PAUSE, at(3), macro_task_id=1)

    page, cursor = page_events(session, "bob", None, 3)
    assert [event.sequence for event in page] == [1, 2, 3]
    rest, final = page_events(session, "bob", cursor, 3)
    assert [event.sequence for event in rest] == [4]
    empty, unchanged = page_events(session, "bob", final, 3)
    assert empty == []
    assert unchanged == final

    lazy = events_since(session, "bob", encode_cursor(1), batch_size=2)
    assert [event.sequence for event in lazy] == [2, 3, 4]


def test_malformed_cursor_is_rejected() -> None:
    assert decode_cursor(encode_cursor(42)) == 42
    assert decode_cursor(None) == 0
    foreign = base64.urlsafe_b64encode(b"page:3").decode("utf-8")
    with pytest.raises(ValueError):
        decode_cursor(foreign)
    with pytest.raises(ValueError):
        decode_cursor(encode_cursor(7)[:-1] + "~")


def test_rebuilt_head_matches_incremental_head(session) -> None:
    head = load_head(session, "bob")
    _append(session, head, EventKind.START, at(0), macro_task_id=1)
    _append(session, head, EventKind.SWITCH_TASK, at(10), macro_task_id=2, previous_task_id=1)
    _append(session, head, EventKind.BREAK_START, at(12), macro_task_id=2)
    session.flush()
    expected = (head.last_sequence, head.last_at, head.open_event_id, head.open_task_id, head.break_event_id)

    head.open_event_id = None
    head.open_task_id = None
    head.break_event_id = None
    head.last_sequence = 0
    rebuilt = rebuild_head(session, "bob")
    assert rebuilt is head
    assert (rebuilt.last_sequence, rebuilt.last_at, rebuilt.open_event_id, rebuilt.open_task_id, rebuilt.break_event_id) == expected
