from __future__ import annotations

import pytest

from billtrack.errors import InvalidTransition
from billtrack.state_machine import (
    EventKind,
    TaskStatus,
    allowed_events,
    check_break,
    is_terminal,
    switch_in_event,
    transition,
)


@pytest.mark.parametrize(
    "current,event,expected",
    [
        (TaskStatus.NOT_STARTED, EventKind.START, TaskStatus.IN_PROGRESS),
        (TaskStatus.IN_PROGRESS, EventKind.PAUSE, TaskStatus.PAUSED),
        (TaskStatus.IN_PROGRESS, EventKind.SWITCH_TASK, TaskStatus.PAUSED),
        (TaskStatus.IN_PROGRESS, EventKind.COMPLETE, TaskStatus.COMPLETED),
        (TaskStatus.PAUSED, EventKind.RESUME, TaskStatus.IN_PROGRESS),
        (TaskStatus.NOT_STARTED, EventKind.CANCEL, TaskStatus.CANCELLED),
        (TaskStatus.PAUSED, EventKind.CANCEL, TaskStatus.CANCELLED),
        (TaskStatus.IN_PROGRESS, EventKind.CANCEL, TaskStatus.CANCELLED),
        (TaskStatus.IN_PROGRESS, EventKind.BREAK_START, TaskStatus.IN_PROGRESS),
    ],
)
def test_macro_transitions(current, event, expected) -> None:
    assert transition(current, event) is expected


def test_paused_task_cannot_complete_and_names_allowed_events() -> None:
    with pytest.raises(InvalidTransition) as excinfo:
        transition("paused", "complete")
    error = excinfo.value
    assert error.current_state == "paused"
    assert error.requested_event == "complete"
    assert error.allowed_events == ["cancel", "resume"]
    assert error.to_detail()["error"] == "invalid_transition"


@pytest.mark.parametrize("terminal", [TaskStatus.COMPLETED, TaskStatus.CANCELLED])
def test_terminal_states_allow_nothing(terminal) -> None:
    assert is_terminal(terminal)
    assert allowed_events(terminal) == set()
    with pytest.raises(InvalidTransition):
        transition(terminal, EventKind.RESUME)


def test_micro_tasks_never_pause() -> None:
    assert allowed_events("in_progress", subject="micro_task") == {"complete", "break_start", "break_end"}
    with pytest.raises(InvalidTransition):
        transition("in_progress", "pause", subject="micro_task")


def test_switch_target_edge_depends_on_state() -> None:
    assert switch_in_event("not_started") is EventKind.START
    assert switch_in_event("paused") is EventKind.RESUME
    with pytest.raises(InvalidTransition):
        switch_in_event("in_progress")
    with pytest.raises(InvalidTransition) as excinfo:
        switch_in_event("completed")
    assert excinfo.value.allowed_events == []


def test_break_sub_state_guards() -> None:
    check_break(False, EventKind.BREAK_START)
    check_break(True, EventKind.BREAK_END)
    with pytest.raises(InvalidTransition):
        check_break(True, EventKind.BREAK_START)
    with pytest.raises(InvalidTransition):
        check_break(False, EventKind.BREAK_END)
