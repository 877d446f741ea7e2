"""Task lifecycle: a single transition table and the choke point every change passes through."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Set, Tuple

from .errors import InvalidTransition


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EventKind(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    BREAK_START = "break_start"
    BREAK_END = "break_end"
    COMPLETE = "complete"
    SWITCH_TASK = "switch_task"
    CANCEL = "cancel"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


TERMINAL_STATES: FrozenSet[TaskStatus] = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})

OPENING_EVENTS: FrozenSet[EventKind] = frozenset({EventKind.START, EventKind.RESUME})
CLOSING_EVENTS: FrozenSet[EventKind] = frozenset({EventKind.PAUSE, EventKind.COMPLETE, EventKind.CANCEL})
BREAK_EVENTS: FrozenSet[EventKind] = frozenset({EventKind.BREAK_START, EventKind.BREAK_END})

Table = Mapping[Tuple[TaskStatus, EventKind], TaskStatus]

MACRO_TRANSITIONS: Table = {
    (TaskStatus.NOT_STARTED, EventKind.START): TaskStatus.IN_PROGRESS,
    (TaskStatus.IN_PROGRESS, EventKind.PAUSE): TaskStatus.PAUSED,
    (TaskStatus.IN_PROGRESS, EventKind.SWITCH_TASK): TaskStatus.PAUSED,
    (TaskStatus.IN_PROGRESS, EventKind.COMPLETE): TaskStatus.COMPLETED,
    (TaskStatus.IN_PROGRESS, EventKind.BREAK_START): TaskStatus.IN_PROGRESS,
    (TaskStatus.IN_PROGRESS, EventKind.BREAK_END): TaskStatus.IN_PROGRESS,
    (TaskStatus.PAUSED, EventKind.RESUME): TaskStatus.IN_PROGRESS,
    (TaskStatus.NOT_STARTED, EventKind.CANCEL): TaskStatus.CANCELLED,
    (TaskStatus.IN_PROGRESS, EventKind.CANCEL): TaskStatus.CANCELLED,
    (TaskStatus.PAUSED, EventKind.CANCEL): TaskStatus.CANCELLED,
}

# Micro tasks never pause or cancel; breaks are a sub-state that keeps them in progress.
MICRO_TRANSITIONS: Table = {
    (TaskStatus.NOT_STARTED, EventKind.START): TaskStatus.IN_PROGRESS,
    (TaskStatus.IN_PROGRESS, EventKind.COMPLETE): TaskStatus.COMPLETED,
    (TaskStatus.IN_PROGRESS, EventKind.BREAK_START): TaskStatus.IN_PROGRESS,
    (TaskStatus.IN_PROGRESS, EventKind.BREAK_END): TaskStatus.IN_PROGRESS,
}


def _tables() -> Dict[str, Table]:
    return {"task": MACRO_TRANSITIONS, "micro_task": MICRO_TRANSITIONS}


def allowed_events(current: TaskStatus | str, subject: str = "task") -> Set[str]:
    state = TaskStatus(current)
    return {event.value for (source, event) in _tables()[subject] if source == state}


def transition(current: TaskStatus | str, requested: EventKind | str, subject: str = "task") -> TaskStatus:
    """Return the state reached by applying ``requested`` or raise :class:`InvalidTransition`."""
    state = TaskStatus(current)
    event = EventKind(requested)
    target = _tables()[subject].get((state, event))
    if target is None:
        raise InvalidTransition(state.value, event.value, allowed_events(state, subject), subject=subject)
    return target


def switch_in_event(current: TaskStatus | str) -> EventKind:
    """Edge used by the target of a switch: ``start`` when fresh, ``resume`` when paused."""
    state = TaskStatus(current)
    if state is TaskStatus.NOT_STARTED:
        return EventKind.START
    if state is TaskStatus.PAUSED:
        return EventKind.RESUME
    raise InvalidTransition(
        state.value,
        EventKind.SWITCH_TASK.value,
        [EventKind.START.value, EventKind.RESUME.value] if state not in TERMINAL_STATES else [],
    )


def check_break(on_break: bool, requested: EventKind | str, subject: str = "task") -> None:
    event = EventKind(requested)
    if event is EventKind.BREAK_START and on_break:
        raise InvalidTransition("on_break", event.value, [EventKind.BREAK_END.value], subject=subject)
    if event is EventKind.BREAK_END and not on_break:
        raise InvalidTransition("working", event.value, [EventKind.BREAK_START.value], subject=subject)


def is_terminal(current: TaskStatus | str) -> bool:
    return TaskStatus(current) in TERMINAL_STATES


def kinds(values: Iterable[EventKind]) -> Tuple[str, ...]:
    return tuple(value.value for value in values)
