"""Duration and earnings derivation from a user's event sequence.

Everything here is pure: the functions take events, timestamps and billing
context and return values. Persistence of the results lives in ``services``.

Durations are summed as exact ``timedelta`` values and truncated to whole
minutes once per interval; money is derived from those minutes and rounded
half-up to cents once per interval.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .models import TimeLogEvent
from .retainers import allocate
from .state_machine import CLOSING_EVENTS, OPENING_EVENTS, EventKind
from .utils import amount_for_minutes, ensure_utc, whole_minutes

Span = Tuple[dt.datetime, dt.datetime]

ZERO = dt.timedelta(0)


def break_spans(events: Iterable[TimeLogEvent], opened_at: dt.datetime, closed_at: dt.datetime) -> List[Span]:
    """Break sub-intervals inside ``[opened_at, closed_at]``; a break still open ends at ``closed_at``."""
    spans: List[Span] = []
    started: Optional[dt.datetime] = None
    for event in events:
        kind = EventKind(event.kind)
        if kind is EventKind.BREAK_START and started is None:
            started = max(event.at, opened_at)
        elif kind is EventKind.BREAK_END and started is not None:
            spans.append((started, min(event.at, closed_at)))
            started = None
    if started is not None:
        spans.append((started, closed_at))
    return spans


def _overlap(span: Span, opened_at: dt.datetime, closed_at: dt.datetime) -> dt.timedelta:
    start = max(span[0], opened_at)
    end = min(span[1], closed_at)
    return max(end - start, ZERO)


def interval_durations(opened_at: dt.datetime, closed_at: dt.datetime, breaks: Sequence[Span]) -> Tuple[int, int]:
    """Return ``(elapsed_minutes, break_minutes)`` for a closed interval."""
    opened_at = ensure_utc(opened_at)
    closed_at = ensure_utc(closed_at)
    total = max(closed_at - opened_at, ZERO)
    paused = sum((_overlap(span, opened_at, closed_at) for span in breaks), ZERO)
    paused = min(paused, total)
    return whole_minutes(total - paused), whole_minutes(paused)


def elapsed_minutes(opened_at: dt.datetime, closed_at: dt.datetime, breaks: Sequence[Span]) -> int:
    return interval_durations(opened_at, closed_at, breaks)[0]


@dataclass(frozen=True)
class BillingContext:
    is_billable: bool
    hourly_rate: Decimal
    rate_source: str
    retainer_block_id: Optional[int] = None
    retainer_remaining: int = 0
    retainer_rate: Optional[Decimal] = None


@dataclass(frozen=True)
class Settlement:
    elapsed_minutes: int
    break_minutes: int
    is_billable: bool
    billable_minutes: int
    retainer_block_id: Optional[int]
    retainer_minutes: int
    direct_minutes: int
    hourly_rate: Decimal
    rate_source: str
    earnings: Decimal
    direct_amount: Decimal
    retainer_amount: Decimal


def settle(elapsed: int, break_minutes: int, context: BillingContext) -> Settlement:
    """Split a closed interval between retainer and direct billing and price it."""
    billable = elapsed if context.is_billable else 0
    retainer_minutes = 0
    if billable and context.retainer_block_id is not None:
        retainer_minutes, _ = allocate(context.retainer_remaining, billable)
    direct = billable - retainer_minutes
    return Settlement(
        elapsed_minutes=elapsed,
        break_minutes=break_minutes,
        is_billable=context.is_billable,
        billable_minutes=billable,
        retainer_block_id=context.retainer_block_id if retainer_minutes else None,
        retainer_minutes=retainer_minutes,
        direct_minutes=direct,
        hourly_rate=context.hourly_rate,
        rate_source=context.rate_source,
        earnings=amount_for_minutes(billable, context.hourly_rate),
        direct_amount=amount_for_minutes(direct, context.hourly_rate),
        retainer_amount=amount_for_minutes(retainer_minutes, context.retainer_rate),
    )


def working_minutes(events: Sequence[TimeLogEvent], task_id: Optional[int] = None) -> int:
    """Minutes between the first and last event while ``task_id`` held the open interval off break.

    The slice is expected to start at an event recorded while that task was
    working, such as a micro-task start.
    """
    if not events:
        return 0
    open_task = task_id if task_id is not None else events[0].macro_task_id
    parent = open_task
    on_break = False
    worked = ZERO
    previous = events[0].at
    for event in events[1:]:
        if open_task == parent and not on_break:
            worked += max(event.at - previous, ZERO)
        previous = event.at
        open_task, on_break = _working_state(event, open_task, on_break)
    return whole_minutes(worked)


def _working_state(event: TimeLogEvent, open_task: Optional[int], on_break: bool) -> Tuple[Optional[int], bool]:
    kind = EventKind(event.kind)
    if kind is EventKind.SWITCH_TASK or (event.micro_task_id is None and kind in OPENING_EVENTS):
        return event.macro_task_id, False
    if event.micro_task_id is None and kind in CLOSING_EVENTS:
        if event.macro_task_id == open_task:
            return None, False
        return open_task, on_break
    if kind is EventKind.BREAK_START:
        return open_task, True
    if kind is EventKind.BREAK_END:
        return open_task, False
    return open_task, on_break


@dataclass
class TaskTotals:
    actual_minutes: int = 0
    billable_minutes: int = 0
    retainer_minutes: int = 0
    earnings: Decimal = field(default_factory=lambda: Decimal("0.00"))


@dataclass
class MicroTotals:
    status: str = "not_started"
    actual_minutes: int = 0
    break_minutes: int = 0


@dataclass
class FoldResult:
    tasks: Dict[int, TaskTotals] = field(default_factory=dict)
    micro_tasks: Dict[int, MicroTotals] = field(default_factory=dict)
    open_task_id: Optional[int] = None


@dataclass
class _Open:
    event: TimeLogEvent
    task_id: int
    inside: List[TimeLogEvent] = field(default_factory=list)


def fold(events: Iterable[TimeLogEvent], retainer_by_close: Optional[Mapping[int, int]] = None) -> FoldResult:
    """Replay a user's full log from empty state into per-task and per-micro-task totals.

    Rates and billable flags come from the snapshots on opening events; the
    retainer share of each interval comes from the settlement ledger, keyed by
    the closing event id, so replay never debits a block twice.
    """
    retainer_by_close = retainer_by_close or {}
    result = FoldResult()
    current: Optional[_Open] = None
    micro_started: Dict[int, List[TimeLogEvent]] = {}
    micro_break: Dict[int, dt.datetime] = {}

    def close(closing: TimeLogEvent) -> None:
        nonlocal current
        if current is None:
            return
        opened_at = current.event.at
        spans = break_spans(current.inside, opened_at, closing.at)
        elapsed, _ = interval_durations(opened_at, closing.at, spans)
        totals = result.tasks.setdefault(current.task_id, TaskTotals())
        billable = elapsed if current.event.is_billable else 0
        totals.actual_minutes += elapsed
        totals.billable_minutes += billable
        totals.retainer_minutes += retainer_by_close.get(closing.id, 0)
        totals.earnings += amount_for_minutes(billable, current.event.hourly_rate)
        for micro_id, started in list(micro_break.items()):
            micro = result.micro_tasks.setdefault(micro_id, MicroTotals())
            micro.break_minutes += whole_minutes(closing.at - started)
            del micro_break[micro_id]
        current = None

    for event in events:
        kind = EventKind(event.kind)
        for slice_ in micro_started.values():
            slice_.append(event)
        if current is not None:
            current.inside.append(event)

        if event.micro_task_id is not None:
            micro = result.micro_tasks.setdefault(event.micro_task_id, MicroTotals())
            if kind is EventKind.START:
                micro.status = "in_progress"
                micro_started[event.micro_task_id] = [event]
            elif kind is EventKind.COMPLETE:
                micro.status = "completed"
                micro.actual_minutes += working_minutes(micro_started.pop(event.micro_task_id, [event]))
            elif kind is EventKind.BREAK_START:
                micro_break[event.micro_task_id] = event.at
            elif kind is EventKind.BREAK_END and event.micro_task_id in micro_break:
                micro.break_minutes += whole_minutes(event.at - micro_break.pop(event.micro_task_id))
            continue

        if kind in (EventKind.COMPLETE, EventKind.CANCEL):
            # Micro tasks still running close with their parent.
            for micro_id, slice_ in list(micro_started.items()):
                if slice_[0].macro_task_id == event.macro_task_id:
                    micro = result.micro_tasks.setdefault(micro_id, MicroTotals())
                    micro.status = "completed"
                    micro.actual_minutes += working_minutes(micro_started.pop(micro_id))

        if kind in OPENING_EVENTS and event.macro_task_id is not None:
            current = _Open(event=event, task_id=event.macro_task_id)
            result.tasks.setdefault(event.macro_task_id, TaskTotals())
        elif kind is EventKind.SWITCH_TASK:
            close(event)
            current = _Open(event=event, task_id=event.macro_task_id)
            result.tasks.setdefault(event.macro_task_id, TaskTotals())
        elif kind in CLOSING_EVENTS:
            result.tasks.setdefault(event.macro_task_id, TaskTotals())
            if current is not None and current.task_id == event.macro_task_id:
                close(event)

    result.open_task_id = current.task_id if current is not None else None
    return result
