from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import presence as presence_projection
from .calculator import (
    BillingContext,
    TaskTotals,
    break_spans,
    fold,
    interval_durations,
    settle,
    working_minutes,
)
from .config import LOCAL_TZ
from .errors import ConcurrentUpdate, ConflictingTimer, InvalidTransition, Notice
from .event_store import (
    append,
    events_after,
    events_since,
    load_head,
    page_events,
    rebuild_head,
    resolve_timestamp,
    user_locks,
)
from .middleware import Identity
from .models import IntervalSettlement, MacroTask, MicroTask, TimeLogEvent, TimerHead
from .rates import resolve
from .retainers import debit, find_active_block
from .state import RuntimeState
from .state_machine import EventKind, Priority, TaskStatus, check_break, is_terminal, switch_in_event, transition
from .utils import local_date, now_utc, optional_utc, to_decimal, whole_minutes

logger = logging.getLogger(__name__)

UNSET: Any = object()

TASK_METADATA_FIELDS = (
    "title",
    "description",
    "priority",
    "estimated_hours",
    "hourly_rate",
    "is_billable",
    "project_id",
    "client_id",
)


@dataclass
class TimerOutcome:
    task: MacroTask
    event: TimeLogEvent
    notices: List[Notice] = field(default_factory=list)
    settlement: Optional[IntervalSettlement] = None
    previous_task: Optional[MacroTask] = None
    micro_task: Optional[MicroTask] = None


# --- tasks -----------------------------------------------------------------


def _load_task(db: Session, identity: Identity, task_id: int) -> MacroTask:
    task = db.get(MacroTask, task_id)
    if task is None or task.org_id != identity.org_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return task


def _owned_task(db: Session, identity: Identity, task_id: int) -> MacroTask:
    task = _load_task(db, identity, task_id)
    if task.user_id != identity.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task belongs to another user")
    return task


def _owned_micro_task(db: Session, identity: Identity, micro_task_id: int) -> MicroTask:
    micro = db.get(MicroTask, micro_task_id)
    if micro is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Micro task not found")
    _owned_task(db, identity, micro.macro_task_id)
    return micro


def create_task(
    db: Session,
    identity: Identity,
    title: str,
    description: Optional[str] = None,
    priority: str = Priority.MEDIUM.value,
    estimated_hours: Optional[Decimal] = None,
    hourly_rate: Optional[Decimal] = None,
    is_billable: bool = True,
    project_id: Optional[str] = None,
    client_id: Optional[str] = None,
) -> MacroTask:
    if not title or not title.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required")
    task = MacroTask(
        org_id=identity.org_id,
        user_id=identity.user_id,
        title=title.strip(),
        description=description,
        priority=Priority(priority).value,
        status=TaskStatus.NOT_STARTED.value,
        estimated_hours=estimated_hours,
        hourly_rate=hourly_rate,
        is_billable=is_billable,
        project_id=project_id,
        client_id=client_id,
        actual_minutes=0,
        billable_minutes=0,
        retainer_minutes=0,
        earnings=Decimal("0.00"),
        billing_locked=False,
    )
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def list_tasks(
    db: Session,
    identity: Identity,
    task_status: Optional[str] = None,
    project_id: Optional[str] = None,
    client_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> List[MacroTask]:
    """Tasks of the caller's organization, optionally narrowed to one owner."""
    query = db.query(MacroTask).filter(MacroTask.org_id == identity.org_id)
    if user_id:
        query = query.filter(MacroTask.user_id == user_id)
    if task_status:
        query = query.filter(MacroTask.status == TaskStatus(task_status).value)
    if project_id:
        query = query.filter(MacroTask.project_id == project_id)
    if client_id:
        query = query.filter(MacroTask.client_id == client_id)
    return query.order_by(MacroTask.created_at.desc(), MacroTask.id.desc()).all()


def get_task(db: Session, identity: Identity, task_id: int) -> MacroTask:
    return _load_task(db, identity, task_id)


def update_task(db: Session, identity: Identity, task_id: int, updates: Dict[str, Any]) -> MacroTask:
    task = _owned_task(db, identity, task_id)
    for key in TASK_METADATA_FIELDS:
        value = updates.get(key, UNSET)
        if value is UNSET:
            continue
        if key == "title":
            if not value or not str(value).strip():
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required")
            value = str(value).strip()
        elif key == "priority":
            value = Priority(value).value
        elif key == "is_billable" and value is None:
            continue
        setattr(task, key, value)
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def delete_task(db: Session, identity: Identity, task_id: int) -> None:
    with user_locks(identity.user_id):
        task = _owned_task(db, identity, task_id)
        head = load_head(db, identity.user_id)
        if head.open_task_id == task.id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Task holds the running timer; pause or complete it before deleting",
            )
        db.delete(task)
        db.commit()
    logger.info("User %s deleted task %s", identity.user_id, task_id)


# --- serialized append + fold ---------------------------------------------


def _run_serialized(
    db: Session,
    identity: Identity,
    state: RuntimeState,
    operation: Callable[[TimerHead], TimerOutcome],
) -> TimerOutcome:
    """Run one append+fold as a single transaction, retrying on concurrent writers."""
    attempts = max(1, state.append_retries)
    with user_locks(identity.user_id):
        for attempt in range(1, attempts + 1):
            try:
                head = load_head(db, identity.user_id)
                outcome = operation(head)
                db.commit()
            except (IntegrityError, StaleDataError) as exc:
                db.rollback()
                logger.warning(
                    "Concurrent update for user %s (attempt %s/%s): %s",
                    identity.user_id,
                    attempt,
                    attempts,
                    exc.__class__.__name__,
                )
                continue
            except Exception:
                db.rollback()
                raise
            break
        else:
            raise ConcurrentUpdate("Concurrent updates kept conflicting; retry the request", attempts=attempts)
    for notice in outcome.notices:
        logger.info("Notice for user %s: %s", identity.user_id, notice.code)
    _project_presence(db, identity, [outcome.event])
    db.refresh(outcome.task)
    return outcome


def _project_presence(db: Session, identity: Identity, events: List[TimeLogEvent]) -> None:
    try:
        presence_projection.record_events(db, identity.user_id, identity.org_id, events)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Presence projection failed for user %s", identity.user_id)


def _snapshot(db: Session, identity: Identity, task: MacroTask, at: dt.datetime) -> Tuple[Dict[str, Any], List[Notice]]:
    resolution = resolve(db, identity.org_id, identity.user_id, task.project_id, task.client_id, at, task.hourly_rate)
    snapshot = {
        "hourly_rate": resolution.hourly_rate,
        "rate_source": resolution.source,
        "is_billable": bool(task.is_billable),
        "project_id": task.project_id,
        "client_id": task.client_id,
    }
    return snapshot, list(resolution.notices)


def _carry(opener: TimeLogEvent) -> Dict[str, Any]:
    return {
        "hourly_rate": opener.hourly_rate,
        "rate_source": opener.rate_source,
        "is_billable": bool(opener.is_billable),
        "project_id": opener.project_id,
        "client_id": opener.client_id,
    }


def _opener(db: Session, head: TimerHead, task: MacroTask) -> TimeLogEvent:
    if head.open_task_id != task.id or head.open_event_id is None:
        raise ConflictingTimer(head.open_task_id, task.id)
    return db.get(TimeLogEvent, head.open_event_id)


def _measure(db: Session, head: TimerHead, opener: TimeLogEvent, closed_at: dt.datetime) -> Tuple[int, int]:
    inside = events_after(db, head.user_id, opener.sequence)
    return interval_durations(opener.at, closed_at, break_spans(inside, opener.at, closed_at))


def _settle_interval(
    db: Session,
    identity: Identity,
    task: MacroTask,
    opener: TimeLogEvent,
    closing: TimeLogEvent,
    elapsed: int,
    break_minutes: int,
) -> Tuple[IntervalSettlement, List[Notice]]:
    notices: List[Notice] = []
    block = None
    if opener.is_billable and elapsed > 0:
        block = find_active_block(
            db, opener.client_id, opener.project_id, local_date(opener.at, LOCAL_TZ), identity.org_id
        )
    context = BillingContext(
        is_billable=bool(opener.is_billable),
        hourly_rate=to_decimal(opener.hourly_rate),
        rate_source=opener.rate_source or "none",
        retainer_block_id=block.id if block is not None else None,
        retainer_remaining=block.remaining_minutes if block is not None else 0,
        retainer_rate=to_decimal(block.hourly_rate) if block is not None else None,
    )
    result = settle(elapsed, break_minutes, context)
    if result.retainer_minutes:
        debited = debit(db, result.retainer_block_id, result.retainer_minutes)
        notices.extend(debited.notices)

    settlement = IntervalSettlement(
        user_id=identity.user_id,
        macro_task_id=task.id,
        open_event_id=opener.id,
        close_event_id=closing.id,
        opened_at=opener.at,
        closed_at=closing.at,
        elapsed_minutes=result.elapsed_minutes,
        break_minutes=result.break_minutes,
        is_billable=result.is_billable,
        billable_minutes=result.billable_minutes,
        hourly_rate=result.hourly_rate,
        rate_source=result.rate_source,
        retainer_block_id=result.retainer_block_id,
        retainer_minutes=result.retainer_minutes,
        direct_minutes=result.direct_minutes,
        earnings=result.earnings,
        direct_amount=result.direct_amount,
        retainer_amount=result.retainer_amount,
    )
    db.add(settlement)
    task.accrue(result.elapsed_minutes, result.billable_minutes, result.retainer_minutes, result.earnings)
    for micro in task.micro_tasks:
        # A micro break still running ends with the interval.
        if micro.break_start is not None:
            micro.break_minutes = (micro.break_minutes or 0) + whole_minutes(closing.at - optional_utc(micro.break_start))
            micro.break_start = None
    db.flush()
    logger.info(
        "Settled task %s: %s min elapsed, %s billable, %s retainer, earnings %s",
        task.id,
        result.elapsed_minutes,
        result.billable_minutes,
        result.retainer_minutes,
        result.earnings,
    )
    return settlement, notices


def _close(
    db: Session,
    identity: Identity,
    state: RuntimeState,
    head: TimerHead,
    task: MacroTask,
    kind: EventKind,
    at: dt.datetime,
    note: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Tuple[TimeLogEvent, IntervalSettlement, List[Notice]]:
    """Append an interval-closing event and settle the interval it ends."""
    opener = _opener(db, head, task)
    timestamp, notices = resolve_timestamp(head, at, state.clock_skew_tolerance_ms)
    elapsed, break_minutes = _measure(db, head, opener, timestamp)
    fields = _carry(opener)
    fields.update(extra or {})
    result = append(
        db,
        head,
        kind,
        timestamp,
        tolerance_ms=state.clock_skew_tolerance_ms,
        org_id=identity.org_id,
        macro_task_id=fields.pop("macro_task_id", task.id),
        duration_minutes=elapsed,
        note=note,
        **fields,
    )
    settlement, settle_notices = _settle_interval(db, identity, task, opener, result.event, elapsed, break_minutes)
    return result.event, settlement, notices + result.notices + settle_notices


def _micro_start(db: Session, user_id: str, micro_task_id: int) -> Optional[TimeLogEvent]:
    return (
        db.query(TimeLogEvent)
        .filter(
            TimeLogEvent.user_id == user_id,
            TimeLogEvent.micro_task_id == micro_task_id,
            TimeLogEvent.kind == EventKind.START.value,
        )
        .order_by(TimeLogEvent.sequence.desc())
        .first()
    )


def _finish_micro_tasks(db: Session, identity: Identity, task: MacroTask, closing: TimeLogEvent) -> List[MicroTask]:
    """Complete the micro tasks still in progress when their parent completes or is cancelled.

    Each one accrues the working minutes up to ``closing``; no event is appended
    for them, replay derives the same result from the parent's closing event.
    """
    finished: List[MicroTask] = []
    for micro in task.micro_tasks:
        if micro.status != TaskStatus.IN_PROGRESS.value:
            continue
        started = _micro_start(db, identity.user_id, micro.id)
        worked = 0
        if started is not None:
            worked = working_minutes(events_after(db, identity.user_id, started.sequence - 1, closing.sequence))
        micro.actual_minutes = (micro.actual_minutes or 0) + worked
        micro.status = transition(micro.status, EventKind.COMPLETE, subject="micro_task").value
        micro.completed_at = closing.at
        finished.append(micro)
    if finished:
        logger.info("Closed %s micro task(s) of task %s with their parent", len(finished), task.id)
    return finished


# --- timer operations -----------------------------------------------------


def start_timer(
    db: Session,
    state: RuntimeState,
    identity: Identity,
    task_id: int,
    note: Optional[str] = None,
    at: Optional[dt.datetime] = None,
) -> TimerOutcome:
    def operation(head: TimerHead) -> TimerOutcome:
        task = _owned_task(db, identity, task_id)
        target = transition(task.status, EventKind.START)
        when, clamped = resolve_timestamp(head, at or now_utc(), state.clock_skew_tolerance_ms)
        snapshot, notices = _snapshot(db, identity, task, when)
        result = append(
            db,
            head,
            EventKind.START,
            when,
            tolerance_ms=state.clock_skew_tolerance_ms,
            org_id=identity.org_id,
            macro_task_id=task.id,
            note=note,
            **snapshot,
        )
        task.status = target.value
        task.clear_pause()
        logger.info("User %s started task %s", identity.user_id, task.id)
        return TimerOutcome(task=task, event=result.event, notices=clamped + result.notices + notices)

    return _run_serialized(db, identity, state, operation)


def pause_timer(
    db: Session,
    state: RuntimeState,
    identity: Identity,
    task_id: int,
    reason: Optional[str] = None,
    at: Optional[dt.datetime] = None,
) -> TimerOutcome:
    def operation(head: TimerHead) -> TimerOutcome:
        task = _owned_task(db, identity, task_id)
        target = transition(task.status, EventKind.PAUSE)
        event, settlement, notices = _close(db, identity, state, head, task, EventKind.PAUSE, at or now_utc(), note=reason)
        task.status = target.value
        task.mark_paused(event.at, reason)
        logger.info("User %s paused task %s", identity.user_id, task.id)
        return TimerOutcome(task=task, event=event, notices=notices, settlement=settlement)

    return _run_serialized(db, identity, state, operation)


def resume_timer(
    db: Session,
    state: RuntimeState,
    identity: Identity,
    task_id: int,
    at: Optional[dt.datetime] = None,
) -> TimerOutcome:
    def operation(head: TimerHead) -> TimerOutcome:
        task = _owned_task(db, identity, task_id)
        target = transition(task.status, EventKind.RESUME)
        when, clamped = resolve_timestamp(head, at or now_utc(), state.clock_skew_tolerance_ms)
        snapshot, notices = _snapshot(db, identity, task, when)
        result = append(
            db,
            head,
            EventKind.RESUME,
            when,
            tolerance_ms=state.clock_skew_tolerance_ms,
            org_id=identity.org_id,
            macro_task_id=task.id,
            **snapshot,
        )
        task.status = target.value
        task.clear_pause()
        logger.info("User %s resumed task %s", identity.user_id, task.id)
        return TimerOutcome(task=task, event=result.event, notices=clamped + result.notices + notices)

    return _run_serialized(db, identity, state, operation)


def stop_timer(
    db: Session,
    state: RuntimeState,
    identity: Identity,
    task_id: int,
    note: Optional[str] = None,
    at: Optional[dt.datetime] = None,
) -> TimerOutcome:
    def operation(head: TimerHead) -> TimerOutcome:
        task = _owned_task(db, identity, task_id)
        target = transition(task.status, EventKind.COMPLETE)
        event, settlement, notices = _close(db, identity, state, head, task, EventKind.COMPLETE, at or now_utc(), note=note)
        task.status = target.value
        task.completed_at = event.at
        task.billing_locked = True
        task.clear_pause()
        _finish_micro_tasks(db, identity, task, event)
        logger.info("User %s completed task %s", identity.user_id, task.id)
        return TimerOutcome(task=task, event=event, notices=notices, settlement=settlement)

    return _run_serialized(db, identity, state, operation)


def cancel_task(
    db: Session,
    state: RuntimeState,
    identity: Identity,
    task_id: int,
    reason: Optional[str] = None,
    at: Optional[dt.datetime] = None,
) -> TimerOutcome:
    def operation(head: TimerHead) -> TimerOutcome:
        task = _owned_task(db, identity, task_id)
        target = transition(task.status, EventKind.CANCEL)
        when = at or now_utc()
        settlement = None
        if head.open_task_id == task.id:
            event, settlement, notices = _close(db, identity, state, head, task, EventKind.CANCEL, when, note=reason)
        else:
            result = append(
                db,
                head,
                EventKind.CANCEL,
                when,
                tolerance_ms=state.clock_skew_tolerance_ms,
                org_id=identity.org_id,
                macro_task_id=task.id,
                project_id=task.project_id,
                client_id=task.client_id,
                note=reason,
            )
            event, notices = result.event, result.notices
        task.status = target.value
        task.cancelled_at = event.at
        task.clear_pause()
        _finish_micro_tasks(db, identity, task, event)
        logger.info("User %s cancelled task %s", identity.user_id, task.id)
        return TimerOutcome(task=task, event=event, notices=notices, settlement=settlement)

    return _run_serialized(db, identity, state, operation)


def switch_timer(
    db: Session,
    state: RuntimeState,
    identity: Identity,
    from_task_id: int,
    to_task_id: int,
    at: Optional[dt.datetime] = None,
) -> TimerOutcome:
    if from_task_id == to_task_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot switch a task to itself")

    def operation(head: TimerHead) -> TimerOutcome:
        source = _owned_task(db, identity, from_task_id)
        target = _owned_task(db, identity, to_task_id)
        source_state = transition(source.status, EventKind.SWITCH_TASK)
        target_state = transition(target.status, switch_in_event(target.status))
        # The snapshot must be taken at the instant that will actually be recorded.
        when, clamped = resolve_timestamp(head, at or now_utc(), state.clock_skew_tolerance_ms)
        snapshot, rate_notices = _snapshot(db, identity, target, when)
        snapshot["macro_task_id"] = target.id
        snapshot["previous_task_id"] = source.id
        event, settlement, notices = _close(db, identity, state, head, source, EventKind.SWITCH_TASK, when, extra=snapshot)
        source.status = source_state.value
        source.mark_paused(event.at, f"Switched to task {target.id}")
        target.status = target_state.value
        target.clear_pause()
        logger.info("User %s switched from task %s to task %s", identity.user_id, source.id, target.id)
        return TimerOutcome(
            task=target,
            event=event,
            notices=clamped + notices + rate_notices,
            settlement=settlement,
            previous_task=source,
        )

    outcome = _run_serialized(db, identity, state, operation)
    db.refresh(outcome.previous_task)
    return outcome


def _micro_for_break(db: Session, task: MacroTask, micro_task_id: Optional[int]) -> Optional[MicroTask]:
    if micro_task_id is None:
        return None
    micro = db.get(MicroTask, micro_task_id)
    if micro is None or micro.macro_task_id != task.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Micro task not found")
    return micro


def start_break(
    db: Session,
    state: RuntimeState,
    identity: Identity,
    task_id: int,
    micro_task_id: Optional[int] = None,
    note: Optional[str] = None,
    at: Optional[dt.datetime] = None,
) -> TimerOutcome:
    def operation(head: TimerHead) -> TimerOutcome:
        task = _owned_task(db, identity, task_id)
        transition(task.status, EventKind.BREAK_START)
        opener = _opener(db, head, task)
        check_break(head.break_event_id is not None, EventKind.BREAK_START)
        micro = _micro_for_break(db, task, micro_task_id)
        if micro is not None:
            transition(micro.status, EventKind.BREAK_START, subject="micro_task")
        result = append(
            db,
            head,
            EventKind.BREAK_START,
            at or now_utc(),
            tolerance_ms=state.clock_skew_tolerance_ms,
            org_id=identity.org_id,
            macro_task_id=task.id,
            micro_task_id=micro.id if micro is not None else None,
            note=note,
            **_carry(opener),
        )
        if micro is not None:
            micro.break_start = result.event.at
        logger.info("User %s started a break on task %s", identity.user_id, task.id)
        return TimerOutcome(task=task, event=result.event, notices=result.notices, micro_task=micro)

    return _run_serialized(db, identity, state, operation)


def end_break(
    db: Session,
    state: RuntimeState,
    identity: Identity,
    task_id: int,
    at: Optional[dt.datetime] = None,
) -> TimerOutcome:
    def operation(head: TimerHead) -> TimerOutcome:
        task = _owned_task(db, identity, task_id)
        transition(task.status, EventKind.BREAK_END)
        opener = _opener(db, head, task)
        check_break(head.break_event_id is not None, EventKind.BREAK_END)
        started = db.get(TimeLogEvent, head.break_event_id)
        micro = db.get(MicroTask, started.micro_task_id) if started.micro_task_id is not None else None
        result = append(
            db,
            head,
            EventKind.BREAK_END,
            at or now_utc(),
            tolerance_ms=state.clock_skew_tolerance_ms,
            org_id=identity.org_id,
            macro_task_id=task.id,
            micro_task_id=started.micro_task_id,
            **_carry(opener),
        )
        if micro is not None and micro.break_start is not None:
            micro.break_minutes = (micro.break_minutes or 0) + whole_minutes(
                result.event.at - optional_utc(micro.break_start)
            )
            micro.break_start = None
        logger.info("User %s ended a break on task %s", identity.user_id, task.id)
        return TimerOutcome(task=task, event=result.event, notices=result.notices, micro_task=micro)

    return _run_serialized(db, identity, state, operation)


def current_timer(db: Session, identity: Identity, now: Optional[dt.datetime] = None) -> Optional[Dict[str, Any]]:
    head = load_head(db, identity.user_id)
    db.commit()
    if head.open_task_id is None or head.open_event_id is None:
        return None
    opener = db.get(TimeLogEvent, head.open_event_id)
    task = db.get(MacroTask, head.open_task_id)
    moment = max(now or now_utc(), opener.at)
    elapsed, break_minutes = _measure(db, head, opener, moment)
    return {
        "task": task,
        "task_id": head.open_task_id,
        "opened_at": opener.at,
        "open_event_sequence": opener.sequence,
        "on_break": head.break_event_id is not None,
        "elapsed_minutes": elapsed,
        "break_minutes": break_minutes,
        "hourly_rate": opener.hourly_rate,
        "is_billable": bool(opener.is_billable),
    }


# --- micro tasks ----------------------------------------------------------


def _renumber(task: MacroTask) -> None:
    for position, micro in enumerate(sorted(task.micro_tasks, key=lambda item: (item.order_index, item.id or 0))):
        micro.order_index = position


def next_step(db: Session, identity: Identity, task_id: int) -> Optional[MicroTask]:
    task = _load_task(db, identity, task_id)
    return _next_step(task)


def _next_step(task: MacroTask) -> Optional[MicroTask]:
    pending = [micro for micro in task.micro_tasks if micro.status != TaskStatus.COMPLETED.value]
    if not pending:
        return None
    return min(pending, key=lambda micro: micro.order_index)


def _check_step_order(ordered: List[MicroTask]) -> None:
    """Reject orders that put a step which has not started ahead of the step in progress."""
    waiting = None
    for micro in ordered:
        if micro.status == TaskStatus.NOT_STARTED.value and waiting is None:
            waiting = micro
        elif micro.status == TaskStatus.IN_PROGRESS.value and waiting is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "error": "step_in_progress",
                    "message": "A step that has not started cannot be placed before the step in progress",
                    "micro_task_id": micro.id,
                    "blocked_by_micro_task_id": waiting.id,
                },
            )


def add_micro_task(
    db: Session,
    identity: Identity,
    task_id: int,
    title: str,
    description: Optional[str] = None,
    estimated_minutes: Optional[int] = None,
    position: Optional[int] = None,
) -> MicroTask:
    task = _owned_task(db, identity, task_id)
    if is_terminal(task.status):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Task is closed")
    if not title or not title.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required")
    ordered = sorted(task.micro_tasks, key=lambda item: item.order_index)
    index = len(ordered) if position is None else max(0, min(position, len(ordered)))
    micro = MicroTask(
        title=title.strip(),
        description=description,
        estimated_minutes=estimated_minutes,
        status=TaskStatus.NOT_STARTED.value,
        actual_minutes=0,
        break_minutes=0,
        order_index=index,
    )
    ordered.insert(index, micro)
    _check_step_order(ordered)
    task.micro_tasks.append(micro)
    for order_index, item in enumerate(ordered):
        item.order_index = order_index
    db.commit()
    db.refresh(micro)
    return micro


def reorder_micro_tasks(db: Session, identity: Identity, task_id: int, ordered_ids: List[int]) -> MacroTask:
    task = _owned_task(db, identity, task_id)
    existing_ids = [micro.id for micro in task.micro_tasks]
    if not ordered_ids:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No micro tasks given to reorder")
    if len(ordered_ids) != len(existing_ids) or set(ordered_ids) != set(existing_ids):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Order does not match the task's micro tasks",
        )
    micro_by_id = {micro.id: micro for micro in task.micro_tasks}
    _check_step_order([micro_by_id[micro_id] for micro_id in ordered_ids])
    for position, micro_id in enumerate(ordered_ids):
        micro_by_id[micro_id].order_index = position
    db.commit()
    db.refresh(task)
    db.expire(task, ["micro_tasks"])
    _ = task.micro_tasks  # reload in the new order
    return task


def delete_micro_task(db: Session, identity: Identity, micro_task_id: int) -> None:
    micro = _owned_micro_task(db, identity, micro_task_id)
    task = micro.macro_task
    task.micro_tasks.remove(micro)
    _renumber(task)
    db.commit()


def start_micro_task(
    db: Session,
    state: RuntimeState,
    identity: Identity,
    micro_task_id: int,
    at: Optional[dt.datetime] = None,
) -> TimerOutcome:
    def operation(head: TimerHead) -> TimerOutcome:
        micro = _owned_micro_task(db, identity, micro_task_id)
        task = micro.macro_task
        opener = _opener(db, head, task)
        if head.break_event_id is not None:
            raise InvalidTransition("on_break", EventKind.START.value, [EventKind.BREAK_END.value], subject="micro_task")
        target = transition(micro.status, EventKind.START, subject="micro_task")
        upcoming = _next_step(task)
        if upcoming is None or upcoming.id != micro.id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "error": "not_next_step",
                    "message": "Micro task is not the next step",
                    "next_micro_task_id": upcoming.id if upcoming is not None else None,
                },
            )
        result = append(
            db,
            head,
            EventKind.START,
            at or now_utc(),
            tolerance_ms=state.clock_skew_tolerance_ms,
            org_id=identity.org_id,
            macro_task_id=task.id,
            micro_task_id=micro.id,
            **_carry(opener),
        )
        micro.status = target.value
        micro.started_at = result.event.at
        return TimerOutcome(task=task, event=result.event, notices=result.notices, micro_task=micro)

    return _run_serialized(db, identity, state, operation)


def complete_micro_task(
    db: Session,
    state: RuntimeState,
    identity: Identity,
    micro_task_id: int,
    at: Optional[dt.datetime] = None,
) -> TimerOutcome:
    def operation(head: TimerHead) -> TimerOutcome:
        micro = _owned_micro_task(db, identity, micro_task_id)
        task = micro.macro_task
        opener = _opener(db, head, task)
        target = transition(micro.status, EventKind.COMPLETE, subject="micro_task")
        if micro.on_break:
            raise InvalidTransition("on_break", EventKind.COMPLETE.value, [EventKind.BREAK_END.value], subject="micro_task")
        started = _micro_start(db, identity.user_id, micro.id)
        result = append(
            db,
            head,
            EventKind.COMPLETE,
            at or now_utc(),
            tolerance_ms=state.clock_skew_tolerance_ms,
            org_id=identity.org_id,
            macro_task_id=task.id,
            micro_task_id=micro.id,
            **_carry(opener),
        )
        worked = 0
        if started is not None:
            worked = working_minutes(events_after(db, identity.user_id, started.sequence - 1, result.event.sequence))
        micro.actual_minutes = (micro.actual_minutes or 0) + worked
        micro.status = target.value
        micro.completed_at = result.event.at
        logger.info("User %s completed micro task %s after %s min", identity.user_id, micro.id, worked)
        return TimerOutcome(task=task, event=result.event, notices=result.notices, micro_task=micro)

    return _run_serialized(db, identity, state, operation)


# --- replay and event listing ---------------------------------------------


def replay(db: Session, identity: Identity) -> Dict[str, Any]:
    """Recompute every cached aggregate of the caller from the full event log."""
    with user_locks(identity.user_id):
        events = list(events_since(db, identity.user_id))
        settlements = db.query(IntervalSettlement).filter(IntervalSettlement.user_id == identity.user_id).all()
        result = fold(events, {row.close_event_id: row.retainer_minutes for row in settlements})
        drifted: List[int] = []
        tasks = db.query(MacroTask).filter(MacroTask.user_id == identity.user_id).all()
        for task in tasks:
            totals = result.tasks.get(task.id, TaskTotals())
            before = (task.actual_minutes, task.billable_minutes, task.retainer_minutes, to_decimal(task.earnings))
            after = (totals.actual_minutes, totals.billable_minutes, totals.retainer_minutes, totals.earnings)
            if before != after:
                drifted.append(task.id)
            task.actual_minutes, task.billable_minutes, task.retainer_minutes, task.earnings = after
            for micro in task.micro_tasks:
                micro_totals = result.micro_tasks.get(micro.id)
                if micro_totals is None:
                    micro.actual_minutes = 0
                    micro.break_minutes = 0
                    continue
                micro.actual_minutes = micro_totals.actual_minutes
                micro.break_minutes = micro_totals.break_minutes
        rebuild_head(db, identity.user_id)
        db.commit()
    if drifted:
        logger.warning("Replay corrected cached aggregates of task(s) %s for user %s", drifted, identity.user_id)
    return {
        "events_replayed": len(events),
        "tasks_recomputed": len(tasks),
        "drifted_task_ids": drifted,
        "open_task_id": result.open_task_id,
    }


def list_events(db: Session, identity: Identity, cursor: Optional[str], limit: int) -> Tuple[List[TimeLogEvent], Optional[str]]:
    try:
        return page_events(db, identity.user_id, cursor, limit)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


# --- runtime settings -----------------------------------------------------


def update_runtime_settings(db: Session, state: RuntimeState, updates: dict) -> dict:
    normalized = {key: value for key, value in updates.items() if value is not None}
    idle = normalized.get("idle_threshold_seconds", state.idle_threshold_seconds)
    offline = normalized.get("offline_threshold_seconds", state.offline_threshold_seconds)
    if int(offline) < int(idle):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Offline threshold must not be shorter than the idle threshold",
        )
    state.apply(normalized)
    state.persist(db, state.snapshot())
    return state.snapshot()
