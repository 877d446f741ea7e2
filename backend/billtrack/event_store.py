"""Append-only, per-user ordered store of timer events."""

from __future__ import annotations

import base64
import binascii
import datetime as dt
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from threading import Lock, RLock
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy.orm import Session

from .errors import CLOCK_SKEW_CLAMPED, ClockSkewExceeded, ConflictingTimer, Notice
from .models import TimeLogEvent, TimerHead
from .state_machine import CLOSING_EVENTS, OPENING_EVENTS, EventKind
from .utils import ensure_utc

logger = logging.getLogger(__name__)

CLAMP_STEP = dt.timedelta(milliseconds=1)


class UserLocks:
    """In-process serialization of append+fold per user."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[str, RLock] = {}

    def __call__(self, user_id: str) -> RLock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = RLock()
                self._locks[user_id] = lock
            return lock


user_locks = UserLocks()


@dataclass
class IntervalTracker:
    """Open interval and break state reached after folding a prefix of a user's log."""

    open_event_id: Optional[int] = None
    open_task_id: Optional[int] = None
    break_event_id: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.open_task_id is not None

    @property
    def on_break(self) -> bool:
        return self.break_event_id is not None

    def advance(self, event: TimeLogEvent) -> None:
        kind = EventKind(event.kind)
        if event.micro_task_id is None and kind in OPENING_EVENTS:
            self.open_event_id = event.id
            self.open_task_id = event.macro_task_id
            self.break_event_id = None
        elif kind is EventKind.SWITCH_TASK:
            self.open_event_id = event.id
            self.open_task_id = event.macro_task_id
            self.break_event_id = None
        elif event.micro_task_id is None and kind in CLOSING_EVENTS:
            # Cancelling a task that holds no interval leaves the open one alone.
            if event.macro_task_id == self.open_task_id:
                self.open_event_id = None
                self.open_task_id = None
                self.break_event_id = None
        elif kind is EventKind.BREAK_START:
            self.break_event_id = event.id
        elif kind is EventKind.BREAK_END:
            self.break_event_id = None

    @classmethod
    def from_head(cls, head: TimerHead) -> "IntervalTracker":
        return cls(head.open_event_id, head.open_task_id, head.break_event_id)


@dataclass
class AppendResult:
    event: TimeLogEvent
    notices: List[Notice] = field(default_factory=list)


def rebuild_head(db: Session, user_id: str) -> TimerHead:
    tracker = IntervalTracker()
    last: Optional[TimeLogEvent] = None
    for event in events_since(db, user_id):
        tracker.advance(event)
        last = event
    head = db.get(TimerHead, user_id)
    if head is None:
        head = TimerHead(user_id=user_id)
        db.add(head)
    head.last_sequence = last.sequence if last else 0
    head.last_timestamp = last.at if last else None
    head.open_event_id = tracker.open_event_id
    head.open_task_id = tracker.open_task_id
    head.break_event_id = tracker.break_event_id
    return head


def load_head(db: Session, user_id: str) -> TimerHead:
    head = db.get(TimerHead, user_id)
    if head is None:
        head = rebuild_head(db, user_id)
        db.flush()
    return head


def resolve_timestamp(head: TimerHead, requested: dt.datetime, tolerance_ms: int) -> Tuple[dt.datetime, List[Notice]]:
    at = ensure_utc(requested)
    last = head.last_at
    if last is None or at >= last:
        return at, []
    skew = last - at
    if skew > dt.timedelta(milliseconds=tolerance_ms):
        raise ClockSkewExceeded(
            "Timestamp precedes the last recorded event beyond the clock skew tolerance",
            last_timestamp=last.isoformat(),
            requested_timestamp=at.isoformat(),
            tolerance_ms=tolerance_ms,
        )
    clamped = last + CLAMP_STEP
    logger.info("Clamped timestamp for user %s by %s", head.user_id, skew + CLAMP_STEP)
    notice = Notice(
        CLOCK_SKEW_CLAMPED,
        "Timestamp was earlier than the last event and has been clamped",
        {"requested_timestamp": at.isoformat(), "recorded_timestamp": clamped.isoformat()},
    )
    return clamped, [notice]


def _check_interval(head: TimerHead, kind: EventKind, macro_task_id: Optional[int], micro_task_id: Optional[int], previous_task_id: Optional[int]) -> None:
    if micro_task_id is not None:
        return
    if kind in OPENING_EVENTS and head.open_task_id is not None:
        raise ConflictingTimer(head.open_task_id, macro_task_id)
    if kind is EventKind.SWITCH_TASK and (head.open_task_id is None or head.open_task_id != previous_task_id):
        raise ConflictingTimer(head.open_task_id, previous_task_id)
    if kind in (EventKind.PAUSE, EventKind.COMPLETE) and head.open_task_id != macro_task_id:
        raise ConflictingTimer(head.open_task_id, macro_task_id)


def append(
    db: Session,
    head: TimerHead,
    kind: EventKind,
    at: dt.datetime,
    *,
    tolerance_ms: int,
    org_id: Optional[str] = None,
    macro_task_id: Optional[int] = None,
    micro_task_id: Optional[int] = None,
    previous_task_id: Optional[int] = None,
    project_id: Optional[str] = None,
    client_id: Optional[str] = None,
    hourly_rate: Optional[Decimal] = None,
    rate_source: Optional[str] = None,
    is_billable: bool = False,
    duration_minutes: Optional[int] = None,
    note: Optional[str] = None,
) -> AppendResult:
    """Append one event for ``head.user_id``; the caller owns the transaction."""
    timestamp, notices = resolve_timestamp(head, at, tolerance_ms)
    _check_interval(head, kind, macro_task_id, micro_task_id, previous_task_id)
    event = TimeLogEvent(
        user_id=head.user_id,
        org_id=org_id,
        sequence=(head.last_sequence or 0) + 1,
        kind=kind.value,
        macro_task_id=macro_task_id,
        micro_task_id=micro_task_id,
        previous_task_id=previous_task_id,
        project_id=project_id,
        client_id=client_id,
        timestamp=timestamp,
        duration_minutes=duration_minutes,
        hourly_rate=hourly_rate,
        rate_source=rate_source,
        is_billable=is_billable,
        note=note,
    )
    db.add(event)
    db.flush()

    tracker = IntervalTracker.from_head(head)
    tracker.advance(event)
    head.open_event_id = tracker.open_event_id
    head.open_task_id = tracker.open_task_id
    head.break_event_id = tracker.break_event_id
    head.last_sequence = event.sequence
    head.last_timestamp = timestamp
    return AppendResult(event=event, notices=notices)


def encode_cursor(sequence: int) -> str:
    raw = f"seq:{sequence}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def decode_cursor(cursor: Optional[str]) -> int:
    if not cursor:
        return 0
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("utf-8")).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ValueError("Malformed cursor") from exc
    prefix, _, value = raw.partition(":")
    if prefix != "seq" or not value.isdigit():
        raise ValueError("Malformed cursor")
    return int(value)


def _batch(db: Session, user_id: str, after: int, limit: int, upto: Optional[int] = None) -> List[TimeLogEvent]:
    query = db.query(TimeLogEvent).filter(TimeLogEvent.user_id == user_id, TimeLogEvent.sequence > after)
    if upto is not None:
        query = query.filter(TimeLogEvent.sequence <= upto)
    # Sequence order equals timestamp order with insertion order breaking ties.
    return query.order_by(TimeLogEvent.sequence.asc()).limit(limit).all()


def events_since(
    db: Session,
    user_id: str,
    cursor: Optional[str] = None,
    *,
    batch_size: int = 200,
    upto_sequence: Optional[int] = None,
) -> Iterator[TimeLogEvent]:
    """Lazily yield the user's events after ``cursor``; restart by passing any earlier cursor."""
    after = decode_cursor(cursor)
    while True:
        batch = _batch(db, user_id, after, batch_size, upto_sequence)
        if not batch:
            return
        yield from batch
        after = batch[-1].sequence
        if len(batch) < batch_size:
            return


def page_events(db: Session, user_id: str, cursor: Optional[str], limit: int) -> Tuple[List[TimeLogEvent], Optional[str]]:
    after = decode_cursor(cursor)
    batch = _batch(db, user_id, after, limit)
    next_cursor = encode_cursor(batch[-1].sequence) if batch else cursor
    return batch, next_cursor


def events_after(db: Session, user_id: str, after_sequence: int, upto_sequence: Optional[int] = None) -> List[TimeLogEvent]:
    return list(events_since(db, user_id, encode_cursor(after_sequence), upto_sequence=upto_sequence))


def count_open_intervals(events: Iterable[TimeLogEvent]) -> int:
    """Number of openers with no later terminator; the log grammar keeps this at most one."""
    open_ids: Dict[int, int] = {}
    for event in events:
        kind = EventKind(event.kind)
        if event.micro_task_id is not None:
            continue
        if kind in OPENING_EVENTS:
            open_ids[event.id] = event.macro_task_id
        elif kind is EventKind.SWITCH_TASK:
            open_ids = {key: task for key, task in open_ids.items() if task != event.previous_task_id}
            open_ids[event.id] = event.macro_task_id
        elif kind in CLOSING_EVENTS:
            open_ids = {key: task for key, task in open_ids.items() if task != event.macro_task_id}
    return len(open_ids)
