"""Best-effort liveness projection built from timer events and heartbeats."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from .event_store import events_since
from .models import TimeLogEvent, UserPresence
from .state_machine import CLOSING_EVENTS, OPENING_EVENTS, EventKind
from .utils import ensure_utc, optional_utc

logger = logging.getLogger(__name__)

ONLINE = "online"
AWAY = "away"
BUSY = "busy"
OFFLINE = "offline"

RUNNING = "running"
PAUSED = "paused"
STOPPED = "stopped"


def get_or_create(db: Session, user_id: str, org_id: Optional[str] = None) -> UserPresence:
    presence = db.query(UserPresence).filter(UserPresence.user_id == user_id).one_or_none()
    if presence is None:
        presence = UserPresence(
            user_id=user_id,
            org_id=org_id,
            is_online=False,
            current_status=OFFLINE,
            timer_status=STOPPED,
            last_event_sequence=0,
        )
        db.add(presence)
    elif org_id and presence.org_id != org_id:
        presence.org_id = org_id
    return presence


def _touch(presence: UserPresence, at: dt.datetime) -> None:
    last_seen = optional_utc(presence.last_seen)
    if last_seen is None or at > last_seen:
        presence.last_seen = at
    presence.is_online = True
    presence.idle_since = None


def _start_timer(presence: UserPresence, task_id: Optional[int], at: dt.datetime) -> None:
    presence.timer_status = RUNNING
    presence.current_task_id = task_id
    presence.timer_start = at


def apply_event(presence: UserPresence, event: TimeLogEvent) -> None:
    kind = EventKind(event.kind)
    at = event.at
    _touch(presence, at)
    if kind is EventKind.SWITCH_TASK or (event.micro_task_id is None and kind in OPENING_EVENTS):
        _start_timer(presence, event.macro_task_id, at)
    elif kind is EventKind.BREAK_START:
        presence.timer_status = PAUSED
    elif kind is EventKind.BREAK_END:
        presence.timer_status = RUNNING
    elif event.micro_task_id is None and kind is EventKind.PAUSE:
        presence.timer_status = PAUSED
        presence.current_task_id = event.macro_task_id
    elif event.micro_task_id is None and kind in CLOSING_EVENTS:
        # A cancel of a task that never held the timer leaves the running one alone.
        if presence.current_task_id in (None, event.macro_task_id):
            presence.timer_status = STOPPED
            presence.current_task_id = None
            presence.timer_start = None
    presence.current_status = BUSY if presence.timer_status == RUNNING else ONLINE
    presence.last_event_sequence = max(presence.last_event_sequence or 0, event.sequence)


def refresh_idle(presence: UserPresence, now: dt.datetime, idle_threshold: int, offline_threshold: int) -> bool:
    """Derive away/offline from the last activity; timers are never touched. Returns True when changed."""
    before = (presence.is_online, presence.current_status, presence.idle_since)
    last_seen = optional_utc(presence.last_seen)
    if last_seen is None:
        presence.is_online = False
        presence.current_status = OFFLINE
    else:
        gap = ensure_utc(now) - last_seen
        if gap >= dt.timedelta(seconds=offline_threshold):
            presence.is_online = False
            presence.current_status = OFFLINE
            presence.idle_since = last_seen + dt.timedelta(seconds=idle_threshold)
        elif gap >= dt.timedelta(seconds=idle_threshold):
            presence.is_online = True
            presence.current_status = AWAY
            presence.idle_since = last_seen + dt.timedelta(seconds=idle_threshold)
        else:
            presence.is_online = True
            presence.current_status = BUSY if presence.timer_status == RUNNING else ONLINE
            presence.idle_since = None
    return before != (presence.is_online, presence.current_status, presence.idle_since)


def record_events(db: Session, user_id: str, org_id: Optional[str], events: Iterable[TimeLogEvent]) -> UserPresence:
    presence = get_or_create(db, user_id, org_id)
    for event in events:
        if event.sequence > (presence.last_event_sequence or 0):
            apply_event(presence, event)
    return presence


def heartbeat(
    db: Session,
    user_id: str,
    org_id: Optional[str],
    at: dt.datetime,
    idle_threshold: int,
    offline_threshold: int,
) -> UserPresence:
    at = ensure_utc(at)
    presence = get_or_create(db, user_id, org_id)
    _touch(presence, at)
    presence.last_heartbeat_at = at
    refresh_idle(presence, at, idle_threshold, offline_threshold)
    db.commit()
    db.refresh(presence)
    return presence


def rebuild(
    db: Session,
    user_id: str,
    org_id: Optional[str],
    now: dt.datetime,
    idle_threshold: int,
    offline_threshold: int,
) -> UserPresence:
    """Recompute the projection from the full event stream plus the last heartbeat."""
    presence = get_or_create(db, user_id, org_id)
    last_heartbeat = optional_utc(presence.last_heartbeat_at)
    presence.is_online = False
    presence.current_status = OFFLINE
    presence.current_task_id = None
    presence.timer_status = STOPPED
    presence.timer_start = None
    presence.idle_since = None
    presence.last_seen = None
    presence.last_event_sequence = 0
    for event in events_since(db, user_id):
        apply_event(presence, event)
    if last_heartbeat is not None:
        _touch(presence, last_heartbeat)
    refresh_idle(presence, now, idle_threshold, offline_threshold)
    db.commit()
    db.refresh(presence)
    logger.info("Rebuilt presence for user %s up to sequence %s", user_id, presence.last_event_sequence)
    return presence


def current(db: Session, user_id: str, now: dt.datetime, idle_threshold: int, offline_threshold: int) -> UserPresence:
    presence = get_or_create(db, user_id)
    if refresh_idle(presence, now, idle_threshold, offline_threshold) or presence.id is None:
        db.commit()
        db.refresh(presence)
    return presence


def list_for_org(
    db: Session,
    org_id: str,
    now: dt.datetime,
    idle_threshold: int,
    offline_threshold: int,
    online_only: bool = True,
) -> List[UserPresence]:
    rows = db.query(UserPresence).filter(UserPresence.org_id == org_id).order_by(UserPresence.user_id.asc()).all()
    changed = False
    for presence in rows:
        changed = refresh_idle(presence, now, idle_threshold, offline_threshold) or changed
    if changed:
        db.commit()
    if online_only:
        rows = [presence for presence in rows if presence.is_online]
    return rows
