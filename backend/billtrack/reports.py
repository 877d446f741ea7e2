"""Billing summaries over the settlement ledger.

Every figure is summed from ``IntervalSettlement`` rows, so a summary always
agrees with the timesheet export for the same range. Project and client come
from the opening event's snapshot, the same values the interval was billed under.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from .config import LOCAL_TZ
from .middleware import Identity
from .models import IntervalSettlement, MacroTask, TimeLogEvent
from .utils import local_date, local_day_bounds, minutes_to_hours, now_utc, to_decimal

logger = logging.getLogger(__name__)

GROUPINGS = ("task", "project", "client")


@dataclass
class SummaryLine:
    key: Optional[str]
    label: str
    intervals: int = 0
    actual_minutes: int = 0
    billable_minutes: int = 0
    retainer_minutes: int = 0
    direct_minutes: int = 0
    earnings: Decimal = field(default_factory=lambda: Decimal("0.00"))

    def add(self, row: IntervalSettlement) -> None:
        self.intervals += 1
        self.actual_minutes += row.elapsed_minutes or 0
        self.billable_minutes += row.billable_minutes or 0
        self.retainer_minutes += row.retainer_minutes or 0
        self.direct_minutes += row.direct_minutes or 0
        self.earnings += to_decimal(row.earnings)

    @property
    def actual_hours(self) -> Decimal:
        return minutes_to_hours(self.actual_minutes)

    @property
    def billable_hours(self) -> Decimal:
        return minutes_to_hours(self.billable_minutes)


@dataclass
class Summary:
    group_by: str
    range_start: dt.date
    range_end: dt.date
    currency: str
    user_id: Optional[str]
    lines: List[SummaryLine]
    totals: SummaryLine


def default_range(today: Optional[dt.date] = None) -> Tuple[dt.date, dt.date]:
    """The current week so far, Monday through ``today``."""
    today = today or local_date(now_utc(), LOCAL_TZ)
    return today - dt.timedelta(days=today.weekday()), today


def _group_key(group_by: str, row: IntervalSettlement, opener: TimeLogEvent) -> Optional[str]:
    if group_by == "task":
        return str(row.macro_task_id)
    if group_by == "project":
        return opener.project_id
    return opener.client_id


def summarize(
    db: Session,
    identity: Identity,
    group_by: str,
    range_start: dt.date,
    range_end: dt.date,
    currency: str,
    user_id: Optional[str] = None,
) -> Summary:
    """Totals of intervals closed within the local date range, grouped by task, project or client.

    Covers the whole organization unless ``user_id`` narrows it to one person.
    """
    if group_by not in GROUPINGS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported grouping")
    if range_end < range_start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="End date precedes start date")

    start, end = local_day_bounds(range_start, range_end, LOCAL_TZ)
    query = (
        db.query(IntervalSettlement, TimeLogEvent)
        .join(TimeLogEvent, TimeLogEvent.id == IntervalSettlement.open_event_id)
        .filter(
            TimeLogEvent.org_id == identity.org_id,
            IntervalSettlement.closed_at >= start,
            IntervalSettlement.closed_at < end,
        )
    )
    if user_id:
        query = query.filter(IntervalSettlement.user_id == user_id)
    rows = query.order_by(IntervalSettlement.closed_at.asc(), IntervalSettlement.id.asc()).all()

    titles: Dict[int, str] = {}
    if group_by == "task" and rows:
        task_ids = {row.macro_task_id for row, _ in rows}
        titles = {task.id: task.title for task in db.query(MacroTask).filter(MacroTask.id.in_(task_ids))}

    grouped: Dict[Optional[str], SummaryLine] = {}
    totals = SummaryLine(key=None, label="Total")
    for row, opener in rows:
        key = _group_key(group_by, row, opener)
        line = grouped.get(key)
        if line is None:
            if group_by == "task":
                label = titles.get(row.macro_task_id, f"#{row.macro_task_id} (deleted)")
            else:
                label = key or f"No {group_by}"
            line = grouped[key] = SummaryLine(key=key, label=label)
        line.add(row)
        totals.add(row)

    lines = sorted(grouped.values(), key=lambda line: (-line.earnings, -line.actual_minutes, line.label))
    logger.debug(
        "Summarized %s interval(s) by %s for org %s (%s..%s)",
        totals.intervals,
        group_by,
        identity.org_id,
        range_start,
        range_end,
    )
    return Summary(
        group_by=group_by,
        range_start=range_start,
        range_end=range_end,
        currency=currency,
        user_id=user_id,
        lines=lines,
        totals=totals,
    )
