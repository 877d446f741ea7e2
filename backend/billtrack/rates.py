"""Hourly rate resolution with historical effectivity.

Resolution is a pure function over rate records; :func:`resolve` only loads
the candidate records of an organization and delegates. Dates compare in the
configured local time zone.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from fastapi import HTTPException, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .config import LOCAL_TZ
from .errors import NO_RATE_CONFIGURED, Notice, RateRecordConflict
from .models import RateRecord
from .utils import local_date, to_decimal

logger = logging.getLogger(__name__)

USER_DEFAULT = "user_default"
PROJECT_OVERRIDE = "project_override"
CLIENT_DEFAULT = "client_default"
RATE_TYPES = (USER_DEFAULT, PROJECT_OVERRIDE, CLIENT_DEFAULT)

TASK_OVERRIDE = "task_override"
NO_RATE = "none"


@dataclass(frozen=True)
class RateResolution:
    hourly_rate: Decimal
    source: str
    record_id: Optional[int] = None
    notices: Tuple[Notice, ...] = ()


def is_effective(record: RateRecord, on: dt.date) -> bool:
    return record.effective_date <= on and (record.end_date is None or record.end_date >= on)


def effective_record(records: Iterable[RateRecord], on: dt.date) -> Optional[RateRecord]:
    """Latest record in force on ``on``; ties go to the most recently created."""
    candidates = [record for record in records if is_effective(record, on)]
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda record: (record.effective_date, record.created_at or dt.datetime.min, record.id or 0),
    )


def resolve_from_records(
    records: Sequence[RateRecord],
    user_id: str,
    project_id: Optional[str],
    client_id: Optional[str],
    on: dt.date,
    task_rate: Optional[Decimal] = None,
) -> RateResolution:
    if task_rate is not None:
        return RateResolution(to_decimal(task_rate), TASK_OVERRIDE)

    tiers: List[List[RateRecord]] = []
    if project_id:
        overrides = [r for r in records if r.rate_type == PROJECT_OVERRIDE and r.project_id == project_id]
        tiers.append([r for r in overrides if r.user_id == user_id])
        tiers.append([r for r in overrides if r.user_id is None])
    if client_id:
        tiers.append([r for r in records if r.rate_type == CLIENT_DEFAULT and r.client_id == client_id])
    tiers.append([r for r in records if r.rate_type == USER_DEFAULT and r.user_id == user_id])

    for tier in tiers:
        record = effective_record(tier, on)
        if record is not None:
            return RateResolution(to_decimal(record.hourly_rate), record.rate_type, record.id)

    notice = Notice(
        NO_RATE_CONFIGURED,
        "No hourly rate configured; time is recorded at zero",
        {"user_id": user_id, "project_id": project_id, "client_id": client_id, "date": on.isoformat()},
    )
    return RateResolution(Decimal("0.00"), NO_RATE, None, (notice,))


def _candidates(db: Session, org_id: str, user_id: str, project_id: Optional[str], client_id: Optional[str]) -> List[RateRecord]:
    clauses = [RateRecord.rate_type == USER_DEFAULT]
    if project_id:
        clauses.append(RateRecord.project_id == project_id)
    if client_id:
        clauses.append(RateRecord.client_id == client_id)
    return (
        db.query(RateRecord)
        .filter(RateRecord.org_id == org_id, or_(*clauses))
        .filter(or_(RateRecord.user_id.is_(None), RateRecord.user_id == user_id))
        .all()
    )


def resolve(
    db: Session,
    org_id: str,
    user_id: str,
    project_id: Optional[str],
    client_id: Optional[str],
    at: dt.datetime,
    task_rate: Optional[Decimal] = None,
) -> RateResolution:
    on = local_date(at, LOCAL_TZ)
    records = [] if task_rate is not None else _candidates(db, org_id, user_id, project_id, client_id)
    resolution = resolve_from_records(records, user_id, project_id, client_id, on, task_rate)
    if resolution.source == NO_RATE:
        logger.warning("No rate configured for user %s (project=%s, client=%s) on %s", user_id, project_id, client_id, on)
    return resolution


def _validate_subject(rate_type: str, user_id: Optional[str], project_id: Optional[str], client_id: Optional[str]) -> None:
    if rate_type not in RATE_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported rate type")
    if rate_type == USER_DEFAULT and (not user_id or project_id or client_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User default rates need exactly a user")
    if rate_type == PROJECT_OVERRIDE and (not project_id or client_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Project overrides need a project")
    if rate_type == CLIENT_DEFAULT and (not client_id or project_id or user_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Client defaults need exactly a client")


def closing_date(active: Optional[RateRecord], effective_date: dt.date) -> Optional[dt.date]:
    """End date for the currently active record when a new one takes effect on ``effective_date``."""
    if active is None:
        return None
    if effective_date <= active.effective_date:
        raise RateRecordConflict(
            "New rate must take effect after the currently active rate",
            active_record_id=active.id,
            active_effective_date=active.effective_date.isoformat(),
            requested_effective_date=effective_date.isoformat(),
        )
    return effective_date - dt.timedelta(days=1)


def _subject_filter(query, rate_type: str, user_id: Optional[str], project_id: Optional[str], client_id: Optional[str]):
    query = query.filter(RateRecord.rate_type == rate_type)
    for column, value in (
        (RateRecord.user_id, user_id),
        (RateRecord.project_id, project_id),
        (RateRecord.client_id, client_id),
    ):
        query = query.filter(column.is_(None) if value is None else column == value)
    return query


def assign_rate(
    db: Session,
    org_id: str,
    created_by: str,
    rate_type: str,
    hourly_rate: Decimal,
    effective_date: dt.date,
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
    client_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> RateRecord:
    _validate_subject(rate_type, user_id, project_id, client_id)
    if to_decimal(hourly_rate) < 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Hourly rate must not be negative")
    active = (
        _subject_filter(db.query(RateRecord).filter(RateRecord.org_id == org_id), rate_type, user_id, project_id, client_id)
        .filter(RateRecord.end_date.is_(None))
        .order_by(RateRecord.effective_date.desc(), RateRecord.id.desc())
        .first()
    )
    end_date = closing_date(active, effective_date)
    if active is not None:
        active.end_date = end_date
        logger.info("Closed rate record %s on %s", active.id, end_date)
    record = RateRecord(
        org_id=org_id,
        rate_type=rate_type,
        user_id=user_id,
        project_id=project_id,
        client_id=client_id,
        hourly_rate=to_decimal(hourly_rate),
        effective_date=effective_date,
        created_by=created_by,
        reason=reason,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def list_rates(
    db: Session,
    org_id: str,
    rate_type: Optional[str] = None,
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
    client_id: Optional[str] = None,
    active_only: bool = False,
) -> List[RateRecord]:
    query = db.query(RateRecord).filter(RateRecord.org_id == org_id)
    if rate_type:
        query = query.filter(RateRecord.rate_type == rate_type)
    if user_id:
        query = query.filter(RateRecord.user_id == user_id)
    if project_id:
        query = query.filter(RateRecord.project_id == project_id)
    if client_id:
        query = query.filter(RateRecord.client_id == client_id)
    if active_only:
        query = query.filter(RateRecord.end_date.is_(None))
    return query.order_by(RateRecord.rate_type, RateRecord.effective_date.desc(), RateRecord.id.desc()).all()
