"""Prepaid retainer blocks and their consumption."""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Tuple

from fastapi import HTTPException, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .errors import RETAINER_EXHAUSTED, Notice
from .models import RetainerBlock

logger = logging.getLogger(__name__)

BLOCK_STATUSES = ("active", "exhausted", "expired", "cancelled")

# "expired" is a display label set lazily by listings; billing goes by the date window.
BILLABLE_STATUSES = ("active", "expired")


def allocate(remaining: int, requested: int) -> Tuple[int, int]:
    """Split ``requested`` minutes into ``(debited, overflow)`` against a balance."""
    remaining = max(int(remaining), 0)
    requested = max(int(requested), 0)
    debited = min(remaining, requested)
    return debited, requested - debited


@dataclass
class DebitResult:
    block_id: int
    debited: int
    overflow: int
    notices: List[Notice] = field(default_factory=list)


def expire_blocks(db: Session, today: dt.date, org_id: Optional[str] = None) -> int:
    query = db.query(RetainerBlock).filter(
        RetainerBlock.status == "active",
        RetainerBlock.end_date.isnot(None),
        RetainerBlock.end_date < today,
    )
    if org_id is not None:
        query = query.filter(RetainerBlock.org_id == org_id)
    expired = 0
    for block in query.all():
        block.status = "expired"
        expired += 1
    if expired:
        db.flush()
        logger.info("Marked %s retainer block(s) expired before %s", expired, today)
    return expired


def find_active_block(
    db: Session,
    client_id: Optional[str],
    project_id: Optional[str],
    on: dt.date,
    org_id: Optional[str] = None,
) -> Optional[RetainerBlock]:
    """Earliest-expiring block of the client whose window covers ``on``; open-ended blocks come last.

    Selection depends only on ``on`` and the stored blocks, never on whether a
    listing already relabelled a block as expired.
    """
    if not client_id:
        return None
    query = db.query(RetainerBlock).filter(
        RetainerBlock.client_id == client_id,
        RetainerBlock.status.in_(BILLABLE_STATUSES),
        RetainerBlock.start_date <= on,
        or_(RetainerBlock.end_date.is_(None), RetainerBlock.end_date >= on),
    )
    if org_id is not None:
        query = query.filter(RetainerBlock.org_id == org_id)
    if project_id:
        query = query.filter(or_(RetainerBlock.project_id.is_(None), RetainerBlock.project_id == project_id))
    else:
        query = query.filter(RetainerBlock.project_id.is_(None))
    candidates = [block for block in query.all() if block.remaining_minutes > 0]
    if not candidates:
        return None
    candidates.sort(key=lambda block: (block.end_date is None, block.end_date or dt.date.max, block.start_date, block.id))
    return candidates[0]


def debit(db: Session, block_id: int, minutes: int) -> DebitResult:
    """Consume up to ``minutes`` from a block.

    The write is guarded by the block's version counter: a concurrent debit
    surfaces as ``StaleDataError`` on flush and the caller retries the whole
    transaction.
    """
    block = db.get(RetainerBlock, block_id)
    if block is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Retainer block not found")
    if block.status not in BILLABLE_STATUSES:
        return DebitResult(block_id=block_id, debited=0, overflow=max(minutes, 0))
    debited, overflow = allocate(block.remaining_minutes, minutes)
    notices: List[Notice] = []
    if debited:
        block.used_minutes = (block.used_minutes or 0) + debited
        if block.used_minutes >= block.purchased_minutes:
            block.status = "exhausted"
            logger.warning("Retainer block %s exhausted; %s minute(s) spill to direct billing", block.id, overflow)
            notices.append(
                Notice(
                    RETAINER_EXHAUSTED,
                    "Retainer block exhausted; remaining time is billed directly",
                    {"retainer_block_id": block.id, "overflow_minutes": overflow},
                )
            )
        db.flush()
    return DebitResult(block_id=block_id, debited=debited, overflow=overflow, notices=notices)


def create_block(
    db: Session,
    org_id: str,
    client_id: str,
    purchased_minutes: int,
    hourly_rate: Decimal,
    start_date: dt.date,
    end_date: Optional[dt.date] = None,
    project_id: Optional[str] = None,
) -> RetainerBlock:
    if purchased_minutes <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Purchased hours must be positive")
    if end_date is not None and end_date < start_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="End date precedes start date")
    block = RetainerBlock(
        org_id=org_id,
        client_id=client_id,
        project_id=project_id,
        purchased_minutes=purchased_minutes,
        used_minutes=0,
        hourly_rate=hourly_rate,
        start_date=start_date,
        end_date=end_date,
        status="active",
    )
    db.add(block)
    db.commit()
    db.refresh(block)
    return block


def list_blocks(
    db: Session,
    org_id: str,
    today: dt.date,
    client_id: Optional[str] = None,
    block_status: Optional[str] = None,
) -> List[RetainerBlock]:
    expire_blocks(db, today, org_id)
    db.commit()
    query = db.query(RetainerBlock).filter(RetainerBlock.org_id == org_id)
    if client_id:
        query = query.filter(RetainerBlock.client_id == client_id)
    if block_status:
        query = query.filter(RetainerBlock.status == block_status)
    return query.order_by(RetainerBlock.start_date.asc(), RetainerBlock.id.asc()).all()


def cancel_block(db: Session, org_id: str, block_id: int) -> RetainerBlock:
    block = db.get(RetainerBlock, block_id)
    if block is None or block.org_id != org_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Retainer block not found")
    if block.status == "cancelled":
        return block
    block.status = "cancelled"
    db.commit()
    db.refresh(block)
    logger.info("Cancelled retainer block %s with %s minute(s) unused", block.id, block.remaining_minutes)
    return block
