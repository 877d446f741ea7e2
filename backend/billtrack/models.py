from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import ensure_utc, minutes_to_hours, optional_utc, to_decimal

Base = declarative_base()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class MacroTask(Base):
    __tablename__ = "macro_tasks"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    project_id = Column(String(64), nullable=True, index=True)
    client_id = Column(String(64), nullable=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(String(10), nullable=False, default="medium")
    status = Column(String(20), nullable=False, default="not_started", index=True)
    estimated_hours = Column(Numeric(6, 2), nullable=True)
    hourly_rate = Column(Numeric(10, 2), nullable=True)  # per-task override
    is_billable = Column(Boolean, nullable=False, default=True)
    actual_minutes = Column(Integer, nullable=False, default=0)
    billable_minutes = Column(Integer, nullable=False, default=0)
    retainer_minutes = Column(Integer, nullable=False, default=0)
    earnings = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    billing_locked = Column(Boolean, nullable=False, default=False)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    pause_reason = Column(Text, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    micro_tasks = relationship(
        "MicroTask",
        back_populates="macro_task",
        cascade="all, delete-orphan",
        order_by="MicroTask.order_index",
    )

    @property
    def actual_hours(self) -> Decimal:
        return minutes_to_hours(self.actual_minutes)

    @property
    def billable_hours(self) -> Decimal:
        return minutes_to_hours(self.billable_minutes)

    def mark_paused(self, now: dt.datetime, reason: Optional[str]) -> None:
        self.paused_at = ensure_utc(now)
        self.pause_reason = reason

    def clear_pause(self) -> None:
        self.paused_at = None
        self.pause_reason = None

    def accrue(self, actual: int, billable: int, retainer: int, earnings: Decimal) -> None:
        if billable and self.billing_locked:
            raise ValueError(f"Task {self.id} is locked for billing")
        self.actual_minutes = (self.actual_minutes or 0) + actual
        self.billable_minutes = (self.billable_minutes or 0) + billable
        self.retainer_minutes = (self.retainer_minutes or 0) + retainer
        self.earnings = to_decimal(self.earnings) + earnings

    def reset_aggregates(self) -> None:
        self.actual_minutes = 0
        self.billable_minutes = 0
        self.retainer_minutes = 0
        self.earnings = Decimal("0.00")


class MicroTask(Base):
    __tablename__ = "micro_tasks"

    id = Column(Integer, primary_key=True, index=True)
    macro_task_id = Column(Integer, ForeignKey("macro_tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    order_index = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="not_started")
    estimated_minutes = Column(Integer, nullable=True)
    actual_minutes = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    break_start = Column(DateTime(timezone=True), nullable=True)
    break_minutes = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    macro_task = relationship("MacroTask", back_populates="micro_tasks")

    __table_args__ = (Index("ix_micro_tasks_parent_order", "macro_task_id", "order_index"),)

    @property
    def on_break(self) -> bool:
        return self.break_start is not None


class TimeLogEvent(Base):
    __tablename__ = "time_log_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    org_id = Column(String(64), nullable=True)
    sequence = Column(Integer, nullable=False)
    kind = Column(String(20), nullable=False)
    # Task references are plain columns: events outlive deleted tasks.
    macro_task_id = Column(Integer, nullable=True, index=True)
    micro_task_id = Column(Integer, nullable=True, index=True)
    previous_task_id = Column(Integer, nullable=True)
    project_id = Column(String(64), nullable=True)
    client_id = Column(String(64), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=True)
    hourly_rate = Column(Numeric(10, 2), nullable=True)
    rate_source = Column(String(30), nullable=True)
    is_billable = Column(Boolean, nullable=False, default=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_time_log_events_user_sequence"),
        Index("ix_time_log_events_user_timestamp", "user_id", "timestamp"),
    )

    @property
    def at(self) -> dt.datetime:
        return ensure_utc(self.timestamp)


@event.listens_for(TimeLogEvent, "before_update")
def _reject_event_update(mapper, connection, target) -> None:  # pragma: no cover - guard
    raise RuntimeError("Time log events are append-only")


@event.listens_for(TimeLogEvent, "before_delete")
def _reject_event_delete(mapper, connection, target) -> None:  # pragma: no cover - guard
    raise RuntimeError("Time log events are append-only")


class IntervalSettlement(Base):
    __tablename__ = "interval_settlements"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    macro_task_id = Column(Integer, nullable=False, index=True)
    open_event_id = Column(Integer, ForeignKey("time_log_events.id"), nullable=False)
    close_event_id = Column(Integer, ForeignKey("time_log_events.id"), nullable=False, unique=True)
    opened_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=False)
    elapsed_minutes = Column(Integer, nullable=False)
    break_minutes = Column(Integer, nullable=False, default=0)
    is_billable = Column(Boolean, nullable=False)
    billable_minutes = Column(Integer, nullable=False, default=0)
    hourly_rate = Column(Numeric(10, 2), nullable=True)
    rate_source = Column(String(30), nullable=True)
    retainer_block_id = Column(Integer, ForeignKey("retainer_blocks.id"), nullable=True, index=True)
    retainer_minutes = Column(Integer, nullable=False, default=0)
    direct_minutes = Column(Integer, nullable=False, default=0)
    earnings = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    direct_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    retainer_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    retainer_block = relationship("RetainerBlock")


class RateRecord(Base):
    __tablename__ = "rate_records"

    id = Column(Integer, primary_key=True)
    org_id = Column(String(64), nullable=False, index=True)
    rate_type = Column(String(30), nullable=False, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    project_id = Column(String(64), nullable=True, index=True)
    client_id = Column(String(64), nullable=True, index=True)
    hourly_rate = Column(Numeric(10, 2), nullable=False)
    effective_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    created_by = Column(String(64), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class RetainerBlock(Base):
    __tablename__ = "retainer_blocks"

    id = Column(Integer, primary_key=True)
    org_id = Column(String(64), nullable=False, index=True)
    client_id = Column(String(64), nullable=False, index=True)
    project_id = Column(String(64), nullable=True, index=True)
    purchased_minutes = Column(Integer, nullable=False)
    used_minutes = Column(Integer, nullable=False, default=0)
    hourly_rate = Column(Numeric(10, 2), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default="active", index=True)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def remaining_minutes(self) -> int:
        return max((self.purchased_minutes or 0) - (self.used_minutes or 0), 0)

    @property
    def hours_purchased(self) -> Decimal:
        return minutes_to_hours(self.purchased_minutes)

    @property
    def hours_used(self) -> Decimal:
        return minutes_to_hours(self.used_minutes)


class TimerHead(Base):
    """Per-user compare-and-append anchor, derived from the event log."""

    __tablename__ = "timer_heads"

    user_id = Column(String(64), primary_key=True)
    last_sequence = Column(Integer, nullable=False, default=0)
    last_timestamp = Column(DateTime(timezone=True), nullable=True)
    open_event_id = Column(Integer, nullable=True)
    open_task_id = Column(Integer, nullable=True)
    break_event_id = Column(Integer, nullable=True)
    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def last_at(self) -> Optional[dt.datetime]:
        return optional_utc(self.last_timestamp)


class UserPresence(Base):
    __tablename__ = "user_presence"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    org_id = Column(String(64), nullable=True, index=True)
    is_online = Column(Boolean, nullable=False, default=False)
    current_status = Column(String(20), nullable=False, default="offline")
    current_task_id = Column(Integer, nullable=True)
    timer_status = Column(String(20), nullable=False, default="stopped")
    timer_start = Column(DateTime(timezone=True), nullable=True)
    idle_since = Column(DateTime(timezone=True), nullable=True)
    last_seen = Column(DateTime(timezone=True), nullable=True)
    last_heartbeat_at = Column(DateTime(timezone=True), nullable=True)
    last_event_sequence = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class ExportRecord(Base):
    __tablename__ = "exports"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    format = Column(String(10), nullable=False)
    range_start = Column(Date, nullable=False)
    range_end = Column(Date, nullable=False)
    path = Column(String(255), nullable=False)
    checksum = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
