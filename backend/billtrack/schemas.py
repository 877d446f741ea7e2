from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Dict, List, Optional

from typing_extensions import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer, model_validator

from .state_machine import Priority


def _serialize_datetime(value: Optional[dt.datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    else:
        value = value.astimezone(dt.timezone.utc)
    return value.isoformat()


def _money(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return f"{Decimal(value):.2f}"


class MicroTaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    macro_task_id: int
    title: str
    description: Optional[str]
    order_index: int
    status: str
    estimated_minutes: Optional[int]
    actual_minutes: int
    break_minutes: int
    started_at: Optional[dt.datetime]
    completed_at: Optional[dt.datetime]
    break_start: Optional[dt.datetime]

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "macro_task_id": self.macro_task_id,
            "title": self.title,
            "description": self.description,
            "order_index": self.order_index,
            "status": self.status,
            "estimated_minutes": self.estimated_minutes,
            "actual_minutes": self.actual_minutes,
            "break_minutes": self.break_minutes,
            "on_break": self.break_start is not None,
            "started_at": _serialize_datetime(self.started_at),
            "completed_at": _serialize_datetime(self.completed_at),
            "break_start": _serialize_datetime(self.break_start),
        }


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    org_id: str
    user_id: str
    project_id: Optional[str]
    client_id: Optional[str]
    title: str
    description: Optional[str]
    priority: str
    status: str
    estimated_hours: Optional[Decimal]
    hourly_rate: Optional[Decimal]
    is_billable: bool
    actual_minutes: int
    billable_minutes: int
    retainer_minutes: int
    actual_hours: Decimal
    billable_hours: Decimal
    earnings: Decimal
    billing_locked: bool
    paused_at: Optional[dt.datetime]
    pause_reason: Optional[str]
    completed_at: Optional[dt.datetime]
    cancelled_at: Optional[dt.datetime]
    created_at: dt.datetime
    micro_tasks: List[MicroTaskResponse] = Field(default_factory=list)

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "client_id": self.client_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "status": self.status,
            "estimated_hours": _money(self.estimated_hours),
            "hourly_rate": _money(self.hourly_rate),
            "is_billable": self.is_billable,
            "actual_minutes": self.actual_minutes,
            "billable_minutes": self.billable_minutes,
            "retainer_minutes": self.retainer_minutes,
            "actual_hours": _money(self.actual_hours),
            "billable_hours": _money(self.billable_hours),
            "earnings": _money(self.earnings),
            "billing_locked": self.billing_locked,
            "paused_at": _serialize_datetime(self.paused_at),
            "pause_reason": self.pause_reason,
            "completed_at": _serialize_datetime(self.completed_at),
            "cancelled_at": _serialize_datetime(self.cancelled_at),
            "created_at": _serialize_datetime(self.created_at),
            "micro_tasks": [micro._serialize() for micro in self.micro_tasks],
        }


class TaskCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    estimated_hours: Optional[Decimal] = Field(default=None, ge=0)
    hourly_rate: Optional[Decimal] = Field(default=None, ge=0)
    is_billable: bool = True
    project_id: Optional[str] = None
    client_id: Optional[str] = None


class TaskUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Optional[Priority] = None
    estimated_hours: Optional[Decimal] = Field(default=None, ge=0)
    hourly_rate: Optional[Decimal] = Field(default=None, ge=0)
    is_billable: Optional[bool] = None
    project_id: Optional[str] = None
    client_id: Optional[str] = None


class MicroTaskCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    estimated_minutes: Optional[int] = Field(default=None, ge=0)
    position: Optional[int] = Field(default=None, ge=0)


class MicroTaskReorderRequest(BaseModel):
    order: List[int]

    @model_validator(mode="after")
    def _validate_order(self) -> "MicroTaskReorderRequest":
        unique_ids = set(self.order)
        if not self.order or len(unique_ids) != len(self.order):
            raise ValueError("Order must list unique micro task ids")
        return self


class NextStepResponse(BaseModel):
    task_id: int
    micro_task: Optional[MicroTaskResponse]


class EventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    sequence: int
    kind: str
    macro_task_id: Optional[int]
    micro_task_id: Optional[int]
    previous_task_id: Optional[int]
    project_id: Optional[str]
    client_id: Optional[str]
    timestamp: dt.datetime
    duration_minutes: Optional[int]
    hourly_rate: Optional[Decimal]
    is_billable: bool
    note: Optional[str]

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sequence": self.sequence,
            "kind": self.kind,
            "macro_task_id": self.macro_task_id,
            "micro_task_id": self.micro_task_id,
            "previous_task_id": self.previous_task_id,
            "project_id": self.project_id,
            "client_id": self.client_id,
            "timestamp": _serialize_datetime(self.timestamp),
            "duration_minutes": self.duration_minutes,
            "hourly_rate": _money(self.hourly_rate),
            "is_billable": self.is_billable,
            "note": self.note,
        }


class EventPageResponse(BaseModel):
    events: List[EventResponse]
    next_cursor: Optional[str]


class SettlementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    macro_task_id: int
    open_event_id: int
    close_event_id: int
    elapsed_minutes: int
    break_minutes: int
    is_billable: bool
    billable_minutes: int
    hourly_rate: Optional[Decimal]
    rate_source: Optional[str]
    retainer_block_id: Optional[int]
    retainer_minutes: int
    direct_minutes: int
    earnings: Decimal
    direct_amount: Decimal
    retainer_amount: Decimal

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "macro_task_id": self.macro_task_id,
            "open_event_id": self.open_event_id,
            "close_event_id": self.close_event_id,
            "elapsed_minutes": self.elapsed_minutes,
            "break_minutes": self.break_minutes,
            "is_billable": self.is_billable,
            "billable_minutes": self.billable_minutes,
            "hourly_rate": _money(self.hourly_rate),
            "rate_source": self.rate_source,
            "retainer_block_id": self.retainer_block_id,
            "retainer_minutes": self.retainer_minutes,
            "direct_minutes": self.direct_minutes,
            "earnings": _money(self.earnings),
            "direct_amount": _money(self.direct_amount),
            "retainer_amount": _money(self.retainer_amount),
        }


class TimerActionResponse(BaseModel):
    task: TaskResponse
    event: EventResponse
    settlement: Optional[SettlementResponse] = None
    previous_task: Optional[TaskResponse] = None
    micro_task: Optional[MicroTaskResponse] = None
    notices: List[Dict[str, Any]] = Field(default_factory=list)


class TimerStartRequest(BaseModel):
    task_id: int
    note: Optional[str] = None


class TimerPauseRequest(BaseModel):
    task_id: int
    reason: Optional[str] = None


class TimerTaskRequest(BaseModel):
    task_id: int


class TimerStopRequest(BaseModel):
    task_id: int
    note: Optional[str] = None


class TimerSwitchRequest(BaseModel):
    from_task_id: int
    to_task_id: int

    @model_validator(mode="after")
    def _validate_tasks(self) -> "TimerSwitchRequest":
        if self.from_task_id == self.to_task_id:
            raise ValueError("Source and target task must differ")
        return self


class BreakStartRequest(BaseModel):
    task_id: int
    micro_task_id: Optional[int] = None
    note: Optional[str] = None


class TaskCancelRequest(BaseModel):
    reason: Optional[str] = None


class CurrentTimerResponse(BaseModel):
    running: bool
    task: Optional[TaskResponse] = None
    opened_at: Optional[dt.datetime] = None
    on_break: bool = False
    elapsed_minutes: int = 0
    break_minutes: int = 0
    hourly_rate: Optional[Decimal] = None
    is_billable: Optional[bool] = None

    @field_validator("opened_at", mode="after")
    @classmethod
    def _as_utc(cls, value: Optional[dt.datetime]) -> Optional[dt.datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=dt.timezone.utc)
        return value


class ReplayResponse(BaseModel):
    events_replayed: int
    tasks_recomputed: int
    drifted_task_ids: List[int]
    open_task_id: Optional[int]


class RateCreateRequest(BaseModel):
    rate_type: Literal["user_default", "project_override", "client_default"]
    hourly_rate: Decimal = Field(ge=0)
    effective_date: dt.date
    user_id: Optional[str] = None
    project_id: Optional[str] = None
    client_id: Optional[str] = None
    reason: Optional[str] = None


class RateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    org_id: str
    rate_type: str
    user_id: Optional[str]
    project_id: Optional[str]
    client_id: Optional[str]
    hourly_rate: Decimal
    effective_date: dt.date
    end_date: Optional[dt.date]
    created_by: str
    reason: Optional[str]

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "rate_type": self.rate_type,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "client_id": self.client_id,
            "hourly_rate": _money(self.hourly_rate),
            "effective_date": self.effective_date.isoformat(),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "created_by": self.created_by,
            "reason": self.reason,
        }


class RateResolutionResponse(BaseModel):
    hourly_rate: Decimal
    source: str
    record_id: Optional[int]
    notices: List[Dict[str, Any]] = Field(default_factory=list)


class RetainerCreateRequest(BaseModel):
    client_id: str = Field(min_length=1)
    project_id: Optional[str] = None
    hours_purchased: Decimal = Field(gt=0)
    hourly_rate: Decimal = Field(ge=0)
    start_date: dt.date
    end_date: Optional[dt.date] = None

    @model_validator(mode="after")
    def _validate_range(self) -> "RetainerCreateRequest":
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date must not precede the start date")
        return self


class RetainerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    org_id: str
    client_id: str
    project_id: Optional[str]
    purchased_minutes: int
    used_minutes: int
    remaining_minutes: int
    hours_purchased: Decimal
    hours_used: Decimal
    hourly_rate: Decimal
    start_date: dt.date
    end_date: Optional[dt.date]
    status: str

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "client_id": self.client_id,
            "project_id": self.project_id,
            "purchased_minutes": self.purchased_minutes,
            "used_minutes": self.used_minutes,
            "remaining_minutes": self.remaining_minutes,
            "hours_purchased": _money(self.hours_purchased),
            "hours_used": _money(self.hours_used),
            "hourly_rate": _money(self.hourly_rate),
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "status": self.status,
        }


class PresenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    user_id: str
    org_id: Optional[str]
    is_online: bool
    current_status: str
    current_task_id: Optional[int]
    timer_status: str
    timer_start: Optional[dt.datetime]
    idle_since: Optional[dt.datetime]
    last_seen: Optional[dt.datetime]
    last_heartbeat_at: Optional[dt.datetime]
    last_event_sequence: int

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "org_id": self.org_id,
            "is_online": self.is_online,
            "current_status": self.current_status,
            "current_task_id": self.current_task_id,
            "timer_status": self.timer_status,
            "timer_start": _serialize_datetime(self.timer_start),
            "idle_since": _serialize_datetime(self.idle_since),
            "last_seen": _serialize_datetime(self.last_seen),
            "last_heartbeat_at": _serialize_datetime(self.last_heartbeat_at),
            "last_event_sequence": self.last_event_sequence,
        }


class SettingsResponse(BaseModel):
    environment: str
    timezone: str
    storage: str
    currency: str
    idle_threshold_seconds: int
    offline_threshold_seconds: int
    clock_skew_tolerance_ms: int


class SettingsUpdateRequest(BaseModel):
    idle_threshold_seconds: Optional[int] = Field(default=None, ge=1)
    offline_threshold_seconds: Optional[int] = Field(default=None, ge=1)
    clock_skew_tolerance_ms: Optional[int] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class ExportRequest(BaseModel):
    format: Literal["pdf", "xlsx"]
    range_start: dt.date
    range_end: dt.date

    @model_validator(mode="after")
    def _validate_range(self) -> "ExportRequest":
        if self.range_end < self.range_start:
            raise ValueError("End date must not precede the start date")
        return self


class ExportResponse(BaseModel):
    id: int
    format: str
    range_start: dt.date
    range_end: dt.date
    created_at: dt.datetime
    checksum: str

    model_config = ConfigDict(from_attributes=True)

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "format": self.format,
            "range_start": self.range_start.isoformat(),
            "range_end": self.range_end.isoformat(),
            "created_at": _serialize_datetime(self.created_at),
            "checksum": self.checksum,
        }




class SummaryLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    key: Optional[str]
    label: str
    intervals: int
    actual_minutes: int
    billable_minutes: int
    retainer_minutes: int
    direct_minutes: int
    actual_hours: Decimal
    billable_hours: Decimal
    earnings: Decimal

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "intervals": self.intervals,
            "actual_minutes": self.actual_minutes,
            "billable_minutes": self.billable_minutes,
            "retainer_minutes": self.retainer_minutes,
            "direct_minutes": self.direct_minutes,
            "actual_hours": _money(self.actual_hours),
            "billable_hours": _money(self.billable_hours),
            "earnings": _money(self.earnings),
        }


class SummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    group_by: str
    range_start: dt.date
    range_end: dt.date
    currency: str
    user_id: Optional[str]
    lines: List[SummaryLineResponse]
    totals: SummaryLineResponse
