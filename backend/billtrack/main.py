from __future__ import annotations

import datetime as dt
import logging
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import exports, presence, rates, reports, retainers, services
from .config import LOCAL_TZ, configure_logging, settings
from .database import db_session, get_db, init_db
from .errors import BillingError, notice_dicts
from .middleware import Identity, IdentityMiddleware, current_identity
from .schemas import (
    BreakStartRequest,
    CurrentTimerResponse,
    EventPageResponse,
    EventResponse,
    ExportRequest,
    ExportResponse,
    MicroTaskCreateRequest,
    MicroTaskReorderRequest,
    MicroTaskResponse,
    NextStepResponse,
    PresenceResponse,
    RateCreateRequest,
    RateResolutionResponse,
    RateResponse,
    ReplayResponse,
    RetainerCreateRequest,
    RetainerResponse,
    SettingsResponse,
    SettingsUpdateRequest,
    SettlementResponse,
    SummaryResponse,
    TaskCancelRequest,
    TaskCreateRequest,
    TaskResponse,
    TaskUpdateRequest,
    TimerActionResponse,
    TimerPauseRequest,
    TimerStartRequest,
    TimerStopRequest,
    TimerSwitchRequest,
    TimerTaskRequest,
)
from .state import RuntimeState
from .utils import hours_to_minutes, local_date, now_utc

configure_logging(settings)
logger = logging.getLogger(__name__)

init_db()

runtime_state = RuntimeState(settings)
with db_session() as session:
    try:
        runtime_state.load_from_db(session)
    except SQLAlchemyError:
        logger.exception("Could not load persisted runtime settings; using defaults")

app = FastAPI(title=settings.app_name)
app.state.runtime_state = runtime_state
app.add_middleware(IdentityMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


def _state(request: Request) -> RuntimeState:
    return request.app.state.runtime_state


def _timer_response(outcome: services.TimerOutcome) -> TimerActionResponse:
    return TimerActionResponse(
        task=TaskResponse.model_validate(outcome.task),
        event=EventResponse.model_validate(outcome.event),
        settlement=SettlementResponse.model_validate(outcome.settlement) if outcome.settlement else None,
        previous_task=TaskResponse.model_validate(outcome.previous_task) if outcome.previous_task else None,
        micro_task=MicroTaskResponse.model_validate(outcome.micro_task) if outcome.micro_task else None,
        notices=notice_dicts(outcome.notices),
    )


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


# --- timer ------------------------------------------------------------------


@app.post("/timer/start", response_model=TimerActionResponse)
def timer_start(
    payload: TimerStartRequest,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> TimerActionResponse:
    outcome = services.start_timer(db, _state(request), identity, payload.task_id, note=payload.note)
    return _timer_response(outcome)


@app.post("/timer/pause", response_model=TimerActionResponse)
def timer_pause(
    payload: TimerPauseRequest,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> TimerActionResponse:
    outcome = services.pause_timer(db, _state(request), identity, payload.task_id, reason=payload.reason)
    return _timer_response(outcome)


@app.post("/timer/resume", response_model=TimerActionResponse)
def timer_resume(
    payload: TimerTaskRequest,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> TimerActionResponse:
    outcome = services.resume_timer(db, _state(request), identity, payload.task_id)
    return _timer_response(outcome)


@app.post("/timer/stop", response_model=TimerActionResponse)
def timer_stop(
    payload: TimerStopRequest,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> TimerActionResponse:
    outcome = services.stop_timer(db, _state(request), identity, payload.task_id, note=payload.note)
    return _timer_response(outcome)


@app.post("/timer/switch", response_model=TimerActionResponse)
def timer_switch(
    payload: TimerSwitchRequest,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> TimerActionResponse:
    outcome = services.switch_timer(db, _state(request), identity, payload.from_task_id, payload.to_task_id)
    return _timer_response(outcome)


@app.post("/timer/break/start", response_model=TimerActionResponse)
def timer_break_start(
    payload: BreakStartRequest,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> TimerActionResponse:
    outcome = services.start_break(
        db, _state(request), identity, payload.task_id, micro_task_id=payload.micro_task_id, note=payload.note
    )
    return _timer_response(outcome)


@app.post("/timer/break/end", response_model=TimerActionResponse)
def timer_break_end(
    payload: TimerTaskRequest,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> TimerActionResponse:
    outcome = services.end_break(db, _state(request), identity, payload.task_id)
    return _timer_response(outcome)


@app.get("/timer/current", response_model=CurrentTimerResponse)
def timer_current(identity: Identity = Depends(current_identity), db: Session = Depends(get_db)) -> CurrentTimerResponse:
    current = services.current_timer(db, identity)
    if current is None:
        return CurrentTimerResponse(running=False)
    return CurrentTimerResponse(
        running=True,
        task=TaskResponse.model_validate(current["task"]) if current["task"] is not None else None,
        opened_at=current["opened_at"],
        on_break=current["on_break"],
        elapsed_minutes=current["elapsed_minutes"],
        break_minutes=current["break_minutes"],
        hourly_rate=current["hourly_rate"],
        is_billable=current["is_billable"],
    )


# --- tasks ------------------------------------------------------------------


@app.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
def create_task(
    payload: TaskCreateRequest,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> TaskResponse:
    return services.create_task(
        db,
        identity,
        payload.title,
        description=payload.description,
        priority=payload.priority.value,
        estimated_hours=payload.estimated_hours,
        hourly_rate=payload.hourly_rate,
        is_billable=payload.is_billable,
        project_id=payload.project_id,
        client_id=payload.client_id,
    )


@app.get("/tasks", response_model=List[TaskResponse])
def list_tasks(
    task_status: Optional[str] = Query(default=None, alias="status"),
    project_id: Optional[str] = None,
    client_id: Optional[str] = None,
    user_id: Optional[str] = None,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> List[TaskResponse]:
    try:
        return services.list_tasks(db, identity, task_status, project_id, client_id, user_id=user_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown task status") from exc


@app.post("/tasks/replay", response_model=ReplayResponse)
def replay_tasks(identity: Identity = Depends(current_identity), db: Session = Depends(get_db)) -> ReplayResponse:
    return ReplayResponse(**services.replay(db, identity))


@app.get("/tasks/{task_id}", response_model=TaskResponse)
def read_task(task_id: int, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)) -> TaskResponse:
    return services.get_task(db, identity, task_id)


@app.patch("/tasks/{task_id}", response_model=TaskResponse)
def update_task(
    task_id: int,
    payload: TaskUpdateRequest,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> TaskResponse:
    return services.update_task(db, identity, task_id, payload.model_dump(exclude_unset=True))


@app.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: int, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)) -> Response:
    services.delete_task(db, identity, task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/tasks/{task_id}/cancel", response_model=TimerActionResponse)
def cancel_task(
    task_id: int,
    request: Request,
    payload: Optional[TaskCancelRequest] = None,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> TimerActionResponse:
    reason = payload.reason if payload else None
    outcome = services.cancel_task(db, _state(request), identity, task_id, reason=reason)
    return _timer_response(outcome)


# --- micro tasks ------------------------------------------------------------


@app.post("/tasks/{task_id}/micro-tasks", response_model=MicroTaskResponse, status_code=status.HTTP_201_CREATED)
def create_micro_task(
    task_id: int,
    payload: MicroTaskCreateRequest,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> MicroTaskResponse:
    return services.add_micro_task(
        db,
        identity,
        task_id,
        payload.title,
        description=payload.description,
        estimated_minutes=payload.estimated_minutes,
        position=payload.position,
    )


@app.get("/tasks/{task_id}/next-step", response_model=NextStepResponse)
def read_next_step(task_id: int, identity: Identity = Depends(current_identity), db: Session = Depends(get_db)) -> NextStepResponse:
    micro = services.next_step(db, identity, task_id)
    return NextStepResponse(task_id=task_id, micro_task=MicroTaskResponse.model_validate(micro) if micro else None)


@app.put("/tasks/{task_id}/micro-tasks/order", response_model=TaskResponse)
def reorder_micro_tasks(
    task_id: int,
    payload: MicroTaskReorderRequest,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> TaskResponse:
    return services.reorder_micro_tasks(db, identity, task_id, payload.order)


@app.delete("/micro-tasks/{micro_task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_micro_task(
    micro_task_id: int,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> Response:
    services.delete_micro_task(db, identity, micro_task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/micro-tasks/{micro_task_id}/start", response_model=TimerActionResponse)
def start_micro_task(
    micro_task_id: int,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> TimerActionResponse:
    outcome = services.start_micro_task(db, _state(request), identity, micro_task_id)
    return _timer_response(outcome)


@app.post("/micro-tasks/{micro_task_id}/complete", response_model=TimerActionResponse)
def complete_micro_task(
    micro_task_id: int,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> TimerActionResponse:
    outcome = services.complete_micro_task(db, _state(request), identity, micro_task_id)
    return _timer_response(outcome)


# --- events -----------------------------------------------------------------


@app.get("/events", response_model=EventPageResponse)
def list_events(
    cursor: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> EventPageResponse:
    events, next_cursor = services.list_events(db, identity, cursor, limit or settings.event_page_size)
    return EventPageResponse(events=[EventResponse.model_validate(event) for event in events], next_cursor=next_cursor)


# --- rates ------------------------------------------------------------------


@app.post("/rates", response_model=RateResponse, status_code=status.HTTP_201_CREATED)
def create_rate(
    payload: RateCreateRequest,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> RateResponse:
    return rates.assign_rate(
        db,
        identity.org_id,
        identity.user_id,
        payload.rate_type,
        payload.hourly_rate,
        payload.effective_date,
        user_id=payload.user_id,
        project_id=payload.project_id,
        client_id=payload.client_id,
        reason=payload.reason,
    )


@app.get("/rates", response_model=List[RateResponse])
def list_rates(
    rate_type: Optional[str] = None,
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
    client_id: Optional[str] = None,
    active_only: bool = False,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> List[RateResponse]:
    return rates.list_rates(db, identity.org_id, rate_type, user_id, project_id, client_id, active_only)


@app.get("/rates/resolve", response_model=RateResolutionResponse)
def resolve_rate(
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
    client_id: Optional[str] = None,
    task_id: Optional[int] = None,
    at: Optional[dt.datetime] = None,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> RateResolutionResponse:
    task_rate = None
    if task_id is not None:
        task = services.get_task(db, identity, task_id)
        task_rate = task.hourly_rate
        project_id = project_id or task.project_id
        client_id = client_id or task.client_id
    resolution = rates.resolve(
        db, identity.org_id, user_id or identity.user_id, project_id, client_id, at or now_utc(), task_rate
    )
    return RateResolutionResponse(
        hourly_rate=resolution.hourly_rate,
        source=resolution.source,
        record_id=resolution.record_id,
        notices=notice_dicts(resolution.notices),
    )


# --- retainers --------------------------------------------------------------


@app.post("/retainers", response_model=RetainerResponse, status_code=status.HTTP_201_CREATED)
def create_retainer(
    payload: RetainerCreateRequest,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> RetainerResponse:
    return retainers.create_block(
        db,
        identity.org_id,
        payload.client_id,
        hours_to_minutes(payload.hours_purchased),
        payload.hourly_rate,
        payload.start_date,
        end_date=payload.end_date,
        project_id=payload.project_id,
    )


@app.get("/retainers", response_model=List[RetainerResponse])
def list_retainers(
    client_id: Optional[str] = None,
    block_status: Optional[str] = Query(default=None, alias="status"),
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> List[RetainerResponse]:
    today = local_date(now_utc(), LOCAL_TZ)
    return retainers.list_blocks(db, identity.org_id, today, client_id=client_id, block_status=block_status)


@app.post("/retainers/{block_id}/cancel", response_model=RetainerResponse)
def cancel_retainer(
    block_id: int,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> RetainerResponse:
    return retainers.cancel_block(db, identity.org_id, block_id)


# --- presence ---------------------------------------------------------------


@app.post("/presence/heartbeat", response_model=PresenceResponse)
def presence_heartbeat(
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> PresenceResponse:
    idle, offline = _state(request).thresholds
    return presence.heartbeat(db, identity.user_id, identity.org_id, now_utc(), idle, offline)


@app.get("/presence", response_model=List[PresenceResponse])
def presence_list(
    request: Request,
    online_only: bool = True,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> List[PresenceResponse]:
    idle, offline = _state(request).thresholds
    return presence.list_for_org(db, identity.org_id, now_utc(), idle, offline, online_only=online_only)


@app.get("/presence/me", response_model=PresenceResponse)
def presence_me(
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> PresenceResponse:
    idle, offline = _state(request).thresholds
    return presence.current(db, identity.user_id, now_utc(), idle, offline)


@app.post("/presence/rebuild", response_model=PresenceResponse)
def presence_rebuild(
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> PresenceResponse:
    idle, offline = _state(request).thresholds
    return presence.rebuild(db, identity.user_id, identity.org_id, now_utc(), idle, offline)


# --- exports ----------------------------------------------------------------


@app.post("/exports", response_model=ExportResponse, status_code=status.HTTP_201_CREATED)
def create_export(
    payload: ExportRequest,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> ExportResponse:
    return exports.export_timesheet(
        db, identity, payload.format, payload.range_start, payload.range_end, _state(request).currency
    )


@app.get("/exports/{export_id}")
def download_export(
    export_id: int,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> Response:
    export = exports.get_export(db, identity, export_id)
    path = Path(export.path)
    media_type = "application/pdf" if export.format == "pdf" else "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    return FileResponse(path, media_type=media_type, filename=path.name)


# --- reports --------------------------------------------------------------


@app.get("/reports/summary", response_model=SummaryResponse)
def report_summary(
    request: Request,
    group_by: str = Query(default="task", pattern="^(task|project|client)$"),
    range_start: Optional[dt.date] = None,
    range_end: Optional[dt.date] = None,
    user_id: Optional[str] = None,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> SummaryResponse:
    default_start, default_end = reports.default_range()
    summary = reports.summarize(
        db,
        identity,
        group_by,
        range_start or default_start,
        range_end or default_end,
        _state(request).currency,
        user_id=user_id,
    )
    return SummaryResponse.model_validate(summary)


# --- settings ---------------------------------------------------------------


def _settings_response(snapshot: dict) -> SettingsResponse:
    return SettingsResponse(
        environment=settings.environment,
        timezone=settings.timezone,
        storage=settings.storage_backend,
        currency=snapshot["currency"],
        idle_threshold_seconds=snapshot["idle_threshold_seconds"],
        offline_threshold_seconds=snapshot["offline_threshold_seconds"],
        clock_skew_tolerance_ms=snapshot["clock_skew_tolerance_ms"],
    )


@app.get("/settings", response_model=SettingsResponse)
def read_settings(request: Request, identity: Identity = Depends(current_identity)) -> SettingsResponse:
    return _settings_response(_state(request).snapshot())


@app.put("/settings", response_model=SettingsResponse)
def write_settings(
    payload: SettingsUpdateRequest,
    request: Request,
    identity: Identity = Depends(current_identity),
    db: Session = Depends(get_db),
) -> SettingsResponse:
    snapshot = services.update_runtime_settings(db, _state(request), payload.model_dump(exclude_unset=True))
    return _settings_response(snapshot)
