from __future__ import annotations

import datetime as dt
import logging
from typing import Optional, Tuple

from fastapi import Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import models
from .config import settings
from .database import engine, get_db
from .errors import DomainError, InfrastructureError
from .logging_config import configure_logging
from .middleware import RequestTimingMiddleware
from .schemas import (
    ActivityCreateRequest,
    ActivityResponse,
    AlertCommentRequest,
    AlertResponse,
    CancelRequest,
    CloseCheckResponse,
    ConsolidateRequest,
    ConsolidationBatchResponse,
    ConsolidationResponse,
    EntryCreateRequest,
    EntryResponse,
    EntryUpdateRequest,
    ErrorResponse,
    IndicatorBatchResponse,
    IndicatorResponse,
    NoveltyCreateRequest,
    NoveltyRejectRequest,
    NoveltyResponse,
    PriceNegotiateRequest,
    PriceResponse,
    ProcessWeekResponse,
    TargetIncreaseRequest,
    TargetStatusResponse,
    TrendPointResponse,
    WeekComparisonResponse,
    WeekCreateRequest,
    WeekResolveRequest,
    WeekResponse,
    WeekSummaryResponse,
    WorkUnitCreateRequest,
    WorkUnitResponse,
)
from .services import (
    Actor,
    approve_novelty,
    can_close,
    cancel_work_unit,
    close_week,
    compare_weeks,
    consolidate,
    consolidate_week,
    create_activity,
    create_entry,
    create_novelty,
    create_week,
    create_work_unit,
    current_price,
    current_week,
    delete_entry,
    generate_alerts,
    get_week,
    get_work_unit,
    global_indicators,
    ignore_alert,
    increase_target,
    list_activities,
    list_alerts,
    list_consolidations,
    list_entries,
    list_weeks,
    lock_week,
    mark_met,
    negotiate_price,
    performance_trends,
    price_history,
    process_week,
    project_indicators,
    project_indicators_for_week,
    recompute_executed,
    reject_novelty,
    reopen_week,
    resolve_alert,
    resolve_or_create_week,
    review_alert,
    scoped_indicators,
    target_status,
    update_entry,
    week_summary,
)
from .state import RuntimeState
from .utils import normalize_roles

logger = logging.getLogger(__name__)

configure_logging(settings)
models.Base.metadata.create_all(bind=engine)

runtime_state = RuntimeState(settings)

app = FastAPI(title=settings.app_name)
app.state.runtime_state = runtime_state
app.add_middleware(RequestTimingMiddleware)


@app.exception_handler(DomainError)
async def _domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
    else:
        logger.info("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
    body = ErrorResponse(**exc.to_dict())
    return JSONResponse(body.model_dump(mode="json"), status_code=exc.status_code)


@app.exception_handler(InfrastructureError)
async def _infrastructure_error_handler(request: Request, exc: InfrastructureError) -> JSONResponse:
    logger.error("Infrastructure failure on %s %s: %s", request.method, request.url.path, exc)
    body = ErrorResponse(
        detail=str(exc),
        error="InfrastructureError",
        details={"operation": exc.operation, "retryable": True},
    )
    return JSONResponse(body.model_dump(mode="json"), status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


def get_actor(
    x_actor_id: int = Header(...),
    x_actor_roles: Optional[str] = Header(default=None),
) -> Actor:
    roles: Tuple[str, ...] = tuple(normalize_roles((x_actor_roles or "").split(",")))
    return Actor(id=x_actor_id, roles=roles)


def _state(request: Request) -> RuntimeState:
    return request.app.state.runtime_state


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


# Weeks


@app.post("/weeks", response_model=WeekResponse, status_code=status.HTTP_201_CREATED)
def weeks_create(payload: WeekCreateRequest, db: Session = Depends(get_db)) -> WeekResponse:
    return create_week(db, payload.start_date, payload.end_date, payload.project_id, payload.hub_id, payload.notes)


@app.post("/weeks/resolve", response_model=WeekResponse)
def weeks_resolve(payload: WeekResolveRequest, request: Request, db: Session = Depends(get_db)) -> WeekResponse:
    return resolve_or_create_week(db, _state(request), payload.day)


@app.get("/weeks/current", response_model=WeekResponse)
def weeks_current(request: Request, db: Session = Depends(get_db)) -> WeekResponse:
    return current_week(db, _state(request))


@app.get("/weeks", response_model=list[WeekResponse])
def weeks_list(
    start: Optional[dt.date] = None,
    end: Optional[dt.date] = None,
    state: Optional[str] = None,
    db: Session = Depends(get_db),
) -> list[WeekResponse]:
    return list_weeks(db, start, end, state)


@app.get("/weeks/trends", response_model=list[TrendPointResponse])
def weeks_trends(start: dt.date, end: dt.date, db: Session = Depends(get_db)) -> list[TrendPointResponse]:
    return performance_trends(db, start, end)


@app.get("/weeks/compare", response_model=WeekComparisonResponse)
def weeks_compare(base: int, other: int, db: Session = Depends(get_db)) -> WeekComparisonResponse:
    return WeekComparisonResponse.model_validate(compare_weeks(db, base, other), from_attributes=True)


@app.get("/weeks/{week_id}", response_model=WeekResponse)
def weeks_get(week_id: int, db: Session = Depends(get_db)) -> WeekResponse:
    return get_week(db, week_id)


@app.get("/weeks/{week_id}/can-close", response_model=CloseCheckResponse)
def weeks_can_close(week_id: int, db: Session = Depends(get_db)) -> CloseCheckResponse:
    return CloseCheckResponse.model_validate(can_close(db, week_id), from_attributes=True)


@app.post("/weeks/{week_id}/close", response_model=WeekResponse)
def weeks_close(
    week_id: int,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> WeekResponse:
    return close_week(db, _state(request), week_id, actor.id)


@app.post("/weeks/{week_id}/reopen", response_model=WeekResponse)
def weeks_reopen(
    week_id: int,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> WeekResponse:
    return reopen_week(db, _state(request), week_id, actor)


@app.post("/weeks/{week_id}/lock", response_model=WeekResponse)
def weeks_lock(
    week_id: int,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> WeekResponse:
    return lock_week(db, _state(request), week_id, actor)


@app.post("/weeks/{week_id}/process", response_model=ProcessWeekResponse)
def weeks_process(
    week_id: int,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> ProcessWeekResponse:
    result = process_week(db, _state(request), week_id, actor.id)
    return ProcessWeekResponse.model_validate(result, from_attributes=True)


@app.get("/weeks/{week_id}/summary", response_model=WeekSummaryResponse)
def weeks_summary(week_id: int, db: Session = Depends(get_db)) -> WeekSummaryResponse:
    return WeekSummaryResponse.model_validate(week_summary(db, week_id), from_attributes=True)


# Activities and work units


@app.post("/activities", response_model=ActivityResponse, status_code=status.HTTP_201_CREATED)
def activities_create(payload: ActivityCreateRequest, db: Session = Depends(get_db)) -> ActivityResponse:
    return create_activity(db, payload.code, payload.name, payload.expected_daily_rate, payload.unit_of_measure)


@app.get("/activities", response_model=list[ActivityResponse])
def activities_list(db: Session = Depends(get_db)) -> list[ActivityResponse]:
    return list_activities(db)


@app.post("/work-units", response_model=WorkUnitResponse, status_code=status.HTTP_201_CREATED)
def work_units_create(payload: WorkUnitCreateRequest, db: Session = Depends(get_db)) -> WorkUnitResponse:
    return create_work_unit(db, **payload.model_dump())


@app.get("/work-units/{unit_id}", response_model=WorkUnitResponse)
def work_units_get(unit_id: int, db: Session = Depends(get_db)) -> WorkUnitResponse:
    return get_work_unit(db, unit_id)


@app.post("/work-units/{unit_id}/target", response_model=WorkUnitResponse)
def work_units_increase_target(
    unit_id: int,
    payload: TargetIncreaseRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> WorkUnitResponse:
    return increase_target(db, unit_id, payload.new_target, payload.reason, actor.id)


@app.post("/work-units/{unit_id}/recompute", response_model=WorkUnitResponse)
def work_units_recompute(unit_id: int, db: Session = Depends(get_db)) -> WorkUnitResponse:
    return recompute_executed(db, unit_id)


@app.post("/work-units/{unit_id}/met", response_model=WorkUnitResponse)
def work_units_mark_met(unit_id: int, db: Session = Depends(get_db)) -> WorkUnitResponse:
    return mark_met(db, unit_id)


@app.post("/work-units/{unit_id}/cancel", response_model=WorkUnitResponse)
def work_units_cancel(unit_id: int, payload: CancelRequest, db: Session = Depends(get_db)) -> WorkUnitResponse:
    return cancel_work_unit(db, unit_id, payload.reason)


@app.get("/work-units/{unit_id}/status", response_model=TargetStatusResponse)
def work_units_status(unit_id: int, db: Session = Depends(get_db)) -> TargetStatusResponse:
    return target_status(db, unit_id)


# Prices


@app.post(
    "/work-units/{unit_id}/prices",
    response_model=PriceResponse,
    status_code=status.HTTP_201_CREATED,
)
def prices_negotiate(
    unit_id: int,
    payload: PriceNegotiateRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> PriceResponse:
    return negotiate_price(
        db,
        _state(request),
        unit_id,
        payload.agreed_price,
        actor.id,
        payload.authorized_by,
        payload.motive,
    )


@app.get("/work-units/{unit_id}/prices/current", response_model=PriceResponse)
def prices_current(unit_id: int, db: Session = Depends(get_db)) -> PriceResponse:
    return current_price(db, unit_id)


@app.get("/work-units/{unit_id}/prices", response_model=list[PriceResponse])
def prices_history(unit_id: int, db: Session = Depends(get_db)) -> list[PriceResponse]:
    return price_history(db, unit_id)


# Daily entries


@app.post("/entries", response_model=EntryResponse, status_code=status.HTTP_201_CREATED)
def entries_create(
    payload: EntryCreateRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> EntryResponse:
    return create_entry(
        db,
        _state(request),
        entry_date=payload.entry_date,
        worker_id=payload.worker_id,
        work_unit_id=payload.work_unit_id,
        quantity=payload.quantity,
        hours=payload.hours,
        crew_id=payload.crew_id,
        notes=payload.notes,
        entry_state=payload.state,
        recorded_by=actor.id,
    )


@app.get("/entries", response_model=list[EntryResponse])
def entries_list(
    start: Optional[dt.date] = None,
    end: Optional[dt.date] = None,
    worker_id: Optional[int] = None,
    work_unit_id: Optional[int] = None,
    state: Optional[str] = None,
    db: Session = Depends(get_db),
) -> list[EntryResponse]:
    return list_entries(db, start, end, worker_id, work_unit_id, state)


@app.patch("/entries/{entry_id}", response_model=EntryResponse)
def entries_update(
    entry_id: int,
    payload: EntryUpdateRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> EntryResponse:
    changes = payload.model_dump(exclude_unset=True)
    reason = changes.pop("reason", None)
    return update_entry(db, _state(request), entry_id, changes, actor, reason)


@app.delete("/entries/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def entries_delete(
    entry_id: int,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Response:
    delete_entry(db, _state(request), entry_id)
    logger.info("Entry %s deleted by actor %s", entry_id, actor.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Novelties


@app.post("/novelties", response_model=NoveltyResponse, status_code=status.HTTP_201_CREATED)
def novelties_create(
    payload: NoveltyCreateRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> NoveltyResponse:
    return create_novelty(
        db,
        novelty_date=payload.novelty_date,
        worker_id=payload.worker_id,
        kind=payload.kind,
        description=payload.description,
        days=payload.days,
        recorded_by=actor.id,
    )


@app.post("/novelties/{novelty_id}/approve", response_model=NoveltyResponse)
def novelties_approve(
    novelty_id: int,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> NoveltyResponse:
    return approve_novelty(db, novelty_id, actor.id)


@app.post("/novelties/{novelty_id}/reject", response_model=NoveltyResponse)
def novelties_reject(
    novelty_id: int,
    payload: NoveltyRejectRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> NoveltyResponse:
    return reject_novelty(db, novelty_id, actor.id, payload.reason)


# Consolidations


@app.post(
    "/weeks/{week_id}/consolidations",
    response_model=ConsolidationResponse,
    status_code=status.HTTP_201_CREATED,
)
def consolidations_create(
    week_id: int,
    payload: ConsolidateRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> ConsolidationResponse:
    return consolidate(db, week_id, payload.worker_id, payload.work_unit_id, actor.id, payload.forced_state)


@app.post("/weeks/{week_id}/consolidations/batch", response_model=ConsolidationBatchResponse)
def consolidations_batch(
    week_id: int,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> ConsolidationBatchResponse:
    result = consolidate_week(db, week_id, actor.id)
    return ConsolidationBatchResponse.model_validate(result, from_attributes=True)


@app.get("/weeks/{week_id}/consolidations", response_model=list[ConsolidationResponse])
def consolidations_list(
    week_id: int,
    worker_id: Optional[int] = None,
    db: Session = Depends(get_db),
) -> list[ConsolidationResponse]:
    return list_consolidations(db, week_id, worker_id)


# Indicators


@app.post("/weeks/{week_id}/indicators/global", response_model=IndicatorResponse)
def indicators_global(week_id: int, db: Session = Depends(get_db)) -> IndicatorResponse:
    return global_indicators(db, week_id)


@app.post("/weeks/{week_id}/indicators/projects", response_model=IndicatorBatchResponse)
def indicators_projects(week_id: int, db: Session = Depends(get_db)) -> IndicatorBatchResponse:
    result = project_indicators_for_week(db, week_id)
    return IndicatorBatchResponse.model_validate(result, from_attributes=True)


@app.post("/weeks/{week_id}/indicators/projects/{project_id}", response_model=IndicatorResponse)
def indicators_project(week_id: int, project_id: int, db: Session = Depends(get_db)) -> IndicatorResponse:
    return project_indicators(db, week_id, project_id)


@app.post("/weeks/{week_id}/indicators/{scope_kind}", response_model=IndicatorResponse)
def indicators_scoped(
    week_id: int,
    scope_kind: str,
    ref: int = Query(0),
    db: Session = Depends(get_db),
) -> IndicatorResponse:
    return scoped_indicators(db, week_id, scope_kind, ref)


# Alerts


@app.post("/weeks/{week_id}/alerts/generate", response_model=list[AlertResponse])
def alerts_generate(week_id: int, db: Session = Depends(get_db)) -> list[AlertResponse]:
    return generate_alerts(db, week_id)


@app.get("/weeks/{week_id}/alerts", response_model=list[AlertResponse])
def alerts_list(
    week_id: int,
    state: Optional[str] = None,
    severity: Optional[str] = None,
    db: Session = Depends(get_db),
) -> list[AlertResponse]:
    return list_alerts(db, week_id, state, severity)


@app.post("/alerts/{alert_id}/review", response_model=AlertResponse)
def alerts_review(alert_id: int, db: Session = Depends(get_db)) -> AlertResponse:
    return review_alert(db, alert_id)


@app.post("/alerts/{alert_id}/resolve", response_model=AlertResponse)
def alerts_resolve(
    alert_id: int,
    payload: AlertCommentRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> AlertResponse:
    return resolve_alert(db, alert_id, actor.id, payload.comment)


@app.post("/alerts/{alert_id}/ignore", response_model=AlertResponse)
def alerts_ignore(
    alert_id: int,
    payload: AlertCommentRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> AlertResponse:
    return ignore_alert(db, alert_id, actor.id, payload.comment)
