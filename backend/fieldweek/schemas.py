from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from typing_extensions import Annotated

from .models import (
    AlertKind,
    AlertState,
    Classification,
    ConsolidationState,
    EntityKind,
    EntryState,
    NoveltyKind,
    NoveltyState,
    ScopeKind,
    Severity,
    UnitState,
    WeekState,
)


def _serialize_datetime(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    else:
        value = value.astimezone(dt.timezone.utc)
    return value.isoformat()


UtcDatetime = Annotated[dt.datetime, PlainSerializer(_serialize_datetime, when_used="json")]


class WeekResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    code: str
    start_date: dt.date
    end_date: dt.date
    year: int
    week_number: int
    project_id: Optional[int] = None
    hub_id: Optional[int] = None
    state: WeekState
    closed_by: Optional[int] = None
    closed_at: Optional[UtcDatetime] = None
    locked_by: Optional[int] = None
    locked_at: Optional[UtcDatetime] = None
    notes: Optional[str] = None


class WeekCreateRequest(BaseModel):
    start_date: dt.date
    end_date: dt.date
    project_id: Optional[int] = None
    hub_id: Optional[int] = None
    notes: Optional[str] = None


class WeekResolveRequest(BaseModel):
    day: dt.date


class BlockingUnit(BaseModel):
    work_unit_id: int
    code: str
    target: float
    executed: float
    shortfall: float


class CloseCheckResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    allowed: bool
    reasons: List[str] = Field(default_factory=list)
    blocking_units: List[BlockingUnit] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ActivityCreateRequest(BaseModel):
    code: str
    name: str
    expected_daily_rate: float = 0.0
    unit_of_measure: str = "UNIT"


class ActivityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    code: str
    name: str
    unit_of_measure: str
    expected_daily_rate: float


class WorkUnitCreateRequest(BaseModel):
    code: str
    project_id: int
    activity_id: int
    plot_id: int
    minimum_target: float = 0.0
    supervisor_id: Optional[int] = None
    priority: int = 3
    planned_start: Optional[dt.date] = None
    planned_end: Optional[dt.date] = None
    notes: Optional[str] = None


class TargetChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    previous_target: float
    new_target: float
    reason: str
    changed_by: Optional[int] = None
    changed_at: UtcDatetime


class WorkUnitResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    code: str
    project_id: int
    activity_id: int
    plot_id: int
    minimum_target: float
    executed_quantity: float
    percent_of_target: float
    target_met: bool
    shortfall: float
    state: UnitState
    supervisor_id: Optional[int] = None
    priority: int
    planned_start: Optional[dt.date] = None
    planned_end: Optional[dt.date] = None
    started_at: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None
    notes: Optional[str] = None
    target_changes: List[TargetChangeResponse] = Field(default_factory=list)


class TargetIncreaseRequest(BaseModel):
    new_target: float
    reason: str


class CancelRequest(BaseModel):
    reason: str


class TargetStatusResponse(BaseModel):
    work_unit_id: int
    code: str
    state: UnitState
    target: float
    executed: float
    percent_of_target: float
    shortfall: float
    target_met: bool


class EntryCreateRequest(BaseModel):
    entry_date: dt.date
    worker_id: int
    work_unit_id: int
    quantity: float
    hours: float = 8.0
    crew_id: Optional[int] = None
    notes: Optional[str] = None
    state: EntryState = EntryState.APPROVED


class EntryUpdateRequest(BaseModel):
    quantity: Optional[float] = None
    hours: Optional[float] = None
    state: Optional[EntryState] = None
    notes: Optional[str] = None
    crew_id: Optional[int] = None
    reason: Optional[str] = None


class EntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    entry_date: dt.date
    worker_id: int
    work_unit_id: int
    crew_id: Optional[int] = None
    quantity: float
    hours: float
    recorded_by: int
    state: EntryState
    notes: Optional[str] = None
    edited: bool
    edited_by: Optional[int] = None
    edit_reason: Optional[str] = None
    edited_at: Optional[UtcDatetime] = None


class NoveltyCreateRequest(BaseModel):
    novelty_date: dt.date
    worker_id: int
    kind: NoveltyKind
    description: str
    days: float = 1.0


class NoveltyRejectRequest(BaseModel):
    reason: str


class NoveltyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    novelty_date: dt.date
    worker_id: int
    kind: NoveltyKind
    days: float
    description: str
    recorded_by: int
    state: NoveltyState
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[UtcDatetime] = None
    rejection_reason: Optional[str] = None


class PriceNegotiateRequest(BaseModel):
    agreed_price: float
    authorized_by: Optional[int] = None
    motive: Optional[str] = None


class PriceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    work_unit_id: int
    version: int
    agreed_price: float
    negotiated_at: UtcDatetime
    valid_from: UtcDatetime
    valid_until: Optional[UtcDatetime] = None
    negotiated_by: int
    authorized_by: Optional[int] = None
    motive: Optional[str] = None
    active: bool


class ConsolidateRequest(BaseModel):
    worker_id: int
    work_unit_id: int
    forced_state: Optional[ConsolidationState] = None


class ConsolidationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    code: str
    week_id: int
    worker_id: int
    work_unit_id: int
    days_worked: int
    total_hours: float
    total_executed: float
    expected_daily_rate: float
    average_per_day: float
    percent_of_expected: float
    novelty_days: float
    classification: Classification
    state: ConsolidationState
    consolidated_by: Optional[int] = None
    consolidated_at: Optional[UtcDatetime] = None


class BatchFailure(BaseModel):
    error: str
    detail: str
    worker_id: Optional[int] = None
    work_unit_id: Optional[int] = None
    project_id: Optional[int] = None


class ConsolidationBatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    items: List[ConsolidationResponse]
    failures: List[BatchFailure] = Field(default_factory=list)


class IndicatorResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    code: str
    week_id: int
    scope_kind: ScopeKind
    scope_ref: int
    total_workers: int
    total_days_worked: int
    total_hours: float
    total_production: float
    average_per_day: float
    units_assigned: int
    units_met: int
    compliance_percent: float
    excellent_count: int
    good_count: int
    regular_count: int
    low_count: int
    total_alerts: int
    critical_alerts: int
    computed_at: UtcDatetime


class IndicatorBatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    items: List[IndicatorResponse]
    failures: List[BatchFailure] = Field(default_factory=list)


class AlertCommentRequest(BaseModel):
    comment: Optional[str] = None


class AlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    code: str
    week_id: int
    kind: AlertKind
    severity: Severity
    entity_kind: EntityKind
    entity_id: int
    title: str
    description: str
    observed_value: Optional[float] = None
    expected_value: Optional[float] = None
    difference: Optional[float] = None
    suggested_action: Optional[str] = None
    state: AlertState
    resolved_by: Optional[int] = None
    resolved_at: Optional[UtcDatetime] = None
    resolution_comment: Optional[str] = None
    created_at: UtcDatetime


class ProcessWeekResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    week: WeekResponse
    consolidations: ConsolidationBatchResponse
    indicator: IndicatorResponse
    alerts: List[AlertResponse]


class WeekSummaryResponse(BaseModel):
    week: WeekResponse
    consolidations_by_state: Dict[str, int]
    indicator: Optional[IndicatorResponse] = None
    alerts_by_severity: Dict[str, int]
    alerts_by_state: Dict[str, int]
    top_performers: List[ConsolidationResponse]
    low_performers: List[ConsolidationResponse]


class MetricComparison(BaseModel):
    base: float
    other: float
    change_percent: float


class WeekComparisonResponse(BaseModel):
    base_week: WeekResponse
    other_week: WeekResponse
    metrics: Dict[str, MetricComparison]


class TrendPointResponse(BaseModel):
    week_id: int
    code: str
    start_date: dt.date
    average_percent: float
    met_expected_percent: float
    workers: int


class ErrorResponse(BaseModel):
    detail: str
    error: str
    details: Dict[str, Any] = Field(default_factory=dict)
