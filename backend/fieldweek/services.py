from __future__ import annotations

import datetime as dt
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Type, TypeVar

from zoneinfo import ZoneInfo

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .config import settings
from .errors import (
    AccessDenied,
    AlreadyCancelled,
    AlreadyClosed,
    AlreadyResolved,
    BatchFailed,
    DomainError,
    DuplicateEntry,
    EditWindowClosed,
    InfrastructureError,
    InvalidTarget,
    NotFound,
    ProcessingFailed,
    TargetNotReached,
    TargetsUnmet,
    ValidationError,
    WeekClosed,
)
from .models import (
    Activity,
    Alert,
    AlertKind,
    AlertState,
    Classification,
    ConsolidationState,
    DailyEntry,
    EntityKind,
    EntityRef,
    EntryState,
    NegotiatedPrice,
    Novelty,
    NoveltyKind,
    NoveltyState,
    OperationalWeek,
    PerformanceIndicator,
    ScopeKind,
    Severity,
    TargetChange,
    UnitState,
    WeekState,
    WeeklyConsolidation,
    WorkUnit,
)
from .state import RuntimeState
from .territory import SqlTerritorialHierarchy, TerritorialHierarchy, has_access
from .utils import closing_boundary, relative_change, week_bounds, week_code

logger = logging.getLogger(__name__)

UTC = dt.timezone.utc
LOCAL_TZ = ZoneInfo(settings.timezone)

COUNTED_ENTRY_STATES = (EntryState.APPROVED, EntryState.CORRECTED)
COUNTED_NOVELTY_STATES = (NoveltyState.APPROVED, NoveltyState.PENDING)
TERMINAL_UNIT_STATES = (UnitState.MET, UnitState.CANCELLED)
INDICATOR_SOURCE_STATES = (
    ConsolidationState.CONSOLIDATED,
    ConsolidationState.APPROVED,
    ConsolidationState.CLOSED,
)
ALERT_SOURCE_STATES = (ConsolidationState.CONSOLIDATED, ConsolidationState.APPROVED)
OPEN_ALERT_STATES = (AlertState.PENDING, AlertState.IN_REVIEW)

LOW_PERFORMANCE_MIN_DAYS = 3
LOW_PERFORMANCE_THRESHOLD = 60.0
# Inclusive: a worker at exactly 40% of the expected rate is already critical.
LOW_PERFORMANCE_CRITICAL = 40.0
TARGET_ALERT_THRESHOLD = 50.0
TARGET_ALERT_CRITICAL = 25.0

MIN_WEEK_SPAN_DAYS = 6
MAX_WEEK_SPAN_DAYS = 8
PRICE_VERSION_RETRIES = 3
ENTRY_EDITABLE_FIELDS = {"quantity", "hours", "state", "notes", "crew_id"}
ENTRY_REQUIRED_FIELDS = ("quantity", "hours", "state")

E = TypeVar("E", bound=Any)


@dataclass(frozen=True)
class Actor:
    id: int
    roles: Tuple[str, ...] = ()


@dataclass
class BatchResult:
    items: List[Any] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class CloseCheck:
    allowed: bool
    reasons: List[str] = field(default_factory=list)
    blocking_units: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class WeekProcessingResult:
    week: OperationalWeek
    consolidations: BatchResult
    indicator: PerformanceIndicator
    alerts: List[Alert]


def _now() -> dt.datetime:
    return dt.datetime.now(UTC)


def _ensure_utc(value: Optional[dt.datetime]) -> dt.datetime:
    if value is None:
        return _now()
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _local_date(value: dt.datetime) -> dt.date:
    return _ensure_utc(value).astimezone(LOCAL_TZ).date()


def _append_note(existing: Optional[str], note: str) -> str:
    return f"{existing}\n{note}" if existing else note


def _coerce_enum(enum_cls: Type[E], value: Any, field_name: str) -> Optional[E]:
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError as exc:
        raise ValidationError(
            f"Invalid {field_name}: {value}",
            {field_name: value, "allowed": [member.value for member in enum_cls]},
        ) from exc


def _commit(db: Session, operation: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Storage failure during %s", operation, exc_info=True)
        raise InfrastructureError(f"Storage failure during {operation}", operation=operation) from exc


def _get_or_404(db: Session, model: Any, object_id: int, resource: str) -> Any:
    obj = db.get(model, object_id)
    if obj is None:
        raise NotFound(resource, object_id)
    return obj


def get_week(db: Session, week_id: int) -> OperationalWeek:
    return _get_or_404(db, OperationalWeek, week_id, "OperationalWeek")


def get_work_unit(db: Session, unit_id: int) -> WorkUnit:
    return _get_or_404(db, WorkUnit, unit_id, "WorkUnit")


def get_entry(db: Session, entry_id: int) -> DailyEntry:
    return _get_or_404(db, DailyEntry, entry_id, "DailyEntry")


def get_alert(db: Session, alert_id: int) -> Alert:
    return _get_or_404(db, Alert, alert_id, "Alert")


# ---------------------------------------------------------------------------
# Operational weeks
# ---------------------------------------------------------------------------


def _week_covering(db: Session, day: dt.date) -> Optional[OperationalWeek]:
    return (
        db.query(OperationalWeek)
        .filter(OperationalWeek.start_date <= day, OperationalWeek.end_date >= day)
        .order_by(OperationalWeek.start_date)
        .first()
    )


def _free_week_code(db: Session, start: dt.date) -> str:
    base = week_code(start)
    candidate = base
    suffix = 2
    while db.query(OperationalWeek.id).filter(OperationalWeek.code == candidate).first() is not None:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def _new_week(
    start: dt.date,
    end: dt.date,
    code: str,
    project_id: Optional[int] = None,
    hub_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> OperationalWeek:
    iso_year, iso_week, _ = start.isocalendar()
    return OperationalWeek(
        code=code,
        start_date=start,
        end_date=end,
        year=iso_year,
        week_number=iso_week,
        project_id=project_id,
        hub_id=hub_id,
        notes=notes,
        state=WeekState.OPEN,
    )


def _auto_week_bounds(db: Session, state: RuntimeState, day: dt.date) -> Tuple[dt.date, dt.date]:
    """Fit a week around ``day`` between its neighbours without breaking the span limits.

    The nominal cycle week is shifted past a neighbour it would overlap, and a gap too short
    to hold a week of its own is absorbed whenever the result stays within the span limits.
    """
    start, end = week_bounds(day, state.week_anchor_weekday)
    previous = (
        db.query(OperationalWeek)
        .filter(OperationalWeek.end_date < day)
        .order_by(OperationalWeek.end_date.desc())
        .first()
    )
    if previous is not None:
        after_previous = previous.end_date + dt.timedelta(days=1)
        if after_previous > start:
            start = after_previous
            end = start + dt.timedelta(days=MIN_WEEK_SPAN_DAYS)
        elif (start - after_previous).days <= MIN_WEEK_SPAN_DAYS and (end - after_previous).days <= MAX_WEEK_SPAN_DAYS:
            start = after_previous

    following = (
        db.query(OperationalWeek)
        .filter(OperationalWeek.start_date > day)
        .order_by(OperationalWeek.start_date)
        .first()
    )
    if following is not None:
        before_following = following.start_date - dt.timedelta(days=1)
        if before_following < end:
            end = before_following
        elif (before_following - end).days <= MIN_WEEK_SPAN_DAYS and (before_following - start).days <= MAX_WEEK_SPAN_DAYS:
            end = before_following

    span = (end - start).days
    if not MIN_WEEK_SPAN_DAYS <= span <= MAX_WEEK_SPAN_DAYS:
        raise ValidationError(
            f"No operational week of {MIN_WEEK_SPAN_DAYS} to {MAX_WEEK_SPAN_DAYS} days fits around {day}",
            {
                "day": str(day),
                "previous_week_id": previous.id if previous is not None else None,
                "following_week_id": following.id if following is not None else None,
            },
        )
    return start, end


def resolve_or_create_week(db: Session, state: RuntimeState, day: dt.date) -> OperationalWeek:
    """Return the week covering ``day``, creating one when none does.

    New weeks follow the anchor-weekday cycle unless an explicitly created neighbour forces
    them off it. Raises ``ValidationError`` when the free days around ``day`` cannot hold a
    valid week.
    """
    week = _week_covering(db, day)
    if week is not None:
        return week

    start, end = _auto_week_bounds(db, state, day)
    week = _new_week(start, end, _free_week_code(db, start))
    db.add(week)
    try:
        db.commit()
    except IntegrityError as exc:
        # Another request created the same week first.
        db.rollback()
        existing = _week_covering(db, day)
        if existing is not None:
            return existing
        raise InfrastructureError("Could not create operational week", operation="resolve_or_create_week") from exc
    db.refresh(week)
    logger.info("Created operational week %s (%s - %s)", week.code, week.start_date, week.end_date, extra={"week_id": week.id})
    return week


def create_week(
    db: Session,
    start: dt.date,
    end: dt.date,
    project_id: Optional[int] = None,
    hub_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> OperationalWeek:
    if start >= end:
        raise ValidationError("Week start must be before its end", {"start_date": str(start), "end_date": str(end)})
    span = (end - start).days
    if not MIN_WEEK_SPAN_DAYS <= span <= MAX_WEEK_SPAN_DAYS:
        raise ValidationError(
            f"A week must span between {MIN_WEEK_SPAN_DAYS} and {MAX_WEEK_SPAN_DAYS} days",
            {"start_date": str(start), "end_date": str(end), "span_days": span},
        )
    overlapping = (
        db.query(OperationalWeek)
        .filter(OperationalWeek.start_date <= end, OperationalWeek.end_date >= start)
        .first()
    )
    if overlapping is not None:
        raise ValidationError(
            f"Week overlaps existing week {overlapping.code}",
            {"overlapping_week_id": overlapping.id, "code": overlapping.code},
        )
    week = _new_week(start, end, _free_week_code(db, start), project_id, hub_id, notes)
    db.add(week)
    _commit(db, "create_week")
    db.refresh(week)
    logger.info("Created operational week %s explicitly", week.code, extra={"week_id": week.id})
    return week


def current_week(db: Session, state: RuntimeState, now: Optional[dt.datetime] = None) -> OperationalWeek:
    today = _local_date(now or _now())
    week = (
        db.query(OperationalWeek)
        .filter(
            OperationalWeek.state == WeekState.OPEN,
            OperationalWeek.start_date <= today,
            OperationalWeek.end_date >= today,
        )
        .first()
    )
    if week is not None:
        return week
    return resolve_or_create_week(db, state, today)


def list_weeks(
    db: Session,
    start: Optional[dt.date] = None,
    end: Optional[dt.date] = None,
    week_state: Optional[Any] = None,
) -> List[OperationalWeek]:
    query = db.query(OperationalWeek)
    if start is not None:
        query = query.filter(OperationalWeek.end_date >= start)
    if end is not None:
        query = query.filter(OperationalWeek.start_date <= end)
    coerced = _coerce_enum(WeekState, week_state, "state")
    if coerced is not None:
        query = query.filter(OperationalWeek.state == coerced)
    return query.order_by(OperationalWeek.start_date).all()


def close_week(
    db: Session,
    state: RuntimeState,
    week_id: int,
    actor_id: int,
    now: Optional[dt.datetime] = None,
) -> OperationalWeek:
    now = _ensure_utc(now)
    with state.week_lock(week_id):
        check = can_close(db, week_id)
        week = get_week(db, week_id)
        if not check.allowed:
            raise TargetsUnmet(week.id, check.blocking_units)
        week.state = WeekState.CLOSED
        week.closed_by = actor_id
        week.closed_at = now
        try:
            db.flush()
            # Entries may have changed between the check and the transition.
            blocking = _blocking_units(db, week)
            if blocking:
                db.rollback()
                raise TargetsUnmet(week_id, blocking)
            db.commit()
        except StaleDataError as exc:
            db.rollback()
            raise InfrastructureError(
                f"Week {week_id} was modified concurrently; retry the close", operation="close_week"
            ) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            raise InfrastructureError("Storage failure during close_week", operation="close_week") from exc
        db.refresh(week)
    logger.info("Closed week %s by actor %s", week.code, actor_id, extra={"week_id": week.id})
    return week


def reopen_week(
    db: Session,
    state: RuntimeState,
    week_id: int,
    actor: Actor,
    now: Optional[dt.datetime] = None,
) -> OperationalWeek:
    if not state.is_escalated(actor.roles):
        raise AccessDenied("Reopening a week requires an escalated role", {"roles": list(actor.roles)})
    with state.week_lock(week_id):
        week = get_week(db, week_id)
        if week.state == WeekState.LOCKED:
            raise AlreadyClosed(f"Week {week.code} is locked and cannot be reopened", {"week_id": week.id})
        if week.state == WeekState.OPEN:
            raise ValidationError(f"Week {week.code} is already open", {"week_id": week.id})
        week.state = WeekState.OPEN
        week.closed_by = None
        week.closed_at = None
        week.notes = _append_note(week.notes, f"[Reopened by {actor.id} at {_ensure_utc(now).isoformat()}]")
        _commit(db, "reopen_week")
        db.refresh(week)
    logger.warning("Reopened week %s by actor %s", week.code, actor.id, extra={"week_id": week.id})
    return week


def lock_week(
    db: Session,
    state: RuntimeState,
    week_id: int,
    actor: Actor,
    now: Optional[dt.datetime] = None,
) -> OperationalWeek:
    if not state.is_escalated(actor.roles):
        raise AccessDenied("Locking a week requires an escalated role", {"roles": list(actor.roles)})
    with state.week_lock(week_id):
        week = get_week(db, week_id)
        if week.state == WeekState.LOCKED:
            raise AlreadyClosed(f"Week {week.code} is already locked", {"week_id": week.id})
        week.state = WeekState.LOCKED
        week.locked_by = actor.id
        week.locked_at = _ensure_utc(now)
        _commit(db, "lock_week")
        db.refresh(week)
    logger.info("Locked week %s by actor %s", week.code, actor.id, extra={"week_id": week.id})
    return week


# ---------------------------------------------------------------------------
# Activities and work units
# ---------------------------------------------------------------------------


def create_activity(
    db: Session,
    code: str,
    name: str,
    expected_daily_rate: float = 0.0,
    unit_of_measure: str = "UNIT",
) -> Activity:
    if expected_daily_rate < 0:
        raise ValidationError("Expected daily rate cannot be negative", {"expected_daily_rate": expected_daily_rate})
    if db.query(Activity.id).filter(Activity.code == code).first() is not None:
        raise ValidationError(f"Activity code {code} already exists", {"code": code})
    activity = Activity(code=code, name=name, expected_daily_rate=expected_daily_rate, unit_of_measure=unit_of_measure)
    db.add(activity)
    _commit(db, "create_activity")
    db.refresh(activity)
    return activity


def list_activities(db: Session) -> List[Activity]:
    return db.query(Activity).order_by(Activity.code).all()


def create_work_unit(
    db: Session,
    code: str,
    project_id: int,
    activity_id: int,
    plot_id: int,
    minimum_target: float = 0.0,
    supervisor_id: Optional[int] = None,
    priority: int = 3,
    planned_start: Optional[dt.date] = None,
    planned_end: Optional[dt.date] = None,
    notes: Optional[str] = None,
) -> WorkUnit:
    if minimum_target < 0:
        raise ValidationError("Minimum target cannot be negative", {"minimum_target": minimum_target})
    if not 1 <= priority <= 5:
        raise ValidationError("Priority must be between 1 and 5", {"priority": priority})
    if planned_start and planned_end and planned_end < planned_start:
        raise ValidationError("Planned end must not precede planned start")
    _get_or_404(db, Activity, activity_id, "Activity")
    if db.query(WorkUnit.id).filter(WorkUnit.code == code).first() is not None:
        raise ValidationError(f"Work unit code {code} already exists", {"code": code})
    unit = WorkUnit(
        code=code,
        project_id=project_id,
        activity_id=activity_id,
        plot_id=plot_id,
        minimum_target=minimum_target,
        executed_quantity=0.0,
        supervisor_id=supervisor_id,
        priority=priority,
        planned_start=planned_start,
        planned_end=planned_end,
        notes=notes,
        state=UnitState.PENDING,
    )
    db.add(unit)
    _commit(db, "create_work_unit")
    db.refresh(unit)
    return unit


def increase_target(
    db: Session,
    unit_id: int,
    new_target: float,
    reason: str,
    actor_id: Optional[int] = None,
    now: Optional[dt.datetime] = None,
) -> WorkUnit:
    now = _ensure_utc(now)
    unit = get_work_unit(db, unit_id)
    current = unit.minimum_target
    if new_target <= current:
        raise InvalidTarget(unit.id, current, new_target)
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to raise a target", {"reason": reason})

    note = f"[Target increased {current:g} -> {new_target:g}] {reason.strip()}"
    result = db.execute(
        update(WorkUnit)
        .where(WorkUnit.id == unit.id, WorkUnit.minimum_target < new_target)
        .values(minimum_target=new_target, notes=_append_note(unit.notes, note), updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # A concurrent increase already reached or passed the requested value.
        db.rollback()
        db.refresh(unit)
        raise InvalidTarget(unit.id, unit.minimum_target, new_target)
    db.add(
        TargetChange(
            work_unit_id=unit.id,
            previous_target=current,
            new_target=new_target,
            reason=reason.strip(),
            changed_by=actor_id,
            changed_at=now,
        )
    )
    _commit(db, "increase_target")
    db.refresh(unit)
    logger.info("Raised target of %s from %s to %s", unit.code, current, new_target, extra={"work_unit_id": unit.id})
    return unit


def _recompute_unit(db: Session, unit: WorkUnit, now: dt.datetime) -> WorkUnit:
    db.flush()
    total = (
        db.query(func.coalesce(func.sum(DailyEntry.quantity), 0.0))
        .filter(DailyEntry.work_unit_id == unit.id, DailyEntry.state.in_(COUNTED_ENTRY_STATES))
        .scalar()
    )
    total = float(total or 0.0)
    unit.executed_quantity = total
    if unit.minimum_target > 0 and total >= unit.minimum_target and unit.state not in TERMINAL_UNIT_STATES:
        unit.state = UnitState.MET
        unit.completed_at = now
        if unit.started_at is None:
            unit.started_at = now
    elif total > 0 and unit.state == UnitState.PENDING:
        unit.state = UnitState.IN_PROGRESS
        unit.started_at = now
    return unit


def recompute_executed(db: Session, unit_id: int, now: Optional[dt.datetime] = None) -> WorkUnit:
    unit = get_work_unit(db, unit_id)
    _recompute_unit(db, unit, _ensure_utc(now))
    _commit(db, "recompute_executed")
    db.refresh(unit)
    return unit


def mark_met(db: Session, unit_id: int, now: Optional[dt.datetime] = None) -> WorkUnit:
    unit = get_work_unit(db, unit_id)
    if unit.state == UnitState.CANCELLED:
        raise AlreadyCancelled(f"Work unit {unit.code} is cancelled", {"work_unit_id": unit.id})
    if unit.minimum_target <= 0 or unit.executed_quantity < unit.minimum_target:
        raise TargetNotReached(
            f"Work unit {unit.code} has not reached its minimum target",
            {
                "work_unit_id": unit.id,
                "target": unit.minimum_target,
                "executed": unit.executed_quantity,
                "shortfall": unit.shortfall,
            },
        )
    if unit.state != UnitState.MET:
        unit.state = UnitState.MET
        unit.completed_at = _ensure_utc(now)
        _commit(db, "mark_met")
        db.refresh(unit)
    return unit


def cancel_work_unit(db: Session, unit_id: int, reason: str) -> WorkUnit:
    unit = get_work_unit(db, unit_id)
    if unit.state == UnitState.CANCELLED:
        raise AlreadyCancelled(f"Work unit {unit.code} is already cancelled", {"work_unit_id": unit.id})
    unit.state = UnitState.CANCELLED
    unit.notes = _append_note(unit.notes, f"[Cancelled] {reason}")
    _commit(db, "cancel_work_unit")
    db.refresh(unit)
    logger.info("Cancelled work unit %s", unit.code, extra={"work_unit_id": unit.id})
    return unit


def target_status(db: Session, unit_id: int) -> Dict[str, Any]:
    unit = get_work_unit(db, unit_id)
    return {
        "work_unit_id": unit.id,
        "code": unit.code,
        "state": unit.state,
        "target": unit.minimum_target,
        "executed": unit.executed_quantity,
        "percent_of_target": unit.percent_of_target,
        "shortfall": unit.shortfall,
        "target_met": unit.target_met,
    }


# ---------------------------------------------------------------------------
# Daily entries
# ---------------------------------------------------------------------------


def _validate_amounts(quantity: Optional[float], hours: Optional[float]) -> None:
    if quantity is not None and quantity < 0:
        raise ValidationError("Quantity must be zero or greater", {"quantity": quantity})
    if hours is not None and not 0 <= hours <= 24:
        raise ValidationError("Hours must be between 0 and 24", {"hours": hours})


def _ensure_week_open_for(db: Session, state: RuntimeState, day: dt.date) -> OperationalWeek:
    week = resolve_or_create_week(db, state, day)
    if week.state != WeekState.OPEN:
        raise WeekClosed(
            f"Week {week.code} is {week.state.value.lower()}; daily entries cannot change",
            {"week_id": week.id, "state": week.state.value, "entry_date": str(day)},
        )
    return week


def create_entry(
    db: Session,
    state: RuntimeState,
    *,
    entry_date: dt.date,
    worker_id: int,
    work_unit_id: int,
    quantity: float,
    recorded_by: int,
    hours: float = 8.0,
    crew_id: Optional[int] = None,
    notes: Optional[str] = None,
    entry_state: Any = EntryState.APPROVED,
    territory: Optional[TerritorialHierarchy] = None,
    now: Optional[dt.datetime] = None,
) -> DailyEntry:
    now = _ensure_utc(now)
    _validate_amounts(quantity, hours)
    entry_state = _coerce_enum(EntryState, entry_state, "state") or EntryState.APPROVED
    unit = get_work_unit(db, work_unit_id)

    key = {"entry_date": str(entry_date), "worker_id": worker_id, "work_unit_id": work_unit_id}
    existing = (
        db.query(DailyEntry.id)
        .filter(
            DailyEntry.entry_date == entry_date,
            DailyEntry.worker_id == worker_id,
            DailyEntry.work_unit_id == work_unit_id,
        )
        .first()
    )
    if existing is not None:
        raise DuplicateEntry("An entry already exists for this worker, unit and date", {**key, "existing_id": existing[0]})

    hierarchy = territory or SqlTerritorialHierarchy(db)
    if not has_access(hierarchy, recorded_by, unit.plot_id, entry_date):
        raise AccessDenied(
            "Recorder has no territorial scope over the work unit's plot",
            {"recorded_by": recorded_by, "plot_id": unit.plot_id, "work_unit_id": unit.id},
        )
    _ensure_week_open_for(db, state, entry_date)

    entry = DailyEntry(
        entry_date=entry_date,
        worker_id=worker_id,
        work_unit_id=unit.id,
        crew_id=crew_id,
        quantity=quantity,
        hours=hours,
        recorded_by=recorded_by,
        state=entry_state,
        notes=notes,
        created_at=now,
    )
    db.add(entry)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateEntry("An entry already exists for this worker, unit and date", key) from exc
    _recompute_unit(db, unit, now)
    _commit(db, "create_entry")
    db.refresh(entry)
    return entry


def update_entry(
    db: Session,
    state: RuntimeState,
    entry_id: int,
    changes: Dict[str, Any],
    actor: Actor,
    reason: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> DailyEntry:
    now = _ensure_utc(now)
    entry = get_entry(db, entry_id)

    if not state.is_escalated(actor.roles):
        if not state.is_frontline(actor.roles):
            raise AccessDenied("Caller has no role allowed to edit entries", {"roles": list(actor.roles)})
        boundary = closing_boundary(entry.entry_date, state.week_anchor_weekday)
        if _local_date(now) > boundary:
            raise EditWindowClosed(
                f"Entry {entry.id} could only be edited until {boundary}",
                {"entry_id": entry.id, "entry_date": str(entry.entry_date), "boundary": str(boundary)},
            )

    unknown = set(changes) - ENTRY_EDITABLE_FIELDS
    if unknown:
        raise ValidationError("Fields cannot be edited", {"fields": sorted(unknown)})
    cleared = sorted(name for name in ENTRY_REQUIRED_FIELDS if name in changes and changes[name] is None)
    if cleared:
        raise ValidationError("Fields cannot be cleared", {"fields": cleared})
    _validate_amounts(changes.get("quantity"), changes.get("hours"))
    _ensure_week_open_for(db, state, entry.entry_date)

    quantity_changed = "quantity" in changes and changes["quantity"] != entry.quantity
    state_changed = False
    if "state" in changes:
        new_state = _coerce_enum(EntryState, changes["state"], "state")
        state_changed = new_state != entry.state
        entry.state = new_state
    if quantity_changed:
        entry.quantity = changes["quantity"]
        entry.edited = True
        entry.edited_by = actor.id
        entry.edit_reason = reason
        entry.edited_at = now
    if "hours" in changes:
        entry.hours = changes["hours"]
    if "notes" in changes:
        entry.notes = changes["notes"]
    if "crew_id" in changes:
        entry.crew_id = changes["crew_id"]

    if quantity_changed or state_changed:
        _recompute_unit(db, entry.work_unit, now)
    _commit(db, "update_entry")
    db.refresh(entry)
    return entry


def delete_entry(db: Session, state: RuntimeState, entry_id: int, now: Optional[dt.datetime] = None) -> None:
    entry = get_entry(db, entry_id)
    _ensure_week_open_for(db, state, entry.entry_date)
    unit = entry.work_unit
    db.delete(entry)
    _recompute_unit(db, unit, _ensure_utc(now))
    _commit(db, "delete_entry")


def list_entries(
    db: Session,
    start: Optional[dt.date] = None,
    end: Optional[dt.date] = None,
    worker_id: Optional[int] = None,
    work_unit_id: Optional[int] = None,
    entry_state: Any = None,
) -> List[DailyEntry]:
    query = db.query(DailyEntry)
    if start is not None:
        query = query.filter(DailyEntry.entry_date >= start)
    if end is not None:
        query = query.filter(DailyEntry.entry_date <= end)
    if worker_id is not None:
        query = query.filter(DailyEntry.worker_id == worker_id)
    if work_unit_id is not None:
        query = query.filter(DailyEntry.work_unit_id == work_unit_id)
    coerced = _coerce_enum(EntryState, entry_state, "state")
    if coerced is not None:
        query = query.filter(DailyEntry.state == coerced)
    return query.order_by(DailyEntry.entry_date, DailyEntry.id).all()


# ---------------------------------------------------------------------------
# Novelties
# ---------------------------------------------------------------------------


def create_novelty(
    db: Session,
    *,
    novelty_date: dt.date,
    worker_id: int,
    kind: Any,
    description: str,
    recorded_by: int,
    days: float = 1.0,
) -> Novelty:
    coerced_kind = _coerce_enum(NoveltyKind, kind, "kind")
    if coerced_kind is None:
        raise ValidationError("Novelty kind is required", {"kind": None})
    if days < 0.5:
        raise ValidationError("A novelty covers at least half a day", {"days": days})
    if not description or not description.strip():
        raise ValidationError("A description is required", {"description": description})
    novelty = Novelty(
        novelty_date=novelty_date,
        worker_id=worker_id,
        kind=coerced_kind,
        days=days,
        description=description.strip(),
        recorded_by=recorded_by,
        state=NoveltyState.PENDING,
    )
    db.add(novelty)
    _commit(db, "create_novelty")
    db.refresh(novelty)
    return novelty


def _review_novelty(db: Session, novelty_id: int) -> Novelty:
    novelty = _get_or_404(db, Novelty, novelty_id, "Novelty")
    if novelty.state != NoveltyState.PENDING:
        raise AlreadyResolved(
            f"Novelty {novelty.id} was already reviewed",
            {"novelty_id": novelty.id, "state": novelty.state.value},
        )
    return novelty


def approve_novelty(db: Session, novelty_id: int, reviewer_id: int, now: Optional[dt.datetime] = None) -> Novelty:
    novelty = _review_novelty(db, novelty_id)
    novelty.state = NoveltyState.APPROVED
    novelty.reviewed_by = reviewer_id
    novelty.reviewed_at = _ensure_utc(now)
    _commit(db, "approve_novelty")
    db.refresh(novelty)
    return novelty


def reject_novelty(
    db: Session,
    novelty_id: int,
    reviewer_id: int,
    reason: str,
    now: Optional[dt.datetime] = None,
) -> Novelty:
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required", {"reason": reason})
    novelty = _review_novelty(db, novelty_id)
    novelty.state = NoveltyState.REJECTED
    novelty.reviewed_by = reviewer_id
    novelty.reviewed_at = _ensure_utc(now)
    novelty.rejection_reason = reason.strip()
    _commit(db, "reject_novelty")
    db.refresh(novelty)
    return novelty


# ---------------------------------------------------------------------------
# Negotiated prices
# ---------------------------------------------------------------------------


def _insert_price_version(
    db: Session,
    unit: WorkUnit,
    price: float,
    negotiated_by: int,
    authorized_by: Optional[int],
    motive: Optional[str],
    now: dt.datetime,
) -> NegotiatedPrice:
    max_version = (
        db.query(func.max(NegotiatedPrice.version)).filter(NegotiatedPrice.work_unit_id == unit.id).scalar()
    ) or 0
    superseded = (
        db.query(NegotiatedPrice)
        .filter(NegotiatedPrice.work_unit_id == unit.id, NegotiatedPrice.active.is_(True))
        .all()
    )
    for previous in superseded:
        previous.active = False
        previous.valid_until = now
    # The partial unique index on active rows needs the deactivation written first.
    db.flush()
    new_price = NegotiatedPrice(
        work_unit_id=unit.id,
        version=max_version + 1,
        agreed_price=price,
        negotiated_at=now,
        valid_from=now,
        negotiated_by=negotiated_by,
        authorized_by=authorized_by,
        motive=motive,
        active=True,
    )
    db.add(new_price)
    db.flush()
    db.commit()
    db.refresh(new_price)
    return new_price


def negotiate_price(
    db: Session,
    state: RuntimeState,
    unit_id: int,
    price: float,
    negotiated_by: int,
    authorized_by: Optional[int] = None,
    motive: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> NegotiatedPrice:
    if price is None or price <= 0:
        raise ValidationError("Agreed price must be greater than zero", {"agreed_price": price})
    now = _ensure_utc(now)
    unit = get_work_unit(db, unit_id)
    last_error: Optional[Exception] = None
    with state.unit_lock(unit.id):
        for attempt in range(1, PRICE_VERSION_RETRIES + 1):
            try:
                new_price = _insert_price_version(db, unit, price, negotiated_by, authorized_by, motive, now)
            except IntegrityError as exc:
                # Another process took the same version number.
                db.rollback()
                last_error = exc
                logger.warning(
                    "Price version race on unit %s (attempt %d)", unit.id, attempt, extra={"work_unit_id": unit.id}
                )
                continue
            except SQLAlchemyError as exc:
                db.rollback()
                raise InfrastructureError("Storage failure during negotiate_price", operation="negotiate_price") from exc
            logger.info(
                "Negotiated price v%d for unit %s: %s", new_price.version, unit.code, price, extra={"work_unit_id": unit.id}
            )
            return new_price
    raise InfrastructureError(
        f"Could not assign a price version for unit {unit.id} after {PRICE_VERSION_RETRIES} attempts",
        operation="negotiate_price",
    ) from last_error


def current_price(db: Session, unit_id: int) -> NegotiatedPrice:
    get_work_unit(db, unit_id)
    price = (
        db.query(NegotiatedPrice)
        .filter(NegotiatedPrice.work_unit_id == unit_id, NegotiatedPrice.active.is_(True))
        .one_or_none()
    )
    if price is None:
        raise NotFound("NegotiatedPrice for WorkUnit", unit_id)
    return price


def price_history(db: Session, unit_id: int) -> List[NegotiatedPrice]:
    get_work_unit(db, unit_id)
    return (
        db.query(NegotiatedPrice)
        .filter(NegotiatedPrice.work_unit_id == unit_id)
        .order_by(NegotiatedPrice.version)
        .all()
    )


# ---------------------------------------------------------------------------
# Consolidation
# ---------------------------------------------------------------------------


def _next_code(db: Session, model: Any, week: OperationalWeek, prefix: str) -> str:
    count = db.query(func.count(model.id)).filter(model.week_id == week.id).scalar() or 0
    return f"{prefix}-{week.code}-{count + 1:04d}"


def _consolidate_pair(
    db: Session,
    week: OperationalWeek,
    worker_id: int,
    unit: WorkUnit,
    actor_id: Optional[int],
    target_state: ConsolidationState,
    now: dt.datetime,
) -> WeeklyConsolidation:
    entries = (
        db.query(DailyEntry)
        .filter(
            DailyEntry.worker_id == worker_id,
            DailyEntry.work_unit_id == unit.id,
            DailyEntry.entry_date >= week.start_date,
            DailyEntry.entry_date <= week.end_date,
            DailyEntry.state.in_(COUNTED_ENTRY_STATES),
        )
        .all()
    )
    days_worked = len(entries)
    total_hours = sum(entry.hours or 0.0 for entry in entries)
    total_executed = sum(entry.quantity or 0.0 for entry in entries)
    expected_rate = unit.activity.expected_daily_rate if unit.activity is not None else 0.0
    average = total_executed / days_worked if days_worked else 0.0
    percent = round(average * 100 / expected_rate, 2) if expected_rate else 0.0
    novelty_days = (
        db.query(func.coalesce(func.sum(Novelty.days), 0.0))
        .filter(
            Novelty.worker_id == worker_id,
            Novelty.novelty_date >= week.start_date,
            Novelty.novelty_date <= week.end_date,
            Novelty.state.in_(COUNTED_NOVELTY_STATES),
        )
        .scalar()
    )

    consolidation = (
        db.query(WeeklyConsolidation)
        .filter(
            WeeklyConsolidation.week_id == week.id,
            WeeklyConsolidation.worker_id == worker_id,
            WeeklyConsolidation.work_unit_id == unit.id,
        )
        .one_or_none()
    )
    if consolidation is None:
        consolidation = WeeklyConsolidation(
            code=_next_code(db, WeeklyConsolidation, week, "CONS"),
            week_id=week.id,
            worker_id=worker_id,
            work_unit_id=unit.id,
        )
        db.add(consolidation)
    consolidation.days_worked = days_worked
    consolidation.total_hours = round(total_hours, 2)
    consolidation.total_executed = round(total_executed, 4)
    consolidation.expected_daily_rate = expected_rate
    consolidation.average_per_day = round(average, 2)
    consolidation.percent_of_expected = percent
    consolidation.novelty_days = float(novelty_days or 0.0)
    consolidation.state = target_state
    consolidation.consolidated_by = actor_id
    consolidation.consolidated_at = now
    return consolidation


def consolidate(
    db: Session,
    week_id: int,
    worker_id: int,
    unit_id: int,
    actor_id: Optional[int] = None,
    forced_state: Any = None,
    now: Optional[dt.datetime] = None,
) -> WeeklyConsolidation:
    target_state = _coerce_enum(ConsolidationState, forced_state, "forced_state") or ConsolidationState.CONSOLIDATED
    week = get_week(db, week_id)
    unit = get_work_unit(db, unit_id)
    consolidation = _consolidate_pair(db, week, worker_id, unit, actor_id, target_state, _ensure_utc(now))
    _commit(db, "consolidate")
    db.refresh(consolidation)
    return consolidation


def consolidate_week(
    db: Session,
    week_id: int,
    actor_id: Optional[int] = None,
    now: Optional[dt.datetime] = None,
) -> BatchResult:
    week = get_week(db, week_id)
    now = _ensure_utc(now)
    pairs = (
        db.query(DailyEntry.worker_id, DailyEntry.work_unit_id)
        .filter(
            DailyEntry.entry_date >= week.start_date,
            DailyEntry.entry_date <= week.end_date,
            DailyEntry.state.in_(COUNTED_ENTRY_STATES),
        )
        .distinct()
        .order_by(DailyEntry.worker_id, DailyEntry.work_unit_id)
        .all()
    )
    result = BatchResult()
    for worker_id, unit_id in pairs:
        try:
            consolidation = consolidate(db, week.id, worker_id, unit_id, actor_id=actor_id, now=now)
        except (DomainError, InfrastructureError) as exc:
            db.rollback()
            logger.warning(
                "Consolidation failed for worker %s on unit %s: %s",
                worker_id,
                unit_id,
                exc,
                extra={"week_id": week.id, "worker_id": worker_id, "work_unit_id": unit_id},
            )
            result.failures.append(
                {"worker_id": worker_id, "work_unit_id": unit_id, "error": type(exc).__name__, "detail": str(exc)}
            )
            continue
        result.items.append(consolidation)
    if pairs and not result.items:
        raise BatchFailed("consolidate_week", result.failures)
    logger.info(
        "Consolidated week %s: %d ok, %d failed", week.code, len(result.items), len(result.failures),
        extra={"week_id": week.id},
    )
    return result


def list_consolidations(db: Session, week_id: int, worker_id: Optional[int] = None) -> List[WeeklyConsolidation]:
    get_week(db, week_id)
    query = db.query(WeeklyConsolidation).filter(WeeklyConsolidation.week_id == week_id)
    if worker_id is not None:
        query = query.filter(WeeklyConsolidation.worker_id == worker_id)
    return query.order_by(WeeklyConsolidation.worker_id, WeeklyConsolidation.work_unit_id).all()


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------


def _crew_pairs(db: Session, week: OperationalWeek, crew_id: int) -> Set[Tuple[int, int]]:
    rows = (
        db.query(DailyEntry.worker_id, DailyEntry.work_unit_id)
        .filter(
            DailyEntry.crew_id == crew_id,
            DailyEntry.entry_date >= week.start_date,
            DailyEntry.entry_date <= week.end_date,
        )
        .distinct()
        .all()
    )
    return {(worker_id, unit_id) for worker_id, unit_id in rows}


def _scope_consolidations(
    db: Session, week: OperationalWeek, scope_kind: ScopeKind, scope_ref: int
) -> List[WeeklyConsolidation]:
    query = db.query(WeeklyConsolidation).filter(
        WeeklyConsolidation.week_id == week.id,
        WeeklyConsolidation.state.in_(INDICATOR_SOURCE_STATES),
    )
    if scope_kind == ScopeKind.PROJECT:
        query = query.join(WorkUnit, WorkUnit.id == WeeklyConsolidation.work_unit_id).filter(
            WorkUnit.project_id == scope_ref
        )
    elif scope_kind == ScopeKind.SUPERVISOR:
        query = query.join(WorkUnit, WorkUnit.id == WeeklyConsolidation.work_unit_id).filter(
            WorkUnit.supervisor_id == scope_ref
        )
    elif scope_kind == ScopeKind.WORKER:
        query = query.filter(WeeklyConsolidation.worker_id == scope_ref)
    rows = query.order_by(WeeklyConsolidation.id).all()
    if scope_kind == ScopeKind.CREW:
        pairs = _crew_pairs(db, week, scope_ref)
        rows = [row for row in rows if (row.worker_id, row.work_unit_id) in pairs]
    return rows


def _scope_alerts(
    db: Session, week: OperationalWeek, scope_kind: ScopeKind, rows: List[WeeklyConsolidation]
) -> List[Alert]:
    alerts = db.query(Alert).filter(Alert.week_id == week.id).all()
    if scope_kind == ScopeKind.GLOBAL:
        return alerts
    workers = {row.worker_id for row in rows}
    units = {row.work_unit_id for row in rows}
    return [
        alert
        for alert in alerts
        if (alert.entity_kind == EntityKind.WORKER and alert.entity_id in workers)
        or (alert.entity_kind == EntityKind.WORK_UNIT and alert.entity_id in units)
    ]


def _indicator_code(week: OperationalWeek, scope_kind: ScopeKind, scope_ref: int) -> str:
    if scope_kind == ScopeKind.GLOBAL:
        return f"IND-{week.code}-GLOBAL"
    return f"IND-{week.code}-{scope_kind.value}-{scope_ref}"


def _compute_indicator(
    db: Session,
    week: OperationalWeek,
    scope_kind: ScopeKind,
    scope_ref: int,
    now: dt.datetime,
) -> PerformanceIndicator:
    rows = _scope_consolidations(db, week, scope_kind, scope_ref)
    total_days = sum(row.days_worked for row in rows)
    total_production = sum(row.total_executed for row in rows)
    unit_ids = {row.work_unit_id for row in rows}
    units = db.query(WorkUnit).filter(WorkUnit.id.in_(unit_ids)).all() if unit_ids else []
    units_met = sum(1 for unit in units if unit.target_met)
    buckets = Counter(row.classification for row in rows)
    alerts = _scope_alerts(db, week, scope_kind, rows)

    indicator = (
        db.query(PerformanceIndicator)
        .filter(
            PerformanceIndicator.week_id == week.id,
            PerformanceIndicator.scope_kind == scope_kind,
            PerformanceIndicator.scope_ref == scope_ref,
        )
        .one_or_none()
    )
    if indicator is None:
        indicator = PerformanceIndicator(week_id=week.id, scope_kind=scope_kind, scope_ref=scope_ref)
        db.add(indicator)
    indicator.code = _indicator_code(week, scope_kind, scope_ref)
    indicator.total_workers = len({row.worker_id for row in rows})
    indicator.total_days_worked = total_days
    indicator.total_hours = round(sum(row.total_hours for row in rows), 2)
    indicator.total_production = round(total_production, 4)
    indicator.average_per_day = round(total_production / total_days, 2) if total_days else 0.0
    indicator.units_assigned = len(units)
    indicator.units_met = units_met
    indicator.compliance_percent = round(units_met * 100 / len(units), 2) if units else 0.0
    indicator.excellent_count = buckets.get(Classification.EXCELLENT, 0)
    indicator.good_count = buckets.get(Classification.GOOD, 0)
    indicator.regular_count = buckets.get(Classification.REGULAR, 0)
    indicator.low_count = buckets.get(Classification.LOW, 0)
    indicator.total_alerts = len(alerts)
    indicator.critical_alerts = sum(1 for alert in alerts if alert.severity == Severity.CRITICAL)
    indicator.computed_at = now
    return indicator


def scoped_indicators(
    db: Session,
    week_id: int,
    scope_kind: Any,
    scope_ref: int = 0,
    now: Optional[dt.datetime] = None,
) -> PerformanceIndicator:
    kind = _coerce_enum(ScopeKind, scope_kind, "scope_kind")
    if kind is None:
        raise ValidationError("Scope kind is required", {"scope_kind": None})
    if kind == ScopeKind.GLOBAL:
        scope_ref = 0
    week = get_week(db, week_id)
    indicator = _compute_indicator(db, week, kind, scope_ref, _ensure_utc(now))
    _commit(db, "indicators")
    db.refresh(indicator)
    return indicator


def global_indicators(db: Session, week_id: int, now: Optional[dt.datetime] = None) -> PerformanceIndicator:
    return scoped_indicators(db, week_id, ScopeKind.GLOBAL, 0, now=now)


def project_indicators(
    db: Session, week_id: int, project_id: int, now: Optional[dt.datetime] = None
) -> PerformanceIndicator:
    return scoped_indicators(db, week_id, ScopeKind.PROJECT, project_id, now=now)


def project_indicators_for_week(db: Session, week_id: int, now: Optional[dt.datetime] = None) -> BatchResult:
    week = get_week(db, week_id)
    project_ids = [
        project_id
        for (project_id,) in db.query(WorkUnit.project_id)
        .join(WeeklyConsolidation, WeeklyConsolidation.work_unit_id == WorkUnit.id)
        .filter(WeeklyConsolidation.week_id == week.id)
        .distinct()
        .order_by(WorkUnit.project_id)
        .all()
    ]
    result = BatchResult()
    for project_id in project_ids:
        try:
            result.items.append(project_indicators(db, week.id, project_id, now=now))
        except (DomainError, InfrastructureError) as exc:
            db.rollback()
            logger.warning("Project indicators failed for project %s: %s", project_id, exc, extra={"week_id": week.id})
            result.failures.append({"project_id": project_id, "error": type(exc).__name__, "detail": str(exc)})
    if project_ids and not result.items:
        raise BatchFailed("project_indicators_for_week", result.failures)
    return result


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


def _describe_work_unit(db: Session, unit_id: int) -> str:
    unit = db.get(WorkUnit, unit_id)
    return f"Work unit {unit.code}" if unit is not None else f"Work unit #{unit_id}"


ENTITY_DESCRIBERS: Dict[EntityKind, Callable[[Session, int], str]] = {
    EntityKind.WORKER: lambda db, entity_id: f"Worker #{entity_id}",
    EntityKind.WORK_UNIT: _describe_work_unit,
    EntityKind.PROJECT: lambda db, entity_id: f"Project #{entity_id}",
    EntityKind.CREW: lambda db, entity_id: f"Crew #{entity_id}",
}

ALERT_TITLES: Dict[AlertKind, str] = {
    AlertKind.LOW_PERFORMANCE: "Low performance",
    AlertKind.TARGET_NOT_MET: "Target not met",
    AlertKind.HIGH_ABSENTEEISM: "High absenteeism",
    AlertKind.PROJECT_DELAY: "Project delay",
    AlertKind.COST_OVERRUN: "Cost overrun",
    AlertKind.OTHER: "Alert",
}


def describe_entity(db: Session, ref: EntityRef) -> str:
    return ENTITY_DESCRIBERS[ref.kind](db, ref.id)


def _open_alert(db: Session, week_id: int, kind: AlertKind, ref: EntityRef) -> Optional[Alert]:
    return (
        db.query(Alert)
        .filter(
            Alert.week_id == week_id,
            Alert.kind == kind,
            Alert.entity_kind == ref.kind,
            Alert.entity_id == ref.id,
            Alert.state.in_(OPEN_ALERT_STATES),
        )
        .order_by(Alert.id)
        .first()
    )


def _raise_alert(
    db: Session,
    week: OperationalWeek,
    kind: AlertKind,
    severity: Severity,
    ref: EntityRef,
    description: str,
    observed: float,
    expected: float,
    suggested_action: str,
    now: dt.datetime,
) -> Tuple[Alert, bool]:
    existing = _open_alert(db, week.id, kind, ref)
    if existing is not None:
        return existing, False
    alert = Alert(
        code=_next_code(db, Alert, week, "ALT"),
        week_id=week.id,
        kind=kind,
        severity=severity,
        entity_kind=ref.kind,
        entity_id=ref.id,
        title=f"{ALERT_TITLES[kind]}: {describe_entity(db, ref)}",
        description=description,
        observed_value=observed,
        expected_value=expected,
        difference=round(observed - expected, 2),
        suggested_action=suggested_action,
        state=AlertState.PENDING,
        created_at=now,
    )
    db.add(alert)
    db.flush()
    return alert, True


def generate_alerts(db: Session, week_id: int, now: Optional[dt.datetime] = None) -> List[Alert]:
    """Evaluate the alert rules for a week and return every alert they point at.

    Open alerts for the same (week, kind, entity) are reused, so running this twice without
    data changes creates nothing new.
    """
    week = get_week(db, week_id)
    now = _ensure_utc(now)
    produced: List[Alert] = []
    created = 0

    consolidations = (
        db.query(WeeklyConsolidation)
        .filter(
            WeeklyConsolidation.week_id == week.id,
            WeeklyConsolidation.state.in_(ALERT_SOURCE_STATES),
            WeeklyConsolidation.days_worked >= LOW_PERFORMANCE_MIN_DAYS,
            WeeklyConsolidation.percent_of_expected < LOW_PERFORMANCE_THRESHOLD,
        )
        .order_by(WeeklyConsolidation.id)
        .all()
    )
    for row in consolidations:
        severity = Severity.CRITICAL if row.percent_of_expected <= LOW_PERFORMANCE_CRITICAL else Severity.MEDIUM
        alert, is_new = _raise_alert(
            db,
            week,
            AlertKind.LOW_PERFORMANCE,
            severity,
            EntityRef(EntityKind.WORKER, row.worker_id),
            (
                f"Worker {row.worker_id} averaged {row.average_per_day:g} per day on unit "
                f"{row.work_unit_id} ({row.percent_of_expected:g}% of the expected rate)"
            ),
            row.average_per_day,
            row.expected_daily_rate,
            "Review working conditions and training needs with the supervisor",
            now,
        )
        produced.append(alert)
        created += int(is_new)

    units = (
        db.query(WorkUnit)
        .filter(WorkUnit.state.notin_(TERMINAL_UNIT_STATES))
        .order_by(WorkUnit.id)
        .all()
    )
    for unit in units:
        if unit.target_met or unit.percent_of_target >= TARGET_ALERT_THRESHOLD:
            continue
        severity = Severity.CRITICAL if unit.percent_of_target < TARGET_ALERT_CRITICAL else Severity.HIGH
        alert, is_new = _raise_alert(
            db,
            week,
            AlertKind.TARGET_NOT_MET,
            severity,
            EntityRef(EntityKind.WORK_UNIT, unit.id),
            (
                f"Unit {unit.code} executed {unit.executed_quantity:g} of {unit.minimum_target:g} "
                f"({unit.percent_of_target:g}%)"
            ),
            unit.executed_quantity,
            unit.minimum_target,
            "Reassign workers or reschedule the work unit",
            now,
        )
        produced.append(alert)
        created += int(is_new)

    _commit(db, "generate_alerts")
    if created:
        logger.info("Created %d alert(s) for week %s", created, week.code, extra={"week_id": week.id})
    return produced


def _close_alert(alert: Alert, target: AlertState, actor_id: int, comment: Optional[str], now: dt.datetime) -> None:
    if alert.state not in OPEN_ALERT_STATES:
        raise AlreadyResolved(
            f"Alert {alert.code} is already {alert.state.value.lower()}",
            {"alert_id": alert.id, "state": alert.state.value},
        )
    alert.state = target
    alert.resolved_by = actor_id
    alert.resolved_at = now
    alert.resolution_comment = comment


def resolve_alert(
    db: Session, alert_id: int, resolver_id: int, comment: Optional[str] = None, now: Optional[dt.datetime] = None
) -> Alert:
    alert = get_alert(db, alert_id)
    _close_alert(alert, AlertState.RESOLVED, resolver_id, comment, _ensure_utc(now))
    _commit(db, "resolve_alert")
    db.refresh(alert)
    return alert


def ignore_alert(
    db: Session, alert_id: int, actor_id: int, comment: Optional[str] = None, now: Optional[dt.datetime] = None
) -> Alert:
    alert = get_alert(db, alert_id)
    _close_alert(alert, AlertState.IGNORED, actor_id, comment, _ensure_utc(now))
    _commit(db, "ignore_alert")
    db.refresh(alert)
    return alert


def review_alert(db: Session, alert_id: int) -> Alert:
    alert = get_alert(db, alert_id)
    if alert.state not in OPEN_ALERT_STATES:
        raise AlreadyResolved(
            f"Alert {alert.code} is already {alert.state.value.lower()}",
            {"alert_id": alert.id, "state": alert.state.value},
        )
    if alert.state == AlertState.PENDING:
        alert.state = AlertState.IN_REVIEW
        _commit(db, "review_alert")
        db.refresh(alert)
    return alert


def list_alerts(db: Session, week_id: int, alert_state: Any = None, severity: Any = None) -> List[Alert]:
    get_week(db, week_id)
    query = db.query(Alert).filter(Alert.week_id == week_id)
    coerced_state = _coerce_enum(AlertState, alert_state, "state")
    if coerced_state is not None:
        query = query.filter(Alert.state == coerced_state)
    coerced_severity = _coerce_enum(Severity, severity, "severity")
    if coerced_severity is not None:
        query = query.filter(Alert.severity == coerced_severity)
    return query.order_by(Alert.id).all()


# ---------------------------------------------------------------------------
# Closure orchestration
# ---------------------------------------------------------------------------


def _blocking_units(db: Session, week: OperationalWeek) -> List[Dict[str, Any]]:
    touched = (
        db.query(DailyEntry.work_unit_id)
        .filter(DailyEntry.entry_date >= week.start_date, DailyEntry.entry_date <= week.end_date)
        .distinct()
    )
    units = (
        db.query(WorkUnit)
        .filter(WorkUnit.id.in_(touched), WorkUnit.state.notin_(TERMINAL_UNIT_STATES))
        .order_by(WorkUnit.id)
        .all()
    )
    return [
        {
            "work_unit_id": unit.id,
            "code": unit.code,
            "target": unit.minimum_target,
            "executed": unit.executed_quantity,
            "shortfall": unit.shortfall,
        }
        for unit in units
        if unit.executed_quantity < unit.minimum_target
    ]


def can_close(db: Session, week_id: int) -> CloseCheck:
    week = get_week(db, week_id)
    if week.state != WeekState.OPEN:
        raise AlreadyClosed(f"Week {week.code} is {week.state.value.lower()}", {"week_id": week.id})
    blocking = _blocking_units(db, week)
    reasons = [
        f"Unit {item['code']} executed {item['executed']:g} of {item['target']:g} (short {item['shortfall']:g})"
        for item in blocking
    ]
    warnings: List[str] = []
    drafts = (
        db.query(func.count(WeeklyConsolidation.id))
        .filter(WeeklyConsolidation.week_id == week.id, WeeklyConsolidation.state == ConsolidationState.DRAFT)
        .scalar()
    )
    if drafts:
        warnings.append(f"{drafts} consolidation(s) still in draft")
    critical = (
        db.query(func.count(Alert.id))
        .filter(Alert.week_id == week.id, Alert.severity == Severity.CRITICAL, Alert.state == AlertState.PENDING)
        .scalar()
    )
    if critical:
        warnings.append(f"{critical} critical alert(s) pending review")
    return CloseCheck(allowed=not blocking, reasons=reasons, blocking_units=blocking, warnings=warnings)


def process_week(
    db: Session,
    state: RuntimeState,
    week_id: int,
    actor_id: Optional[int] = None,
    now: Optional[dt.datetime] = None,
) -> WeekProcessingResult:
    """Run consolidation, global indicators and alert generation for a week, in that order.

    Each stage commits its own idempotent writes. A failure is reported as a single
    ``ProcessingFailed`` naming the stage; calling this again is the recovery path.
    """
    now = _ensure_utc(now)
    week = get_week(db, week_id)
    if week.state != WeekState.OPEN:
        raise WeekClosed(f"Week {week.code} is {week.state.value.lower()}", {"week_id": week.id})
    with state.week_lock(week.id):
        stage = "consolidation"
        try:
            consolidations = consolidate_week(db, week.id, actor_id=actor_id, now=now)
            stage = "indicators"
            indicator = global_indicators(db, week.id, now=now)
            stage = "alerts"
            alerts = generate_alerts(db, week.id, now=now)
        except (DomainError, InfrastructureError) as exc:
            db.rollback()
            logger.error("Processing of week %s failed at %s: %s", week.code, stage, exc, extra={"week_id": week.id, "stage": stage})
            raise ProcessingFailed(week.id, stage, exc) from exc
    return WeekProcessingResult(week=week, consolidations=consolidations, indicator=indicator, alerts=alerts)


def _global_indicator(db: Session, week_id: int) -> Optional[PerformanceIndicator]:
    return (
        db.query(PerformanceIndicator)
        .filter(PerformanceIndicator.week_id == week_id, PerformanceIndicator.scope_kind == ScopeKind.GLOBAL)
        .one_or_none()
    )


def week_summary(db: Session, week_id: int, top: int = 5) -> Dict[str, Any]:
    week = get_week(db, week_id)
    consolidations = (
        db.query(WeeklyConsolidation)
        .filter(WeeklyConsolidation.week_id == week.id)
        .order_by(WeeklyConsolidation.percent_of_expected.desc(), WeeklyConsolidation.id)
        .all()
    )
    alerts = db.query(Alert).filter(Alert.week_id == week.id).all()
    return {
        "week": week,
        "consolidations_by_state": dict(Counter(row.state.value for row in consolidations)),
        "indicator": _global_indicator(db, week.id),
        "alerts_by_severity": dict(Counter(alert.severity.value for alert in alerts)),
        "alerts_by_state": dict(Counter(alert.state.value for alert in alerts)),
        "top_performers": consolidations[:top],
        "low_performers": [row for row in consolidations if row.classification == Classification.LOW],
    }


COMPARED_METRICS = (
    "total_workers",
    "total_days_worked",
    "total_production",
    "average_per_day",
    "compliance_percent",
    "total_alerts",
    "critical_alerts",
)


def compare_weeks(db: Session, base_week_id: int, other_week_id: int) -> Dict[str, Any]:
    base_week = get_week(db, base_week_id)
    other_week = get_week(db, other_week_id)
    base = _global_indicator(db, base_week.id)
    if base is None:
        raise NotFound("PerformanceIndicator for week", base_week.id)
    other = _global_indicator(db, other_week.id)
    if other is None:
        raise NotFound("PerformanceIndicator for week", other_week.id)
    metrics = {}
    for name in COMPARED_METRICS:
        before = getattr(base, name) or 0
        after = getattr(other, name) or 0
        metrics[name] = {"base": before, "other": after, "change_percent": relative_change(after, before)}
    return {"base_week": base_week, "other_week": other_week, "metrics": metrics}


def performance_trends(db: Session, start: dt.date, end: dt.date) -> List[Dict[str, Any]]:
    if end < start:
        raise ValidationError("Trend range end must not precede its start", {"start": str(start), "end": str(end)})
    trends: List[Dict[str, Any]] = []
    for week in list_weeks(db, start, end):
        rows = (
            db.query(WeeklyConsolidation)
            .filter(
                WeeklyConsolidation.week_id == week.id,
                WeeklyConsolidation.state.in_(INDICATOR_SOURCE_STATES),
            )
            .all()
        )
        count = len(rows)
        met = sum(1 for row in rows if row.met_expected_rate)
        trends.append(
            {
                "week_id": week.id,
                "code": week.code,
                "start_date": week.start_date,
                "average_percent": round(sum(row.percent_of_expected for row in rows) / count, 2) if count else 0.0,
                "met_expected_percent": round(met * 100 / count, 2) if count else 0.0,
                "workers": len({row.worker_id for row in rows}),
            }
        )
    return trends

