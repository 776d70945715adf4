from __future__ import annotations

import datetime as dt
import enum
from typing import NamedTuple

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _enum(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(enum_cls, native_enum=False, length=20, validate_strings=True)


class WeekState(str, enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    LOCKED = "LOCKED"


class UnitState(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    MET = "MET"
    RESCHEDULED = "RESCHEDULED"
    REPLACED = "REPLACED"
    CANCELLED = "CANCELLED"


class EntryState(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CORRECTED = "CORRECTED"


class NoveltyKind(str, enum.Enum):
    PERMIT = "PERMIT"
    ABSENCE = "ABSENCE"
    SICK_LEAVE = "SICK_LEAVE"
    WORK_ACCIDENT = "WORK_ACCIDENT"
    SUSPENSION = "SUSPENSION"
    VACATION = "VACATION"
    LEAVE = "LEAVE"
    RAIN = "RAIN"
    SUPPLIES = "SUPPLIES"
    TOOLS = "TOOLS"
    OTHER = "OTHER"


class NoveltyState(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    VOIDED = "VOIDED"


class ConsolidationState(str, enum.Enum):
    DRAFT = "DRAFT"
    CONSOLIDATED = "CONSOLIDATED"
    APPROVED = "APPROVED"
    CLOSED = "CLOSED"


class Classification(str, enum.Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    REGULAR = "REGULAR"
    LOW = "LOW"


class ScopeKind(str, enum.Enum):
    GLOBAL = "GLOBAL"
    PROJECT = "PROJECT"
    CREW = "CREW"
    SUPERVISOR = "SUPERVISOR"
    WORKER = "WORKER"


class AlertKind(str, enum.Enum):
    LOW_PERFORMANCE = "LOW_PERFORMANCE"
    TARGET_NOT_MET = "TARGET_NOT_MET"
    HIGH_ABSENTEEISM = "HIGH_ABSENTEEISM"
    PROJECT_DELAY = "PROJECT_DELAY"
    COST_OVERRUN = "COST_OVERRUN"
    OTHER = "OTHER"


class Severity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlertState(str, enum.Enum):
    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    RESOLVED = "RESOLVED"
    IGNORED = "IGNORED"


class EntityKind(str, enum.Enum):
    WORKER = "WORKER"
    WORK_UNIT = "WORK_UNIT"
    PROJECT = "PROJECT"
    CREW = "CREW"


class EntityRef(NamedTuple):
    """Tagged reference to an entity of another component (or an external directory)."""

    kind: EntityKind
    id: int


def classify_performance(percent: float) -> Classification:
    if percent >= 100:
        return Classification.EXCELLENT
    if percent >= 80:
        return Classification.GOOD
    if percent >= 60:
        return Classification.REGULAR
    return Classification.LOW


class OperationalWeek(Base):
    __tablename__ = "operational_weeks"
    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_week_range"),
    )

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), nullable=False, unique=True)
    start_date = Column(Date, nullable=False, unique=True, index=True)
    end_date = Column(Date, nullable=False, index=True)
    year = Column(Integer, nullable=False)
    week_number = Column(Integer, nullable=False)
    project_id = Column(Integer, nullable=True, index=True)
    hub_id = Column(Integer, nullable=True, index=True)
    state = Column(_enum(WeekState), nullable=False, default=WeekState.OPEN, index=True)
    closed_by = Column(Integer, nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    locked_by = Column(Integer, nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def contains(self, day: dt.date) -> bool:
        return self.start_date <= day <= self.end_date


class Activity(Base):
    __tablename__ = "activities"

    id = Column(Integer, primary_key=True)
    code = Column(String(40), nullable=False, unique=True)
    name = Column(String(200), nullable=False)
    unit_of_measure = Column(String(20), nullable=False, default="UNIT")
    expected_daily_rate = Column(Float, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class WorkUnit(Base):
    __tablename__ = "work_units"
    __table_args__ = (
        CheckConstraint("minimum_target >= 0", name="ck_unit_target"),
        CheckConstraint("priority BETWEEN 1 AND 5", name="ck_unit_priority"),
    )

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(40), nullable=False, unique=True)
    project_id = Column(Integer, nullable=False, index=True)
    activity_id = Column(Integer, ForeignKey("activities.id"), nullable=False, index=True)
    plot_id = Column(Integer, nullable=False, index=True)
    minimum_target = Column(Float, nullable=False, default=0)
    executed_quantity = Column(Float, nullable=False, default=0)
    state = Column(_enum(UnitState), nullable=False, default=UnitState.PENDING, index=True)
    supervisor_id = Column(Integer, nullable=True, index=True)
    priority = Column(Integer, nullable=False, default=3)
    planned_start = Column(Date, nullable=True)
    planned_end = Column(Date, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    activity = relationship("Activity")
    target_changes = relationship(
        "TargetChange",
        back_populates="work_unit",
        cascade="all, delete-orphan",
        order_by="TargetChange.changed_at",
    )

    @property
    def target_met(self) -> bool:
        return (self.executed_quantity or 0) >= (self.minimum_target or 0)

    @property
    def percent_of_target(self) -> float:
        if not self.minimum_target:
            return 0.0
        return round((self.executed_quantity or 0) / self.minimum_target * 100, 2)

    @property
    def shortfall(self) -> float:
        return max((self.minimum_target or 0) - (self.executed_quantity or 0), 0.0)


class TargetChange(Base):
    __tablename__ = "target_changes"

    id = Column(Integer, primary_key=True)
    work_unit_id = Column(Integer, ForeignKey("work_units.id"), nullable=False, index=True)
    previous_target = Column(Float, nullable=False)
    new_target = Column(Float, nullable=False)
    reason = Column(Text, nullable=False)
    changed_by = Column(Integer, nullable=True)
    changed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    work_unit = relationship("WorkUnit", back_populates="target_changes")


class DailyEntry(Base):
    __tablename__ = "daily_entries"
    __table_args__ = (
        UniqueConstraint("entry_date", "worker_id", "work_unit_id", name="uq_entry_day_worker_unit"),
        CheckConstraint("quantity >= 0", name="ck_entry_quantity"),
        CheckConstraint("hours >= 0 AND hours <= 24", name="ck_entry_hours"),
        Index("ix_entries_worker_date", "worker_id", "entry_date"),
        Index("ix_entries_unit_date", "work_unit_id", "entry_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    entry_date = Column(Date, nullable=False, index=True)
    worker_id = Column(Integer, nullable=False)
    work_unit_id = Column(Integer, ForeignKey("work_units.id"), nullable=False)
    crew_id = Column(Integer, nullable=True, index=True)
    quantity = Column(Float, nullable=False)
    hours = Column(Float, nullable=False, default=8)
    recorded_by = Column(Integer, nullable=False, index=True)
    state = Column(_enum(EntryState), nullable=False, default=EntryState.APPROVED, index=True)
    notes = Column(Text, nullable=True)
    edited = Column(Boolean, nullable=False, default=False)
    edited_by = Column(Integer, nullable=True)
    edit_reason = Column(Text, nullable=True)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    work_unit = relationship("WorkUnit")


class Novelty(Base):
    __tablename__ = "novelties"
    __table_args__ = (
        CheckConstraint("days >= 0.5", name="ck_novelty_days"),
        Index("ix_novelties_worker_date", "worker_id", "novelty_date"),
    )

    id = Column(Integer, primary_key=True)
    novelty_date = Column(Date, nullable=False, index=True)
    worker_id = Column(Integer, nullable=False)
    kind = Column(_enum(NoveltyKind), nullable=False)
    days = Column(Float, nullable=False, default=1)
    description = Column(Text, nullable=False)
    recorded_by = Column(Integer, nullable=False)
    state = Column(_enum(NoveltyState), nullable=False, default=NoveltyState.PENDING, index=True)
    reviewed_by = Column(Integer, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class NegotiatedPrice(Base):
    __tablename__ = "negotiated_prices"
    __table_args__ = (
        UniqueConstraint("work_unit_id", "version", name="uq_price_unit_version"),
        CheckConstraint("agreed_price > 0", name="ck_price_positive"),
        Index(
            "uq_price_unit_active",
            "work_unit_id",
            unique=True,
            sqlite_where=text("active = 1"),
        ),
    )

    id = Column(Integer, primary_key=True)
    work_unit_id = Column(Integer, ForeignKey("work_units.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    agreed_price = Column(Float, nullable=False)
    negotiated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    valid_from = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    negotiated_by = Column(Integer, nullable=False)
    authorized_by = Column(Integer, nullable=True)
    motive = Column(Text, nullable=True)
    active = Column(Boolean, nullable=False, default=True)


class WeeklyConsolidation(Base):
    __tablename__ = "weekly_consolidations"
    __table_args__ = (
        UniqueConstraint("week_id", "worker_id", "work_unit_id", name="uq_consolidation_week_worker_unit"),
        Index("ix_consolidations_worker_week", "worker_id", "week_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(40), nullable=False, index=True)
    week_id = Column(Integer, ForeignKey("operational_weeks.id"), nullable=False, index=True)
    worker_id = Column(Integer, nullable=False)
    work_unit_id = Column(Integer, ForeignKey("work_units.id"), nullable=False, index=True)
    days_worked = Column(Integer, nullable=False, default=0)
    total_hours = Column(Float, nullable=False, default=0)
    total_executed = Column(Float, nullable=False, default=0)
    expected_daily_rate = Column(Float, nullable=False, default=0)
    average_per_day = Column(Float, nullable=False, default=0)
    percent_of_expected = Column(Float, nullable=False, default=0)
    novelty_days = Column(Float, nullable=False, default=0)
    state = Column(
        _enum(ConsolidationState), nullable=False, default=ConsolidationState.DRAFT, index=True
    )
    consolidated_by = Column(Integer, nullable=True)
    consolidated_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)

    week = relationship("OperationalWeek")
    work_unit = relationship("WorkUnit")

    @property
    def classification(self) -> Classification:
        return classify_performance(self.percent_of_expected or 0)

    @property
    def met_expected_rate(self) -> bool:
        return (self.percent_of_expected or 0) >= 100


class PerformanceIndicator(Base):
    __tablename__ = "performance_indicators"
    __table_args__ = (
        UniqueConstraint("week_id", "scope_kind", "scope_ref", name="uq_indicator_week_scope"),
    )

    id = Column(Integer, primary_key=True)
    code = Column(String(60), nullable=False)
    week_id = Column(Integer, ForeignKey("operational_weeks.id"), nullable=False, index=True)
    scope_kind = Column(_enum(ScopeKind), nullable=False)
    # 0 for GLOBAL; otherwise the project / crew / supervisor / worker id.
    scope_ref = Column(Integer, nullable=False, default=0)
    total_workers = Column(Integer, nullable=False, default=0)
    total_days_worked = Column(Integer, nullable=False, default=0)
    total_hours = Column(Float, nullable=False, default=0)
    total_production = Column(Float, nullable=False, default=0)
    average_per_day = Column(Float, nullable=False, default=0)
    units_assigned = Column(Integer, nullable=False, default=0)
    units_met = Column(Integer, nullable=False, default=0)
    compliance_percent = Column(Float, nullable=False, default=0)
    excellent_count = Column(Integer, nullable=False, default=0)
    good_count = Column(Integer, nullable=False, default=0)
    regular_count = Column(Integer, nullable=False, default=0)
    low_count = Column(Integer, nullable=False, default=0)
    total_alerts = Column(Integer, nullable=False, default=0)
    critical_alerts = Column(Integer, nullable=False, default=0)
    computed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_week_severity", "week_id", "severity"),
        Index("ix_alerts_entity", "entity_kind", "entity_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(40), nullable=False, index=True)
    week_id = Column(Integer, ForeignKey("operational_weeks.id"), nullable=False, index=True)
    kind = Column(_enum(AlertKind), nullable=False)
    severity = Column(_enum(Severity), nullable=False)
    entity_kind = Column(_enum(EntityKind), nullable=False)
    entity_id = Column(Integer, nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    observed_value = Column(Float, nullable=True)
    expected_value = Column(Float, nullable=True)
    difference = Column(Float, nullable=True)
    suggested_action = Column(Text, nullable=True)
    state = Column(_enum(AlertState), nullable=False, default=AlertState.PENDING, index=True)
    resolved_by = Column(Integer, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution_comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    @property
    def entity(self) -> EntityRef:
        return EntityRef(self.entity_kind, self.entity_id)


class Plot(Base):
    __tablename__ = "plots"

    id = Column(Integer, primary_key=True)
    name = Column(String(120), nullable=False)
    farm_id = Column(Integer, nullable=False, index=True)
    hub_id = Column(Integer, nullable=False, index=True)
    zone_id = Column(Integer, nullable=True)


class SupervisorAssignment(Base):
    __tablename__ = "supervisor_assignments"

    id = Column(Integer, primary_key=True)
    supervisor_id = Column(Integer, nullable=False, index=True)
    hub_id = Column(Integer, nullable=True)
    farm_id = Column(Integer, nullable=True)
    plot_id = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    starts_on = Column(Date, nullable=True)
    ends_on = Column(Date, nullable=True)
