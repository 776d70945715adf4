from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy.orm import Session

from fieldweek import models, services
from fieldweek.errors import AlreadyClosed, NotFound, ProcessingFailed, TargetsUnmet, ValidationError, WeekClosed
from fieldweek.services import CloseCheck

from conftest import MANAGER, NOW, OTHER_WORKER, SUPERVISOR, WORKER, day


def test_met_unit_does_not_block(session: Session, state, week, make_unit, make_entry) -> None:
    unit = make_unit(target=100)
    make_entry(unit, day(0), 60)
    make_entry(unit, day(1), 40)

    session.refresh(unit)
    assert unit.state == models.UnitState.MET
    assert unit.completed_at is not None
    check = services.can_close(session, week.id)
    assert check.allowed is True
    assert check.blocking_units == []

    closed = services.close_week(session, state, week.id, SUPERVISOR, now=NOW)
    assert closed.state == models.WeekState.CLOSED


def test_unit_below_target_blocks_close(session: Session, state, week, make_unit, make_entry) -> None:
    unit = make_unit(target=100)
    make_entry(unit, day(0), 40)

    with pytest.raises(TargetsUnmet) as exc_info:
        services.close_week(session, state, week.id, SUPERVISOR, now=NOW)

    assert exc_info.value.blocking_units == [
        {"work_unit_id": unit.id, "code": unit.code, "target": 100, "executed": 40, "shortfall": 60}
    ]
    session.refresh(week)
    assert week.state == models.WeekState.OPEN
    assert week.closed_by is None


def test_every_violator_is_listed(session: Session, week, make_unit, make_entry) -> None:
    short = make_unit(target=50)
    shorter = make_unit(target=80)
    fine = make_unit(target=10)
    untouched = make_unit(target=500)
    cancelled = make_unit(target=100)
    make_entry(short, day(0), 10)
    make_entry(shorter, day(1), 5)
    make_entry(fine, day(1), 10)
    make_entry(cancelled, day(2), 5)
    services.cancel_work_unit(session, cancelled.id, "Abandoned")

    check = services.can_close(session, week.id)

    assert check.allowed is False
    assert [item["work_unit_id"] for item in check.blocking_units] == [short.id, shorter.id]
    assert len(check.reasons) == 2
    assert untouched.id not in {item["work_unit_id"] for item in check.blocking_units}


def test_rejected_only_unit_still_blocks(session: Session, week, make_unit, make_entry) -> None:
    unit = make_unit(target=10)
    make_entry(unit, day(0), 50, entry_state=models.EntryState.REJECTED)

    check = services.can_close(session, week.id)

    assert [item["shortfall"] for item in check.blocking_units] == [10]


def test_close_check_warnings(session: Session, week, make_unit, make_entry) -> None:
    unit = make_unit(target=1)
    for offset in range(3):
        make_entry(unit, day(offset), 1)
    services.consolidate_week(session, week.id, now=NOW)
    services.generate_alerts(session, week.id, now=NOW)
    services.consolidate(session, week.id, WORKER, unit.id, forced_state="DRAFT", now=NOW)

    check = services.can_close(session, week.id)

    assert check.allowed is True
    assert check.warnings == ["1 consolidation(s) still in draft", "1 critical alert(s) pending review"]


def test_close_revalidates_before_commit(session: Session, state, week, make_unit, make_entry, monkeypatch) -> None:
    unit = make_unit(target=100)
    make_entry(unit, day(0), 10)
    monkeypatch.setattr(services, "can_close", lambda db, week_id: CloseCheck(allowed=True))

    with pytest.raises(TargetsUnmet):
        services.close_week(session, state, week.id, SUPERVISOR, now=NOW)

    session.refresh(week)
    assert week.state == models.WeekState.OPEN


def test_can_close_on_closed_week(session: Session, state, week) -> None:
    services.close_week(session, state, week.id, SUPERVISOR, now=NOW)
    with pytest.raises(AlreadyClosed):
        services.can_close(session, week.id)


def test_process_week_runs_every_stage(session: Session, state, week, make_unit, make_entry) -> None:
    unit = make_unit(target=20)
    for offset in range(3):
        make_entry(unit, day(offset), 2)
        make_entry(unit, day(offset), 6, worker_id=OTHER_WORKER)

    result = services.process_week(session, state, week.id, actor_id=MANAGER, now=NOW)

    assert result.week.id == week.id
    assert len(result.consolidations.items) == 2
    assert result.indicator.total_workers == 2
    assert sorted(alert.kind.value for alert in result.alerts) == ["LOW_PERFORMANCE"]

    again = services.process_week(session, state, week.id, actor_id=MANAGER, now=NOW)
    assert [a.id for a in again.alerts] == [a.id for a in result.alerts]
    assert again.indicator.id == result.indicator.id
    assert session.query(models.WeeklyConsolidation).count() == 2


def test_process_week_rejects_closed_week(session: Session, state, week) -> None:
    services.close_week(session, state, week.id, SUPERVISOR, now=NOW)
    with pytest.raises(WeekClosed):
        services.process_week(session, state, week.id, now=NOW)


def test_process_week_names_failed_stage(session: Session, state, week, make_unit, make_entry, monkeypatch) -> None:
    unit = make_unit(target=10)
    make_entry(unit, day(0), 10)

    def broken(db, week_id, now=None):
        raise ValidationError("indicator store unavailable")

    monkeypatch.setattr(services, "global_indicators", broken)

    with pytest.raises(ProcessingFailed) as exc_info:
        services.process_week(session, state, week.id, now=NOW)

    assert exc_info.value.stage == "indicators"
    assert exc_info.value.details["cause_kind"] == "ValidationError"
    # The consolidation stage already committed and stays in place.
    assert session.query(models.WeeklyConsolidation).count() == 1


def test_week_summary(session: Session, state, week, make_unit, make_entry) -> None:
    unit = make_unit(target=10)
    for offset in range(3):
        make_entry(unit, day(offset), 5)
        make_entry(unit, day(offset), 1, worker_id=OTHER_WORKER)
    services.process_week(session, state, week.id, now=NOW)

    summary = services.week_summary(session, week.id, top=1)

    assert summary["week"].id == week.id
    assert summary["consolidations_by_state"] == {"CONSOLIDATED": 2}
    assert summary["indicator"].total_workers == 2
    assert summary["alerts_by_severity"] == {"CRITICAL": 1}
    assert summary["alerts_by_state"] == {"PENDING": 1}
    assert [row.worker_id for row in summary["top_performers"]] == [WORKER]
    assert [row.worker_id for row in summary["low_performers"]] == [OTHER_WORKER]


def test_compare_weeks_and_trends(session: Session, state, week, make_unit, make_entry) -> None:
    unit = make_unit(target=1)
    for offset in range(3):
        make_entry(unit, day(offset), 2)
    services.process_week(session, state, week.id, now=NOW)
    following = services.resolve_or_create_week(session, state, day(7))
    for offset in range(7, 10):
        make_entry(unit, day(offset), 5)
        make_entry(unit, day(offset), 5, worker_id=OTHER_WORKER)
    services.process_week(session, state, following.id, now=NOW)

    comparison = services.compare_weeks(session, week.id, following.id)

    assert comparison["base_week"].id == week.id
    assert comparison["metrics"]["total_workers"] == {"base": 1, "other": 2, "change_percent": 100.0}
    assert comparison["metrics"]["average_per_day"]["change_percent"] == 150.0
    assert comparison["metrics"]["total_alerts"] == {"base": 1, "other": 0, "change_percent": -100.0}

    trends = services.performance_trends(session, day(0), day(13))
    assert [point["code"] for point in trends] == ["SEM-2024-10", "SEM-2024-11"]
    assert [point["average_percent"] for point in trends] == [40.0, 100.0]
    assert [point["met_expected_percent"] for point in trends] == [0.0, 100.0]
    assert [point["workers"] for point in trends] == [1, 2]


def test_compare_requires_indicators(session: Session, state, week) -> None:
    other = services.resolve_or_create_week(session, state, day(7))
    services.global_indicators(session, week.id, now=NOW)

    with pytest.raises(NotFound):
        services.compare_weeks(session, week.id, other.id)
    with pytest.raises(ValidationError):
        services.performance_trends(session, day(7), day(0))
    assert services.performance_trends(session, dt.date(2030, 1, 1), dt.date(2030, 2, 1)) == []
