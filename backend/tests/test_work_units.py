from __future__ import annotations

import pytest
from sqlalchemy.orm import Session

from fieldweek import models, services
from fieldweek.errors import AlreadyCancelled, InvalidTarget, NotFound, TargetNotReached, ValidationError

from conftest import MANAGER, NOW, OTHER_WORKER, day


def test_increase_target_records_audit_trail(session: Session, make_unit) -> None:
    unit = make_unit(target=100)

    updated = services.increase_target(session, unit.id, 150, "Client asked for more boxes", actor_id=MANAGER, now=NOW)

    assert updated.minimum_target == 150
    assert updated.executed_quantity == 0
    assert updated.state == models.UnitState.PENDING
    assert "Client asked for more boxes" in updated.notes
    assert [(c.previous_target, c.new_target, c.changed_by) for c in updated.target_changes] == [(100, 150, MANAGER)]


@pytest.mark.parametrize("requested", [100, 99.5, 0])
def test_increase_target_rejects_non_increase(session: Session, make_unit, requested: float) -> None:
    unit = make_unit(target=100)

    with pytest.raises(InvalidTarget) as exc_info:
        services.increase_target(session, unit.id, requested, "lower")

    assert exc_info.value.details == {"work_unit_id": unit.id, "current_target": 100, "requested_target": requested}
    session.refresh(unit)
    assert unit.minimum_target == 100
    assert unit.target_changes == []


def test_target_is_monotonic_over_any_sequence(session: Session, make_unit) -> None:
    unit = make_unit(target=10)
    observed = [unit.minimum_target]
    for requested in [20, 15, 20, 35, 34.9, 50]:
        try:
            services.increase_target(session, unit.id, requested, "plan change")
        except InvalidTarget:
            pass
        session.refresh(unit)
        observed.append(unit.minimum_target)

    assert observed == sorted(observed)
    assert observed[-1] == 50
    assert len(unit.target_changes) == 3


def test_increase_target_requires_reason(session: Session, make_unit) -> None:
    unit = make_unit(target=10)
    with pytest.raises(ValidationError):
        services.increase_target(session, unit.id, 20, "   ")


def test_recompute_moves_pending_unit_in_progress(session: Session, make_unit, make_entry) -> None:
    unit = make_unit(target=100)

    make_entry(unit, day(0), 30)

    session.refresh(unit)
    assert unit.executed_quantity == 30
    assert unit.state == models.UnitState.IN_PROGRESS
    assert unit.started_at is not None
    assert unit.completed_at is None


def test_recompute_only_counts_approved_and_corrected(session: Session, make_unit, make_entry) -> None:
    unit = make_unit(target=100)
    make_entry(unit, day(0), 10)
    make_entry(unit, day(1), 20, entry_state=models.EntryState.CORRECTED)
    make_entry(unit, day(2), 40, entry_state=models.EntryState.PENDING)
    make_entry(unit, day(3), 80, entry_state=models.EntryState.REJECTED)

    recomputed = services.recompute_executed(session, unit.id, now=NOW)

    assert recomputed.executed_quantity == 30


def test_recompute_never_regresses_met(session: Session, state, make_unit, make_entry) -> None:
    unit = make_unit(target=50)
    make_entry(unit, day(0), 30)
    second = make_entry(unit, day(1), 20)
    session.refresh(unit)
    assert unit.state == models.UnitState.MET

    services.delete_entry(session, state, second.id, now=NOW)

    session.refresh(unit)
    assert unit.executed_quantity == 30
    assert unit.state == models.UnitState.MET


def test_zero_target_unit_is_never_met_automatically(session: Session, make_unit, make_entry) -> None:
    unit = make_unit(target=0)
    make_entry(unit, day(0), 12)

    session.refresh(unit)
    assert unit.state == models.UnitState.IN_PROGRESS


def test_cancelled_unit_still_tracks_quantity(session: Session, make_unit, make_entry) -> None:
    unit = make_unit(target=10)
    services.cancel_work_unit(session, unit.id, "Plot flooded")
    make_entry(unit, day(0), 15)

    session.refresh(unit)
    assert unit.executed_quantity == 15
    assert unit.state == models.UnitState.CANCELLED


def test_mark_met_requires_reached_target(session: Session, make_unit, make_entry) -> None:
    unit = make_unit(target=100)
    make_entry(unit, day(0), 40)

    with pytest.raises(TargetNotReached) as exc_info:
        services.mark_met(session, unit.id)
    assert exc_info.value.details["shortfall"] == 60

    zero = make_unit(target=0)
    with pytest.raises(TargetNotReached):
        services.mark_met(session, zero.id)


def test_mark_met_after_manual_reconciliation(session: Session, make_unit) -> None:
    unit = make_unit(target=20)
    unit.state = models.UnitState.RESCHEDULED
    unit.executed_quantity = 25
    session.commit()

    met = services.mark_met(session, unit.id, now=NOW)

    assert met.state == models.UnitState.MET
    assert met.completed_at is not None


def test_cancel_unit(session: Session, make_unit) -> None:
    unit = make_unit(target=20)

    cancelled = services.cancel_work_unit(session, unit.id, "Replaced by WU-009")

    assert cancelled.state == models.UnitState.CANCELLED
    assert cancelled.notes.endswith("[Cancelled] Replaced by WU-009")
    with pytest.raises(AlreadyCancelled):
        services.cancel_work_unit(session, unit.id, "again")
    with pytest.raises(AlreadyCancelled):
        services.mark_met(session, unit.id)


def test_target_status(session: Session, make_unit, make_entry) -> None:
    unit = make_unit(target=80)
    make_entry(unit, day(0), 20)
    make_entry(unit, day(0), 20, worker_id=OTHER_WORKER)

    status = services.target_status(session, unit.id)

    assert status["target_met"] is False
    assert status["executed"] == 40
    assert status["percent_of_target"] == 50.0
    assert status["shortfall"] == 40


def test_create_work_unit_validation(session: Session, activity, territory) -> None:
    with pytest.raises(ValidationError):
        services.create_work_unit(session, "WU-X", 1, activity.id, 10, minimum_target=-1)
    with pytest.raises(ValidationError):
        services.create_work_unit(session, "WU-X", 1, activity.id, 10, priority=6)
    with pytest.raises(NotFound):
        services.create_work_unit(session, "WU-X", 1, 999, 10)

    services.create_work_unit(session, "WU-X", 1, activity.id, 10)
    with pytest.raises(ValidationError):
        services.create_work_unit(session, "WU-X", 1, activity.id, 10)


def test_unknown_unit_is_not_found(session: Session) -> None:
    with pytest.raises(NotFound) as exc_info:
        services.recompute_executed(session, 4242)
    assert exc_info.value.details == {"resource": "WorkUnit", "id": 4242}
