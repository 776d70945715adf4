from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy.orm import Session

from fieldweek import models, services
from fieldweek.errors import AccessDenied, AlreadyClosed, ValidationError
from fieldweek.services import Actor
from fieldweek.state import RuntimeState

from conftest import MANAGER, NOW, SUPERVISOR, UTC, WEEK_END, WEEK_START


def test_resolve_creates_thursday_anchored_week(session: Session, state: RuntimeState) -> None:
    week = services.resolve_or_create_week(session, state, dt.date(2024, 3, 10))

    assert week.start_date == WEEK_START
    assert week.end_date == WEEK_END
    assert week.code == "SEM-2024-10"
    assert (week.year, week.week_number) == (2024, 10)
    assert week.state == models.WeekState.OPEN
    assert week.closed_by is None and week.closed_at is None


def test_resolve_reuses_covering_week(session: Session, state: RuntimeState) -> None:
    first = services.resolve_or_create_week(session, state, WEEK_START)
    last_day = services.resolve_or_create_week(session, state, WEEK_END)
    next_week = services.resolve_or_create_week(session, state, WEEK_END + dt.timedelta(days=1))

    assert first.id == last_day.id
    assert next_week.id != first.id
    assert next_week.start_date == WEEK_END + dt.timedelta(days=1)
    assert session.query(models.OperationalWeek).count() == 2


def test_resolve_follows_configured_anchor(session: Session, state: RuntimeState) -> None:
    state.week_anchor_weekday = 0
    week = services.resolve_or_create_week(session, state, dt.date(2024, 3, 10))

    assert week.start_date == dt.date(2024, 3, 4)
    assert week.end_date == dt.date(2024, 3, 10)


def _span(week: models.OperationalWeek) -> int:
    return (week.end_date - week.start_date).days


def test_resolve_shifts_past_long_explicit_week(session: Session, state: RuntimeState) -> None:
    explicit = services.create_week(session, WEEK_START, WEEK_START + dt.timedelta(days=8))

    following = services.resolve_or_create_week(session, state, dt.date(2024, 3, 16))

    assert following.start_date == explicit.end_date + dt.timedelta(days=1)
    assert following.end_date == dt.date(2024, 3, 22)
    assert following.code == "SEM-2024-11"
    assert all(6 <= _span(w) <= 8 for w in session.query(models.OperationalWeek))


def test_resolve_absorbs_gap_before_explicit_week(session: Session, state: RuntimeState) -> None:
    services.create_week(session, dt.date(2024, 3, 16), dt.date(2024, 3, 22))

    week = services.resolve_or_create_week(session, state, dt.date(2024, 3, 10))

    assert (week.start_date, week.end_date) == (WEEK_START, dt.date(2024, 3, 15))
    assert _span(week) == 8


def test_resolve_rejects_gap_too_short_for_a_week(session: Session, state: RuntimeState) -> None:
    services.create_week(session, dt.date(2024, 3, 3), dt.date(2024, 3, 11))
    services.create_week(session, dt.date(2024, 3, 14), dt.date(2024, 3, 22))

    with pytest.raises(ValidationError) as exc_info:
        services.resolve_or_create_week(session, state, dt.date(2024, 3, 12))

    assert exc_info.value.details["day"] == "2024-03-12"
    assert session.query(models.OperationalWeek).count() == 2


@pytest.mark.parametrize(
    "start, end",
    [
        (WEEK_START, WEEK_START),
        (WEEK_END, WEEK_START),
        (WEEK_START, WEEK_START + dt.timedelta(days=5)),
        (WEEK_START, WEEK_START + dt.timedelta(days=9)),
    ],
)
def test_create_week_rejects_bad_ranges(session: Session, start: dt.date, end: dt.date) -> None:
    with pytest.raises(ValidationError):
        services.create_week(session, start, end)


def test_create_week_rejects_overlap(session: Session, state: RuntimeState) -> None:
    existing = services.resolve_or_create_week(session, state, WEEK_START)

    with pytest.raises(ValidationError) as exc_info:
        services.create_week(session, WEEK_END, WEEK_END + dt.timedelta(days=7))

    assert exc_info.value.details["overlapping_week_id"] == existing.id


def test_create_week_keeps_scope_and_notes(session: Session) -> None:
    week = services.create_week(session, WEEK_START, WEEK_END, project_id=3, hub_id=40, notes="Cosecha")

    assert (week.project_id, week.hub_id, week.notes) == (3, 40, "Cosecha")
    assert week.code == "SEM-2024-10"


def test_close_empty_week(session: Session, state: RuntimeState, week: models.OperationalWeek) -> None:
    closed = services.close_week(session, state, week.id, SUPERVISOR, now=NOW)

    assert closed.state == models.WeekState.CLOSED
    assert closed.closed_by == SUPERVISOR
    assert closed.closed_at is not None


def test_close_twice_fails(session: Session, state: RuntimeState, week: models.OperationalWeek) -> None:
    services.close_week(session, state, week.id, SUPERVISOR, now=NOW)

    with pytest.raises(AlreadyClosed):
        services.close_week(session, state, week.id, SUPERVISOR, now=NOW)


def test_reopen_requires_escalated_role(session: Session, state: RuntimeState, week: models.OperationalWeek) -> None:
    services.close_week(session, state, week.id, SUPERVISOR, now=NOW)

    with pytest.raises(AccessDenied):
        services.reopen_week(session, state, week.id, Actor(SUPERVISOR, ("SUPERVISOR",)), now=NOW)

    reopened = services.reopen_week(session, state, week.id, Actor(MANAGER, ("operations_manager",)), now=NOW)
    assert reopened.state == models.WeekState.OPEN
    assert reopened.closed_by is None
    assert reopened.closed_at is None
    assert "Reopened by 90" in reopened.notes


def test_reopen_open_week_is_rejected(session: Session, state: RuntimeState, week: models.OperationalWeek) -> None:
    with pytest.raises(ValidationError):
        services.reopen_week(session, state, week.id, Actor(MANAGER, ("SYSTEM_ADMIN",)))


def test_lock_is_terminal(session: Session, state: RuntimeState, week: models.OperationalWeek) -> None:
    admin = Actor(MANAGER, ("SYSTEM_ADMIN",))
    with pytest.raises(AccessDenied):
        services.lock_week(session, state, week.id, Actor(SUPERVISOR, ("SUPERVISOR",)))

    locked = services.lock_week(session, state, week.id, admin, now=NOW)
    assert locked.state == models.WeekState.LOCKED
    assert locked.locked_by == MANAGER

    with pytest.raises(AlreadyClosed):
        services.lock_week(session, state, week.id, admin)
    with pytest.raises(AlreadyClosed):
        services.reopen_week(session, state, week.id, admin)
    with pytest.raises(AlreadyClosed):
        services.close_week(session, state, week.id, MANAGER)


def test_current_week_uses_local_date(session: Session, state: RuntimeState) -> None:
    week = services.current_week(session, state, now=NOW)
    assert week.start_date == WEEK_START

    # 03:00 UTC on Thursday is still Wednesday evening in Bogota.
    late = services.current_week(session, state, now=dt.datetime(2024, 3, 7, 3, 0, tzinfo=UTC))
    assert late.start_date == dt.date(2024, 2, 29)
    assert late.end_date == dt.date(2024, 3, 6)


def test_current_week_returns_existing_open_week(session: Session, state: RuntimeState, week: models.OperationalWeek) -> None:
    assert services.current_week(session, state, now=NOW).id == week.id


def test_list_weeks_filters_by_range_and_state(session: Session, state: RuntimeState) -> None:
    first = services.resolve_or_create_week(session, state, WEEK_START)
    second = services.resolve_or_create_week(session, state, WEEK_START + dt.timedelta(days=7))
    services.resolve_or_create_week(session, state, WEEK_START + dt.timedelta(days=21))
    services.close_week(session, state, first.id, SUPERVISOR, now=NOW)

    in_range = services.list_weeks(session, WEEK_START, WEEK_START + dt.timedelta(days=10))
    assert [w.id for w in in_range] == [first.id, second.id]

    closed = services.list_weeks(session, week_state="closed")
    assert [w.id for w in closed] == [first.id]

    with pytest.raises(ValidationError):
        services.list_weeks(session, week_state="ARCHIVED")
