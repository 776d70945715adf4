from __future__ import annotations

import datetime as dt
import itertools
import os
import tempfile
from pathlib import Path
from typing import Callable, Generator

_TMP_DIR = tempfile.mkdtemp(prefix="fieldweek-tests-")
os.environ.setdefault("FW_SQLITE_PATH", str(Path(_TMP_DIR) / "test.db"))
os.environ.setdefault("FW_TIMEZONE", "America/Bogota")
os.environ.setdefault("FW_WEEK_ANCHOR_WEEKDAY", "3")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fieldweek import models, services
from fieldweek.config import settings
from fieldweek.database import get_db
from fieldweek.main import app
from fieldweek.state import RuntimeState

UTC = dt.timezone.utc

# Thursday-anchored week SEM-2024-10 runs 2024-03-07 .. 2024-03-13.
WEEK_START = dt.date(2024, 3, 7)
WEEK_END = dt.date(2024, 3, 13)
NOW = dt.datetime(2024, 3, 8, 15, 0, tzinfo=UTC)

SUPERVISOR = 7
MANAGER = 90
WORKER = 501
OTHER_WORKER = 502

PLOT_IN_FARM = 10
PLOT_SIBLING_FARM = 11
PLOT_OTHER_HUB = 12


def day(offset: int) -> dt.date:
    return WEEK_START + dt.timedelta(days=offset)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    models.Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session(engine) -> Generator[Session, None, None]:
    SessionTesting = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    session = SessionTesting()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def state() -> RuntimeState:
    return RuntimeState(settings)


@pytest.fixture()
def client(session: Session, state: RuntimeState) -> Generator[TestClient, None, None]:
    def override_get_db():
        yield session

    app.dependency_overrides[get_db] = override_get_db
    previous_state = app.state.runtime_state
    app.state.runtime_state = state
    with TestClient(app) as c:
        yield c
    app.state.runtime_state = previous_state
    app.dependency_overrides.clear()


@pytest.fixture()
def territory(session: Session) -> None:
    session.add_all(
        [
            models.Plot(id=PLOT_IN_FARM, name="Lote Norte", farm_id=100, hub_id=1000),
            models.Plot(id=PLOT_SIBLING_FARM, name="Lote Sur", farm_id=101, hub_id=1000),
            models.Plot(id=PLOT_OTHER_HUB, name="Lote Lejano", farm_id=200, hub_id=2000),
            models.SupervisorAssignment(supervisor_id=SUPERVISOR, farm_id=100),
        ]
    )
    session.commit()


@pytest.fixture()
def activity(session: Session) -> models.Activity:
    return services.create_activity(session, "HARV", "Harvest", expected_daily_rate=5.0, unit_of_measure="BOX")


@pytest.fixture()
def make_unit(session: Session, activity: models.Activity, territory: None) -> Callable[..., models.WorkUnit]:
    counter = itertools.count(1)

    def _make(
        target: float = 100.0,
        plot_id: int = PLOT_IN_FARM,
        project_id: int = 1,
        supervisor_id: int = SUPERVISOR,
        activity_id: int | None = None,
    ) -> models.WorkUnit:
        return services.create_work_unit(
            session,
            f"WU-{next(counter):03d}",
            project_id,
            activity_id or activity.id,
            plot_id,
            minimum_target=target,
            supervisor_id=supervisor_id,
        )

    return _make


@pytest.fixture()
def make_entry(session: Session, state: RuntimeState) -> Callable[..., models.DailyEntry]:
    def _make(
        unit: models.WorkUnit,
        entry_date: dt.date,
        quantity: float,
        worker_id: int = WORKER,
        hours: float = 8.0,
        crew_id: int | None = None,
        entry_state: models.EntryState = models.EntryState.APPROVED,
    ) -> models.DailyEntry:
        return services.create_entry(
            session,
            state,
            entry_date=entry_date,
            worker_id=worker_id,
            work_unit_id=unit.id,
            quantity=quantity,
            hours=hours,
            crew_id=crew_id,
            entry_state=entry_state,
            recorded_by=SUPERVISOR,
            now=NOW,
        )

    return _make


@pytest.fixture()
def week(session: Session, state: RuntimeState) -> models.OperationalWeek:
    return services.resolve_or_create_week(session, state, WEEK_START)
