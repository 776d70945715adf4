"""Territorial hierarchy adapter used by the daily-entry access check.

The hierarchy (zone -> hub -> farm -> plot) and supervisor assignments belong to another
system. The engine only needs two lookups, expressed by ``TerritorialHierarchy``; the
default implementation reads the ``plots`` and ``supervisor_assignments`` tables.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import List, Optional, Protocol

from sqlalchemy.orm import Session

from .models import Plot, SupervisorAssignment


@dataclass(frozen=True)
class PlotAncestry:
    plot_id: int
    farm_id: int
    hub_id: int
    zone_id: Optional[int] = None


@dataclass(frozen=True)
class AssignmentScope:
    hub_id: Optional[int] = None
    farm_id: Optional[int] = None
    plot_id: Optional[int] = None

    def covers(self, ancestry: PlotAncestry) -> bool:
        # The most specific populated level decides.
        if self.plot_id is not None:
            return self.plot_id == ancestry.plot_id
        if self.farm_id is not None:
            return self.farm_id == ancestry.farm_id
        if self.hub_id is not None:
            return self.hub_id == ancestry.hub_id
        return False


class TerritorialHierarchy(Protocol):
    def plot_ancestry(self, plot_id: int) -> Optional[PlotAncestry]:
        ...

    def supervisor_scopes(self, supervisor_id: int, on: Optional[dt.date] = None) -> List[AssignmentScope]:
        ...


class SqlTerritorialHierarchy:
    def __init__(self, db: Session):
        self.db = db

    def plot_ancestry(self, plot_id: int) -> Optional[PlotAncestry]:
        plot = self.db.get(Plot, plot_id)
        if plot is None:
            return None
        return PlotAncestry(plot_id=plot.id, farm_id=plot.farm_id, hub_id=plot.hub_id, zone_id=plot.zone_id)

    def supervisor_scopes(self, supervisor_id: int, on: Optional[dt.date] = None) -> List[AssignmentScope]:
        query = self.db.query(SupervisorAssignment).filter(
            SupervisorAssignment.supervisor_id == supervisor_id,
            SupervisorAssignment.active.is_(True),
        )
        scopes: List[AssignmentScope] = []
        for assignment in query.all():
            if on is not None:
                if assignment.starts_on and assignment.starts_on > on:
                    continue
                if assignment.ends_on and assignment.ends_on < on:
                    continue
            scopes.append(
                AssignmentScope(
                    hub_id=assignment.hub_id,
                    farm_id=assignment.farm_id,
                    plot_id=assignment.plot_id,
                )
            )
        return scopes


def has_access(hierarchy: TerritorialHierarchy, supervisor_id: int, plot_id: int, on: Optional[dt.date] = None) -> bool:
    ancestry = hierarchy.plot_ancestry(plot_id)
    if ancestry is None:
        return False
    return any(scope.covers(ancestry) for scope in hierarchy.supervisor_scopes(supervisor_id, on))
