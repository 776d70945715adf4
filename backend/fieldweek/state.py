from __future__ import annotations

from contextlib import contextmanager
from threading import RLock
from typing import Dict, Iterable, Iterator, List, Tuple

from .config import Settings
from .utils import normalize_roles


class RuntimeState:
    """Process-wide runtime configuration plus the keyed locks that serialize per-week
    pipelines and per-unit price negotiation."""

    def __init__(self, base_settings: Settings):
        self._lock = RLock()
        self._keyed: Dict[Tuple[str, int], RLock] = {}
        self.week_anchor_weekday: int = base_settings.week_anchor_weekday
        self._frontline_roles: List[str] = normalize_roles(base_settings.frontline_roles)
        self._escalated_roles: List[str] = normalize_roles(base_settings.escalated_roles)

    @property
    def frontline_roles(self) -> List[str]:
        with self._lock:
            return list(self._frontline_roles)

    @property
    def escalated_roles(self) -> List[str]:
        with self._lock:
            return list(self._escalated_roles)

    def is_escalated(self, roles: Iterable[str]) -> bool:
        escalated = set(self.escalated_roles)
        return any(role in escalated for role in normalize_roles(roles))

    def is_frontline(self, roles: Iterable[str]) -> bool:
        frontline = set(self.frontline_roles)
        return any(role in frontline for role in normalize_roles(roles))

    def _keyed_lock(self, namespace: str, key: int) -> RLock:
        with self._lock:
            lock = self._keyed.get((namespace, key))
            if lock is None:
                lock = RLock()
                self._keyed[(namespace, key)] = lock
            return lock

    @contextmanager
    def week_lock(self, week_id: int) -> Iterator[None]:
        with self._keyed_lock("week", week_id):
            yield

    @contextmanager
    def unit_lock(self, unit_id: int) -> Iterator[None]:
        with self._keyed_lock("unit", unit_id):
            yield
