from __future__ import annotations

import datetime as dt
from typing import Iterable, List, Tuple


def week_bounds(day: dt.date, anchor_weekday: int) -> Tuple[dt.date, dt.date]:
    """Return the first and last day of the operational week containing ``day``."""
    offset = (day.weekday() - anchor_weekday) % 7
    start = day - dt.timedelta(days=offset)
    return start, start + dt.timedelta(days=6)


def week_code(start: dt.date) -> str:
    iso_year, iso_week, _ = start.isocalendar()
    return f"SEM-{iso_year}-{iso_week:02d}"


def closing_boundary(day: dt.date, anchor_weekday: int) -> dt.date:
    """Next occurrence of the anchor weekday strictly after ``day``."""
    delta = (anchor_weekday - day.weekday()) % 7
    if delta == 0:
        delta = 7
    return day + dt.timedelta(days=delta)


def normalize_roles(roles: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    normalized: List[str] = []
    for role in roles:
        candidate = str(role).strip().upper()
        if not candidate or candidate in seen:
            continue
        normalized.append(candidate)
        seen.add(candidate)
    return normalized


def relative_change(current: float, previous: float) -> float:
    if not previous:
        return 0.0
    return round((current - previous) / previous * 100, 2)
