"""
Domain exception hierarchy for the weekly control engine.

Services raise these instead of HTTP exceptions so that the engine can be driven from
any caller. ``main.py`` registers a single handler for ``DomainError`` that turns the
``status_code``/``details`` carried by each error into a JSON response, and a separate
handler for ``InfrastructureError`` (storage unavailable, retry later).

Usage:
    from fieldweek.errors import NotFound, TargetsUnmet

    raise NotFound("WorkUnit", unit_id)
    raise TargetsUnmet(week.id, blocking)
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class DomainError(Exception):
    """Base class for request-level failures ("your request is invalid")."""

    kind = "DomainError"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error": self.kind, "details": self.details}


class NotFound(DomainError):
    """Raised when a referenced week, unit, entry, price or alert does not exist."""

    kind = "NotFound"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = resource
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg, {"resource": resource, "id": resource_id})


class ValidationError(DomainError):
    """Malformed input: bad date range, negative quantity, out-of-enum state.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    kind = "ValidationError"
    status_code = 422


class InvalidTarget(DomainError):
    kind = "InvalidTarget"
    status_code = 400

    def __init__(self, unit_id: int, current: float, requested: float) -> None:
        super().__init__(
            f"New target ({requested}) must be greater than the current target ({current})",
            {"work_unit_id": unit_id, "current_target": current, "requested_target": requested},
        )


class DuplicateEntry(DomainError):
    kind = "DuplicateEntry"
    status_code = 409


class AccessDenied(DomainError):
    kind = "AccessDenied"
    status_code = 403


class EditWindowClosed(DomainError):
    kind = "EditWindowClosed"
    status_code = 403


class AlreadyClosed(DomainError):
    kind = "AlreadyClosed"
    status_code = 409


class AlreadyCancelled(DomainError):
    kind = "AlreadyCancelled"
    status_code = 409


class AlreadyResolved(DomainError):
    kind = "AlreadyResolved"
    status_code = 409


class WeekClosed(DomainError):
    """Raised when daily data is changed inside a week that is no longer open."""

    kind = "WeekClosed"
    status_code = 409


class TargetNotReached(DomainError):
    kind = "TargetNotReached"
    status_code = 400


class TargetsUnmet(DomainError):
    """Closure blocked by work units below their minimum target.

    ``blocking_units`` is the full list of violators, each a dict with the unit id,
    code, target, executed quantity and shortfall.
    """

    kind = "TargetsUnmet"
    status_code = 409

    def __init__(self, week_id: int, blocking_units: List[Dict[str, Any]]) -> None:
        self.week_id = week_id
        self.blocking_units = blocking_units
        super().__init__(
            f"{len(blocking_units)} work unit(s) below their minimum target",
            {"week_id": week_id, "blocking_units": blocking_units},
        )


class BatchFailed(DomainError):
    """Every item of a batch operation failed."""

    kind = "BatchFailed"
    status_code = 422

    def __init__(self, operation: str, failures: List[Dict[str, Any]]) -> None:
        self.failures = failures
        super().__init__(
            f"{operation}: all {len(failures)} item(s) failed",
            {"operation": operation, "failures": failures},
        )


class ProcessingFailed(DomainError):
    """A stage of the weekly pipeline failed; earlier stages stay applied."""

    kind = "ProcessingFailed"
    status_code = 500

    def __init__(self, week_id: int, stage: str, cause: Exception) -> None:
        self.stage = stage
        self.cause = cause
        details: Dict[str, Any] = {"week_id": week_id, "stage": stage, "cause": str(cause)}
        if isinstance(cause, DomainError):
            details["cause_kind"] = cause.kind
            details["cause_details"] = cause.details
        super().__init__(f"Processing week {week_id} failed at stage '{stage}': {cause}", details)


class InfrastructureError(Exception):
    """Storage-level failure (constraint race, database unavailable). Safe to retry."""

    status_code = 503

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        self.operation = operation
        super().__init__(message)
