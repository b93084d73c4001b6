"""
Errors raised inside the scheduler and the result values handed to callers.

Operations never let an exception escape.  Internally the failures
below are raised and caught at the operation boundary in
``lifecycle``, which returns exactly one of the result classes at the
bottom of this module.  Every result renders itself as a JSON-ready
dict with ``success`` and ``status`` keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Union


class SchedulerError(Exception):
    """Base class for scheduler failures."""


class ValidationError(SchedulerError):
    """Input rejected before any network call was made."""

    def __init__(self, message: str, *, requires_timezone: bool = False) -> None:
        super().__init__(message)
        self.requires_timezone = requires_timezone


class StoreConnectionError(SchedulerError):
    """Could not reach or authenticate against the calendar store."""


class StoreError(SchedulerError):
    """The store rejected a read, create or delete."""


class NotFoundError(SchedulerError):
    """No calendar, or no event matching the identifier."""

    def __init__(self, message: str, *, suggestion: str = '') -> None:
        super().__init__(message)
        self.suggestion = suggestion


@dataclass(frozen=True)
class Ok:
    payload: Dict[str, Any]
    status = 'ok'

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, "status": self.status, **self.payload}


@dataclass(frozen=True)
class Conflict:
    """The proposed slot collides with existing events; nothing was written."""

    conflicts: List[Dict[str, Any]]
    proposed_event: Dict[str, Any]
    message: str
    status = 'conflict'

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "status": self.status,
            "error": "Calendar conflict detected",
            "has_conflicts": True,
            "conflicts": self.conflicts,
            "proposed_event": self.proposed_event,
            "message": self.message,
        }


@dataclass(frozen=True)
class NotFound:
    error: str
    suggestion: str = ''
    status = 'not_found'

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": False, "status": self.status, "error": self.error}
        if self.suggestion:
            out["suggestion"] = self.suggestion
        return out


@dataclass(frozen=True)
class Invalid:
    error: str
    requires_timezone: bool = False
    status = 'invalid'

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": False, "status": self.status, "error": self.error}
        if self.requires_timezone:
            out["requires_timezone"] = True
        return out


@dataclass(frozen=True)
class Failure:
    error: str
    troubleshooting: List[str] = field(default_factory=list)
    status = 'failure'

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "status": self.status,
            "error": self.error,
            "troubleshooting": list(self.troubleshooting),
        }


OperationResult = Union[Ok, Conflict, NotFound, Invalid, Failure]
