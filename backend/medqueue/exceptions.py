"""
Scheduling engine error taxonomy.

Services raise these; the API layer maps them to HTTP responses in main.py.
"""

from typing import Any, Dict, Optional


class SchedulingError(Exception):
    """Base class for every error raised by the scheduling engine."""

    code = "SCHEDULING_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class ValidationError(SchedulingError):
    """Malformed or missing scheduling input (unknown shift, bad range...)."""

    code = "VALIDATION_ERROR"


class NotFound(SchedulingError):
    """Doctor, shift, token or institution does not exist."""

    code = "NOT_FOUND"


class InvalidTransition(SchedulingError):
    """Illegal status change on a token or live shift."""

    code = "INVALID_TRANSITION"

    def __init__(self, current_status: str, requested_status: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot move from {current_status} to {requested_status}"
        )
        self.current_status = current_status
        self.requested_status = requested_status

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["current_status"] = self.current_status
        data["requested_status"] = self.requested_status
        return data


class QuotaExceeded(SchedulingError):
    """Full-day leave requested after the yearly leave limit was reached."""

    code = "QUOTA_EXCEEDED"

    def __init__(self, leaves_taken: int, leave_limit: int):
        super().__init__(
            f"Leave limit reached: {leaves_taken} of {leave_limit} leaves already taken"
        )
        self.leaves_taken = leaves_taken
        self.leave_limit = leave_limit

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["leaves_taken"] = self.leaves_taken
        data["leave_limit"] = self.leave_limit
        return data


class ConcurrencyConflict(SchedulingError):
    """An optimistic update lost the race. Retry the whole operation."""

    code = "CONCURRENCY_CONFLICT"


class PersistenceError(SchedulingError):
    """The underlying store failed or is unavailable."""

    code = "PERSISTENCE_ERROR"
