"""
Error taxonomy for the verification core.

Every core operation is a single transaction: when one of these is raised the
request's session is rolled back and the error is surfaced to the caller
verbatim (see the exception handler in witness.main).
"""

from datetime import datetime
from typing import Any, Dict, Optional


class WitnessError(Exception):
    """Base class for all user-actionable core errors."""

    code: str = "witness_error"
    status_code: int = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "code": self.code}
        for key, value in self.details.items():
            payload[key] = value.isoformat() if isinstance(value, datetime) else value
        return payload


class ValidationError(WitnessError):
    """Malformed or incomplete input. Fixed by the caller, never retried."""

    code = "validation_error"
    status_code = 400


class StateError(WitnessError):
    """The requested action is not legal in the entity's current state."""

    code = "state_error"
    status_code = 409


class PermissionDeniedError(WitnessError):
    """Role or ownership check failed."""

    code = "permission_denied"
    status_code = 403


class NotFoundError(WitnessError):
    code = "not_found"
    status_code = 404


class ConcurrencyError(WitnessError):
    """A compare-and-swap lost. Refetch and retry."""

    code = "concurrency_conflict"
    status_code = 409


class RecordLockedError(WitnessError):
    """Another reviewer holds the record's review lock."""

    code = "record_locked"
    status_code = 423


class QuotaExceededError(WitnessError):
    """A rate window is exhausted."""

    code = "quota_exceeded"
    status_code = 429

    def __init__(
        self,
        message: str,
        window: str,
        limit: int,
        reset_at: datetime,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = {"window": window, "limit": limit, "reset_at": reset_at}
        merged.update(details or {})
        super().__init__(message, merged)
        self.window = window
        self.limit = limit
        self.reset_at = reset_at


class InsufficientCreditsError(WitnessError):
    """The project's credit balance cannot cover the operation."""

    code = "insufficient_credits"
    status_code = 402

    def __init__(self, message: str, balance: int, required: int):
        super().__init__(message, {"balance": balance, "required": required})
        self.balance = balance
        self.required = required
