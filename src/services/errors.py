"""Error taxonomy for the billing engine.

Every error carries a human-readable message and a machine code. Per-unit
errors (one customer, one bill, one payment) are caught by the batch that
owns the unit and aggregated into its run summary.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict

INTERNAL_ERROR = "internal_error"


class BillingEngineError(Exception):
    """Base billing engine error."""

    code = "error"

    def __init__(self, message: str, code: str | None = None):
        """Initialize error."""
        self.message = message
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(BillingEngineError):
    """Malformed input to a generator, applier or intake call."""

    code = "validation_error"


class ConflictError(BillingEngineError):
    """Idempotency violation: the record already exists.

    Callers treat this as a benign "already done" outcome.
    """

    code = "conflict"


class AuthenticationError(BillingEngineError):
    """Caller origin or credential check failed."""

    code = "unauthorized"


class PersistenceError(BillingEngineError):
    """Storage failed while a unit was in progress; the unit was rolled back."""

    code = "persistence_error"


class AllocationInvariantError(BillingEngineError):
    """A computed allocation plan does not balance against the payment."""

    code = "allocation_invariant"


class NotFoundError(BillingEngineError):
    """A record addressed by id does not exist."""

    code = "not_found"


@dataclass
class UnitError:
    """Failure of one unit of a batch run (one customer, one bill, one payment)."""

    unit_id: int
    code: str
    message: str
    unit_type: str = "customer"

    @classmethod
    def from_exception(cls, unit_id: int, exc: Exception, unit_type: str = "customer") -> "UnitError":
        """Engine errors keep their code; anything else is reported as internal_error."""
        if isinstance(exc, BillingEngineError):
            return cls(unit_id=unit_id, code=exc.code, message=exc.message, unit_type=unit_type)
        return cls(
            unit_id=unit_id,
            code=INTERNAL_ERROR,
            message=f"{type(exc).__name__}: {exc}",
            unit_type=unit_type,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


__all__ = [
    "BillingEngineError",
    "UnitError",
    "ValidationError",
    "ConflictError",
    "AuthenticationError",
    "PersistenceError",
    "AllocationInvariantError",
    "NotFoundError",
    "INTERNAL_ERROR",
]
