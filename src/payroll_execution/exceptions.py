"""Typed exception hierarchy for the payroll execution engine.

Every exception carries a machine-readable ``code`` class attribute so that
callers (and the HTTP layer) can branch on type rather than message text.

    PayrollError
    +-- ValidationError
    +-- NotFoundError
    +-- PermissionDeniedError
    +-- ConfigurationMissingError
    +-- StateConflictError
    |   +-- InvalidTransitionError
    +-- ApprovalGuardViolationError
    +-- DuplicateDisbursementError
    +-- SubmissionTimeoutError
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from payroll_execution.calculators.types import RuleBundle


class PayrollError(Exception):
    """Base exception for all payroll execution errors."""

    code: str = "PAYROLL_ERROR"


class ValidationError(PayrollError):
    """Malformed input, raised before any state is mutated."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class NotFoundError(PayrollError):
    """Requested entity does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: UUID | str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class PermissionDeniedError(PayrollError):
    """Acting user lacks the role an operation requires."""

    code: str = "PERMISSION_DENIED"

    def __init__(self, user_id: UUID, required_role: str, operation: str):
        self.user_id = user_id
        self.required_role = required_role
        self.operation = operation
        super().__init__(
            f"User {user_id} needs role '{required_role}' to {operation}"
        )


class ConfigurationMissingError(PayrollError):
    """No applicable rule version for one or more rule kinds.

    Carries the partially resolved bundle so the caller can still compute a
    best-effort detail record.
    """

    code: str = "CONFIGURATION_MISSING"

    def __init__(
        self,
        missing: list[str],
        employee_id: UUID | None = None,
        partial_bundle: RuleBundle | None = None,
    ):
        self.missing = missing
        self.employee_id = employee_id
        self.partial_bundle = partial_bundle
        super().__init__(
            f"No applicable {', '.join(missing)} rule for employee {employee_id}"
        )


class StateConflictError(PayrollError):
    """Operation not legal in the current state, or a concurrent writer won."""

    code: str = "STATE_CONFLICT"


class InvalidTransitionError(StateConflictError):
    """Raised when an invalid state transition is attempted."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ApprovalGuardViolationError(PayrollError):
    """Approval or lock attempted while a guard condition still fails."""

    code: str = "APPROVAL_GUARD_VIOLATION"

    def __init__(self, message: str, blocking_ids: list[UUID] | None = None):
        self.blocking_ids = blocking_ids or []
        super().__init__(message)


class DuplicateDisbursementError(PayrollError):
    """A bonus or benefit was approved a second time."""

    code: str = "DUPLICATE_DISBURSEMENT"

    def __init__(self, entity_type: str, entity_id: UUID, status: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.status = status
        super().__init__(f"{entity_type} {entity_id} is already {status}")


class SubmissionTimeoutError(PayrollError):
    """Calculation fan-out did not finish in time; the run is unchanged."""

    code: str = "SUBMISSION_TIMEOUT"

    def __init__(self, run_id: UUID, timeout_seconds: float):
        self.run_id = run_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Calculation for payroll run {run_id} exceeded {timeout_seconds}s"
        )


def error_payload(exc: PayrollError) -> dict[str, Any]:
    """Serialize an exception for API responses."""
    return {"detail": str(exc), "code": exc.code}
