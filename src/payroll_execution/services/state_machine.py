"""State machines for payroll runs, irregularities and sub-ledger records."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from payroll_execution.exceptions import InvalidTransitionError

if TYPE_CHECKING:
    from payroll_execution.models import Irregularity, PayrollRun


class PayrollRunStatus(str, Enum):
    """Payroll run status values."""

    DRAFT = "draft"
    PENDING_MANAGER_APPROVAL = "pending_manager_approval"
    APPROVED = "approved"
    PENDING_FINANCE_APPROVAL = "pending_finance_approval"
    LOCKED = "locked"
    REJECTED = "rejected"


class IrregularityStatus(str, Enum):
    PENDING = "pending"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class SubLedgerStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class PayrollRunStateMachine:
    """State machine for payroll run status transitions.

    Allowed transitions:
    - draft → pending_manager_approval (submit)
    - rejected → draft (edit) or pending_manager_approval (resubmit)
    - pending_manager_approval → approved | rejected
    - approved → pending_finance_approval | locked (freeze after finance approval)
    - pending_finance_approval → locked | rejected
    - locked → approved (unfreeze)
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayrollRunStatus.DRAFT: [PayrollRunStatus.PENDING_MANAGER_APPROVAL],
        PayrollRunStatus.REJECTED: [
            PayrollRunStatus.DRAFT,
            PayrollRunStatus.PENDING_MANAGER_APPROVAL,
        ],
        PayrollRunStatus.PENDING_MANAGER_APPROVAL: [
            PayrollRunStatus.APPROVED,
            PayrollRunStatus.REJECTED,
        ],
        PayrollRunStatus.APPROVED: [
            PayrollRunStatus.PENDING_FINANCE_APPROVAL,
            PayrollRunStatus.LOCKED,
        ],
        PayrollRunStatus.PENDING_FINANCE_APPROVAL: [
            PayrollRunStatus.LOCKED,
            PayrollRunStatus.REJECTED,
        ],
        PayrollRunStatus.LOCKED: [PayrollRunStatus.APPROVED],
    }

    # Statuses where the run can be edited and (re)calculated
    EDITABLE = {
        PayrollRunStatus.DRAFT,
        PayrollRunStatus.REJECTED,
    }

    # Statuses where irregularity resolution may touch detail records
    RESOLUTION_ALLOWED = {
        PayrollRunStatus.DRAFT,
        PayrollRunStatus.PENDING_MANAGER_APPROVAL,
        PayrollRunStatus.APPROVED,
        PayrollRunStatus.PENDING_FINANCE_APPROVAL,
        PayrollRunStatus.REJECTED,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_edit(cls, status: str) -> bool:
        return status in cls.EDITABLE

    @classmethod
    def can_resolve_irregularities(cls, status: str) -> bool:
        return status in cls.RESOLUTION_ALLOWED

    @classmethod
    def is_unfreeze(cls, from_status: str, to_status: str) -> bool:
        return from_status == PayrollRunStatus.LOCKED and to_status == PayrollRunStatus.APPROVED

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def blocking_irregularities(cls, run: PayrollRun) -> list[Irregularity]:
        """Open high/critical irregularities (block locking)."""
        return [i for i in run.irregularities if i.is_blocking]

    @classmethod
    def unresolved_critical(cls, run: PayrollRun) -> list[Irregularity]:
        """Open critical irregularities (block manager approval)."""
        return [i for i in run.irregularities if i.is_open and i.severity == "critical"]

    @classmethod
    def validate_run_for_transition(cls, run: PayrollRun, to_status: str) -> list[str]:
        """Validate a run for a specific transition, returning any errors.

        Returns list of error messages (empty if valid).
        """
        errors: list[str] = []
        from_status = run.status

        if not cls.can_transition(from_status, to_status):
            errors.append(f"Cannot transition from '{from_status}' to '{to_status}'")
            return errors

        if to_status == PayrollRunStatus.PENDING_MANAGER_APPROVAL:
            if not run.employee_ids:
                errors.append("Payroll run has no employees in scope")

        elif to_status == PayrollRunStatus.LOCKED:
            if from_status == PayrollRunStatus.APPROVED and run.finance_approved_at is None:
                errors.append("Freeze requires a recorded finance approval")

        return errors


class IrregularityStateMachine:
    """pending → escalated → resolved | rejected; pending → resolved | rejected."""

    VALID_TRANSITIONS: dict[str, list[str]] = {
        IrregularityStatus.PENDING: [
            IrregularityStatus.ESCALATED,
            IrregularityStatus.RESOLVED,
            IrregularityStatus.REJECTED,
        ],
        IrregularityStatus.ESCALATED: [
            IrregularityStatus.RESOLVED,
            IrregularityStatus.REJECTED,
        ],
        IrregularityStatus.RESOLVED: [],
        IrregularityStatus.REJECTED: [],
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @staticmethod
    def status_for_action(action: str) -> str:
        """A 'rejected' resolution closes as rejected; every other action resolves."""
        if action == "rejected":
            return IrregularityStatus.REJECTED
        return IrregularityStatus.RESOLVED


class SubLedgerStateMachine:
    """pending → approved | rejected; approved → paid (by run finance approval)."""

    VALID_TRANSITIONS: dict[str, list[str]] = {
        SubLedgerStatus.PENDING: [SubLedgerStatus.APPROVED, SubLedgerStatus.REJECTED],
        SubLedgerStatus.APPROVED: [SubLedgerStatus.PAID],
        SubLedgerStatus.REJECTED: [],
        SubLedgerStatus.PAID: [],
    }

    EDITABLE = {SubLedgerStatus.PENDING}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_edit(cls, status: str) -> bool:
        return status in cls.EDITABLE
