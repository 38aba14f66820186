"""Irregularity escalation and resolution."""

from __future__ import annotations

import logging
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from payroll_execution.calculators.line_builder import LineItemBuilder
from payroll_execution.commands import ReasonCommand, ResolveIrregularityCommand, parse_command
from payroll_execution.config import Settings, get_settings
from payroll_execution.exceptions import (
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from payroll_execution.logging_config import log_context
from payroll_execution.models import (
    EmployeePayrollDetail,
    Irregularity,
    PayrollLineItem,
    PayrollRun,
    utcnow,
)
from payroll_execution.services.audit import AuditRecorder
from payroll_execution.services.collaborators import Actor, Role
from payroll_execution.services.irregularity_detector import Severity
from payroll_execution.services.locking_service import LockingService
from payroll_execution.services.pay_run_service import load_run, recompute_run_totals
from payroll_execution.services.state_machine import (
    IrregularityStateMachine,
    IrregularityStatus,
    PayrollRunStateMachine,
)

logger = logging.getLogger(__name__)


def recompute_detail_totals(detail: EmployeePayrollDetail) -> None:
    """Re-derive a detail's totals from its (possibly adjusted) line items."""
    gross = sum((li.amount for li in detail.line_items if li.category == "earning"), Decimal("0"))
    deductions = sum(
        (li.amount for li in detail.line_items if li.category == "deduction"), Decimal("0")
    )
    detail.total_gross = gross
    detail.total_deductions = deductions
    detail.net_pay = gross - deductions
    detail.employer_contributions = sum(
        (li.amount for li in detail.line_items if li.category == "employer_contribution"),
        Decimal("0"),
    )


class IrregularityService:
    """pending → escalated → resolved | rejected, with manual adjustment.

    Resolution may touch detail rows and run aggregates but never moves the
    run through its own state machine.
    """

    def __init__(
        self,
        session: AsyncSession,
        locking: LockingService | None = None,
        settings: Settings | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.locking = locking or LockingService(session)
        self.audit = AuditRecorder(session)

    async def get_irregularity(
        self, irregularity_id: UUID, viewer: Actor | None = None
    ) -> Irregularity:
        """Fetch one irregularity. Escalated ones are hidden from non-manager viewers."""
        irregularity = await self.session.get(Irregularity, irregularity_id)
        if irregularity is None or not self._visible_to(irregularity, viewer):
            raise NotFoundError("Irregularity", irregularity_id)
        return irregularity

    async def list_irregularities(
        self,
        run_id: UUID | None = None,
        status: str | None = None,
        severity: str | None = None,
        page: int = 1,
        page_size: int = 50,
        viewer: Actor | None = None,
    ) -> tuple[list[Irregularity], int]:
        filters = []
        if viewer is not None and not viewer.has_role(Role.MANAGER):
            filters.append(Irregularity.status != IrregularityStatus.ESCALATED.value)
        if run_id is not None:
            filters.append(Irregularity.run_id == run_id)
        if status is not None:
            filters.append(Irregularity.status == status)
        if severity is not None:
            filters.append(Irregularity.severity == severity)

        total = await self.session.scalar(
            select(func.count()).select_from(Irregularity).where(*filters)
        )
        result = await self.session.scalars(
            select(Irregularity)
            .where(*filters)
            .order_by(Irregularity.created_at, Irregularity.code)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.all()), total or 0

    async def escalate(self, irregularity_id: UUID, reason: str, actor: Actor) -> Irregularity:
        """pending → escalated (specialist)."""
        actor.require(Role.SPECIALIST, "escalate an irregularity")
        command = parse_command(ReasonCommand, reason=reason)
        irregularity = await self.get_irregularity(irregularity_id)

        with log_context(run_id=irregularity.run_id, actor_id=actor.user_id):
            async with self.locking.run_guard(irregularity.run_id, "escalate"):
                IrregularityStateMachine.validate_transition(
                    irregularity.status, IrregularityStatus.ESCALATED
                )
                before = {"status": irregularity.status}
                irregularity.status = IrregularityStatus.ESCALATED.value
                irregularity.escalation_reason = command.reason
                irregularity.escalated_by = actor.user_id
                irregularity.escalated_at = utcnow()

                self.audit.record(
                    "irregularity", irregularity.irregularity_id, "escalated", actor.user_id,
                    before=before, after={"status": irregularity.status, "reason": command.reason},
                )
                await self.session.flush()
                logger.info("Irregularity %s (%s) escalated", irregularity_id, irregularity.code)
                return irregularity

    async def resolve(
        self,
        irregularity_id: UUID,
        actor: Actor,
        action: str,
        notes: str,
        adjusted_value: Decimal | str | None = None,
        line_item_id: UUID | None = None,
    ) -> Irregularity:
        """Close an irregularity (manager).

        - approved: accept the detail as calculated
        - rejected: dismiss the finding
        - excluded: drop the employee's detail from the run totals
        - adjusted: overwrite the referenced line item with ``adjusted_value``

        Detail and run totals are recomputed afterwards. The run's status is
        left unchanged.
        """
        actor.require(Role.MANAGER, "resolve an irregularity")
        command = parse_command(
            ResolveIrregularityCommand,
            action=action,
            notes=notes,
            adjusted_value=adjusted_value,
            line_item_id=line_item_id,
        )
        irregularity = await self.get_irregularity(irregularity_id)

        with log_context(run_id=irregularity.run_id, actor_id=actor.user_id):
            async with self.locking.run_guard(irregularity.run_id, "resolve"):
                run = await load_run(self.session, irregularity.run_id)
                if not PayrollRunStateMachine.can_resolve_irregularities(run.status):
                    raise StateConflictError(
                        f"Irregularities of a {run.status} run cannot be resolved"
                    )

                to_status = IrregularityStateMachine.status_for_action(command.action)
                IrregularityStateMachine.validate_transition(irregularity.status, to_status)

                detail = self._detail_for(run, irregularity)
                before = {"status": irregularity.status}
                if command.action == "adjusted":
                    before["line_item"] = self._apply_adjustment(
                        irregularity, detail, command.adjusted_value, command.line_item_id
                    )
                elif command.action == "excluded":
                    if detail is None:
                        raise ValidationError(
                            "Irregularity is not attached to a detail record", field="action"
                        )
                    detail.excluded = True

                irregularity.status = to_status.value
                irregularity.resolution_action = command.action
                irregularity.adjusted_value = command.adjusted_value
                irregularity.resolution_notes = command.notes
                irregularity.resolved_by = actor.user_id
                irregularity.resolved_at = utcnow()
                if command.line_item_id is not None:
                    irregularity.line_item_id = command.line_item_id
                if command.action == "adjusted":
                    self._flag_negative_net(run, detail)

                recompute_run_totals(run)
                try:
                    await self.session.flush()
                except StaleDataError as exc:
                    raise StateConflictError(
                        "Payroll run was modified by a concurrent writer"
                    ) from exc

                self.audit.record(
                    "irregularity", irregularity.irregularity_id, f"resolved:{command.action}",
                    actor.user_id, before=before,
                    after={
                        "status": irregularity.status,
                        "notes": command.notes,
                        "adjusted_value": command.adjusted_value,
                    },
                )
                logger.info(
                    "Irregularity %s (%s) closed as %s via %s",
                    irregularity_id, irregularity.code, irregularity.status, command.action,
                )
                return irregularity

    @staticmethod
    def _visible_to(irregularity: Irregularity, viewer: Actor | None) -> bool:
        if viewer is None or viewer.has_role(Role.MANAGER):
            return True
        return irregularity.status != IrregularityStatus.ESCALATED.value

    @staticmethod
    def _detail_for(run: PayrollRun, irregularity: Irregularity) -> EmployeePayrollDetail | None:
        if irregularity.detail_id is None:
            return None
        for detail in run.details:
            if detail.detail_id == irregularity.detail_id:
                return detail
        return None

    @staticmethod
    def _flag_negative_net(run: PayrollRun, detail: EmployeePayrollDetail) -> None:
        """Re-raise NEGATIVE_NET_PAY when an adjustment leaves net pay below zero."""
        if detail.net_pay >= 0:
            return
        already_open = any(
            i.is_open and i.detail_id == detail.detail_id and i.code == "NEGATIVE_NET_PAY"
            for i in run.irregularities
        )
        if already_open:
            return
        run.irregularities.append(
            Irregularity(
                run_id=run.run_id,
                detail_id=detail.detail_id,
                employee_id=detail.employee_id,
                code="NEGATIVE_NET_PAY",
                severity=Severity.CRITICAL.value,
                status=IrregularityStatus.PENDING.value,
                description=f"Net pay is negative ({detail.net_pay}) after manual adjustment",
            )
        )
        logger.warning(
            "Adjustment left employee %s with negative net pay %s",
            detail.employee_id, detail.net_pay,
        )

    def _apply_adjustment(
        self,
        irregularity: Irregularity,
        detail: EmployeePayrollDetail | None,
        adjusted_value: Decimal,
        line_item_id: UUID | None,
    ) -> dict[str, str]:
        """Overwrite one line item, keeping its first original amount."""
        target_id = line_item_id or irregularity.line_item_id
        if detail is None or target_id is None:
            raise ValidationError(
                "Adjustment needs a line item on the irregularity's detail record",
                field="line_item_id",
            )
        line: PayrollLineItem | None = next(
            (li for li in detail.line_items if li.line_item_id == target_id), None
        )
        if line is None:
            raise NotFoundError("PayrollLineItem", target_id)
        if line.category == "deduction" and adjusted_value < 0:
            raise ValidationError("Deduction amounts cannot be negative", field="adjusted_value")

        snapshot = {"line_item_id": str(line.line_item_id), "amount": str(line.amount)}
        if line.original_amount is None:
            line.original_amount = line.amount
        line.amount = LineItemBuilder.round_money(adjusted_value, self.settings.minor_unit)
        recompute_detail_totals(detail)
        return snapshot

