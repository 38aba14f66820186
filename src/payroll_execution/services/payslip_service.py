"""Payslip generation from locked payroll runs."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_execution.commands import DisputePayslipCommand, parse_command
from payroll_execution.config import Settings, get_settings
from payroll_execution.exceptions import InvalidTransitionError, NotFoundError, StateConflictError
from payroll_execution.models import EmployeePayrollDetail, Payslip, PayrollRun, utcnow
from payroll_execution.services.audit import AuditRecorder
from payroll_execution.services.collaborators import Actor
from payroll_execution.services.state_machine import PayrollRunStatus

logger = logging.getLogger(__name__)


@dataclass
class PayslipFailure:
    employee_id: UUID
    error: str


@dataclass
class PayslipGenerationReport:
    """Partial-success report for one generation pass over a run."""

    run_id: UUID
    created: int = 0
    skipped: int = 0
    failed: list[PayslipFailure] = field(default_factory=list)
    total_net: Decimal = Decimal("0")

    @property
    def success(self) -> bool:
        return not self.failed


class PayslipService:
    """Derives one immutable payslip per non-excluded detail of a locked run.

    Key invariants:
    1. One payslip per (run, employee), enforced by a unique constraint
    2. Content is a frozen copy of the detail breakdown, never recalculated
    3. Regeneration is idempotent: existing payslips are skipped
    4. A failure for one employee never prevents the others
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self.audit = AuditRecorder(session)

    async def generate(
        self,
        run: PayrollRun,
        payment_status: str = "pending",
    ) -> PayslipGenerationReport:
        """Create missing payslips for a locked run.

        ``run.details`` and their line items must already be loaded.
        """
        if run.status != PayrollRunStatus.LOCKED:
            raise InvalidTransitionError(
                run.status,
                PayrollRunStatus.LOCKED.value,
                "Payslips can only be generated for a locked run",
            )

        report = PayslipGenerationReport(run_id=run.run_id)
        existing = set(
            (
                await self.session.scalars(
                    select(Payslip.employee_id).where(Payslip.run_id == run.run_id)
                )
            ).all()
        )

        for detail in run.details:
            if detail.excluded or detail.employee_id in existing:
                report.skipped += 1
                continue
            try:
                payslip = self._build_payslip(run, detail, payment_status)
            except Exception as exc:
                logger.exception(
                    "Payslip generation failed for employee %s in run %s",
                    detail.employee_id, run.run_id,
                )
                report.failed.append(PayslipFailure(detail.employee_id, str(exc)))
                continue
            self.session.add(payslip)
            existing.add(detail.employee_id)
            report.created += 1
            report.total_net += payslip.net_pay

        await self.session.flush()
        logger.info(
            "Generated payslips for run %s: created=%d skipped=%d failed=%d",
            run.run_id, report.created, report.skipped, len(report.failed),
        )
        return report

    def _build_payslip(
        self,
        run: PayrollRun,
        detail: EmployeePayrollDetail,
        payment_status: str,
    ) -> Payslip:
        if detail.net_pay != detail.total_gross - detail.total_deductions:
            raise ValueError(
                f"Detail {detail.detail_id} net pay does not equal gross minus deductions"
            )
        breakdown = copy.deepcopy(detail.breakdown())
        breakdown["employee_name"] = detail.employee_name
        breakdown["period"] = run.period
        breakdown["currency"] = self.settings.currency
        return Payslip(
            run_id=run.run_id,
            detail_id=detail.detail_id,
            employee_id=detail.employee_id,
            employee_name=detail.employee_name,
            period=run.period,
            currency=self.settings.currency,
            breakdown_json=breakdown,
            total_gross=detail.total_gross,
            total_deductions=detail.total_deductions,
            net_pay=detail.net_pay,
            payment_status=payment_status,
        )

    async def mark_paid(self, run_id: UUID) -> int:
        """Mark every pending payslip of a run as paid."""
        payslips = await self.list_payslips(run_id)
        count = 0
        for payslip in payslips:
            if payslip.payment_status == "pending":
                payslip.payment_status = "paid"
                count += 1
        return count

    async def get_payslip(self, payslip_id: UUID) -> Payslip:
        payslip = await self.session.get(Payslip, payslip_id)
        if payslip is None:
            raise NotFoundError("Payslip", payslip_id)
        return payslip

    async def list_payslips(self, run_id: UUID) -> list[Payslip]:
        result = await self.session.scalars(
            select(Payslip)
            .where(Payslip.run_id == run_id)
            .order_by(Payslip.employee_id)
        )
        return list(result.all())

    async def dispute_payslip(self, payslip_id: UUID, reason: str, actor: Actor) -> Payslip:
        """Flag a payslip as disputed. The frozen content is left untouched."""
        command = parse_command(DisputePayslipCommand, reason=reason)
        payslip = await self.get_payslip(payslip_id)
        if payslip.payment_status == "disputed":
            raise StateConflictError(f"Payslip {payslip_id} is already disputed")

        before = {"payment_status": payslip.payment_status}
        payslip.payment_status = "disputed"
        payslip.dispute_reason = command.reason
        payslip.disputed_at = utcnow()
        self.audit.record(
            "payslip",
            payslip.payslip_id,
            "disputed",
            actor_user_id=actor.user_id,
            before=before,
            after={"payment_status": "disputed", "reason": command.reason},
        )
        await self.session.flush()
        logger.info("Payslip %s disputed by %s", payslip_id, actor.user_id)
        return payslip
