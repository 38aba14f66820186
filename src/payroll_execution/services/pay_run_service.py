"""Payroll run service - main orchestrator for payroll operations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from payroll_execution.calculators.engine import PayCalculator
from payroll_execution.calculators.line_builder import LineItemBuilder
from payroll_execution.calculators.rule_resolver import RuleResolver
from payroll_execution.calculators.types import (
    BenefitItem,
    DetailResult,
    EmployeeSnapshot,
    LineKind,
    Period,
    PeriodFacts,
    RuleBundle,
)
from payroll_execution.commands import (
    CreateRunCommand,
    EditRunCommand,
    ReasonCommand,
    parse_command,
)
from payroll_execution.config import Settings, get_settings
from payroll_execution.exceptions import (
    ApprovalGuardViolationError,
    ConfigurationMissingError,
    InvalidTransitionError,
    NotFoundError,
    StateConflictError,
    SubmissionTimeoutError,
)
from payroll_execution.logging_config import log_context
from payroll_execution.models import (
    EmployeePayrollDetail,
    Irregularity,
    PayrollLineItem,
    PayrollRun,
    SigningBonus,
    TerminationBenefit,
    utcnow,
)
from payroll_execution.services.audit import AuditRecorder
from payroll_execution.services.collaborators import (
    Actor,
    EmployeeDirectory,
    PeriodFactsProvider,
    Role,
)
from payroll_execution.services.irregularity_detector import (
    IrregularityDetector,
    IrregularityFinding,
    Severity,
)
from payroll_execution.services.locking_service import LockingService
from payroll_execution.services.payslip_service import PayslipGenerationReport, PayslipService
from payroll_execution.services.rule_repository import RuleRepository
from payroll_execution.services.state_machine import (
    PayrollRunStateMachine,
    PayrollRunStatus,
    SubLedgerStatus,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class EmployeeOutcome:
    """One employee's result from the submit fan-out."""

    employee_id: UUID
    employee: EmployeeSnapshot | None
    result: DetailResult
    bundle: RuleBundle
    findings: list[IrregularityFinding]
    status: str


@dataclass
class FinanceApprovalOutcome:
    run: PayrollRun
    payslips: PayslipGenerationReport


def recompute_run_totals(run: PayrollRun) -> None:
    """Recompute aggregates from non-excluded details and open irregularities.

    ``run.details`` and ``run.irregularities`` must be loaded.
    """
    included = [d for d in run.details if not d.excluded]
    run.employee_count = len(included)
    run.total_gross = sum((d.total_gross for d in included), ZERO)
    run.total_deductions = sum((d.total_deductions for d in included), ZERO)
    run.total_net = sum((d.net_pay for d in included), ZERO)

    open_irregularities = [i for i in run.irregularities if i.is_open]
    run.exception_count = len(open_irregularities)
    run.flagged = any(i.is_blocking for i in open_irregularities)


async def load_run(
    session: AsyncSession, run_id: UUID, load_details: bool = True
) -> PayrollRun:
    """Load a payroll run with its irregularities and (optionally) details."""
    options = [selectinload(PayrollRun.irregularities)]
    if load_details:
        options.append(
            selectinload(PayrollRun.details).selectinload(EmployeePayrollDetail.line_items)
        )
    result = await session.execute(
        select(PayrollRun).where(PayrollRun.run_id == run_id).options(*options)
    )
    run = result.scalar_one_or_none()
    if run is None:
        raise NotFoundError("PayrollRun", run_id)
    return run


def _run_snapshot(run: PayrollRun) -> dict[str, Any]:
    return {
        "status": run.status,
        "period": run.period,
        "entity": run.entity,
        "department": run.department,
        "employee_count": run.employee_count,
        "total_gross": run.total_gross,
        "total_deductions": run.total_deductions,
        "total_net": run.total_net,
    }


class PayrollRunService:
    """Service for managing the payroll run lifecycle.

    Operations:
    - create_run / edit_run: scope and population snapshot (draft, rejected)
    - submit_run: fan the calculator out over the population and persist
    - manager_approve / request_finance_approval / finance_approve
    - freeze_run / unfreeze_run / reject_run
    - list_runs / get_run / list_details

    Every mutating transition holds the per-run guard from LockingService.
    """

    def __init__(
        self,
        session: AsyncSession,
        directory: EmployeeDirectory,
        facts_provider: PeriodFactsProvider,
        *,
        calculator: PayCalculator | None = None,
        detector: IrregularityDetector | None = None,
        settings: Settings | None = None,
        locking: LockingService | None = None,
    ):
        self.session = session
        self.directory = directory
        self.facts_provider = facts_provider
        self.settings = settings or get_settings()
        self.calculator = calculator or PayCalculator(
            standard_working_days=self.settings.standard_working_days,
            engine_version=self.settings.engine_version,
            minor_unit=self.settings.minor_unit,
        )
        self.detector = detector or IrregularityDetector(
            rule_cycle_months=self.settings.rule_cycle_months
        )
        self.locking = locking or LockingService(session)
        self.audit = AuditRecorder(session)
        self.payslips = PayslipService(session, self.settings)

    # ===== Queries =====

    async def get_run(self, run_id: UUID, load_details: bool = True) -> PayrollRun:
        return await load_run(self.session, run_id, load_details)

    async def list_runs(
        self,
        status: str | None = None,
        period: str | None = None,
        entity: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[PayrollRun], int]:
        filters = []
        if status is not None:
            filters.append(PayrollRun.status == status)
        if period is not None:
            filters.append(PayrollRun.period == period)
        if entity is not None:
            filters.append(PayrollRun.entity == entity)

        total = await self.session.scalar(
            select(func.count()).select_from(PayrollRun).where(*filters)
        )
        result = await self.session.scalars(
            select(PayrollRun)
            .where(*filters)
            .order_by(PayrollRun.created_at.desc(), PayrollRun.period.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.all()), total or 0

    async def list_details(self, run_id: UUID) -> list[EmployeePayrollDetail]:
        run = await self.get_run(run_id)
        return list(run.details)

    # ===== Draft lifecycle =====

    async def create_run(
        self,
        actor: Actor,
        period: str,
        entity: str,
        department: str | None = None,
    ) -> PayrollRun:
        """Create a draft run and snapshot its employee population."""
        actor.require(Role.SPECIALIST, "create a payroll run")
        command = parse_command(
            CreateRunCommand, period=period, entity=entity, department=department
        )
        await self._ensure_unique_scope(command.period, command.entity, command.department)

        run = PayrollRun(
            period=command.period,
            entity=command.entity,
            department=command.department,
            status=PayrollRunStatus.DRAFT.value,
            created_by_user_id=actor.user_id,
            employee_ids=await self._snapshot_population(
                command.period, command.entity, command.department
            ),
        )
        self.session.add(run)
        await self._flush()

        self.audit.record(
            "payroll_run", run.run_id, "created", actor.user_id, after=_run_snapshot(run)
        )
        with log_context(run_id=run.run_id, actor_id=actor.user_id):
            logger.info(
                "Created payroll run for %s/%s %s with %d employees",
                run.entity, run.department or "*", run.period, len(run.employee_ids),
            )
        return run

    async def edit_run(
        self,
        run_id: UUID,
        actor: Actor,
        period: str | None = None,
        entity: str | None = None,
        department: str | None = None,
        refresh_population: bool = False,
    ) -> PayrollRun:
        """Edit scope of a draft or rejected run; a rejected run returns to draft."""
        actor.require(Role.SPECIALIST, "edit a payroll run")
        command = parse_command(
            EditRunCommand,
            period=period,
            entity=entity,
            department=department,
            refresh_population=refresh_population,
        )

        async with self.locking.run_guard(run_id, "edit"):
            run = await self.get_run(run_id, load_details=False)
            if not PayrollRunStateMachine.can_edit(run.status):
                raise InvalidTransitionError(
                    run.status, PayrollRunStatus.DRAFT.value, "Only draft or rejected runs can be edited"
                )

            before = _run_snapshot(run)
            new_period = command.period or run.period
            new_entity = command.entity or run.entity
            new_department = command.department if command.department is not None else run.department
            scope_changed = (new_period, new_entity, new_department) != (
                run.period, run.entity, run.department
            )
            if scope_changed:
                await self._ensure_unique_scope(
                    new_period, new_entity, new_department, exclude_run_id=run.run_id
                )
                run.period, run.entity, run.department = new_period, new_entity, new_department

            if scope_changed or command.refresh_population:
                run.employee_ids = await self._snapshot_population(
                    run.period, run.entity, run.department
                )

            if run.status == PayrollRunStatus.REJECTED:
                PayrollRunStateMachine.validate_transition(run.status, PayrollRunStatus.DRAFT)
                run.status = PayrollRunStatus.DRAFT.value
                run.rejection_reason = None
                run.rejected_by = None
                run.rejected_at = None

            await self._flush()
            self.audit.record(
                "payroll_run", run.run_id, "edited", actor.user_id,
                before=before, after=_run_snapshot(run),
            )
            logger.info("Edited payroll run %s", run.run_id)
            return run

    # ===== Submit (calculation fan-out) =====

    async def submit_run(self, run_id: UUID, actor: Actor) -> PayrollRun:
        """Calculate every employee and move the run to manager approval.

        Per-employee failures become critical irregularities on a zeroed or
        best-effort detail row. Nothing is written until every calculation
        has finished; a fan-out timeout leaves the run unchanged.
        """
        actor.require(Role.SPECIALIST, "submit a payroll run")

        with log_context(run_id=run_id, actor_id=actor.user_id):
            async with self.locking.run_guard(run_id, "submit"):
                run = await self.get_run(run_id)
                to_status = PayrollRunStatus.PENDING_MANAGER_APPROVAL
                errors = PayrollRunStateMachine.validate_run_for_transition(run, to_status)
                if errors:
                    raise InvalidTransitionError(run.status, to_status.value, "; ".join(errors))

                period = Period.parse(run.period)
                employee_ids = [UUID(e) for e in run.employee_ids]
                resolver = RuleResolver(await RuleRepository(self.session).load_rule_set())
                bonuses, benefits = await self._load_claimable(run, period, employee_ids)
                ledger_items = self._ledger_items(bonuses, benefits)

                outcomes = await self._fan_out(run, period, employee_ids, resolver, ledger_items)

                before = _run_snapshot(run)
                await self._replace_details(run, outcomes, bonuses, benefits)
                recompute_run_totals(run)

                now = utcnow()
                run.calculated_at = now
                run.submitted_by_user_id = actor.user_id
                run.submitted_at = now
                from_status = run.status
                run.status = to_status.value
                await self._flush()

                self.audit.record(
                    "payroll_run", run.run_id, f"status_change:{from_status}:{run.status}",
                    actor.user_id, before=before, after=_run_snapshot(run),
                )
                logger.info(
                    "Submitted payroll run %s: %d employees, net %s, %d open irregularities",
                    run.run_id, run.employee_count, run.total_net, run.exception_count,
                )
                return run

    async def _fan_out(
        self,
        run: PayrollRun,
        period: Period,
        employee_ids: list[UUID],
        resolver: RuleResolver,
        ledger_items: dict[UUID, tuple[list[BenefitItem], list[BenefitItem]]],
    ) -> list[EmployeeOutcome]:
        semaphore = asyncio.Semaphore(self.settings.fanout_concurrency)
        tasks = [
            self._calculate_employee(
                employee_id, period, resolver, ledger_items.get(employee_id, ([], [])), semaphore
            )
            for employee_id in employee_ids
        ]
        timeout = self.settings.fanout_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.gather(*tasks), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Calculation fan-out for run %s timed out after %ss", run.run_id, timeout)
            raise SubmissionTimeoutError(run.run_id, timeout) from None

    async def _calculate_employee(
        self,
        employee_id: UUID,
        period: Period,
        resolver: RuleResolver,
        ledger_items: tuple[list[BenefitItem], list[BenefitItem]],
        semaphore: asyncio.Semaphore,
    ) -> EmployeeOutcome:
        async with semaphore:
            employee = await self.directory.get_employee(employee_id)
            if employee is None:
                return EmployeeOutcome(
                    employee_id=employee_id,
                    employee=None,
                    result=self.calculator.empty_result(
                        employee_id, period, "Employee not found in directory"
                    ),
                    bundle=RuleBundle(),
                    findings=[
                        IrregularityFinding(
                            "EMPLOYEE_NOT_FOUND",
                            Severity.CRITICAL,
                            f"Employee {employee_id} is no longer in the directory",
                            employee_id=employee_id,
                        )
                    ],
                    status="error",
                )

            try:
                facts = await self.facts_provider.get_period_facts(employee_id, period)
                facts = _with_ledger_items(facts, ledger_items)

                findings: list[IrregularityFinding] = []
                status = "calculated"
                try:
                    bundle = resolver.resolve(employee, period)
                except ConfigurationMissingError as exc:
                    bundle = exc.partial_bundle or RuleBundle()
                    status = "partial"
                    findings.append(
                        IrregularityFinding(
                            "CONFIGURATION_MISSING",
                            Severity.CRITICAL,
                            str(exc),
                            employee_id=employee_id,
                        )
                    )

                result = self.calculator.compute(employee, bundle, facts, period)
                findings.extend(self.detector.inspect(result, bundle, employee, period))
                return EmployeeOutcome(employee_id, employee, result, bundle, findings, status)

            except Exception as exc:
                logger.exception("Calculation failed for employee %s", employee_id)
                return EmployeeOutcome(
                    employee_id=employee_id,
                    employee=employee,
                    result=self.calculator.empty_result(
                        employee_id, period, str(exc), base_salary=employee.base_salary
                    ),
                    bundle=RuleBundle(),
                    findings=[
                        IrregularityFinding(
                            "CALCULATION_FAILED",
                            Severity.CRITICAL,
                            f"Calculation failed: {exc}",
                            employee_id=employee_id,
                        )
                    ],
                    status="error",
                )

    async def _replace_details(
        self,
        run: PayrollRun,
        outcomes: list[EmployeeOutcome],
        bonuses: list[SigningBonus],
        benefits: list[TerminationBenefit],
    ) -> None:
        """Swap the run's detail set for freshly calculated rows."""
        # Closed irregularities stay as history; open ones are re-detected
        for irregularity in list(run.irregularities):
            if irregularity.is_open:
                run.irregularities.remove(irregularity)
            else:
                irregularity.detail_id = None
                irregularity.line_item_id = None

        await self._release_claims(run.run_id)
        run.details.clear()
        # Old rows must be gone before the (run, employee) unique key is reused
        await self._flush()

        sources: dict[UUID, SigningBonus | TerminationBenefit] = {b.bonus_id: b for b in bonuses}
        sources.update({b.benefit_id: b for b in benefits})

        for outcome in outcomes:
            detail, line_ids = self._build_detail(outcome)
            run.details.append(detail)

            for line_item in detail.line_items:
                source = sources.get(line_item.source_id) if line_item.source_id else None
                if source is not None:
                    source.disbursed_in_run_id = run.run_id
                    source.disbursed_detail_id = detail.detail_id

            for finding in outcome.findings:
                run.irregularities.append(
                    Irregularity(
                        run_id=run.run_id,
                        detail_id=detail.detail_id,
                        employee_id=finding.employee_id or outcome.employee_id,
                        line_item_id=(
                            line_ids[finding.line_index] if finding.line_index is not None else None
                        ),
                        code=finding.code,
                        severity=finding.severity.value,
                        status="pending",
                        description=finding.description,
                    )
                )

    def _build_detail(self, outcome: EmployeeOutcome) -> tuple[EmployeePayrollDetail, list[UUID]]:
        result = outcome.result
        detail_id = uuid4()
        line_ids: list[UUID] = []
        line_items = []
        for sequence, line in enumerate(result.lines):
            line_item_id = uuid4()
            line_ids.append(line_item_id)
            line_items.append(
                PayrollLineItem(
                    line_item_id=line_item_id,
                    detail_id=detail_id,
                    sequence=sequence,
                    category=line.category.value,
                    kind=line.kind.value,
                    code=line.code,
                    name=line.name,
                    amount=line.amount,
                    rule_version_id=line.rule_version_id,
                    source_id=line.source_id,
                    expected_nonzero=line.expected_nonzero,
                    line_hash=LineItemBuilder.compute_line_hash(line),
                )
            )

        employee = outcome.employee
        detail = EmployeePayrollDetail(
            detail_id=detail_id,
            employee_id=outcome.employee_id,
            employee_name=employee.name if employee else None,
            calculation_id=result.calculation_id,
            status=outcome.status,
            error_message="; ".join(result.errors) or None,
            base_salary=result.base_salary,
            total_gross=result.total_gross,
            total_deductions=result.total_deductions,
            net_pay=result.net_pay,
            employer_contributions=result.employer_contributions,
            excluded=False,
            bank_account_present=employee.bank_account_present if employee else False,
            rule_version_ids=[str(v.rule_version_id) for v in outcome.bundle.versions],
            line_items=line_items,
        )
        return detail, line_ids

    # ===== Approvals =====

    async def manager_approve(self, run_id: UUID, actor: Actor) -> PayrollRun:
        """pending_manager_approval → approved."""
        actor.require(Role.MANAGER, "approve a payroll run")

        with log_context(run_id=run_id, actor_id=actor.user_id):
            async with self.locking.run_guard(run_id, "manager_approve"):
                run = await self.get_run(run_id, load_details=False)
                to_status = PayrollRunStatus.APPROVED
                if run.status != PayrollRunStatus.PENDING_MANAGER_APPROVAL:
                    raise InvalidTransitionError(
                        run.status, to_status.value, "Run is not awaiting manager approval"
                    )
                if run.created_by_user_id == actor.user_id:
                    raise ApprovalGuardViolationError(
                        "Manager approver must differ from the run creator"
                    )

                critical = PayrollRunStateMachine.unresolved_critical(run)
                if critical:
                    logger.warning(
                        "Manager approval of run %s blocked by %d critical irregularities",
                        run.run_id, len(critical),
                    )
                    raise ApprovalGuardViolationError(
                        f"{len(critical)} unresolved critical irregularity(ies) on run {run.run_id}",
                        blocking_ids=[i.irregularity_id for i in critical],
                    )

                run.manager_approved_by = actor.user_id
                run.manager_approved_at = utcnow()
                await self._transition(run, to_status, actor)
                return run

    async def request_finance_approval(self, run_id: UUID, actor: Actor) -> PayrollRun:
        """approved → pending_finance_approval."""
        actor.require(Role.MANAGER, "request finance approval")

        with log_context(run_id=run_id, actor_id=actor.user_id):
            async with self.locking.run_guard(run_id, "request_finance_approval"):
                run = await self.get_run(run_id, load_details=False)
                await self._transition(run, PayrollRunStatus.PENDING_FINANCE_APPROVAL, actor)
                return run

    async def finance_approve(self, run_id: UUID, actor: Actor) -> FinanceApprovalOutcome:
        """pending_finance_approval → locked, then disburse and generate payslips."""
        actor.require(Role.FINANCE, "finance-approve a payroll run")

        with log_context(run_id=run_id, actor_id=actor.user_id):
            async with self.locking.run_guard(run_id, "finance_approve"):
                run = await self.get_run(run_id)
                to_status = PayrollRunStatus.LOCKED
                if run.status != PayrollRunStatus.PENDING_FINANCE_APPROVAL:
                    raise InvalidTransitionError(
                        run.status, to_status.value, "Run is not awaiting finance approval"
                    )
                if run.manager_approved_by == actor.user_id:
                    raise ApprovalGuardViolationError(
                        "Finance approver must differ from the manager approver"
                    )
                self._check_lock_guard(run)

                now = utcnow()
                run.finance_approved_by = actor.user_id
                run.finance_approved_at = now
                report = await self._lock(run, actor, now)
                return FinanceApprovalOutcome(run=run, payslips=report)

    async def freeze_run(self, run_id: UUID, actor: Actor) -> FinanceApprovalOutcome:
        """approved → locked; only once a finance approval has been recorded."""
        actor.require(Role.FINANCE, "freeze a payroll run")

        with log_context(run_id=run_id, actor_id=actor.user_id):
            async with self.locking.run_guard(run_id, "freeze"):
                run = await self.get_run(run_id)
                to_status = PayrollRunStatus.LOCKED
                if run.status != PayrollRunStatus.APPROVED:
                    raise InvalidTransitionError(
                        run.status, to_status.value, "Only an approved run can be frozen"
                    )
                errors = PayrollRunStateMachine.validate_run_for_transition(run, to_status)
                if errors:
                    raise InvalidTransitionError(run.status, to_status.value, "; ".join(errors))
                self._check_lock_guard(run)

                report = await self._lock(run, actor, utcnow())
                return FinanceApprovalOutcome(run=run, payslips=report)

    async def unfreeze_run(self, run_id: UUID, reason: str, actor: Actor) -> PayrollRun:
        """locked → approved with a recorded reason; nothing is recalculated."""
        actor.require_any((Role.MANAGER, Role.FINANCE), "unfreeze a payroll run")
        command = parse_command(ReasonCommand, reason=reason)

        with log_context(run_id=run_id, actor_id=actor.user_id):
            async with self.locking.run_guard(run_id, "unfreeze"):
                run = await self.get_run(run_id, load_details=False)
                to_status = PayrollRunStatus.APPROVED
                if not PayrollRunStateMachine.is_unfreeze(run.status, to_status):
                    raise InvalidTransitionError(run.status, to_status.value, "Run is not locked")

                run.unfreeze_reason = command.reason
                run.unfrozen_by = actor.user_id
                run.unfrozen_at = utcnow()
                await self._transition(run, to_status, actor, reason=command.reason)
                return run

    async def reject_run(self, run_id: UUID, reason: str, actor: Actor) -> PayrollRun:
        """Reject from either pending stage; the role follows the stage."""
        command = parse_command(ReasonCommand, reason=reason)

        with log_context(run_id=run_id, actor_id=actor.user_id):
            async with self.locking.run_guard(run_id, "reject"):
                run = await self.get_run(run_id, load_details=False)
                if run.status == PayrollRunStatus.PENDING_MANAGER_APPROVAL:
                    actor.require(Role.MANAGER, "reject a payroll run")
                elif run.status == PayrollRunStatus.PENDING_FINANCE_APPROVAL:
                    actor.require(Role.FINANCE, "reject a payroll run")

                to_status = PayrollRunStatus.REJECTED
                PayrollRunStateMachine.validate_transition(run.status, to_status)

                run.rejection_reason = command.reason
                run.rejected_by = actor.user_id
                run.rejected_at = utcnow()
                await self._release_claims(run.run_id)
                await self._transition(run, to_status, actor, reason=command.reason)
                return run

    # ===== Helpers =====

    async def _transition(
        self,
        run: PayrollRun,
        to_status: PayrollRunStatus,
        actor: Actor,
        reason: str | None = None,
    ) -> None:
        from_status = run.status
        PayrollRunStateMachine.validate_transition(from_status, to_status)
        run.status = to_status.value
        await self._flush()

        self.audit.record(
            "payroll_run",
            run.run_id,
            f"status_change:{from_status}:{run.status}",
            actor.user_id,
            before={"status": from_status},
            after={"status": run.status, "reason": reason} if reason else {"status": run.status},
        )
        logger.info("Payroll run %s: %s -> %s", run.run_id, from_status, run.status)

    def _check_lock_guard(self, run: PayrollRun) -> None:
        blocking = PayrollRunStateMachine.blocking_irregularities(run)
        if blocking:
            logger.warning(
                "Lock of run %s blocked by %d open high/critical irregularities",
                run.run_id, len(blocking),
            )
            raise ApprovalGuardViolationError(
                f"{len(blocking)} open high/critical irregularity(ies) block locking run {run.run_id}",
                blocking_ids=[i.irregularity_id for i in blocking],
            )

    async def _lock(self, run: PayrollRun, actor: Actor, now: datetime) -> PayslipGenerationReport:
        run.frozen_by = actor.user_id
        run.frozen_at = now
        run.payment_status = "paid"
        await self._transition(run, PayrollRunStatus.LOCKED, actor)
        await self._settle_claims(run, now)
        await self.payslips.mark_paid(run.run_id)
        report = await self.payslips.generate(run, payment_status="paid")
        if report.failed:
            logger.warning(
                "Payslip generation for run %s failed for %d employee(s)",
                run.run_id, len(report.failed),
            )
        return report

    async def _ensure_unique_scope(
        self,
        period: str,
        entity: str,
        department: str | None,
        exclude_run_id: UUID | None = None,
    ) -> None:
        """One non-rejected run per (period, entity, department)."""
        stmt = select(func.count()).select_from(PayrollRun).where(
            PayrollRun.period == period,
            PayrollRun.entity == entity,
            PayrollRun.status != PayrollRunStatus.REJECTED.value,
            (
                PayrollRun.department.is_(None)
                if department is None
                else PayrollRun.department == department
            ),
        )
        if exclude_run_id is not None:
            stmt = stmt.where(PayrollRun.run_id != exclude_run_id)
        if await self.session.scalar(stmt):
            raise StateConflictError(
                f"A payroll run already exists for {entity}/{department or '*'} {period}"
            )

    async def _snapshot_population(
        self, period: str, entity: str, department: str | None
    ) -> list[str]:
        employees = await self.directory.list_employees(entity, department, Period.parse(period))
        return [str(e.employee_id) for e in employees]

    async def _load_claimable(
        self,
        run: PayrollRun,
        period: Period,
        employee_ids: list[UUID],
    ) -> tuple[list[SigningBonus], list[TerminationBenefit]]:
        """Approved, undisbursed sub-ledger items this run may pay."""
        if not employee_ids:
            return [], []
        bonuses = await self.session.scalars(
            select(SigningBonus)
            .where(
                SigningBonus.employee_id.in_(employee_ids),
                SigningBonus.status == SubLedgerStatus.APPROVED.value,
                SigningBonus.disbursed_at.is_(None),
                SigningBonus.payment_date >= period.start,
                SigningBonus.payment_date <= period.end,
                _unclaimed_or_ours(SigningBonus, run.run_id),
            )
            .order_by(SigningBonus.payment_date, SigningBonus.bonus_id)
        )
        benefits = await self.session.scalars(
            select(TerminationBenefit)
            .where(
                TerminationBenefit.employee_id.in_(employee_ids),
                TerminationBenefit.status == SubLedgerStatus.APPROVED.value,
                TerminationBenefit.disbursed_at.is_(None),
                TerminationBenefit.termination_date >= period.start,
                TerminationBenefit.termination_date <= period.end,
                _unclaimed_or_ours(TerminationBenefit, run.run_id),
            )
            .order_by(TerminationBenefit.termination_date, TerminationBenefit.benefit_id)
        )
        return list(bonuses.all()), list(benefits.all())

    @staticmethod
    def _ledger_items(
        bonuses: list[SigningBonus],
        benefits: list[TerminationBenefit],
    ) -> dict[UUID, tuple[list[BenefitItem], list[BenefitItem]]]:
        """Plain snapshots of sub-ledger rows, grouped by employee."""
        items: dict[UUID, tuple[list[BenefitItem], list[BenefitItem]]] = {}
        for bonus in bonuses:
            items.setdefault(bonus.employee_id, ([], []))[0].append(
                BenefitItem(
                    source_id=bonus.bonus_id,
                    kind=LineKind.SIGNING_BONUS,
                    name=f"Signing bonus ({bonus.position})" if bonus.position else "Signing bonus",
                    amount=bonus.amount,
                    effective_date=bonus.payment_date,
                )
            )
        for benefit in benefits:
            items.setdefault(benefit.employee_id, ([], []))[1].append(
                BenefitItem(
                    source_id=benefit.benefit_id,
                    kind=LineKind.TERMINATION_BENEFIT,
                    name=benefit.benefit_name,
                    amount=benefit.amount,
                    effective_date=benefit.termination_date,
                )
            )
        return items

    async def _release_claims(self, run_id: UUID) -> None:
        """Unclaim sub-ledger items this run claimed but has not paid."""
        for model in (SigningBonus, TerminationBenefit):
            claimed = await self.session.scalars(
                select(model).where(
                    model.disbursed_in_run_id == run_id,
                    model.disbursed_at.is_(None),
                )
            )
            for item in claimed.all():
                item.disbursed_in_run_id = None
                item.disbursed_detail_id = None

    async def _settle_claims(self, run: PayrollRun, now: datetime) -> None:
        """Mark claimed items paid; items on excluded details are released."""
        excluded = {d.detail_id for d in run.details if d.excluded}
        for model in (SigningBonus, TerminationBenefit):
            claimed = await self.session.scalars(
                select(model).where(
                    model.disbursed_in_run_id == run.run_id,
                    model.disbursed_at.is_(None),
                )
            )
            for item in claimed.all():
                if item.disbursed_detail_id in excluded:
                    item.disbursed_in_run_id = None
                    item.disbursed_detail_id = None
                    continue
                item.status = SubLedgerStatus.PAID.value
                item.disbursed_at = now
        await self._flush()

    async def _flush(self) -> None:
        try:
            await self.session.flush()
        except StaleDataError as exc:
            raise StateConflictError("Payroll run was modified by a concurrent writer") from exc


def _with_ledger_items(
    facts: PeriodFacts,
    ledger_items: tuple[list[BenefitItem], list[BenefitItem]],
) -> PeriodFacts:
    bonuses, benefits = ledger_items
    if not bonuses and not benefits:
        return facts
    return replace(
        facts,
        signing_bonuses=facts.signing_bonuses + tuple(bonuses),
        termination_benefits=facts.termination_benefits + tuple(benefits),
    )


def _unclaimed_or_ours(model: type[SigningBonus] | type[TerminationBenefit], run_id: UUID):
    return model.disbursed_in_run_id.is_(None) | (model.disbursed_in_run_id == run_id)
