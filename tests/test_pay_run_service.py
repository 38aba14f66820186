"""Tests for the payroll run lifecycle orchestrator."""

import asyncio
from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from payroll_execution.calculators.types import FactItem, PeriodFacts
from payroll_execution.exceptions import (
    ApprovalGuardViolationError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    SubmissionTimeoutError,
    ValidationError,
)
from payroll_execution.models import AuditEvent
from payroll_execution.services.benefit_service import BenefitService
from payroll_execution.services.collaborators import Actor, InMemoryEmployeeDirectory, Role
from payroll_execution.services.irregularity_service import IrregularityService
from payroll_execution.services.pay_run_service import PayrollRunService

from conftest import DEPARTMENT, ENTITY, PERIOD


def irregularity(run, code):
    return next(i for i in run.irregularities if i.code == code)


def detail_for(run, employee):
    return next(d for d in run.details if d.employee_id == employee.employee_id)


class SlowFacts:
    async def get_period_facts(self, employee_id, period):
        await asyncio.sleep(1)
        return PeriodFacts()


class BrokenFacts:
    async def get_period_facts(self, employee_id, period):
        raise RuntimeError("attendance feed unavailable")


class TestCreateRun:
    async def test_create_snapshots_population(self, run_service, specialist, alice, bob):
        run = await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)

        assert run.status == "draft"
        assert run.created_by_user_id == specialist.user_id
        assert sorted(run.employee_ids) == sorted([str(alice.employee_id), str(bob.employee_id)])

    async def test_population_excludes_employees_outside_period(
        self, run_service, directory, specialist, make_employee
    ):
        later_hire = make_employee(hire_date=date(2025, 4, 1))
        directory.add(later_hire)

        run = await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)
        assert str(later_hire.employee_id) not in run.employee_ids
        assert len(run.employee_ids) == 2

    async def test_population_is_a_snapshot(self, run_service, directory, specialist, make_employee):
        run = await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)
        directory.add(make_employee())

        await run_service.submit_run(run.run_id, specialist)
        assert run.employee_count == 2

    async def test_duplicate_scope_conflicts(self, run_service, specialist):
        await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)

        with pytest.raises(StateConflictError):
            await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)

    @pytest.mark.parametrize("period", ["2025-13", "March", "2099-01"])
    async def test_invalid_period(self, run_service, specialist, period):
        with pytest.raises(ValidationError):
            await run_service.create_run(specialist, period, ENTITY, DEPARTMENT)

    async def test_requires_specialist(self, run_service, manager):
        with pytest.raises(PermissionDeniedError):
            await run_service.create_run(manager, PERIOD.label, ENTITY, DEPARTMENT)

    async def test_list_runs(self, run_service, specialist):
        await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)
        await run_service.create_run(specialist, PERIOD.label, ENTITY, "FIN")

        runs, total = await run_service.list_runs(period=PERIOD.label)
        assert total == 2
        assert {r.department for r in runs} == {DEPARTMENT, "FIN"}

        runs, total = await run_service.list_runs(status="locked")
        assert (runs, total) == ([], 0)

    async def test_get_missing_run(self, run_service):
        with pytest.raises(NotFoundError):
            await run_service.get_run(uuid4())


class TestSubmitRun:
    async def test_clean_run_totals(self, run_service, advance_run, alice, bob):
        run = await advance_run("submitted")

        assert run.status == "pending_manager_approval"
        assert run.employee_count == 2
        assert run.total_gross == Decimal("17000")
        assert run.total_deductions == Decimal("2400")
        assert run.total_net == Decimal("14600")
        assert run.exception_count == 0
        assert run.flagged is False

        alice_detail = detail_for(run, alice)
        assert alice_detail.status == "calculated"
        assert alice_detail.net_pay == Decimal("8900")
        assert alice_detail.employer_contributions == Decimal("2100")
        assert len(alice_detail.rule_version_ids) == 3
        assert detail_for(run, bob).net_pay == Decimal("5700")

    async def test_unpaid_leave_in_detail_and_run_aggregate(
        self, run_service, advance_run, directory, period_facts, make_employee
    ):
        carol = make_employee(Decimal("3000"), name="Carol")
        directory.add(carol)
        period_facts.set(carol.employee_id, PERIOD.label, PeriodFacts(unpaid_leave_days=Decimal("2")))

        run = await advance_run("submitted")

        assert run.employee_count == 3
        carol_detail = detail_for(run, carol)
        leave = [d for d in carol_detail.breakdown()["deductions"] if d["kind"] == "unpaid_leave"]
        # 2 days x 3000 / 20 working days
        assert [Decimal(d["amount"]) for d in leave] == [Decimal("300.00")]
        # Insurance 350 + unpaid leave 300
        assert carol_detail.total_deductions == Decimal("650")
        assert carol_detail.net_pay == Decimal("2850")

        assert run.total_deductions == Decimal("3050")
        assert run.total_deductions == sum(d.total_deductions for d in run.details)
        run_leave = sum(
            li.amount for d in run.details for li in d.line_items if li.kind == "unpaid_leave"
        )
        assert run_leave == Decimal("300.00")

    async def test_lines_follow_configured_minor_unit(
        self, seeded_session, directory, period_facts, settings, make_employee, specialist
    ):
        dave = make_employee(Decimal("10001"), name="Dave")
        directory.add(dave)
        period_facts.set(dave.employee_id, PERIOD.label, PeriodFacts(unpaid_leave_days=Decimal("1")))
        service = PayrollRunService(
            seeded_session, directory, period_facts, settings=replace(settings, minor_unit_places=0)
        )

        run = await service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)
        await service.submit_run(run.run_id, specialist)

        leave = next(li for li in detail_for(run, dave).line_items if li.kind == "unpaid_leave")
        assert leave.amount == Decimal("500")
        for detail in run.details:
            for line in detail.line_items:
                assert line.amount == line.amount.quantize(Decimal("1"))

    async def test_run_totals_equal_sum_of_details(self, run_service, advance_run):
        run = await advance_run("submitted")
        details = await run_service.list_details(run.run_id)

        assert run.total_net == sum(d.net_pay for d in details)
        for detail in details:
            assert detail.net_pay == detail.total_gross - detail.total_deductions

    async def test_negative_net_is_flagged_not_clamped(self, advance_run, period_facts, bob):
        period_facts.set(
            bob.employee_id, PERIOD.label,
            PeriodFacts(penalties=(FactItem("Damages", Decimal("8000")),)),
        )
        run = await advance_run("submitted")

        assert detail_for(run, bob).net_pay == Decimal("-2300")
        assert run.flagged is True
        assert run.exception_count == 3
        assert irregularity(run, "NEGATIVE_NET_PAY").severity == "critical"
        exceeds = irregularity(run, "DEDUCTION_EXCEEDS_GROSS")
        penalty_line = next(li for li in detail_for(run, bob).line_items if li.kind == "penalty")
        assert exceeds.line_item_id == penalty_line.line_item_id

    async def test_missing_configuration_gives_partial_detail(
        self, run_service, directory, specialist, manager, make_employee
    ):
        unknown_grade = make_employee(pay_grade="G9")
        directory.add(unknown_grade)
        run = await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)
        await run_service.submit_run(run.run_id, specialist)

        assert run.status == "pending_manager_approval"
        detail = detail_for(run, unknown_grade)
        assert detail.status == "partial"
        finding = irregularity(run, "CONFIGURATION_MISSING")
        assert finding.severity == "critical"
        assert finding.detail_id == detail.detail_id

        with pytest.raises(ApprovalGuardViolationError) as exc_info:
            await run_service.manager_approve(run.run_id, manager)
        assert exc_info.value.blocking_ids == [finding.irregularity_id]

    async def test_failed_calculation_is_isolated(
        self, seeded_session, directory, specialist, settings
    ):
        service = PayrollRunService(seeded_session, directory, BrokenFacts(), settings=settings)
        run = await service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)
        await service.submit_run(run.run_id, specialist)

        assert run.status == "pending_manager_approval"
        assert {d.status for d in run.details} == {"error"}
        assert {i.code for i in run.irregularities} == {"CALCULATION_FAILED"}
        assert run.total_net == Decimal("0")
        assert all("attendance feed unavailable" in d.error_message for d in run.details)

    async def test_employee_missing_from_directory(
        self, run_service, seeded_session, period_facts, specialist, settings, alice, bob
    ):
        run = await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)
        shrunk = PayrollRunService(
            seeded_session, InMemoryEmployeeDirectory([alice]), period_facts, settings=settings
        )
        await shrunk.submit_run(run.run_id, specialist)

        assert detail_for(run, bob).status == "error"
        assert irregularity(run, "EMPLOYEE_NOT_FOUND").employee_id == bob.employee_id
        assert detail_for(run, alice).status == "calculated"

    async def test_timeout_leaves_run_unchanged(
        self, seeded_session, directory, specialist, settings
    ):
        service = PayrollRunService(
            seeded_session, directory, SlowFacts(),
            settings=replace(settings, fanout_timeout_seconds=0.05),
        )
        run = await service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)

        with pytest.raises(SubmissionTimeoutError):
            await service.submit_run(run.run_id, specialist)

        reloaded = await service.get_run(run.run_id)
        assert reloaded.status == "draft"
        assert reloaded.details == []
        assert reloaded.submitted_at is None

    async def test_submit_twice_is_invalid(self, run_service, advance_run, specialist):
        run = await advance_run("submitted")

        with pytest.raises(InvalidTransitionError):
            await run_service.submit_run(run.run_id, specialist)

    async def test_submit_without_population(self, run_service, specialist):
        run = await run_service.create_run(specialist, PERIOD.label, "NOBODY")

        with pytest.raises(InvalidTransitionError, match="no employees"):
            await run_service.submit_run(run.run_id, specialist)

    async def test_recalculation_keeps_closed_irregularities(
        self, run_service, directory, specialist, manager, make_employee, seeded_session
    ):
        directory.add(make_employee(bank_account_present=False))
        run = await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)
        await run_service.submit_run(run.run_id, specialist)
        first = irregularity(run, "MISSING_BANK_ACCOUNT")

        await IrregularityService(seeded_session).resolve(
            first.irregularity_id, manager, "approved", "Account on file with HR"
        )
        await run_service.reject_run(run.run_id, "Recheck bank details", manager)
        await run_service.submit_run(run.run_id, specialist)

        findings = [i for i in run.irregularities if i.code == "MISSING_BANK_ACCOUNT"]
        assert len(findings) == 2
        assert [i.status for i in findings if i.is_open] == ["pending"]
        assert first.status == "resolved"
        assert first.detail_id is None
        assert run.exception_count == 1


class TestApprovals:
    async def test_full_lifecycle(self, run_service, advance_run, manager, finance):
        run = await advance_run("pending_finance")
        assert run.manager_approved_by == manager.user_id

        outcome = await run_service.finance_approve(run.run_id, finance)

        assert outcome.run.status == "locked"
        assert outcome.run.payment_status == "paid"
        assert outcome.run.finance_approved_by == finance.user_id
        assert outcome.run.frozen_at is not None
        assert outcome.payslips.created == 2
        assert outcome.payslips.total_net == Decimal("14600")

    async def test_manager_approval_requires_pending_status(self, run_service, specialist, manager):
        run = await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)

        with pytest.raises(InvalidTransitionError):
            await run_service.manager_approve(run.run_id, manager)

    async def test_roles_are_enforced(self, run_service, advance_run, specialist, manager):
        run = await advance_run("submitted")

        with pytest.raises(PermissionDeniedError):
            await run_service.manager_approve(run.run_id, specialist)

        await run_service.manager_approve(run.run_id, manager)
        await run_service.request_finance_approval(run.run_id, manager)
        with pytest.raises(PermissionDeniedError):
            await run_service.finance_approve(run.run_id, manager)

    async def test_creator_cannot_approve(self, run_service):
        both = Actor(uuid4(), frozenset({Role.SPECIALIST, Role.MANAGER}))
        run = await run_service.create_run(both, PERIOD.label, ENTITY, DEPARTMENT)
        await run_service.submit_run(run.run_id, both)

        with pytest.raises(ApprovalGuardViolationError):
            await run_service.manager_approve(run.run_id, both)

    async def test_finance_approver_differs_from_manager(self, run_service, specialist):
        both = Actor(uuid4(), frozenset({Role.MANAGER, Role.FINANCE}))
        run = await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)
        await run_service.submit_run(run.run_id, specialist)
        await run_service.manager_approve(run.run_id, both)
        await run_service.request_finance_approval(run.run_id, both)

        with pytest.raises(ApprovalGuardViolationError):
            await run_service.finance_approve(run.run_id, both)
        assert run.status == "pending_finance_approval"

    async def test_high_severity_blocks_lock_not_manager_approval(
        self, run_service, directory, specialist, manager, finance, make_employee, seeded_session
    ):
        directory.add(make_employee(None, name="No Salary"))
        run = await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)
        await run_service.submit_run(run.run_id, specialist)
        missing = irregularity(run, "MISSING_BASE_SALARY")
        assert missing.severity == "high"

        await run_service.manager_approve(run.run_id, manager)
        await run_service.request_finance_approval(run.run_id, manager)
        with pytest.raises(ApprovalGuardViolationError) as exc_info:
            await run_service.finance_approve(run.run_id, finance)
        assert exc_info.value.blocking_ids == [missing.irregularity_id]

        await IrregularityService(seeded_session).resolve(
            missing.irregularity_id, manager, "approved", "Unpaid intern"
        )
        outcome = await run_service.finance_approve(run.run_id, finance)
        assert outcome.run.status == "locked"

    async def test_concurrent_managers_one_wins(self, run_service, advance_run, manager, seeded_session):
        run = await advance_run("submitted")
        second_manager = Actor(uuid4(), frozenset({Role.MANAGER}))

        results = await asyncio.gather(
            run_service.manager_approve(run.run_id, manager),
            run_service.manager_approve(run.run_id, second_manager),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, StateConflictError)]
        successes = [r for r in results if not isinstance(r, BaseException)]
        assert len(conflicts) == 1
        assert len(successes) == 1
        assert run.status == "approved"
        assert run.manager_approved_by in {manager.user_id, second_manager.user_id}

        await seeded_session.flush()
        approvals = (
            await seeded_session.scalars(
                select(AuditEvent.actor_user_id).where(
                    AuditEvent.entity_id == run.run_id,
                    AuditEvent.action == "status_change:pending_manager_approval:approved",
                )
            )
        ).all()
        assert approvals == [run.manager_approved_by]

    async def test_audit_trail(self, run_service, advance_run, seeded_session):
        run = await advance_run("locked")
        await seeded_session.flush()

        actions = (
            await seeded_session.scalars(
                select(AuditEvent.action).where(AuditEvent.entity_id == run.run_id)
            )
        ).all()
        assert "created" in actions
        assert "status_change:draft:pending_manager_approval" in actions
        assert "status_change:pending_finance_approval:locked" in actions


class TestRejectAndEdit:
    async def test_manager_rejects_with_reason(self, run_service, advance_run, manager):
        run = await advance_run("submitted")

        await run_service.reject_run(run.run_id, "Wrong allowance table", manager)

        assert run.status == "rejected"
        assert run.rejection_reason == "Wrong allowance table"
        assert run.rejected_by == manager.user_id

    async def test_reject_requires_reason(self, run_service, advance_run, manager):
        run = await advance_run("submitted")

        with pytest.raises(ValidationError):
            await run_service.reject_run(run.run_id, "   ", manager)
        assert run.status == "pending_manager_approval"

    async def test_finance_stage_rejection_needs_finance(
        self, run_service, advance_run, manager, finance
    ):
        run = await advance_run("pending_finance")

        with pytest.raises(PermissionDeniedError):
            await run_service.reject_run(run.run_id, "Numbers look off", manager)

        await run_service.reject_run(run.run_id, "Numbers look off", finance)
        assert run.status == "rejected"

    async def test_rejected_run_is_resubmitted(self, run_service, advance_run, specialist, manager):
        run = await advance_run("submitted")
        await run_service.reject_run(run.run_id, "Late attendance import", manager)

        await run_service.submit_run(run.run_id, specialist)
        assert run.status == "pending_manager_approval"
        assert run.total_net == Decimal("14600")

    async def test_edit_rejected_returns_to_draft(self, run_service, advance_run, specialist, manager):
        run = await advance_run("submitted")
        await run_service.reject_run(run.run_id, "Wrong department", manager)

        await run_service.edit_run(run.run_id, specialist, department="FIN")

        assert run.status == "draft"
        assert run.department == "FIN"
        assert run.rejection_reason is None
        assert run.employee_ids == []

    async def test_edit_refreshes_population(
        self, run_service, directory, specialist, make_employee
    ):
        run = await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)
        newcomer = make_employee()
        directory.add(newcomer)

        await run_service.edit_run(run.run_id, specialist, refresh_population=True)
        assert str(newcomer.employee_id) in run.employee_ids

    async def test_submitted_run_cannot_be_edited(self, run_service, advance_run, specialist):
        run = await advance_run("submitted")

        with pytest.raises(InvalidTransitionError):
            await run_service.edit_run(run.run_id, specialist, department="FIN")


class TestFreezeAndUnfreeze:
    async def test_freeze_requires_finance_approval(self, run_service, advance_run, finance):
        run = await advance_run("approved")

        with pytest.raises(InvalidTransitionError):
            await run_service.freeze_run(run.run_id, finance)

    async def test_unfreeze_then_freeze(self, run_service, advance_run, manager, finance):
        run = await advance_run("locked")

        await run_service.unfreeze_run(run.run_id, "Bank file correction", manager)
        assert run.status == "approved"
        assert run.unfreeze_reason == "Bank file correction"
        assert run.total_net == Decimal("14600")

        outcome = await run_service.freeze_run(run.run_id, finance)
        assert outcome.run.status == "locked"
        assert (outcome.payslips.created, outcome.payslips.skipped) == (0, 2)

    async def test_unfreeze_requires_reason(self, run_service, advance_run, manager):
        run = await advance_run("locked")

        with pytest.raises(ValidationError):
            await run_service.unfreeze_run(run.run_id, "", manager)
        assert run.status == "locked"

    async def test_unfreeze_role(self, run_service, advance_run, specialist):
        run = await advance_run("locked")

        with pytest.raises(PermissionDeniedError):
            await run_service.unfreeze_run(run.run_id, "Correction", specialist)

    async def test_unfreeze_only_locked(self, run_service, advance_run, finance):
        run = await advance_run("approved")

        with pytest.raises(InvalidTransitionError):
            await run_service.unfreeze_run(run.run_id, "Correction", finance)


class TestSubLedgerClaims:
    async def _approved_bonus(self, session, settings, specialist, manager, employee, amount="1000"):
        service = BenefitService(session, settings)
        bonus = await service.create_signing_bonus(
            specialist,
            employee_id=employee.employee_id,
            amount=Decimal(amount),
            payment_date=date(2025, 3, 15),
        )
        return await service.approve_signing_bonus(bonus.bonus_id, manager)

    async def test_signing_bonus_paid_on_lock(
        self, seeded_session, settings, advance_run, specialist, manager, alice
    ):
        bonus = await self._approved_bonus(seeded_session, settings, specialist, manager, alice)

        run = await advance_run("locked")

        alice_detail = detail_for(run, alice)
        assert alice_detail.total_gross == Decimal("11500")
        tax = next(li for li in alice_detail.line_items if li.kind == "tax")
        assert tax.amount == Decimal("650")
        assert bonus.status == "paid"
        assert bonus.disbursed_at is not None
        assert bonus.disbursed_in_run_id == run.run_id
        assert bonus.disbursed_detail_id == alice_detail.detail_id

    async def test_termination_benefit_in_final_period(
        self, seeded_session, settings, run_service, directory, specialist, manager, make_employee
    ):
        leaver = make_employee(termination_date=date(2025, 3, 31))
        directory.add(leaver)
        service = BenefitService(seeded_session, settings)
        benefit = await service.create_termination_benefit(
            specialist,
            employee_id=leaver.employee_id,
            benefit_type="resignation",
            benefit_name="End of service",
            amount=Decimal("2000"),
            termination_date=date(2025, 3, 31),
        )
        await service.approve_termination_benefit(benefit.benefit_id, manager)

        run = await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)
        await run_service.submit_run(run.run_id, specialist)

        assert detail_for(run, leaver).total_gross == Decimal("12500")
        assert benefit.disbursed_in_run_id == run.run_id
        assert benefit.status == "approved"

    async def test_rejection_releases_claims(
        self, seeded_session, settings, advance_run, run_service, specialist, manager, alice
    ):
        bonus = await self._approved_bonus(seeded_session, settings, specialist, manager, alice)
        run = await advance_run("submitted")
        assert bonus.disbursed_in_run_id == run.run_id

        await run_service.reject_run(run.run_id, "Hold bonus", manager)
        assert bonus.disbursed_in_run_id is None
        assert bonus.status == "approved"

    async def test_excluded_detail_releases_claim(
        self, seeded_session, settings, advance_run, run_service, period_facts,
        specialist, manager, finance, bob,
    ):
        bonus = await self._approved_bonus(seeded_session, settings, specialist, manager, bob)
        period_facts.set(
            bob.employee_id, PERIOD.label,
            PeriodFacts(penalties=(FactItem("Damages", Decimal("8000")),)),
        )
        run = await advance_run("submitted")
        irregularities = IrregularityService(seeded_session)
        await irregularities.resolve(
            irregularity(run, "NEGATIVE_NET_PAY").irregularity_id, manager, "excluded", "Pay next cycle"
        )
        await irregularities.resolve(
            irregularity(run, "DEDUCTION_EXCEEDS_GROSS").irregularity_id, manager, "approved", "Covered"
        )
        assert run.employee_count == 1
        assert run.total_net == Decimal("8900")

        await run_service.manager_approve(run.run_id, manager)
        await run_service.request_finance_approval(run.run_id, manager)
        outcome = await run_service.finance_approve(run.run_id, finance)

        assert outcome.payslips.created == 1
        assert outcome.payslips.skipped == 1
        assert bonus.status == "approved"
        assert bonus.disbursed_in_run_id is None
        assert bonus.disbursed_at is None
