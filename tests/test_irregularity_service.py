"""Tests for irregularity escalation, resolution and manual adjustment."""

from decimal import Decimal
from uuid import uuid4

import pytest

from payroll_execution.calculators.types import FactItem, PeriodFacts
from payroll_execution.exceptions import (
    ApprovalGuardViolationError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from payroll_execution.services.irregularity_service import IrregularityService

from conftest import PERIOD


def irregularity(run, code):
    return next(i for i in run.irregularities if i.code == code)


@pytest.fixture
def service(seeded_session):
    return IrregularityService(seeded_session)


@pytest.fixture
def penalized_run(advance_run, period_facts, bob):
    """Submitted run where Bob's penalty drives his net pay negative."""

    async def _make():
        period_facts.set(
            bob.employee_id, PERIOD.label,
            PeriodFacts(penalties=(FactItem("Damages", Decimal("8000")),)),
        )
        return await advance_run("submitted")

    return _make


def bob_detail(run, bob):
    return next(d for d in run.details if d.employee_id == bob.employee_id)


class TestEscalation:
    async def test_escalate(self, service, penalized_run, specialist):
        run = await penalized_run()
        target = irregularity(run, "HIGH_DEDUCTION_RATIO")

        escalated = await service.escalate(target.irregularity_id, "Needs HR input", specialist)

        assert escalated.status == "escalated"
        assert escalated.escalation_reason == "Needs HR input"
        assert escalated.escalated_by == specialist.user_id
        assert escalated.is_open

    async def test_escalate_twice(self, service, penalized_run, specialist):
        run = await penalized_run()
        target = irregularity(run, "HIGH_DEDUCTION_RATIO")
        await service.escalate(target.irregularity_id, "Needs HR input", specialist)

        with pytest.raises(InvalidTransitionError):
            await service.escalate(target.irregularity_id, "Again", specialist)

    async def test_escalate_requires_reason(self, service, penalized_run, specialist):
        run = await penalized_run()

        with pytest.raises(ValidationError):
            await service.escalate(irregularity(run, "HIGH_DEDUCTION_RATIO").irregularity_id, "", specialist)

    async def test_escalated_can_be_resolved(self, service, penalized_run, specialist, manager):
        run = await penalized_run()
        target = irregularity(run, "HIGH_DEDUCTION_RATIO")
        await service.escalate(target.irregularity_id, "Needs HR input", specialist)

        resolved = await service.resolve(target.irregularity_id, manager, "rejected", "Expected")
        assert resolved.status == "rejected"
        assert resolved.resolution_action == "rejected"


class TestResolution:
    async def test_adjust_penalty_line(self, service, penalized_run, run_service, manager, bob):
        run = await penalized_run()
        penalty_line = irregularity(run, "DEDUCTION_EXCEEDS_GROSS").line_item_id

        resolved = await service.resolve(
            irregularity(run, "NEGATIVE_NET_PAY").irregularity_id,
            manager,
            "adjusted",
            "Cap damages at one day",
            adjusted_value="1000",
            line_item_id=penalty_line,
        )

        assert resolved.status == "resolved"
        assert resolved.adjusted_value == Decimal("1000")
        assert resolved.line_item_id == penalty_line
        detail = bob_detail(run, bob)
        assert detail.total_deductions == Decimal("1800")
        assert detail.net_pay == Decimal("4700")
        assert run.total_net == Decimal("13600")
        # Resolution never moves the run itself
        assert run.status == "pending_manager_approval"

        await run_service.manager_approve(run.run_id, manager)
        assert run.status == "approved"

    async def test_original_amount_kept_across_adjustments(self, service, penalized_run, manager, bob):
        run = await penalized_run()
        exceeds = irregularity(run, "DEDUCTION_EXCEEDS_GROSS")

        await service.resolve(
            irregularity(run, "NEGATIVE_NET_PAY").irregularity_id, manager, "adjusted",
            "First pass", adjusted_value="1000", line_item_id=exceeds.line_item_id,
        )
        await service.resolve(
            exceeds.irregularity_id, manager, "adjusted", "Second pass", adjusted_value="500",
        )

        line = next(li for li in bob_detail(run, bob).line_items if li.line_item_id == exceeds.line_item_id)
        assert line.amount == Decimal("500.00")
        assert line.original_amount == Decimal("8000.00")
        assert bob_detail(run, bob).net_pay == Decimal("5200")

    async def test_adjustment_keeping_net_negative_reraises(
        self, service, penalized_run, run_service, manager, bob
    ):
        run = await penalized_run()
        negative = irregularity(run, "NEGATIVE_NET_PAY")

        await service.resolve(
            negative.irregularity_id, manager, "adjusted", "Raise damages",
            adjusted_value="20000",
            line_item_id=irregularity(run, "DEDUCTION_EXCEEDS_GROSS").line_item_id,
        )

        assert negative.status == "resolved"
        assert bob_detail(run, bob).net_pay == Decimal("-14300")
        reraised = [
            i for i in run.irregularities if i.code == "NEGATIVE_NET_PAY" and i.is_open
        ]
        assert len(reraised) == 1
        assert reraised[0].severity == "critical"
        assert reraised[0].detail_id == bob_detail(run, bob).detail_id
        assert run.flagged is True

        with pytest.raises(ApprovalGuardViolationError):
            await run_service.manager_approve(run.run_id, manager)

    async def test_adjustment_driving_net_negative_is_flagged(
        self, service, advance_run, run_service, directory, make_employee, manager
    ):
        employee = make_employee(bank_account_present=False)
        directory.add(employee)
        run = await advance_run("submitted")
        target = irregularity(run, "MISSING_BANK_ACCOUNT")
        detail = next(d for d in run.details if d.employee_id == employee.employee_id)
        tax_line = next(li for li in detail.line_items if li.kind == "tax")
        assert not any(i.code == "NEGATIVE_NET_PAY" for i in run.irregularities)

        await service.resolve(
            target.irregularity_id, manager, "adjusted", "Back taxes",
            adjusted_value="50000", line_item_id=tax_line.line_item_id,
        )

        assert detail.net_pay < 0
        flagged = [i for i in run.irregularities if i.code == "NEGATIVE_NET_PAY"]
        assert [(i.status, i.severity) for i in flagged] == [("pending", "critical")]
        with pytest.raises(ApprovalGuardViolationError):
            await run_service.manager_approve(run.run_id, manager)

    async def test_exclude_drops_detail_from_totals(self, service, penalized_run, manager, bob):
        run = await penalized_run()

        await service.resolve(
            irregularity(run, "NEGATIVE_NET_PAY").irregularity_id, manager, "excluded", "Pay next month"
        )

        assert bob_detail(run, bob).excluded is True
        assert run.employee_count == 1
        assert run.total_net == Decimal("8900")
        assert run.exception_count == 2

    async def test_approve_closes_without_changes(self, service, penalized_run, manager, bob):
        run = await penalized_run()

        await service.resolve(
            irregularity(run, "DEDUCTION_EXCEEDS_GROSS").irregularity_id, manager, "approved", "Confirmed"
        )

        assert bob_detail(run, bob).net_pay == Decimal("-2300")
        assert run.exception_count == 2
        assert run.flagged is True

    async def test_closed_irregularity_is_terminal(self, service, penalized_run, manager):
        run = await penalized_run()
        target = irregularity(run, "HIGH_DEDUCTION_RATIO")
        await service.resolve(target.irregularity_id, manager, "approved", "Ok")

        with pytest.raises(InvalidTransitionError):
            await service.resolve(target.irregularity_id, manager, "rejected", "Changed my mind")

    @pytest.mark.parametrize(
        "action,adjusted_value",
        [("adjusted", None), ("approved", "10"), ("deleted", None)],
    )
    async def test_invalid_resolution_input(
        self, service, penalized_run, manager, action, adjusted_value
    ):
        run = await penalized_run()
        target = irregularity(run, "DEDUCTION_EXCEEDS_GROSS")

        with pytest.raises(ValidationError):
            await service.resolve(target.irregularity_id, manager, action, "notes", adjusted_value)
        assert target.status == "pending"

    async def test_float_adjustment_rejected(self, service, penalized_run, manager):
        run = await penalized_run()

        with pytest.raises(ValidationError):
            await service.resolve(
                irregularity(run, "DEDUCTION_EXCEEDS_GROSS").irregularity_id,
                manager, "adjusted", "notes", adjusted_value=100.5,
            )

    async def test_negative_deduction_rejected(self, service, penalized_run, manager, bob):
        run = await penalized_run()

        with pytest.raises(ValidationError):
            await service.resolve(
                irregularity(run, "DEDUCTION_EXCEEDS_GROSS").irregularity_id,
                manager, "adjusted", "notes", adjusted_value="-5",
            )
        assert bob_detail(run, bob).net_pay == Decimal("-2300")

    async def test_adjust_needs_a_line(self, service, penalized_run, manager):
        run = await penalized_run()

        with pytest.raises(ValidationError):
            await service.resolve(
                irregularity(run, "HIGH_DEDUCTION_RATIO").irregularity_id,
                manager, "adjusted", "notes", adjusted_value="10",
            )

    async def test_adjust_unknown_line(self, service, penalized_run, manager):
        run = await penalized_run()

        with pytest.raises(NotFoundError):
            await service.resolve(
                irregularity(run, "NEGATIVE_NET_PAY").irregularity_id,
                manager, "adjusted", "notes", adjusted_value="10", line_item_id=uuid4(),
            )

    async def test_requires_manager(self, service, penalized_run, specialist):
        run = await penalized_run()

        with pytest.raises(PermissionDeniedError):
            await service.resolve(
                irregularity(run, "NEGATIVE_NET_PAY").irregularity_id, specialist, "approved", "Ok"
            )

    async def test_locked_run_cannot_be_resolved(self, service, advance_run, directory, make_employee, manager):
        directory.add(make_employee(bank_account_present=False))
        run = await advance_run("locked")

        with pytest.raises(StateConflictError):
            await service.resolve(
                irregularity(run, "MISSING_BANK_ACCOUNT").irregularity_id, manager, "approved", "Ok"
            )


class TestQueries:
    async def test_list_filters(self, service, penalized_run):
        run = await penalized_run()

        items, total = await service.list_irregularities(run_id=run.run_id)
        assert total == 3
        assert len(items) == 3

        items, total = await service.list_irregularities(run_id=run.run_id, severity="critical")
        assert [i.code for i in items] == ["NEGATIVE_NET_PAY"]

        items, total = await service.list_irregularities(status="resolved")
        assert total == 0

    async def test_escalated_hidden_from_non_managers(
        self, service, penalized_run, specialist, manager
    ):
        run = await penalized_run()
        target = irregularity(run, "HIGH_DEDUCTION_RATIO")
        await service.escalate(target.irregularity_id, "Needs HR input", specialist)

        items, total = await service.list_irregularities(run_id=run.run_id, viewer=specialist)
        assert total == 2
        assert target not in items
        with pytest.raises(NotFoundError):
            await service.get_irregularity(target.irregularity_id, viewer=specialist)

        items, total = await service.list_irregularities(run_id=run.run_id, viewer=manager)
        assert total == 3
        assert (await service.get_irregularity(target.irregularity_id, viewer=manager)) is target

    async def test_missing_irregularity(self, service):
        with pytest.raises(NotFoundError):
            await service.get_irregularity(uuid4())
