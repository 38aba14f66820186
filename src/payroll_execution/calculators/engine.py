"""Pay calculator: pure gross-to-net computation for one employee."""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from payroll_execution.calculators.line_builder import LineItemBuilder
from payroll_execution.calculators.tax_calculator import TaxCalculator
from payroll_execution.calculators.types import (
    ZERO,
    DetailResult,
    EmployeeSnapshot,
    LineCandidate,
    LineCategory,
    LineKind,
    Period,
    PeriodFacts,
    RuleBundle,
)
from payroll_execution.config import get_settings

HOURS_PER_DAY = Decimal("8")
OVERTIME_MULTIPLIER = Decimal("1.5")
LATENESS_MULTIPLIER = Decimal("0.5")
MISSING_WORK_MULTIPLIER = Decimal("1")


class PayCalculator:
    """Deterministic payroll calculator.

    Calculation pipeline (stable order per employee):
    1) Base salary, prorated by calendar days employed within the period
    2) Pay-grade allowances (same proration)
    3) Signing bonuses dated within the period
    4) Termination/resignation benefits in the final period (signed)
    5) Refunds (not taxable) and overtime
    6) Social insurance on the insurable wage (employee + employer share)
    7) Tax on taxable earnings per the tax rule's own method
    8) Penalties, misconduct, unpaid leave, lateness, missing work
    9) Totals from the rounded lines; net is never clamped

    Works with a partial rule bundle: missing rule kinds contribute no lines
    and are reported in ``DetailResult.errors``.
    """

    def __init__(
        self,
        standard_working_days: int | None = None,
        engine_version: str | None = None,
        minor_unit: Decimal | None = None,
    ):
        settings = get_settings()
        self.standard_working_days = standard_working_days or settings.standard_working_days
        self.engine_version = engine_version or settings.engine_version
        self.precision = minor_unit or settings.minor_unit
        self.tax_calculator = TaxCalculator(self.precision)

    def compute(
        self,
        employee: EmployeeSnapshot,
        bundle: RuleBundle,
        facts: PeriodFacts,
        period: Period,
    ) -> DetailResult:
        """Compute one employee's full breakdown for a period."""
        lines: list[LineCandidate] = []
        errors = [f"No applicable {kind} rule" for kind in bundle.missing]

        base_salary = employee.base_salary or ZERO
        factor = self.proration_factor(employee, period)
        hourly_rate = base_salary / (Decimal(period.days) * HOURS_PER_DAY)

        # 1) Base salary
        lines.append(
            LineItemBuilder.create_earning_line(
                LineKind.BASE_SALARY,
                "BASE",
                "Base salary",
                base_salary * factor,
                rule_version_id=bundle.pay_grade.version.rule_version_id if bundle.pay_grade else None,
                expected_nonzero=True,
                explanation=self._proration_note(factor, period),
                precision=self.precision,
            )
        )

        # 2) Allowances
        if bundle.pay_grade is not None:
            for allowance in bundle.pay_grade.allowances:
                lines.append(
                    LineItemBuilder.create_earning_line(
                        LineKind.ALLOWANCE,
                        allowance.code,
                        allowance.name,
                        allowance.amount * factor,
                        rule_version_id=bundle.pay_grade.version.rule_version_id,
                        expected_nonzero=True,
                        precision=self.precision,
                    )
                )

        # 3) Signing bonuses
        for bonus in facts.signing_bonuses:
            if period.contains(bonus.effective_date):
                lines.append(
                    LineItemBuilder.create_earning_line(
                        LineKind.SIGNING_BONUS,
                        "SIGNING_BONUS",
                        bonus.name,
                        bonus.amount,
                        source_id=bonus.source_id,
                        precision=self.precision,
                    )
                )

        # 4) Termination benefits, final period only
        if self.is_final_period(employee, period):
            for benefit in facts.termination_benefits:
                lines.append(
                    LineItemBuilder.create_earning_line(
                        LineKind.TERMINATION_BENEFIT,
                        "TERMINATION_BENEFIT",
                        benefit.name,
                        benefit.amount,
                        source_id=benefit.source_id,
                        precision=self.precision,
                    )
                )

        # 5) Refunds and overtime
        for refund in facts.refunds:
            lines.append(
                LineItemBuilder.create_earning_line(
                    LineKind.REFUND, "REFUND", refund.name, refund.amount,
                    precision=self.precision,
                )
            )
        if facts.overtime_minutes > 0:
            lines.append(
                LineItemBuilder.create_earning_line(
                    LineKind.OVERTIME,
                    "OVERTIME",
                    "Overtime",
                    self._minutes_pay(facts.overtime_minutes, hourly_rate, OVERTIME_MULTIPLIER),
                    explanation=f"{facts.overtime_minutes} min at 150% of hourly rate",
                    precision=self.precision,
                )
            )

        earnings = LineItemBuilder.sum_by_kind(
            [line for line in lines if line.category == LineCategory.EARNING]
        )

        # 6) Social insurance
        if bundle.insurance is not None:
            insurable = earnings.get(LineKind.BASE_SALARY, ZERO) + earnings.get(LineKind.ALLOWANCE, ZERO)
            contribution = self.tax_calculator.calculate_insurance(insurable, bundle.insurance)
            version_id = bundle.insurance.version.rule_version_id
            lines.append(
                LineItemBuilder.create_deduction_line(
                    LineKind.INSURANCE,
                    "INSURANCE",
                    bundle.insurance.version.name,
                    contribution.employee,
                    rule_version_id=version_id,
                    expected_nonzero=True,
                    precision=self.precision,
                )
            )
            if contribution.employer > 0:
                lines.append(
                    LineItemBuilder.create_employer_contribution_line(
                        "INSURANCE_ER",
                        f"{bundle.insurance.version.name} (employer)",
                        contribution.employer,
                        rule_version_id=version_id,
                        precision=self.precision,
                    )
                )

        # 7) Tax
        if bundle.tax is not None:
            taxable = sum(
                (amount for kind, amount in earnings.items() if kind != LineKind.REFUND),
                ZERO,
            )
            lines.append(
                LineItemBuilder.create_deduction_line(
                    LineKind.TAX,
                    "TAX",
                    bundle.tax.version.name,
                    self.tax_calculator.calculate_tax(taxable, bundle.tax),
                    rule_version_id=bundle.tax.version.rule_version_id,
                    explanation=f"{bundle.tax.method} brackets on {taxable}",
                    precision=self.precision,
                )
            )

        # 8) Attendance-linked deductions
        for penalty in facts.penalties:
            lines.append(
                LineItemBuilder.create_deduction_line(
                    LineKind.PENALTY, "PENALTY", penalty.name, penalty.amount,
                    precision=self.precision,
                )
            )
        for item in facts.misconduct_deductions:
            lines.append(
                LineItemBuilder.create_deduction_line(
                    LineKind.MISCONDUCT, "MISCONDUCT", item.name, item.amount,
                    precision=self.precision,
                )
            )
        if facts.unpaid_leave_days > 0:
            working_days = self.working_days(bundle)
            lines.append(
                LineItemBuilder.create_deduction_line(
                    LineKind.UNPAID_LEAVE,
                    "UNPAID_LEAVE",
                    "Unpaid leave",
                    facts.unpaid_leave_days * base_salary / Decimal(working_days),
                    explanation=(
                        f"{facts.unpaid_leave_days} day(s) x {base_salary}/{working_days}"
                    ),
                    precision=self.precision,
                )
            )
        if facts.late_minutes > 0:
            lines.append(
                LineItemBuilder.create_deduction_line(
                    LineKind.LATENESS,
                    "LATENESS",
                    "Lateness",
                    self._minutes_pay(facts.late_minutes, hourly_rate, LATENESS_MULTIPLIER),
                    precision=self.precision,
                )
            )
        if facts.missing_work_minutes > 0:
            lines.append(
                LineItemBuilder.create_deduction_line(
                    LineKind.MISSING_WORK,
                    "MISSING_WORK",
                    "Missing work time",
                    self._minutes_pay(facts.missing_work_minutes, hourly_rate, MISSING_WORK_MULTIPLIER),
                    precision=self.precision,
                )
            )

        # 9) Totals
        errors.extend(LineItemBuilder.validate_line_signs(lines))
        total_gross = LineItemBuilder.calculate_gross_from_lines(lines)
        total_deductions = LineItemBuilder.calculate_deductions_from_lines(lines)

        return DetailResult(
            employee_id=employee.employee_id,
            calculation_id=self._generate_calculation_id(
                employee.employee_id,
                period,
                inputs_fingerprint=_fingerprint({"employee": asdict(employee), "facts": asdict(facts)}),
                rules_fingerprint=_fingerprint({"versions": sorted(str(v.rule_version_id) for v in bundle.versions)}),
            ),
            base_salary=base_salary,
            lines=lines,
            total_gross=total_gross,
            total_deductions=total_deductions,
            net_pay=total_gross - total_deductions,
            employer_contributions=LineItemBuilder.calculate_employer_from_lines(lines),
            errors=errors,
        )

    def empty_result(
        self,
        employee_id: UUID,
        period: Period,
        error: str,
        base_salary: Decimal | None = None,
    ) -> DetailResult:
        """Zeroed result for an employee whose calculation could not run."""
        return DetailResult(
            employee_id=employee_id,
            calculation_id=self._generate_calculation_id(employee_id, period, "", ""),
            base_salary=base_salary or ZERO,
            lines=[],
            total_gross=ZERO,
            total_deductions=ZERO,
            net_pay=ZERO,
            employer_contributions=ZERO,
            errors=[error],
        )

    def working_days(self, bundle: RuleBundle) -> int:
        if bundle.pay_grade is not None and bundle.pay_grade.standard_working_days:
            return bundle.pay_grade.standard_working_days
        return self.standard_working_days

    @staticmethod
    def proration_factor(employee: EmployeeSnapshot, period: Period) -> Decimal:
        """Share of the period's calendar days the employee was employed."""
        first = max(employee.hire_date, period.start)
        last = period.end
        if employee.termination_date is not None:
            last = min(employee.termination_date, period.end)
        if last < first:
            return ZERO
        employed_days = (last - first + timedelta(days=1)).days
        if employed_days == period.days:
            return Decimal("1")
        return Decimal(employed_days) / Decimal(period.days)

    @staticmethod
    def is_final_period(employee: EmployeeSnapshot, period: Period) -> bool:
        return employee.termination_date is not None and period.contains(employee.termination_date)

    @staticmethod
    def _minutes_pay(minutes: int, hourly_rate: Decimal, multiplier: Decimal) -> Decimal:
        return Decimal(minutes) / Decimal(60) * hourly_rate * multiplier

    @staticmethod
    def _proration_note(factor: Decimal, period: Period) -> str | None:
        if factor == 1:
            return None
        days = (factor * period.days).quantize(Decimal("1"))
        return f"Prorated {days}/{period.days} days"

    def _generate_calculation_id(
        self,
        employee_id: UUID,
        period: Period,
        inputs_fingerprint: str,
        rules_fingerprint: str,
    ) -> UUID:
        """Generate deterministic calculation ID."""
        data = {
            "employee_id": str(employee_id),
            "period": period.label,
            "engine_version": self.engine_version,
            "inputs_fingerprint": inputs_fingerprint,
            "rules_fingerprint": rules_fingerprint,
        }
        json_str = json.dumps(data, sort_keys=True)
        hash_bytes = hashlib.sha256(json_str.encode()).digest()
        return UUID(bytes=hash_bytes[:16])


def _fingerprint(data: dict[str, Any]) -> str:
    json_str = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(json_str.encode()).hexdigest()[:32]


def employed_in(employee: EmployeeSnapshot, period: Period) -> bool:
    """Whether the employee was employed for at least one day of the period."""
    if employee.hire_date > period.end:
        return False
    termination: date | None = employee.termination_date
    return termination is None or termination >= period.start
