"""Irregularity detection over calculated detail records."""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable
from uuid import UUID

from payroll_execution.calculators.types import (
    DetailResult,
    EmployeeSnapshot,
    LineKind,
    Period,
    RuleBundle,
)
from payroll_execution.config import get_settings

DEDUCTION_RATIO_LIMIT = Decimal("0.60")
OVERTIME_RATIO_LIMIT = Decimal("0.50")


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


BLOCKING_SEVERITIES = frozenset({Severity.HIGH.value, Severity.CRITICAL.value})


@dataclass(frozen=True)
class IrregularityFinding:
    """Detector output; persisted as an Irregularity by the orchestrator."""

    code: str
    severity: Severity
    description: str
    employee_id: UUID | None = None
    line_index: int | None = None


@dataclass(frozen=True)
class InspectionContext:
    detail: DetailResult
    bundle: RuleBundle
    employee: EmployeeSnapshot | None
    period: Period | None
    rule_cycle_months: int


Check = Callable[[InspectionContext], Iterable[IrregularityFinding]]


def check_negative_net(ctx: InspectionContext) -> Iterable[IrregularityFinding]:
    if ctx.detail.net_pay < 0:
        yield IrregularityFinding(
            "NEGATIVE_NET_PAY",
            Severity.CRITICAL,
            f"Net pay is negative ({ctx.detail.net_pay})",
        )


def check_deduction_exceeds_gross(ctx: InspectionContext) -> Iterable[IrregularityFinding]:
    gross = ctx.detail.total_gross
    for kind, total in ctx.detail.deductions_by_kind().items():
        if total > gross:
            index = next(
                i for i, line in enumerate(ctx.detail.lines) if line.kind == kind
            )
            yield IrregularityFinding(
                "DEDUCTION_EXCEEDS_GROSS",
                Severity.HIGH,
                f"{kind.value} deductions ({total}) exceed gross earnings ({gross})",
                line_index=index,
            )


def check_missing_base_salary(ctx: InspectionContext) -> Iterable[IrregularityFinding]:
    if ctx.employee is None:
        return
    if ctx.employee.base_salary is None or ctx.employee.base_salary <= 0:
        yield IrregularityFinding(
            "MISSING_BASE_SALARY",
            Severity.HIGH,
            "Employee has no base salary on record",
        )


def check_stale_rules(ctx: InspectionContext) -> Iterable[IrregularityFinding]:
    if ctx.period is None:
        return
    for version in ctx.bundle.versions:
        age = ctx.period.months_since(version.effective_start)
        if age >= ctx.rule_cycle_months:
            yield IrregularityFinding(
                "STALE_RULE_VERSION",
                Severity.MEDIUM,
                f"{version.kind.value} rule '{version.name}' v{version.version} "
                f"effective since {version.effective_start} ({age} months old)",
            )


def check_zero_expected_lines(ctx: InspectionContext) -> Iterable[IrregularityFinding]:
    for index, line in enumerate(ctx.detail.lines):
        if line.expected_nonzero and line.amount == 0:
            yield IrregularityFinding(
                "ZERO_EXPECTED_LINE",
                Severity.LOW,
                f"{line.name} is zero where a non-zero amount was expected",
                line_index=index,
            )


def check_zero_net(ctx: InspectionContext) -> Iterable[IrregularityFinding]:
    if ctx.detail.net_pay == 0:
        yield IrregularityFinding("ZERO_NET_PAY", Severity.LOW, "Net pay is zero")


def check_deduction_ratio(ctx: InspectionContext) -> Iterable[IrregularityFinding]:
    gross = ctx.detail.total_gross
    if gross > 0 and ctx.detail.total_deductions > gross * DEDUCTION_RATIO_LIMIT:
        yield IrregularityFinding(
            "HIGH_DEDUCTION_RATIO",
            Severity.MEDIUM,
            f"Deductions ({ctx.detail.total_deductions}) exceed 60% of gross ({gross})",
        )


def check_bank_account(ctx: InspectionContext) -> Iterable[IrregularityFinding]:
    if ctx.employee is not None and not ctx.employee.bank_account_present:
        yield IrregularityFinding(
            "MISSING_BANK_ACCOUNT",
            Severity.MEDIUM,
            "Employee has no bank account for disbursement",
        )


def check_overtime_ratio(ctx: InspectionContext) -> Iterable[IrregularityFinding]:
    base = ctx.detail.base_salary
    for index, line in enumerate(ctx.detail.lines):
        if line.kind == LineKind.OVERTIME and base > 0 and line.amount > base * OVERTIME_RATIO_LIMIT:
            yield IrregularityFinding(
                "EXCESSIVE_OVERTIME",
                Severity.LOW,
                f"Overtime ({line.amount}) exceeds 50% of base salary ({base})",
                line_index=index,
            )


DEFAULT_CHECKS: tuple[Check, ...] = (
    check_negative_net,
    check_deduction_exceeds_gross,
    check_missing_base_salary,
    check_stale_rules,
    check_zero_expected_lines,
    check_zero_net,
    check_deduction_ratio,
    check_bank_account,
    check_overtime_ratio,
)


class IrregularityDetector:
    """Scans a calculated detail for anomalies.

    Output is advisory/blocking metadata only; the inspected detail is never
    modified. Checks are plain callables and can be extended per instance.
    """

    def __init__(
        self,
        checks: Iterable[Check] = DEFAULT_CHECKS,
        rule_cycle_months: int | None = None,
    ):
        self.checks = tuple(checks)
        self.rule_cycle_months = rule_cycle_months or get_settings().rule_cycle_months

    def inspect(
        self,
        detail: DetailResult,
        bundle: RuleBundle,
        employee: EmployeeSnapshot | None = None,
        period: Period | None = None,
    ) -> list[IrregularityFinding]:
        ctx = InspectionContext(
            detail=detail,
            bundle=bundle,
            employee=employee,
            period=period,
            rule_cycle_months=self.rule_cycle_months,
        )
        findings: list[IrregularityFinding] = []
        for check in self.checks:
            for finding in check(ctx):
                if finding.employee_id is None:
                    finding = replace(finding, employee_id=detail.employee_id)
                findings.append(finding)
        return findings
