"""Rule resolution against an immutable, effective-dated rule set."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping

from payroll_execution.calculators.types import (
    ZERO,
    Allowance,
    EmployeeSnapshot,
    InsuranceBracket,
    InsuranceRule,
    PayGradeRule,
    Period,
    RuleBundle,
    RuleKind,
    RuleVersion,
    TaxBracket,
    TaxRule,
)
from payroll_execution.exceptions import ConfigurationMissingError

TAX_METHODS = ("marginal", "flat")


def _decimal(value: Any, default: Decimal | None = None) -> Decimal | None:
    if value is None or value == "":
        return default
    return Decimal(str(value))


@dataclass(frozen=True)
class RuleSet:
    """Immutable snapshot of every rule version visible to a calculation.

    Built once per submit; configuration edits made afterwards do not affect a
    calculation that already holds a RuleSet.
    """

    versions: tuple[RuleVersion, ...]

    @classmethod
    def of(cls, versions: Iterable[RuleVersion]) -> RuleSet:
        return cls(tuple(versions))

    def candidates(self, kind: RuleKind, key: str) -> list[RuleVersion]:
        return [v for v in self.versions if v.kind == kind and v.key == key]


def select_version(candidates: Iterable[RuleVersion], period: Period) -> RuleVersion | None:
    """Pick the version whose effective range contains the period start.

    Overlaps resolve to the most recently effective version (latest
    effective_start, then highest version number), independent of input order.
    """
    active = [v for v in candidates if v.covers(period.start)]
    if not active:
        return None
    return max(active, key=lambda v: (v.effective_start, v.version))


def parse_tax_rule(version: RuleVersion) -> TaxRule:
    """Parse a tax payload.

    {
        "method": "marginal" | "flat",
        "exemption": "0",
        "brackets": [{"min": "0", "max": "15000", "rate": "0.10", "flat": "0"}, ...]
    }
    """
    payload = version.payload
    method = payload.get("method", "marginal")
    if method not in TAX_METHODS:
        raise ValueError(f"Unknown tax method {method!r} in rule {version.name}")

    brackets = tuple(
        sorted(
            (
                TaxBracket(
                    min_amount=_decimal(b.get("min"), ZERO),
                    max_amount=_decimal(b.get("max")),
                    rate=_decimal(b.get("rate"), ZERO),
                    flat_amount=_decimal(b.get("flat"), ZERO),
                )
                for b in payload.get("brackets", [])
            ),
            key=lambda b: b.min_amount,
        )
    )
    return TaxRule(
        version=version,
        method=method,
        brackets=brackets,
        exemption=_decimal(payload.get("exemption"), ZERO),
    )


def parse_insurance_rule(version: RuleVersion) -> InsuranceRule:
    """Parse an insurance payload.

    {"brackets": [{"min_salary": "0", "max_salary": "9400",
                   "employee_rate": "0.11", "employer_rate": "0.1875"}]}

    A bracket may carry ``fixed_amount`` instead of ``employee_rate``.
    """
    brackets = tuple(
        InsuranceBracket(
            min_salary=_decimal(b.get("min_salary"), ZERO),
            max_salary=_decimal(b.get("max_salary")),
            employee_rate=_decimal(b.get("employee_rate")),
            employer_rate=_decimal(b.get("employer_rate")),
            fixed_amount=_decimal(b.get("fixed_amount")),
        )
        for b in version.payload.get("brackets", [])
    )
    return InsuranceRule(version=version, brackets=brackets)


def parse_pay_grade_rule(version: RuleVersion) -> PayGradeRule:
    payload: Mapping[str, Any] = version.payload
    allowances = tuple(
        Allowance(code=a["code"], name=a.get("name", a["code"]), amount=_decimal(a.get("amount"), ZERO))
        for a in payload.get("allowances", [])
    )
    working_days = payload.get("standard_working_days")
    return PayGradeRule(
        version=version,
        grade=version.key,
        allowances=allowances,
        standard_working_days=int(working_days) if working_days else None,
    )


class RuleResolver:
    """Resolves the tax, insurance and pay-grade rules for an employee.

    Selection:
    - tax and insurance by the employee's jurisdiction
    - pay grade by the employee's grade
    - effective range must contain the period start; latest effective wins
    """

    def __init__(self, rule_set: RuleSet):
        self.rule_set = rule_set

    def resolve(self, employee: EmployeeSnapshot, period: Period) -> RuleBundle:
        """Resolve a complete rule bundle.

        Raises:
            ConfigurationMissingError: If any rule kind has no applicable
                version. The partially resolved bundle is attached.
        """
        tax = select_version(self.rule_set.candidates(RuleKind.TAX, employee.jurisdiction), period)
        insurance = select_version(
            self.rule_set.candidates(RuleKind.INSURANCE, employee.jurisdiction), period
        )
        pay_grade = select_version(
            self.rule_set.candidates(RuleKind.PAY_GRADE, employee.pay_grade), period
        )

        bundle = RuleBundle(
            tax=parse_tax_rule(tax) if tax else None,
            insurance=parse_insurance_rule(insurance) if insurance else None,
            pay_grade=parse_pay_grade_rule(pay_grade) if pay_grade else None,
        )
        if not bundle.is_complete:
            raise ConfigurationMissingError(
                bundle.missing,
                employee_id=employee.employee_id,
                partial_bundle=bundle,
            )
        return bundle
