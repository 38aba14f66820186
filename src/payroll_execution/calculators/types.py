"""Type definitions for the calculation pipeline."""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

ZERO = Decimal("0")

_PERIOD_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


class LineCategory(str, Enum):
    """Where a line sits in the gross-to-net computation."""

    EARNING = "earning"
    DEDUCTION = "deduction"
    EMPLOYER_CONTRIBUTION = "employer_contribution"


class LineKind(str, Enum):
    """Pay line item kinds."""

    BASE_SALARY = "base_salary"
    ALLOWANCE = "allowance"
    SIGNING_BONUS = "signing_bonus"
    TERMINATION_BENEFIT = "termination_benefit"
    REFUND = "refund"
    OVERTIME = "overtime"
    TAX = "tax"
    INSURANCE = "insurance"
    PENALTY = "penalty"
    MISCONDUCT = "misconduct"
    UNPAID_LEAVE = "unpaid_leave"
    LATENESS = "lateness"
    MISSING_WORK = "missing_work"
    EMPLOYER_INSURANCE = "employer_insurance"


class RuleKind(str, Enum):
    TAX = "tax"
    INSURANCE = "insurance"
    PAY_GRADE = "pay_grade"


@dataclass(frozen=True, order=True)
class Period:
    """Calendar-month pay period, written ``YYYY-MM``."""

    year: int
    month: int

    @classmethod
    def parse(cls, value: str) -> Period:
        match = _PERIOD_RE.match(value or "")
        if match is None:
            raise ValueError(f"Period must be formatted YYYY-MM, got {value!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    @classmethod
    def containing(cls, day: date) -> Period:
        return cls(day.year, day.month)

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def days(self) -> int:
        return calendar.monthrange(self.year, self.month)[1]

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        return date(self.year, self.month, self.days)

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def months_since(self, day: date) -> int:
        """Whole months between ``day`` and the start of this period."""
        months = (self.year - day.year) * 12 + (self.month - day.month)
        if self.start.day < day.day:
            months -= 1
        return months

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class EmployeeSnapshot:
    """Read-only employee master data as of run creation."""

    employee_id: UUID
    base_salary: Decimal | None
    pay_grade: str
    jurisdiction: str
    hire_date: date
    termination_date: date | None = None
    contract_type: str = "full_time"
    name: str | None = None
    entity: str | None = None
    department: str | None = None
    bank_account_present: bool = True


@dataclass(frozen=True)
class FactItem:
    """A named monetary attendance/leave fact (penalty, refund, ...)."""

    name: str
    amount: Decimal
    reference: str | None = None


@dataclass(frozen=True)
class BenefitItem:
    """Approved sub-ledger entry offered to the calculator."""

    source_id: UUID
    kind: LineKind
    name: str
    amount: Decimal
    effective_date: date


@dataclass(frozen=True)
class PeriodFacts:
    """Pre-aggregated attendance/leave facts for one employee and period."""

    unpaid_leave_days: Decimal = ZERO
    penalties: tuple[FactItem, ...] = ()
    misconduct_deductions: tuple[FactItem, ...] = ()
    refunds: tuple[FactItem, ...] = ()
    overtime_minutes: int = 0
    late_minutes: int = 0
    missing_work_minutes: int = 0
    signing_bonuses: tuple[BenefitItem, ...] = ()
    termination_benefits: tuple[BenefitItem, ...] = ()


@dataclass(frozen=True)
class RuleVersion:
    """Immutable snapshot of one effective-dated rule version."""

    rule_version_id: UUID
    kind: RuleKind
    key: str
    name: str
    version: int
    effective_start: date
    effective_end: date | None
    payload: Mapping[str, Any]

    def covers(self, day: date) -> bool:
        if self.effective_start > day:
            return False
        return self.effective_end is None or self.effective_end >= day


@dataclass(frozen=True)
class TaxBracket:
    """Tax bracket; ``max_amount`` None means no upper limit."""

    min_amount: Decimal
    max_amount: Decimal | None
    rate: Decimal  # As decimal, e.g., 0.22 for 22%
    flat_amount: Decimal = ZERO

    def contains(self, amount: Decimal) -> bool:
        if amount < self.min_amount:
            return False
        return self.max_amount is None or amount <= self.max_amount


@dataclass(frozen=True)
class TaxRule:
    """Resolved tax rule.

    ``method`` is ``marginal`` (each slice taxed at its bracket rate) or
    ``flat`` (the whole taxable amount taxed at the rate of the bracket it
    falls in).
    """

    version: RuleVersion
    method: str
    brackets: tuple[TaxBracket, ...]
    exemption: Decimal = ZERO


@dataclass(frozen=True)
class InsuranceBracket:
    min_salary: Decimal
    max_salary: Decimal | None
    employee_rate: Decimal | None = None  # As decimal
    employer_rate: Decimal | None = None
    fixed_amount: Decimal | None = None

    def contains(self, amount: Decimal) -> bool:
        if amount < self.min_salary:
            return False
        return self.max_salary is None or amount <= self.max_salary


@dataclass(frozen=True)
class InsuranceRule:
    version: RuleVersion
    brackets: tuple[InsuranceBracket, ...]


@dataclass(frozen=True)
class Allowance:
    code: str
    name: str
    amount: Decimal


@dataclass(frozen=True)
class PayGradeRule:
    version: RuleVersion
    grade: str
    allowances: tuple[Allowance, ...] = ()
    standard_working_days: int | None = None


@dataclass(frozen=True)
class RuleBundle:
    """Rules resolved for one employee and period (possibly partial)."""

    tax: TaxRule | None = None
    insurance: InsuranceRule | None = None
    pay_grade: PayGradeRule | None = None

    @property
    def missing(self) -> list[str]:
        missing = []
        if self.tax is None:
            missing.append(RuleKind.TAX.value)
        if self.insurance is None:
            missing.append(RuleKind.INSURANCE.value)
        if self.pay_grade is None:
            missing.append(RuleKind.PAY_GRADE.value)
        return missing

    @property
    def is_complete(self) -> bool:
        return not self.missing

    @property
    def versions(self) -> list[RuleVersion]:
        return [r.version for r in (self.tax, self.insurance, self.pay_grade) if r is not None]


@dataclass
class LineCandidate:
    """A candidate line item before persistence."""

    category: LineCategory
    kind: LineKind
    code: str
    name: str
    amount: Decimal

    # Traceability
    rule_version_id: UUID | None = None
    source_id: UUID | None = None
    expected_nonzero: bool = False
    explanation: str | None = None

    def to_canonical_dict(self) -> dict[str, Any]:
        """Return canonical dict for hashing (deterministic ordering)."""
        return {
            "category": self.category.value,
            "kind": self.kind.value,
            "code": self.code,
            "rule_version_id": str(self.rule_version_id) if self.rule_version_id else None,
            "source_id": str(self.source_id) if self.source_id else None,
            "amount": str(self.amount),
        }


@dataclass
class DetailResult:
    """Result of calculating pay for one employee."""

    employee_id: UUID
    calculation_id: UUID
    base_salary: Decimal
    lines: list[LineCandidate]
    total_gross: Decimal
    total_deductions: Decimal
    net_pay: Decimal
    employer_contributions: Decimal
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def lines_in(self, category: LineCategory) -> list[LineCandidate]:
        return [line for line in self.lines if line.category == category]

    def deductions_by_kind(self) -> dict[LineKind, Decimal]:
        totals: dict[LineKind, Decimal] = {}
        for line in self.lines_in(LineCategory.DEDUCTION):
            totals[line.kind] = totals.get(line.kind, ZERO) + line.amount
        return totals
