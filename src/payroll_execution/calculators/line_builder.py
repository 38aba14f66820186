"""Line item builder with minor-unit rounding and deterministic hashing."""

from __future__ import annotations

import hashlib
import json
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from payroll_execution.calculators.types import (
    ZERO,
    LineCandidate,
    LineCategory,
    LineKind,
)


class LineItemBuilder:
    """Builds line items rounded to the currency's minor unit.

    Sign conventions:
    - EARNING: positive, except TERMINATION_BENEFIT which keeps its sign
    - DEDUCTION: positive magnitude, subtracted from gross
    - EMPLOYER_CONTRIBUTION: positive, excluded from net (liability)

    Rounding: every line is quantized with ROUND_HALF_UP at creation and
    totals are sums of the already-rounded lines, so a displayed total always
    equals the sum of displayed lines.
    """

    OUTPUT_PRECISION = Decimal("0.01")

    @staticmethod
    def round_money(amount: Decimal, precision: Decimal | None = None) -> Decimal:
        """Round amount to the minor unit (half-up)."""
        return amount.quantize(precision or LineItemBuilder.OUTPUT_PRECISION, rounding=ROUND_HALF_UP)

    @staticmethod
    def compute_line_hash(line: LineCandidate) -> str:
        """Compute deterministic hash for a line item."""
        canonical = line.to_canonical_dict()
        json_str = json.dumps(canonical, sort_keys=True)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]

    @staticmethod
    def create_earning_line(
        kind: LineKind,
        code: str,
        name: str,
        amount: Decimal,
        rule_version_id: UUID | None = None,
        source_id: UUID | None = None,
        expected_nonzero: bool = False,
        explanation: str | None = None,
        precision: Decimal | None = None,
    ) -> LineCandidate:
        """Create an earning line item (positive unless a termination benefit)."""
        if kind != LineKind.TERMINATION_BENEFIT:
            amount = abs(amount)
        return LineCandidate(
            category=LineCategory.EARNING,
            kind=kind,
            code=code,
            name=name,
            amount=LineItemBuilder.round_money(amount, precision),
            rule_version_id=rule_version_id,
            source_id=source_id,
            expected_nonzero=expected_nonzero,
            explanation=explanation,
        )

    @staticmethod
    def create_deduction_line(
        kind: LineKind,
        code: str,
        name: str,
        amount: Decimal,
        rule_version_id: UUID | None = None,
        expected_nonzero: bool = False,
        explanation: str | None = None,
        precision: Decimal | None = None,
    ) -> LineCandidate:
        """Create a deduction line item (stored as a positive magnitude)."""
        return LineCandidate(
            category=LineCategory.DEDUCTION,
            kind=kind,
            code=code,
            name=name,
            amount=LineItemBuilder.round_money(abs(amount), precision),
            rule_version_id=rule_version_id,
            expected_nonzero=expected_nonzero,
            explanation=explanation,
        )

    @staticmethod
    def create_employer_contribution_line(
        code: str,
        name: str,
        amount: Decimal,
        rule_version_id: UUID | None = None,
        explanation: str | None = None,
        precision: Decimal | None = None,
    ) -> LineCandidate:
        """Create an employer contribution line (liability, not part of net)."""
        return LineCandidate(
            category=LineCategory.EMPLOYER_CONTRIBUTION,
            kind=LineKind.EMPLOYER_INSURANCE,
            code=code,
            name=name,
            amount=LineItemBuilder.round_money(abs(amount), precision),
            rule_version_id=rule_version_id,
            explanation=explanation,
        )

    @staticmethod
    def calculate_gross_from_lines(lines: list[LineCandidate]) -> Decimal:
        """GROSS = Σ(EARNING)"""
        return sum(
            (line.amount for line in lines if line.category == LineCategory.EARNING),
            ZERO,
        )

    @staticmethod
    def calculate_deductions_from_lines(lines: list[LineCandidate]) -> Decimal:
        """DEDUCTIONS = Σ(DEDUCTION)"""
        return sum(
            (line.amount for line in lines if line.category == LineCategory.DEDUCTION),
            ZERO,
        )

    @staticmethod
    def calculate_employer_from_lines(lines: list[LineCandidate]) -> Decimal:
        return sum(
            (
                line.amount
                for line in lines
                if line.category == LineCategory.EMPLOYER_CONTRIBUTION
            ),
            ZERO,
        )

    @staticmethod
    def calculate_net_from_lines(lines: list[LineCandidate]) -> Decimal:
        """NET = GROSS - DEDUCTIONS, never clamped.

        Note: EMPLOYER_CONTRIBUTION is excluded from net calculation.
        """
        return LineItemBuilder.calculate_gross_from_lines(
            lines
        ) - LineItemBuilder.calculate_deductions_from_lines(lines)

    @staticmethod
    def validate_line_signs(lines: list[LineCandidate]) -> list[str]:
        """Validate that all line items have correct signs.

        Returns list of error messages (empty if all valid).
        """
        errors: list[str] = []

        for i, line in enumerate(lines):
            if line.kind == LineKind.TERMINATION_BENEFIT:
                continue  # Signed by definition
            if line.amount < 0:
                errors.append(
                    f"Line {i} ({line.category.value}/{line.kind.value}) has negative "
                    f"amount {line.amount}, expected positive"
                )

        return errors

    @staticmethod
    def sum_by_kind(lines: list[LineCandidate]) -> dict[LineKind, Decimal]:
        """Sum line amounts by kind."""
        totals: dict[LineKind, Decimal] = {}
        for line in lines:
            totals[line.kind] = totals.get(line.kind, ZERO) + line.amount
        return totals
