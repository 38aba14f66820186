"""Tax and insurance calculation from resolved rule configs."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from payroll_execution.calculators.line_builder import LineItemBuilder
from payroll_execution.calculators.types import (
    ZERO,
    InsuranceBracket,
    InsuranceRule,
    TaxBracket,
    TaxRule,
)


@dataclass(frozen=True)
class InsuranceContribution:
    employee: Decimal
    employer: Decimal
    bracket: InsuranceBracket | None


class TaxCalculator:
    """Calculates tax and social insurance from resolved rules.

    The bracket semantics belong to each tax rule, not to the calculator:
    - ``marginal``: each slice of income is taxed at its own bracket's rate
    - ``flat``: the whole taxable amount is taxed at the rate of the bracket
      it falls in, plus that bracket's flat amount

    Insurance brackets are matched on the insurable wage and contribute either
    a percentage (``employee_rate``) or a ``fixed_amount``.
    """

    def __init__(self, precision: Decimal | None = None):
        self.precision = precision

    def calculate_tax(self, income: Decimal, rule: TaxRule) -> Decimal:
        """Calculate tax on income after the rule's exemption."""
        taxable = income - rule.exemption
        if taxable <= 0 or not rule.brackets:
            return ZERO

        if rule.method == "flat":
            tax = self._calculate_flat_tax(taxable, rule.brackets)
        else:
            tax = self._calculate_marginal_tax(taxable, rule.brackets)
        return LineItemBuilder.round_money(tax, self.precision)

    def _calculate_marginal_tax(
        self, taxable: Decimal, brackets: tuple[TaxBracket, ...]
    ) -> Decimal:
        """Sum of each bracket's slice times its rate."""
        total_tax = ZERO

        for bracket in brackets:
            if taxable <= bracket.min_amount:
                break
            upper = taxable if bracket.max_amount is None else min(taxable, bracket.max_amount)
            slice_amount = upper - bracket.min_amount
            if slice_amount > 0:
                total_tax += slice_amount * bracket.rate

        return total_tax

    def _calculate_flat_tax(
        self, taxable: Decimal, brackets: tuple[TaxBracket, ...]
    ) -> Decimal:
        """Whole amount at the containing bracket's rate."""
        bracket = self.find_bracket(taxable, brackets)
        if bracket is None:
            return ZERO
        return taxable * bracket.rate + bracket.flat_amount

    @staticmethod
    def find_bracket(amount: Decimal, brackets: tuple[TaxBracket, ...]) -> TaxBracket | None:
        # Highest matching bracket wins when boundaries touch
        matching = [b for b in brackets if b.contains(amount)]
        return matching[-1] if matching else None

    def calculate_insurance(
        self, insurable_wage: Decimal, rule: InsuranceRule
    ) -> InsuranceContribution:
        """Employee and employer contribution for the matching bracket."""
        bracket = next((b for b in rule.brackets if b.contains(insurable_wage)), None)
        if bracket is None or insurable_wage <= 0:
            return InsuranceContribution(ZERO, ZERO, bracket)

        if bracket.fixed_amount is not None:
            employee = bracket.fixed_amount
        else:
            employee = insurable_wage * (bracket.employee_rate or ZERO)
        employer = insurable_wage * (bracket.employer_rate or ZERO)

        return InsuranceContribution(
            employee=LineItemBuilder.round_money(employee, self.precision),
            employer=LineItemBuilder.round_money(employer, self.precision),
            bracket=bracket,
        )
