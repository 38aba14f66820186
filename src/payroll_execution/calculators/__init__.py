"""Payroll calculation pipeline."""

from payroll_execution.calculators.engine import PayCalculator
from payroll_execution.calculators.line_builder import LineItemBuilder
from payroll_execution.calculators.rule_resolver import RuleResolver, RuleSet
from payroll_execution.calculators.tax_calculator import TaxCalculator
from payroll_execution.calculators.types import DetailResult, Period, RuleBundle

__all__ = [
    "DetailResult",
    "LineItemBuilder",
    "PayCalculator",
    "Period",
    "RuleBundle",
    "RuleResolver",
    "RuleSet",
    "TaxCalculator",
]
