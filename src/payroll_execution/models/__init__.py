"""ORM models."""

from payroll_execution.models.base import Base, Money, TimestampMixin, utcnow
from payroll_execution.models.benefits import SigningBonus, TerminationBenefit
from payroll_execution.models.irregularity import Irregularity
from payroll_execution.models.payroll import (
    AuditEvent,
    EmployeePayrollDetail,
    PayrollLineItem,
    PayrollRun,
    Payslip,
)
from payroll_execution.models.rules import PayrollRule, PayrollRuleVersion

__all__ = [
    "AuditEvent",
    "Base",
    "EmployeePayrollDetail",
    "Irregularity",
    "Money",
    "PayrollLineItem",
    "PayrollRule",
    "PayrollRuleVersion",
    "PayrollRun",
    "Payslip",
    "SigningBonus",
    "TerminationBenefit",
    "TimestampMixin",
    "utcnow",
]
