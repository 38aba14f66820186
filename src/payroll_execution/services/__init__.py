"""Payroll execution services."""

from payroll_execution.services.benefit_service import BenefitService
from payroll_execution.services.collaborators import (
    Actor,
    EmployeeDirectory,
    InMemoryEmployeeDirectory,
    InMemoryPeriodFacts,
    PeriodFactsProvider,
    Role,
)
from payroll_execution.services.irregularity_detector import IrregularityDetector
from payroll_execution.services.irregularity_service import IrregularityService
from payroll_execution.services.locking_service import LockingService
from payroll_execution.services.pay_run_service import PayrollRunService
from payroll_execution.services.payslip_service import PayslipService
from payroll_execution.services.rule_repository import RuleRepository
from payroll_execution.services.state_machine import (
    PayrollRunStateMachine,
    PayrollRunStatus,
)

__all__ = [
    "Actor",
    "BenefitService",
    "EmployeeDirectory",
    "InMemoryEmployeeDirectory",
    "InMemoryPeriodFacts",
    "IrregularityDetector",
    "IrregularityService",
    "LockingService",
    "PayrollRunService",
    "PayrollRunStateMachine",
    "PayrollRunStatus",
    "PayslipService",
    "PeriodFactsProvider",
    "Role",
    "RuleRepository",
]
