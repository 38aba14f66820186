"""API routes."""

from payroll_execution.api.routes.benefits import (
    signing_bonuses_router,
    termination_benefits_router,
)
from payroll_execution.api.routes.health import router as health_router
from payroll_execution.api.routes.irregularities import router as irregularities_router
from payroll_execution.api.routes.payroll_runs import router as payroll_runs_router
from payroll_execution.api.routes.payslips import router as payslips_router

__all__ = [
    "health_router",
    "irregularities_router",
    "payroll_runs_router",
    "payslips_router",
    "signing_bonuses_router",
    "termination_benefits_router",
]
