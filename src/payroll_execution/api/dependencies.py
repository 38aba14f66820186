"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_execution.services.benefit_service import BenefitService
from payroll_execution.services.collaborators import Actor, Role
from payroll_execution.services.irregularity_service import IrregularityService
from payroll_execution.services.pay_run_service import PayrollRunService
from payroll_execution.services.payslip_service import PayslipService


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency.

    Routes commit explicitly; anything left uncommitted is rolled back.
    """
    async with request.app.state.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_actor(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_roles: Annotated[str | None, Header()] = None,
) -> Actor:
    """Build the acting user from identity headers."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-ID header is required",
        )
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-User-ID format",
        )
    roles = frozenset(
        role.strip().lower() for role in (x_user_roles or "").split(",") if role.strip()
    )
    return Actor(user_id=user_id, roles=roles & Role.ALL)


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
CurrentActor = Annotated[Actor, Depends(get_actor)]


def get_run_service(request: Request, db: DbSession) -> PayrollRunService:
    state = request.app.state
    return PayrollRunService(db, state.employee_directory, state.period_facts, settings=state.settings)


def get_benefit_service(request: Request, db: DbSession) -> BenefitService:
    return BenefitService(db, request.app.state.settings)


def get_irregularity_service(request: Request, db: DbSession) -> IrregularityService:
    return IrregularityService(db, settings=request.app.state.settings)


def get_payslip_service(request: Request, db: DbSession) -> PayslipService:
    return PayslipService(db, request.app.state.settings)


RunServiceDep = Annotated[PayrollRunService, Depends(get_run_service)]
BenefitServiceDep = Annotated[BenefitService, Depends(get_benefit_service)]
IrregularityServiceDep = Annotated[IrregularityService, Depends(get_irregularity_service)]
PayslipServiceDep = Annotated[PayslipService, Depends(get_payslip_service)]
