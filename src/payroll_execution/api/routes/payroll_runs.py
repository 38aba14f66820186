"""Payroll run API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from payroll_execution.api.dependencies import CurrentActor, DbSession, RunServiceDep
from payroll_execution.api.schemas import (
    DetailListResponse,
    DetailResponse,
    ErrorResponse,
    LockResponse,
    PayrollRunCreate,
    PayrollRunEdit,
    PayrollRunListResponse,
    PayrollRunResponse,
    PayslipReportResponse,
    ReasonRequest,
)
from payroll_execution.services.pay_run_service import FinanceApprovalOutcome

router = APIRouter(prefix="/payroll-runs", tags=["payroll-runs"])

RunId = Annotated[UUID, Path()]


def _lock_response(outcome: FinanceApprovalOutcome) -> LockResponse:
    return LockResponse(
        run=PayrollRunResponse.model_validate(outcome.run),
        payslips=PayslipReportResponse.model_validate(outcome.payslips),
    )


# ============================================================================
# Payroll run CRUD
# ============================================================================


@router.post(
    "",
    response_model=PayrollRunResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def create_payroll_run(
    db: DbSession,
    actor: CurrentActor,
    service: RunServiceDep,
    payload: PayrollRunCreate,
) -> PayrollRunResponse:
    """Create a draft run and snapshot its population."""
    run = await service.create_run(actor, payload.period, payload.entity, payload.department)
    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.get("", response_model=PayrollRunListResponse)
async def list_payroll_runs(
    service: RunServiceDep,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    period: str | None = None,
    entity: str | None = None,
) -> PayrollRunListResponse:
    """List payroll runs with optional status/period/entity filters."""
    runs, total = await service.list_runs(
        status=status_filter, period=period, entity=entity, page=page, page_size=page_size
    )
    return PayrollRunListResponse(
        items=[PayrollRunResponse.model_validate(r) for r in runs],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/{run_id}",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_payroll_run(service: RunServiceDep, run_id: RunId) -> PayrollRunResponse:
    run = await service.get_run(run_id, load_details=False)
    return PayrollRunResponse.model_validate(run)


@router.patch(
    "/{run_id}",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def edit_payroll_run(
    db: DbSession,
    actor: CurrentActor,
    service: RunServiceDep,
    run_id: RunId,
    payload: PayrollRunEdit,
) -> PayrollRunResponse:
    """Edit a draft or rejected run."""
    run = await service.edit_run(run_id, actor, **payload.model_dump())
    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.get(
    "/{run_id}/details",
    response_model=DetailListResponse,
    responses={404: {"model": ErrorResponse}},
)
async def list_payroll_run_details(service: RunServiceDep, run_id: RunId) -> DetailListResponse:
    """List per-employee detail records with their line items."""
    details = await service.list_details(run_id)
    return DetailListResponse(
        items=[DetailResponse.model_validate(d) for d in details],
        total=len(details),
    )


# ============================================================================
# Transitions
# ============================================================================


@router.post(
    "/{run_id}/submit",
    response_model=PayrollRunResponse,
    responses={409: {"model": ErrorResponse}, 504: {"model": ErrorResponse}},
)
async def submit_payroll_run(
    db: DbSession, actor: CurrentActor, service: RunServiceDep, run_id: RunId
) -> PayrollRunResponse:
    """Calculate every employee and send the run to manager approval."""
    run = await service.submit_run(run_id, actor)
    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{run_id}/manager-approve",
    response_model=PayrollRunResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def manager_approve_payroll_run(
    db: DbSession, actor: CurrentActor, service: RunServiceDep, run_id: RunId
) -> PayrollRunResponse:
    run = await service.manager_approve(run_id, actor)
    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{run_id}/request-finance-approval",
    response_model=PayrollRunResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def request_finance_approval(
    db: DbSession, actor: CurrentActor, service: RunServiceDep, run_id: RunId
) -> PayrollRunResponse:
    run = await service.request_finance_approval(run_id, actor)
    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{run_id}/finance-approve",
    response_model=LockResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def finance_approve_payroll_run(
    db: DbSession, actor: CurrentActor, service: RunServiceDep, run_id: RunId
) -> LockResponse:
    """Lock the run, settle sub-ledger items and generate payslips."""
    outcome = await service.finance_approve(run_id, actor)
    await db.commit()
    return _lock_response(outcome)


@router.post(
    "/{run_id}/freeze",
    response_model=LockResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def freeze_payroll_run(
    db: DbSession, actor: CurrentActor, service: RunServiceDep, run_id: RunId
) -> LockResponse:
    outcome = await service.freeze_run(run_id, actor)
    await db.commit()
    return _lock_response(outcome)


@router.post(
    "/{run_id}/unfreeze",
    response_model=PayrollRunResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def unfreeze_payroll_run(
    db: DbSession,
    actor: CurrentActor,
    service: RunServiceDep,
    run_id: RunId,
    payload: ReasonRequest,
) -> PayrollRunResponse:
    """Return a locked run to approved; the reason is mandatory."""
    run = await service.unfreeze_run(run_id, payload.reason, actor)
    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{run_id}/reject",
    response_model=PayrollRunResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def reject_payroll_run(
    db: DbSession,
    actor: CurrentActor,
    service: RunServiceDep,
    run_id: RunId,
    payload: ReasonRequest,
) -> PayrollRunResponse:
    run = await service.reject_run(run_id, payload.reason, actor)
    await db.commit()
    return PayrollRunResponse.model_validate(run)
