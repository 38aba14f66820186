"""Payslip API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path

from payroll_execution.api.dependencies import CurrentActor, DbSession, PayslipServiceDep
from payroll_execution.api.schemas import (
    ErrorResponse,
    PayslipListResponse,
    PayslipResponse,
    ReasonRequest,
)

router = APIRouter(prefix="/payslips", tags=["payslips"])


@router.get("", response_model=PayslipListResponse)
async def list_payslips(service: PayslipServiceDep, run_id: UUID) -> PayslipListResponse:
    """List payslips of one run."""
    payslips = await service.list_payslips(run_id)
    return PayslipListResponse(
        items=[PayslipResponse.model_validate(p) for p in payslips],
        total=len(payslips),
    )


@router.get(
    "/{payslip_id}",
    response_model=PayslipResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_payslip(
    service: PayslipServiceDep, payslip_id: Annotated[UUID, Path()]
) -> PayslipResponse:
    return PayslipResponse.model_validate(await service.get_payslip(payslip_id))


@router.post(
    "/{payslip_id}/dispute",
    response_model=PayslipResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def dispute_payslip(
    db: DbSession,
    actor: CurrentActor,
    service: PayslipServiceDep,
    payslip_id: Annotated[UUID, Path()],
    payload: ReasonRequest,
) -> PayslipResponse:
    payslip = await service.dispute_payslip(payslip_id, payload.reason, actor)
    await db.commit()
    return PayslipResponse.model_validate(payslip)
