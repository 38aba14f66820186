"""Irregularity API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query

from payroll_execution.api.dependencies import CurrentActor, DbSession, IrregularityServiceDep
from payroll_execution.api.schemas import (
    ErrorResponse,
    IrregularityListResponse,
    IrregularityResponse,
    ReasonRequest,
    ResolveRequest,
)

router = APIRouter(prefix="/irregularities", tags=["irregularities"])

IrregularityId = Annotated[UUID, Path()]


@router.get("", response_model=IrregularityListResponse)
async def list_irregularities(
    actor: CurrentActor,
    service: IrregularityServiceDep,
    run_id: UUID | None = None,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    severity: str | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 50,
) -> IrregularityListResponse:
    items, total = await service.list_irregularities(
        run_id=run_id,
        status=status_filter,
        severity=severity,
        page=page,
        page_size=page_size,
        viewer=actor,
    )
    return IrregularityListResponse(
        items=[IrregularityResponse.model_validate(i) for i in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/{irregularity_id}",
    response_model=IrregularityResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_irregularity(
    actor: CurrentActor, service: IrregularityServiceDep, irregularity_id: IrregularityId
) -> IrregularityResponse:
    """Escalated irregularities are visible to managers only."""
    irregularity = await service.get_irregularity(irregularity_id, viewer=actor)
    return IrregularityResponse.model_validate(irregularity)


@router.post(
    "/{irregularity_id}/escalate",
    response_model=IrregularityResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def escalate_irregularity(
    db: DbSession,
    actor: CurrentActor,
    service: IrregularityServiceDep,
    irregularity_id: IrregularityId,
    payload: ReasonRequest,
) -> IrregularityResponse:
    irregularity = await service.escalate(irregularity_id, payload.reason, actor)
    await db.commit()
    return IrregularityResponse.model_validate(irregularity)


@router.post(
    "/{irregularity_id}/resolve",
    response_model=IrregularityResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def resolve_irregularity(
    db: DbSession,
    actor: CurrentActor,
    service: IrregularityServiceDep,
    irregularity_id: IrregularityId,
    payload: ResolveRequest,
) -> IrregularityResponse:
    """Close an irregularity; notes are mandatory, adjusted needs a value."""
    irregularity = await service.resolve(
        irregularity_id,
        actor,
        action=payload.action,
        notes=payload.notes,
        adjusted_value=payload.adjusted_value,
        line_item_id=payload.line_item_id,
    )
    await db.commit()
    return IrregularityResponse.model_validate(irregularity)
