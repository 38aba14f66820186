"""Signing bonus and termination benefit API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from payroll_execution.api.dependencies import BenefitServiceDep, CurrentActor, DbSession
from payroll_execution.api.schemas import (
    BulkApproveResponse,
    ErrorResponse,
    ReasonRequest,
    SigningBonusCreate,
    SigningBonusEdit,
    SigningBonusListResponse,
    SigningBonusResponse,
    TerminationBenefitCreate,
    TerminationBenefitEdit,
    TerminationBenefitListResponse,
    TerminationBenefitResponse,
)

signing_bonuses_router = APIRouter(prefix="/signing-bonuses", tags=["signing-bonuses"])
termination_benefits_router = APIRouter(
    prefix="/termination-benefits", tags=["termination-benefits"]
)

ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


# ============================================================================
# Signing bonuses
# ============================================================================


@signing_bonuses_router.post(
    "", response_model=SigningBonusResponse, status_code=status.HTTP_201_CREATED, responses=ERRORS
)
async def create_signing_bonus(
    db: DbSession, actor: CurrentActor, service: BenefitServiceDep, payload: SigningBonusCreate
) -> SigningBonusResponse:
    bonus = await service.create_signing_bonus(actor, **payload.model_dump(exclude_unset=True))
    await db.commit()
    return SigningBonusResponse.model_validate(bonus)


@signing_bonuses_router.get("", response_model=SigningBonusListResponse)
async def list_signing_bonuses(
    service: BenefitServiceDep,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    employee_id: UUID | None = None,
) -> SigningBonusListResponse:
    items, total = await service.list_signing_bonuses(status_filter, employee_id, page, page_size)
    return SigningBonusListResponse(
        items=[SigningBonusResponse.model_validate(b) for b in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@signing_bonuses_router.post("/bulk-approve", response_model=BulkApproveResponse, responses=ERRORS)
async def bulk_approve_signing_bonuses(
    db: DbSession, actor: CurrentActor, service: BenefitServiceDep
) -> BulkApproveResponse:
    """Approve every pending signing bonus."""
    approved = await service.bulk_approve_signing_bonuses(actor)
    await db.commit()
    return BulkApproveResponse(approved_ids=approved, count=len(approved))


@signing_bonuses_router.get("/{bonus_id}", response_model=SigningBonusResponse, responses=ERRORS)
async def get_signing_bonus(
    service: BenefitServiceDep, bonus_id: Annotated[UUID, Path()]
) -> SigningBonusResponse:
    return SigningBonusResponse.model_validate(await service.get_signing_bonus(bonus_id))


@signing_bonuses_router.patch("/{bonus_id}", response_model=SigningBonusResponse, responses=ERRORS)
async def edit_signing_bonus(
    db: DbSession,
    actor: CurrentActor,
    service: BenefitServiceDep,
    bonus_id: Annotated[UUID, Path()],
    payload: SigningBonusEdit,
) -> SigningBonusResponse:
    bonus = await service.edit_signing_bonus(
        bonus_id, actor, **payload.model_dump(exclude_unset=True)
    )
    await db.commit()
    return SigningBonusResponse.model_validate(bonus)


@signing_bonuses_router.post(
    "/{bonus_id}/approve", response_model=SigningBonusResponse, responses=ERRORS
)
async def approve_signing_bonus(
    db: DbSession,
    actor: CurrentActor,
    service: BenefitServiceDep,
    bonus_id: Annotated[UUID, Path()],
) -> SigningBonusResponse:
    bonus = await service.approve_signing_bonus(bonus_id, actor)
    await db.commit()
    return SigningBonusResponse.model_validate(bonus)


@signing_bonuses_router.post(
    "/{bonus_id}/reject", response_model=SigningBonusResponse, responses=ERRORS
)
async def reject_signing_bonus(
    db: DbSession,
    actor: CurrentActor,
    service: BenefitServiceDep,
    bonus_id: Annotated[UUID, Path()],
    payload: ReasonRequest,
) -> SigningBonusResponse:
    bonus = await service.reject_signing_bonus(bonus_id, payload.reason, actor)
    await db.commit()
    return SigningBonusResponse.model_validate(bonus)


# ============================================================================
# Termination / resignation benefits
# ============================================================================


@termination_benefits_router.post(
    "",
    response_model=TerminationBenefitResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERRORS,
)
async def create_termination_benefit(
    db: DbSession,
    actor: CurrentActor,
    service: BenefitServiceDep,
    payload: TerminationBenefitCreate,
) -> TerminationBenefitResponse:
    benefit = await service.create_termination_benefit(
        actor, **payload.model_dump(exclude_unset=True)
    )
    await db.commit()
    return TerminationBenefitResponse.model_validate(benefit)


@termination_benefits_router.get("", response_model=TerminationBenefitListResponse)
async def list_termination_benefits(
    service: BenefitServiceDep,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    employee_id: UUID | None = None,
) -> TerminationBenefitListResponse:
    items, total = await service.list_termination_benefits(
        status_filter, employee_id, page, page_size
    )
    return TerminationBenefitListResponse(
        items=[TerminationBenefitResponse.model_validate(b) for b in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@termination_benefits_router.get(
    "/{benefit_id}", response_model=TerminationBenefitResponse, responses=ERRORS
)
async def get_termination_benefit(
    service: BenefitServiceDep, benefit_id: Annotated[UUID, Path()]
) -> TerminationBenefitResponse:
    return TerminationBenefitResponse.model_validate(
        await service.get_termination_benefit(benefit_id)
    )


@termination_benefits_router.patch(
    "/{benefit_id}", response_model=TerminationBenefitResponse, responses=ERRORS
)
async def edit_termination_benefit(
    db: DbSession,
    actor: CurrentActor,
    service: BenefitServiceDep,
    benefit_id: Annotated[UUID, Path()],
    payload: TerminationBenefitEdit,
) -> TerminationBenefitResponse:
    benefit = await service.edit_termination_benefit(
        benefit_id, actor, **payload.model_dump(exclude_unset=True)
    )
    await db.commit()
    return TerminationBenefitResponse.model_validate(benefit)


@termination_benefits_router.post(
    "/{benefit_id}/approve", response_model=TerminationBenefitResponse, responses=ERRORS
)
async def approve_termination_benefit(
    db: DbSession,
    actor: CurrentActor,
    service: BenefitServiceDep,
    benefit_id: Annotated[UUID, Path()],
) -> TerminationBenefitResponse:
    benefit = await service.approve_termination_benefit(benefit_id, actor)
    await db.commit()
    return TerminationBenefitResponse.model_validate(benefit)


@termination_benefits_router.post(
    "/{benefit_id}/reject", response_model=TerminationBenefitResponse, responses=ERRORS
)
async def reject_termination_benefit(
    db: DbSession,
    actor: CurrentActor,
    service: BenefitServiceDep,
    benefit_id: Annotated[UUID, Path()],
    payload: ReasonRequest,
) -> TerminationBenefitResponse:
    benefit = await service.reject_termination_benefit(benefit_id, payload.reason, actor)
    await db.commit()
    return TerminationBenefitResponse.model_validate(benefit)
