"""Signing bonus and termination/resignation benefit sub-ledgers."""

from __future__ import annotations

import logging
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from payroll_execution.commands import (
    CreateSigningBonusCommand,
    CreateTerminationBenefitCommand,
    EditSigningBonusCommand,
    EditTerminationBenefitCommand,
    ReasonCommand,
    parse_command,
)
from payroll_execution.config import Settings, get_settings
from payroll_execution.exceptions import (
    DuplicateDisbursementError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from payroll_execution.models import SigningBonus, TerminationBenefit, utcnow
from payroll_execution.services.audit import AuditRecorder
from payroll_execution.services.collaborators import Actor, Role
from payroll_execution.services.state_machine import SubLedgerStateMachine, SubLedgerStatus

logger = logging.getLogger(__name__)

LedgerRecord = TypeVar("LedgerRecord", SigningBonus, TerminationBenefit)

_EDITABLE_FIELDS = {
    SigningBonus: ("amount", "payment_date", "position", "notes"),
    TerminationBenefit: ("benefit_type", "benefit_name", "amount", "termination_date", "notes"),
}


def _entity_type(record: SigningBonus | TerminationBenefit) -> str:
    return "signing_bonus" if isinstance(record, SigningBonus) else "termination_benefit"


def _record_id(record: SigningBonus | TerminationBenefit) -> UUID:
    return record.bonus_id if isinstance(record, SigningBonus) else record.benefit_id


def _snapshot(record: SigningBonus | TerminationBenefit) -> dict[str, Any]:
    return {name: getattr(record, name) for name in (*_EDITABLE_FIELDS[type(record)], "status")}


class BenefitService:
    """Approval-gated sub-ledgers read by payroll runs during calculation.

    Lifecycle per record:
    - pending: editable, may be approved or rejected
    - approved: claimable by the run covering its date; approving again fails
    - paid: set when the claiming run is finance-approved
    - rejected: terminal, with a required reason
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self.audit = AuditRecorder(session)

    # ===== Signing bonuses =====

    async def create_signing_bonus(self, actor: Actor, **fields: Any) -> SigningBonus:
        actor.require(Role.SPECIALIST, "create a signing bonus")
        command = parse_command(CreateSigningBonusCommand, **fields)
        bonus = SigningBonus(
            employee_id=command.employee_id,
            amount=command.amount,
            payment_date=command.payment_date,
            position=command.position,
            notes=command.notes,
            status=SubLedgerStatus.PENDING.value,
            created_by=actor.user_id,
        )
        return await self._created(bonus, actor)

    async def edit_signing_bonus(self, bonus_id: UUID, actor: Actor, **fields: Any) -> SigningBonus:
        actor.require(Role.SPECIALIST, "edit a signing bonus")
        command = parse_command(EditSigningBonusCommand, **fields)
        bonus = await self.get_signing_bonus(bonus_id)
        return await self._edit(bonus, command.model_dump(exclude_unset=True), actor)

    async def get_signing_bonus(self, bonus_id: UUID) -> SigningBonus:
        bonus = await self.session.get(SigningBonus, bonus_id)
        if bonus is None:
            raise NotFoundError("SigningBonus", bonus_id)
        return bonus

    async def list_signing_bonuses(
        self,
        status: str | None = None,
        employee_id: UUID | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[SigningBonus], int]:
        return await self._list(SigningBonus, status, employee_id, page, page_size)

    async def approve_signing_bonus(self, bonus_id: UUID, actor: Actor) -> SigningBonus:
        actor.require(Role.MANAGER, "approve a signing bonus")
        return await self._approve(await self.get_signing_bonus(bonus_id), actor)

    async def reject_signing_bonus(self, bonus_id: UUID, reason: str, actor: Actor) -> SigningBonus:
        actor.require(Role.MANAGER, "reject a signing bonus")
        command = parse_command(ReasonCommand, reason=reason)
        return await self._reject(await self.get_signing_bonus(bonus_id), command.reason, actor)

    async def bulk_approve_signing_bonuses(self, actor: Actor) -> list[UUID]:
        """Approve every pending signing bonus; returns the approved ids."""
        actor.require(Role.MANAGER, "approve signing bonuses")
        result = await self.session.scalars(
            select(SigningBonus)
            .where(SigningBonus.status == SubLedgerStatus.PENDING.value)
            .order_by(SigningBonus.created_at, SigningBonus.bonus_id)
        )
        approved = []
        for bonus in result.all():
            await self._approve(bonus, actor)
            approved.append(bonus.bonus_id)
        logger.info("Bulk-approved %d signing bonuses", len(approved))
        return approved

    # ===== Termination / resignation benefits =====

    async def create_termination_benefit(self, actor: Actor, **fields: Any) -> TerminationBenefit:
        actor.require(Role.SPECIALIST, "create a termination benefit")
        command = parse_command(CreateTerminationBenefitCommand, **fields)
        self._check_cap(command.amount)
        benefit = TerminationBenefit(
            employee_id=command.employee_id,
            benefit_type=command.benefit_type,
            benefit_name=command.benefit_name,
            amount=command.amount,
            termination_date=command.termination_date,
            notes=command.notes,
            status=SubLedgerStatus.PENDING.value,
            created_by=actor.user_id,
        )
        return await self._created(benefit, actor)

    async def edit_termination_benefit(
        self, benefit_id: UUID, actor: Actor, **fields: Any
    ) -> TerminationBenefit:
        actor.require(Role.SPECIALIST, "edit a termination benefit")
        command = parse_command(EditTerminationBenefitCommand, **fields)
        if command.amount is not None:
            self._check_cap(command.amount)
        benefit = await self.get_termination_benefit(benefit_id)
        return await self._edit(benefit, command.model_dump(exclude_unset=True), actor)

    async def get_termination_benefit(self, benefit_id: UUID) -> TerminationBenefit:
        benefit = await self.session.get(TerminationBenefit, benefit_id)
        if benefit is None:
            raise NotFoundError("TerminationBenefit", benefit_id)
        return benefit

    async def list_termination_benefits(
        self,
        status: str | None = None,
        employee_id: UUID | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[TerminationBenefit], int]:
        return await self._list(TerminationBenefit, status, employee_id, page, page_size)

    async def approve_termination_benefit(self, benefit_id: UUID, actor: Actor) -> TerminationBenefit:
        actor.require(Role.MANAGER, "approve a termination benefit")
        return await self._approve(await self.get_termination_benefit(benefit_id), actor)

    async def reject_termination_benefit(
        self, benefit_id: UUID, reason: str, actor: Actor
    ) -> TerminationBenefit:
        actor.require(Role.MANAGER, "reject a termination benefit")
        command = parse_command(ReasonCommand, reason=reason)
        return await self._reject(
            await self.get_termination_benefit(benefit_id), command.reason, actor
        )

    # ===== Shared lifecycle =====

    def _check_cap(self, amount) -> None:
        cap = self.settings.termination_benefit_cap
        if abs(amount) > cap:
            raise ValidationError(f"Benefit amount exceeds the cap of {cap}", field="amount")

    async def _created(self, record: LedgerRecord, actor: Actor) -> LedgerRecord:
        self.session.add(record)
        await self.session.flush()
        self.audit.record(
            _entity_type(record), _record_id(record), "created", actor.user_id,
            after=_snapshot(record),
        )
        logger.info(
            "Created %s %s for employee %s (%s)",
            _entity_type(record), _record_id(record), record.employee_id, record.amount,
        )
        return record

    async def _edit(self, record: LedgerRecord, changes: dict[str, Any], actor: Actor) -> LedgerRecord:
        if not SubLedgerStateMachine.can_edit(record.status):
            raise StateConflictError(f"A {record.status} {_entity_type(record)} cannot be edited")
        before = _snapshot(record)
        for name, value in changes.items():
            setattr(record, name, value)
        await self._flush(record)
        self.audit.record(
            _entity_type(record), _record_id(record), "edited", actor.user_id,
            before=before, after=_snapshot(record),
        )
        return record

    async def _approve(self, record: LedgerRecord, actor: Actor) -> LedgerRecord:
        if record.status in (SubLedgerStatus.APPROVED, SubLedgerStatus.PAID):
            logger.warning(
                "Duplicate approval of %s %s rejected", _entity_type(record), _record_id(record)
            )
            raise DuplicateDisbursementError(_entity_type(record), _record_id(record), record.status)
        SubLedgerStateMachine.validate_transition(record.status, SubLedgerStatus.APPROVED)

        record.status = SubLedgerStatus.APPROVED.value
        record.approved_by = actor.user_id
        record.approved_at = utcnow()
        await self._flush(record)
        self.audit.record(
            _entity_type(record), _record_id(record), "approved", actor.user_id,
            before={"status": SubLedgerStatus.PENDING.value},
            after={"status": record.status, "amount": record.amount},
        )
        logger.info("Approved %s %s", _entity_type(record), _record_id(record))
        return record

    async def _reject(self, record: LedgerRecord, reason: str, actor: Actor) -> LedgerRecord:
        SubLedgerStateMachine.validate_transition(record.status, SubLedgerStatus.REJECTED)
        record.status = SubLedgerStatus.REJECTED.value
        record.rejected_by = actor.user_id
        record.rejected_at = utcnow()
        record.rejection_reason = reason
        await self._flush(record)
        self.audit.record(
            _entity_type(record), _record_id(record), "rejected", actor.user_id,
            before={"status": SubLedgerStatus.PENDING.value},
            after={"status": record.status, "reason": reason},
        )
        logger.info("Rejected %s %s: %s", _entity_type(record), _record_id(record), reason)
        return record

    async def _flush(self, record: SigningBonus | TerminationBenefit) -> None:
        label = f"{_entity_type(record)} {_record_id(record)}"
        try:
            await self.session.flush()
        except StaleDataError as exc:
            logger.warning("Concurrent update of %s rejected", label)
            raise StateConflictError(f"{label} was modified by a concurrent writer") from exc

    async def _list(
        self,
        model: type[LedgerRecord],
        status: str | None,
        employee_id: UUID | None,
        page: int,
        page_size: int,
    ) -> tuple[list[LedgerRecord], int]:
        filters = []
        if status is not None:
            filters.append(model.status == status)
        if employee_id is not None:
            filters.append(model.employee_id == employee_id)
        total = await self.session.scalar(select(func.count()).select_from(model).where(*filters))
        result = await self.session.scalars(
            select(model)
            .where(*filters)
            .order_by(model.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.all()), total or 0
