"""Closed, validated input types for every mutating operation."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Annotated, Any, Literal, TypeVar
from uuid import UUID

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StringConstraints,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from payroll_execution.calculators.types import Period
from payroll_execution.exceptions import ValidationError


def _reject_float(value: Any) -> Any:
    if isinstance(value, float):
        raise ValueError("monetary amounts must be decimal strings or integers, not floats")
    return value


NonEmptyText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
# Storage precision; calculated lines are rounded to the configured minor unit
MoneyInput = Annotated[Decimal, BeforeValidator(_reject_float), Field(max_digits=14, decimal_places=2)]

ResolutionAction = Literal["approved", "rejected", "excluded", "adjusted"]
BenefitType = Literal["termination", "resignation"]


class Command(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


CommandT = TypeVar("CommandT", bound=Command)


def parse_command(model: type[CommandT], **data: Any) -> CommandT:
    """Validate input, converting pydantic errors into ValidationError."""
    try:
        return model(**data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ValidationError(f"{field}: {first['msg']}" if field else first["msg"], field=field) from exc


def _validate_period(value: str) -> str:
    period = Period.parse(value)
    if period > Period.containing(date.today()):
        raise ValueError(f"Period {value} is in the future")
    return period.label


# ===== Payroll runs =====


class CreateRunCommand(Command):
    period: str
    entity: NonEmptyText
    department: NonEmptyText | None = None

    @field_validator("period")
    @classmethod
    def period_format(cls, value: str) -> str:
        return _validate_period(value)


class EditRunCommand(Command):
    period: str | None = None
    entity: NonEmptyText | None = None
    department: NonEmptyText | None = None
    refresh_population: bool = False

    @field_validator("period")
    @classmethod
    def period_format(cls, value: str | None) -> str | None:
        return _validate_period(value) if value is not None else None


class ReasonCommand(Command):
    """Reject / unfreeze / escalate: the reason is the audit trail."""

    reason: NonEmptyText


# ===== Irregularities =====


class ResolveIrregularityCommand(Command):
    action: ResolutionAction
    notes: NonEmptyText
    adjusted_value: MoneyInput | None = None
    line_item_id: UUID | None = None

    @model_validator(mode="after")
    def adjusted_requires_value(self) -> ResolveIrregularityCommand:
        if self.action == "adjusted" and self.adjusted_value is None:
            raise ValueError("adjusted_value is required when action is 'adjusted'")
        if self.action != "adjusted" and self.adjusted_value is not None:
            raise ValueError("adjusted_value is only allowed when action is 'adjusted'")
        return self


# ===== Sub-ledgers =====


class CreateSigningBonusCommand(Command):
    employee_id: UUID
    amount: Annotated[MoneyInput, Field(ge=0)]
    payment_date: date
    position: str | None = None
    notes: str | None = None


class EditSigningBonusCommand(Command):
    amount: Annotated[MoneyInput, Field(ge=0)] | None = None
    payment_date: date | None = None
    position: str | None = None
    notes: str | None = None


class CreateTerminationBenefitCommand(Command):
    employee_id: UUID
    benefit_type: BenefitType
    benefit_name: NonEmptyText
    amount: MoneyInput
    termination_date: date
    notes: str | None = None


class EditTerminationBenefitCommand(Command):
    benefit_type: BenefitType | None = None
    benefit_name: NonEmptyText | None = None
    amount: MoneyInput | None = None
    termination_date: date | None = None
    notes: str | None = None


# ===== Payslips =====


class DisputePayslipCommand(Command):
    reason: NonEmptyText
