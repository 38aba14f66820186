"""Signing bonus and termination/resignation benefit sub-ledgers."""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from payroll_execution.models.base import Base, Money, TimestampMixin


class SubLedgerMixin:
    """Approval and disbursement columns shared by both sub-ledgers."""

    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    amount: Mapped[Money] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[UUID | None] = mapped_column(nullable=True)

    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejected_by: Mapped[UUID | None] = mapped_column(nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Claimed by a run at calculation; paid when that run is finance-approved
    disbursed_in_run_id: Mapped[UUID | None] = mapped_column(nullable=True)
    disbursed_detail_id: Mapped[UUID | None] = mapped_column(nullable=True)
    disbursed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def is_claimable(self) -> bool:
        return self.status == "approved" and self.disbursed_at is None


class SigningBonus(Base, SubLedgerMixin, TimestampMixin):
    """One-off signing bonus payable in the period containing payment_date."""

    __tablename__ = "signing_bonus"

    bonus_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    position: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'paid')",
            name="signing_bonus_status_check",
        ),
        CheckConstraint("amount >= 0", name="signing_bonus_amount_check"),
        Index("ix_signing_bonus_employee", "employee_id"),
    )
    __mapper_args__ = {"version_id_col": version}


class TerminationBenefit(Base, SubLedgerMixin, TimestampMixin):
    """Termination or resignation benefit paid with the employee's final period.

    Amount is signed: a negative value reduces the final net pay.
    """

    __tablename__ = "termination_benefit"

    benefit_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    benefit_type: Mapped[str] = mapped_column(String, nullable=False)
    benefit_name: Mapped[str] = mapped_column(String, nullable=False)
    termination_date: Mapped[date] = mapped_column(Date, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'paid')",
            name="termination_benefit_status_check",
        ),
        CheckConstraint(
            "benefit_type IN ('termination', 'resignation')",
            name="termination_benefit_type_check",
        ),
        Index("ix_termination_benefit_employee", "employee_id"),
    )
    __mapper_args__ = {"version_id_col": version}
