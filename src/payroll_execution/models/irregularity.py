"""Irregularity records raised by the detector and closed by resolution."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_execution.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from payroll_execution.models.payroll import PayrollRun


class Irregularity(Base, TimestampMixin):
    """A detected anomaly on a run or one of its detail records."""

    __tablename__ = "irregularity"

    irregularity_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.run_id", ondelete="CASCADE"),
        nullable=False,
    )
    # Nulled when the detail is replaced by a recalculation
    detail_id: Mapped[UUID | None] = mapped_column(nullable=True)
    employee_id: Mapped[UUID | None] = mapped_column(nullable=True)
    line_item_id: Mapped[UUID | None] = mapped_column(nullable=True)

    code: Mapped[str] = mapped_column(String, nullable=False)
    severity: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    description: Mapped[str] = mapped_column(Text, nullable=False)

    escalation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    escalated_by: Mapped[UUID | None] = mapped_column(nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    resolution_action: Mapped[str | None] = mapped_column(String, nullable=True)
    adjusted_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "severity IN ('info', 'low', 'medium', 'high', 'critical')",
            name="irregularity_severity_check",
        ),
        CheckConstraint(
            "status IN ('pending', 'escalated', 'resolved', 'rejected')",
            name="irregularity_status_check",
        ),
        CheckConstraint(
            "resolution_action IS NULL OR resolution_action IN "
            "('approved', 'rejected', 'excluded', 'adjusted')",
            name="irregularity_resolution_action_check",
        ),
        Index("ix_irregularity_run_status", "run_id", "status"),
    )

    run: Mapped[PayrollRun] = relationship(back_populates="irregularities")

    @property
    def is_open(self) -> bool:
        return self.status in ("pending", "escalated")

    @property
    def is_blocking(self) -> bool:
        """Open high/critical irregularities block locking a run."""
        return self.is_open and self.severity in ("high", "critical")
