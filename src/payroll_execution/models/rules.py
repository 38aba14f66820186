"""Versioned, effective-dated configuration rules (tax, insurance, pay grade)."""

from __future__ import annotations

from datetime import date
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, Date, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_execution.models.base import Base, TimestampMixin


class PayrollRule(Base, TimestampMixin):
    """Payroll configuration rule definition.

    ``key`` is the jurisdiction code for tax/insurance rules and the grade
    code for pay-grade rules.
    """

    __tablename__ = "payroll_rule"

    rule_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    key: Mapped[str] = mapped_column(String, nullable=False)
    rule_name: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "kind IN ('tax', 'insurance', 'pay_grade')",
            name="payroll_rule_kind_check",
        ),
        UniqueConstraint("kind", "key", name="uq_payroll_rule_kind_key"),
    )

    versions: Mapped[list[PayrollRuleVersion]] = relationship(
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="PayrollRuleVersion.version",
    )


class PayrollRuleVersion(Base, TimestampMixin):
    """Versioned payroll rule with effective dating."""

    __tablename__ = "payroll_rule_version"

    rule_version_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    rule_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_rule.rule_id", ondelete="CASCADE"),
        nullable=False,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    effective_start: Mapped[date] = mapped_column(Date, nullable=False)
    effective_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    logic_hash: Mapped[str] = mapped_column(String, nullable=False)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint(
            "effective_end IS NULL OR effective_end >= effective_start",
            name="payroll_rule_version_dates_check",
        ),
        UniqueConstraint("rule_id", "version", name="uq_payroll_rule_version"),
    )

    # Relationships
    rule: Mapped[PayrollRule] = relationship(back_populates="versions")

    def is_active_on(self, as_of_date: date) -> bool:
        """Check if version is active on a given date."""
        if self.effective_start > as_of_date:
            return False
        if self.effective_end is not None and self.effective_end < as_of_date:
            return False
        return True
