"""Payroll run, per-employee detail, line item, payslip and audit models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_execution.models.base import Base, Money, TimestampMixin

if TYPE_CHECKING:
    from payroll_execution.models.irregularity import Irregularity


# ===== Payroll Run =====


class PayrollRun(Base, TimestampMixin):
    """One payroll processing cycle for an entity/department scope and period."""

    __tablename__ = "payroll_run"

    run_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    entity: Mapped[str] = mapped_column(String, nullable=False)
    department: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    payment_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")

    # Population snapshot taken at create (or explicit refresh on edit)
    employee_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # Aggregates, always recomputed from non-excluded details
    employee_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_gross: Mapped[Money] = mapped_column(nullable=False, default=Decimal("0"))
    total_deductions: Mapped[Money] = mapped_column(nullable=False, default=Decimal("0"))
    total_net: Mapped[Money] = mapped_column(nullable=False, default=Decimal("0"))
    exception_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    calculated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_by_user_id: Mapped[UUID] = mapped_column(nullable=False)
    submitted_by_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    manager_approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    manager_approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    finance_approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    finance_approved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_by: Mapped[UUID | None] = mapped_column(nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(nullable=True)

    frozen_by: Mapped[UUID | None] = mapped_column(nullable=True)
    frozen_at: Mapped[datetime | None] = mapped_column(nullable=True)
    unfreeze_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    unfrozen_by: Mapped[UUID | None] = mapped_column(nullable=True)
    unfrozen_at: Mapped[datetime | None] = mapped_column(nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'pending_manager_approval', 'approved', "
            "'pending_finance_approval', 'locked', 'rejected')",
            name="payroll_run_status_check",
        ),
        CheckConstraint(
            "payment_status IN ('pending', 'paid')",
            name="payroll_run_payment_status_check",
        ),
        Index("ix_payroll_run_scope", "period", "entity", "department"),
    )

    # Relationships
    details: Mapped[list[EmployeePayrollDetail]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="EmployeePayrollDetail.employee_id",
    )
    irregularities: Mapped[list[Irregularity]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
    )


class EmployeePayrollDetail(Base, TimestampMixin):
    """One employee's computed breakdown within a run."""

    __tablename__ = "employee_payroll_detail"

    detail_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.run_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    employee_name: Mapped[str | None] = mapped_column(String, nullable=True)
    calculation_id: Mapped[UUID] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="calculated")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    base_salary: Mapped[Money] = mapped_column(nullable=False, default=Decimal("0"))
    total_gross: Mapped[Money] = mapped_column(nullable=False, default=Decimal("0"))
    total_deductions: Mapped[Money] = mapped_column(nullable=False, default=Decimal("0"))
    net_pay: Mapped[Money] = mapped_column(nullable=False, default=Decimal("0"))
    employer_contributions: Mapped[Money] = mapped_column(nullable=False, default=Decimal("0"))

    excluded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    bank_account_present: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    rule_version_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("run_id", "employee_id", name="uq_detail_run_employee"),
        CheckConstraint(
            "status IN ('calculated', 'partial', 'error')",
            name="employee_payroll_detail_status_check",
        ),
    )

    # Relationships
    run: Mapped[PayrollRun] = relationship(back_populates="details")
    line_items: Mapped[list[PayrollLineItem]] = relationship(
        back_populates="detail",
        cascade="all, delete-orphan",
        order_by="PayrollLineItem.sequence",
    )

    def earnings(self) -> list[PayrollLineItem]:
        return [li for li in self.line_items if li.category == "earning"]

    def deductions(self) -> list[PayrollLineItem]:
        return [li for li in self.line_items if li.category == "deduction"]

    def breakdown(self) -> dict[str, Any]:
        """Itemized breakdown with amounts as strings (JSON-safe)."""

        def _item(li: PayrollLineItem) -> dict[str, Any]:
            return {
                "kind": li.kind,
                "code": li.code,
                "name": li.name,
                "amount": str(li.amount),
                "rule_version_id": str(li.rule_version_id) if li.rule_version_id else None,
            }

        return {
            "earnings": [_item(li) for li in self.earnings()],
            "deductions": [_item(li) for li in self.deductions()],
            "employer_contributions": [
                _item(li) for li in self.line_items if li.category == "employer_contribution"
            ],
            "total_gross": str(self.total_gross),
            "total_deductions": str(self.total_deductions),
            "net_pay": str(self.net_pay),
        }


class PayrollLineItem(Base):
    """Single itemized earning, deduction or employer contribution.

    Deduction amounts are stored as positive magnitudes; the category carries
    the sign. Earnings are positive except termination benefits, which are a
    signed addition to gross.
    """

    __tablename__ = "payroll_line_item"

    line_item_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    detail_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee_payroll_detail.detail_id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Money] = mapped_column(nullable=False)
    rule_version_id: Mapped[UUID | None] = mapped_column(nullable=True)
    source_id: Mapped[UUID | None] = mapped_column(nullable=True)
    expected_nonzero: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    line_hash: Mapped[str] = mapped_column(String(32), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "category IN ('earning', 'deduction', 'employer_contribution')",
            name="payroll_line_item_category_check",
        ),
    )

    detail: Mapped[EmployeePayrollDetail] = relationship(back_populates="line_items")


# ===== Payslips =====


class Payslip(Base, TimestampMixin):
    """Frozen per-employee document derived from a locked run."""

    __tablename__ = "payslip"

    payslip_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.run_id", ondelete="CASCADE"),
        nullable=False,
    )
    detail_id: Mapped[UUID | None] = mapped_column(nullable=True)
    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    employee_name: Mapped[str | None] = mapped_column(String, nullable=True)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    breakdown_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    total_gross: Mapped[Money] = mapped_column(nullable=False)
    total_deductions: Mapped[Money] = mapped_column(nullable=False)
    net_pay: Mapped[Money] = mapped_column(nullable=False)
    payment_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("run_id", "employee_id", name="uq_payslip_run_employee"),
        CheckConstraint(
            "payment_status IN ('pending', 'paid', 'disputed')",
            name="payslip_payment_status_check",
        ),
    )


# ===== Audit =====


class AuditEvent(Base, TimestampMixin):
    """Append-only record of every mutating action."""

    __tablename__ = "audit_event"

    audit_event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    actor_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[UUID] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    before_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    after_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (Index("ix_audit_event_entity", "entity_type", "entity_id"),)
