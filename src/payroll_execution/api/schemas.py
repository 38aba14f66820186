"""Pydantic schemas for API request/response models.

Monetary fields are ``Decimal`` and serialize as strings. Request bodies
stay loose here; the service layer validates them into closed command types.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class ErrorResponse(BaseModel):
    """Schema for error responses."""

    detail: str
    code: str


# ============================================================================
# Payroll run schemas
# ============================================================================


class PayrollRunCreate(BaseModel):
    period: str
    entity: str
    department: str | None = None


class PayrollRunEdit(BaseModel):
    period: str | None = None
    entity: str | None = None
    department: str | None = None
    refresh_population: bool = False


class ReasonRequest(BaseModel):
    """Reject, unfreeze, escalate and dispute all carry a required reason."""

    reason: str = ""


class PayrollRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    run_id: UUID
    period: str
    entity: str
    department: str | None = None
    status: str
    payment_status: str
    employee_count: int
    total_gross: Decimal
    total_deductions: Decimal
    total_net: Decimal
    exception_count: int
    flagged: bool
    created_by_user_id: UUID
    submitted_at: datetime | None = None
    manager_approved_by: UUID | None = None
    manager_approved_at: datetime | None = None
    finance_approved_by: UUID | None = None
    finance_approved_at: datetime | None = None
    rejection_reason: str | None = None
    frozen_at: datetime | None = None
    unfreeze_reason: str | None = None
    version: int
    created_at: datetime


class PayrollRunListResponse(BaseModel):
    items: list[PayrollRunResponse]
    total: int
    page: int
    page_size: int


class LineItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    line_item_id: UUID
    sequence: int
    category: str
    kind: str
    code: str
    name: str
    amount: Decimal
    original_amount: Decimal | None = None
    rule_version_id: UUID | None = None
    source_id: UUID | None = None


class DetailResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    detail_id: UUID
    employee_id: UUID
    employee_name: str | None = None
    calculation_id: UUID
    status: str
    error_message: str | None = None
    base_salary: Decimal
    total_gross: Decimal
    total_deductions: Decimal
    net_pay: Decimal
    employer_contributions: Decimal
    excluded: bool
    bank_account_present: bool
    line_items: list[LineItemResponse]


class DetailListResponse(BaseModel):
    items: list[DetailResponse]
    total: int


class PayslipFailureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    employee_id: UUID
    error: str


class PayslipReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    run_id: UUID
    created: int
    skipped: int
    failed: list[PayslipFailureResponse]
    total_net: Decimal


class LockResponse(BaseModel):
    """Finance approval or freeze: the locked run plus the payslip report."""

    run: PayrollRunResponse
    payslips: PayslipReportResponse


# ============================================================================
# Irregularity schemas
# ============================================================================


class ResolveRequest(BaseModel):
    action: str
    notes: str = ""
    adjusted_value: str | int | None = None
    line_item_id: UUID | None = None


class IrregularityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    irregularity_id: UUID
    run_id: UUID
    detail_id: UUID | None = None
    employee_id: UUID | None = None
    line_item_id: UUID | None = None
    code: str
    severity: str
    status: str
    description: str
    escalation_reason: str | None = None
    resolution_action: str | None = None
    adjusted_value: Decimal | None = None
    resolution_notes: str | None = None
    resolved_by: UUID | None = None
    resolved_at: datetime | None = None
    created_at: datetime


class IrregularityListResponse(BaseModel):
    items: list[IrregularityResponse]
    total: int
    page: int
    page_size: int


# ============================================================================
# Sub-ledger schemas
# ============================================================================


class SigningBonusCreate(BaseModel):
    employee_id: UUID
    amount: str | int
    payment_date: date
    position: str | None = None
    notes: str | None = None


class SigningBonusEdit(BaseModel):
    amount: str | int | None = None
    payment_date: date | None = None
    position: str | None = None
    notes: str | None = None


class TerminationBenefitCreate(BaseModel):
    employee_id: UUID
    benefit_type: str
    benefit_name: str
    amount: str | int
    termination_date: date
    notes: str | None = None


class TerminationBenefitEdit(BaseModel):
    benefit_type: str | None = None
    benefit_name: str | None = None
    amount: str | int | None = None
    termination_date: date | None = None
    notes: str | None = None


class SubLedgerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    employee_id: UUID
    amount: Decimal
    status: str
    notes: str | None = None
    approved_by: UUID | None = None
    approved_at: datetime | None = None
    rejection_reason: str | None = None
    disbursed_in_run_id: UUID | None = None
    disbursed_at: datetime | None = None
    created_at: datetime


class SigningBonusResponse(SubLedgerResponse):
    bonus_id: UUID
    payment_date: date
    position: str | None = None


class SigningBonusListResponse(BaseModel):
    items: list[SigningBonusResponse]
    total: int
    page: int
    page_size: int


class BulkApproveResponse(BaseModel):
    approved_ids: list[UUID]
    count: int


class TerminationBenefitResponse(SubLedgerResponse):
    benefit_id: UUID
    benefit_type: str
    benefit_name: str
    termination_date: date


class TerminationBenefitListResponse(BaseModel):
    items: list[TerminationBenefitResponse]
    total: int
    page: int
    page_size: int


# ============================================================================
# Payslip schemas
# ============================================================================


class PayslipResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payslip_id: UUID
    run_id: UUID
    employee_id: UUID
    employee_name: str | None = None
    period: str
    currency: str
    breakdown_json: dict[str, Any]
    total_gross: Decimal
    total_deductions: Decimal
    net_pay: Decimal
    payment_status: str
    dispute_reason: str | None = None
    created_at: datetime


class PayslipListResponse(BaseModel):
    items: list[PayslipResponse]
    total: int
