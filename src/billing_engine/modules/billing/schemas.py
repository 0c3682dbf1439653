"""Billing Pydantic schemas for request/response validation."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from billing_engine.core.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE

from .models import (
    BillingAttemptStatus,
    BillingCycle,
    BillingJobType,
    DiscountType,
    InvoiceStatus,
    JobStatus,
    ReminderStatus,
    ReminderType,
    SubscriptionStatus,
)


# ============================================================
# Invoice
# ============================================================


class LineItem(BaseModel):
    description: str
    quantity: int = Field(1, ge=1)
    unit_price: Decimal
    total: Decimal


class InvoiceCreate(BaseModel):
    """Request to create an invoice."""

    tenant_id: UUID
    subscription_id: UUID | None = None
    subtotal: Decimal = Field(..., ge=0)
    discount: Decimal | None = Field(None, ge=0)
    tax: Decimal | None = Field(None, ge=0)
    total: Decimal = Field(..., ge=0)
    due_date: datetime
    description: str | None = None
    line_items: list[LineItem] = Field(default_factory=list)


class InvoiceUpdate(BaseModel):
    """Editable invoice fields. Terminal statuses go through mark-paid / void."""

    status: InvoiceStatus | None = None
    due_date: datetime | None = None
    description: str | None = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: InvoiceStatus | None) -> InvoiceStatus | None:
        if v is not None and v not in (InvoiceStatus.DRAFT, InvoiceStatus.OPEN):
            raise ValueError("Use mark-paid or void to close an invoice")
        return v


class InvoiceQuery(BaseModel):
    tenant_id: UUID | None = None
    status: InvoiceStatus | None = None
    due_date_from: datetime | None = None
    due_date_to: datetime | None = None
    overdue: bool = False
    limit: int = Field(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    offset: int = Field(0, ge=0)


class InvoiceResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    subscription_id: UUID | None
    invoice_number: str
    subtotal: Decimal
    discount: Decimal | None
    tax: Decimal | None
    total: Decimal
    due_date: datetime
    status: InvoiceStatus
    description: str | None
    billing_attempts: int
    last_attempt_at: datetime | None
    next_attempt_at: datetime | None
    paid_at: datetime | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvoiceListResponse(BaseModel):
    items: list[InvoiceResponse]
    total: int
    limit: int
    offset: int


class BillingAttemptResponse(BaseModel):
    id: UUID
    attempt_number: int
    status: BillingAttemptStatus
    error_code: str | None
    error_message: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReminderResponse(BaseModel):
    id: UUID
    reminder_type: ReminderType
    scheduled_for: datetime
    status: ReminderStatus
    sent_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class InvoiceDetailResponse(InvoiceResponse):
    attempts: list[BillingAttemptResponse] = []
    reminders: list[ReminderResponse] = []


# ============================================================
# Payments
# ============================================================


class RetryPaymentRequest(BaseModel):
    invoice_id: UUID
    force: bool = Field(False, description="Retry even when attempts are exhausted")


class PaymentResult(BaseModel):
    """Outcome of one collection attempt. Gateway failures land here, not in errors."""

    success: bool
    invoice_id: UUID
    payment_id: UUID | None = None
    attempt_number: int | None = None
    error_code: str | None = None
    error: str | None = None
    next_attempt_at: datetime | None = None


# ============================================================
# Subscription
# ============================================================


class SubscriptionResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    plan_id: UUID
    plan_type: str
    amount: Decimal
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    trial_end: datetime | None
    scheduled_plan_id: UUID | None
    cancelled_at: datetime | None
    cancel_reason: str | None

    model_config = ConfigDict(from_attributes=True)


# ============================================================
# Coupon
# ============================================================


class CouponCreate(BaseModel):
    code: str = Field(..., min_length=2, max_length=50)
    name: str | None = None
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_value: Decimal = Field(..., gt=0)
    max_discount_amount: Decimal | None = Field(None, gt=0)
    min_amount: Decimal | None = Field(None, ge=0)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    max_uses: int | None = Field(None, ge=1)
    applicable_plans: list[str] = Field(default_factory=list)
    first_purchase_only: bool = False
    duration_months: int | None = Field(None, ge=1)
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def normalise_code(cls, v: str) -> str:
        return v.strip().upper()


class CouponUpdate(BaseModel):
    name: str | None = None
    discount_value: Decimal | None = Field(None, gt=0)
    max_discount_amount: Decimal | None = Field(None, gt=0)
    valid_until: datetime | None = None
    max_uses: int | None = Field(None, ge=1)
    is_active: bool | None = None


class CouponQuery(BaseModel):
    is_active: bool | None = None
    valid: bool = False
    limit: int = Field(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    offset: int = Field(0, ge=0)


class CouponValidate(BaseModel):
    code: str
    plan_code: str
    amount: Decimal = Field(..., ge=0)
    tenant_id: UUID | None = None


class CouponApply(BaseModel):
    code: str
    tenant_id: UUID
    subscription_id: UUID | None = None
    amount: Decimal = Field(..., ge=0)


class CouponValidation(BaseModel):
    valid: bool
    code: str
    reason: str | None = None
    message: str | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = None
    calculated_discount: Decimal | None = None
    original_amount: Decimal | None = None
    final_amount: Decimal | None = None


class CouponRedemption(BaseModel):
    coupon_id: UUID
    usage_id: UUID
    discount: Decimal
    final_amount: Decimal
    duration_months: int | None


class CouponResponse(BaseModel):
    id: UUID
    code: str
    name: str | None
    discount_type: DiscountType
    discount_value: Decimal
    max_discount_amount: Decimal | None
    min_amount: Decimal | None
    valid_from: datetime
    valid_until: datetime | None
    max_uses: int | None
    used_count: int
    applicable_plans: list[str]
    first_purchase_only: bool
    duration_months: int | None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class CouponListResponse(BaseModel):
    items: list[CouponResponse]
    total: int


# ============================================================
# Billing jobs
# ============================================================


class BillingJobCreate(BaseModel):
    job_type: BillingJobType
    scheduled_for: datetime
    tenant_id: UUID | None = None
    subscription_id: UUID | None = None
    invoice_id: UUID | None = None
    max_retries: int | None = Field(None, ge=1)


class BillingJobQuery(BaseModel):
    job_type: BillingJobType | None = None
    tenant_id: UUID | None = None
    limit: int = Field(100, ge=1, le=500)


class BillingJobResponse(BaseModel):
    id: UUID
    job_type: BillingJobType
    scheduled_for: datetime
    status: JobStatus
    retry_count: int
    max_retries: int
    tenant_id: UUID | None
    subscription_id: UUID | None
    invoice_id: UUID | None
    result: dict[str, Any] | None
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    last_retry_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


# ============================================================
# Stats
# ============================================================


class PlanBreakdown(BaseModel):
    plan: str
    count: int
    revenue: Decimal


class BillingStats(BaseModel):
    mrr: Decimal
    arr: Decimal
    churn_rate: float
    churned_subscriptions: int
    total_invoices: int
    paid_invoices: int
    overdue_invoices: int
    pending_amount: Decimal
    total_collected: Decimal
    failed_payments: int
    success_rate: float
    total_subscribers: int
    active_subscribers: int
    trialing_subscribers: int
    past_due_subscribers: int
    cancelled_subscribers: int
    subscribers_by_plan: list[PlanBreakdown]
    jobs_by_status: dict[str, int]
