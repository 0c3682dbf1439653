"""Billing database models.

Every status column here moves through a fixed state machine. Rows are
never rewritten with read-modify-write; see ``repos.BillingRepository``
for the conditional updates that drive the transitions.
"""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.core.constants import (
    MAX_COUPON_CODE_LENGTH,
    MAX_DESCRIPTION_LENGTH,
    MAX_ERROR_CODE_LENGTH,
    MAX_INVOICE_NUMBER_LENGTH,
    MAX_NAME_LENGTH,
    MAX_PLAN_CODE_LENGTH,
    MAX_REFERENCE_LENGTH,
    MAX_STATUS_LENGTH,
    MONEY_PRECISION,
    MONEY_SCALE,
)
from billing_engine.core.database import Base, TenantMixin, TimestampMixin, UUIDMixin


Money = Numeric(MONEY_PRECISION, MONEY_SCALE)


def _status(enum_cls: type[StrEnum]) -> Enum:
    return Enum(enum_cls, native_enum=False, length=MAX_STATUS_LENGTH)


# ============================================================
# Enums
# ============================================================


class BillingCycle(StrEnum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"


class SubscriptionStatus(StrEnum):
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"


class InvoiceStatus(StrEnum):
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    PAID = "PAID"
    VOID = "VOID"


class BillingAttemptStatus(StrEnum):
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class PaymentStatus(StrEnum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    # Captured after the invoice closed; owed back to the customer
    REFUND_DUE = "REFUND_DUE"


class DiscountType(StrEnum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class ReminderType(StrEnum):
    PAYMENT_DUE = "PAYMENT_DUE"
    PAYMENT_OVERDUE = "PAYMENT_OVERDUE"
    SUBSCRIPTION_AT_RISK = "SUBSCRIPTION_AT_RISK"


class ReminderStatus(StrEnum):
    SCHEDULED = "SCHEDULED"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class BillingJobType(StrEnum):
    GENERATE_INVOICE = "GENERATE_INVOICE"
    PROCESS_PAYMENT = "PROCESS_PAYMENT"
    RETRY_PAYMENT = "RETRY_PAYMENT"
    SEND_REMINDER = "SEND_REMINDER"
    EXPIRE_TRIAL = "EXPIRE_TRIAL"
    RENEW_SUBSCRIPTION = "RENEW_SUBSCRIPTION"
    CANCEL_SUBSCRIPTION = "CANCEL_SUBSCRIPTION"


class JobStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


OPEN_INVOICE_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.OPEN)
CLAIMABLE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.FAILED)


# ============================================================
# Catalogue
# ============================================================


class Plan(Base, UUIDMixin, TimestampMixin):
    """A purchasable plan; ``code`` is what the tenant directory stores."""

    __tablename__ = "plans"

    code: Mapped[str] = mapped_column(
        String(MAX_PLAN_CODE_LENGTH), unique=True, nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(MAX_NAME_LENGTH), nullable=False)
    monthly_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    quarterly_price: Mapped[Decimal | None] = mapped_column(Money)
    yearly_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def price_for(self, cycle: BillingCycle) -> Decimal:
        """Price charged per period of the given billing cycle."""
        if cycle == BillingCycle.YEARLY:
            return self.yearly_price
        if cycle == BillingCycle.QUARTERLY:
            if self.quarterly_price is not None:
                return self.quarterly_price
            return self.monthly_price * 3
        return self.monthly_price


# ============================================================
# Subscription
# ============================================================


class Subscription(Base, UUIDMixin, TimestampMixin, TenantMixin):
    """A tenant's recurring plan."""

    __tablename__ = "subscriptions"

    plan_id: Mapped[UUID] = mapped_column(ForeignKey("plans.id"), nullable=False)
    plan_type: Mapped[str] = mapped_column(String(MAX_PLAN_CODE_LENGTH), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        _status(BillingCycle), default=BillingCycle.MONTHLY, nullable=False
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        _status(SubscriptionStatus),
        default=SubscriptionStatus.TRIALING,
        nullable=False,
        index=True,
    )

    # Billing period
    current_period_start: Mapped[datetime] = mapped_column(nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(nullable=False, index=True)
    trial_end: Mapped[datetime | None] = mapped_column()

    # Plan change queued for the next renewal
    scheduled_plan_id: Mapped[UUID | None] = mapped_column(ForeignKey("plans.id"))
    scheduled_change: Mapped[bool | None] = mapped_column(Boolean)

    discount: Mapped[Decimal | None] = mapped_column(Money)

    # Cancellation
    cancelled_at: Mapped[datetime | None] = mapped_column()
    cancel_reason: Mapped[str | None] = mapped_column(String(MAX_DESCRIPTION_LENGTH))


# ============================================================
# Invoice
# ============================================================


class Invoice(Base, UUIDMixin, TimestampMixin, TenantMixin):
    """One bill owed by a tenant."""

    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoices_tenant_number"),
    )

    subscription_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL"), index=True
    )
    invoice_number: Mapped[str] = mapped_column(
        String(MAX_INVOICE_NUMBER_LENGTH), nullable=False
    )

    # Amounts
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    discount: Mapped[Decimal | None] = mapped_column(Money)
    tax: Mapped[Decimal | None] = mapped_column(Money)
    total: Mapped[Decimal] = mapped_column(Money, nullable=False)

    due_date: Mapped[datetime] = mapped_column(nullable=False, index=True)
    status: Mapped[InvoiceStatus] = mapped_column(
        _status(InvoiceStatus), default=InvoiceStatus.OPEN, nullable=False, index=True
    )
    description: Mapped[str | None] = mapped_column(String(MAX_DESCRIPTION_LENGTH))
    line_items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)

    # Dunning
    billing_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column()
    next_attempt_at: Mapped[datetime | None] = mapped_column()
    paid_at: Mapped[datetime | None] = mapped_column()


class InvoiceSequence(Base):
    """Per tenant-month invoice counter, bumped with an atomic upsert."""

    __tablename__ = "invoice_sequences"

    tenant_id: Mapped[UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True
    )
    period: Mapped[str] = mapped_column(String(6), primary_key=True)  # YYYYMM
    current_value: Mapped[int] = mapped_column(Integer, nullable=False)


class BillingAttempt(Base, UUIDMixin, TimestampMixin):
    """One try to collect an invoice. Never mutated after closing."""

    __tablename__ = "billing_attempts"
    __table_args__ = (
        UniqueConstraint(
            "invoice_id", "attempt_number", name="uq_billing_attempts_invoice_number"
        ),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[BillingAttemptStatus] = mapped_column(
        _status(BillingAttemptStatus),
        default=BillingAttemptStatus.PROCESSING,
        nullable=False,
    )
    error_code: Mapped[str | None] = mapped_column(String(MAX_ERROR_CODE_LENGTH))
    error_message: Mapped[str | None] = mapped_column(Text)


class Payment(Base, UUIDMixin, TimestampMixin, TenantMixin):
    """Money collected against an invoice."""

    __tablename__ = "payments"

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    subscription_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL")
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        _status(PaymentStatus), default=PaymentStatus.SUCCEEDED, nullable=False
    )
    reference_id: Mapped[str | None] = mapped_column(String(MAX_REFERENCE_LENGTH))
    paid_at: Mapped[datetime | None] = mapped_column()


# ============================================================
# Coupon
# ============================================================


class Coupon(Base, UUIDMixin, TimestampMixin):
    """A discount rule. Codes are stored uppercased."""

    __tablename__ = "coupons"

    code: Mapped[str] = mapped_column(
        String(MAX_COUPON_CODE_LENGTH), unique=True, nullable=False, index=True
    )
    name: Mapped[str | None] = mapped_column(String(MAX_NAME_LENGTH))
    discount_type: Mapped[DiscountType] = mapped_column(
        _status(DiscountType), default=DiscountType.PERCENTAGE, nullable=False
    )
    discount_value: Mapped[Decimal] = mapped_column(Money, nullable=False)
    max_discount_amount: Mapped[Decimal | None] = mapped_column(Money)
    min_amount: Mapped[Decimal | None] = mapped_column(Money)
    valid_from: Mapped[datetime] = mapped_column(nullable=False)
    valid_until: Mapped[datetime | None] = mapped_column()
    max_uses: Mapped[int | None] = mapped_column(Integer)
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    applicable_plans: Mapped[list[str]] = mapped_column(JSON, default=list)
    first_purchase_only: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    duration_months: Mapped[int | None] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class CouponUsage(Base, UUIDMixin, TenantMixin):
    """One redemption of a coupon."""

    __tablename__ = "coupon_usages"

    coupon_id: Mapped[UUID] = mapped_column(
        ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True
    )
    subscription_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL")
    )
    discount_applied: Mapped[Decimal] = mapped_column(Money, nullable=False)
    used_at: Mapped[datetime] = mapped_column(nullable=False)


# ============================================================
# Reminders
# ============================================================


class PaymentReminder(Base, UUIDMixin, TimestampMixin, TenantMixin):
    """A scheduled notification about an invoice."""

    __tablename__ = "payment_reminders"

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reminder_type: Mapped[ReminderType] = mapped_column(
        _status(ReminderType), nullable=False
    )
    scheduled_for: Mapped[datetime] = mapped_column(nullable=False, index=True)
    status: Mapped[ReminderStatus] = mapped_column(
        _status(ReminderStatus),
        default=ReminderStatus.SCHEDULED,
        nullable=False,
        index=True,
    )
    sent_at: Mapped[datetime | None] = mapped_column()
    error_message: Mapped[str | None] = mapped_column(Text)


# ============================================================
# Billing jobs
# ============================================================


class BillingJob(Base, UUIDMixin, TimestampMixin):
    """A persisted, deferred unit of billing work."""

    __tablename__ = "billing_jobs"

    job_type: Mapped[BillingJobType] = mapped_column(
        _status(BillingJobType), nullable=False, index=True
    )
    scheduled_for: Mapped[datetime] = mapped_column(nullable=False, index=True)
    status: Mapped[JobStatus] = mapped_column(
        _status(JobStatus), default=JobStatus.PENDING, nullable=False, index=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)

    tenant_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    subscription_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), index=True
    )
    invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoices.id", ondelete="CASCADE"), index=True
    )

    result: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime | None] = mapped_column()
    completed_at: Mapped[datetime | None] = mapped_column()
    last_retry_at: Mapped[datetime | None] = mapped_column()
