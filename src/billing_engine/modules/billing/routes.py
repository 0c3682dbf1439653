"""Billing API routes."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query, status

from .schemas import (
    BillingAttemptResponse,
    BillingJobCreate,
    BillingJobQuery,
    BillingJobResponse,
    BillingStats,
    CouponApply,
    CouponCreate,
    CouponListResponse,
    CouponQuery,
    CouponRedemption,
    CouponResponse,
    CouponUpdate,
    CouponValidate,
    CouponValidation,
    InvoiceCreate,
    InvoiceDetailResponse,
    InvoiceListResponse,
    InvoiceQuery,
    InvoiceResponse,
    InvoiceUpdate,
    PaymentResult,
    ReminderResponse,
    RetryPaymentRequest,
    SubscriptionResponse,
)
from .services import BillingServiceDep


router = APIRouter(prefix="/billing", tags=["billing"])


# ============================================================
# Invoices
# ============================================================


@router.post(
    "/invoices",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create invoice",
    description="Create an OPEN invoice and schedule its payment reminders.",
)
async def create_invoice(data: InvoiceCreate, billing: BillingServiceDep) -> InvoiceResponse:
    invoice = await billing.invoices.create_invoice(data)
    return InvoiceResponse.model_validate(invoice)


@router.get(
    "/invoices",
    response_model=InvoiceListResponse,
    summary="List invoices",
)
async def list_invoices(
    query: Annotated[InvoiceQuery, Query()], billing: BillingServiceDep
) -> InvoiceListResponse:
    invoices, total = await billing.invoices.find_invoices(query)
    return InvoiceListResponse(
        items=[InvoiceResponse.model_validate(i) for i in invoices],
        total=total,
        limit=query.limit,
        offset=query.offset,
    )


@router.get(
    "/tenants/{tenant_id}/invoices",
    response_model=list[InvoiceResponse],
    summary="List a tenant's invoices",
)
async def list_tenant_invoices(
    tenant_id: UUID, billing: BillingServiceDep
) -> list[InvoiceResponse]:
    invoices = await billing.invoices.find_tenant_invoices(tenant_id)
    return [InvoiceResponse.model_validate(i) for i in invoices]


@router.get(
    "/invoices/{invoice_id}",
    response_model=InvoiceDetailResponse,
    summary="Get invoice",
    description="Get an invoice with its billing attempts and reminders.",
)
async def get_invoice(invoice_id: UUID, billing: BillingServiceDep) -> InvoiceDetailResponse:
    invoice = await billing.invoices.find_invoice(invoice_id)
    attempts = await billing.repo.list_attempts(invoice_id)
    reminders = await billing.invoices.list_reminders(invoice_id)
    return InvoiceDetailResponse.model_validate(
        {
            **InvoiceResponse.model_validate(invoice).model_dump(),
            "attempts": [BillingAttemptResponse.model_validate(a) for a in attempts],
            "reminders": [ReminderResponse.model_validate(r) for r in reminders],
        }
    )


@router.patch(
    "/invoices/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Update invoice",
)
async def update_invoice(
    invoice_id: UUID, data: InvoiceUpdate, billing: BillingServiceDep
) -> InvoiceResponse:
    invoice = await billing.invoices.update_invoice(invoice_id, data)
    return InvoiceResponse.model_validate(invoice)


@router.get(
    "/invoices/{invoice_id}/reminders",
    response_model=list[ReminderResponse],
    summary="List invoice reminders",
)
async def list_invoice_reminders(
    invoice_id: UUID, billing: BillingServiceDep
) -> list[ReminderResponse]:
    reminders = await billing.invoices.list_reminders(invoice_id)
    return [ReminderResponse.model_validate(r) for r in reminders]


@router.post(
    "/invoices/{invoice_id}/mark-paid",
    response_model=InvoiceResponse,
    summary="Mark invoice paid",
    description="Record an out-of-band payment. Repeating the call is a no-op.",
)
async def mark_invoice_paid(invoice_id: UUID, billing: BillingServiceDep) -> InvoiceResponse:
    invoice = await billing.invoices.mark_paid(invoice_id)
    return InvoiceResponse.model_validate(invoice)


@router.post(
    "/invoices/{invoice_id}/void",
    response_model=InvoiceResponse,
    summary="Void invoice",
)
async def void_invoice(invoice_id: UUID, billing: BillingServiceDep) -> InvoiceResponse:
    invoice = await billing.invoices.void_invoice(invoice_id)
    return InvoiceResponse.model_validate(invoice)


# ============================================================
# Payments
# ============================================================


@router.post(
    "/invoices/{invoice_id}/process-payment",
    response_model=PaymentResult,
    summary="Charge invoice",
    description="Make one collection attempt. Declines are returned, not raised.",
)
async def process_payment(invoice_id: UUID, billing: BillingServiceDep) -> PaymentResult:
    return await billing.payments.process_payment(invoice_id)


@router.post(
    "/payments/retry",
    response_model=PaymentResult,
    summary="Retry payment",
    description="Retry a failed invoice. Exhausted invoices need force=true.",
)
async def retry_payment(
    data: RetryPaymentRequest, billing: BillingServiceDep
) -> PaymentResult:
    return await billing.payments.retry_payment(data.invoice_id, force=data.force)


# ============================================================
# Subscriptions
# ============================================================


@router.post(
    "/subscriptions/{subscription_id}/generate-invoice",
    response_model=InvoiceResponse,
    summary="Invoice current period",
    description="Idempotent: returns the open invoice for the period if one exists.",
)
async def generate_subscription_invoice(
    subscription_id: UUID, billing: BillingServiceDep
) -> InvoiceResponse:
    invoice = await billing.invoices.generate_subscription_invoice(subscription_id)
    return InvoiceResponse.model_validate(invoice)


@router.post(
    "/subscriptions/{subscription_id}/renew",
    response_model=SubscriptionResponse,
    summary="Renew subscription",
)
async def renew_subscription(
    subscription_id: UUID, billing: BillingServiceDep
) -> SubscriptionResponse:
    subscription = await billing.subscriptions.renew_subscription(subscription_id)
    return SubscriptionResponse.model_validate(subscription)


# ============================================================
# Coupons
# ============================================================


@router.get("/coupons", response_model=CouponListResponse, summary="List coupons")
async def list_coupons(
    query: Annotated[CouponQuery, Query()], billing: BillingServiceDep
) -> CouponListResponse:
    coupons, total = await billing.coupons.find_coupons(query)
    return CouponListResponse(
        items=[CouponResponse.model_validate(c) for c in coupons], total=total
    )


@router.post(
    "/coupons",
    response_model=CouponResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create coupon",
)
async def create_coupon(data: CouponCreate, billing: BillingServiceDep) -> CouponResponse:
    coupon = await billing.coupons.create_coupon(data)
    return CouponResponse.model_validate(coupon)


@router.post(
    "/coupons/validate",
    response_model=CouponValidation,
    summary="Validate coupon",
    description="Check a coupon against a plan and amount without redeeming it.",
)
async def validate_coupon(
    data: CouponValidate, billing: BillingServiceDep
) -> CouponValidation:
    return await billing.coupons.validate_coupon(data)


@router.post(
    "/coupons/apply",
    response_model=CouponRedemption,
    status_code=status.HTTP_201_CREATED,
    summary="Apply coupon",
)
async def apply_coupon(data: CouponApply, billing: BillingServiceDep) -> CouponRedemption:
    return await billing.coupons.apply_coupon(data)


@router.get("/coupons/{code}", response_model=CouponResponse, summary="Get coupon")
async def get_coupon(code: str, billing: BillingServiceDep) -> CouponResponse:
    coupon = await billing.coupons.find_coupon(code)
    return CouponResponse.model_validate(coupon)


@router.patch(
    "/coupons/{coupon_id}", response_model=CouponResponse, summary="Update coupon"
)
async def update_coupon(
    coupon_id: UUID, data: CouponUpdate, billing: BillingServiceDep
) -> CouponResponse:
    coupon = await billing.coupons.update_coupon(coupon_id, data)
    return CouponResponse.model_validate(coupon)


# ============================================================
# Billing jobs
# ============================================================


@router.get(
    "/jobs/pending",
    response_model=list[BillingJobResponse],
    summary="List due jobs",
)
async def list_pending_jobs(
    query: Annotated[BillingJobQuery, Query()], billing: BillingServiceDep
) -> list[BillingJobResponse]:
    jobs = await billing.jobs.find_pending_jobs(query)
    return [BillingJobResponse.model_validate(j) for j in jobs]


@router.post(
    "/jobs",
    response_model=BillingJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create job",
)
async def create_job(data: BillingJobCreate, billing: BillingServiceDep) -> BillingJobResponse:
    job = await billing.jobs.create_job(data)
    return BillingJobResponse.model_validate(job)


@router.get("/jobs/{job_id}", response_model=BillingJobResponse, summary="Get job")
async def get_job(job_id: UUID, billing: BillingServiceDep) -> BillingJobResponse:
    job = await billing.jobs.find_job(job_id)
    return BillingJobResponse.model_validate(job)


@router.post(
    "/jobs/{job_id}/process",
    response_model=BillingJobResponse,
    summary="Run job now",
)
async def process_job(job_id: UUID, billing: BillingServiceDep) -> BillingJobResponse:
    await billing.jobs.process_job(job_id)
    job = await billing.jobs.find_job(job_id)
    return BillingJobResponse.model_validate(job)


# ============================================================
# Stats
# ============================================================


@router.get("/stats", response_model=BillingStats, summary="Billing statistics")
async def get_stats(billing: BillingServiceDep) -> BillingStats:
    return await billing.get_billing_stats()
