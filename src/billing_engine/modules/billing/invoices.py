"""Invoice manager: numbering, reminders and invoice state changes."""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

import structlog

from billing_engine.core.constants import INVOICE_NUMBER_PREFIX, INVOICE_SEQUENCE_WIDTH
from billing_engine.core.errors import InvalidStateError, NotFoundError

from .models import (
    OPEN_INVOICE_STATUSES,
    BillingJobType,
    Invoice,
    InvoiceStatus,
    PaymentReminder,
    Subscription,
)
from .policy import to_cents
from .schemas import InvoiceCreate, InvoiceQuery, InvoiceUpdate, LineItem


if TYPE_CHECKING:
    from .services import BillingService


logger = structlog.get_logger()


def format_invoice_number(issued_at: datetime, sequence: int) -> str:
    """``INV-YYYYMM-NNNN``; the sequence widens past 9999 rather than wrapping."""
    return (
        f"{INVOICE_NUMBER_PREFIX}-{issued_at:%Y%m}-"
        f"{sequence:0{INVOICE_SEQUENCE_WIDTH}d}"
    )


class InvoiceManager:
    """Creates invoices and moves them through DRAFT/OPEN -> PAID | VOID."""

    def __init__(self, billing: "BillingService") -> None:
        self.billing = billing
        self.repo = billing.repo

    async def allocate_invoice_number(self, tenant_id: UUID, issued_at: datetime) -> str:
        sequence = await self.repo.next_invoice_sequence(tenant_id, f"{issued_at:%Y%m}")
        return format_invoice_number(issued_at, sequence)

    async def create_invoice(self, data: InvoiceCreate) -> Invoice:
        """Create an OPEN invoice and schedule its reminders.

        Raises:
            NotFoundError: If the tenant does not exist
        """
        if await self.billing.tenants.get(data.tenant_id) is None:
            raise NotFoundError(
                "Tenant not found", resource="tenant", resource_id=str(data.tenant_id)
            )

        now = self.billing.clock.now()
        invoice = Invoice(
            tenant_id=data.tenant_id,
            subscription_id=data.subscription_id,
            invoice_number=await self.allocate_invoice_number(data.tenant_id, now),
            subtotal=data.subtotal,
            discount=data.discount,
            tax=data.tax,
            total=data.total,
            due_date=data.due_date,
            status=InvoiceStatus.OPEN,
            description=data.description,
            line_items=[item.model_dump(mode="json") for item in data.line_items],
            billing_attempts=0,
        )
        await self.repo.add(invoice)
        await self.schedule_reminders(invoice, now)

        logger.info(
            "invoice_created",
            invoice_id=str(invoice.id),
            invoice_number=invoice.invoice_number,
            tenant_id=str(invoice.tenant_id),
            total=str(invoice.total),
        )
        return invoice

    async def schedule_reminders(self, invoice: Invoice, now: datetime) -> int:
        schedule = self.billing.policy.reminder_schedule(invoice.due_date, now)
        for reminder_type, scheduled_for in schedule:
            self.billing.session.add(
                PaymentReminder(
                    tenant_id=invoice.tenant_id,
                    invoice_id=invoice.id,
                    reminder_type=reminder_type,
                    scheduled_for=scheduled_for,
                )
            )
        await self.billing.session.flush()
        return len(schedule)

    async def find_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = await self.repo.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError(
                "Invoice not found", resource="invoice", resource_id=str(invoice_id)
            )
        return invoice

    async def find_invoices(self, query: InvoiceQuery) -> tuple[list[Invoice], int]:
        return await self.repo.find_invoices(query, self.billing.clock.now())

    async def find_tenant_invoices(self, tenant_id: UUID) -> list[Invoice]:
        return await self.repo.find_tenant_invoices(tenant_id)

    async def update_invoice(self, invoice_id: UUID, data: InvoiceUpdate) -> Invoice:
        """Edit an invoice that has not been closed.

        Moving the due date re-plans its scheduled reminders.

        Raises:
            NotFoundError: If the invoice does not exist
            InvalidStateError: If the invoice is PAID or VOID
        """
        invoice = await self.find_invoice(invoice_id)
        values = data.model_dump(exclude_unset=True, exclude_none=True)
        if not values:
            return invoice

        updated = await self.repo.transition(
            Invoice, invoice_id, OPEN_INVOICE_STATUSES, **values
        )
        invoice = await self.find_invoice(invoice_id)
        if not updated:
            raise InvalidStateError(
                "Cannot edit a closed invoice",
                details={"invoice_id": str(invoice_id), "status": invoice.status},
            )

        if "due_date" in values:
            await self.repo.cancel_scheduled_reminders(invoice_id)
            await self.schedule_reminders(invoice, self.billing.clock.now())

        logger.info("invoice_updated", invoice_id=str(invoice_id), fields=list(values))
        return invoice

    async def mark_paid(self, invoice_id: UUID) -> Invoice:
        """Close an invoice as PAID. Paying twice is a no-op.

        Raises:
            NotFoundError: If the invoice does not exist
            InvalidStateError: If the invoice was voided
        """
        now = self.billing.clock.now()
        updated = await self.repo.transition(
            Invoice,
            invoice_id,
            OPEN_INVOICE_STATUSES,
            status=InvoiceStatus.PAID,
            paid_at=now,
            next_attempt_at=None,
        )
        invoice = await self.find_invoice(invoice_id)
        if not updated:
            if invoice.status == InvoiceStatus.VOID:
                raise InvalidStateError(
                    "Cannot pay a voided invoice",
                    details={"invoice_id": str(invoice_id), "status": invoice.status},
                )
            return invoice

        reminders = await self.repo.cancel_scheduled_reminders(invoice_id)
        jobs = await self.repo.cancel_pending_jobs(
            BillingJobType.RETRY_PAYMENT, invoice_id=invoice_id, now=now
        )
        logger.info(
            "invoice_paid",
            invoice_id=str(invoice_id),
            reminders_cancelled=reminders,
            retries_cancelled=jobs,
        )
        return invoice

    async def void_invoice(self, invoice_id: UUID) -> Invoice:
        """Void an unpaid invoice. Voiding twice is a no-op.

        Raises:
            NotFoundError: If the invoice does not exist
            InvalidStateError: If the invoice is already PAID
        """
        now = self.billing.clock.now()
        updated = await self.repo.transition(
            Invoice,
            invoice_id,
            OPEN_INVOICE_STATUSES,
            status=InvoiceStatus.VOID,
            next_attempt_at=None,
        )
        invoice = await self.find_invoice(invoice_id)
        if not updated:
            if invoice.status == InvoiceStatus.PAID:
                raise InvalidStateError(
                    "Cannot void a paid invoice",
                    details={"invoice_id": str(invoice_id), "status": invoice.status},
                )
            return invoice

        await self.repo.cancel_scheduled_reminders(invoice_id)
        await self.repo.cancel_pending_jobs(
            BillingJobType.RETRY_PAYMENT, invoice_id=invoice_id, now=now
        )
        logger.info("invoice_voided", invoice_id=str(invoice_id))
        return invoice

    async def generate_subscription_invoice(self, subscription_id: UUID) -> Invoice:
        """Invoice the subscription's current period, once.

        An OPEN or DRAFT invoice already covering the period is returned
        unchanged.
        """
        subscription = await self.billing.subscriptions.find_subscription(
            subscription_id
        )
        existing = await self.repo.find_open_invoice_since(
            subscription.id, subscription.current_period_start
        )
        if existing is not None:
            return existing

        return await self.create_invoice(self._period_invoice(subscription))

    def _period_invoice(self, subscription: Subscription) -> InvoiceCreate:
        discount = subscription.discount
        if discount is not None:
            discount = min(discount, subscription.amount)
        total = to_cents(subscription.amount - (discount or Decimal(0)))
        period = (
            f"{subscription.current_period_start:%Y-%m-%d} - "
            f"{subscription.current_period_end:%Y-%m-%d}"
        )
        cycle = subscription.billing_cycle.lower()
        return InvoiceCreate(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            subtotal=subscription.amount,
            discount=discount,
            total=total,
            due_date=subscription.current_period_end,
            description=f"{subscription.plan_type} subscription ({period})",
            line_items=[
                LineItem(
                    description=f"{subscription.plan_type} plan, {cycle}",
                    quantity=1,
                    unit_price=subscription.amount,
                    total=subscription.amount,
                )
            ],
        )

    async def list_reminders(self, invoice_id: UUID) -> list[PaymentReminder]:
        """Reminders for an invoice, cancelling any left over after it closed."""
        invoice = await self.find_invoice(invoice_id)
        if invoice.status not in OPEN_INVOICE_STATUSES:
            await self.repo.cancel_scheduled_reminders(invoice_id)
        return await self.repo.list_reminders(invoice_id)
