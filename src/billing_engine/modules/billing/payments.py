"""Payment processor: collection attempts and the dunning state machine."""

import asyncio
from typing import TYPE_CHECKING
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError

from billing_engine.core.errors import (
    ConflictError,
    ExhaustedRetriesError,
    InvalidStateError,
    TransientFailureError,
)

from .gateway import ChargeResult
from .models import (
    BillingAttempt,
    BillingAttemptStatus,
    BillingJobType,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentReminder,
    PaymentStatus,
    ReminderType,
    SubscriptionStatus,
)
from .schemas import BillingJobCreate, PaymentResult


if TYPE_CHECKING:
    from .services import BillingService


logger = structlog.get_logger()


class PaymentProcessor:
    """Runs collection attempts against the payment gateway.

    Each call to ``process_payment`` is one attempt. Gateway declines and
    timeouts are returned as a failed ``PaymentResult``; the retry is
    scheduled as a RETRY_PAYMENT billing job.
    """

    def __init__(self, billing: "BillingService") -> None:
        self.billing = billing
        self.repo = billing.repo

    async def process_payment(self, invoice_id: UUID, force: bool = False) -> PaymentResult:
        """Make one collection attempt on an invoice.

        Raises:
            NotFoundError: If the invoice does not exist
            ExhaustedRetriesError: If no attempts remain and ``force`` is False
            ConflictError: If another worker opened the same attempt number
        """
        invoice = await self.billing.invoices.find_invoice(invoice_id)

        if invoice.status == InvoiceStatus.PAID:
            return PaymentResult(
                success=True,
                invoice_id=invoice.id,
                attempt_number=invoice.billing_attempts,
            )
        if invoice.status == InvoiceStatus.VOID:
            return PaymentResult(
                success=False,
                invoice_id=invoice.id,
                error_code="voided",
                error="Invoice has been voided",
            )
        if self.billing.policy.is_exhausted(invoice.billing_attempts) and not force:
            raise ExhaustedRetriesError(
                details={
                    "invoice_id": str(invoice.id),
                    "attempts": invoice.billing_attempts,
                    "max_retries": self.billing.policy.max_retries,
                }
            )

        attempt_number = invoice.billing_attempts + 1
        attempt = BillingAttempt(
            invoice_id=invoice.id,
            attempt_number=attempt_number,
            status=BillingAttemptStatus.PROCESSING,
            created_at=self.billing.clock.now(),
        )
        try:
            await self.repo.add(attempt)
        except IntegrityError as e:
            raise ConflictError(
                "Payment attempt already in progress",
                details={"invoice_id": str(invoice.id), "attempt": attempt_number},
            ) from e

        charge = await self._charge(invoice, attempt_number)
        if charge.success:
            return await self._settle(invoice, attempt, charge)
        return await self._record_failure(invoice, attempt, charge)

    async def retry_payment(self, invoice_id: UUID, force: bool = False) -> PaymentResult:
        """Manually retry collection.

        Raises:
            NotFoundError: If the invoice does not exist
            InvalidStateError: If the invoice is already paid
            ExhaustedRetriesError: If no attempts remain and ``force`` is False
        """
        invoice = await self.billing.invoices.find_invoice(invoice_id)
        if invoice.status == InvoiceStatus.PAID:
            raise InvalidStateError(
                "Invoice is already paid",
                details={"invoice_id": str(invoice_id), "status": invoice.status},
            )
        logger.info(
            "payment_retry_requested",
            invoice_id=str(invoice_id),
            attempts=invoice.billing_attempts,
            force=force,
        )
        return await self.process_payment(invoice_id, force=force)

    async def _charge(self, invoice: Invoice, attempt_number: int) -> ChargeResult:
        timeout = self.billing.config.gateway_timeout_seconds
        try:
            return await asyncio.wait_for(
                self.billing.gateway.charge(
                    invoice.id, invoice.total, invoice.tenant_id, attempt_number
                ),
                timeout=timeout,
            )
        except TimeoutError:
            return ChargeResult(
                success=False,
                reason="gateway_timeout",
                message=f"Payment gateway did not answer within {timeout}s",
            )
        except TransientFailureError as e:
            return ChargeResult(success=False, reason=e.error_code, message=e.message)

    async def _settle(
        self, invoice: Invoice, attempt: BillingAttempt, charge: ChargeResult
    ) -> PaymentResult:
        now = self.billing.clock.now()
        payment = Payment(
            tenant_id=invoice.tenant_id,
            invoice_id=invoice.id,
            subscription_id=invoice.subscription_id,
            amount=invoice.total,
            status=PaymentStatus.SUCCEEDED,
            reference_id=charge.reference_id,
            paid_at=now,
        )
        await self.repo.add(payment)

        attempt.status = BillingAttemptStatus.SUCCESS
        await self.billing.session.flush()

        await self.repo.transition(
            Invoice,
            invoice.id,
            None,
            billing_attempts=attempt.attempt_number,
            last_attempt_at=now,
        )
        try:
            await self.billing.invoices.mark_paid(invoice.id)
        except InvalidStateError:
            return await self._flag_for_refund(invoice, attempt, payment)

        if invoice.subscription_id:
            subscription = await self.billing.subscriptions.find_subscription(
                invoice.subscription_id
            )
            if subscription.status != SubscriptionStatus.CANCELLED:
                await self.billing.subscriptions.renew_subscription(subscription.id)

        logger.info(
            "payment_succeeded",
            invoice_id=str(invoice.id),
            attempt=attempt.attempt_number,
            amount=str(invoice.total),
            reference_id=charge.reference_id,
        )
        return PaymentResult(
            success=True,
            invoice_id=invoice.id,
            payment_id=payment.id,
            attempt_number=attempt.attempt_number,
        )

    async def _flag_for_refund(
        self, invoice: Invoice, attempt: BillingAttempt, payment: Payment
    ) -> PaymentResult:
        """Keep a charge that landed on an invoice voided mid-flight.

        The money was captured, so the Payment row stays and is marked
        REFUND_DUE rather than being rolled back with the transaction.
        """
        payment.status = PaymentStatus.REFUND_DUE
        await self.billing.session.flush()
        logger.error(
            "payment_captured_on_closed_invoice",
            invoice_id=str(invoice.id),
            payment_id=str(payment.id),
            attempt=attempt.attempt_number,
            amount=str(payment.amount),
            reference_id=payment.reference_id,
        )
        return PaymentResult(
            success=False,
            invoice_id=invoice.id,
            payment_id=payment.id,
            attempt_number=attempt.attempt_number,
            error_code="invoice_closed",
            error="Invoice was voided while the charge was in flight; refund due",
        )

    async def _record_failure(
        self, invoice: Invoice, attempt: BillingAttempt, charge: ChargeResult
    ) -> PaymentResult:
        now = self.billing.clock.now()
        policy = self.billing.policy

        attempt.status = BillingAttemptStatus.FAILED
        attempt.error_code = charge.reason or "payment_failed"
        attempt.error_message = charge.message
        await self.billing.session.flush()

        next_attempt_at = policy.next_attempt_at(attempt.attempt_number, now)
        recorded = await self.repo.record_failed_attempt(
            invoice.id, attempt.attempt_number, now, next_attempt_at
        )
        logger.warning(
            "payment_attempt_failed",
            invoice_id=str(invoice.id),
            attempt=attempt.attempt_number,
            error_code=attempt.error_code,
            next_attempt_at=next_attempt_at.isoformat() if next_attempt_at else None,
        )

        if recorded:
            if policy.is_exhausted(attempt.attempt_number):
                await self.handle_max_retries_reached(invoice)
            elif next_attempt_at is not None:
                await self.billing.jobs.create_job(
                    BillingJobCreate(
                        job_type=BillingJobType.RETRY_PAYMENT,
                        scheduled_for=next_attempt_at,
                        tenant_id=invoice.tenant_id,
                        subscription_id=invoice.subscription_id,
                        invoice_id=invoice.id,
                    )
                )

        return PaymentResult(
            success=False,
            invoice_id=invoice.id,
            attempt_number=attempt.attempt_number,
            error_code=attempt.error_code,
            error=charge.message,
            next_attempt_at=next_attempt_at,
        )

    async def handle_max_retries_reached(self, invoice: Invoice) -> None:
        """Put the linked subscription at risk once dunning is exhausted.

        The subscription goes PAST_DUE, a single cancellation job is
        scheduled ``cancel_after_days`` out and an at-risk reminder is
        recorded.
        """
        logger.warning(
            "payment_retries_exhausted",
            invoice_id=str(invoice.id),
            subscription_id=str(invoice.subscription_id),
        )
        if not invoice.subscription_id:
            return

        now = self.billing.clock.now()
        await self.billing.subscriptions.mark_past_due(invoice.subscription_id)

        already_scheduled = await self.repo.has_pending_job(
            BillingJobType.CANCEL_SUBSCRIPTION, subscription_id=invoice.subscription_id
        )
        if not already_scheduled:
            await self.billing.jobs.create_job(
                BillingJobCreate(
                    job_type=BillingJobType.CANCEL_SUBSCRIPTION,
                    scheduled_for=self.billing.policy.cancel_at(now),
                    tenant_id=invoice.tenant_id,
                    subscription_id=invoice.subscription_id,
                    invoice_id=invoice.id,
                )
            )

        await self.repo.add(
            PaymentReminder(
                tenant_id=invoice.tenant_id,
                invoice_id=invoice.id,
                reminder_type=ReminderType.SUBSCRIPTION_AT_RISK,
                scheduled_for=now,
            )
        )
