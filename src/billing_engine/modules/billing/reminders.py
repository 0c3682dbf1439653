"""Reminder dispatch through the notification collaborator."""

import asyncio
from typing import TYPE_CHECKING
from uuid import UUID

import structlog

from billing_engine.core.errors import NotFoundError, TransientFailureError

from .models import OPEN_INVOICE_STATUSES, PaymentReminder, ReminderStatus


if TYPE_CHECKING:
    from .services import BillingService


logger = structlog.get_logger()


class ReminderDispatcher:
    def __init__(self, billing: "BillingService") -> None:
        self.billing = billing
        self.repo = billing.repo

    async def dispatch(self, reminder_id: UUID) -> ReminderStatus:
        """Send one scheduled reminder and record the outcome.

        Reminders for invoices that were paid or voided in the meantime
        are cancelled instead of sent.

        Returns:
            The reminder's status after dispatch
        """
        reminder = await self.repo.get(PaymentReminder, reminder_id)
        if reminder is None:
            raise NotFoundError(
                "Reminder not found", resource="reminder", resource_id=str(reminder_id)
            )
        if reminder.status != ReminderStatus.SCHEDULED:
            return reminder.status

        invoice = await self.billing.invoices.find_invoice(reminder.invoice_id)
        if invoice.status not in OPEN_INVOICE_STATUSES:
            await self._close(reminder_id, status=ReminderStatus.CANCELLED)
            return ReminderStatus.CANCELLED

        tenant = await self.billing.tenants.get(invoice.tenant_id)
        timeout = self.billing.config.notification_timeout_seconds
        try:
            delivered = await asyncio.wait_for(
                self.billing.notifier.send(reminder.reminder_type, invoice, tenant),
                timeout=timeout,
            )
            error = None if delivered else "Notification was not accepted"
        except TimeoutError:
            error = f"Notification timed out after {timeout}s"
        except TransientFailureError as e:
            error = e.message

        if error is None:
            await self._close(
                reminder_id, status=ReminderStatus.SENT, sent_at=self.billing.clock.now()
            )
            logger.info(
                "reminder_sent",
                reminder_id=str(reminder_id),
                invoice_id=str(invoice.id),
                reminder_type=reminder.reminder_type.value,
            )
            return ReminderStatus.SENT

        await self._close(reminder_id, status=ReminderStatus.FAILED, error_message=error)
        logger.error(
            "reminder_failed",
            reminder_id=str(reminder_id),
            invoice_id=str(invoice.id),
            error=error,
        )
        return ReminderStatus.FAILED

    async def dispatch_due(self, limit: int) -> dict[str, int]:
        """Dispatch every due reminder in this session; returns counts by outcome."""
        counts: dict[str, int] = {}
        now = self.billing.clock.now()
        for reminder_id in await self.repo.due_reminder_ids(now, limit):
            status = await self.dispatch(reminder_id)
            counts[status.value] = counts.get(status.value, 0) + 1
        return counts

    async def _close(self, reminder_id: UUID, **values: object) -> bool:
        return await self.repo.transition(
            PaymentReminder, reminder_id, [ReminderStatus.SCHEDULED], **values
        )
