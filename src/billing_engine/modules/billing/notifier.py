"""Notification collaborators for payment reminders."""

from typing import Protocol

import httpx
import structlog

from billing_engine.config import Settings, settings
from billing_engine.core.errors import TransientFailureError
from billing_engine.modules.tenants.models import Tenant

from .models import Invoice, ReminderType


logger = structlog.get_logger()


class Notifier(Protocol):
    async def send(
        self, reminder_type: ReminderType, invoice: Invoice, tenant: Tenant | None
    ) -> bool: ...


class LogNotifier:
    """Writes reminders to the log instead of delivering them."""

    async def send(
        self, reminder_type: ReminderType, invoice: Invoice, tenant: Tenant | None
    ) -> bool:
        logger.info(
            "payment_reminder",
            reminder_type=reminder_type.value,
            invoice_id=str(invoice.id),
            invoice_number=invoice.invoice_number,
            tenant_id=str(invoice.tenant_id),
            tenant=tenant.slug if tenant else None,
            total=str(invoice.total),
            due_date=invoice.due_date.isoformat(),
        )
        return True


class WebhookNotifier:
    """POSTs reminders as JSON to a configured URL."""

    def __init__(self, url: str, timeout: float = 10.0) -> None:
        self.url = url
        self.timeout = timeout

    def build_payload(
        self, reminder_type: ReminderType, invoice: Invoice, tenant: Tenant | None
    ) -> dict:
        return {
            "type": reminder_type.value,
            "invoice": {
                "id": str(invoice.id),
                "number": invoice.invoice_number,
                "total": str(invoice.total),
                "due_date": invoice.due_date.isoformat(),
                "status": invoice.status.value,
            },
            "tenant": {
                "id": str(invoice.tenant_id),
                "name": tenant.name if tenant else None,
                "slug": tenant.slug if tenant else None,
            },
        }

    async def send(
        self, reminder_type: ReminderType, invoice: Invoice, tenant: Tenant | None
    ) -> bool:
        payload = self.build_payload(reminder_type, invoice, tenant)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise TransientFailureError(
                "Notification webhook unreachable",
                details={"url": self.url, "error": str(e)},
            ) from e

        if response.status_code >= 500:
            raise TransientFailureError(
                "Notification webhook failed",
                details={"url": self.url, "status": response.status_code},
            )
        return response.is_success


def build_notifier(config: Settings | None = None) -> Notifier:
    config = config or settings
    if config.notification_webhook_url:
        return WebhookNotifier(
            config.notification_webhook_url,
            timeout=config.notification_timeout_seconds,
        )
    return LogNotifier()
