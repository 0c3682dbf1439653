"""Payment gateway collaborators.

The payment processor only sees the ``PaymentGateway`` protocol. Stripe
SDK calls are blocking, so they run in a worker thread.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol
from uuid import UUID

import stripe
import structlog

from billing_engine.config import Settings, settings


logger = structlog.get_logger()


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a single charge.

    ``reason`` is a machine-readable decline code; ``message`` is for humans.
    """

    success: bool
    reference_id: str | None = None
    reason: str | None = None
    message: str | None = None


class PaymentGateway(Protocol):
    async def charge(
        self,
        invoice_id: UUID,
        amount: Decimal,
        tenant_id: UUID,
        attempt_number: int,
    ) -> ChargeResult: ...


class StripeGateway:
    """Charges invoices through Stripe PaymentIntents."""

    def __init__(self, api_key: str, currency: str = "usd") -> None:
        stripe.api_key = api_key
        self.currency = currency

    async def charge(
        self,
        invoice_id: UUID,
        amount: Decimal,
        tenant_id: UUID,
        attempt_number: int,
    ) -> ChargeResult:
        """Create and confirm a PaymentIntent for the invoice total.

        The idempotency key is scoped to the attempt, so a retry reaches the
        card instead of replaying the response Stripe stored for an earlier
        decline.
        """
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=int(amount * 100),
                currency=self.currency,
                confirm=True,
                off_session=True,
                metadata={"invoice_id": str(invoice_id), "tenant_id": str(tenant_id)},
                idempotency_key=f"invoice-{invoice_id}-attempt-{attempt_number}",
            )
        except stripe.CardError as e:
            return ChargeResult(
                success=False,
                reason=e.code or "card_declined",
                message=e.user_message or str(e),
            )
        except stripe.StripeError as e:
            logger.warning(
                "stripe_charge_error",
                invoice_id=str(invoice_id),
                error=str(e),
            )
            return ChargeResult(success=False, reason="gateway_error", message=str(e))

        if intent.status == "succeeded":
            return ChargeResult(success=True, reference_id=intent.id)
        return ChargeResult(
            success=False,
            reference_id=intent.id,
            reason=f"intent_{intent.status}",
            message=f"Payment intent ended in status {intent.status}",
        )


class UnconfiguredGateway:
    """Declines everything. Used when no Stripe key is configured."""

    async def charge(
        self,
        invoice_id: UUID,
        amount: Decimal,
        tenant_id: UUID,
        attempt_number: int,
    ) -> ChargeResult:
        logger.warning("payment_gateway_unconfigured", invoice_id=str(invoice_id))
        return ChargeResult(
            success=False,
            reason="gateway_unconfigured",
            message="No payment gateway is configured",
        )


def build_payment_gateway(config: Settings | None = None) -> PaymentGateway:
    """Pick the gateway implementation for the current settings."""
    config = config or settings
    if config.stripe_secret_key:
        return StripeGateway(config.stripe_secret_key, currency=config.stripe_currency)
    return UnconfiguredGateway()
