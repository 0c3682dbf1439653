"""Unit tests for payment gateway collaborators."""

from decimal import Decimal
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
import stripe

from billing_engine.config import Settings
from billing_engine.modules.billing.gateway import (
    StripeGateway,
    UnconfiguredGateway,
    build_payment_gateway,
)


class TestStripeGateway:
    """Tests for StripeGateway.charge."""

    @pytest.mark.asyncio
    async def test_successful_intent(self):
        """Verify a succeeded PaymentIntent becomes a successful charge."""
        invoice_id, tenant_id = uuid4(), uuid4()
        intent = MagicMock(status="succeeded", id="pi_123")

        with patch(
            "billing_engine.modules.billing.gateway.stripe.PaymentIntent.create",
            return_value=intent,
        ) as mock_create:
            result = await StripeGateway("sk_test_x").charge(
                invoice_id, Decimal("49.00"), tenant_id, 1
            )

        assert result.success is True
        assert result.reference_id == "pi_123"
        kwargs = mock_create.call_args.kwargs
        assert kwargs["amount"] == 4900
        assert kwargs["currency"] == "usd"
        assert kwargs["metadata"] == {
            "invoice_id": str(invoice_id),
            "tenant_id": str(tenant_id),
        }

    @pytest.mark.asyncio
    async def test_each_attempt_gets_its_own_idempotency_key(self):
        """Verify a retry is not answered with an earlier attempt's stored result."""
        invoice_id, tenant_id = uuid4(), uuid4()
        intent = MagicMock(status="succeeded", id="pi_123")
        gateway = StripeGateway("sk_test_x")

        with patch(
            "billing_engine.modules.billing.gateway.stripe.PaymentIntent.create",
            return_value=intent,
        ) as mock_create:
            await gateway.charge(invoice_id, Decimal("29.00"), tenant_id, 1)
            await gateway.charge(invoice_id, Decimal("29.00"), tenant_id, 2)

        keys = [call.kwargs["idempotency_key"] for call in mock_create.call_args_list]
        assert keys == [
            f"invoice-{invoice_id}-attempt-1",
            f"invoice-{invoice_id}-attempt-2",
        ]

    @pytest.mark.asyncio
    async def test_card_error_is_a_decline(self):
        """Verify card errors are returned, not raised."""
        error = stripe.CardError("Your card was declined.", None, "card_declined")

        with patch(
            "billing_engine.modules.billing.gateway.stripe.PaymentIntent.create",
            side_effect=error,
        ):
            result = await StripeGateway("sk_test_x").charge(
                uuid4(), Decimal("10.00"), uuid4(), 1
            )

        assert result.success is False
        assert result.reason == "card_declined"

    @pytest.mark.asyncio
    async def test_api_error_is_a_decline(self):
        with patch(
            "billing_engine.modules.billing.gateway.stripe.PaymentIntent.create",
            side_effect=stripe.APIConnectionError("connection reset"),
        ):
            result = await StripeGateway("sk_test_x").charge(
                uuid4(), Decimal("10.00"), uuid4(), 1
            )

        assert result.success is False
        assert result.reason == "gateway_error"

    @pytest.mark.asyncio
    async def test_unfinished_intent_is_a_decline(self):
        intent = MagicMock(status="requires_action", id="pi_456")

        with patch(
            "billing_engine.modules.billing.gateway.stripe.PaymentIntent.create",
            return_value=intent,
        ):
            result = await StripeGateway("sk_test_x").charge(
                uuid4(), Decimal("10.00"), uuid4(), 1
            )

        assert result.success is False
        assert result.reference_id == "pi_456"
        assert result.reason == "intent_requires_action"


class TestBuildPaymentGateway:
    def test_stripe_when_key_configured(self):
        gateway = build_payment_gateway(Settings(stripe_secret_key="sk_test_x"))
        assert isinstance(gateway, StripeGateway)

    @pytest.mark.asyncio
    async def test_unconfigured_declines(self):
        gateway = build_payment_gateway(Settings(stripe_secret_key=None))

        result = await gateway.charge(uuid4(), Decimal("10.00"), uuid4(), 1)

        assert isinstance(gateway, UnconfiguredGateway)
        assert result.success is False
        assert result.reason == "gateway_unconfigured"
