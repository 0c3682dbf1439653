"""Integration tests for the subscription lifecycle."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.errors import InvalidStateError, NotFoundError
from billing_engine.modules.billing.models import (
    BillingCycle,
    InvoiceStatus,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.modules.billing.services import BillingService
from billing_engine.modules.billing.subscriptions import RENEWABLE_STATUSES
from billing_engine.modules.tenants.models import Tenant
from tests.conftest import NOW, FakeGateway, create_subscription


class TestRenewSubscription:
    @pytest.mark.asyncio
    async def test_advances_one_calendar_month(
        self, billing: BillingService, subscription: Subscription
    ):
        renewed = await billing.subscriptions.renew_subscription(subscription.id)

        assert renewed.current_period_start == datetime(2024, 2, 1, tzinfo=UTC)
        assert renewed.current_period_end == datetime(2024, 3, 1, tzinfo=UTC)
        assert renewed.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_month_end_anchor(
        self, billing: BillingService, db: AsyncSession, tenant: Tenant, plan: Plan
    ):
        """Verify a period ending Jan 31 renews into a period ending Feb 29."""
        subscription = await create_subscription(
            db,
            tenant,
            plan,
            current_period_start=datetime(2023, 12, 31, tzinfo=UTC),
            current_period_end=datetime(2024, 1, 31, tzinfo=UTC),
        )

        renewed = await billing.subscriptions.renew_subscription(subscription.id)

        assert renewed.current_period_end == datetime(2024, 2, 29, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_yearly_cycle(
        self, billing: BillingService, db: AsyncSession, tenant: Tenant, plan: Plan
    ):
        subscription = await create_subscription(
            db,
            tenant,
            plan,
            amount=plan.yearly_price,
            billing_cycle=BillingCycle.YEARLY,
        )

        renewed = await billing.subscriptions.renew_subscription(subscription.id)

        assert renewed.current_period_end == datetime(2025, 2, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_applies_scheduled_plan_change(
        self,
        billing: BillingService,
        db: AsyncSession,
        tenant: Tenant,
        subscription: Subscription,
        enterprise_plan: Plan,
    ):
        """Verify a queued plan change takes effect at renewal and reaches the tenant."""
        subscription.scheduled_plan_id = enterprise_plan.id
        subscription.scheduled_change = True
        await db.flush()

        renewed = await billing.subscriptions.renew_subscription(subscription.id)

        assert renewed.plan_id == enterprise_plan.id
        assert renewed.plan_type == "ENTERPRISE"
        assert renewed.amount == Decimal("99.00")
        assert renewed.scheduled_plan_id is None
        assert renewed.scheduled_change is None
        assert await billing.tenants.get_plan(tenant.id) == "ENTERPRISE"

    @pytest.mark.asyncio
    async def test_quarterly_price_falls_back_to_three_months(
        self, billing: BillingService, db: AsyncSession, tenant: Tenant, plan: Plan
    ):
        subscription = await create_subscription(
            db,
            tenant,
            plan,
            billing_cycle=BillingCycle.QUARTERLY,
            amount=Decimal("80.00"),
            scheduled_plan_id=plan.id,
            scheduled_change=True,
        )

        renewed = await billing.subscriptions.renew_subscription(subscription.id)

        assert renewed.amount == Decimal("87.00")

    @pytest.mark.asyncio
    async def test_cancelled_subscription_cannot_renew(
        self, billing: BillingService, db: AsyncSession, tenant: Tenant, plan: Plan
    ):
        subscription = await create_subscription(
            db, tenant, plan, status=SubscriptionStatus.CANCELLED
        )

        with pytest.raises(InvalidStateError):
            await billing.subscriptions.renew_subscription(subscription.id)

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, billing: BillingService):
        with pytest.raises(NotFoundError):
            await billing.subscriptions.renew_subscription(uuid4())

    @pytest.mark.asyncio
    async def test_stale_period_loses_the_renewal(
        self, billing: BillingService, subscription: Subscription
    ):
        """Verify a renewal based on an old period end changes nothing.

        Two workers that both read the January period can only move it
        forward once.
        """
        january_end = subscription.current_period_end
        await billing.subscriptions.renew_subscription(subscription.id)

        won = await billing.repo.transition(
            Subscription,
            subscription.id,
            RENEWABLE_STATUSES,
            Subscription.current_period_end == january_end,
            current_period_start=january_end,
            current_period_end=datetime(2024, 3, 1, tzinfo=UTC),
        )

        assert won is False
        current = await billing.subscriptions.find_subscription(subscription.id)
        assert current.current_period_start == datetime(2024, 2, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_paid_period_renews_once(
        self, billing: BillingService, subscription: Subscription
    ):
        """Verify paying the invoice renews, and renewing again starts a new period."""
        invoice = await billing.invoices.generate_subscription_invoice(subscription.id)
        await billing.payments.process_payment(invoice.id)

        renewed = await billing.subscriptions.find_subscription(subscription.id)
        assert renewed.current_period_end == datetime(2024, 3, 1, tzinfo=UTC)

        # The paid invoice covered January only
        repeat = await billing.invoices.generate_subscription_invoice(subscription.id)
        assert repeat.id != invoice.id
        assert repeat.due_date == datetime(2024, 3, 1, tzinfo=UTC)


class TestExpireTrial:
    @pytest.mark.asyncio
    async def test_successful_conversion(
        self, billing: BillingService, trial_subscription: Subscription
    ):
        """Verify a trial converts when the first charge succeeds."""
        result = await billing.subscriptions.expire_trial(trial_subscription.id)

        assert result["expired"] is True
        assert result["converted"] is True
        invoice = await billing.invoices.find_invoice(UUID(result["invoice_id"]))
        assert invoice.status == InvoiceStatus.PAID

        subscription = await billing.subscriptions.find_subscription(trial_subscription.id)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_start == NOW

    @pytest.mark.asyncio
    async def test_failed_conversion_goes_past_due(
        self,
        billing: BillingService,
        gateway: FakeGateway,
        trial_subscription: Subscription,
    ):
        gateway.decline()

        result = await billing.subscriptions.expire_trial(trial_subscription.id)

        assert result["converted"] is False
        subscription = await billing.subscriptions.find_subscription(trial_subscription.id)
        assert subscription.status == SubscriptionStatus.PAST_DUE
        invoice = await billing.invoices.find_invoice(UUID(result["invoice_id"]))
        assert invoice.billing_attempts == 1
        assert invoice.next_attempt_at == NOW + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_only_trials_expire(
        self, billing: BillingService, subscription: Subscription
    ):
        with pytest.raises(InvalidStateError) as exc_info:
            await billing.subscriptions.expire_trial(subscription.id)

        assert exc_info.value.error_code == "not_in_trial"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancels_past_due_and_downgrades_tenant(
        self, billing: BillingService, db: AsyncSession, tenant: Tenant, plan: Plan
    ):
        tenant.plan = "PRO"
        subscription = await create_subscription(
            db, tenant, plan, status=SubscriptionStatus.PAST_DUE
        )

        cancelled = await billing.subscriptions.cancel_subscription_due_to_payment(
            subscription.id
        )

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancelled_at == NOW
        assert cancelled.cancel_reason == "Payment not received"
        assert await billing.tenants.get_plan(tenant.id) == "FREE"

    @pytest.mark.asyncio
    async def test_cancelling_twice_is_a_no_op(
        self, billing: BillingService, db: AsyncSession, tenant: Tenant, plan: Plan
    ):
        subscription = await create_subscription(
            db, tenant, plan, status=SubscriptionStatus.PAST_DUE
        )
        await billing.subscriptions.cancel_subscription_due_to_payment(subscription.id)
        billing.clock.advance(days=1)

        again = await billing.subscriptions.cancel_subscription_due_to_payment(
            subscription.id
        )

        assert again.cancelled_at == NOW

    @pytest.mark.asyncio
    async def test_active_subscription_is_not_cancelled(
        self, billing: BillingService, subscription: Subscription
    ):
        with pytest.raises(InvalidStateError):
            await billing.subscriptions.cancel_subscription_due_to_payment(
                subscription.id
            )

    @pytest.mark.asyncio
    async def test_mark_past_due_only_from_active_or_trialing(
        self, billing: BillingService, subscription: Subscription
    ):
        assert await billing.subscriptions.mark_past_due(subscription.id) is True
        assert await billing.subscriptions.mark_past_due(subscription.id) is False
