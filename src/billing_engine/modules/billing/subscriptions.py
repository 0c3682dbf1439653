"""Subscription lifecycle: renewal, trial expiry and cancellation."""

from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog

from billing_engine.core.errors import InvalidStateError, NotFoundError

from .models import Subscription, SubscriptionStatus
from .policy import advance_period


if TYPE_CHECKING:
    from .services import BillingService


logger = structlog.get_logger()

RENEWABLE_STATUSES = (
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
)


class SubscriptionLifecycleManager:
    def __init__(self, billing: "BillingService") -> None:
        self.billing = billing
        self.repo = billing.repo

    async def find_subscription(self, subscription_id: UUID) -> Subscription:
        subscription = await self.repo.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFoundError(
                "Subscription not found",
                resource="subscription",
                resource_id=str(subscription_id),
            )
        return subscription

    async def renew_subscription(self, subscription_id: UUID) -> Subscription:
        """Roll the subscription into its next billing period.

        The new period starts where the old one ended and is advanced by
        calendar months or years. A pending plan change is applied and
        cleared. The update is conditional on the period end read here,
        so racing renewals advance the period once.

        Raises:
            NotFoundError: If the subscription does not exist
            InvalidStateError: If the subscription is cancelled
        """
        subscription = await self.find_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise InvalidStateError(
                "Cannot renew a cancelled subscription",
                details={"subscription_id": str(subscription_id)},
            )

        period_start = subscription.current_period_end
        values: dict[str, Any] = {
            "current_period_start": period_start,
            "current_period_end": advance_period(
                period_start, subscription.billing_cycle
            ),
            "status": SubscriptionStatus.ACTIVE,
        }

        new_plan_code = None
        if subscription.scheduled_plan_id and subscription.scheduled_change:
            plan = await self.repo.get_plan(subscription.scheduled_plan_id)
            if plan is None:
                logger.warning(
                    "scheduled_plan_missing",
                    subscription_id=str(subscription_id),
                    plan_id=str(subscription.scheduled_plan_id),
                )
            else:
                values.update(
                    plan_id=plan.id,
                    plan_type=plan.code,
                    amount=plan.price_for(subscription.billing_cycle),
                )
                new_plan_code = plan.code
        if subscription.scheduled_plan_id or subscription.scheduled_change:
            values.update(scheduled_plan_id=None, scheduled_change=None)

        renewed = await self.repo.transition(
            Subscription,
            subscription_id,
            RENEWABLE_STATUSES,
            Subscription.current_period_end == subscription.current_period_end,
            **values,
        )
        if not renewed:
            logger.info("subscription_renewal_skipped", subscription_id=str(subscription_id))
            return await self.find_subscription(subscription_id)

        if new_plan_code:
            await self.billing.tenants.set_plan(subscription.tenant_id, new_plan_code)

        subscription = await self.find_subscription(subscription_id)
        logger.info(
            "subscription_renewed",
            subscription_id=str(subscription_id),
            period_start=subscription.current_period_start.isoformat(),
            period_end=subscription.current_period_end.isoformat(),
            plan=subscription.plan_type,
        )
        return subscription

    async def expire_trial(self, subscription_id: UUID) -> dict[str, Any]:
        """End a trial by invoicing the first period and charging it once.

        A failed charge leaves the subscription PAST_DUE; the regular
        dunning jobs take over from there.

        Raises:
            NotFoundError: If the subscription does not exist
            InvalidStateError: If the subscription is not trialing
        """
        subscription = await self.find_subscription(subscription_id)
        if subscription.status != SubscriptionStatus.TRIALING:
            raise InvalidStateError(
                "Subscription is not in trial",
                error_code="not_in_trial",
                details={
                    "subscription_id": str(subscription_id),
                    "status": subscription.status,
                },
            )

        invoice = await self.billing.invoices.generate_subscription_invoice(
            subscription_id
        )
        result = await self.billing.payments.process_payment(invoice.id)

        if not result.success:
            await self.repo.transition(
                Subscription,
                subscription_id,
                [SubscriptionStatus.TRIALING],
                status=SubscriptionStatus.PAST_DUE,
            )
            logger.warning(
                "trial_conversion_failed",
                subscription_id=str(subscription_id),
                invoice_id=str(invoice.id),
                error_code=result.error_code,
            )
            return {
                "expired": True,
                "converted": False,
                "invoice_id": str(invoice.id),
                "error": result.error,
            }

        logger.info(
            "trial_converted",
            subscription_id=str(subscription_id),
            invoice_id=str(invoice.id),
        )
        return {"expired": True, "converted": True, "invoice_id": str(invoice.id)}

    async def mark_past_due(self, subscription_id: UUID) -> bool:
        """Move an ACTIVE or TRIALING subscription to PAST_DUE."""
        changed = await self.repo.transition(
            Subscription,
            subscription_id,
            [SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING],
            status=SubscriptionStatus.PAST_DUE,
        )
        if changed:
            logger.warning("subscription_past_due", subscription_id=str(subscription_id))
        return changed

    async def cancel_subscription_due_to_payment(
        self, subscription_id: UUID, reason: str = "Payment not received"
    ) -> Subscription:
        """Cancel a PAST_DUE subscription and drop the tenant to the free plan.

        Raises:
            NotFoundError: If the subscription does not exist
            InvalidStateError: If the subscription is not past due
        """
        subscription = await self.find_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            return subscription

        cancelled = await self.repo.transition(
            Subscription,
            subscription_id,
            [SubscriptionStatus.PAST_DUE],
            status=SubscriptionStatus.CANCELLED,
            cancelled_at=self.billing.clock.now(),
            cancel_reason=reason,
        )
        subscription = await self.find_subscription(subscription_id)
        if not cancelled:
            if subscription.status == SubscriptionStatus.CANCELLED:
                return subscription
            raise InvalidStateError(
                "Only past-due subscriptions are cancelled for non-payment",
                details={
                    "subscription_id": str(subscription_id),
                    "status": subscription.status,
                },
            )

        await self.billing.tenants.set_plan(
            subscription.tenant_id, self.billing.config.free_plan_code
        )
        logger.warning(
            "subscription_cancelled_for_non_payment",
            subscription_id=str(subscription_id),
            tenant_id=str(subscription.tenant_id),
        )
        return subscription
