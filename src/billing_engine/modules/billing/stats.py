"""Billing statistics: revenue, churn, collection and queue health."""

from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import func, or_, select

from .models import (
    BillingAttempt,
    BillingAttemptStatus,
    BillingJob,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from .policy import monthly_amount, to_cents
from .schemas import BillingStats, PlanBreakdown


if TYPE_CHECKING:
    from .services import BillingService


async def get_billing_stats(billing: "BillingService") -> BillingStats:
    """Aggregate the figures behind the billing dashboard and daily report.

    "This month" is the calendar month of the billing clock, in UTC.
    """
    session = billing.session
    now = billing.clock.now()
    start_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    # Subscribers
    by_status = dict(
        (
            await session.execute(
                select(Subscription.status, func.count()).group_by(Subscription.status)
            )
        ).all()
    )

    active = (
        await session.execute(
            select(
                Subscription.plan_type, Subscription.amount, Subscription.billing_cycle
            ).where(Subscription.status == SubscriptionStatus.ACTIVE)
        )
    ).all()
    mrr = to_cents(
        sum(
            (monthly_amount(amount, cycle) for _, amount, cycle in active),
            Decimal(0),
        )
    )

    plans: dict[str, PlanBreakdown] = {}
    for plan_type, amount, _ in active:
        row = plans.setdefault(
            plan_type, PlanBreakdown(plan=plan_type, count=0, revenue=Decimal(0))
        )
        row.count += 1
        row.revenue += amount

    # Churn
    churned = await session.scalar(
        select(func.count())
        .select_from(Subscription)
        .where(Subscription.status == SubscriptionStatus.CANCELLED)
        .where(Subscription.cancelled_at >= start_of_month)
    )
    active_at_start = await session.scalar(
        select(func.count())
        .select_from(Subscription)
        .where(Subscription.created_at < start_of_month)
        .where(
            or_(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.cancelled_at >= start_of_month,
            )
        )
    )
    churned = churned or 0
    churn_rate = (churned / active_at_start * 100) if active_at_start else 0.0

    # Invoices
    invoice_rows = (
        await session.execute(
            select(Invoice.status, func.count(), func.sum(Invoice.total)).group_by(
                Invoice.status
            )
        )
    ).all()
    invoice_counts = {status: count for status, count, _ in invoice_rows}
    invoice_totals = {status: total for status, _, total in invoice_rows}
    overdue = await session.scalar(
        select(func.count())
        .select_from(Invoice)
        .where(Invoice.status == InvoiceStatus.OPEN)
        .where(Invoice.due_date < now)
    )

    # Collection this month
    collected = await session.scalar(
        select(func.sum(Payment.amount))
        .where(Payment.status == PaymentStatus.SUCCEEDED)
        .where(Payment.paid_at >= start_of_month)
    )
    attempt_counts = dict(
        (
            await session.execute(
                select(BillingAttempt.status, func.count())
                .where(BillingAttempt.created_at >= start_of_month)
                .group_by(BillingAttempt.status)
            )
        ).all()
    )
    succeeded = attempt_counts.get(BillingAttemptStatus.SUCCESS, 0)
    failed = attempt_counts.get(BillingAttemptStatus.FAILED, 0)
    settled = succeeded + failed

    jobs = (
        await session.execute(
            select(BillingJob.status, func.count()).group_by(BillingJob.status)
        )
    ).all()

    return BillingStats(
        mrr=mrr,
        arr=mrr * 12,
        churn_rate=round(churn_rate, 2),
        churned_subscriptions=churned,
        total_invoices=sum(invoice_counts.values()),
        paid_invoices=invoice_counts.get(InvoiceStatus.PAID, 0),
        overdue_invoices=overdue or 0,
        pending_amount=to_cents(Decimal(invoice_totals.get(InvoiceStatus.OPEN) or 0)),
        total_collected=to_cents(Decimal(collected or 0)),
        failed_payments=failed,
        success_rate=round(succeeded / settled * 100, 2) if settled else 100.0,
        total_subscribers=sum(by_status.values()),
        active_subscribers=by_status.get(SubscriptionStatus.ACTIVE, 0),
        trialing_subscribers=by_status.get(SubscriptionStatus.TRIALING, 0),
        past_due_subscribers=by_status.get(SubscriptionStatus.PAST_DUE, 0),
        cancelled_subscribers=by_status.get(SubscriptionStatus.CANCELLED, 0),
        subscribers_by_plan=sorted(plans.values(), key=lambda row: row.plan),
        jobs_by_status={str(status): count for status, count in jobs},
    )
