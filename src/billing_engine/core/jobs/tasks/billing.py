"""Billing sweeps run by the arq scheduler.

Every sweep holds its scheduler lease while it runs and handles each
entity in its own session and transaction. A failing entity is logged
and skipped so the rest of the batch still runs.
"""

from collections.abc import Awaitable, Callable, Iterable
from datetime import timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import settings
from billing_engine.core.jobs.leases import with_lease
from billing_engine.modules.billing.models import BillingJobType
from billing_engine.modules.billing.schemas import BillingJobCreate
from billing_engine.modules.billing.services import BillingService


log = structlog.get_logger()

EntityWork = Callable[[BillingService, UUID], Awaitable[Any]]


def build_billing_service(ctx: dict[str, Any], session: AsyncSession) -> BillingService:
    return BillingService(
        session,
        clock=ctx["clock"],
        gateway=ctx["payment_gateway"],
        notifier=ctx["notifier"],
    )


async def _select(
    ctx: dict[str, Any], query: Callable[[BillingService], Awaitable[list[UUID]]]
) -> list[UUID]:
    async with ctx["db_session_factory"]() as session:
        return await query(build_billing_service(ctx, session))


async def _for_each(
    ctx: dict[str, Any], sweep: str, entity_ids: Iterable[UUID], work: EntityWork
) -> dict[str, int]:
    processed = failed = 0
    for entity_id in entity_ids:
        async with ctx["db_session_factory"]() as session:
            try:
                await work(build_billing_service(ctx, session), entity_id)
                await session.commit()
                processed += 1
            except Exception:
                await session.rollback()
                failed += 1
                log.exception("sweep_entity_failed", sweep=sweep, entity_id=str(entity_id))
    return {"processed": processed, "failed": failed}


# ============================================================
# Job queue
# ============================================================


@with_lease()
async def drain_billing_jobs(ctx: dict[str, Any]) -> dict[str, int]:
    """Reclaim stale RUNNING jobs, then run due jobs. Every 5 minutes."""
    async with ctx["db_session_factory"]() as session:
        reclaimed = await build_billing_service(ctx, session).jobs.reclaim_stale_jobs()

    now = ctx["clock"].now()
    job_ids = await _select(
        ctx, lambda b: b.repo.due_job_ids(now, settings.billing_job_batch_size)
    )

    async def run(billing: BillingService, job_id: UUID) -> None:
        await billing.jobs.process_job(job_id)

    counts = await _for_each(ctx, "drain_billing_jobs", job_ids, run)
    log.info("drain_billing_jobs_complete", reclaimed=reclaimed, **counts)
    return {"reclaimed": reclaimed, **counts}


# ============================================================
# Subscriptions
# ============================================================


@with_lease()
async def schedule_trial_expirations(ctx: dict[str, Any]) -> dict[str, int]:
    """Queue one EXPIRE_TRIAL job per trial ending in the next window. Hourly."""
    now = ctx["clock"].now()
    until = now + timedelta(hours=settings.trial_expiry_window_hours)

    async def trial_ids(billing: BillingService) -> list[UUID]:
        return [s.id for s in await billing.repo.expiring_trials(now, until)]

    async def schedule(billing: BillingService, subscription_id: UUID) -> None:
        if await billing.repo.has_pending_job(
            BillingJobType.EXPIRE_TRIAL, subscription_id=subscription_id
        ):
            return
        subscription = await billing.subscriptions.find_subscription(subscription_id)
        await billing.jobs.create_job(
            BillingJobCreate(
                job_type=BillingJobType.EXPIRE_TRIAL,
                scheduled_for=subscription.trial_end or now,
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
            )
        )

    counts = await _for_each(
        ctx, "schedule_trial_expirations", await _select(ctx, trial_ids), schedule
    )
    log.info("schedule_trial_expirations_complete", **counts)
    return counts


@with_lease()
async def generate_upcoming_invoices(ctx: dict[str, Any]) -> dict[str, int]:
    """Invoice subscriptions renewing within the lookahead. Daily at 02:00."""
    now = ctx["clock"].now()
    until = now + timedelta(days=settings.upcoming_invoice_days)
    subscription_ids = await _select(
        ctx, lambda b: b.repo.uninvoiced_renewal_ids(now, until)
    )

    async def generate(billing: BillingService, subscription_id: UUID) -> None:
        await billing.invoices.generate_subscription_invoice(subscription_id)

    counts = await _for_each(ctx, "generate_upcoming_invoices", subscription_ids, generate)
    log.info("generate_upcoming_invoices_complete", **counts)
    return counts


@with_lease()
async def sweep_expired_subscriptions(ctx: dict[str, Any]) -> dict[str, int]:
    """Settle ACTIVE subscriptions whose period has ended. Every 15 minutes.

    A subscription with a paid invoice covering the period end is
    renewed; any other goes PAST_DUE.
    """
    now = ctx["clock"].now()
    subscription_ids = await _select(ctx, lambda b: b.repo.lapsed_subscription_ids(now))
    renewed = past_due = 0

    async def settle(billing: BillingService, subscription_id: UUID) -> None:
        nonlocal renewed, past_due
        subscription = await billing.subscriptions.find_subscription(subscription_id)
        paid = await billing.repo.find_paid_invoice_since(
            subscription.id, subscription.current_period_end
        )
        if paid is not None:
            await billing.subscriptions.renew_subscription(subscription.id)
            renewed += 1
        elif await billing.subscriptions.mark_past_due(subscription.id):
            past_due += 1

    counts = await _for_each(
        ctx, "sweep_expired_subscriptions", subscription_ids, settle
    )
    log.info(
        "sweep_expired_subscriptions_complete",
        renewed=renewed,
        past_due=past_due,
        **counts,
    )
    return {"renewed": renewed, "past_due": past_due, **counts}


# ============================================================
# Dunning
# ============================================================


@with_lease()
async def retry_overdue_payments(ctx: dict[str, Any]) -> dict[str, int]:
    """Charge overdue invoices that are due another attempt. Every 30 minutes.

    Invoices with a pending RETRY_PAYMENT job are left to that job.
    """
    now = ctx["clock"].now()

    async def overdue_ids(billing: BillingService) -> list[UUID]:
        return await billing.repo.overdue_invoice_ids(
            now, billing.policy.max_retries, settings.overdue_invoice_batch_size
        )

    async def charge(billing: BillingService, invoice_id: UUID) -> None:
        await billing.payments.process_payment(invoice_id)

    counts = await _for_each(
        ctx, "retry_overdue_payments", await _select(ctx, overdue_ids), charge
    )
    log.info("retry_overdue_payments_complete", **counts)
    return counts


@with_lease()
async def send_payment_reminders(ctx: dict[str, Any]) -> dict[str, int]:
    """Dispatch due reminders. Hourly."""
    now = ctx["clock"].now()
    reminder_ids = await _select(
        ctx, lambda b: b.repo.due_reminder_ids(now, settings.reminder_batch_size)
    )

    async def dispatch(billing: BillingService, reminder_id: UUID) -> None:
        await billing.reminders.dispatch(reminder_id)

    counts = await _for_each(ctx, "send_payment_reminders", reminder_ids, dispatch)
    log.info("send_payment_reminders_complete", **counts)
    return counts


# ============================================================
# Reporting
# ============================================================


@with_lease()
async def daily_billing_report(ctx: dict[str, Any]) -> dict[str, Any]:
    """Log the billing statistics. Daily at 08:00."""
    async with ctx["db_session_factory"]() as session:
        stats = await build_billing_service(ctx, session).get_billing_stats()

    report = stats.model_dump(mode="json")
    log.info("daily_billing_report", **report)
    return report
