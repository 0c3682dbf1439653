"""Integration tests for the scheduled billing sweeps.

Sweeps open their own sessions, so each test commits its fixtures
before running one.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.clock import FrozenClock
from billing_engine.core.jobs.leases import SchedulerLease, acquire_lease, with_lease
from billing_engine.core.jobs.tasks import (
    cleanup_billing_jobs,
    daily_billing_report,
    drain_billing_jobs,
    generate_upcoming_invoices,
    retry_overdue_payments,
    schedule_trial_expirations,
    send_payment_reminders,
    sweep_expired_subscriptions,
)
from billing_engine.core.jobs.worker import WorkerSettings
from billing_engine.modules.billing.jobs import JOB_HANDLERS
from billing_engine.modules.billing.models import (
    BillingJob,
    BillingJobType,
    Invoice,
    JobStatus,
    ReminderStatus,
    ReminderType,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.modules.billing.schemas import BillingJobCreate, BillingJobQuery
from billing_engine.modules.billing.services import BillingService
from billing_engine.modules.tenants.models import Tenant
from tests.conftest import NOW, FakeGateway, FakeNotifier
from tests.factories.billing import InvoiceCreateFactory


async def _overdue_invoice(billing: BillingService, tenant: Tenant) -> Invoice:
    return await billing.invoices.create_invoice(
        InvoiceCreateFactory.build(tenant_id=tenant.id, due_date=NOW - timedelta(days=2))
    )


class TestSchedulerLease:
    @pytest.mark.asyncio
    async def test_held_lease_skips_the_run(
        self, db: AsyncSession, ctx: dict[str, Any], clock: FrozenClock
    ):
        await acquire_lease(
            db, "retry_overdue_payments", "other-host:1:ffff", NOW, timedelta(minutes=10)
        )
        await db.commit()

        assert await retry_overdue_payments(ctx) == {"skipped": True}

        clock.advance(minutes=11)
        assert await retry_overdue_payments(ctx) == {"processed": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_lease_is_released_after_the_run(
        self, db: AsyncSession, ctx: dict[str, Any]
    ):
        await retry_overdue_payments(ctx)

        lease = await db.scalar(
            select(SchedulerLease).where(
                SchedulerLease.sweep_name == "retry_overdue_payments"
            )
        )
        assert lease is None

    @pytest.mark.asyncio
    async def test_live_lease_refuses_its_own_holder(self, db: AsyncSession):
        ttl = timedelta(minutes=10)

        assert await acquire_lease(db, "sweep", "a", NOW, ttl) is True
        assert await acquire_lease(db, "sweep", "a", NOW + ttl / 2, ttl) is False
        assert await acquire_lease(db, "sweep", "b", NOW + ttl / 2, ttl) is False
        assert await acquire_lease(db, "sweep", "b", NOW + ttl * 2, ttl) is True

    @pytest.mark.asyncio
    async def test_run_in_flight_blocks_the_next_run_on_the_same_worker(
        self, ctx: dict[str, Any]
    ):
        started = asyncio.Event()
        release = asyncio.Event()
        runs: list[int] = []

        @with_lease("slow_sweep")
        async def slow_sweep(ctx: dict[str, Any]) -> dict[str, Any]:
            runs.append(len(runs))
            started.set()
            await release.wait()
            return {"ran": True}

        first = asyncio.create_task(slow_sweep(ctx))
        await started.wait()

        assert await slow_sweep(ctx) == {"skipped": True}

        release.set()
        assert await first == {"ran": True}
        assert runs == [0]
        assert await slow_sweep(ctx) == {"ran": True}


class TestRetryOverduePayments:
    @pytest.mark.asyncio
    async def test_charges_each_overdue_invoice_once(
        self,
        billing: BillingService,
        db: AsyncSession,
        tenant: Tenant,
        ctx: dict[str, Any],
        gateway: FakeGateway,
    ):
        invoice = await _overdue_invoice(billing, tenant)
        await billing.invoices.create_invoice(InvoiceCreateFactory.build(tenant_id=tenant.id))
        invoice_id = invoice.id
        await db.commit()
        gateway.decline()

        assert await retry_overdue_payments(ctx) == {"processed": 1, "failed": 0}
        # The failed attempt is now owned by its RETRY_PAYMENT job
        assert await retry_overdue_payments(ctx) == {"processed": 0, "failed": 0}

        assert [call[0] for call in gateway.calls] == [invoice_id]
        invoice = await billing.invoices.find_invoice(invoice_id)
        assert invoice.billing_attempts == 1
        assert invoice.next_attempt_at == NOW + timedelta(days=1)


class TestSubscriptionSweeps:
    @pytest.mark.asyncio
    async def test_unpaid_lapsed_subscription_goes_past_due(
        self,
        db: AsyncSession,
        billing: BillingService,
        subscription: Subscription,
        ctx: dict[str, Any],
        clock: FrozenClock,
    ):
        subscription_id = subscription.id
        await db.commit()
        clock.set(datetime(2024, 2, 2, tzinfo=UTC))

        result = await sweep_expired_subscriptions(ctx)

        assert result["past_due"] == 1
        assert result["renewed"] == 0
        subscription = await billing.subscriptions.find_subscription(subscription_id)
        assert subscription.status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_paid_lapsed_subscription_is_renewed(
        self,
        db: AsyncSession,
        billing: BillingService,
        subscription: Subscription,
        ctx: dict[str, Any],
        clock: FrozenClock,
    ):
        subscription_id = subscription.id
        invoice = await billing.invoices.generate_subscription_invoice(subscription_id)
        await billing.invoices.mark_paid(invoice.id)
        await db.commit()
        clock.set(datetime(2024, 2, 2, tzinfo=UTC))

        result = await sweep_expired_subscriptions(ctx)

        assert result["renewed"] == 1
        subscription = await billing.subscriptions.find_subscription(subscription_id)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_end == datetime(2024, 3, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_upcoming_invoices_are_generated_once(
        self,
        db: AsyncSession,
        billing: BillingService,
        subscription: Subscription,
        tenant: Tenant,
        ctx: dict[str, Any],
        clock: FrozenClock,
    ):
        tenant_id = tenant.id
        await db.commit()
        clock.set(datetime(2024, 1, 28, tzinfo=UTC))

        assert await generate_upcoming_invoices(ctx) == {"processed": 1, "failed": 0}
        assert await generate_upcoming_invoices(ctx) == {"processed": 0, "failed": 0}

        invoices = await billing.invoices.find_tenant_invoices(tenant_id)
        assert len(invoices) == 1
        assert invoices[0].due_date == datetime(2024, 2, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_trial_expiry_is_scheduled_once(
        self,
        db: AsyncSession,
        billing: BillingService,
        trial_subscription: Subscription,
        ctx: dict[str, Any],
    ):
        subscription_id = trial_subscription.id
        await db.commit()

        await schedule_trial_expirations(ctx)
        await schedule_trial_expirations(ctx)

        jobs = await billing.jobs.find_pending_jobs(
            BillingJobQuery(job_type=BillingJobType.EXPIRE_TRIAL)
        )
        assert [j.subscription_id for j in jobs] == [subscription_id]
        assert jobs[0].scheduled_for == NOW


class TestDrainBillingJobs:
    @pytest.mark.asyncio
    async def test_runs_due_jobs(
        self,
        db: AsyncSession,
        billing: BillingService,
        subscription: Subscription,
        ctx: dict[str, Any],
    ):
        job = await billing.jobs.create_job(
            BillingJobCreate(
                job_type=BillingJobType.GENERATE_INVOICE,
                scheduled_for=NOW,
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
            )
        )
        later = await billing.jobs.create_job(
            BillingJobCreate(
                job_type=BillingJobType.RENEW_SUBSCRIPTION,
                scheduled_for=NOW + timedelta(hours=1),
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
            )
        )
        job_id, later_id = job.id, later.id
        await db.commit()

        result = await drain_billing_jobs(ctx)

        assert result == {"reclaimed": 0, "processed": 1, "failed": 0}
        assert (await billing.jobs.find_job(job_id)).status == JobStatus.COMPLETED
        assert (await billing.jobs.find_job(later_id)).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_failing_job_does_not_stop_the_batch(
        self,
        db: AsyncSession,
        billing: BillingService,
        subscription: Subscription,
        ctx: dict[str, Any],
        monkeypatch: pytest.MonkeyPatch,
    ):
        async def explode(billing: BillingService, job: BillingJob) -> dict:
            raise RuntimeError("boom")

        monkeypatch.setitem(JOB_HANDLERS, BillingJobType.RENEW_SUBSCRIPTION, explode)
        ids = []
        for job_type in (BillingJobType.RENEW_SUBSCRIPTION, BillingJobType.GENERATE_INVOICE):
            job = await billing.jobs.create_job(
                BillingJobCreate(
                    job_type=job_type,
                    scheduled_for=NOW,
                    tenant_id=subscription.tenant_id,
                    subscription_id=subscription.id,
                )
            )
            ids.append(job.id)
        await db.commit()

        result = await drain_billing_jobs(ctx)

        assert result["processed"] == 1
        assert result["failed"] == 1
        failed = await billing.jobs.find_job(ids[0])
        assert failed.status == JobStatus.PENDING
        assert failed.retry_count == 1


class TestReminderSweep:
    @pytest.mark.asyncio
    async def test_sends_due_reminders(
        self,
        db: AsyncSession,
        billing: BillingService,
        tenant: Tenant,
        ctx: dict[str, Any],
        clock: FrozenClock,
        notifier: FakeNotifier,
    ):
        invoice = await billing.invoices.create_invoice(
            InvoiceCreateFactory.build(tenant_id=tenant.id)
        )
        invoice_id = invoice.id
        await db.commit()
        clock.set(datetime(2024, 1, 21, 12, 0, tzinfo=UTC))

        assert await send_payment_reminders(ctx) == {"processed": 2, "failed": 0}

        assert notifier.sent == [
            (ReminderType.PAYMENT_DUE, invoice_id),
            (ReminderType.PAYMENT_DUE, invoice_id),
        ]
        statuses = [r.status for r in await billing.invoices.list_reminders(invoice_id)]
        assert statuses.count(ReminderStatus.SENT) == 2
        assert statuses.count(ReminderStatus.SCHEDULED) == 3

    @pytest.mark.asyncio
    async def test_rejected_notification_fails_the_reminder(
        self,
        db: AsyncSession,
        billing: BillingService,
        tenant: Tenant,
        ctx: dict[str, Any],
        clock: FrozenClock,
        notifier: FakeNotifier,
    ):
        invoice = await billing.invoices.create_invoice(
            InvoiceCreateFactory.build(tenant_id=tenant.id)
        )
        invoice_id = invoice.id
        await db.commit()
        notifier.accept = False
        clock.set(datetime(2024, 1, 19, 12, 0, tzinfo=UTC))

        await send_payment_reminders(ctx)

        [first, *_] = await billing.invoices.list_reminders(invoice_id)
        assert first.status == ReminderStatus.FAILED
        assert first.error_message == "Notification was not accepted"


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_daily_report(
        self, db: AsyncSession, subscription: Subscription, ctx: dict[str, Any]
    ):
        await db.commit()

        report = await daily_billing_report(ctx)

        assert report["active_subscribers"] == 1
        assert report["subscribers_by_plan"][0]["plan"] == "PRO"

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_old_closed_jobs(
        self,
        db: AsyncSession,
        billing: BillingService,
        subscription: Subscription,
        ctx: dict[str, Any],
    ):
        ids = {}
        for name, status, closed_days_ago in (
            ("old", JobStatus.COMPLETED, 40),
            ("recent", JobStatus.CANCELLED, 1),
            ("pending", JobStatus.PENDING, None),
        ):
            job = await billing.jobs.create_job(
                BillingJobCreate(
                    job_type=BillingJobType.RENEW_SUBSCRIPTION,
                    scheduled_for=NOW - timedelta(days=45),
                    tenant_id=subscription.tenant_id,
                    subscription_id=subscription.id,
                )
            )
            if closed_days_ago is not None:
                await billing.repo.transition(
                    BillingJob,
                    job.id,
                    None,
                    status=status,
                    completed_at=NOW - timedelta(days=closed_days_ago),
                )
            ids[name] = job.id
        await acquire_lease(
            db, "abandoned", "dead-host:1:0000", NOW - timedelta(hours=2), timedelta(hours=1)
        )
        await db.commit()

        result = await cleanup_billing_jobs(ctx)

        assert result == {"jobs_deleted": 1, "leases_deleted": 1}
        assert await billing.repo.get(BillingJob, ids["old"]) is None
        assert await billing.repo.get(BillingJob, ids["recent"]) is not None
        assert await billing.repo.get(BillingJob, ids["pending"]) is not None


class TestWorkerSettings:
    def test_every_sweep_is_scheduled(self):
        scheduled = {job.coroutine for job in WorkerSettings.cron_jobs}

        assert scheduled == set(WorkerSettings.functions)
        assert len(scheduled) == 8
