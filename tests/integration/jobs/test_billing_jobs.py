"""Integration tests for the persisted billing job queue."""

from datetime import datetime, timedelta
from uuid import UUID

import pytest

from billing_engine.core.errors import ValidationError
from billing_engine.modules.billing.jobs import JOB_HANDLERS
from billing_engine.modules.billing.models import (
    BillingJob,
    BillingJobType,
    InvoiceStatus,
    JobStatus,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.modules.billing.schemas import BillingJobCreate, BillingJobQuery
from billing_engine.modules.billing.services import BillingService
from billing_engine.modules.tenants.models import Tenant
from tests.conftest import NOW, FakeGateway, create_subscription


def _job(
    job_type: BillingJobType, subscription: Subscription, scheduled_for: datetime = NOW
) -> BillingJobCreate:
    return BillingJobCreate(
        job_type=job_type,
        scheduled_for=scheduled_for,
        tenant_id=subscription.tenant_id,
        subscription_id=subscription.id,
    )


class TestCreateJob:
    @pytest.mark.asyncio
    async def test_defaults(self, billing: BillingService, subscription: Subscription):
        job = await billing.jobs.create_job(
            _job(BillingJobType.RENEW_SUBSCRIPTION, subscription)
        )

        assert job.status == JobStatus.PENDING
        assert job.retry_count == 0
        assert job.max_retries == 3

    @pytest.mark.asyncio
    async def test_requires_target(self, billing: BillingService, tenant: Tenant):
        with pytest.raises(ValidationError):
            await billing.jobs.create_job(
                BillingJobCreate(
                    job_type=BillingJobType.RETRY_PAYMENT,
                    scheduled_for=NOW,
                    tenant_id=tenant.id,
                )
            )
        with pytest.raises(ValidationError):
            await billing.jobs.create_job(
                BillingJobCreate(
                    job_type=BillingJobType.GENERATE_INVOICE,
                    scheduled_for=NOW,
                    tenant_id=tenant.id,
                )
            )

    @pytest.mark.asyncio
    async def test_pending_jobs_are_due_only(
        self, billing: BillingService, subscription: Subscription
    ):
        due = await billing.jobs.create_job(
            _job(BillingJobType.RENEW_SUBSCRIPTION, subscription)
        )
        await billing.jobs.create_job(
            _job(
                BillingJobType.CANCEL_SUBSCRIPTION,
                subscription,
                scheduled_for=NOW + timedelta(days=1),
            )
        )

        jobs = await billing.jobs.find_pending_jobs(BillingJobQuery())

        assert [j.id for j in jobs] == [due.id]


class TestProcessJob:
    @pytest.mark.asyncio
    async def test_completes_with_result(
        self, billing: BillingService, subscription: Subscription
    ):
        job = await billing.jobs.create_job(
            _job(BillingJobType.GENERATE_INVOICE, subscription)
        )
        job_id = job.id

        result = await billing.jobs.process_job(job_id)

        invoice = await billing.invoices.find_invoice(UUID(result["invoice_id"]))
        assert invoice.status == InvoiceStatus.OPEN
        job = await billing.jobs.find_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.started_at == NOW
        assert job.completed_at == NOW
        assert job.result == result

    @pytest.mark.asyncio
    async def test_closed_job_is_not_reclaimed(
        self, billing: BillingService, subscription: Subscription
    ):
        job = await billing.jobs.create_job(
            _job(BillingJobType.GENERATE_INVOICE, subscription)
        )
        job_id = job.id
        await billing.jobs.process_job(job_id)

        assert await billing.jobs.process_job(job_id) is None

    @pytest.mark.asyncio
    async def test_failure_backs_off_then_cancels(
        self,
        billing: BillingService,
        subscription: Subscription,
        monkeypatch: pytest.MonkeyPatch,
    ):
        async def explode(billing: BillingService, job: BillingJob) -> dict:
            raise RuntimeError("ledger unavailable")

        monkeypatch.setitem(JOB_HANDLERS, BillingJobType.GENERATE_INVOICE, explode)
        job = await billing.jobs.create_job(
            _job(BillingJobType.GENERATE_INVOICE, subscription)
        )
        job_id = job.id

        with pytest.raises(RuntimeError, match="ledger unavailable"):
            await billing.jobs.process_job(job_id)

        job = await billing.jobs.find_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 1
        assert job.scheduled_for == NOW + timedelta(minutes=60)
        assert job.error_message == "ledger unavailable"

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await billing.jobs.process_job(job_id)

        job = await billing.jobs.find_job(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.retry_count == 3
        assert job.completed_at == NOW
        assert await billing.jobs.process_job(job_id) is None

    @pytest.mark.asyncio
    async def test_retry_payment_job_collects(
        self, billing: BillingService, subscription: Subscription, gateway: FakeGateway
    ):
        invoice = await billing.invoices.generate_subscription_invoice(subscription.id)
        invoice_id = invoice.id
        gateway.decline()
        await billing.payments.process_payment(invoice_id)

        billing.clock.advance(days=1)
        [job] = await billing.jobs.find_pending_jobs(
            BillingJobQuery(job_type=BillingJobType.RETRY_PAYMENT)
        )
        result = await billing.jobs.process_job(job.id)

        assert result["success"] is True
        assert result["attempt_number"] == 2
        invoice = await billing.invoices.find_invoice(invoice_id)
        assert invoice.status == InvoiceStatus.PAID

    @pytest.mark.asyncio
    async def test_expire_trial_job_on_converted_subscription(
        self, billing: BillingService, subscription: Subscription
    ):
        job = await billing.jobs.create_job(
            _job(BillingJobType.EXPIRE_TRIAL, subscription)
        )

        result = await billing.jobs.process_job(job.id)

        assert result == {"expired": False, "reason": "not_in_trial"}


class TestCancelSubscriptionJob:
    @pytest.mark.asyncio
    async def test_recovered_subscription_is_kept(
        self, billing: BillingService, subscription: Subscription
    ):
        job = await billing.jobs.create_job(
            _job(BillingJobType.CANCEL_SUBSCRIPTION, subscription)
        )
        subscription_id = subscription.id

        result = await billing.jobs.process_job(job.id)

        assert result["cancelled"] is False
        assert result["reason"] == "recovered"
        subscription = await billing.subscriptions.find_subscription(subscription_id)
        assert subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_past_due_subscription_is_cancelled(
        self, billing: BillingService, tenant: Tenant, plan: Plan
    ):
        subscription = await create_subscription(
            billing.session, tenant, plan, status=SubscriptionStatus.PAST_DUE
        )
        await billing.tenants.set_plan(tenant.id, "PRO")
        tenant_id, subscription_id = tenant.id, subscription.id
        job = await billing.jobs.create_job(
            _job(BillingJobType.CANCEL_SUBSCRIPTION, subscription)
        )

        result = await billing.jobs.process_job(job.id)

        assert result["cancelled"] is True
        subscription = await billing.subscriptions.find_subscription(subscription_id)
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert await billing.tenants.get_plan(tenant_id) == "FREE"


class TestReclaimStaleJobs:
    @pytest.mark.asyncio
    async def test_only_stale_running_jobs(
        self, billing: BillingService, subscription: Subscription
    ):
        stale = await billing.jobs.create_job(
            _job(BillingJobType.RENEW_SUBSCRIPTION, subscription)
        )
        fresh = await billing.jobs.create_job(
            _job(BillingJobType.GENERATE_INVOICE, subscription)
        )
        stale_id, fresh_id = stale.id, fresh.id
        for job_id, started in ((stale_id, 45), (fresh_id, 5)):
            await billing.repo.transition(
                BillingJob,
                job_id,
                None,
                status=JobStatus.RUNNING,
                started_at=NOW - timedelta(minutes=started),
            )

        assert await billing.jobs.reclaim_stale_jobs() == 1

        stale = await billing.jobs.find_job(stale_id)
        assert stale.status == JobStatus.PENDING
        assert stale.retry_count == 1
        assert "Worker lost" in stale.error_message
        fresh = await billing.jobs.find_job(fresh_id)
        assert fresh.status == JobStatus.RUNNING
