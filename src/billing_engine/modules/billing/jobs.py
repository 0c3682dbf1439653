"""Persisted billing jobs: the queue state machine and its handler table.

A job moves PENDING -> RUNNING -> COMPLETED, or back to PENDING with a
delay after a failure, until ``max_retries`` failures cancel it.
CANCELLED and COMPLETED are terminal.
"""

from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog

from billing_engine.core.errors import (
    ExhaustedRetriesError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)

from .models import (
    CLAIMABLE_JOB_STATUSES,
    BillingJob,
    BillingJobType,
    JobStatus,
    SubscriptionStatus,
)
from .schemas import BillingJobCreate, BillingJobQuery


if TYPE_CHECKING:
    from .services import BillingService


logger = structlog.get_logger()

JobHandler = Callable[["BillingService", BillingJob], Awaitable[dict[str, Any]]]

# Populated at import time by @job_handler
JOB_HANDLERS: dict[BillingJobType, JobHandler] = {}

SUBSCRIPTION_JOBS = {
    BillingJobType.GENERATE_INVOICE,
    BillingJobType.EXPIRE_TRIAL,
    BillingJobType.RENEW_SUBSCRIPTION,
    BillingJobType.CANCEL_SUBSCRIPTION,
}
INVOICE_JOBS = {BillingJobType.PROCESS_PAYMENT, BillingJobType.RETRY_PAYMENT}


def job_handler(*job_types: BillingJobType) -> Callable[[JobHandler], JobHandler]:
    """Register a coroutine as the handler for one or more job types.

    Example:
        @job_handler(BillingJobType.RENEW_SUBSCRIPTION)
        async def renew(billing: BillingService, job: BillingJob) -> dict:
            ...
    """

    def decorator(func: JobHandler) -> JobHandler:
        for job_type in job_types:
            if job_type in JOB_HANDLERS:
                raise ValueError(f"Handler already registered for {job_type}")
            JOB_HANDLERS[job_type] = func
        return func

    return decorator


class BillingJobQueue:
    """Creates, claims and closes billing jobs.

    ``process_job`` commits the session itself: the claim, the handler's
    writes with the COMPLETED mark, and the failure record are each
    their own transaction.
    """

    def __init__(self, billing: "BillingService") -> None:
        self.billing = billing
        self.repo = billing.repo

    async def create_job(self, data: BillingJobCreate) -> BillingJob:
        """Persist a new PENDING job.

        Raises:
            ValidationError: If the job type's target id is missing
        """
        if data.job_type in SUBSCRIPTION_JOBS and data.subscription_id is None:
            raise ValidationError(
                f"{data.job_type} jobs require a subscription",
                errors=[{"field": "subscription_id", "message": "Field required"}],
            )
        if data.job_type in INVOICE_JOBS and data.invoice_id is None:
            raise ValidationError(
                f"{data.job_type} jobs require an invoice",
                errors=[{"field": "invoice_id", "message": "Field required"}],
            )

        job = BillingJob(
            job_type=data.job_type,
            scheduled_for=data.scheduled_for,
            status=JobStatus.PENDING,
            retry_count=0,
            max_retries=data.max_retries or self.billing.config.billing_job_max_retries,
            tenant_id=data.tenant_id,
            subscription_id=data.subscription_id,
            invoice_id=data.invoice_id,
        )
        await self.repo.add(job)
        logger.info(
            "billing_job_created",
            job_id=str(job.id),
            job_type=job.job_type.value,
            scheduled_for=job.scheduled_for.isoformat(),
        )
        return job

    async def find_job(self, job_id: UUID) -> BillingJob:
        job = await self.repo.get(BillingJob, job_id)
        if job is None:
            raise NotFoundError("Job not found", resource="job", resource_id=str(job_id))
        return job

    async def find_pending_jobs(self, query: BillingJobQuery) -> list[BillingJob]:
        return await self.repo.find_pending_jobs(query, self.billing.clock.now())

    async def process_job(self, job_id: UUID) -> dict[str, Any] | None:
        """Claim a job, run its handler and record the outcome.

        Returns:
            The handler's result, or None if another worker holds the job

        Raises:
            NotFoundError: If the job does not exist
            Exception: Whatever the handler raised, after the failure is recorded
        """
        session = self.billing.session
        job = await self.find_job(job_id)

        claimed = await self.repo.transition(
            BillingJob,
            job_id,
            CLAIMABLE_JOB_STATUSES,
            status=JobStatus.RUNNING,
            started_at=self.billing.clock.now(),
        )
        if not claimed:
            logger.info("billing_job_not_claimable", job_id=str(job_id), status=job.status)
            return None
        await session.commit()

        job = await self.find_job(job_id)
        job_type = job.job_type
        log = logger.bind(job_id=str(job_id), job_type=job_type.value)

        try:
            handler = JOB_HANDLERS.get(job_type)
            if handler is None:
                raise InvalidStateError(f"No handler registered for {job_type}")
            result = await handler(self.billing, job)
        except Exception as e:
            await session.rollback()
            await self.record_failure(job_id, str(e) or type(e).__name__)
            log.warning("billing_job_failed", error=str(e))
            raise

        await self.repo.transition(
            BillingJob,
            job_id,
            [JobStatus.RUNNING],
            status=JobStatus.COMPLETED,
            completed_at=self.billing.clock.now(),
            result=result,
            error_message=None,
        )
        await session.commit()
        log.info("billing_job_completed")
        return result

    async def record_failure(self, job_id: UUID, error: str) -> JobStatus:
        """Close a RUNNING job as failed: back to PENDING, or CANCELLED when spent."""
        job = await self.find_job(job_id)
        now = self.billing.clock.now()
        retry_count = job.retry_count + 1

        values: dict[str, Any]
        if retry_count < job.max_retries:
            delay = timedelta(minutes=self.billing.config.billing_job_retry_delay_minutes)
            values = {"status": JobStatus.PENDING, "scheduled_for": now + delay}
        else:
            values = {"status": JobStatus.CANCELLED, "completed_at": now}

        await self.repo.transition(
            BillingJob,
            job_id,
            [JobStatus.RUNNING],
            retry_count=retry_count,
            error_message=error,
            last_retry_at=now,
            **values,
        )
        await self.billing.session.commit()

        if values["status"] == JobStatus.CANCELLED:
            logger.error(
                "billing_job_cancelled",
                job_id=str(job_id),
                retries=retry_count,
                error=error,
            )
        return values["status"]

    async def reclaim_stale_jobs(self) -> int:
        """Fail jobs left RUNNING by a worker that died mid-job."""
        stale_after = timedelta(
            minutes=self.billing.config.billing_job_stale_after_minutes
        )
        cutoff = self.billing.clock.now() - stale_after
        job_ids = await self.repo.stale_running_job_ids(cutoff)
        for job_id in job_ids:
            await self.record_failure(job_id, "Worker lost while the job was running")
        if job_ids:
            logger.warning("billing_jobs_reclaimed", count=len(job_ids))
        return len(job_ids)


# ============================================================
# Handlers
# ============================================================


@job_handler(BillingJobType.GENERATE_INVOICE)
async def generate_invoice(billing: "BillingService", job: BillingJob) -> dict[str, Any]:
    invoice = await billing.invoices.generate_subscription_invoice(job.subscription_id)
    return {"invoice_id": str(invoice.id), "invoice_number": invoice.invoice_number}


@job_handler(BillingJobType.PROCESS_PAYMENT, BillingJobType.RETRY_PAYMENT)
async def collect_payment(billing: "BillingService", job: BillingJob) -> dict[str, Any]:
    try:
        result = await billing.payments.process_payment(job.invoice_id)
    except ExhaustedRetriesError as e:
        return {"success": False, "skipped": True, "reason": e.error_code}
    return result.model_dump(mode="json")


@job_handler(BillingJobType.SEND_REMINDER)
async def send_reminders(billing: "BillingService", job: BillingJob) -> dict[str, Any]:
    counts = await billing.reminders.dispatch_due(billing.config.reminder_batch_size)
    return {"processed": sum(counts.values()), **counts}


@job_handler(BillingJobType.EXPIRE_TRIAL)
async def expire_trial(billing: "BillingService", job: BillingJob) -> dict[str, Any]:
    try:
        return await billing.subscriptions.expire_trial(job.subscription_id)
    except InvalidStateError as e:
        return {"expired": False, "reason": e.error_code}


@job_handler(BillingJobType.RENEW_SUBSCRIPTION)
async def renew_subscription(
    billing: "BillingService", job: BillingJob
) -> dict[str, Any]:
    try:
        subscription = await billing.subscriptions.renew_subscription(job.subscription_id)
    except InvalidStateError as e:
        return {"renewed": False, "reason": e.error_code}
    return {
        "renewed": True,
        "current_period_end": subscription.current_period_end.isoformat(),
    }


@job_handler(BillingJobType.CANCEL_SUBSCRIPTION)
async def cancel_subscription(
    billing: "BillingService", job: BillingJob
) -> dict[str, Any]:
    subscription = await billing.subscriptions.find_subscription(job.subscription_id)
    if subscription.status not in (
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
    ):
        # Paid up since the job was scheduled
        return {"cancelled": False, "reason": "recovered", "status": subscription.status}
    subscription = await billing.subscriptions.cancel_subscription_due_to_payment(
        subscription.id
    )
    return {"cancelled": True, "cancelled_at": subscription.cancelled_at.isoformat()}
