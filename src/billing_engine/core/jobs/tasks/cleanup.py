"""Cleanup tasks for closed billing jobs and lapsed scheduler leases."""

from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy import delete

from billing_engine.config import settings
from billing_engine.core.jobs.leases import SchedulerLease, with_lease
from billing_engine.modules.billing.models import BillingJob, JobStatus


log = structlog.get_logger()


@with_lease()
async def cleanup_billing_jobs(ctx: dict[str, Any]) -> dict[str, int]:
    """Delete closed billing jobs past retention, and expired leases.

    Scheduled weekly (Sunday 03:00). Only COMPLETED and CANCELLED jobs
    are removed; pending work is never touched.

    Args:
        ctx: Worker context containing database session factory and clock

    Returns:
        Dict with counts of deleted rows by kind
    """
    session_factory = ctx["db_session_factory"]
    now = ctx["clock"].now()
    cutoff = now - timedelta(days=settings.billing_job_retention_days)

    async with session_factory() as session:
        jobs_result = await session.execute(
            delete(BillingJob)
            .where(BillingJob.status.in_([JobStatus.COMPLETED, JobStatus.CANCELLED]))
            .where(BillingJob.completed_at < cutoff)
        )
        jobs_count = jobs_result.rowcount

        leases_result = await session.execute(
            delete(SchedulerLease).where(SchedulerLease.expires_at < now)
        )
        leases_count = leases_result.rowcount

        await session.commit()

    log.info(
        "cleanup_billing_jobs_complete",
        jobs_deleted=jobs_count,
        leases_deleted=leases_count,
    )

    return {
        "jobs_deleted": jobs_count,
        "leases_deleted": leases_count,
    }
