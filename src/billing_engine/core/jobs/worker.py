"""arq worker configuration.

Defines the worker settings including the billing sweeps, their cron
schedules, and startup/shutdown hooks.
"""

from typing import Any, ClassVar

import structlog
from arq import cron
from sqlalchemy.ext.asyncio import create_async_engine

from billing_engine.config import settings
from billing_engine.core.clock import SystemClock
from billing_engine.core.database import create_session_factory
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
from billing_engine.core.jobs.utils import get_redis_settings, make_worker_id
from billing_engine.core.logging import configure_logging
from billing_engine.modules.billing.gateway import build_payment_gateway
from billing_engine.modules.billing.notifier import build_notifier


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources for the worker.

    Called once when the worker starts. Sets up the database engine and
    the collaborators every sweep needs.

    Args:
        ctx: Worker context dict (shared across all jobs)
    """
    configure_logging()
    log = structlog.get_logger()

    engine = create_async_engine(
        settings.async_database_url,
        pool_size=5,
        max_overflow=10,
        echo=settings.database_echo,
    )

    ctx["db_engine"] = engine
    ctx["db_session_factory"] = create_session_factory(engine)
    ctx["clock"] = SystemClock()
    ctx["payment_gateway"] = build_payment_gateway()
    ctx["notifier"] = build_notifier()
    ctx["worker_id"] = make_worker_id()

    log.info(
        "worker_startup_complete",
        environment=settings.environment,
        worker_id=ctx["worker_id"],
        gateway=type(ctx["payment_gateway"]).__name__,
        notifier=type(ctx["notifier"]).__name__,
    )


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when the worker stops.

    Args:
        ctx: Worker context dict
    """
    log = structlog.get_logger()
    log.info("worker_shutdown", worker_id=ctx.get("worker_id"))

    engine = ctx.get("db_engine")
    if engine:
        await engine.dispose()
        log.info("database_engine_disposed")


class WorkerSettings:
    """arq worker settings.

    Run the worker with:
        arq billing_engine.core.jobs.worker.WorkerSettings
    """

    functions: ClassVar[list[Any]] = [
        cleanup_billing_jobs,
        daily_billing_report,
        drain_billing_jobs,
        generate_upcoming_invoices,
        retry_overdue_payments,
        schedule_trial_expirations,
        send_payment_reminders,
        sweep_expired_subscriptions,
    ]

    cron_jobs: ClassVar[list[Any]] = [
        cron(drain_billing_jobs, minute=set(range(0, 60, 5))),
        cron(schedule_trial_expirations, minute=0),
        cron(generate_upcoming_invoices, hour=2, minute=0),
        cron(retry_overdue_payments, minute={0, 30}),
        cron(send_payment_reminders, minute=0),
        cron(sweep_expired_subscriptions, minute={0, 15, 30, 45}),
        cron(cleanup_billing_jobs, weekday="sun", hour=3, minute=0),
        cron(daily_billing_report, hour=8, minute=0),
    ]

    # Worker lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown

    # Redis connection
    redis_settings = get_redis_settings()

    # Sweeps manage their own retries through billing jobs
    max_jobs = 10
    job_timeout = 600
    keep_result = 3600
    retry_jobs = False
