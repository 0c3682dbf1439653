"""Background job tasks.

Each task is an arq coroutine taking the worker context. Sweeps are
registered as cron jobs in ``billing_engine.core.jobs.worker``.
"""

from billing_engine.core.jobs.tasks.billing import (
    daily_billing_report,
    drain_billing_jobs,
    generate_upcoming_invoices,
    retry_overdue_payments,
    schedule_trial_expirations,
    send_payment_reminders,
    sweep_expired_subscriptions,
)
from billing_engine.core.jobs.tasks.cleanup import cleanup_billing_jobs


__all__ = [
    "cleanup_billing_jobs",
    "daily_billing_report",
    "drain_billing_jobs",
    "generate_upcoming_invoices",
    "retry_overdue_payments",
    "schedule_trial_expirations",
    "send_payment_reminders",
    "sweep_expired_subscriptions",
]
