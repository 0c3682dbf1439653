"""Scheduled billing work on arq.

Provides:
- Store-backed leases so each sweep runs once across all workers
- Cron-scheduled billing sweeps
- The arq ``WorkerSettings``
"""

from billing_engine.core.jobs.leases import (
    SchedulerLease,
    acquire_lease,
    release_lease,
    with_lease,
)


__all__ = [
    "SchedulerLease",
    "acquire_lease",
    "release_lease",
    "with_lease",
]
