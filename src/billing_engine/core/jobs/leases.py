"""Store-backed scheduler leases.

A sweep runs only while its worker holds the lease row for the sweep's
name, so overlapping runs are skipped across any number of worker
processes. A crashed holder's lease lapses after ``expires_at``.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from functools import wraps
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import String, delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.config import settings
from billing_engine.core.constants import MAX_LEASE_HOLDER_LENGTH, MAX_NAME_LENGTH
from billing_engine.core.database import Base, upsert


log = structlog.get_logger()


class SchedulerLease(Base):
    __tablename__ = "scheduler_leases"

    sweep_name: Mapped[str] = mapped_column(String(MAX_NAME_LENGTH), primary_key=True)
    holder: Mapped[str] = mapped_column(String(MAX_LEASE_HOLDER_LENGTH), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)


async def acquire_lease(
    session: AsyncSession,
    sweep_name: str,
    holder: str,
    now: datetime,
    ttl: timedelta,
) -> bool:
    """Take the lease for a sweep.

    Succeeds only when no lease exists or the current one has expired.
    A live lease is never re-entered, not even by its own holder.
    """
    table = SchedulerLease.__table__
    expires_at = now + ttl
    stmt = (
        upsert(session, table)
        .values(sweep_name=sweep_name, holder=holder, expires_at=expires_at)
        .on_conflict_do_update(
            index_elements=[table.c.sweep_name],
            set_={"holder": holder, "expires_at": expires_at},
            where=table.c.expires_at < now,
        )
        .returning(table.c.holder)
    )
    result = await session.execute(stmt)
    return result.first() is not None


async def release_lease(session: AsyncSession, sweep_name: str, holder: str) -> bool:
    """Drop a lease, but only if ``holder`` still owns it."""
    result = await session.execute(
        delete(SchedulerLease)
        .where(SchedulerLease.sweep_name == sweep_name)
        .where(SchedulerLease.holder == holder)
    )
    return result.rowcount > 0


def with_lease(
    sweep_name: str | None = None,
) -> Callable[
    [Callable[..., Awaitable[dict[str, Any]]]], Callable[..., Awaitable[dict[str, Any]]]
]:
    """Run an arq task only while holding its scheduler lease.

    The worker context must provide ``db_session_factory``, ``clock`` and
    ``worker_id``. Each run holds the lease under its own holder id, so a
    run still in flight also blocks later runs from the same worker. A run
    that cannot take the lease returns ``{"skipped": True}`` without
    calling the task.

    Example:
        @with_lease()
        async def retry_overdue_payments(ctx: dict[str, Any]) -> dict[str, int]:
            ...
    """

    def decorator(
        func: Callable[..., Awaitable[dict[str, Any]]],
    ) -> Callable[..., Awaitable[dict[str, Any]]]:
        name = sweep_name or func.__name__

        @wraps(func)
        async def wrapper(ctx: dict[str, Any], *args: Any, **kwargs: Any) -> dict[str, Any]:
            session_factory = ctx["db_session_factory"]
            holder = f"{ctx['worker_id']}:{uuid4().hex}"
            ttl = timedelta(seconds=settings.scheduler_lease_seconds)

            async with session_factory() as session:
                acquired = await acquire_lease(
                    session, name, holder, ctx["clock"].now(), ttl
                )
                await session.commit()

            if not acquired:
                log.info("sweep_skipped", sweep=name, reason="lease_held")
                return {"skipped": True}

            try:
                return await func(ctx, *args, **kwargs)
            finally:
                async with session_factory() as session:
                    await release_lease(session, name, holder)
                    await session.commit()

        return wrapper

    return decorator
