"""Billing repository for database operations.

State transitions are issued as conditional updates scoped by the row's
current status (``UPDATE ... WHERE id = ? AND status IN (...)``). The
caller learns whether it won from the returned flag; a losing writer
sees ``False`` and treats the transition as already applied.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.database import Base, upsert

from .models import (
    OPEN_INVOICE_STATUSES,
    BillingAttempt,
    BillingJob,
    BillingJobType,
    Coupon,
    CouponUsage,
    Invoice,
    InvoiceSequence,
    InvoiceStatus,
    JobStatus,
    PaymentReminder,
    Plan,
    ReminderStatus,
    Subscription,
    SubscriptionStatus,
)
from .schemas import BillingJobQuery, CouponQuery, InvoiceQuery


ModelT = TypeVar("ModelT", bound=Base)


class BillingRepository:
    """Repository for billing data access."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ============================================================
    # Generic
    # ============================================================

    async def add(self, instance: ModelT) -> ModelT:
        """Insert a new row and flush it."""
        self.session.add(instance)
        await self.session.flush()
        return instance

    async def get(self, model: type[ModelT], entity_id: UUID) -> ModelT | None:
        """Load a row, overwriting any stale copy in the identity map."""
        return await self.session.get(model, entity_id, populate_existing=True)

    async def transition(
        self,
        model: type[Base],
        entity_id: UUID,
        from_statuses: Iterable[Any] | None,
        /,
        *conditions: Any,
        **values: Any,
    ) -> bool:
        """Apply ``values`` to one row if it is still in ``from_statuses``.

        Returns:
            True if this call changed the row
        """
        stmt = update(model).where(model.id == entity_id)  # type: ignore[attr-defined]
        if from_statuses is not None:
            stmt = stmt.where(model.status.in_(list(from_statuses)))  # type: ignore[attr-defined]
        if conditions:
            stmt = stmt.where(*conditions)
        result = await self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    # ============================================================
    # Invoice
    # ============================================================

    async def next_invoice_sequence(self, tenant_id: UUID, period: str) -> int:
        """Atomically allocate the next invoice sequence for a tenant-month."""
        table = InvoiceSequence.__table__
        stmt = (
            upsert(self.session, table)
            .values(tenant_id=tenant_id, period=period, current_value=1)
            .on_conflict_do_update(
                index_elements=[table.c.tenant_id, table.c.period],
                set_={"current_value": table.c.current_value + 1},
            )
            .returning(table.c.current_value)
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def find_invoices(
        self, query: InvoiceQuery, now: datetime
    ) -> tuple[list[Invoice], int]:
        """List invoices matching a query with total count."""
        conditions = []
        if query.tenant_id:
            conditions.append(Invoice.tenant_id == query.tenant_id)
        if query.overdue:
            conditions.append(Invoice.status == InvoiceStatus.OPEN)
            conditions.append(Invoice.due_date < now)
        else:
            if query.status:
                conditions.append(Invoice.status == query.status)
            if query.due_date_from:
                conditions.append(Invoice.due_date >= query.due_date_from)
            if query.due_date_to:
                conditions.append(Invoice.due_date <= query.due_date_to)

        total = await self.session.scalar(
            select(func.count()).select_from(Invoice).where(*conditions)
        )
        result = await self.session.execute(
            select(Invoice)
            .where(*conditions)
            .order_by(Invoice.due_date.desc())
            .limit(query.limit)
            .offset(query.offset)
        )
        return list(result.scalars().all()), int(total or 0)

    async def find_tenant_invoices(self, tenant_id: UUID) -> list[Invoice]:
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.tenant_id == tenant_id)
            .order_by(Invoice.created_at.desc())
        )
        return list(result.scalars().all())

    async def find_open_invoice_since(
        self, subscription_id: UUID, since: datetime
    ) -> Invoice | None:
        """Open or draft invoice for a subscription due on or after ``since``."""
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.subscription_id == subscription_id)
            .where(Invoice.status.in_(OPEN_INVOICE_STATUSES))
            .where(Invoice.due_date >= since)
            .order_by(Invoice.due_date.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_paid_invoice_since(
        self, subscription_id: UUID, since: datetime
    ) -> Invoice | None:
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.subscription_id == subscription_id)
            .where(Invoice.status == InvoiceStatus.PAID)
            .where(Invoice.due_date >= since)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def overdue_invoice_ids(
        self, now: datetime, max_attempts: int, limit: int
    ) -> list[UUID]:
        """Overdue invoices due for another attempt and not owned by a retry job."""
        pending_retry = exists().where(
            BillingJob.invoice_id == Invoice.id,
            BillingJob.job_type == BillingJobType.RETRY_PAYMENT,
            BillingJob.status == JobStatus.PENDING,
        )
        result = await self.session.execute(
            select(Invoice.id)
            .where(Invoice.status == InvoiceStatus.OPEN)
            .where(Invoice.due_date <= now)
            .where(
                or_(Invoice.next_attempt_at.is_(None), Invoice.next_attempt_at <= now)
            )
            .where(Invoice.billing_attempts < max_attempts)
            .where(~pending_retry)
            .order_by(Invoice.next_attempt_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def record_failed_attempt(
        self,
        invoice_id: UUID,
        attempt_number: int,
        now: datetime,
        next_attempt_at: datetime | None,
    ) -> bool:
        """Bump ``billing_attempts`` from ``attempt_number - 1`` to ``attempt_number``."""
        return await self.transition(
            Invoice,
            invoice_id,
            OPEN_INVOICE_STATUSES,
            Invoice.billing_attempts == attempt_number - 1,
            billing_attempts=attempt_number,
            last_attempt_at=now,
            next_attempt_at=next_attempt_at,
        )

    async def list_attempts(self, invoice_id: UUID) -> list[BillingAttempt]:
        result = await self.session.execute(
            select(BillingAttempt)
            .where(BillingAttempt.invoice_id == invoice_id)
            .order_by(BillingAttempt.attempt_number.desc())
        )
        return list(result.scalars().all())

    # ============================================================
    # Reminders
    # ============================================================

    async def list_reminders(self, invoice_id: UUID) -> list[PaymentReminder]:
        result = await self.session.execute(
            select(PaymentReminder)
            .where(PaymentReminder.invoice_id == invoice_id)
            .order_by(PaymentReminder.scheduled_for.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def cancel_scheduled_reminders(self, invoice_id: UUID) -> int:
        result = await self.session.execute(
            update(PaymentReminder)
            .where(PaymentReminder.invoice_id == invoice_id)
            .where(PaymentReminder.status == ReminderStatus.SCHEDULED)
            .values(status=ReminderStatus.CANCELLED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def due_reminder_ids(self, now: datetime, limit: int) -> list[UUID]:
        result = await self.session.execute(
            select(PaymentReminder.id)
            .where(PaymentReminder.status == ReminderStatus.SCHEDULED)
            .where(PaymentReminder.scheduled_for <= now)
            .order_by(PaymentReminder.scheduled_for.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ============================================================
    # Subscription
    # ============================================================

    async def get_plan(self, plan_id: UUID) -> Plan | None:
        return await self.session.get(Plan, plan_id)

    async def expiring_trials(
        self, now: datetime, until: datetime
    ) -> list[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.status == SubscriptionStatus.TRIALING)
            .where(Subscription.trial_end >= now)
            .where(Subscription.trial_end <= until)
        )
        return list(result.scalars().all())

    async def uninvoiced_renewal_ids(
        self, now: datetime, until: datetime
    ) -> list[UUID]:
        """Active subscriptions renewing in ``[now, until]`` not yet invoiced.

        A subscription counts as invoiced while it has anything open, or a
        paid invoice already covering the period end.
        """
        invoiced = exists().where(
            Invoice.subscription_id == Subscription.id,
            or_(
                Invoice.status.in_(OPEN_INVOICE_STATUSES),
                and_(
                    Invoice.status == InvoiceStatus.PAID,
                    Invoice.due_date >= Subscription.current_period_end,
                ),
            ),
        )
        result = await self.session.execute(
            select(Subscription.id)
            .where(Subscription.status == SubscriptionStatus.ACTIVE)
            .where(Subscription.current_period_end >= now)
            .where(Subscription.current_period_end <= until)
            .where(~invoiced)
        )
        return list(result.scalars().all())

    async def lapsed_subscription_ids(self, now: datetime) -> list[UUID]:
        result = await self.session.execute(
            select(Subscription.id)
            .where(Subscription.status == SubscriptionStatus.ACTIVE)
            .where(Subscription.current_period_end < now)
        )
        return list(result.scalars().all())

    # ============================================================
    # Coupon
    # ============================================================

    async def get_coupon_by_code(self, code: str) -> Coupon | None:
        result = await self.session.execute(
            select(Coupon)
            .where(Coupon.code == code.strip().upper())
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_coupons(
        self, query: CouponQuery, now: datetime
    ) -> tuple[list[Coupon], int]:
        conditions = []
        if query.is_active is not None:
            conditions.append(Coupon.is_active == query.is_active)
        if query.valid:
            conditions.append(Coupon.is_active.is_(True))
            conditions.append(
                or_(Coupon.valid_until.is_(None), Coupon.valid_until >= now)
            )
            conditions.append(
                or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses)
            )

        total = await self.session.scalar(
            select(func.count()).select_from(Coupon).where(*conditions)
        )
        result = await self.session.execute(
            select(Coupon)
            .where(*conditions)
            .order_by(Coupon.created_at.desc())
            .limit(query.limit)
            .offset(query.offset)
        )
        return list(result.scalars().all()), int(total or 0)

    async def claim_coupon_use(self, coupon_id: UUID) -> bool:
        """Atomically take one redemption slot on a coupon."""
        result = await self.session.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id)
            .where(Coupon.is_active.is_(True))
            .where(or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses))
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def tenant_has_coupon_usage(self, tenant_id: UUID) -> bool:
        usage = await self.session.scalar(
            select(CouponUsage.id).where(CouponUsage.tenant_id == tenant_id).limit(1)
        )
        return usage is not None

    # ============================================================
    # Billing jobs
    # ============================================================

    async def find_pending_jobs(
        self, query: BillingJobQuery, now: datetime
    ) -> list[BillingJob]:
        stmt = (
            select(BillingJob)
            .where(BillingJob.status.in_([JobStatus.PENDING, JobStatus.FAILED]))
            .where(BillingJob.scheduled_for <= now)
        )
        if query.job_type:
            stmt = stmt.where(BillingJob.job_type == query.job_type)
        if query.tenant_id:
            stmt = stmt.where(BillingJob.tenant_id == query.tenant_id)
        result = await self.session.execute(
            stmt.order_by(BillingJob.scheduled_for.asc()).limit(query.limit)
        )
        return list(result.scalars().all())

    async def due_job_ids(self, now: datetime, limit: int) -> list[UUID]:
        result = await self.session.execute(
            select(BillingJob.id)
            .where(BillingJob.status.in_([JobStatus.PENDING, JobStatus.FAILED]))
            .where(BillingJob.scheduled_for <= now)
            .where(BillingJob.retry_count < BillingJob.max_retries)
            .order_by(BillingJob.scheduled_for.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def has_pending_job(
        self,
        job_type: BillingJobType,
        *,
        subscription_id: UUID | None = None,
        invoice_id: UUID | None = None,
    ) -> bool:
        conditions = [
            BillingJob.job_type == job_type,
            BillingJob.status == JobStatus.PENDING,
        ]
        if subscription_id is not None:
            conditions.append(BillingJob.subscription_id == subscription_id)
        if invoice_id is not None:
            conditions.append(BillingJob.invoice_id == invoice_id)
        job_id = await self.session.scalar(
            select(BillingJob.id).where(and_(*conditions)).limit(1)
        )
        return job_id is not None

    async def cancel_pending_jobs(
        self, job_type: BillingJobType, *, invoice_id: UUID, now: datetime
    ) -> int:
        result = await self.session.execute(
            update(BillingJob)
            .where(BillingJob.invoice_id == invoice_id)
            .where(BillingJob.job_type == job_type)
            .where(BillingJob.status.in_([JobStatus.PENDING, JobStatus.FAILED]))
            .values(
                status=JobStatus.CANCELLED,
                completed_at=now,
                error_message="Superseded: invoice settled",
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def stale_running_job_ids(self, started_before: datetime) -> list[UUID]:
        result = await self.session.execute(
            select(BillingJob.id)
            .where(BillingJob.status == JobStatus.RUNNING)
            .where(BillingJob.started_at < started_before)
        )
        return list(result.scalars().all())
