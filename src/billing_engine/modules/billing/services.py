"""Billing service: one session-scoped entry point to every billing manager."""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import Settings, settings
from billing_engine.core.clock import Clock, SystemClock
from billing_engine.core.database import get_db
from billing_engine.modules.tenants import TenantDirectory

from .coupons import CouponEngine
from .gateway import PaymentGateway, build_payment_gateway
from .invoices import InvoiceManager
from .jobs import BillingJobQueue
from .notifier import Notifier, build_notifier
from .payments import PaymentProcessor
from .policy import DunningPolicy
from .reminders import ReminderDispatcher
from .repos import BillingRepository
from .schemas import BillingStats
from .stats import get_billing_stats
from .subscriptions import SubscriptionLifecycleManager


class BillingService:
    """Wires the billing managers to one session and one set of collaborators.

    Managers reach each other through this object, e.g. the payment
    processor calls ``billing.invoices.mark_paid``. Nothing here commits;
    the caller owns the transaction (except ``jobs.process_job``).

    Example:
        async with session_factory() as session:
            billing = BillingService(session, clock=clock, gateway=gateway)
            await billing.payments.process_payment(invoice_id)
            await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Clock | None = None,
        gateway: PaymentGateway | None = None,
        notifier: Notifier | None = None,
        config: Settings | None = None,
        policy: DunningPolicy | None = None,
    ) -> None:
        self.session = session
        self.config = config or settings
        self.clock = clock or SystemClock()
        self.policy = policy or DunningPolicy.from_settings(self.config)
        self.gateway = gateway or build_payment_gateway(self.config)
        self.notifier = notifier or build_notifier(self.config)

        self.repo = BillingRepository(session)
        self.tenants = TenantDirectory(session)

        self.invoices = InvoiceManager(self)
        self.payments = PaymentProcessor(self)
        self.subscriptions = SubscriptionLifecycleManager(self)
        self.coupons = CouponEngine(self)
        self.reminders = ReminderDispatcher(self)
        self.jobs = BillingJobQueue(self)

    async def get_billing_stats(self) -> BillingStats:
        return await get_billing_stats(self)


# ============================================================
# Dependencies
# ============================================================


@lru_cache
def get_clock() -> Clock:
    return SystemClock()


@lru_cache
def get_payment_gateway() -> PaymentGateway:
    return build_payment_gateway()


@lru_cache
def get_notifier() -> Notifier:
    return build_notifier()


def get_billing_service(
    session: Annotated[AsyncSession, Depends(get_db)],
    clock: Annotated[Clock, Depends(get_clock)],
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
    notifier: Annotated[Notifier, Depends(get_notifier)],
) -> BillingService:
    """Build a request-scoped billing service."""
    return BillingService(session, clock=clock, gateway=gateway, notifier=notifier)


BillingServiceDep = Annotated[BillingService, Depends(get_billing_service)]
