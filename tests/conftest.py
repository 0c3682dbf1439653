"""Pytest configuration and shared fixtures."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from billing_engine.core.clock import FrozenClock
from billing_engine.core.database import Base, create_session_factory, get_db

# Import all models to ensure they're registered with Base.metadata
from billing_engine.core.jobs.leases import SchedulerLease  # noqa: F401
from billing_engine.main import create_app
from billing_engine.modules.billing.gateway import ChargeResult
from billing_engine.modules.billing.models import (
    BillingCycle,
    Invoice,
    Plan,
    ReminderType,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.modules.billing.services import (
    BillingService,
    get_clock,
    get_notifier,
    get_payment_gateway,
)
from billing_engine.modules.tenants.models import Tenant
from tests.factories.tenant import TenantFactory


# Every test starts at this instant
NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


class FakeGateway:
    """Payment gateway double with a scripted queue of outcomes.

    Charges succeed unless an outcome was queued with ``decline``.
    """

    def __init__(self) -> None:
        self.outcomes: list[ChargeResult] = []
        self.calls: list[tuple[UUID, Decimal]] = []
        self.attempts: list[int] = []

    def decline(self, times: int = 1, reason: str = "card_declined") -> None:
        for _ in range(times):
            self.outcomes.append(
                ChargeResult(
                    success=False, reason=reason, message="Your card was declined."
                )
            )

    async def charge(
        self,
        invoice_id: UUID,
        amount: Decimal,
        tenant_id: UUID,
        attempt_number: int,
    ) -> ChargeResult:
        self.calls.append((invoice_id, amount))
        self.attempts.append(attempt_number)
        if self.outcomes:
            return self.outcomes.pop(0)
        return ChargeResult(success=True, reference_id=f"pi_test_{len(self.calls)}")


class FakeNotifier:
    """Notifier double that records what it was asked to send."""

    def __init__(self) -> None:
        self.sent: list[tuple[ReminderType, UUID]] = []
        self.accept = True

    async def send(
        self, reminder_type: ReminderType, invoice: Invoice, tenant: Tenant | None
    ) -> bool:
        self.sent.append((reminder_type, invoice.id))
        return self.accept


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a file-backed SQLite engine with the full schema.

    A file (rather than ``:memory:``) lets concurrent sessions and the
    sweeps' own sessions see each other's commits.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        poolclass=NullPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for tests.

    Billing jobs commit their own work, so tests get a fresh database
    instead of a rolled-back transaction.
    """
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def billing(
    db: AsyncSession, clock: FrozenClock, gateway: FakeGateway, notifier: FakeNotifier
) -> BillingService:
    return BillingService(db, clock=clock, gateway=gateway, notifier=notifier)


@pytest.fixture
def make_billing(
    clock: FrozenClock,
    gateway: FakeGateway,
    notifier: FakeNotifier,
):
    """Build a billing service on a new session, for concurrency tests."""

    def _make(session: AsyncSession) -> BillingService:
        return BillingService(session, clock=clock, gateway=gateway, notifier=notifier)

    return _make


@pytest.fixture
def ctx(
    session_factory: async_sessionmaker[AsyncSession],
    clock: FrozenClock,
    gateway: FakeGateway,
    notifier: FakeNotifier,
) -> dict[str, Any]:
    """arq worker context as built by ``worker.startup``."""
    return {
        "db_session_factory": session_factory,
        "clock": clock,
        "payment_gateway": gateway,
        "notifier": notifier,
        "worker_id": "test-worker:1:abcd1234",
    }


@pytest.fixture
async def app(
    db: AsyncSession, clock: FrozenClock, gateway: FakeGateway, notifier: FakeNotifier
):
    """Create test application instance."""
    application = create_app()

    # Override database dependency
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db

    application.dependency_overrides[get_db] = override_get_db
    application.dependency_overrides[get_clock] = lambda: clock
    application.dependency_overrides[get_payment_gateway] = lambda: gateway
    application.dependency_overrides[get_notifier] = lambda: notifier

    yield application

    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Provide async HTTP client for API testing."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client


# ============================================================
# Tenant, Plan and Subscription Fixtures
# ============================================================


async def create_tenant(db: AsyncSession) -> Tenant:
    tenant = Tenant(**TenantFactory.build().model_dump())
    db.add(tenant)
    await db.flush()
    return tenant


@pytest.fixture
async def tenant(db: AsyncSession) -> Tenant:
    """Create a test tenant on the free plan."""
    return await create_tenant(db)


@pytest.fixture
async def plan(db: AsyncSession) -> Plan:
    plan = Plan(
        code="PRO",
        name="Pro",
        monthly_price=Decimal("29.00"),
        yearly_price=Decimal("290.00"),
        is_active=True,
    )
    db.add(plan)
    await db.flush()
    return plan


@pytest.fixture
async def enterprise_plan(db: AsyncSession) -> Plan:
    plan = Plan(
        code="ENTERPRISE",
        name="Enterprise",
        monthly_price=Decimal("99.00"),
        quarterly_price=Decimal("280.00"),
        yearly_price=Decimal("990.00"),
        is_active=True,
    )
    db.add(plan)
    await db.flush()
    return plan


async def create_subscription(
    db: AsyncSession, tenant: Tenant, plan: Plan, **overrides: Any
) -> Subscription:
    values: dict[str, Any] = {
        "tenant_id": tenant.id,
        "plan_id": plan.id,
        "plan_type": plan.code,
        "amount": plan.monthly_price,
        "billing_cycle": BillingCycle.MONTHLY,
        "status": SubscriptionStatus.ACTIVE,
        "current_period_start": datetime(2024, 1, 1, tzinfo=UTC),
        "current_period_end": datetime(2024, 2, 1, tzinfo=UTC),
    }
    values.update(overrides)
    subscription = Subscription(**values)
    db.add(subscription)
    await db.flush()
    return subscription


@pytest.fixture
async def subscription(db: AsyncSession, tenant: Tenant, plan: Plan) -> Subscription:
    """An ACTIVE monthly PRO subscription for January 2024."""
    return await create_subscription(db, tenant, plan)


@pytest.fixture
async def trial_subscription(
    db: AsyncSession, tenant: Tenant, plan: Plan
) -> Subscription:
    """A PRO trial ending at the test clock's current instant."""
    return await create_subscription(
        db,
        tenant,
        plan,
        status=SubscriptionStatus.TRIALING,
        current_period_start=datetime(2024, 1, 1, tzinfo=UTC),
        current_period_end=NOW,
        trial_end=NOW,
    )
