#!/usr/bin/env python
"""
Seed the plan catalogue and demo subscribers for development.
"""

import argparse
import asyncio
import sys
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from sqlalchemy import select


# Add src to path for imports
sys.path.insert(0, "src")

from billing_engine.core.database import async_session_factory
from billing_engine.modules.billing.models import (
    BillingCycle,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.modules.billing.policy import advance_period
from billing_engine.modules.tenants.models import Tenant


PLANS = [
    {
        "code": "STARTER",
        "name": "Starter",
        "monthly_price": Decimal("9.00"),
        "yearly_price": Decimal("90.00"),
    },
    {
        "code": "PRO",
        "name": "Pro",
        "monthly_price": Decimal("29.00"),
        "quarterly_price": Decimal("81.00"),
        "yearly_price": Decimal("290.00"),
    },
    {
        "code": "ENTERPRISE",
        "name": "Enterprise",
        "monthly_price": Decimal("99.00"),
        "quarterly_price": Decimal("280.00"),
        "yearly_price": Decimal("990.00"),
    },
]

# (name, slug, plan code, cycle, trialing)
DEMO_SUBSCRIBERS = [
    ("Acme Corporation", "acme", "PRO", BillingCycle.MONTHLY, False),
    ("Globex Industries", "globex", "ENTERPRISE", BillingCycle.YEARLY, False),
    ("Initech", "initech", "STARTER", BillingCycle.MONTHLY, True),
]


async def seed_plans() -> dict[str, Plan]:
    """Create the plan catalogue, skipping plans that already exist."""
    async with async_session_factory() as session:
        plans: dict[str, Plan] = {}
        for data in PLANS:
            result = await session.execute(select(Plan).where(Plan.code == data["code"]))
            existing = result.scalar_one_or_none()

            if existing:
                print(f"Plan already exists: {existing.code}")
                plans[existing.code] = existing
                continue

            plan = Plan(is_active=True, **data)
            session.add(plan)
            plans[plan.code] = plan
            print(f"Created plan: {data['code']}")

        await session.commit()
        return plans


async def seed_demo() -> None:
    """Create demo tenants with one subscription each."""
    plans = await seed_plans()
    now = datetime.now(UTC).replace(microsecond=0)

    async with async_session_factory() as session:
        for name, slug, plan_code, cycle, trialing in DEMO_SUBSCRIBERS:
            result = await session.execute(select(Tenant).where(Tenant.slug == slug))
            if result.scalar_one_or_none():
                print(f"Tenant already exists: {name}")
                continue

            plan = plans[plan_code]
            tenant = Tenant(name=name, slug=slug, is_active=True, plan=plan_code)
            session.add(tenant)
            await session.flush()

            period_end = now + timedelta(days=14) if trialing else advance_period(now, cycle)
            session.add(
                Subscription(
                    tenant_id=tenant.id,
                    plan_id=plan.id,
                    plan_type=plan.code,
                    amount=plan.price_for(cycle),
                    billing_cycle=cycle,
                    status=SubscriptionStatus.TRIALING
                    if trialing
                    else SubscriptionStatus.ACTIVE,
                    current_period_start=now,
                    current_period_end=period_end,
                    trial_end=period_end if trialing else None,
                )
            )
            print(f"Created tenant: {name} ({plan_code}, {cycle.lower()})")

        await session.commit()


async def main(scenario: str) -> None:
    """Run the seeding based on scenario."""
    if scenario == "plans":
        await seed_plans()
    elif scenario == "demo":
        await seed_demo()
    else:
        print(f"Unknown scenario: {scenario}")
        print("Available scenarios: plans, demo")
        sys.exit(1)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the billing database")
    parser.add_argument(
        "--scenario",
        "-s",
        default="plans",
        help="Seed scenario to run (plans, demo)",
    )
    args = parser.parse_args()

    asyncio.run(main(args.scenario))
