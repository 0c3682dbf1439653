"""Tenant directory: plan lookups and plan propagation."""

from uuid import UUID

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.modules.tenants.models import Tenant


logger = structlog.get_logger()


class TenantDirectory:
    """Reads and updates the ``tenant -> plan code`` mapping."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, tenant_id: UUID) -> Tenant | None:
        """Get a tenant by ID, refreshing any cached copy."""
        return await self.session.get(Tenant, tenant_id, populate_existing=True)

    async def get_plan(self, tenant_id: UUID) -> str | None:
        """Get the plan code a tenant is currently on."""
        tenant = await self.get(tenant_id)
        return tenant.plan if tenant else None

    async def set_plan(self, tenant_id: UUID, plan_code: str) -> bool:
        """Point a tenant at a new plan code.

        Returns:
            True if the tenant exists and was updated
        """
        result = await self.session.execute(
            update(Tenant)
            .where(Tenant.id == tenant_id)
            .values(plan=plan_code)
            .execution_options(synchronize_session=False)
        )
        updated = result.rowcount > 0
        if updated:
            logger.info("tenant_plan_changed", tenant_id=str(tenant_id), plan=plan_code)
        else:
            logger.warning("tenant_plan_change_skipped", tenant_id=str(tenant_id))
        return updated
