"""Tenants module - the tenant directory used for plan propagation."""

from billing_engine.modules.tenants.models import Tenant
from billing_engine.modules.tenants.repos import TenantDirectory


__all__ = [
    "Tenant",
    "TenantDirectory",
]
