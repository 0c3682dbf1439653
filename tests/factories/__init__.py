"""Test factories for generating test data."""

from tests.factories.billing import CouponCreateFactory, InvoiceCreateFactory
from tests.factories.tenant import TenantFactory


__all__ = [
    "CouponCreateFactory",
    "InvoiceCreateFactory",
    "TenantFactory",
]
