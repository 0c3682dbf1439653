"""Billing module - invoices, dunning, subscriptions, coupons and billing jobs."""

from billing_engine.modules.billing.routes import router
from billing_engine.modules.billing.services import BillingService


__all__ = [
    "BillingService",
    "router",
]
