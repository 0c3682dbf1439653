"""Tenant database models."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.core.constants import (
    FREE_PLAN_CODE,
    MAX_NAME_LENGTH,
    MAX_PLAN_CODE_LENGTH,
    MAX_SLUG_LENGTH,
)
from billing_engine.core.database.base import Base, TimestampMixin, UUIDMixin


class Tenant(Base, UUIDMixin, TimestampMixin):
    """Tenant model representing a billed organization.

    ``plan`` holds the code of the plan the tenant is entitled to; the
    billing engine rewrites it on plan changes and on cancellation.
    """

    __tablename__ = "tenants"

    name: Mapped[str] = mapped_column(
        String(MAX_NAME_LENGTH),
        nullable=False,
        index=True,
    )
    slug: Mapped[str] = mapped_column(
        String(MAX_SLUG_LENGTH),
        nullable=False,
        unique=True,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(
        default=True,
        nullable=False,
    )
    plan: Mapped[str] = mapped_column(
        String(MAX_PLAN_CODE_LENGTH),
        default=FREE_PLAN_CODE,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, slug={self.slug}, plan={self.plan})>"
