"""Database layer - session management, base models, and mixins."""

from billing_engine.core.database.base import (
    Base,
    TenantMixin,
    TimestampMixin,
    UTCDateTime,
    UUIDMixin,
)
from billing_engine.core.database.session import (
    async_engine,
    async_session_factory,
    create_session_factory,
    get_db,
    upsert,
)


__all__ = [
    "Base",
    "TenantMixin",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDMixin",
    "async_engine",
    "async_session_factory",
    "create_session_factory",
    "get_db",
    "upsert",
]
