"""Shared utilities for the arq worker."""

import os
import socket
from uuid import uuid4

from arq.connections import RedisSettings

from billing_engine.config import settings


def get_redis_settings() -> RedisSettings:
    """Get Redis settings for arq from the configured ``redis_url``.

    Credentials and the database index in the URL are honoured.
    """
    return RedisSettings.from_dsn(str(settings.redis_url))


def make_worker_id() -> str:
    """Identity used as the scheduler lease holder: ``host:pid:random``."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"
