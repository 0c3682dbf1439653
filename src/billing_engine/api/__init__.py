"""HTTP API: health endpoints and the versioned module routers."""

from billing_engine.api.router import api_router


__all__ = [
    "api_router",
]
