"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from billing_engine import __version__
from billing_engine.api import api_router
from billing_engine.config import settings
from billing_engine.core.database import async_engine
from billing_engine.core.errors import register_exception_handlers
from billing_engine.core.logging import RequestLoggingMiddleware, configure_logging


configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        environment=settings.environment,
    )

    yield

    logger.info("application_shutdown")
    await async_engine.dispose()
    logger.info("database_engine_disposed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title=settings.app_name,
        description="Recurring billing and dunning engine",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
        # Disable docs in production
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        openapi_url="/openapi.json" if not settings.is_production else None,
    )

    cors_origins = settings.cors_origins
    if settings.is_development and not cors_origins:
        cors_origins = ["http://localhost:3000", "http://localhost:5173"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )

    # Add request logging middleware (assigns the request ID)
    app.add_middleware(RequestLoggingMiddleware)

    # Register exception handlers for RFC 7807 error responses
    register_exception_handlers(app)

    app.include_router(api_router)

    return app


app = create_app()
