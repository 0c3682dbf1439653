"""Structured logging setup and request tracking."""

import logging

import structlog

from billing_engine.config import settings
from billing_engine.core.logging.middleware import RequestLoggingMiddleware


def configure_logging() -> None:
    """Configure structlog for the API process and the arq worker.

    Production emits JSON lines; every other environment uses the
    console renderer.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            (
                structlog.processors.JSONRenderer()
                if settings.is_production
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(settings.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


__all__ = [
    "RequestLoggingMiddleware",
    "configure_logging",
]
