"""Request logging middleware.

Logs every HTTP request with structlog and tags it with a request ID
that is echoed back in the ``X-Request-ID`` header and bound into the
structlog context, so billing events logged while serving the request
carry the same ID.
"""

import time
from typing import Any
from uuid import uuid4

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint


logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware that logs all HTTP requests and responses.

    Logs include:
    - Request method and path
    - Response status code
    - Request duration
    - Request ID (taken from X-Request-ID or generated)
    """

    def __init__(
        self,
        app: Any,
        exclude_paths: list[str] | None = None,
    ) -> None:
        """Initialize the middleware.

        Args:
            app: The ASGI application
            exclude_paths: Paths to exclude from logging (e.g., health checks)
        """
        super().__init__(app)
        self.exclude_paths = exclude_paths or [
            "/health/live",
            "/health/ready",
            "/docs",
            "/redoc",
            "/openapi.json",
        ]

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process the request and log details.

        Args:
            request: The incoming request
            call_next: The next middleware/handler

        Returns:
            The response from the handler
        """
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        request.state.request_id = request_id

        if any(request.url.path.startswith(path) for path in self.exclude_paths):
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        start_time = time.perf_counter()
        method = request.method
        path = request.url.path

        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            logger.info(
                "request_started",
                method=method,
                path=path,
                query=str(request.url.query) or None,
                client_ip=request.client.host if request.client else None,
            )

            try:
                response = await call_next(request)
            except Exception as exc:
                duration_ms = (time.perf_counter() - start_time) * 1000
                logger.exception(
                    "request_failed",
                    method=method,
                    path=path,
                    duration_ms=round(duration_ms, 2),
                    error=str(exc),
                )
                raise

            duration_ms = (time.perf_counter() - start_time) * 1000
            completion_data: dict[str, Any] = {
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            }

            # Choose log level based on status code
            if response.status_code >= 500:
                logger.error("request_completed", **completion_data)
            elif response.status_code >= 400:
                logger.warning("request_completed", **completion_data)
            else:
                logger.info("request_completed", **completion_data)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
