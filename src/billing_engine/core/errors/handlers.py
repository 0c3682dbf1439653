"""RFC 7807 Problem Details exception handlers.

Manual billing operations (retrying a payment, voiding an invoice ...)
surface failures to the caller as Problem Details documents carrying
the error kind in ``error_code``.

See: https://tools.ietf.org/html/rfc7807
"""

from typing import TYPE_CHECKING, Any, cast

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from billing_engine.config import settings
from billing_engine.core.errors.exceptions import AppException


if TYPE_CHECKING:
    from starlette.types import ExceptionHandler


logger = structlog.get_logger()


class FieldError(BaseModel):
    """Represents a single field validation error."""

    field: str
    message: str
    type: str | None = None


class ProblemDetail(BaseModel):
    """RFC 7807 Problem Details response schema.

    Attributes:
        type: URI reference identifying the problem type
        title: Short human-readable summary
        status: HTTP status code
        detail: Human-readable explanation specific to this occurrence
        instance: URI reference identifying this specific occurrence
        error_code: Machine-readable error kind
        errors: List of field-level errors (for validation errors)
        request_id: Request correlation ID for debugging
    """

    type: str
    title: str
    status: int
    detail: str
    instance: str | None = None
    error_code: str | None = None
    errors: list[FieldError] | None = None
    request_id: str | None = None

    model_config = {"extra": "allow"}


def _get_request_id(request: Request) -> str | None:
    """Extract the request ID set by the logging middleware."""
    return getattr(request.state, "request_id", None)


def _get_error_type_uri(error_code: str) -> str:
    """Generate a URI for the error type."""
    return f"{settings.api_docs_base_url}/errors/{error_code}"


def _problem(
    request: Request,
    status_code: int,
    error_code: str,
    detail: str,
    title: str | None = None,
    errors: list[FieldError] | None = None,
) -> dict[str, Any]:
    return ProblemDetail(
        type=_get_error_type_uri(error_code),
        title=title or error_code.replace("_", " ").title(),
        status=status_code,
        detail=detail,
        instance=str(request.url.path),
        error_code=error_code,
        errors=errors,
        request_id=_get_request_id(request),
    ).model_dump(exclude_none=True)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Convert AppException subclasses to RFC 7807 Problem Details responses."""
    logger.warning(
        "app_exception",
        error_code=exc.error_code,
        message=exc.message,
        status_code=exc.status_code,
        path=str(request.url.path),
        details=exc.details,
    )

    content = _problem(request, exc.status_code, exc.error_code, exc.message)

    # Add any additional details from the exception
    for key, value in exc.details.items():
        if key not in content:
            content[key] = value

    return JSONResponse(status_code=exc.status_code, content=content)


async def integrity_error_handler(
    request: Request, exc: IntegrityError
) -> JSONResponse:
    """Report a lost uniqueness race as a conflict.

    Concurrent writers can collide on unique keys such as
    ``(invoice_id, attempt_number)`` or a coupon code.
    """
    logger.warning(
        "integrity_conflict",
        path=str(request.url.path),
        error=str(exc.orig),
    )

    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=_problem(
            request,
            status.HTTP_409_CONFLICT,
            "conflict",
            "The resource was modified concurrently; retry the request",
        ),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert FastAPI/Pydantic validation errors to RFC 7807 format."""
    errors: list[FieldError] = []

    for error in exc.errors():
        # Skip "body" prefix in field path
        loc = error.get("loc", ())
        field_parts = [str(part) for part in loc if part != "body"]
        errors.append(
            FieldError(
                field=".".join(field_parts) if field_parts else "unknown",
                message=error.get("msg", "Invalid value"),
                type=error.get("type"),
            )
        )

    logger.warning(
        "validation_error",
        path=str(request.url.path),
        error_count=len(errors),
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_problem(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "validation_error",
            "Request validation failed",
            title="Validation Error",
            errors=errors,
        ),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch unhandled exceptions and return a generic 500 error.

    The actual error details are logged but not exposed to clients.
    """
    logger.exception(
        "unhandled_exception",
        path=str(request.url.path),
        error_type=type(exc).__name__,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_problem(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "internal_error",
            "An unexpected error occurred",
            title="Internal Server Error",
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app.

    Call this function during app initialization:

        app = FastAPI()
        register_exception_handlers(app)
    """
    app.add_exception_handler(
        AppException, cast("ExceptionHandler", app_exception_handler)
    )
    app.add_exception_handler(
        IntegrityError, cast("ExceptionHandler", integrity_error_handler)
    )
    app.add_exception_handler(
        RequestValidationError, cast("ExceptionHandler", validation_exception_handler)
    )
    app.add_exception_handler(Exception, generic_exception_handler)
