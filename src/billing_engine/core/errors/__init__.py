"""Error handling module with RFC 7807 Problem Details."""

from billing_engine.core.errors.exceptions import (
    AppException,
    ConflictError,
    ExhaustedRetriesError,
    InvalidStateError,
    NotFoundError,
    TransientFailureError,
    ValidationError,
)
from billing_engine.core.errors.handlers import (
    FieldError,
    ProblemDetail,
    register_exception_handlers,
)


__all__ = [
    # Exceptions
    "AppException",
    "ConflictError",
    "ExhaustedRetriesError",
    # Handlers
    "FieldError",
    "InvalidStateError",
    "NotFoundError",
    "ProblemDetail",
    "TransientFailureError",
    "ValidationError",
    "register_exception_handlers",
]
