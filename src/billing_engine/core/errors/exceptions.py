"""Domain exceptions for the billing engine.

These exceptions represent business-logic errors and are automatically
converted to RFC 7807 Problem Details responses by the exception handlers.
Scheduled work records them on the billing job instead of raising them
to a caller.
"""

from typing import Any


class AppException(Exception):
    """Base exception for all application errors.

    All domain exceptions should inherit from this class.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for clients
        status_code: HTTP status code for the response
        details: Additional error details
    """

    message: str = "An unexpected error occurred"
    error_code: str = "internal_error"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AppException):
    """Raised when a referenced invoice, subscription, coupon or job is absent.

    Example:
        raise NotFoundError("Invoice not found", resource="invoice", resource_id=str(id))
    """

    message = "Resource not found"
    error_code = "not_found"
    status_code = 404

    def __init__(
        self,
        message: str | None = None,
        resource: str | None = None,
        resource_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if resource:
            details["resource"] = resource
        if resource_id:
            details["resource_id"] = resource_id
        super().__init__(message=message, details=details, **kwargs)


class ConflictError(AppException):
    """Raised when there's a conflict with existing data.

    Example:
        raise ConflictError("Coupon code already exists", details={"code": code})
    """

    message = "Resource conflict"
    error_code = "conflict"
    status_code = 409


class InvalidStateError(AppException):
    """Raised when an operation is not legal for the entity's current status.

    Example:
        raise InvalidStateError(
            "Cannot void a paid invoice",
            details={"invoice_id": str(invoice.id), "status": invoice.status},
        )
    """

    message = "Operation not allowed in the current state"
    error_code = "invalid_state"
    status_code = 409


class ExhaustedRetriesError(InvalidStateError):
    """Raised when an invoice has used every dunning attempt.

    Retrying requires ``force=True``.
    """

    message = "Maximum payment retries reached"
    error_code = "max_retries_reached"


class ValidationError(AppException):
    """Raised when request data fails validation.

    Example:
        raise ValidationError(
            "Invalid input data",
            errors=[{"field": "total", "message": "Must not be negative"}]
        )
    """

    message = "Validation error"
    error_code = "validation_error"
    status_code = 422

    def __init__(
        self,
        message: str | None = None,
        errors: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if errors:
            details["errors"] = errors
        super().__init__(message=message, details=details, **kwargs)


class TransientFailureError(AppException):
    """Raised by outbound collaborators on timeout or rejection.

    Payment and notification callers catch this and feed the retry path.

    Example:
        raise TransientFailureError("Notification webhook unreachable")
    """

    message = "Downstream service temporarily unavailable"
    error_code = "transient_failure"
    status_code = 503
