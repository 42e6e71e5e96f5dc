"""Custom exceptions for Wayfare.

This module provides the exception hierarchy shared by the billing engine
and its HTTP surface:
- Structured error information
- HTTP status code mapping
- User-friendly error messages
- Machine-readable error codes
"""

from __future__ import annotations

from enum import Enum
from http import HTTPStatus
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes for API responses."""

    # General errors (1xxx)
    INTERNAL_ERROR = "WF1000"
    UNKNOWN_ERROR = "WF1001"
    CONFIGURATION_ERROR = "WF1002"

    # Validation errors (4xxx)
    VALIDATION_ERROR = "WF4000"
    INVALID_TIER = "WF4001"
    INVALID_TIER_CHANGE = "WF4002"
    INVALID_SIGNATURE = "WF4003"

    # Resource errors (5xxx)
    RESOURCE_NOT_FOUND = "WF5000"
    SUBSCRIPTION_NOT_FOUND = "WF5001"
    WEBHOOK_EVENT_NOT_FOUND = "WF5002"

    # State errors (6xxx)
    INVALID_TRANSITION = "WF6000"
    ACTIVE_SUBSCRIPTION_EXISTS = "WF6001"
    CONCURRENCY_CONFLICT = "WF6002"

    # External provider errors (7xxx)
    EXTERNAL_API_ERROR = "WF7000"
    PAYMENT_PROVIDER_ERROR = "WF7001"


class WayfareException(Exception):
    """Base exception for all Wayfare errors.

    Attributes:
        message: Human-readable error message.
        error_code: Machine-readable error code.
        http_status: HTTP status code for API responses.
        details: Additional context for debugging.
        user_message: User-friendly message (may differ from message).
    """

    message: str = "An unexpected error occurred"
    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    http_status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR
    user_message: str | None = None

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: ErrorCode | None = None,
        http_status: HTTPStatus | None = None,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Human-readable error message.
            error_code: Machine-readable error code.
            http_status: HTTP status code for API responses.
            details: Additional context for debugging.
            user_message: User-friendly message for end users.
        """
        self.message = message or self.__class__.message
        self.error_code = error_code or self.__class__.error_code
        self.http_status = http_status or self.__class__.http_status
        self.details = details or {}
        self.user_message = user_message or self.__class__.user_message or self.message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.user_message,
                "details": self.details if self.details else None,
            }
        }

    def __str__(self) -> str:
        """String representation including error code."""
        return f"[{self.error_code.value}] {self.message}"

    def __repr__(self) -> str:
        """Detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code.value}, "
            f"http_status={self.http_status.value}, "
            f"details={self.details!r}"
            f")"
        )


class ConfigurationError(WayfareException):
    """Invalid static configuration, such as a malformed tier catalog."""

    message = "Invalid configuration"
    error_code = ErrorCode.CONFIGURATION_ERROR


class ValidationError(WayfareException):
    """Validation-related errors."""

    message = "Validation error"
    error_code = ErrorCode.VALIDATION_ERROR
    http_status = HTTPStatus.BAD_REQUEST

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details=details, **kwargs)


class NotFoundError(WayfareException):
    """Resource not found errors."""

    message = "Resource not found"
    error_code = ErrorCode.RESOURCE_NOT_FOUND
    http_status = HTTPStatus.NOT_FOUND

    def __init__(
        self,
        message: str | None = None,
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize not found error.

        Args:
            message: Error message.
            resource_type: Type of resource not found.
            resource_id: ID of the resource.
            **kwargs: Additional arguments passed to parent.
        """
        details = kwargs.pop("details", {}) or {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        if not message and resource_type:
            message = f"{resource_type} not found"

        super().__init__(message, details=details, **kwargs)


class ConflictError(WayfareException):
    """The requested change conflicts with the current state."""

    message = "Conflicting state"
    error_code = ErrorCode.INVALID_TRANSITION
    http_status = HTTPStatus.CONFLICT


def get_http_status_for_exception(exc: Exception) -> HTTPStatus:
    """Get the appropriate HTTP status code for an exception.

    Args:
        exc: The exception to map.

    Returns:
        The appropriate HTTP status code.
    """
    if isinstance(exc, WayfareException):
        return exc.http_status

    exception_status_map: dict[type, HTTPStatus] = {
        ValueError: HTTPStatus.BAD_REQUEST,
        KeyError: HTTPStatus.NOT_FOUND,
        TimeoutError: HTTPStatus.GATEWAY_TIMEOUT,
        ConnectionError: HTTPStatus.BAD_GATEWAY,
    }

    for exc_type, status in exception_status_map.items():
        if isinstance(exc, exc_type):
            return status

    return HTTPStatus.INTERNAL_SERVER_ERROR
