"""Billing engine errors and the classified error value they render to.

Internals raise these exceptions. The engine boundary converts every
failure, raised by the engine or by the provider, into a
``PaymentErrorDetails`` so callers branch on values rather than exceptions.
"""

from __future__ import annotations

import enum
from http import HTTPStatus
from typing import Any

from pydantic import BaseModel

from wayfare.core.exceptions import (
    ConflictError,
    ErrorCode,
    NotFoundError,
    ValidationError,
    WayfareException,
)


class PaymentErrorCode(str, enum.Enum):
    """Closed taxonomy of classified billing failures."""

    CARD_DECLINED = "CARD_DECLINED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    EXPIRED_CARD = "EXPIRED_CARD"
    INCORRECT_CVC = "INCORRECT_CVC"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    INVOICE_NOT_FOUND = "INVOICE_NOT_FOUND"
    PAYMENT_METHOD_UNACTIVATED = "PAYMENT_METHOD_UNACTIVATED"
    AUTHENTICATION_FAILURE = "AUTHENTICATION_FAILURE"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    UNKNOWN = "UNKNOWN"

    # Engine errors: fatal, never produced by the provider
    INVALID_TIER = "INVALID_TIER"
    ACTIVE_SUBSCRIPTION_EXISTS = "ACTIVE_SUBSCRIPTION_EXISTS"
    INVALID_TIER_CHANGE = "INVALID_TIER_CHANGE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


class ErrorSeverity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class RecommendedAction(str, enum.Enum):
    RETRY = "retry"
    UPDATE_PAYMENT_METHOD = "update_payment_method"
    CONTACT_SUPPORT = "contact_support"


class PaymentErrorDetails(BaseModel):
    """A classified failure, safe to render to end users."""

    model_config = {"frozen": True}

    code: PaymentErrorCode
    message: str
    user_message: str
    severity: ErrorSeverity
    recommended_action: RecommendedAction
    details: dict[str, Any] | None = None

    @property
    def is_retryable(self) -> bool:
        return self.recommended_action is RecommendedAction.RETRY


class BillingError(WayfareException):
    """Base class for fatal billing engine errors."""

    payment_code: PaymentErrorCode = PaymentErrorCode.UNKNOWN
    recommended_action: RecommendedAction = RecommendedAction.CONTACT_SUPPORT

    def to_payment_error(self) -> PaymentErrorDetails:
        """Render this error as a classified failure."""
        return PaymentErrorDetails(
            code=self.payment_code,
            message=self.message,
            user_message=self.user_message,
            severity=ErrorSeverity.ERROR,
            recommended_action=self.recommended_action,
            details=self.details or None,
        )


class TierNotFoundError(BillingError, NotFoundError):
    """Requested tier is not in the catalog."""

    message = "Tier not found"
    error_code = ErrorCode.INVALID_TIER
    http_status = HTTPStatus.BAD_REQUEST
    user_message = "Invalid subscription plan"
    payment_code = PaymentErrorCode.INVALID_TIER


class SubscriptionNotFoundError(BillingError, NotFoundError):
    """No subscription record matches the lookup."""

    message = "Subscription not found"
    error_code = ErrorCode.SUBSCRIPTION_NOT_FOUND
    user_message = "Subscription not found. Please contact support."
    payment_code = PaymentErrorCode.SUBSCRIPTION_NOT_FOUND


class WebhookEventNotFoundError(NotFoundError):
    """No stored webhook event has the requested id."""

    message = "Webhook event not found"
    error_code = ErrorCode.WEBHOOK_EVENT_NOT_FOUND


class ActiveSubscriptionExistsError(BillingError, ConflictError):
    """The subscriber already has a live subscription."""

    message = "Subscriber already has an active subscription"
    error_code = ErrorCode.ACTIVE_SUBSCRIPTION_EXISTS
    user_message = "You already have an active subscription."
    payment_code = PaymentErrorCode.ACTIVE_SUBSCRIPTION_EXISTS


class InvalidTierChangeError(BillingError, ValidationError):
    """Tier change in the wrong direction for the requested operation."""

    message = "Invalid tier change"
    error_code = ErrorCode.INVALID_TIER_CHANGE
    user_message = "This plan change is not available for your subscription."
    payment_code = PaymentErrorCode.INVALID_TIER_CHANGE


class InvalidTransitionError(BillingError, ConflictError):
    """The subscription's status does not allow the requested change."""

    message = "Invalid subscription status transition"
    error_code = ErrorCode.INVALID_TRANSITION
    user_message = "This action is not available for your subscription's current state."
    payment_code = PaymentErrorCode.INVALID_TRANSITION

    def __init__(
        self,
        message: str | None = None,
        *,
        current: str | None = None,
        target: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if current is not None:
            details["current_status"] = current
        if target is not None:
            details["target_status"] = target
        if not message and current is not None and target is not None:
            message = f"Cannot move subscription from {current} to {target}"
        super().__init__(message, details=details, **kwargs)


class ConcurrencyConflictError(BillingError, ConflictError):
    """The record changed between snapshot and write."""

    message = "Subscription was modified concurrently"
    error_code = ErrorCode.CONCURRENCY_CONFLICT
    user_message = "Your subscription was just updated. Please try again."
    payment_code = PaymentErrorCode.CONCURRENCY_CONFLICT
    recommended_action = RecommendedAction.RETRY


class WebhookSignatureError(BillingError, ValidationError):
    """Webhook payload failed signature verification."""

    message = "Invalid webhook signature"
    error_code = ErrorCode.INVALID_SIGNATURE
    payment_code = PaymentErrorCode.INVALID_SIGNATURE
