"""Classification of provider, network and engine failures.

``classify`` maps any raised error (or error-shaped mapping) onto the closed
``PaymentErrorCode`` taxonomy together with a severity, a recommended action
and a message that can be shown to the subscriber. It never raises.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx
import stripe

from wayfare.billing.exceptions import (
    ErrorSeverity,
    PaymentErrorCode,
    PaymentErrorDetails,
    RecommendedAction,
)
from wayfare.core.exceptions import ValidationError, WayfareException
from wayfare.core.logging import get_logger

logger = get_logger(__name__)

MIN_PAYMENT_AMOUNT = 50
MAX_PAYMENT_AMOUNT = 99_999_999
SUPPORTED_CURRENCIES = frozenset({"usd", "eur", "gbp", "cad", "aud"})

ErrorClassifier = Callable[[Any], PaymentErrorDetails]


@dataclass(frozen=True)
class _Rule:
    user_message: str
    action: RecommendedAction
    severity: ErrorSeverity = ErrorSeverity.ERROR


_RULES: dict[PaymentErrorCode, _Rule] = {
    PaymentErrorCode.CARD_DECLINED: _Rule(
        "Your card was declined. Please try a different payment method.",
        RecommendedAction.UPDATE_PAYMENT_METHOD,
    ),
    PaymentErrorCode.INSUFFICIENT_FUNDS: _Rule(
        "Insufficient funds. Please check your account balance or try a different card.",
        RecommendedAction.UPDATE_PAYMENT_METHOD,
    ),
    PaymentErrorCode.EXPIRED_CARD: _Rule(
        "Your card has expired. Please update your payment method.",
        RecommendedAction.UPDATE_PAYMENT_METHOD,
    ),
    PaymentErrorCode.INCORRECT_CVC: _Rule(
        "The security code is incorrect. Please check and try again.",
        RecommendedAction.RETRY,
    ),
    PaymentErrorCode.PROCESSING_ERROR: _Rule(
        "Payment processing error. Please try again in a few minutes.",
        RecommendedAction.RETRY,
    ),
    PaymentErrorCode.RATE_LIMIT: _Rule(
        "Too many requests. Please wait a moment and try again.",
        RecommendedAction.RETRY,
        ErrorSeverity.WARNING,
    ),
    PaymentErrorCode.AUTHENTICATION_ERROR: _Rule(
        "Authentication error. Please contact support.",
        RecommendedAction.CONTACT_SUPPORT,
    ),
    PaymentErrorCode.CUSTOMER_NOT_FOUND: _Rule(
        "Customer account not found. Please contact support.",
        RecommendedAction.CONTACT_SUPPORT,
    ),
    PaymentErrorCode.SUBSCRIPTION_NOT_FOUND: _Rule(
        "Subscription not found. Please contact support.",
        RecommendedAction.CONTACT_SUPPORT,
    ),
    PaymentErrorCode.INVOICE_NOT_FOUND: _Rule(
        "Invoice not found. Please contact support.",
        RecommendedAction.CONTACT_SUPPORT,
    ),
    PaymentErrorCode.PAYMENT_METHOD_UNACTIVATED: _Rule(
        "Payment method needs to be activated. Please contact your bank.",
        RecommendedAction.UPDATE_PAYMENT_METHOD,
    ),
    PaymentErrorCode.AUTHENTICATION_FAILURE: _Rule(
        "Payment authentication failed. Please try again or use a different card.",
        RecommendedAction.RETRY,
    ),
    PaymentErrorCode.NETWORK_ERROR: _Rule(
        "Network connection error. Please check your internet connection and try again.",
        RecommendedAction.RETRY,
    ),
    PaymentErrorCode.TIMEOUT_ERROR: _Rule(
        "Request timed out. Please try again.",
        RecommendedAction.RETRY,
    ),
    PaymentErrorCode.UNKNOWN: _Rule(
        "An unexpected error occurred. Please try again or contact support.",
        RecommendedAction.CONTACT_SUPPORT,
    ),
}

# Provider error codes, matched against decline_code first and code second
_PROVIDER_CODES: dict[str, PaymentErrorCode] = {
    "card_declined": PaymentErrorCode.CARD_DECLINED,
    "generic_decline": PaymentErrorCode.CARD_DECLINED,
    "insufficient_funds": PaymentErrorCode.INSUFFICIENT_FUNDS,
    "expired_card": PaymentErrorCode.EXPIRED_CARD,
    "incorrect_cvc": PaymentErrorCode.INCORRECT_CVC,
    "processing_error": PaymentErrorCode.PROCESSING_ERROR,
    "rate_limit": PaymentErrorCode.RATE_LIMIT,
    "api_key_expired": PaymentErrorCode.AUTHENTICATION_ERROR,
    "authentication_required": PaymentErrorCode.AUTHENTICATION_ERROR,
    "customer_not_found": PaymentErrorCode.CUSTOMER_NOT_FOUND,
    "subscription_not_found": PaymentErrorCode.SUBSCRIPTION_NOT_FOUND,
    "invoice_not_found": PaymentErrorCode.INVOICE_NOT_FOUND,
    "payment_method_unactivated": PaymentErrorCode.PAYMENT_METHOD_UNACTIVATED,
    "payment_intent_authentication_failure": PaymentErrorCode.AUTHENTICATION_FAILURE,
    "ENOTFOUND": PaymentErrorCode.NETWORK_ERROR,
    "ECONNREFUSED": PaymentErrorCode.NETWORK_ERROR,
    "ECONNRESET": PaymentErrorCode.NETWORK_ERROR,
    "ETIMEDOUT": PaymentErrorCode.TIMEOUT_ERROR,
}

_MISSING_RESOURCES: dict[str, PaymentErrorCode] = {
    "customer": PaymentErrorCode.CUSTOMER_NOT_FOUND,
    "subscription": PaymentErrorCode.SUBSCRIPTION_NOT_FOUND,
    "invoice": PaymentErrorCode.INVOICE_NOT_FOUND,
}


def _details(
    code: PaymentErrorCode,
    message: str | None,
    extra: dict[str, Any] | None = None,
) -> PaymentErrorDetails:
    rule = _RULES[code]
    return PaymentErrorDetails(
        code=code,
        message=message or "Unknown error occurred",
        user_message=rule.user_message,
        severity=rule.severity,
        recommended_action=rule.action,
        details=extra or None,
    )


def _missing_resource_code(error: stripe.StripeError) -> PaymentErrorCode:
    param = (getattr(error, "param", None) or "").lower()
    for resource, code in _MISSING_RESOURCES.items():
        if resource in param:
            return code
    message = (error.user_message or str(error) or "").lower()
    for resource, code in _MISSING_RESOURCES.items():
        if f"no such {resource}" in message:
            return code
    return PaymentErrorCode.UNKNOWN


def _classify_stripe(error: stripe.StripeError) -> PaymentErrorDetails:
    message = error.user_message or str(error)
    extra: dict[str, Any] = {"provider_code": error.code} if error.code else {}
    if error.request_id:
        extra["request_id"] = error.request_id

    if isinstance(error, stripe.CardError):
        decline_code = getattr(error.error, "decline_code", None) if error.error else None
        if decline_code:
            extra["decline_code"] = decline_code
        for candidate in (decline_code, error.code):
            if candidate and candidate in _PROVIDER_CODES:
                return _details(_PROVIDER_CODES[candidate], message, extra)
        return _details(PaymentErrorCode.CARD_DECLINED, message, extra)

    if error.code in _PROVIDER_CODES:
        return _details(_PROVIDER_CODES[error.code], message, extra)
    if error.code == "resource_missing":
        return _details(_missing_resource_code(error), message, extra)

    if isinstance(error, stripe.RateLimitError):
        return _details(PaymentErrorCode.RATE_LIMIT, message, extra)
    if isinstance(error, stripe.APIConnectionError):
        return _details(PaymentErrorCode.NETWORK_ERROR, message, extra)
    if isinstance(error, stripe.AuthenticationError | stripe.PermissionError):
        return _details(PaymentErrorCode.AUTHENTICATION_ERROR, message, extra)
    if isinstance(error, stripe.APIError):
        return _details(PaymentErrorCode.PROCESSING_ERROR, message, extra)

    return _details(PaymentErrorCode.UNKNOWN, message, extra)


def _classify_mapping(error: Mapping[str, Any]) -> PaymentErrorDetails:
    raw_code = error.get("code")
    message = error.get("message")
    if isinstance(raw_code, str):
        try:
            code = PaymentErrorCode(raw_code)
        except ValueError:
            code = _PROVIDER_CODES.get(raw_code, PaymentErrorCode.UNKNOWN)
        if code in _RULES:
            return _details(code, message, {"provider_code": raw_code})
    return _details(PaymentErrorCode.UNKNOWN, message)


def _classify(error: Any) -> PaymentErrorDetails:
    if isinstance(error, PaymentErrorDetails):
        return error

    to_payment_error = getattr(error, "to_payment_error", None)
    if callable(to_payment_error):
        return to_payment_error()

    if isinstance(error, stripe.StripeError):
        return _classify_stripe(error)

    if isinstance(error, WayfareException):
        return PaymentErrorDetails(
            code=PaymentErrorCode.UNKNOWN,
            message=error.message,
            user_message=error.user_message,
            severity=ErrorSeverity.ERROR,
            recommended_action=RecommendedAction.CONTACT_SUPPORT,
            details=error.details or None,
        )

    # TimeoutError subclasses OSError, so timeouts are checked first
    if isinstance(error, TimeoutError | httpx.TimeoutException):
        return _details(PaymentErrorCode.TIMEOUT_ERROR, str(error) or "Request timed out")
    if isinstance(error, ConnectionError | httpx.NetworkError):
        return _details(PaymentErrorCode.NETWORK_ERROR, str(error) or "Connection failed")

    if isinstance(error, Mapping):
        return _classify_mapping(error)

    errno_code = getattr(error, "code", None)
    if isinstance(errno_code, str) and errno_code in _PROVIDER_CODES:
        return _details(_PROVIDER_CODES[errno_code], str(error))

    if isinstance(error, OSError):
        return _details(PaymentErrorCode.NETWORK_ERROR, str(error))

    return _details(PaymentErrorCode.UNKNOWN, str(error) if error is not None else None)


def classify(error: Any) -> PaymentErrorDetails:
    """Classify any failure into the closed error taxonomy.

    Args:
        error: Raised exception, error mapping, or already classified details

    Returns:
        Classified error details. Unrecognized input classifies as UNKNOWN.
    """
    try:
        return _classify(error)
    except Exception as exc:  # the classifier is total by contract
        logger.warning(
            "error_classification_failed",
            error_type=type(error).__name__,
            classifier_error=str(exc),
        )
        return _details(PaymentErrorCode.UNKNOWN, "Unknown error occurred")


def is_retryable_error(error: Any) -> bool:
    """Whether the classified action for ``error`` is retry."""
    return classify(error).recommended_action is RecommendedAction.RETRY


def get_error_message(error: Any) -> str:
    """User-facing message for ``error``."""
    return classify(error).user_message


def get_error_action(error: Any) -> RecommendedAction:
    """Recommended action for ``error``."""
    return classify(error).recommended_action


def validate_payment_amount(amount: int, currency: str = "usd") -> None:
    """Check a charge or refund amount against provider limits.

    Args:
        amount: Amount in minor units
        currency: ISO currency code

    Raises:
        ValidationError: If the amount or currency is not accepted
    """
    if amount < MIN_PAYMENT_AMOUNT:
        raise ValidationError(
            "Amount is below minimum",
            field="amount",
            value=amount,
            user_message="Payment amount is too small. Minimum is $0.50.",
        )
    if amount > MAX_PAYMENT_AMOUNT:
        raise ValidationError(
            "Amount exceeds maximum",
            field="amount",
            value=amount,
            user_message="Payment amount is too large. Please contact support for large payments.",
        )
    if currency.lower() not in SUPPORTED_CURRENCIES:
        raise ValidationError(
            "Currency not supported",
            field="currency",
            value=currency,
            user_message="This currency is not supported. Please contact support.",
        )
