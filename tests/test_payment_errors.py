"""Tests for payment error classification."""

import asyncio

import httpx
import pytest
import stripe

from wayfare.billing.exceptions import (
    ActiveSubscriptionExistsError,
    ConcurrencyConflictError,
    ErrorSeverity,
    PaymentErrorCode,
    RecommendedAction,
)
from wayfare.billing.payment_errors import (
    classify,
    get_error_action,
    get_error_message,
    is_retryable_error,
    validate_payment_amount,
)
from wayfare.core.exceptions import ValidationError


class TestStripeErrors:
    """Tests for classifying Stripe exceptions."""

    def test_card_declined(self) -> None:
        """Test a plain decline asks for a new payment method."""
        error = stripe.CardError("Your card was declined.", None, "card_declined")
        details = classify(error)
        assert details.code is PaymentErrorCode.CARD_DECLINED
        assert details.recommended_action is RecommendedAction.UPDATE_PAYMENT_METHOD
        assert details.severity is ErrorSeverity.ERROR
        assert details.user_message == "Your card was declined. Please try a different payment method."

    def test_decline_code_takes_precedence(self) -> None:
        """Test the decline code refines a card_declined error."""
        error = stripe.CardError(
            "Your card has insufficient funds.",
            None,
            "card_declined",
            json_body={
                "error": {
                    "type": "card_error",
                    "code": "card_declined",
                    "decline_code": "insufficient_funds",
                    "message": "Your card has insufficient funds.",
                }
            },
        )
        assert classify(error).code is PaymentErrorCode.INSUFFICIENT_FUNDS

    @pytest.mark.parametrize(
        ("code", "expected", "action"),
        [
            ("expired_card", PaymentErrorCode.EXPIRED_CARD, RecommendedAction.UPDATE_PAYMENT_METHOD),
            ("incorrect_cvc", PaymentErrorCode.INCORRECT_CVC, RecommendedAction.RETRY),
            ("processing_error", PaymentErrorCode.PROCESSING_ERROR, RecommendedAction.RETRY),
            (
                "payment_intent_authentication_failure",
                PaymentErrorCode.AUTHENTICATION_FAILURE,
                RecommendedAction.RETRY,
            ),
        ],
    )
    def test_card_error_codes(
        self, code: str, expected: PaymentErrorCode, action: RecommendedAction
    ) -> None:
        """Test card error codes map onto the taxonomy."""
        details = classify(stripe.CardError("failed", None, code))
        assert details.code is expected
        assert details.recommended_action is action

    def test_rate_limit_is_warning(self) -> None:
        """Test rate limiting is a retryable warning."""
        details = classify(stripe.RateLimitError("Too many requests"))
        assert details.code is PaymentErrorCode.RATE_LIMIT
        assert details.severity is ErrorSeverity.WARNING
        assert details.is_retryable

    def test_connection_error(self) -> None:
        """Test connection failures are network errors."""
        details = classify(stripe.APIConnectionError("Could not connect"))
        assert details.code is PaymentErrorCode.NETWORK_ERROR
        assert details.is_retryable

    def test_authentication_error(self) -> None:
        """Test bad credentials need support, not retries."""
        details = classify(stripe.AuthenticationError("Invalid API key"))
        assert details.code is PaymentErrorCode.AUTHENTICATION_ERROR
        assert details.recommended_action is RecommendedAction.CONTACT_SUPPORT

    def test_api_error_is_processing_error(self) -> None:
        """Test provider-side failures are retryable processing errors."""
        details = classify(stripe.APIError("Something went wrong"))
        assert details.code is PaymentErrorCode.PROCESSING_ERROR
        assert details.is_retryable

    @pytest.mark.parametrize(
        ("param", "message", "expected"),
        [
            ("customer", "No such customer: 'cus_1'", PaymentErrorCode.CUSTOMER_NOT_FOUND),
            ("subscription", "No such subscription: 'sub_1'", PaymentErrorCode.SUBSCRIPTION_NOT_FOUND),
            (None, "No such invoice: 'in_1'", PaymentErrorCode.INVOICE_NOT_FOUND),
        ],
    )
    def test_missing_resources(
        self, param: str | None, message: str, expected: PaymentErrorCode
    ) -> None:
        """Test resource_missing is resolved by param, then by message."""
        error = stripe.InvalidRequestError(message, param, code="resource_missing")
        assert classify(error).code is expected

    def test_unrecognized_code_is_unknown(self) -> None:
        """Test unknown provider codes fall back to UNKNOWN."""
        error = stripe.InvalidRequestError("Bad parameter", "foo", code="parameter_unknown")
        details = classify(error)
        assert details.code is PaymentErrorCode.UNKNOWN
        assert details.recommended_action is RecommendedAction.CONTACT_SUPPORT
        assert details.details == {"provider_code": "parameter_unknown"}


class TestOtherErrors:
    """Tests for classifying non-provider failures."""

    def test_asyncio_timeout(self) -> None:
        """Test timeouts classify as TIMEOUT_ERROR."""
        assert classify(asyncio.TimeoutError()).code is PaymentErrorCode.TIMEOUT_ERROR
        assert classify(httpx.ReadTimeout("slow")).code is PaymentErrorCode.TIMEOUT_ERROR

    def test_connection_errors(self) -> None:
        """Test socket and httpx network failures classify as NETWORK_ERROR."""
        assert classify(ConnectionRefusedError("refused")).code is PaymentErrorCode.NETWORK_ERROR
        assert classify(httpx.ConnectError("down")).code is PaymentErrorCode.NETWORK_ERROR

    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            ("ENOTFOUND", PaymentErrorCode.NETWORK_ERROR),
            ("ECONNREFUSED", PaymentErrorCode.NETWORK_ERROR),
            ("ETIMEDOUT", PaymentErrorCode.TIMEOUT_ERROR),
            ("card_declined", PaymentErrorCode.CARD_DECLINED),
            ("CARD_DECLINED", PaymentErrorCode.CARD_DECLINED),
            ("something_else", PaymentErrorCode.UNKNOWN),
        ],
    )
    def test_error_mappings(self, code: str, expected: PaymentErrorCode) -> None:
        """Test error-shaped mappings classify by their code."""
        assert classify({"code": code, "message": "boom"}).code is expected

    def test_errno_style_attribute(self) -> None:
        """Test exceptions carrying an errno-style string code."""

        class LookupFailed(Exception):
            code = "ENOTFOUND"

        assert classify(LookupFailed("getaddrinfo failed")).code is PaymentErrorCode.NETWORK_ERROR

    def test_engine_errors_render_themselves(self) -> None:
        """Test engine errors keep their own code and action."""
        details = classify(ActiveSubscriptionExistsError())
        assert details.code is PaymentErrorCode.ACTIVE_SUBSCRIPTION_EXISTS
        assert details.recommended_action is RecommendedAction.CONTACT_SUPPORT

        conflict = classify(ConcurrencyConflictError())
        assert conflict.code is PaymentErrorCode.CONCURRENCY_CONFLICT
        assert conflict.recommended_action is RecommendedAction.RETRY

    def test_project_exception_keeps_user_message(self) -> None:
        """Test other project exceptions keep their user message."""
        error = ValidationError("bad amount", user_message="Amount is too small")
        details = classify(error)
        assert details.code is PaymentErrorCode.UNKNOWN
        assert details.user_message == "Amount is too small"

    @pytest.mark.parametrize("error", [ValueError("x"), None, "text", 42, object()])
    def test_classifier_is_total(self, error: object) -> None:
        """Test anything else classifies as UNKNOWN without raising."""
        details = classify(error)
        assert details.code is PaymentErrorCode.UNKNOWN
        assert details.recommended_action is RecommendedAction.CONTACT_SUPPORT
        assert details.severity is ErrorSeverity.ERROR

    def test_helpers(self) -> None:
        """Test the convenience accessors agree with classify."""
        error = stripe.RateLimitError("slow down")
        assert is_retryable_error(error)
        assert get_error_action(error) is RecommendedAction.RETRY
        assert get_error_message(error).startswith("Too many requests")
        assert not is_retryable_error(stripe.CardError("no", None, "expired_card"))


class TestValidatePaymentAmount:
    """Tests for amount and currency validation."""

    def test_valid_amount(self) -> None:
        """Test amounts within limits pass."""
        validate_payment_amount(50)
        validate_payment_amount(99_999_999, "EUR")

    def test_amount_too_small(self) -> None:
        """Test amounts below 50 cents are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            validate_payment_amount(49)
        assert exc_info.value.details["field"] == "amount"

    def test_amount_too_large(self) -> None:
        """Test amounts above the provider maximum are rejected."""
        with pytest.raises(ValidationError):
            validate_payment_amount(100_000_000)

    def test_unsupported_currency(self) -> None:
        """Test currencies outside the supported set are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            validate_payment_amount(1000, "jpy")
        assert exc_info.value.details["field"] == "currency"
