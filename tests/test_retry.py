"""Tests for the retry executor."""

import pytest
import stripe

from wayfare.billing.exceptions import ConcurrencyConflictError, PaymentErrorCode
from wayfare.billing.retry import OperationContext, RetryExecutor, RetryPolicy
from wayfare.core.config import Settings


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_default_policy(self) -> None:
        """Test default retry configuration."""
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.base_delay == 1.0
        assert policy.max_delay == 10.0

    def test_delays_double_and_cap(self) -> None:
        """Test the delay sequence doubles up to the cap."""
        policy = RetryPolicy(max_attempts=6, base_delay=1.0, max_delay=10.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_invalid_policy(self) -> None:
        """Test a policy must allow one attempt."""
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_from_settings(self) -> None:
        """Test the policy reads the retry settings."""
        settings = Settings(retry_max_attempts=5, retry_base_delay_seconds=0.5, retry_max_delay_seconds=4)
        policy = RetryPolicy.from_settings(settings)
        assert policy == RetryPolicy(max_attempts=5, base_delay=0.5, max_delay=4.0)


class TestRetryExecutor:
    """Tests for RetryExecutor."""

    @pytest.fixture
    def sleeps(self) -> list[float]:
        return []

    @pytest.fixture
    def executor(self, sleeps: list[float]) -> RetryExecutor:
        async def record_sleep(delay: float) -> None:
            sleeps.append(delay)

        return RetryExecutor(RetryPolicy(max_attempts=3), sleep=record_sleep)

    @pytest.fixture
    def context(self) -> OperationContext:
        return OperationContext("subscription.update", "user-1")

    @pytest.mark.asyncio
    async def test_success_first_try(
        self, executor: RetryExecutor, context: OperationContext, sleeps: list[float]
    ) -> None:
        """Test a successful call runs once without waiting."""
        calls = 0

        async def operation() -> str:
            nonlocal calls
            calls += 1
            return "ok"

        assert await executor.execute(operation, context) == "ok"
        assert calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_retries_transient_errors(
        self, executor: RetryExecutor, context: OperationContext, sleeps: list[float]
    ) -> None:
        """Test retryable errors are retried with exponential backoff."""
        calls = 0

        async def operation() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise stripe.APIConnectionError("connection reset")
            return "ok"

        assert await executor.execute(operation, context) == "ok"
        assert calls == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(
        self, executor: RetryExecutor, context: OperationContext, sleeps: list[float]
    ) -> None:
        """Test the original error surfaces once attempts run out."""
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            raise stripe.RateLimitError("slow down")

        with pytest.raises(stripe.RateLimitError):
            await executor.execute(operation, context)
        assert calls == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_fails_fast(
        self, executor: RetryExecutor, context: OperationContext, sleeps: list[float]
    ) -> None:
        """Test declines are not retried."""
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            raise stripe.CardError("declined", None, "card_declined")

        with pytest.raises(stripe.CardError):
            await executor.execute(operation, context)
        assert calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_engine_errors_are_final(
        self, executor: RetryExecutor, context: OperationContext
    ) -> None:
        """Test engine errors are never retried even when their action is retry."""
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            raise ConcurrencyConflictError()

        with pytest.raises(ConcurrencyConflictError):
            await executor.execute(operation, context)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_try_execute_returns_classified_failure(
        self, executor: RetryExecutor, context: OperationContext
    ) -> None:
        """Test try_execute converts the final failure to a value."""

        async def operation() -> None:
            raise stripe.CardError("expired", None, "expired_card")

        result = await executor.try_execute(operation, context)
        assert not result.success
        assert result.data is None
        assert result.error is not None
        assert result.error.code is PaymentErrorCode.EXPIRED_CARD

    @pytest.mark.asyncio
    async def test_delay_capped(self, context: OperationContext) -> None:
        """Test no single delay exceeds the cap."""
        sleeps: list[float] = []

        async def record_sleep(delay: float) -> None:
            sleeps.append(delay)

        executor = RetryExecutor(
            RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=5.0), sleep=record_sleep
        )

        async def operation() -> None:
            raise TimeoutError()

        with pytest.raises(TimeoutError):
            await executor.execute(operation, context)
        assert sleeps == [2.0, 4.0, 5.0, 5.0]
