"""Exponential backoff for provider mutations.

Every provider-mutating call runs through ``RetryExecutor.execute``. A failure
is classified; only errors whose recommended action is ``retry`` are tried
again, with a delay of ``min(base_delay * 2 ** (attempt - 1), max_delay)``
seconds and no jitter. The backoff suspends only the calling task.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from wayfare.billing.exceptions import BillingError
from wayfare.billing.payment_errors import ErrorClassifier, classify
from wayfare.billing.schemas import BillingResult
from wayfare.core.config import Settings
from wayfare.core.logging import LoggerMixin
from wayfare.core.metrics import track_retry

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts, including the first.
        base_delay: Delay in seconds before the second attempt.
        max_delay: Upper bound of any single delay in seconds.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays cannot be negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


@dataclass(frozen=True)
class OperationContext:
    """Identifies a provider call in logs and metrics."""

    operation: str
    subscriber_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


class RetryExecutor(LoggerMixin):
    """Runs provider calls under a retry policy."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        classifier: ErrorClassifier = classify,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            policy: Attempt ceiling and backoff delays
            classifier: Maps a raised error to its classified details
            sleep: Coroutine used to wait between attempts
        """
        self.policy = policy or RetryPolicy()
        self.classifier = classifier
        self._sleep = sleep

    def _should_retry(self, error: BaseException) -> bool:
        # Engine errors are final, including concurrency conflicts which the
        # caller resolves by re-reading the record.
        if isinstance(error, BillingError):
            return False
        return self.classifier(error).is_retryable

    def _before_sleep(self, context: OperationContext) -> Callable[[RetryCallState], None]:
        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            details = self.classifier(error)
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            track_retry(context.operation, details.code.value)
            self.logger.warning(
                "payment_operation_retry",
                operation=context.operation,
                subscriber_id=context.subscriber_id,
                attempt=retry_state.attempt_number,
                max_attempts=self.policy.max_attempts,
                delay_seconds=delay,
                code=details.code.value,
                error=details.message,
            )

        return log_retry

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        context: OperationContext,
    ) -> T:
        """Run ``operation`` until it succeeds or retrying stops.

        Args:
            operation: Zero-argument coroutine function performing one call
            context: Operation name and subscriber for logs

        Returns:
            The operation's result.

        Raises:
            Exception: The original error of the last attempt, after logging
                ``payment_operation_failed``.
        """
        attempt_number = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.policy.max_attempts),
                wait=wait_exponential(
                    multiplier=self.policy.base_delay,
                    max=self.policy.max_delay,
                    exp_base=2,
                ),
                retry=retry_if_exception(self._should_retry),
                before_sleep=self._before_sleep(context),
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    return await operation()
        except Exception as exc:
            details = self.classifier(exc)
            self.logger.error(
                "payment_operation_failed",
                operation=context.operation,
                subscriber_id=context.subscriber_id,
                attempt=attempt_number,
                max_attempts=self.policy.max_attempts,
                code=details.code.value,
                severity=details.severity.value,
                error=details.message,
                metadata=dict(context.metadata) or None,
            )
            raise

        # Unreachable: the loop either returns or raises
        raise RuntimeError("Retry loop exited unexpectedly")

    async def try_execute(
        self,
        operation: Callable[[], Awaitable[T]],
        context: OperationContext,
    ) -> BillingResult[T]:
        """Like ``execute`` but returns the classified failure as a value."""
        try:
            return BillingResult.ok(await self.execute(operation, context))
        except Exception as exc:
            return BillingResult.fail(self.classifier(exc))
