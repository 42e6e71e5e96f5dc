"""Prometheus metrics for the billing engine."""

from collections.abc import Iterator
from contextlib import contextmanager
from time import perf_counter

from prometheus_client import Counter, Histogram

billing_operations_total = Counter(
    "wayfare_billing_operations_total",
    "Subscription lifecycle operations by outcome",
    ["operation", "outcome"],
)

billing_retry_attempts_total = Counter(
    "wayfare_billing_retry_attempts_total",
    "Failed provider attempts that were scheduled for another try",
    ["operation", "code"],
)

webhook_events_total = Counter(
    "wayfare_webhook_events_total",
    "Provider webhook deliveries by ingestion outcome",
    ["event_type", "outcome"],
)

dunning_escalations_total = Counter(
    "wayfare_dunning_escalations_total",
    "Webhook-driven payment retries that could not recover the invoice",
)

provider_call_latency_seconds = Histogram(
    "wayfare_provider_call_latency_seconds",
    "Latency of payment provider calls in seconds",
    ["call"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0),
)


def track_operation(operation: str, outcome: str) -> None:
    """Count a finished lifecycle operation.

    Args:
        operation: Operation name (e.g., 'upgrade', 'cancel')
        outcome: 'success' or the classified error code
    """
    billing_operations_total.labels(operation=operation, outcome=outcome).inc()


def track_retry(operation: str, code: str) -> None:
    """Count a retry scheduled by the retry executor."""
    billing_retry_attempts_total.labels(operation=operation, code=code).inc()


def track_webhook(event_type: str, outcome: str) -> None:
    """Count a webhook ingestion outcome."""
    webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()


@contextmanager
def time_provider_call(call: str) -> Iterator[None]:
    """Context manager to time a provider call.

    Args:
        call: Provider operation name (e.g., 'subscriptions.update')

    Yields:
        None
    """
    start = perf_counter()
    try:
        yield
    finally:
        provider_call_latency_seconds.labels(call=call).observe(perf_counter() - start)
