"""Typed state transitions for subscription records.

These functions are the only code that writes ``SubscriptionRecord`` fields.
Each one names the fields it changes, checks the status edge against
``ALLOWED_TRANSITIONS`` and advances ``updated_at`` strictly.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from wayfare.billing.exceptions import InvalidTransitionError
from wayfare.billing.models import SubscriptionRecord, SubscriptionStatus
from wayfare.billing.tiers import LOWEST_TIER, BillingInterval, SubscriptionTier

S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.NONE: frozenset({S.TRIALING, S.ACTIVE, S.INCOMPLETE}),
    S.TRIALING: frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE, S.INCOMPLETE, S.CANCELED}),
    S.ACTIVE: frozenset({S.ACTIVE, S.PAST_DUE, S.INCOMPLETE, S.CANCELED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.PAST_DUE, S.INCOMPLETE, S.CANCELED}),
    S.INCOMPLETE: frozenset({S.ACTIVE, S.PAST_DUE, S.INCOMPLETE, S.CANCELED}),
    S.CANCELED: frozenset({S.CANCELED}),
}

# Edges that only reactivate() may take
REACTIVATION_TRANSITIONS: frozenset[tuple[SubscriptionStatus, SubscriptionStatus]] = frozenset(
    {(S.CANCELED, S.ACTIVE), (S.CANCELED, S.TRIALING)}
)

_PROVIDER_STATUSES: dict[str, SubscriptionStatus] = {
    "trialing": S.TRIALING,
    "active": S.ACTIVE,
    "past_due": S.PAST_DUE,
    "unpaid": S.PAST_DUE,
    "paused": S.PAST_DUE,
    "incomplete": S.INCOMPLETE,
    "incomplete_expired": S.CANCELED,
    "canceled": S.CANCELED,
}

_TICK = timedelta(microseconds=1)


def status_from_provider(value: str) -> SubscriptionStatus:
    """Map a provider subscription status onto the local status set."""
    try:
        return _PROVIDER_STATUSES[value]
    except KeyError:
        raise InvalidTransitionError(
            f"Unknown provider subscription status: {value}",
            details={"provider_status": value},
        ) from None


def can_transition(
    current: SubscriptionStatus,
    target: SubscriptionStatus,
    *,
    reactivation: bool = False,
) -> bool:
    if target in ALLOWED_TRANSITIONS[current]:
        return True
    return reactivation and (current, target) in REACTIVATION_TRANSITIONS


def _move(
    record: SubscriptionRecord,
    target: SubscriptionStatus,
    *,
    reactivation: bool = False,
) -> None:
    if not can_transition(record.status, target, reactivation=reactivation):
        raise InvalidTransitionError(current=record.status.value, target=target.value)
    record.status = target


def _touch(record: SubscriptionRecord, now: datetime) -> None:
    previous = record.updated_at
    if previous is not None and now <= previous:
        now = previous + _TICK
    record.updated_at = now


def _clear_pending(record: SubscriptionRecord) -> None:
    record.pending_tier = None
    record.pending_interval = None
    record.pending_effective_at = None
    record.provider_schedule_id = None


def open_subscription(
    *,
    subscriber_id: str,
    customer_id: str | None,
    provider_subscription_id: str,
    tier: SubscriptionTier,
    interval: BillingInterval,
    status: SubscriptionStatus,
    period_start: datetime | None,
    period_end: datetime | None,
    now: datetime,
) -> SubscriptionRecord:
    """Build the record for a newly created provider subscription."""
    if not can_transition(S.NONE, status):
        raise InvalidTransitionError(current=S.NONE.value, target=status.value)
    return SubscriptionRecord(
        subscriber_id=subscriber_id,
        provider_customer_id=customer_id,
        provider_subscription_id=provider_subscription_id,
        tier=tier,
        interval=interval,
        status=status,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=False,
        created_at=now,
        updated_at=now,
    )


def change_tier(
    record: SubscriptionRecord,
    *,
    tier: SubscriptionTier,
    interval: BillingInterval,
    status: SubscriptionStatus,
    period_start: datetime | None,
    period_end: datetime | None,
    now: datetime,
) -> None:
    """Apply a confirmed tier change. Writes tier, interval, status, period and pending fields."""
    _move(record, status)
    record.tier = tier
    record.interval = interval
    record.current_period_start = period_start
    record.current_period_end = period_end
    _clear_pending(record)
    _touch(record, now)


def schedule_tier_change(
    record: SubscriptionRecord,
    *,
    tier: SubscriptionTier,
    interval: BillingInterval,
    effective_at: datetime | None,
    schedule_id: str,
    now: datetime,
) -> None:
    """Record a deferred tier change. Writes pending fields only."""
    if not record.is_live:
        raise InvalidTransitionError(
            "Only a live subscription can schedule a plan change",
            details={"current_status": record.status.value},
        )
    record.pending_tier = tier
    record.pending_interval = interval
    record.pending_effective_at = effective_at
    record.provider_schedule_id = schedule_id
    _touch(record, now)


def set_cancel_at_period_end(record: SubscriptionRecord, *, now: datetime) -> None:
    """Flag the subscription to end with the current period. Writes the flag and pending fields."""
    if not record.is_live:
        raise InvalidTransitionError(
            "Only a live subscription can be canceled at period end",
            details={"current_status": record.status.value},
        )
    record.cancel_at_period_end = True
    _clear_pending(record)
    _touch(record, now)


def cancel_now(record: SubscriptionRecord, *, canceled_at: datetime, now: datetime) -> None:
    """End the subscription and demote entitlement to the lowest tier."""
    _move(record, S.CANCELED)
    record.tier = LOWEST_TIER
    record.cancel_at_period_end = False
    record.canceled_at = canceled_at
    _clear_pending(record)
    _touch(record, now)


def ensure_reactivatable(record: SubscriptionRecord, *, now: datetime) -> None:
    """Raise unless a period-end cancellation can still be undone."""
    if not record.cancel_at_period_end:
        raise InvalidTransitionError(
            "Subscription is not scheduled for cancellation",
            details={"current_status": record.status.value},
        )
    if record.current_period_end is not None and now >= record.current_period_end:
        raise InvalidTransitionError(
            "Subscription period has already ended",
            details={"current_period_end": record.current_period_end.isoformat()},
        )


def reactivate(
    record: SubscriptionRecord,
    *,
    status: SubscriptionStatus,
    now: datetime,
) -> None:
    """Undo a pending period-end cancellation. Writes the flag and status."""
    ensure_reactivatable(record, now=now)
    _move(record, status, reactivation=True)
    record.cancel_at_period_end = False
    record.canceled_at = None
    _touch(record, now)


def set_status(record: SubscriptionRecord, status: SubscriptionStatus, *, now: datetime) -> None:
    """Payment-driven status change, e.g. past_due after a failed invoice."""
    _move(record, status)
    _touch(record, now)


def sync_from_provider(
    record: SubscriptionRecord,
    *,
    status: SubscriptionStatus,
    tier: SubscriptionTier,
    interval: BillingInterval,
    period_start: datetime | None,
    period_end: datetime | None,
    cancel_at_period_end: bool,
    now: datetime,
) -> bool:
    """Reconcile the record with the provider's view of the subscription.

    A pending change is settled once the provider reports its tier and
    interval. Cancellation goes through ``cancel_now`` so entitlement is
    demoted the same way as a user cancellation.

    Returns:
        True if a pending tier change was applied.
    """
    if status is S.CANCELED:
        cancel_now(record, canceled_at=record.canceled_at or now, now=now)
        return False

    _move(record, status)
    applied = record.pending_tier is tier and record.pending_interval in (None, interval)
    record.tier = tier
    record.interval = interval
    if period_start is not None:
        record.current_period_start = period_start
    if period_end is not None:
        record.current_period_end = period_end
    record.cancel_at_period_end = cancel_at_period_end
    if applied:
        _clear_pending(record)
    _touch(record, now)
    return applied
