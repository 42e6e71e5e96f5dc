"""Tests for subscription state transitions."""

from datetime import timedelta

import pytest

from wayfare.billing import transitions
from wayfare.billing.exceptions import InvalidTransitionError
from wayfare.billing.models import SubscriptionStatus
from wayfare.billing.tiers import BillingInterval, SubscriptionTier
from wayfare.models.base import utcnow

S = SubscriptionStatus


def _record(status: SubscriptionStatus = S.ACTIVE, tier: SubscriptionTier = SubscriptionTier.TRAVELER):
    now = utcnow()
    return transitions.open_subscription(
        subscriber_id="user-1",
        customer_id="cus_1",
        provider_subscription_id="sub_1",
        tier=tier,
        interval=BillingInterval.MONTHLY,
        status=status,
        period_start=now,
        period_end=now + timedelta(days=30),
        now=now,
    )


class TestTransitionTable:
    """Tests for the allowed status edges."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (S.NONE, S.ACTIVE),
            (S.TRIALING, S.ACTIVE),
            (S.ACTIVE, S.PAST_DUE),
            (S.PAST_DUE, S.ACTIVE),
            (S.INCOMPLETE, S.ACTIVE),
            (S.ACTIVE, S.CANCELED),
        ],
    )
    def test_allowed(self, current: SubscriptionStatus, target: SubscriptionStatus) -> None:
        """Test ordinary lifecycle edges are allowed."""
        assert transitions.can_transition(current, target)

    @pytest.mark.parametrize("target", [S.ACTIVE, S.TRIALING, S.PAST_DUE, S.INCOMPLETE])
    def test_canceled_is_terminal(self, target: SubscriptionStatus) -> None:
        """Test nothing leaves canceled outside reactivation."""
        assert not transitions.can_transition(S.CANCELED, target)

    def test_reactivation_edge(self) -> None:
        """Test only reactivation may leave canceled."""
        assert transitions.can_transition(S.CANCELED, S.ACTIVE, reactivation=True)
        assert not transitions.can_transition(S.CANCELED, S.PAST_DUE, reactivation=True)

    def test_trialing_not_reentered(self) -> None:
        """Test an active subscription cannot go back to trialing."""
        assert not transitions.can_transition(S.ACTIVE, S.TRIALING)

    @pytest.mark.parametrize(
        ("provider_status", "expected"),
        [
            ("active", S.ACTIVE),
            ("unpaid", S.PAST_DUE),
            ("incomplete_expired", S.CANCELED),
            ("trialing", S.TRIALING),
        ],
    )
    def test_status_from_provider(self, provider_status: str, expected: SubscriptionStatus) -> None:
        """Test provider statuses map onto the local set."""
        assert transitions.status_from_provider(provider_status) is expected

    def test_unknown_provider_status(self) -> None:
        """Test an unknown provider status is rejected."""
        with pytest.raises(InvalidTransitionError):
            transitions.status_from_provider("frozen")


class TestRecordTransitions:
    """Tests for functions that write record fields."""

    def test_open_rejects_canceled(self) -> None:
        """Test a new record must start live."""
        with pytest.raises(InvalidTransitionError):
            _record(status=S.CANCELED)

    def test_updated_at_strictly_increases(self) -> None:
        """Test updated_at advances even when the clock does not."""
        record = _record()
        stamp = record.updated_at

        transitions.set_status(record, S.PAST_DUE, now=stamp)
        transitions.set_status(record, S.ACTIVE, now=stamp - timedelta(seconds=5))

        assert record.updated_at > stamp + timedelta(microseconds=1)

    def test_cancel_now_demotes(self) -> None:
        """Test an immediate cancellation demotes entitlement."""
        record = _record()
        now = utcnow()

        transitions.cancel_now(record, canceled_at=now, now=now)

        assert record.status is S.CANCELED
        assert record.tier is SubscriptionTier.FREE
        assert record.canceled_at == now

    def test_cancel_at_period_end_clears_pending(self) -> None:
        """Test a period-end cancellation drops a scheduled change."""
        record = _record()
        now = utcnow()
        transitions.schedule_tier_change(
            record,
            tier=SubscriptionTier.EXPLORER,
            interval=BillingInterval.MONTHLY,
            effective_at=record.current_period_end,
            schedule_id="sub_sched_1",
            now=now,
        )

        transitions.set_cancel_at_period_end(record, now=now)

        assert record.cancel_at_period_end is True
        assert record.pending_tier is None
        assert record.provider_schedule_id is None

    def test_reactivate(self) -> None:
        """Test reactivation clears the cancellation flag."""
        record = _record()
        transitions.set_cancel_at_period_end(record, now=utcnow())

        transitions.reactivate(record, status=S.ACTIVE, now=utcnow())

        assert record.cancel_at_period_end is False

    def test_reactivate_after_period_end(self) -> None:
        """Test a lapsed period cannot be reactivated."""
        record = _record()
        transitions.set_cancel_at_period_end(record, now=utcnow())

        with pytest.raises(InvalidTransitionError):
            transitions.ensure_reactivatable(record, now=record.current_period_end)

    def test_sync_applies_matching_pending_change(self) -> None:
        """Test the provider confirming the pending tier settles it."""
        record = _record()
        now = utcnow()
        transitions.schedule_tier_change(
            record,
            tier=SubscriptionTier.EXPLORER,
            interval=BillingInterval.MONTHLY,
            effective_at=record.current_period_end,
            schedule_id="sub_sched_1",
            now=now,
        )

        applied = transitions.sync_from_provider(
            record,
            status=S.ACTIVE,
            tier=SubscriptionTier.EXPLORER,
            interval=BillingInterval.MONTHLY,
            period_start=None,
            period_end=None,
            cancel_at_period_end=False,
            now=now,
        )

        assert applied
        assert record.tier is SubscriptionTier.EXPLORER
        assert record.pending_tier is None
        assert record.current_period_end is not None

    def test_sync_canceled_demotes(self) -> None:
        """Test a canceled provider status goes through cancellation."""
        record = _record()

        applied = transitions.sync_from_provider(
            record,
            status=S.CANCELED,
            tier=SubscriptionTier.TRAVELER,
            interval=BillingInterval.MONTHLY,
            period_start=None,
            period_end=None,
            cancel_at_period_end=False,
            now=utcnow(),
        )

        assert not applied
        assert record.status is S.CANCELED
        assert record.tier is SubscriptionTier.FREE
