"""Tests for subscription lifecycle operations."""

from __future__ import annotations

import pytest
import stripe
from fixtures.fake_provider import FakeBillingProvider
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wayfare.billing import transitions
from wayfare.billing.exceptions import PaymentErrorCode
from wayfare.billing.models import PaymentAttemptStatus, SubscriptionStatus
from wayfare.billing.repository import BillingRepository
from wayfare.billing.service import BillingEngine
from wayfare.billing.tiers import BillingInterval, SubscriptionTier, TierCatalog
from wayfare.core.database import session_scope
from wayfare.models.base import utcnow

MONTHLY = BillingInterval.MONTHLY
YEARLY = BillingInterval.YEARLY


async def _force_status(
    session_factory: async_sessionmaker[AsyncSession],
    subscriber_id: str,
    status: SubscriptionStatus,
) -> None:
    async with session_scope(session_factory) as session:
        record = await BillingRepository(session).get_live_record(subscriber_id)
        assert record is not None
        transitions.set_status(record, status, now=utcnow())


class TestCreate:
    """Tests for starting a subscription."""

    @pytest.mark.asyncio
    async def test_create_subscription(
        self, billing: BillingEngine, provider: FakeBillingProvider, records
    ) -> None:
        """Test a new subscription is mirrored locally with its first payment."""
        result = await billing.create("user-1", SubscriptionTier.EXPLORER, MONTHLY)

        assert result.success
        assert not result.deferred
        subscription = result.data
        assert subscription.tier is SubscriptionTier.EXPLORER
        assert subscription.interval is MONTHLY
        assert subscription.status is SubscriptionStatus.ACTIVE
        assert subscription.provider_subscription_id in provider.subscriptions
        assert subscription.current_period_end == provider.period_end
        assert subscription.cancel_at_period_end is False

        provider_subscription = provider.subscriptions[subscription.provider_subscription_id]
        assert provider_subscription["metadata"] == {
            "subscriber_id": "user-1",
            "tier": "explorer",
            "interval": "monthly",
        }

        attempts = await records.attempts()
        assert len(attempts) == 1
        assert attempts[0].amount == 999
        assert attempts[0].status is PaymentAttemptStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_create_with_trial(self, billing: BillingEngine, records) -> None:
        """Test a trial starts trialing and charges nothing."""
        result = await billing.create("user-1", "traveler", MONTHLY, trial_days=14)

        assert result.success
        assert result.data.status is SubscriptionStatus.TRIALING
        assert await records.attempts() == []

    @pytest.mark.asyncio
    async def test_create_incomplete(
        self, billing: BillingEngine, provider: FakeBillingProvider, records
    ) -> None:
        """Test an unpaid first invoice leaves the subscription incomplete."""
        provider.subscription_status = "incomplete"

        result = await billing.create("user-1", "explorer", MONTHLY)

        assert result.success
        assert result.data.status is SubscriptionStatus.INCOMPLETE
        attempts = await records.attempts()
        assert [a.status for a in attempts] == [PaymentAttemptStatus.FAILED]

    @pytest.mark.asyncio
    async def test_rejects_second_live_subscription(
        self, billing: BillingEngine, provider: FakeBillingProvider, subscribed: str
    ) -> None:
        """Test a subscriber can hold only one live subscription."""
        result = await billing.create(subscribed, "traveler", MONTHLY)

        assert not result.success
        assert result.error.code is PaymentErrorCode.ACTIVE_SUBSCRIPTION_EXISTS
        assert provider.calls["create_subscription"] == 1

    @pytest.mark.asyncio
    async def test_unknown_tier(self, billing: BillingEngine, provider: FakeBillingProvider) -> None:
        """Test an unknown tier fails before any provider call."""
        result = await billing.create("user-1", "platinum", MONTHLY)

        assert not result.success
        assert result.error.code is PaymentErrorCode.INVALID_TIER
        assert sum(provider.calls.values()) == 0

    @pytest.mark.asyncio
    async def test_card_declined(
        self, billing: BillingEngine, provider: FakeBillingProvider, records
    ) -> None:
        """Test a decline is returned as a value and writes nothing."""
        provider.fail_next(
            "create_subscription", stripe.CardError("Your card was declined.", None, "card_declined")
        )

        result = await billing.create("user-1", "explorer", MONTHLY)

        assert not result.success
        assert result.error.code is PaymentErrorCode.CARD_DECLINED
        assert provider.calls["create_subscription"] == 1
        assert await records.current() is None

    @pytest.mark.asyncio
    async def test_transient_failure_retried_with_same_key(
        self,
        billing: BillingEngine,
        provider: FakeBillingProvider,
        sleeps: list[float],
    ) -> None:
        """Test a retried provider call reuses its idempotency key."""
        provider.fail_next("create_subscription", stripe.APIConnectionError("connection reset"))

        result = await billing.create("user-1", "explorer", MONTHLY)

        assert result.success
        keys = provider.idempotency_keys["create_subscription"]
        assert len(keys) == 2
        assert keys[0] == keys[1]
        assert provider.calls["create_customer"] == 1
        assert sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_configured_price_ids_skip_price_creation(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: FakeBillingProvider,
    ) -> None:
        """Test configured provider prices are used as they are."""
        catalog = TierCatalog().with_price_ids({"explorer:monthly": "price_explorer_m"})
        engine = BillingEngine(session_factory, provider, catalog=catalog)

        result = await engine.create("user-1", "explorer", MONTHLY)

        assert result.success
        assert provider.calls["create_price"] == 0

    @pytest.mark.asyncio
    async def test_resubscribe_reuses_customer(
        self, billing: BillingEngine, provider: FakeBillingProvider, subscribed: str
    ) -> None:
        """Test a returning subscriber keeps their provider customer."""
        await billing.cancel(subscribed, at_period_end=False)

        result = await billing.create(subscribed, "traveler", YEARLY)

        assert result.success
        assert provider.calls["create_customer"] == 1
        assert result.data.tier is SubscriptionTier.TRAVELER


class TestUpgrade:
    """Tests for upgrades."""

    @pytest.mark.asyncio
    async def test_upgrade_records_proration(
        self, billing: BillingEngine, provider: FakeBillingProvider, subscribed: str, records
    ) -> None:
        """Test an upgrade changes the tier and records the proration charge."""
        before = await records.live()

        result = await billing.upgrade(subscribed, SubscriptionTier.TRAVELER, MONTHLY)

        assert result.success
        assert result.data.tier is SubscriptionTier.TRAVELER
        assert result.data.updated_at > before.updated_at
        assert result.data.version > before.version

        attempts = await records.attempts()
        assert len(attempts) == 2
        assert attempts[0].amount == 1000
        assert attempts[0].description == "Upgrade to Traveler plan"

        subscription = provider.subscriptions[result.data.provider_subscription_id]
        assert subscription["metadata"]["tier"] == "traveler"

    @pytest.mark.asyncio
    async def test_upgrade_without_charge(
        self, billing: BillingEngine, provider: FakeBillingProvider, subscribed: str, records
    ) -> None:
        """Test no payment attempt is recorded when nothing is charged."""
        provider.proration_amount = 0

        result = await billing.upgrade(subscribed, "enterprise", MONTHLY)

        assert result.success
        assert len(await records.attempts()) == 1

    @pytest.mark.asyncio
    async def test_interval_change_on_same_tier(self, billing: BillingEngine, subscribed: str) -> None:
        """Test switching to yearly billing goes through upgrade."""
        result = await billing.upgrade(subscribed, "explorer", YEARLY)

        assert result.success
        assert result.data.interval is YEARLY

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tier", ["free", "explorer"])
    async def test_rejects_non_upgrade(self, billing: BillingEngine, subscribed: str, tier: str) -> None:
        """Test lower or identical plans are rejected."""
        result = await billing.upgrade(subscribed, tier, MONTHLY)

        assert not result.success
        assert result.error.code is PaymentErrorCode.INVALID_TIER_CHANGE

    @pytest.mark.asyncio
    async def test_upgrade_without_subscription(self, billing: BillingEngine) -> None:
        """Test upgrading without a live subscription fails."""
        result = await billing.upgrade("nobody", "traveler", MONTHLY)

        assert not result.success
        assert result.error.code is PaymentErrorCode.SUBSCRIPTION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_failed_upgrade_leaves_record(
        self, billing: BillingEngine, provider: FakeBillingProvider, subscribed: str, records
    ) -> None:
        """Test a declined upgrade changes nothing locally."""
        before = await records.live()
        provider.fail_next(
            "update_subscription_price", stripe.CardError("declined", None, "insufficient_funds")
        )

        result = await billing.upgrade(subscribed, "traveler", MONTHLY)

        assert not result.success
        assert result.error.code is PaymentErrorCode.INSUFFICIENT_FUNDS
        after = await records.live()
        assert after.tier is SubscriptionTier.EXPLORER
        assert after.version == before.version

    @pytest.mark.asyncio
    async def test_upgrade_requires_active_status(
        self,
        billing: BillingEngine,
        session_factory: async_sessionmaker[AsyncSession],
        subscribed: str,
    ) -> None:
        """Test a past-due subscription cannot change plans."""
        await _force_status(session_factory, subscribed, SubscriptionStatus.PAST_DUE)

        result = await billing.upgrade(subscribed, "traveler", MONTHLY)

        assert not result.success
        assert result.error.code is PaymentErrorCode.INVALID_TRANSITION


class TestDowngrade:
    """Tests for downgrades."""

    @pytest.mark.asyncio
    async def test_deferred_downgrade(
        self, billing: BillingEngine, provider: FakeBillingProvider, subscribed: str, records
    ) -> None:
        """Test a deferred downgrade keeps the tier and records the pending change."""
        await billing.upgrade(subscribed, "traveler", MONTHLY)

        result = await billing.downgrade(subscribed, "explorer", MONTHLY)

        assert result.success
        assert result.deferred
        assert result.data.tier is SubscriptionTier.TRAVELER
        assert result.data.pending_tier is SubscriptionTier.EXPLORER
        assert result.data.pending_effective_at == provider.period_end

        record = await records.live()
        schedule = provider.schedules[record.provider_schedule_id]
        assert schedule["phases"][1]["metadata"]["tier"] == "explorer"
        assert provider.calls["update_subscription_price"] == 1

    @pytest.mark.asyncio
    async def test_immediate_downgrade(
        self, billing: BillingEngine, provider: FakeBillingProvider, subscribed: str
    ) -> None:
        """Test an immediate downgrade changes the tier now."""
        await billing.upgrade(subscribed, "enterprise", MONTHLY)
        provider.proration_amount = -2000

        result = await billing.downgrade(subscribed, "traveler", MONTHLY, immediate=True)

        assert result.success
        assert not result.deferred
        assert result.data.tier is SubscriptionTier.TRAVELER
        assert result.data.pending_tier is None

    @pytest.mark.asyncio
    async def test_rejects_upgrade_target(self, billing: BillingEngine, subscribed: str) -> None:
        """Test downgrade refuses a higher tier."""
        result = await billing.downgrade(subscribed, "enterprise", MONTHLY)

        assert not result.success
        assert result.error.code is PaymentErrorCode.INVALID_TIER_CHANGE

    @pytest.mark.asyncio
    async def test_new_change_releases_pending_schedule(
        self, billing: BillingEngine, provider: FakeBillingProvider, subscribed: str
    ) -> None:
        """Test an upgrade supersedes a pending downgrade."""
        await billing.upgrade(subscribed, "enterprise", MONTHLY)
        await billing.downgrade(subscribed, "explorer", MONTHLY)

        result = await billing.upgrade(subscribed, "enterprise", YEARLY)

        assert result.success
        assert result.data.pending_tier is None
        assert provider.calls["release_schedule"] == 1


class TestCancel:
    """Tests for cancellation and reactivation."""

    @pytest.mark.asyncio
    async def test_cancel_at_period_end(
        self, billing: BillingEngine, provider: FakeBillingProvider, subscribed: str
    ) -> None:
        """Test a period-end cancellation keeps the subscription live."""
        result = await billing.cancel(subscribed)

        assert result.success
        assert result.data.cancel_at_period_end is True
        assert result.data.status is SubscriptionStatus.ACTIVE
        assert result.data.tier is SubscriptionTier.EXPLORER
        assert provider.subscriptions[result.data.provider_subscription_id]["cancel_at_period_end"]

    @pytest.mark.asyncio
    async def test_cancel_immediately_demotes(self, billing: BillingEngine, subscribed: str) -> None:
        """Test an immediate cancellation demotes to the lowest tier."""
        result = await billing.cancel(subscribed, at_period_end=False)

        assert result.success
        assert result.data.status is SubscriptionStatus.CANCELED
        assert result.data.tier is SubscriptionTier.FREE
        assert result.data.canceled_at is not None
        assert result.data.cancel_at_period_end is False

        entitlement = await billing.entitlement_for(subscribed)
        assert entitlement.id is SubscriptionTier.FREE

    @pytest.mark.asyncio
    async def test_cancel_clears_pending_downgrade(
        self, billing: BillingEngine, provider: FakeBillingProvider, subscribed: str
    ) -> None:
        """Test cancelling releases a scheduled downgrade."""
        await billing.upgrade(subscribed, "traveler", MONTHLY)
        await billing.downgrade(subscribed, "explorer", MONTHLY)

        result = await billing.cancel(subscribed)

        assert result.success
        assert result.data.pending_tier is None
        assert provider.calls["release_schedule"] == 1

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(self, billing: BillingEngine) -> None:
        """Test cancelling nothing fails."""
        result = await billing.cancel("nobody")

        assert not result.success
        assert result.error.code is PaymentErrorCode.SUBSCRIPTION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_reactivate(
        self, billing: BillingEngine, provider: FakeBillingProvider, subscribed: str
    ) -> None:
        """Test reactivation undoes a period-end cancellation."""
        await billing.cancel(subscribed)

        result = await billing.reactivate(subscribed)

        assert result.success
        assert result.data.cancel_at_period_end is False
        assert result.data.status is SubscriptionStatus.ACTIVE
        assert not provider.subscriptions[result.data.provider_subscription_id]["cancel_at_period_end"]

    @pytest.mark.asyncio
    async def test_reactivate_requires_pending_cancellation(
        self, billing: BillingEngine, subscribed: str
    ) -> None:
        """Test reactivating an uncancelled subscription is rejected."""
        result = await billing.reactivate(subscribed)

        assert not result.success
        assert result.error.code is PaymentErrorCode.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_reactivate_after_immediate_cancel(
        self, billing: BillingEngine, provider: FakeBillingProvider, subscribed: str
    ) -> None:
        """Test an ended subscription cannot be reactivated."""
        await billing.cancel(subscribed, at_period_end=False)

        result = await billing.reactivate(subscribed)

        assert not result.success
        assert result.error.code is PaymentErrorCode.INVALID_TRANSITION
        assert provider.calls["set_cancel_at_period_end"] == 0


class TestRetryInvoicePayment:
    """Tests for dunning retries."""

    @pytest.mark.asyncio
    async def test_successful_retry_restores_active(
        self,
        billing: BillingEngine,
        provider: FakeBillingProvider,
        session_factory: async_sessionmaker[AsyncSession],
        subscribed: str,
        records,
    ) -> None:
        """Test paying a failed invoice restores the subscription."""
        record = await records.live()
        invoice_id = provider.add_invoice(record.provider_subscription_id, 999)
        await _force_status(session_factory, subscribed, SubscriptionStatus.PAST_DUE)

        result = await billing.retry_invoice_payment(invoice_id)

        assert result.success
        assert result.data.status is PaymentAttemptStatus.SUCCEEDED
        assert result.data.amount == 999
        assert result.data.description == "Payment retry successful"
        assert (await records.live()).status is SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_already_paid(
        self, billing: BillingEngine, provider: FakeBillingProvider, subscribed: str, records
    ) -> None:
        """Test a paid invoice is left alone."""
        record = await records.live()
        invoice_id = provider.add_invoice(record.provider_subscription_id, 999, status="paid")

        result = await billing.retry_invoice_payment(invoice_id)

        assert result.success
        assert result.data is None
        assert provider.calls["pay_invoice"] == 0

    @pytest.mark.asyncio
    async def test_failed_retry_appends_attempt(
        self,
        billing: BillingEngine,
        provider: FakeBillingProvider,
        session_factory: async_sessionmaker[AsyncSession],
        subscribed: str,
        records,
    ) -> None:
        """Test a failed retry is recorded and the subscription stays past due."""
        record = await records.live()
        invoice_id = provider.add_invoice(record.provider_subscription_id, 999)
        await _force_status(session_factory, subscribed, SubscriptionStatus.PAST_DUE)
        provider.fail_next("pay_invoice", stripe.CardError("Card expired", None, "expired_card"))

        result = await billing.retry_invoice_payment(invoice_id)

        assert not result.success
        assert result.error.code is PaymentErrorCode.EXPIRED_CARD
        latest = (await records.attempts())[0]
        assert latest.status is PaymentAttemptStatus.FAILED
        assert latest.amount == 0
        assert latest.description.startswith("Payment retry failed: ")
        assert (await records.live()).status is SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, billing: BillingEngine) -> None:
        """Test a missing invoice is classified."""
        result = await billing.retry_invoice_payment("in_missing")

        assert not result.success
        assert result.error.code is PaymentErrorCode.INVOICE_NOT_FOUND


class TestReads:
    """Tests for read accessors."""

    @pytest.mark.asyncio
    async def test_entitlement(self, billing: BillingEngine) -> None:
        """Test entitlement follows the live subscription."""
        assert (await billing.entitlement_for("user-1")).id is SubscriptionTier.FREE

        await billing.create("user-1", "traveler", MONTHLY)

        assert (await billing.entitlement_for("user-1")).id is SubscriptionTier.TRAVELER

    @pytest.mark.asyncio
    async def test_get_subscription(self, billing: BillingEngine, subscribed: str) -> None:
        """Test the current record is returned, including after cancellation."""
        assert await billing.get_subscription("nobody") is None

        await billing.cancel(subscribed, at_period_end=False)

        current = await billing.get_subscription(subscribed)
        assert current is not None
        assert current.status is SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_payment_history_newest_first(self, billing: BillingEngine, subscribed: str) -> None:
        """Test payment history is paginated newest first."""
        await billing.upgrade(subscribed, "traveler", MONTHLY)
        await billing.upgrade(subscribed, "enterprise", MONTHLY)

        history = await billing.get_payment_history(subscribed)
        assert [a.description for a in history] == [
            "Upgrade to Enterprise plan",
            "Upgrade to Traveler plan",
            "Subscription created",
        ]

        page = await billing.get_payment_history(subscribed, limit=1, offset=1)
        assert [a.description for a in page] == ["Upgrade to Traveler plan"]
