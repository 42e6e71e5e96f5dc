"""Billing engine facade.

``BillingEngine`` wires the tier catalog, retry executor, provider adapter,
proration calculator, lifecycle state machine and webhook pipeline together
and is the only object callers need. Nothing here is a module-level
singleton: each engine owns its collaborators.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wayfare.billing.audit import AdminBillingActions, AuditLog, DatabaseAuditLog
from wayfare.billing.lifecycle import SubscriptionLifecycle
from wayfare.billing.locks import SubscriberLocks
from wayfare.billing.payment_errors import classify
from wayfare.billing.proration import ProrationCalculator
from wayfare.billing.provider import BillingProvider, StripeBillingProvider
from wayfare.billing.repository import BillingRepository
from wayfare.billing.retry import RetryExecutor, RetryPolicy, Sleep
from wayfare.billing.schemas import (
    BillingResult,
    IngestResult,
    PaymentAttemptResponse,
    ProrationPreview,
    SubscriptionResponse,
    WebhookEventResponse,
)
from wayfare.billing.tiers import BillingInterval, SubscriptionTier, TierCatalog, TierDefinition
from wayfare.billing.webhooks import WebhookPipeline, WebhookPolicy
from wayfare.core.config import Settings
from wayfare.core.database import create_engine_from_settings, create_session_factory
from wayfare.core.logging import LoggerMixin
from wayfare.models.base import utcnow


class BillingEngine(LoggerMixin):
    """Public entry point of the subscription billing engine."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: BillingProvider,
        *,
        catalog: TierCatalog | None = None,
        retry_policy: RetryPolicy | None = None,
        webhook_policy: WebhookPolicy | None = None,
        audit: AuditLog | None = None,
        currency: str = "usd",
        clock: Callable[[], datetime] = utcnow,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the engine.

        Args:
            session_factory: Factory for database sessions
            provider: Payment provider adapter
            catalog: Tier catalog, the default tiers when omitted
            retry_policy: Backoff policy for provider calls
            webhook_policy: Attempt ceiling for webhook processing
            audit: Audit sink for admin actions, the database when omitted
            currency: Currency for provider prices
            clock: Source of the current time
            sleep: Coroutine used for retry backoff
        """
        self.session_factory = session_factory
        self.provider = provider
        self.catalog = catalog or TierCatalog()
        self.locks = SubscriberLocks()
        self.retry = RetryExecutor(retry_policy or RetryPolicy(), classify, sleep=sleep)
        self.clock = clock

        self.proration = ProrationCalculator(
            session_factory,
            provider,
            self.catalog,
            self.retry,
            currency=currency,
            clock=clock,
        )
        self.lifecycle = SubscriptionLifecycle(
            session_factory,
            provider,
            self.catalog,
            self.retry,
            self.locks,
            currency=currency,
            clock=clock,
        )
        self.webhooks = WebhookPipeline(
            session_factory,
            self.lifecycle,
            self.locks,
            webhook_policy or WebhookPolicy(),
            clock=clock,
        )
        self.admin = AdminBillingActions(
            session_factory,
            self.lifecycle,
            self.webhooks,
            provider,
            self.retry,
            audit or DatabaseAuditLog(session_factory, clock=clock),
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        provider: BillingProvider | None = None,
    ) -> BillingEngine:
        """Compose an engine from application settings."""
        if session_factory is None:
            session_factory = create_session_factory(create_engine_from_settings(settings))
        catalog = TierCatalog()
        if settings.tier_price_ids:
            catalog = catalog.with_price_ids(settings.tier_price_ids)
        return cls(
            session_factory,
            provider or StripeBillingProvider.from_settings(settings),
            catalog=catalog,
            retry_policy=RetryPolicy.from_settings(settings),
            webhook_policy=WebhookPolicy.from_settings(settings),
            currency=settings.billing_currency,
        )

    # Lifecycle operations

    async def create(
        self,
        subscriber_id: str,
        tier: SubscriptionTier | str,
        interval: BillingInterval,
        *,
        customer_id: str | None = None,
        trial_days: int = 0,
    ) -> BillingResult[SubscriptionResponse]:
        return await self.lifecycle.create(
            subscriber_id, tier, interval, customer_id=customer_id, trial_days=trial_days
        )

    async def upgrade(
        self,
        subscriber_id: str,
        new_tier: SubscriptionTier | str,
        interval: BillingInterval,
    ) -> BillingResult[SubscriptionResponse]:
        return await self.lifecycle.upgrade(subscriber_id, new_tier, interval)

    async def downgrade(
        self,
        subscriber_id: str,
        new_tier: SubscriptionTier | str,
        interval: BillingInterval,
        *,
        immediate: bool = False,
    ) -> BillingResult[SubscriptionResponse]:
        return await self.lifecycle.downgrade(subscriber_id, new_tier, interval, immediate=immediate)

    async def cancel(
        self, subscriber_id: str, *, at_period_end: bool = True
    ) -> BillingResult[SubscriptionResponse]:
        return await self.lifecycle.cancel(subscriber_id, at_period_end=at_period_end)

    async def reactivate(self, subscriber_id: str) -> BillingResult[SubscriptionResponse]:
        return await self.lifecycle.reactivate(subscriber_id)

    async def preview(
        self,
        subscriber_id: str,
        new_tier: SubscriptionTier | str,
        interval: BillingInterval,
    ) -> BillingResult[ProrationPreview]:
        return await self.proration.preview(subscriber_id, new_tier, interval)

    async def retry_invoice_payment(
        self, invoice_id: str
    ) -> BillingResult[PaymentAttemptResponse | None]:
        return await self.lifecycle.retry_invoice_payment(invoice_id)

    # Webhooks

    async def ingest_webhook(
        self,
        provider_event_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> IngestResult:
        return await self.webhooks.ingest(provider_event_id, event_type, payload)

    async def ingest_event(self, event: dict[str, Any]) -> IngestResult:
        """Ingest a verified provider event envelope."""
        return await self.webhooks.ingest_event(event)

    def verify_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify a webhook delivery and return the parsed event.

        Raises:
            WebhookSignatureError: If the signature does not match
        """
        return self.provider.construct_event(payload, signature)

    async def retry_event(self, event_id: UUID, *, force: bool = False) -> BillingResult[IngestResult]:
        """Re-run a stored webhook event that has not been processed."""
        try:
            return BillingResult.ok(await self.webhooks.retry_event(event_id, force=force))
        except Exception as exc:
            return BillingResult.fail(classify(exc))

    async def retry_failed_events(self, *, limit: int = 100) -> list[IngestResult]:
        """Sweep failed events below the attempt ceiling, oldest first."""
        events = await self.list_retryable_events(limit=limit)
        results = []
        for event in events:
            results.append(await self.webhooks.retry_event(event.id))
        return results

    # Read accessors

    async def entitlement_for(self, subscriber_id: str) -> TierDefinition:
        """Tier the subscriber is entitled to: the live record's, or the lowest tier."""
        async with self.session_factory() as session:
            record = await BillingRepository(session).get_live_record(subscriber_id)
        if record is None:
            return self.catalog.tier_of(SubscriptionTier.FREE)
        return self.catalog.tier_of(record.tier)

    async def get_subscription(self, subscriber_id: str) -> SubscriptionResponse | None:
        async with self.session_factory() as session:
            record = await BillingRepository(session).get_current_record(subscriber_id)
        return SubscriptionResponse.model_validate(record) if record else None

    async def get_payment_history(
        self, subscriber_id: str, *, limit: int = 50, offset: int = 0
    ) -> list[PaymentAttemptResponse]:
        async with self.session_factory() as session:
            attempts = await BillingRepository(session).list_payment_attempts(
                subscriber_id, limit=limit, offset=offset
            )
        return [PaymentAttemptResponse.model_validate(a) for a in attempts]

    async def list_webhook_events(
        self,
        *,
        processed: bool | None = None,
        event_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookEventResponse]:
        async with self.session_factory() as session:
            events = await BillingRepository(session).list_webhook_events(
                processed=processed, event_type=event_type, limit=limit, offset=offset
            )
        return [WebhookEventResponse.model_validate(e) for e in events]

    async def list_unresolved_webhook_events(self, *, limit: int = 50) -> list[WebhookEventResponse]:
        return await self.list_webhook_events(processed=False, limit=limit)

    async def list_retryable_events(
        self, max_attempts: int | None = None, *, limit: int = 100
    ) -> list[WebhookEventResponse]:
        """Failed events still below the attempt ceiling, oldest first."""
        ceiling = max_attempts or self.webhooks.policy.max_attempts
        async with self.session_factory() as session:
            events = await BillingRepository(session).list_retryable_webhook_events(
                max_attempts=ceiling, limit=limit
            )
        return [WebhookEventResponse.model_validate(e) for e in events]
