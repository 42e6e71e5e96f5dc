"""Webhook reconciliation pipeline.

Deliveries are at-least-once and may arrive out of order. The unique
``provider_event_id`` column is the idempotency boundary: the first delivery
inserts the event row and processes it; later deliveries of the same event
are duplicates unless an earlier attempt failed and the attempt ceiling has
not been reached, in which case one of them reclaims the row atomically and
processes it again.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wayfare.billing import transitions
from wayfare.billing.exceptions import (
    SubscriptionNotFoundError,
    WebhookEventNotFoundError,
)
from wayfare.billing.lifecycle import SubscriptionLifecycle
from wayfare.billing.locks import SubscriberLocks
from wayfare.billing.models import (
    PaymentAttemptStatus,
    SubscriptionRecord,
    SubscriptionStatus,
    WebhookEvent,
)
from wayfare.billing.payment_errors import classify
from wayfare.billing.provider import ProviderInvoice, ProviderSubscription, from_timestamp
from wayfare.billing.repository import BillingRepository
from wayfare.billing.schemas import IngestResult, IngestStatus
from wayfare.core.config import Settings
from wayfare.core.database import session_scope
from wayfare.core.logging import (
    LoggerMixin,
    clear_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from wayfare.core.metrics import dunning_escalations_total, track_webhook
from wayfare.models.base import utcnow

Handler = Callable[[Mapping[str, Any]], Awaitable[None]]

_ERROR_MESSAGE_LIMIT = 2000


@dataclass(frozen=True)
class WebhookPolicy:
    """Attempt ceiling after which a failed event needs manual intervention."""

    max_attempts: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> WebhookPolicy:
        return cls(max_attempts=settings.webhook_max_attempts)


class WebhookPipeline(LoggerMixin):
    """Ingests provider notifications and applies them to subscription records."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lifecycle: SubscriptionLifecycle,
        locks: SubscriberLocks,
        policy: WebhookPolicy | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.lifecycle = lifecycle
        self.locks = locks
        self.policy = policy or WebhookPolicy()
        self.clock = clock
        self._handlers: dict[str, Handler] = {
            "customer.subscription.created": self._on_subscription_upsert,
            "customer.subscription.updated": self._on_subscription_upsert,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "customer.subscription.trial_will_end": self._on_trial_will_end,
            "invoice.payment_succeeded": self._on_payment_succeeded,
            "invoice.payment_failed": self._on_payment_failed,
            "invoice.payment_action_required": self._on_payment_action_required,
            "invoice.upcoming": self._on_invoice_upcoming,
        }

    @property
    def handled_event_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    # Ingestion

    async def ingest(
        self,
        provider_event_id: str,
        event_type: str,
        payload: Mapping[str, Any],
    ) -> IngestResult:
        """Record and process one delivery.

        Args:
            provider_event_id: Provider's unique event id
            event_type: Provider event type, e.g. ``invoice.payment_failed``
            payload: The event's data object

        Returns:
            ACCEPTED when processed, DUPLICATE when already seen, FAILED when
            the handler failed. Never raises.
        """
        previous_correlation_id = get_correlation_id()
        set_correlation_id(provider_event_id)
        try:
            return await self._ingest(provider_event_id, event_type, dict(payload))
        except Exception as exc:
            error = classify(exc)
            self.logger.exception(
                "webhook_ingest_error",
                provider_event_id=provider_event_id,
                event_type=event_type,
                code=error.code.value,
            )
            track_webhook(event_type, IngestStatus.FAILED.value)
            return IngestResult(
                status=IngestStatus.FAILED,
                provider_event_id=provider_event_id,
                event_type=event_type,
                error=error,
            )
        finally:
            if previous_correlation_id:
                set_correlation_id(previous_correlation_id)
            else:
                clear_correlation_id()

    async def ingest_event(self, event: Mapping[str, Any]) -> IngestResult:
        """Ingest a verified provider event envelope."""
        data = event.get("data") or {}
        return await self.ingest(event["id"], event["type"], data.get("object") or {})

    async def _ingest(
        self,
        provider_event_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> IngestResult:
        now = self.clock()
        try:
            async with session_scope(self.session_factory) as session:
                event = BillingRepository(session).add_webhook_event(
                    provider_event_id=provider_event_id,
                    event_type=event_type,
                    payload=payload,
                    now=now,
                )
                await session.flush()
                event_id = event.id
            attempts = 1
        except IntegrityError:
            claimed = await self._reclaim(provider_event_id, event_type, now)
            if isinstance(claimed, IngestResult):
                return claimed
            event_id, attempts = claimed

        self.logger.info(
            "webhook_event_received",
            provider_event_id=provider_event_id,
            event_type=event_type,
            attempt=attempts,
        )
        return await self._process(event_id, provider_event_id, event_type, payload, attempts)

    async def _reclaim(
        self,
        provider_event_id: str,
        event_type: str,
        now: datetime,
    ) -> tuple[UUID, int] | IngestResult:
        """Decide what a repeated delivery of a known event does."""
        async with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            existing = await repo.get_webhook_event_by_provider_id(provider_event_id)
            if existing is None:
                # Unique violation without a row means a concurrent insert rolled back
                raise WebhookEventNotFoundError(
                    resource_type="webhook_event", resource_id=provider_event_id
                )
            seen = existing.processing_attempts
            reason: str | None = None
            if existing.processed:
                reason = "already_processed"
            elif seen >= self.policy.max_attempts:
                reason = "attempt_ceiling_reached"
            elif existing.error_message is None:
                reason = "in_flight"
            elif not await repo.claim_webhook_event(existing.id, seen_attempts=seen, now=now):
                reason = "claimed_elsewhere"

        if reason is not None:
            log = self.logger.warning if reason == "attempt_ceiling_reached" else self.logger.info
            log(
                "webhook_event_duplicate",
                provider_event_id=provider_event_id,
                event_type=event_type,
                reason=reason,
                attempts=seen,
            )
            track_webhook(event_type, IngestStatus.DUPLICATE.value)
            return IngestResult(
                status=IngestStatus.DUPLICATE,
                provider_event_id=provider_event_id,
                event_type=event_type,
                attempts=seen,
            )
        return existing.id, seen + 1

    async def _process(
        self,
        event_id: UUID,
        provider_event_id: str,
        event_type: str,
        payload: Mapping[str, Any],
        attempts: int,
    ) -> IngestResult:
        handler = self._handlers.get(event_type)
        try:
            if handler is None:
                self.logger.info("webhook_event_unhandled", event_type=event_type)
            else:
                await handler(payload)
        except Exception as exc:
            error = classify(exc)
            message = (str(exc) or error.message)[:_ERROR_MESSAGE_LIMIT]
            async with session_scope(self.session_factory) as session:
                await BillingRepository(session).finish_webhook_event(
                    event_id, error_message=message, now=self.clock()
                )
            if attempts >= self.policy.max_attempts:
                self.logger.error(
                    "webhook_requires_manual_intervention",
                    provider_event_id=provider_event_id,
                    event_type=event_type,
                    attempts=attempts,
                    code=error.code.value,
                    error=message,
                )
            else:
                self.logger.warning(
                    "webhook_processing_failed",
                    provider_event_id=provider_event_id,
                    event_type=event_type,
                    attempts=attempts,
                    code=error.code.value,
                    error=message,
                )
            track_webhook(event_type, IngestStatus.FAILED.value)
            return IngestResult(
                status=IngestStatus.FAILED,
                provider_event_id=provider_event_id,
                event_type=event_type,
                attempts=attempts,
                error=error,
            )

        async with session_scope(self.session_factory) as session:
            await BillingRepository(session).finish_webhook_event(
                event_id, error_message=None, now=self.clock()
            )
        self.logger.info(
            "webhook_event_processed",
            provider_event_id=provider_event_id,
            event_type=event_type,
            attempts=attempts,
        )
        track_webhook(event_type, IngestStatus.ACCEPTED.value)
        return IngestResult(
            status=IngestStatus.ACCEPTED,
            provider_event_id=provider_event_id,
            event_type=event_type,
            attempts=attempts,
        )

    # Manual retry

    async def retry_event(self, event_id: UUID, *, force: bool = False) -> IngestResult:
        """Re-run a stored event that has not been processed.

        Args:
            event_id: Local id of the webhook event
            force: Allow retrying beyond the attempt ceiling, or an event
                whose previous attempt never recorded an outcome

        Raises:
            WebhookEventNotFoundError: If no such event exists
        """
        now = self.clock()
        async with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            event = await repo.get_webhook_event(event_id)
            if event is None:
                raise WebhookEventNotFoundError(resource_type="webhook_event", resource_id=str(event_id))
            seen = event.processing_attempts
            snapshot = _EventSnapshot.of(event)
            claimable = not event.processed and (force or seen < self.policy.max_attempts)
            claimed = claimable and await repo.claim_webhook_event(
                event.id, seen_attempts=seen, now=now, require_failed=not force
            )

        if not claimed:
            self.logger.info(
                "webhook_retry_skipped",
                provider_event_id=snapshot.provider_event_id,
                processed=snapshot.processed,
                attempts=seen,
            )
            return IngestResult(
                status=IngestStatus.DUPLICATE,
                provider_event_id=snapshot.provider_event_id,
                event_type=snapshot.event_type,
                attempts=seen,
            )

        previous_correlation_id = get_correlation_id()
        set_correlation_id(snapshot.provider_event_id)
        try:
            self.logger.info(
                "webhook_event_retried",
                provider_event_id=snapshot.provider_event_id,
                attempt=seen + 1,
                forced=force,
            )
            return await self._process(
                event_id,
                snapshot.provider_event_id,
                snapshot.event_type,
                snapshot.payload,
                seen + 1,
            )
        finally:
            if previous_correlation_id:
                set_correlation_id(previous_correlation_id)
            else:
                clear_correlation_id()

    # Handlers

    @asynccontextmanager
    async def _subscriber_lock(self, provider_subscription_id: str) -> AsyncIterator[str]:
        """Hold the lock of the subscriber owning a provider subscription."""
        async with self.session_factory() as session:
            record = await BillingRepository(session).get_by_provider_subscription_id(
                provider_subscription_id
            )
        if record is None:
            raise SubscriptionNotFoundError(
                resource_type="subscription", resource_id=provider_subscription_id
            )
        async with self.locks.hold(record.subscriber_id):
            yield record.subscriber_id

    async def _load(self, repo: BillingRepository, provider_subscription_id: str) -> SubscriptionRecord:
        record = await repo.get_by_provider_subscription_id(provider_subscription_id)
        if record is None:
            raise SubscriptionNotFoundError(
                resource_type="subscription", resource_id=provider_subscription_id
            )
        return record

    async def _on_subscription_upsert(self, payload: Mapping[str, Any]) -> None:
        subscription = ProviderSubscription.from_payload(payload)

        async with self.session_factory() as session:
            known = await BillingRepository(session).get_by_provider_subscription_id(subscription.id)
        subscriber_id = known.subscriber_id if known else subscription.subscriber_id
        if subscriber_id is None:
            raise SubscriptionNotFoundError(
                "Provider subscription is not linked to a subscriber",
                resource_type="subscription",
                resource_id=subscription.id,
            )

        async with self.locks.hold(subscriber_id):
            async with session_scope(self.session_factory) as session:
                repo = BillingRepository(session)
                record = await repo.get_by_provider_subscription_id(subscription.id)
                if record is None:
                    self._open_from_provider(repo, subscriber_id, subscription)
                else:
                    self._reconcile(record, subscription)

    def _open_from_provider(
        self,
        repo: BillingRepository,
        subscriber_id: str,
        subscription: ProviderSubscription,
    ) -> None:
        status = transitions.status_from_provider(subscription.status)
        if status is SubscriptionStatus.CANCELED:
            self.logger.info(
                "subscription_event_ignored",
                subscriber_id=subscriber_id,
                provider_subscription_id=subscription.id,
                reason="not_live",
            )
            return
        record = transitions.open_subscription(
            subscriber_id=subscriber_id,
            customer_id=subscription.customer_id,
            provider_subscription_id=subscription.id,
            tier=subscription.resolve_tier(),
            interval=subscription.resolve_interval(),
            status=status,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            now=self.clock(),
        )
        repo.add_record(record)
        self.logger.info(
            "subscription_created_from_provider",
            subscriber_id=subscriber_id,
            provider_subscription_id=subscription.id,
            tier=record.tier.value,
            status=record.status.value,
        )

    def _reconcile(self, record: SubscriptionRecord, subscription: ProviderSubscription) -> None:
        status = transitions.status_from_provider(subscription.status)
        if not transitions.can_transition(record.status, status):
            # A late delivery describing a state the record has moved past
            self.logger.info(
                "stale_subscription_update_ignored",
                subscriber_id=record.subscriber_id,
                current_status=record.status.value,
                provider_status=subscription.status,
            )
            return

        previous_tier = record.tier
        applied = transitions.sync_from_provider(
            record,
            status=status,
            tier=subscription.resolve_tier(),
            interval=subscription.resolve_interval(),
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            now=self.clock(),
        )
        if applied:
            self.logger.info(
                "pending_tier_change_applied",
                subscriber_id=record.subscriber_id,
                previous_tier=previous_tier.value,
                tier=record.tier.value,
            )
        self.logger.info(
            "subscription_reconciled",
            subscriber_id=record.subscriber_id,
            status=record.status.value,
            tier=record.tier.value,
            cancel_at_period_end=record.cancel_at_period_end,
        )

    async def _on_subscription_deleted(self, payload: Mapping[str, Any]) -> None:
        subscription = ProviderSubscription.from_payload(payload)
        async with self._subscriber_lock(subscription.id) as subscriber_id:
            async with session_scope(self.session_factory) as session:
                record = await self._load(BillingRepository(session), subscription.id)
                if record.status is SubscriptionStatus.CANCELED:
                    return
                now = self.clock()
                transitions.cancel_now(
                    record,
                    canceled_at=from_timestamp(payload.get("canceled_at")) or now,
                    now=now,
                )
        self.logger.info(
            "subscription_deleted",
            subscriber_id=subscriber_id,
            provider_subscription_id=subscription.id,
        )

    async def _on_payment_succeeded(self, payload: Mapping[str, Any]) -> None:
        invoice = ProviderInvoice.from_payload(payload)
        if invoice.subscription_id is None:
            self.logger.info("invoice_without_subscription", invoice_id=invoice.id)
            return

        async with self._subscriber_lock(invoice.subscription_id) as subscriber_id:
            async with session_scope(self.session_factory) as session:
                repo = BillingRepository(session)
                record = await self._load(repo, invoice.subscription_id)
                now = self.clock()
                if not await repo.has_payment_attempt(invoice.id, PaymentAttemptStatus.SUCCEEDED):
                    repo.add_payment_attempt(
                        subscriber_id=subscriber_id,
                        provider_invoice_id=invoice.id,
                        amount=invoice.amount_paid,
                        currency=invoice.currency,
                        status=PaymentAttemptStatus.SUCCEEDED,
                        description="Subscription payment",
                        now=now,
                    )
                if record.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.INCOMPLETE):
                    transitions.set_status(record, SubscriptionStatus.ACTIVE, now=now)

        self.logger.info(
            "invoice_payment_succeeded",
            subscriber_id=subscriber_id,
            invoice_id=invoice.id,
            amount=invoice.amount_paid,
        )

    async def _on_payment_failed(self, payload: Mapping[str, Any]) -> None:
        invoice = ProviderInvoice.from_payload(payload)
        if invoice.subscription_id is None:
            raise SubscriptionNotFoundError(
                "Invoice is not linked to a subscription",
                resource_type="subscription",
                details={"invoice_id": invoice.id},
            )

        async with self._subscriber_lock(invoice.subscription_id) as subscriber_id:
            async with session_scope(self.session_factory) as session:
                repo = BillingRepository(session)
                record = await self._load(repo, invoice.subscription_id)
                now = self.clock()
                repo.add_payment_attempt(
                    subscriber_id=subscriber_id,
                    provider_invoice_id=invoice.id,
                    amount=invoice.amount_due,
                    currency=invoice.currency,
                    status=PaymentAttemptStatus.FAILED,
                    description="Payment failed",
                    now=now,
                )
                live = record.is_live
                if live:
                    transitions.set_status(record, SubscriptionStatus.PAST_DUE, now=now)

            self.logger.warning(
                "invoice_payment_failed",
                subscriber_id=subscriber_id,
                invoice_id=invoice.id,
                amount=invoice.amount_due,
                attempt_count=invoice.attempt_count,
            )

            if not live:
                self.logger.info(
                    "dunning_retry_skipped",
                    subscriber_id=subscriber_id,
                    invoice_id=invoice.id,
                    reason="subscription_not_live",
                )
                return

            result = await self.lifecycle.retry_invoice_payment(invoice.id)
            if not result.success and result.error is not None:
                dunning_escalations_total.inc()
                self.logger.warning(
                    "dunning_escalation_required",
                    subscriber_id=subscriber_id,
                    invoice_id=invoice.id,
                    code=result.error.code.value,
                    next_payment_attempt=invoice.next_payment_attempt.isoformat()
                    if invoice.next_payment_attempt
                    else None,
                )

    async def _on_payment_action_required(self, payload: Mapping[str, Any]) -> None:
        invoice = ProviderInvoice.from_payload(payload)
        if invoice.subscription_id is None:
            self.logger.info("invoice_without_subscription", invoice_id=invoice.id)
            return

        async with self._subscriber_lock(invoice.subscription_id) as subscriber_id:
            async with session_scope(self.session_factory) as session:
                record = await self._load(BillingRepository(session), invoice.subscription_id)
                if not transitions.can_transition(record.status, SubscriptionStatus.INCOMPLETE):
                    self.logger.info(
                        "stale_invoice_event_ignored",
                        subscriber_id=subscriber_id,
                        invoice_id=invoice.id,
                        current_status=record.status.value,
                    )
                    return
                transitions.set_status(record, SubscriptionStatus.INCOMPLETE, now=self.clock())

        self.logger.info(
            "invoice_payment_action_required",
            subscriber_id=subscriber_id,
            invoice_id=invoice.id,
        )

    async def _on_trial_will_end(self, payload: Mapping[str, Any]) -> None:
        subscription = ProviderSubscription.from_payload(payload)
        self.logger.info(
            "subscription_trial_will_end",
            provider_subscription_id=subscription.id,
            subscriber_id=subscription.subscriber_id,
            trial_end=payload.get("trial_end"),
        )

    async def _on_invoice_upcoming(self, payload: Mapping[str, Any]) -> None:
        invoice = ProviderInvoice.from_payload(payload)
        self.logger.info(
            "invoice_upcoming",
            provider_subscription_id=invoice.subscription_id,
            amount=invoice.amount_due,
        )


@dataclass(frozen=True)
class _EventSnapshot:
    provider_event_id: str
    event_type: str
    processed: bool
    payload: dict[str, Any]

    @classmethod
    def of(cls, event: WebhookEvent) -> _EventSnapshot:
        return cls(
            provider_event_id=event.provider_event_id,
            event_type=event.event_type,
            processed=event.processed,
            payload=dict(event.raw_payload or {}),
        )
