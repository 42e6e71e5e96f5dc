"""Subscription lifecycle operations.

Each operation follows the same shape: take the subscriber's lock, read a
snapshot of the record, talk to the provider (every call under the retry
executor), then write the provider's authoritative answer in a fresh
transaction that re-checks the snapshot's version. No database transaction
is held open across a provider call.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from wayfare.billing import transitions
from wayfare.billing.exceptions import (
    ActiveSubscriptionExistsError,
    ConcurrencyConflictError,
    InvalidTierChangeError,
    InvalidTransitionError,
    SubscriptionNotFoundError,
)
from wayfare.billing.locks import SubscriberLocks
from wayfare.billing.models import (
    LIVE_STATUSES,
    PaymentAttemptStatus,
    SubscriptionRecord,
    SubscriptionStatus,
)
from wayfare.billing.payment_errors import classify
from wayfare.billing.provider import (
    BillingProvider,
    ProviderInvoice,
    ProviderSubscription,
    new_idempotency_key,
)
from wayfare.billing.repository import BillingRepository
from wayfare.billing.retry import OperationContext, RetryExecutor
from wayfare.billing.schemas import BillingResult, PaymentAttemptResponse, SubscriptionResponse
from wayfare.billing.tiers import (
    BillingInterval,
    SubscriptionTier,
    TierCatalog,
    TierComparison,
    TierDefinition,
)
from wayfare.core.database import session_scope
from wayfare.core.logging import LoggerMixin
from wayfare.core.metrics import track_operation
from wayfare.models.base import utcnow

T = TypeVar("T")

# Statuses from which the plan can be changed
_CHANGEABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class SubscriptionLifecycle(LoggerMixin):
    """State machine over a subscriber's subscription record."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: BillingProvider,
        catalog: TierCatalog,
        retry: RetryExecutor,
        locks: SubscriberLocks,
        *,
        currency: str = "usd",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the lifecycle service.

        Args:
            session_factory: Factory for database sessions
            provider: Payment provider adapter
            catalog: Tier catalog
            retry: Executor wrapping every provider call
            locks: Per-subscriber locks shared with the webhook pipeline
            currency: Currency for newly created prices
            clock: Source of the current time
        """
        self.session_factory = session_factory
        self.provider = provider
        self.catalog = catalog
        self.retry = retry
        self.locks = locks
        self.currency = currency
        self.clock = clock

    # Plumbing

    async def _guarded(
        self,
        operation: str,
        subscriber_id: str,
        action: Callable[[], Awaitable[T]],
        *,
        deferred: bool = False,
    ) -> BillingResult[T]:
        """Run ``action`` under the subscriber's lock and classify any failure."""
        try:
            async with self.locks.hold(subscriber_id):
                data = await action()
        except Exception as exc:
            error = classify(exc)
            track_operation(operation, error.code.value)
            self.logger.warning(
                "billing_operation_failed",
                operation=operation,
                subscriber_id=subscriber_id,
                code=error.code.value,
                error=error.message,
            )
            return BillingResult.fail(error)

        track_operation(operation, "success")
        return BillingResult.ok(data, deferred=deferred)

    async def _call(
        self,
        operation: str,
        subscriber_id: str | None,
        request: Callable[[], Awaitable[T]],
    ) -> T:
        return await self.retry.execute(request, OperationContext(operation, subscriber_id))

    async def _snapshot(self, subscriber_id: str, *, live_only: bool = True) -> SubscriptionRecord:
        async with self.session_factory() as session:
            repo = BillingRepository(session)
            if live_only:
                record = await repo.get_live_record(subscriber_id)
            else:
                record = await repo.get_current_record(subscriber_id)
        if record is None:
            raise SubscriptionNotFoundError(resource_type="subscription", resource_id=subscriber_id)
        return record

    async def _write(
        self,
        snapshot: SubscriptionRecord,
        mutate: Callable[[SubscriptionRecord, BillingRepository], None],
    ) -> SubscriptionResponse:
        """Apply ``mutate`` to the record if it is unchanged since ``snapshot``."""
        try:
            async with session_scope(self.session_factory) as session:
                repo = BillingRepository(session)
                record = await repo.load_for_write(snapshot.id, snapshot.version)
                mutate(record, repo)
                await session.flush()
                response = SubscriptionResponse.model_validate(record)
        except StaleDataError as exc:
            raise ConcurrencyConflictError(
                details={"subscriber_id": snapshot.subscriber_id},
            ) from exc
        return response

    def _require_changeable(self, record: SubscriptionRecord) -> str:
        if record.status not in _CHANGEABLE_STATUSES:
            raise InvalidTransitionError(
                "Plan changes require an active subscription",
                details={"current_status": record.status.value},
            )
        if record.provider_subscription_id is None:
            raise InvalidTransitionError(
                "Subscription has not been created with the provider",
                details={"subscriber_id": record.subscriber_id},
            )
        return record.provider_subscription_id

    async def _price_id_for(
        self,
        definition: TierDefinition,
        interval: BillingInterval,
        subscriber_id: str,
    ) -> str:
        configured = definition.provider_price_ids.get(interval)
        if configured:
            return configured
        key = new_idempotency_key("price", subscriber_id)
        price = await self._call(
            "price.create",
            subscriber_id,
            lambda: self.provider.create_price(
                definition, interval, currency=self.currency, idempotency_key=key
            ),
        )
        return price.id

    async def _release_schedule(self, record: SubscriptionRecord) -> None:
        schedule_id = record.provider_schedule_id
        if schedule_id is None:
            return
        key = new_idempotency_key("schedule_release", record.subscriber_id)
        await self._call(
            "schedule.release",
            record.subscriber_id,
            lambda: self.provider.release_schedule(schedule_id, idempotency_key=key),
        )
        self.logger.info(
            "pending_tier_change_released",
            subscriber_id=record.subscriber_id,
            schedule_id=schedule_id,
        )

    # Create

    async def create(
        self,
        subscriber_id: str,
        tier: SubscriptionTier | str,
        interval: BillingInterval,
        *,
        customer_id: str | None = None,
        trial_days: int = 0,
    ) -> BillingResult[SubscriptionResponse]:
        """Start a subscription for a subscriber without a live one."""
        return await self._guarded(
            "create",
            subscriber_id,
            lambda: self._create(subscriber_id, tier, interval, customer_id, trial_days),
        )

    async def _create(
        self,
        subscriber_id: str,
        tier: SubscriptionTier | str,
        interval: BillingInterval,
        customer_id: str | None,
        trial_days: int,
    ) -> SubscriptionResponse:
        definition = self.catalog.tier_of(tier)

        async with self.session_factory() as session:
            repo = BillingRepository(session)
            if await repo.get_live_record(subscriber_id) is not None:
                raise ActiveSubscriptionExistsError(details={"subscriber_id": subscriber_id})
            customer_id = customer_id or await repo.get_provider_customer_id(subscriber_id)

        if customer_id is None:
            key = new_idempotency_key("customer", subscriber_id)
            customer_id = await self._call(
                "customer.create",
                subscriber_id,
                lambda: self.provider.create_customer(subscriber_id, idempotency_key=key),
            )
        resolved_customer = customer_id

        price_id = await self._price_id_for(definition, interval, subscriber_id)
        key = new_idempotency_key("subscription_create", subscriber_id)
        subscription = await self._call(
            "subscription.create",
            subscriber_id,
            lambda: self.provider.create_subscription(
                resolved_customer,
                price_id,
                metadata={
                    "subscriber_id": subscriber_id,
                    "tier": definition.id.value,
                    "interval": interval.value,
                },
                trial_days=trial_days,
                idempotency_key=key,
            ),
        )

        now = self.clock()
        record = transitions.open_subscription(
            subscriber_id=subscriber_id,
            customer_id=resolved_customer,
            provider_subscription_id=subscription.id,
            tier=definition.id,
            interval=interval,
            status=transitions.status_from_provider(subscription.status),
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            now=now,
        )
        try:
            async with session_scope(self.session_factory) as session:
                repo = BillingRepository(session)
                repo.add_record(record)
                self._record_invoice(
                    repo, subscriber_id, subscription.latest_invoice, "Subscription created", now
                )
                await session.flush()
                response = SubscriptionResponse.model_validate(record)
        except IntegrityError as exc:
            async with self.session_factory() as session:
                existing = await BillingRepository(session).get_by_provider_subscription_id(
                    subscription.id
                )
            if existing is not None:
                # The subscription.created webhook wrote the record first
                self.logger.info(
                    "subscription_created_by_webhook",
                    subscriber_id=subscriber_id,
                    provider_subscription_id=subscription.id,
                )
                return SubscriptionResponse.model_validate(existing)
            # Another writer opened a live subscription first
            await self._compensate_create(subscriber_id, subscription)
            raise ActiveSubscriptionExistsError(details={"subscriber_id": subscriber_id}) from exc

        self.logger.info(
            "subscription_created",
            subscriber_id=subscriber_id,
            tier=definition.id.value,
            interval=interval.value,
            status=response.status.value,
            provider_subscription_id=subscription.id,
        )
        return response

    async def _compensate_create(
        self, subscriber_id: str, subscription: ProviderSubscription
    ) -> None:
        key = new_idempotency_key("subscription_cancel", subscriber_id)
        try:
            await self._call(
                "subscription.cancel",
                subscriber_id,
                lambda: self.provider.cancel_subscription(subscription.id, idempotency_key=key),
            )
        except Exception as exc:
            self.logger.error(
                "orphaned_provider_subscription",
                subscriber_id=subscriber_id,
                provider_subscription_id=subscription.id,
                code=classify(exc).code.value,
            )

    def _record_invoice(
        self,
        repo: BillingRepository,
        subscriber_id: str,
        invoice: ProviderInvoice | None,
        description: str,
        now: datetime,
    ) -> None:
        if invoice is None:
            return
        amount = invoice.amount_paid if invoice.is_paid else invoice.amount_due
        if amount <= 0:
            return
        repo.add_payment_attempt(
            subscriber_id=subscriber_id,
            provider_invoice_id=invoice.id,
            amount=amount,
            currency=invoice.currency,
            status=PaymentAttemptStatus.SUCCEEDED if invoice.is_paid else PaymentAttemptStatus.FAILED,
            description=description,
            now=now,
        )

    # Tier changes

    async def upgrade(
        self,
        subscriber_id: str,
        new_tier: SubscriptionTier | str,
        interval: BillingInterval,
    ) -> BillingResult[SubscriptionResponse]:
        """Move to a higher tier, or switch interval on the same tier, with proration."""

        async def action() -> SubscriptionResponse:
            definition = self.catalog.tier_of(new_tier)
            record = await self._snapshot(subscriber_id)
            comparison = self.catalog.compare(record.tier, definition.id)
            if comparison is TierComparison.DOWNGRADE:
                raise InvalidTierChangeError(
                    "Use downgrade to move to a lower tier",
                    details={"current_tier": record.tier.value, "new_tier": definition.id.value},
                )
            if comparison is TierComparison.EQUAL and interval is record.interval:
                raise InvalidTierChangeError(
                    "Subscription is already on this plan",
                    details={"current_tier": record.tier.value, "interval": interval.value},
                )
            return await self._change_tier(record, definition, interval, "upgrade")

        return await self._guarded("upgrade", subscriber_id, action)

    async def _change_tier(
        self,
        record: SubscriptionRecord,
        definition: TierDefinition,
        interval: BillingInterval,
        operation: str,
    ) -> SubscriptionResponse:
        subscriber_id = record.subscriber_id
        subscription_id = self._require_changeable(record)
        previous_tier = record.tier

        await self._release_schedule(record)
        current = await self._call(
            "subscription.retrieve",
            subscriber_id,
            lambda: self.provider.retrieve_subscription(subscription_id),
        )
        if current.item_id is None:
            raise InvalidTransitionError(
                "Provider subscription has no billable item",
                details={"provider_subscription_id": subscription_id},
            )
        item_id = current.item_id

        price_id = await self._price_id_for(definition, interval, subscriber_id)
        key = new_idempotency_key(f"subscription_{operation}", subscriber_id)
        metadata = {**current.metadata, "tier": definition.id.value, "interval": interval.value}
        updated = await self._call(
            "subscription.update",
            subscriber_id,
            lambda: self.provider.update_subscription_price(
                subscription_id,
                item_id=item_id,
                price_id=price_id,
                metadata=metadata,
                idempotency_key=key,
            ),
        )

        invoice = updated.latest_invoice
        if invoice is not None and invoice.id == current.latest_invoice_id:
            invoice = None
        now = self.clock()

        def mutate(target: SubscriptionRecord, repo: BillingRepository) -> None:
            transitions.change_tier(
                target,
                tier=definition.id,
                interval=interval,
                status=transitions.status_from_provider(updated.status),
                period_start=updated.current_period_start,
                period_end=updated.current_period_end,
                now=now,
            )
            self._record_invoice(
                repo, subscriber_id, invoice, f"{operation.capitalize()} to {definition.name} plan", now
            )

        response = await self._write(record, mutate)
        self.logger.info(
            f"subscription_{operation}d",
            subscriber_id=subscriber_id,
            previous_tier=previous_tier.value,
            tier=definition.id.value,
            interval=interval.value,
        )
        return response

    async def downgrade(
        self,
        subscriber_id: str,
        new_tier: SubscriptionTier | str,
        interval: BillingInterval,
        *,
        immediate: bool = False,
    ) -> BillingResult[SubscriptionResponse]:
        """Move to a lower tier now, or at the end of the current period.

        A deferred downgrade succeeds without changing the record's tier: the
        result is flagged ``deferred`` and the change is recorded as pending
        until the provider confirms the phase transition by webhook.
        """

        async def action() -> SubscriptionResponse:
            definition = self.catalog.tier_of(new_tier)
            record = await self._snapshot(subscriber_id)
            comparison = self.catalog.compare(record.tier, definition.id)
            if comparison is TierComparison.UPGRADE:
                raise InvalidTierChangeError(
                    "Use upgrade to move to a higher tier",
                    details={"current_tier": record.tier.value, "new_tier": definition.id.value},
                )
            if comparison is TierComparison.EQUAL and interval is record.interval:
                raise InvalidTierChangeError(
                    "Subscription is already on this plan",
                    details={"current_tier": record.tier.value, "interval": interval.value},
                )
            if immediate:
                return await self._change_tier(record, definition, interval, "downgrade")
            return await self._schedule_downgrade(record, definition, interval)

        return await self._guarded(
            "downgrade", subscriber_id, action, deferred=not immediate
        )

    async def _schedule_downgrade(
        self,
        record: SubscriptionRecord,
        definition: TierDefinition,
        interval: BillingInterval,
    ) -> SubscriptionResponse:
        subscriber_id = record.subscriber_id
        subscription_id = self._require_changeable(record)

        await self._release_schedule(record)
        current = await self._call(
            "subscription.retrieve",
            subscriber_id,
            lambda: self.provider.retrieve_subscription(subscription_id),
        )
        period_start = current.current_period_start or record.current_period_start
        period_end = current.current_period_end or record.current_period_end
        if current.price is None or period_start is None or period_end is None:
            raise InvalidTransitionError(
                "Provider subscription has no current billing period",
                details={"provider_subscription_id": subscription_id},
            )
        current_price_id = current.price.id

        new_price_id = await self._price_id_for(definition, interval, subscriber_id)
        create_key = new_idempotency_key("schedule_create", subscriber_id)
        schedule = await self._call(
            "schedule.create",
            subscriber_id,
            lambda: self.provider.create_schedule_from_subscription(
                subscription_id, idempotency_key=create_key
            ),
        )
        update_key = new_idempotency_key("schedule_update", subscriber_id)
        await self._call(
            "schedule.update",
            subscriber_id,
            lambda: self.provider.update_schedule_phases(
                schedule.id,
                current_price_id=current_price_id,
                new_price_id=new_price_id,
                period_start=period_start,
                period_end=period_end,
                metadata={
                    "subscriber_id": subscriber_id,
                    "tier": definition.id.value,
                    "interval": interval.value,
                },
                idempotency_key=update_key,
            ),
        )

        now = self.clock()
        response = await self._write(
            record,
            lambda target, _repo: transitions.schedule_tier_change(
                target,
                tier=definition.id,
                interval=interval,
                effective_at=period_end,
                schedule_id=schedule.id,
                now=now,
            ),
        )
        self.logger.info(
            "subscription_downgrade_scheduled",
            subscriber_id=subscriber_id,
            tier=record.tier.value,
            pending_tier=definition.id.value,
            effective_at=period_end.isoformat(),
        )
        return response

    # Cancel and reactivate

    async def cancel(
        self,
        subscriber_id: str,
        *,
        at_period_end: bool = True,
    ) -> BillingResult[SubscriptionResponse]:
        """Cancel at the end of the period, or immediately with demotion to the lowest tier."""

        async def action() -> SubscriptionResponse:
            record = await self._snapshot(subscriber_id)
            if record.provider_subscription_id is None:
                raise InvalidTransitionError(
                    "Subscription has not been created with the provider",
                    details={"subscriber_id": subscriber_id},
                )
            subscription_id = record.provider_subscription_id
            await self._release_schedule(record)

            if at_period_end:
                key = new_idempotency_key("cancel_at_period_end", subscriber_id)
                await self._call(
                    "subscription.update",
                    subscriber_id,
                    lambda: self.provider.set_cancel_at_period_end(
                        subscription_id, True, idempotency_key=key
                    ),
                )
                now = self.clock()
                response = await self._write(
                    record,
                    lambda target, _repo: transitions.set_cancel_at_period_end(target, now=now),
                )
                self.logger.info(
                    "subscription_cancel_scheduled",
                    subscriber_id=subscriber_id,
                    current_period_end=record.current_period_end.isoformat()
                    if record.current_period_end
                    else None,
                )
                return response

            key = new_idempotency_key("subscription_cancel", subscriber_id)
            await self._call(
                "subscription.cancel",
                subscriber_id,
                lambda: self.provider.cancel_subscription(subscription_id, idempotency_key=key),
            )
            now = self.clock()
            response = await self._write(
                record,
                lambda target, _repo: transitions.cancel_now(target, canceled_at=now, now=now),
            )
            self.logger.info(
                "subscription_canceled",
                subscriber_id=subscriber_id,
                previous_tier=record.tier.value,
            )
            return response

        return await self._guarded("cancel", subscriber_id, action)

    async def reactivate(self, subscriber_id: str) -> BillingResult[SubscriptionResponse]:
        """Undo a period-end cancellation before the period elapses."""

        async def action() -> SubscriptionResponse:
            record = await self._snapshot(subscriber_id, live_only=False)
            transitions.ensure_reactivatable(record, now=self.clock())
            if record.provider_subscription_id is None:
                raise InvalidTransitionError(
                    "Subscription has not been created with the provider",
                    details={"subscriber_id": subscriber_id},
                )
            subscription_id = record.provider_subscription_id

            key = new_idempotency_key("reactivate", subscriber_id)
            updated = await self._call(
                "subscription.update",
                subscriber_id,
                lambda: self.provider.set_cancel_at_period_end(
                    subscription_id, False, idempotency_key=key
                ),
            )
            status = transitions.status_from_provider(updated.status)
            if status not in LIVE_STATUSES:
                status = SubscriptionStatus.ACTIVE

            now = self.clock()
            response = await self._write(
                record,
                lambda target, _repo: transitions.reactivate(target, status=status, now=now),
            )
            self.logger.info(
                "subscription_reactivated",
                subscriber_id=subscriber_id,
                tier=record.tier.value,
                status=status.value,
            )
            return response

        return await self._guarded("reactivate", subscriber_id, action)

    # Dunning

    async def retry_invoice_payment(
        self, invoice_id: str
    ) -> BillingResult[PaymentAttemptResponse | None]:
        """Try to collect a failed invoice again.

        Appends a PaymentAttempt either way and restores ``active`` from
        ``past_due`` on success. Returns ``None`` data when the invoice was
        already paid.
        """
        try:
            invoice = await self._call(
                "invoice.retrieve",
                None,
                lambda: self.provider.retrieve_invoice(invoice_id),
            )
            if invoice.subscription_id is None:
                raise SubscriptionNotFoundError(
                    "Invoice is not linked to a subscription",
                    resource_type="subscription",
                    details={"invoice_id": invoice_id},
                )
            async with self.session_factory() as session:
                record = await BillingRepository(session).get_by_provider_subscription_id(
                    invoice.subscription_id
                )
            if record is None:
                raise SubscriptionNotFoundError(
                    resource_type="subscription", resource_id=invoice.subscription_id
                )
        except Exception as exc:
            error = classify(exc)
            track_operation("retry_invoice_payment", error.code.value)
            return BillingResult.fail(error)

        return await self._guarded(
            "retry_invoice_payment",
            record.subscriber_id,
            lambda: self._retry_invoice_payment(record.subscriber_id, invoice),
        )

    async def _retry_invoice_payment(
        self, subscriber_id: str, invoice: ProviderInvoice
    ) -> PaymentAttemptResponse | None:
        if invoice.is_paid:
            self.logger.info(
                "invoice_already_paid", subscriber_id=subscriber_id, invoice_id=invoice.id
            )
            return None

        key = new_idempotency_key("invoice_pay", subscriber_id)
        try:
            paid = await self._call(
                "invoice.pay",
                subscriber_id,
                lambda: self.provider.pay_invoice(invoice.id, idempotency_key=key),
            )
        except Exception as exc:
            error = classify(exc)
            async with session_scope(self.session_factory) as session:
                BillingRepository(session).add_payment_attempt(
                    subscriber_id=subscriber_id,
                    provider_invoice_id=invoice.id,
                    amount=0,
                    currency=invoice.currency,
                    status=PaymentAttemptStatus.FAILED,
                    description=f"Payment retry failed: {error.message}",
                    now=self.clock(),
                )
            self.logger.warning(
                "payment_retry_failed",
                subscriber_id=subscriber_id,
                invoice_id=invoice.id,
                code=error.code.value,
            )
            raise

        now = self.clock()
        async with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            attempt = repo.add_payment_attempt(
                subscriber_id=subscriber_id,
                provider_invoice_id=paid.id,
                amount=paid.amount_paid,
                currency=paid.currency,
                status=PaymentAttemptStatus.SUCCEEDED,
                description="Payment retry successful",
                now=now,
            )
            record = await repo.get_live_record(subscriber_id)
            if record is not None and record.status is SubscriptionStatus.PAST_DUE:
                transitions.set_status(record, SubscriptionStatus.ACTIVE, now=now)
            await session.flush()
            response = PaymentAttemptResponse.model_validate(attempt)

        self.logger.info(
            "payment_retry_succeeded",
            subscriber_id=subscriber_id,
            invoice_id=paid.id,
            amount=paid.amount_paid,
        )
        return response
