"""Proration previews for tier and interval changes."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wayfare.billing.exceptions import InvalidTransitionError, SubscriptionNotFoundError
from wayfare.billing.payment_errors import classify
from wayfare.billing.provider import BillingProvider, ProviderPrice, new_idempotency_key
from wayfare.billing.repository import BillingRepository
from wayfare.billing.retry import OperationContext, RetryExecutor
from wayfare.billing.schemas import BillingResult, ProrationPreview
from wayfare.billing.tiers import BillingInterval, SubscriptionTier, TierCatalog, TierDefinition
from wayfare.core.logging import LoggerMixin
from wayfare.models.base import utcnow


class ProrationCalculator(LoggerMixin):
    """Asks the provider what a plan change would cost, without committing it."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: BillingProvider,
        catalog: TierCatalog,
        retry: RetryExecutor,
        *,
        currency: str = "usd",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.provider = provider
        self.catalog = catalog
        self.retry = retry
        self.currency = currency
        self.clock = clock

    @asynccontextmanager
    async def _temporary_price(
        self,
        tier: TierDefinition,
        interval: BillingInterval,
        subscriber_id: str,
    ) -> AsyncIterator[ProviderPrice]:
        """Create a throwaway provider price and always deactivate it."""
        key = new_idempotency_key("preview_price", subscriber_id)
        price = await self.retry.execute(
            lambda: self.provider.create_price(
                tier, interval, currency=self.currency, idempotency_key=key, preview=True
            ),
            OperationContext("preview_price.create", subscriber_id),
        )
        try:
            yield price
        finally:
            try:
                await self.retry.execute(
                    lambda: self.provider.deactivate_price(price.id),
                    OperationContext("preview_price.deactivate", subscriber_id),
                )
            except Exception as exc:
                self.logger.error(
                    "preview_price_cleanup_failed",
                    subscriber_id=subscriber_id,
                    price_id=price.id,
                    code=classify(exc).code.value,
                )

    async def calculate(
        self,
        subscriber_id: str,
        new_tier: SubscriptionTier | str,
        interval: BillingInterval,
    ) -> ProrationPreview:
        """Compute the preview, raising on failure.

        Raises:
            SubscriptionNotFoundError: If the subscriber has no live subscription
            TierNotFoundError: If ``new_tier`` is not in the catalog
        """
        new_definition = self.catalog.tier_of(new_tier)

        async with self.session_factory() as session:
            record = await BillingRepository(session).get_live_record(subscriber_id)
        if record is None:
            raise SubscriptionNotFoundError(resource_type="subscription", resource_id=subscriber_id)
        if record.provider_subscription_id is None:
            raise InvalidTransitionError(
                "Subscription has not been created with the provider",
                details={"subscriber_id": subscriber_id},
            )

        current_definition = self.catalog.tier_of(record.tier)
        subscription_id = record.provider_subscription_id
        subscription = await self.retry.execute(
            lambda: self.provider.retrieve_subscription(subscription_id),
            OperationContext("subscription.retrieve", subscriber_id),
        )
        if subscription.item_id is None or subscription.customer_id is None:
            raise InvalidTransitionError(
                "Provider subscription has no billable item",
                details={"provider_subscription_id": subscription_id},
            )
        item_id = subscription.item_id
        customer_id = subscription.customer_id

        async with self._temporary_price(new_definition, interval, subscriber_id) as price:
            invoice = await self.retry.execute(
                lambda: self.provider.preview_invoice(
                    customer_id, subscription_id, item_id=item_id, price_id=price.id
                ),
                OperationContext("invoice.preview", subscriber_id),
            )

        is_upgrade = new_definition.monthly_price > current_definition.monthly_price
        # An upgrade never reports a credit, even when unused time outweighs the charge
        amount = invoice.amount_due if is_upgrade else invoice.total
        return ProrationPreview(
            current_tier=current_definition.id,
            new_tier=new_definition.id,
            interval=interval,
            is_upgrade=is_upgrade,
            proration_amount=amount,
            next_billing_date=subscription.current_period_end or invoice.period_end,
            immediate_charge=amount > 0,
            credit_amount=max(0, -amount),
            new_monthly_price=new_definition.monthly_equivalent(interval),
            new_billing_amount=new_definition.price_for(interval),
            currency=invoice.currency or self.currency,
        )

    async def preview(
        self,
        subscriber_id: str,
        new_tier: SubscriptionTier | str,
        interval: BillingInterval,
    ) -> BillingResult[ProrationPreview]:
        """Preview a plan change. Never raises."""
        try:
            preview = await self.calculate(subscriber_id, new_tier, interval)
        except Exception as exc:
            error = classify(exc)
            self.logger.warning(
                "proration_preview_failed",
                subscriber_id=subscriber_id,
                new_tier=getattr(new_tier, "value", new_tier),
                code=error.code.value,
            )
            return BillingResult.fail(error)

        self.logger.info(
            "proration_previewed",
            subscriber_id=subscriber_id,
            current_tier=preview.current_tier.value,
            new_tier=preview.new_tier.value,
            proration_amount=preview.proration_amount,
        )
        return BillingResult.ok(preview)
