"""Payment provider adapter.

``BillingProvider`` is the engine's view of the recurring-payments provider.
``StripeBillingProvider`` implements it on ``stripe.StripeClient``. Provider
objects are parsed into frozen dataclasses; the parsers accept plain
mappings so webhook payloads go through the same code.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, TypeVar
from uuid import uuid4

import stripe

from wayfare.billing.exceptions import WebhookSignatureError
from wayfare.billing.tiers import (
    BillingInterval,
    SubscriptionTier,
    TierDefinition,
    tier_for_amount,
)
from wayfare.core.config import Settings
from wayfare.core.logging import LoggerMixin
from wayfare.core.metrics import time_provider_call

T = TypeVar("T")


def new_idempotency_key(operation: str, subscriber_id: str | None = None) -> str:
    """Key shared by every retry attempt of one logical provider call."""
    scope = f"{operation}:{subscriber_id}" if subscriber_id else operation
    return f"wayfare:{scope}:{uuid4().hex}"


def from_timestamp(value: Any) -> datetime | None:
    """Convert a provider unix timestamp to an aware datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _id_of(value: Any) -> str | None:
    """Id of a field that may be a plain id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return value.get("id")
    return getattr(value, "id", None)


def _as_dict(obj: Any) -> dict[str, Any]:
    if isinstance(obj, Mapping) and not hasattr(obj, "to_dict"):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


@dataclass(frozen=True)
class ProviderPrice:
    id: str
    unit_amount: int | None
    currency: str
    interval: BillingInterval | None = None
    tier: SubscriptionTier | None = None
    active: bool = True

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> ProviderPrice:
        recurring = data.get("recurring") or {}
        interval = {"year": BillingInterval.YEARLY, "month": BillingInterval.MONTHLY}.get(
            recurring.get("interval", "")
        )
        metadata = data.get("metadata") or {}
        return cls(
            id=data["id"],
            unit_amount=data.get("unit_amount"),
            currency=data.get("currency") or "usd",
            interval=interval or _parse_interval(metadata.get("interval")),
            tier=_parse_tier(metadata.get("tier")),
            active=bool(data.get("active", True)),
        )

    @property
    def monthly_amount(self) -> int | None:
        if self.unit_amount is None:
            return None
        if self.interval is BillingInterval.YEARLY:
            return self.unit_amount // 12
        return self.unit_amount


@dataclass(frozen=True)
class ProviderInvoice:
    id: str
    status: str | None
    amount_due: int
    amount_paid: int
    total: int
    currency: str
    subscription_id: str | None = None
    customer_id: str | None = None
    billing_reason: str | None = None
    period_end: datetime | None = None
    next_payment_attempt: datetime | None = None
    attempt_count: int = 0

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> ProviderInvoice:
        return cls(
            id=data.get("id") or "",
            status=data.get("status"),
            amount_due=int(data.get("amount_due") or 0),
            amount_paid=int(data.get("amount_paid") or 0),
            total=int(data.get("total") or 0),
            currency=data.get("currency") or "usd",
            subscription_id=invoice_subscription_id(data),
            customer_id=_id_of(data.get("customer")),
            billing_reason=data.get("billing_reason"),
            period_end=from_timestamp(data.get("period_end")),
            next_payment_attempt=from_timestamp(data.get("next_payment_attempt")),
            attempt_count=int(data.get("attempt_count") or 0),
        )

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"


@dataclass(frozen=True)
class ProviderSubscription:
    id: str
    status: str
    customer_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    item_id: str | None
    price: ProviderPrice | None
    metadata: Mapping[str, str] = field(default_factory=dict)
    schedule_id: str | None = None
    latest_invoice_id: str | None = None
    latest_invoice: ProviderInvoice | None = None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> ProviderSubscription:
        items = (data.get("items") or {}).get("data") or []
        first_item: Mapping[str, Any] = items[0] if items else {}
        price_data = first_item.get("price")
        latest_invoice = data.get("latest_invoice")

        # Newer API versions moved the billing period onto the items
        period_start = data.get("current_period_start") or first_item.get("current_period_start")
        period_end = data.get("current_period_end") or first_item.get("current_period_end")

        return cls(
            id=data["id"],
            status=data.get("status") or "incomplete",
            customer_id=_id_of(data.get("customer")),
            current_period_start=from_timestamp(period_start),
            current_period_end=from_timestamp(period_end),
            cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
            item_id=first_item.get("id"),
            price=ProviderPrice.from_payload(price_data)
            if isinstance(price_data, Mapping)
            else None,
            metadata=dict(data.get("metadata") or {}),
            schedule_id=_id_of(data.get("schedule")),
            latest_invoice_id=_id_of(latest_invoice),
            latest_invoice=ProviderInvoice.from_payload(latest_invoice)
            if isinstance(latest_invoice, Mapping)
            else None,
        )

    @property
    def subscriber_id(self) -> str | None:
        return self.metadata.get("subscriber_id")

    def resolve_tier(self) -> SubscriptionTier:
        """Tier from price metadata, then subscription metadata, then amount."""
        if self.price is not None and self.price.tier is not None:
            return self.price.tier
        tier = _parse_tier(self.metadata.get("tier"))
        if tier is not None:
            return tier
        return tier_for_amount(self.price.monthly_amount if self.price else None)

    def resolve_interval(self) -> BillingInterval:
        if self.price is not None and self.price.interval is not None:
            return self.price.interval
        return _parse_interval(self.metadata.get("interval")) or BillingInterval.MONTHLY


@dataclass(frozen=True)
class ProviderSchedule:
    id: str
    status: str | None
    subscription_id: str | None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> ProviderSchedule:
        return cls(
            id=data["id"],
            status=data.get("status"),
            subscription_id=_id_of(data.get("subscription")),
        )


@dataclass(frozen=True)
class ProviderRefund:
    id: str
    amount: int
    currency: str
    status: str | None


def invoice_subscription_id(data: Mapping[str, Any]) -> str | None:
    """Subscription id of an invoice payload, across API versions."""
    direct = _id_of(data.get("subscription"))
    if direct:
        return direct
    parent = data.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _id_of(details.get("subscription"))


def _parse_tier(value: Any) -> SubscriptionTier | None:
    try:
        return SubscriptionTier(value) if value else None
    except ValueError:
        return None


def _parse_interval(value: Any) -> BillingInterval | None:
    try:
        return BillingInterval(value) if value else None
    except ValueError:
        return None


class BillingProvider(Protocol):
    """Operations the engine needs from the payment provider.

    Mutating operations take an idempotency key; callers reuse the same key
    for every retry attempt of one logical call.
    """

    async def create_customer(self, subscriber_id: str, *, idempotency_key: str) -> str: ...

    async def create_price(
        self,
        tier: TierDefinition,
        interval: BillingInterval,
        *,
        currency: str,
        idempotency_key: str,
        preview: bool = False,
    ) -> ProviderPrice: ...

    async def deactivate_price(self, price_id: str) -> None: ...

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        *,
        metadata: Mapping[str, str],
        trial_days: int,
        idempotency_key: str,
    ) -> ProviderSubscription: ...

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription: ...

    async def update_subscription_price(
        self,
        subscription_id: str,
        *,
        item_id: str,
        price_id: str,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> ProviderSubscription: ...

    async def cancel_subscription(
        self, subscription_id: str, *, idempotency_key: str
    ) -> ProviderSubscription: ...

    async def set_cancel_at_period_end(
        self, subscription_id: str, cancel: bool, *, idempotency_key: str
    ) -> ProviderSubscription: ...

    async def create_schedule_from_subscription(
        self, subscription_id: str, *, idempotency_key: str
    ) -> ProviderSchedule: ...

    async def update_schedule_phases(
        self,
        schedule_id: str,
        *,
        current_price_id: str,
        new_price_id: str,
        period_start: datetime,
        period_end: datetime,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> ProviderSchedule: ...

    async def release_schedule(self, schedule_id: str, *, idempotency_key: str) -> None: ...

    async def preview_invoice(
        self,
        customer_id: str,
        subscription_id: str,
        *,
        item_id: str,
        price_id: str,
    ) -> ProviderInvoice: ...

    async def retrieve_invoice(self, invoice_id: str) -> ProviderInvoice: ...

    async def pay_invoice(self, invoice_id: str, *, idempotency_key: str) -> ProviderInvoice: ...

    async def refund_invoice(
        self, invoice_id: str, *, amount: int | None, idempotency_key: str
    ) -> ProviderRefund: ...

    def construct_event(self, payload: bytes, signature: str) -> dict[str, Any]: ...


class StripeBillingProvider(LoggerMixin):
    """``BillingProvider`` backed by the Stripe API."""

    def __init__(
        self,
        client: stripe.StripeClient,
        *,
        webhook_secret: str,
        timeout: float = 20.0,
    ) -> None:
        """Initialize the adapter.

        Args:
            client: Configured Stripe client
            webhook_secret: Signing secret of the webhook endpoint
            timeout: Upper bound in seconds for each provider call
        """
        self.client = client
        self.webhook_secret = webhook_secret
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> StripeBillingProvider:
        client = stripe.StripeClient(
            settings.stripe_secret_key,
            stripe_version=settings.stripe_api_version,
            # Retries are owned by the engine's retry executor
            max_network_retries=0,
            http_client=stripe.HTTPXClient(timeout=settings.provider_timeout_seconds),
        )
        return cls(
            client,
            webhook_secret=settings.stripe_webhook_secret,
            timeout=settings.provider_timeout_seconds,
        )

    async def _call(self, name: str, request: Callable[[], Awaitable[T]]) -> T:
        with time_provider_call(name):
            async with asyncio.timeout(self.timeout):
                return await request()

    @staticmethod
    def _options(idempotency_key: str | None) -> dict[str, Any]:
        return {"idempotency_key": idempotency_key} if idempotency_key else {}

    async def create_customer(self, subscriber_id: str, *, idempotency_key: str) -> str:
        customer = await self._call(
            "customers.create",
            lambda: self.client.v1.customers.create_async(
                params={"metadata": {"subscriber_id": subscriber_id}},
                options=self._options(idempotency_key),
            ),
        )
        self.logger.info(
            "provider_customer_created",
            subscriber_id=subscriber_id,
            customer_id=customer.id,
        )
        return customer.id

    async def create_price(
        self,
        tier: TierDefinition,
        interval: BillingInterval,
        *,
        currency: str,
        idempotency_key: str,
        preview: bool = False,
    ) -> ProviderPrice:
        suffix = " (Preview)" if preview else ""
        params: dict[str, Any] = {
            "currency": currency,
            "unit_amount": tier.price_for(interval),
            "recurring": {"interval": interval.provider_interval},
            "product_data": {
                "name": f"{tier.name} Plan{suffix}",
                "metadata": {"tier": tier.id.value},
            },
            "metadata": {"tier": tier.id.value, "interval": interval.value},
        }
        price = await self._call(
            "prices.create",
            lambda: self.client.v1.prices.create_async(
                params=params, options=self._options(idempotency_key)
            ),
        )
        return ProviderPrice.from_payload(_as_dict(price))

    async def deactivate_price(self, price_id: str) -> None:
        await self._call(
            "prices.update",
            lambda: self.client.v1.prices.update_async(price_id, params={"active": False}),
        )

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        *,
        metadata: Mapping[str, str],
        trial_days: int,
        idempotency_key: str,
    ) -> ProviderSubscription:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": dict(metadata),
            "payment_behavior": "allow_incomplete",
            "expand": ["latest_invoice"],
        }
        if trial_days > 0:
            params["trial_period_days"] = trial_days
        subscription = await self._call(
            "subscriptions.create",
            lambda: self.client.v1.subscriptions.create_async(
                params=params, options=self._options(idempotency_key)
            ),
        )
        return ProviderSubscription.from_payload(_as_dict(subscription))

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        subscription = await self._call(
            "subscriptions.retrieve",
            lambda: self.client.v1.subscriptions.retrieve_async(subscription_id),
        )
        return ProviderSubscription.from_payload(_as_dict(subscription))

    async def update_subscription_price(
        self,
        subscription_id: str,
        *,
        item_id: str,
        price_id: str,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> ProviderSubscription:
        params = {
            "items": [{"id": item_id, "price": price_id}],
            "metadata": dict(metadata),
            "proration_behavior": "create_prorations",
            "expand": ["latest_invoice"],
        }
        subscription = await self._call(
            "subscriptions.update",
            lambda: self.client.v1.subscriptions.update_async(
                subscription_id, params=params, options=self._options(idempotency_key)
            ),
        )
        return ProviderSubscription.from_payload(_as_dict(subscription))

    async def cancel_subscription(
        self, subscription_id: str, *, idempotency_key: str
    ) -> ProviderSubscription:
        subscription = await self._call(
            "subscriptions.cancel",
            lambda: self.client.v1.subscriptions.cancel_async(
                subscription_id, options=self._options(idempotency_key)
            ),
        )
        return ProviderSubscription.from_payload(_as_dict(subscription))

    async def set_cancel_at_period_end(
        self, subscription_id: str, cancel: bool, *, idempotency_key: str
    ) -> ProviderSubscription:
        subscription = await self._call(
            "subscriptions.update",
            lambda: self.client.v1.subscriptions.update_async(
                subscription_id,
                params={"cancel_at_period_end": cancel},
                options=self._options(idempotency_key),
            ),
        )
        return ProviderSubscription.from_payload(_as_dict(subscription))

    async def create_schedule_from_subscription(
        self, subscription_id: str, *, idempotency_key: str
    ) -> ProviderSchedule:
        schedule = await self._call(
            "subscription_schedules.create",
            lambda: self.client.v1.subscription_schedules.create_async(
                params={"from_subscription": subscription_id},
                options=self._options(idempotency_key),
            ),
        )
        return ProviderSchedule.from_payload(_as_dict(schedule))

    async def update_schedule_phases(
        self,
        schedule_id: str,
        *,
        current_price_id: str,
        new_price_id: str,
        period_start: datetime,
        period_end: datetime,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> ProviderSchedule:
        params = {
            "end_behavior": "release",
            "phases": [
                {
                    "items": [{"price": current_price_id, "quantity": 1}],
                    "start_date": int(period_start.timestamp()),
                    "end_date": int(period_end.timestamp()),
                },
                {
                    "items": [{"price": new_price_id, "quantity": 1}],
                    "start_date": int(period_end.timestamp()),
                    "metadata": dict(metadata),
                },
            ],
        }
        schedule = await self._call(
            "subscription_schedules.update",
            lambda: self.client.v1.subscription_schedules.update_async(
                schedule_id, params=params, options=self._options(idempotency_key)
            ),
        )
        return ProviderSchedule.from_payload(_as_dict(schedule))

    async def release_schedule(self, schedule_id: str, *, idempotency_key: str) -> None:
        await self._call(
            "subscription_schedules.release",
            lambda: self.client.v1.subscription_schedules.release_async(
                schedule_id, options=self._options(idempotency_key)
            ),
        )

    async def preview_invoice(
        self,
        customer_id: str,
        subscription_id: str,
        *,
        item_id: str,
        price_id: str,
    ) -> ProviderInvoice:
        params = {
            "customer": customer_id,
            "subscription": subscription_id,
            "subscription_details": {
                "items": [{"id": item_id, "price": price_id}],
                "proration_behavior": "create_prorations",
            },
        }
        invoice = await self._call(
            "invoices.create_preview",
            lambda: self.client.v1.invoices.create_preview_async(params=params),
        )
        return ProviderInvoice.from_payload(_as_dict(invoice))

    async def retrieve_invoice(self, invoice_id: str) -> ProviderInvoice:
        invoice = await self._call(
            "invoices.retrieve",
            lambda: self.client.v1.invoices.retrieve_async(invoice_id),
        )
        return ProviderInvoice.from_payload(_as_dict(invoice))

    async def pay_invoice(self, invoice_id: str, *, idempotency_key: str) -> ProviderInvoice:
        invoice = await self._call(
            "invoices.pay",
            lambda: self.client.v1.invoices.pay_async(
                invoice_id, options=self._options(idempotency_key)
            ),
        )
        return ProviderInvoice.from_payload(_as_dict(invoice))

    async def refund_invoice(
        self, invoice_id: str, *, amount: int | None, idempotency_key: str
    ) -> ProviderRefund:
        payments = await self._call(
            "invoice_payments.list",
            lambda: self.client.v1.invoice_payments.list_async(
                params={"invoice": invoice_id, "status": "paid", "limit": 1}
            ),
        )
        if not payments.data:
            raise stripe.InvalidRequestError(
                f"No such invoice payment for invoice: '{invoice_id}'",
                "invoice",
                code="resource_missing",
            )
        payment = _as_dict(payments.data[0]).get("payment") or {}

        params: dict[str, Any] = {"payment_intent": _id_of(payment.get("payment_intent"))}
        if amount is not None:
            params["amount"] = amount
        refund = await self._call(
            "refunds.create",
            lambda: self.client.v1.refunds.create_async(
                params=params, options=self._options(idempotency_key)
            ),
        )
        return ProviderRefund(
            id=refund.id,
            amount=refund.amount,
            currency=refund.currency,
            status=refund.status,
        )

    def construct_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify a webhook signature and parse the event.

        Raises:
            WebhookSignatureError: If the signature or payload is invalid
        """
        try:
            event = self.client.construct_event(payload, signature, self.webhook_secret)
        except (stripe.SignatureVerificationError, ValueError) as exc:
            raise WebhookSignatureError(str(exc)) from exc
        return _as_dict(event)
