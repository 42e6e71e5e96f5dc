"""Pydantic schemas returned across the billing engine boundary."""

import enum
from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field

from wayfare.billing.exceptions import PaymentErrorDetails
from wayfare.billing.models import PaymentAttemptStatus, SubscriptionStatus
from wayfare.billing.tiers import BillingInterval, SubscriptionTier

T = TypeVar("T")


class SubscriptionResponse(BaseModel):
    """Snapshot of a subscription record."""

    id: UUID
    subscriber_id: str
    provider_customer_id: str | None = None
    provider_subscription_id: str | None = None
    tier: SubscriptionTier
    interval: BillingInterval
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    pending_tier: SubscriptionTier | None = None
    pending_interval: BillingInterval | None = None
    pending_effective_at: datetime | None = None
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PaymentAttemptResponse(BaseModel):
    """Schema for a payment attempt entry."""

    id: UUID
    subscriber_id: str
    provider_invoice_id: str | None = None
    amount: int
    currency: str
    status: PaymentAttemptStatus
    description: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class WebhookEventResponse(BaseModel):
    """Schema for a stored webhook event."""

    id: UUID
    provider_event_id: str
    event_type: str
    processed: bool
    processing_attempts: int
    last_processing_attempt: datetime | None = None
    error_message: str | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = {"from_attributes": True}


class ProrationPreview(BaseModel):
    """Projected charge or credit for a tier/interval change.

    Amounts are in minor units of ``currency``. A negative
    ``proration_amount`` is a credit.
    """

    current_tier: SubscriptionTier
    new_tier: SubscriptionTier
    interval: BillingInterval
    is_upgrade: bool
    proration_amount: int
    next_billing_date: datetime | None
    immediate_charge: bool
    credit_amount: int = Field(..., ge=0)
    new_monthly_price: int
    new_billing_amount: int
    currency: str


class BillingResult(BaseModel, Generic[T]):
    """Outcome of a public engine operation.

    Exactly one of ``data`` and ``error`` is set. ``deferred`` marks a success
    that did not change the local record's tier yet.
    """

    success: bool
    data: T | None = None
    error: PaymentErrorDetails | None = None
    deferred: bool = False

    @classmethod
    def ok(cls, data: T, *, deferred: bool = False) -> "BillingResult[T]":
        return cls(success=True, data=data, deferred=deferred)

    @classmethod
    def fail(cls, error: PaymentErrorDetails) -> "BillingResult[T]":
        return cls(success=False, error=error)


class IngestStatus(str, enum.Enum):
    """Outcome of a webhook delivery."""

    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class IngestResult(BaseModel):
    """Result of ingesting one webhook delivery."""

    status: IngestStatus
    provider_event_id: str
    event_type: str
    attempts: int = 0
    error: PaymentErrorDetails | None = None


class RefundResponse(BaseModel):
    """Schema for a refund issued by an administrator."""

    id: str
    invoice_id: str
    amount: int
    currency: str
    status: str | None = None
