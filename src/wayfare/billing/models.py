"""Billing persistence models."""

import enum
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Enum,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from wayfare.billing.tiers import BillingInterval, SubscriptionTier
from wayfare.models.base import Base, TimestampMixin, UTCDateTime, utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


class SubscriptionStatus(str, enum.Enum):
    """Subscription status enum."""

    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    CANCELED = "canceled"


# Statuses that count as the subscriber's one live subscription
LIVE_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.INCOMPLETE,
    }
)

_LIVE_STATUS_CLAUSE = text("status IN ('trialing', 'active', 'past_due', 'incomplete')")


class PaymentAttemptStatus(str, enum.Enum):
    """Payment attempt status enum."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x])


class SubscriptionRecord(Base, TimestampMixin):
    """Local mirror of a provider subscription.

    Fields are written only through ``wayfare.billing.transitions``.
    """

    __tablename__ = "subscription_records"
    __table_args__ = (
        Index(
            "uq_subscription_records_live_subscriber",
            "subscriber_id",
            unique=True,
            postgresql_where=_LIVE_STATUS_CLAUSE,
            sqlite_where=_LIVE_STATUS_CLAUSE,
        ),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    subscriber_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    provider_customer_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    provider_subscription_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
    )
    tier: Mapped[SubscriptionTier] = mapped_column(
        _enum(SubscriptionTier, "subscription_tier"),
        nullable=False,
    )
    interval: Mapped[BillingInterval] = mapped_column(
        _enum(BillingInterval, "billing_interval"),
        nullable=False,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum(SubscriptionStatus, "subscription_status"),
        nullable=False,
        default=SubscriptionStatus.NONE,
        index=True,
    )
    current_period_start: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(
        default=False,
        nullable=False,
    )
    canceled_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    # Deferred tier change awaiting provider confirmation
    pending_tier: Mapped[SubscriptionTier | None] = mapped_column(
        _enum(SubscriptionTier, "subscription_tier"),
        nullable=True,
    )
    pending_interval: Mapped[BillingInterval | None] = mapped_column(
        _enum(BillingInterval, "billing_interval"),
        nullable=True,
    )
    pending_effective_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    provider_schedule_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def has_pending_change(self) -> bool:
        return self.pending_tier is not None

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(subscriber_id={self.subscriber_id}, "
            f"tier={self.tier.value}, status={self.status.value})>"
        )


class PaymentAttempt(Base):
    """Append-only log of payment outcomes."""

    __tablename__ = "payment_attempts"

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    subscriber_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    provider_invoice_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )
    status: Mapped[PaymentAttemptStatus] = mapped_column(
        _enum(PaymentAttemptStatus, "payment_attempt_status"),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentAttempt(subscriber_id={self.subscriber_id}, "
            f"amount={self.amount}, status={self.status.value})>"
        )


class WebhookEvent(Base, TimestampMixin):
    """A received provider notification and its processing state."""

    __tablename__ = "webhook_events"

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    provider_event_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
    )
    event_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    processed: Mapped[bool] = mapped_column(
        default=False,
        nullable=False,
        index=True,
    )
    processing_attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    last_processing_attempt: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    raw_payload: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(provider_event_id={self.provider_event_id}, "
            f"event_type={self.event_type}, processed={self.processed})>"
        )


class AdminAuditLog(Base):
    """Record of an administrative billing action."""

    __tablename__ = "admin_audit_log"

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    actor_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    action: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    resource_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    resource_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    details: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
        index=True,
    )
