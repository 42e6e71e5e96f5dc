"""Data access for billing records."""

from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from wayfare.billing.exceptions import ConcurrencyConflictError, SubscriptionNotFoundError
from wayfare.billing.models import (
    LIVE_STATUSES,
    AdminAuditLog,
    PaymentAttempt,
    PaymentAttemptStatus,
    SubscriptionRecord,
    WebhookEvent,
)


class BillingRepository:
    """Queries and writes against one session.

    The repository never commits; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # Subscription records

    async def get_live_record(self, subscriber_id: str) -> SubscriptionRecord | None:
        result = await self.session.execute(
            select(SubscriptionRecord).where(
                SubscriptionRecord.subscriber_id == subscriber_id,
                SubscriptionRecord.status.in_(LIVE_STATUSES),
            ),
        )
        return result.scalar_one_or_none()

    async def get_current_record(self, subscriber_id: str) -> SubscriptionRecord | None:
        """The live record, or else the most recently updated one."""
        live = await self.get_live_record(subscriber_id)
        if live is not None:
            return live
        result = await self.session.execute(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.subscriber_id == subscriber_id)
            .order_by(SubscriptionRecord.updated_at.desc())
            .limit(1),
        )
        return result.scalar_one_or_none()

    async def get_by_provider_subscription_id(
        self, provider_subscription_id: str
    ) -> SubscriptionRecord | None:
        result = await self.session.execute(
            select(SubscriptionRecord).where(
                SubscriptionRecord.provider_subscription_id == provider_subscription_id,
            ),
        )
        return result.scalar_one_or_none()

    async def get_provider_customer_id(self, subscriber_id: str) -> str | None:
        """Customer id from any earlier record of the subscriber."""
        result = await self.session.execute(
            select(SubscriptionRecord.provider_customer_id)
            .where(
                SubscriptionRecord.subscriber_id == subscriber_id,
                SubscriptionRecord.provider_customer_id.is_not(None),
            )
            .order_by(SubscriptionRecord.created_at.desc())
            .limit(1),
        )
        return result.scalar_one_or_none()

    async def load_for_write(self, record_id: UUID, expected_version: int) -> SubscriptionRecord:
        """Re-read a record inside a write transaction.

        Raises:
            SubscriptionNotFoundError: If the record no longer exists
            ConcurrencyConflictError: If it changed since ``expected_version``
        """
        record = await self.session.get(SubscriptionRecord, record_id, populate_existing=True)
        if record is None:
            raise SubscriptionNotFoundError(resource_type="subscription", resource_id=str(record_id))
        if record.version != expected_version:
            raise ConcurrencyConflictError(
                details={
                    "subscriber_id": record.subscriber_id,
                    "expected_version": expected_version,
                    "actual_version": record.version,
                },
            )
        return record

    def add_record(self, record: SubscriptionRecord) -> None:
        self.session.add(record)

    # Payment attempts

    def add_payment_attempt(
        self,
        *,
        subscriber_id: str,
        provider_invoice_id: str | None,
        amount: int,
        currency: str,
        status: PaymentAttemptStatus,
        description: str,
        now: datetime,
    ) -> PaymentAttempt:
        attempt = PaymentAttempt(
            subscriber_id=subscriber_id,
            provider_invoice_id=provider_invoice_id,
            amount=amount,
            currency=currency,
            status=status,
            description=description,
            created_at=now,
        )
        self.session.add(attempt)
        return attempt

    async def has_payment_attempt(
        self, provider_invoice_id: str, status: PaymentAttemptStatus
    ) -> bool:
        result = await self.session.execute(
            select(PaymentAttempt.id)
            .where(
                PaymentAttempt.provider_invoice_id == provider_invoice_id,
                PaymentAttempt.status == status,
            )
            .limit(1),
        )
        return result.scalar_one_or_none() is not None

    async def list_payment_attempts(
        self, subscriber_id: str, *, limit: int = 50, offset: int = 0
    ) -> Sequence[PaymentAttempt]:
        result = await self.session.execute(
            select(PaymentAttempt)
            .where(PaymentAttempt.subscriber_id == subscriber_id)
            .order_by(PaymentAttempt.created_at.desc())
            .offset(offset)
            .limit(limit),
        )
        return result.scalars().all()

    # Webhook events

    def add_webhook_event(
        self,
        *,
        provider_event_id: str,
        event_type: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> WebhookEvent:
        event = WebhookEvent(
            provider_event_id=provider_event_id,
            event_type=event_type,
            raw_payload=payload,
            processed=False,
            processing_attempts=1,
            last_processing_attempt=now,
            created_at=now,
            updated_at=now,
        )
        self.session.add(event)
        return event

    async def get_webhook_event(self, event_id: UUID) -> WebhookEvent | None:
        return await self.session.get(WebhookEvent, event_id, populate_existing=True)

    async def get_webhook_event_by_provider_id(self, provider_event_id: str) -> WebhookEvent | None:
        result = await self.session.execute(
            select(WebhookEvent).where(WebhookEvent.provider_event_id == provider_event_id),
        )
        return result.scalar_one_or_none()

    async def claim_webhook_event(
        self,
        event_id: UUID,
        *,
        seen_attempts: int,
        now: datetime,
        require_failed: bool = True,
    ) -> bool:
        """Atomically take an unprocessed event for another processing attempt.

        The update only matches while ``processing_attempts`` still equals
        ``seen_attempts``, so two concurrent claimants cannot both win.

        Returns:
            True if this caller claimed the event.
        """
        conditions = [
            WebhookEvent.id == event_id,
            WebhookEvent.processed.is_(False),
            WebhookEvent.processing_attempts == seen_attempts,
        ]
        if require_failed:
            conditions.append(WebhookEvent.error_message.is_not(None))
        result = await self.session.execute(
            update(WebhookEvent)
            .where(*conditions)
            .values(
                processing_attempts=seen_attempts + 1,
                last_processing_attempt=now,
                error_message=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False),
        )
        return result.rowcount == 1

    async def finish_webhook_event(
        self,
        event_id: UUID,
        *,
        error_message: str | None,
        now: datetime,
    ) -> None:
        """Mark an event processed, or record why processing failed."""
        await self.session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(
                processed=error_message is None,
                error_message=error_message,
                updated_at=now,
            )
            .execution_options(synchronize_session=False),
        )

    async def list_webhook_events(
        self,
        *,
        processed: bool | None = None,
        event_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[WebhookEvent]:
        query = select(WebhookEvent)
        if processed is not None:
            query = query.where(WebhookEvent.processed.is_(processed))
        if event_type is not None:
            query = query.where(WebhookEvent.event_type == event_type)
        result = await self.session.execute(
            query.order_by(WebhookEvent.created_at.desc()).offset(offset).limit(limit),
        )
        return result.scalars().all()

    async def list_retryable_webhook_events(
        self, *, max_attempts: int, limit: int = 100
    ) -> Sequence[WebhookEvent]:
        """Failed events below the attempt ceiling, oldest first."""
        result = await self.session.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.processed.is_(False),
                WebhookEvent.error_message.is_not(None),
                WebhookEvent.processing_attempts < max_attempts,
            )
            .order_by(WebhookEvent.created_at.asc())
            .limit(limit),
        )
        return result.scalars().all()

    # Audit log

    def add_audit_entry(
        self,
        *,
        actor_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        details: dict[str, Any],
        now: datetime,
    ) -> AdminAuditLog:
        entry = AdminAuditLog(
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            created_at=now,
        )
        self.session.add(entry)
        return entry
