"""Audit trail for administrative billing actions."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wayfare.billing.exceptions import InvalidTransitionError, SubscriptionNotFoundError
from wayfare.billing.lifecycle import SubscriptionLifecycle
from wayfare.billing.payment_errors import classify, validate_payment_amount
from wayfare.billing.provider import BillingProvider, new_idempotency_key
from wayfare.billing.repository import BillingRepository
from wayfare.billing.retry import OperationContext, RetryExecutor
from wayfare.billing.schemas import BillingResult, IngestResult, RefundResponse, SubscriptionResponse
from wayfare.billing.webhooks import WebhookPipeline
from wayfare.core.database import session_scope
from wayfare.core.logging import LoggerMixin
from wayfare.core.metrics import track_operation
from wayfare.models.base import utcnow


class AuditLog(Protocol):
    """Sink for administrative actions."""

    async def log_action(
        self,
        actor_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        details: dict[str, Any],
    ) -> None: ...


class DatabaseAuditLog:
    """Writes audit entries to the ``admin_audit_log`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    async def log_action(
        self,
        actor_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        details: dict[str, Any],
    ) -> None:
        async with session_scope(self.session_factory) as session:
            BillingRepository(session).add_audit_entry(
                actor_id=actor_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                details=details,
                now=self.clock(),
            )


def _outcome(result: BillingResult[Any]) -> dict[str, Any]:
    if result.success or result.error is None:
        return {"success": result.success}
    return {"success": False, "error_code": result.error.code.value}


class AdminBillingActions(LoggerMixin):
    """Billing actions taken by an administrator on a subscriber's behalf.

    Every action goes through the same engine operations as the subscriber
    would, and is then written to the audit log with its outcome. A failed
    audit write is logged and swallowed: the audited action has already
    happened and must not be reported as failed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lifecycle: SubscriptionLifecycle,
        webhooks: WebhookPipeline,
        provider: BillingProvider,
        retry: RetryExecutor,
        audit: AuditLog,
    ) -> None:
        self.session_factory = session_factory
        self.lifecycle = lifecycle
        self.webhooks = webhooks
        self.provider = provider
        self.retry = retry
        self.audit = audit

    async def _record(
        self,
        actor_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        details: dict[str, Any],
    ) -> None:
        try:
            await self.audit.log_action(actor_id, action, resource_type, resource_id, details)
        except Exception as exc:
            self.logger.error(
                "audit_log_write_failed",
                actor_id=actor_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                error=str(exc),
            )

    async def cancel(
        self,
        actor_id: str,
        subscriber_id: str,
        *,
        at_period_end: bool = False,
        reason: str | None = None,
    ) -> BillingResult[SubscriptionResponse]:
        result = await self.lifecycle.cancel(subscriber_id, at_period_end=at_period_end)
        await self._record(
            actor_id,
            "cancel_subscription",
            "subscription",
            subscriber_id,
            {"at_period_end": at_period_end, "reason": reason, **_outcome(result)},
        )
        return result

    async def reactivate(
        self,
        actor_id: str,
        subscriber_id: str,
    ) -> BillingResult[SubscriptionResponse]:
        result = await self.lifecycle.reactivate(subscriber_id)
        await self._record(
            actor_id,
            "reactivate_subscription",
            "subscription",
            subscriber_id,
            _outcome(result),
        )
        return result

    async def refund(
        self,
        actor_id: str,
        subscriber_id: str,
        invoice_id: str,
        *,
        amount: int | None = None,
        reason: str | None = None,
    ) -> BillingResult[RefundResponse]:
        """Refund an invoice of the subscriber, in full or in part.

        Args:
            actor_id: Administrator performing the refund
            subscriber_id: Owner of the invoice
            invoice_id: Provider invoice id
            amount: Partial amount in minor units; full refund when omitted
            reason: Free-form note kept in the audit entry
        """
        try:
            refund = await self._refund(subscriber_id, invoice_id, amount)
            result: BillingResult[RefundResponse] = BillingResult.ok(refund)
            track_operation("refund", "success")
        except Exception as exc:
            error = classify(exc)
            track_operation("refund", error.code.value)
            self.logger.warning(
                "refund_failed",
                subscriber_id=subscriber_id,
                invoice_id=invoice_id,
                code=error.code.value,
            )
            result = BillingResult.fail(error)

        await self._record(
            actor_id,
            "refund_payment",
            "invoice",
            invoice_id,
            {
                "subscriber_id": subscriber_id,
                "amount": amount,
                "reason": reason,
                **_outcome(result),
            },
        )
        return result

    async def _refund(
        self, subscriber_id: str, invoice_id: str, amount: int | None
    ) -> RefundResponse:
        async with self.session_factory() as session:
            record = await BillingRepository(session).get_current_record(subscriber_id)
        if record is None:
            raise SubscriptionNotFoundError(resource_type="subscription", resource_id=subscriber_id)

        invoice = await self.retry.execute(
            lambda: self.provider.retrieve_invoice(invoice_id),
            OperationContext("invoice.retrieve", subscriber_id),
        )
        if invoice.subscription_id != record.provider_subscription_id:
            raise InvalidTransitionError(
                "Invoice does not belong to this subscriber",
                details={"invoice_id": invoice_id, "subscriber_id": subscriber_id},
            )
        if not invoice.is_paid:
            raise InvalidTransitionError(
                "Only paid invoices can be refunded",
                details={"invoice_id": invoice_id, "invoice_status": invoice.status},
            )
        if amount is not None:
            validate_payment_amount(amount, invoice.currency)

        key = new_idempotency_key("refund", subscriber_id)
        refund = await self.retry.execute(
            lambda: self.provider.refund_invoice(invoice_id, amount=amount, idempotency_key=key),
            OperationContext("refund.create", subscriber_id, {"invoice_id": invoice_id}),
        )
        self.logger.info(
            "invoice_refunded",
            subscriber_id=subscriber_id,
            invoice_id=invoice_id,
            refund_id=refund.id,
            amount=refund.amount,
        )
        return RefundResponse(
            id=refund.id,
            invoice_id=invoice_id,
            amount=refund.amount,
            currency=refund.currency,
            status=refund.status,
        )

    async def retry_webhook_event(
        self,
        actor_id: str,
        event_id: UUID,
        *,
        force: bool = True,
    ) -> BillingResult[IngestResult]:
        try:
            ingest = await self.webhooks.retry_event(event_id, force=force)
            result: BillingResult[IngestResult] = BillingResult.ok(ingest)
        except Exception as exc:
            result = BillingResult.fail(classify(exc))

        details: dict[str, Any] = {"force": force, **_outcome(result)}
        if result.data is not None:
            details["ingest_status"] = result.data.status.value
        await self._record(
            actor_id, "retry_webhook_event", "webhook_event", str(event_id), details
        )
        return result
