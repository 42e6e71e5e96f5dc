"""Payment provider webhook endpoint."""

from fastapi import APIRouter, Header, Request

from wayfare.api.dependencies.engine import EngineDep
from wayfare.billing.exceptions import WebhookSignatureError
from wayfare.billing.schemas import IngestResult
from wayfare.core.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.post("/stripe", response_model=IngestResult)
async def stripe_webhook(
    request: Request,
    engine: EngineDep,
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
) -> IngestResult:
    """Verify and ingest one Stripe event.

    Accepted, duplicate and failed deliveries all answer 200: a failed event
    is stored and retried by the engine, so asking Stripe to redeliver it
    would only add noise. Only an unverifiable delivery is rejected.
    """
    if not stripe_signature:
        logger.warning("webhook_signature_missing")
        raise WebhookSignatureError("Missing stripe-signature header")

    payload = await request.body()
    event = engine.verify_webhook(payload, stripe_signature)
    return await engine.ingest_event(event)
