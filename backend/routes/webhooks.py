"""Webhook Routes - Stripe subscription events.

POST /api/webhooks/stripe - verifies the signature when STRIPE_WEBHOOK_SECRET is
set, records the event id for idempotency and syncs the subscription record.
"""
from fastapi import APIRouter, Request, Header
from services.stripe_webhook_service import stripe_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Always answers 200 so Stripe does not retry; failures are logged and audited."""
    try:
        payload = await request.body()
        success, message, details = await stripe_webhook_service.process_webhook(
            payload=payload,
            signature=stripe_signature or ""
        )
        if success:
            return {"status": "received", "message": message, "details": details}

        logger.error(f"Webhook processing failed: {message}")
        return {"status": "error", "message": message}

    except Exception as e:
        logger.exception(f"Stripe webhook error: {e}")
        return {"status": "error", "message": "Webhook processing error"}
