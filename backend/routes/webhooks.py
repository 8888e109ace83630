"""Webhook Routes - Stripe webhooks.

Stripe webhook endpoint with:
- Signature verification (400 on failure, nothing processed)
- Idempotency (via stripe_events collection)
- 500 on handler failure so Stripe re-delivers

POST /api/webhook/stripe - Main Stripe webhook endpoint
GET /api/webhook/test - Liveness check for the webhook route
"""
from fastapi import APIRouter, HTTPException, Request, Header, Depends, status
from datetime import datetime, timezone
from typing import Optional
import logging

from services.stripe_webhook_service import StripeWebhookService, get_stripe_webhook_service
from services.billing_errors import SignatureInvalidError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/webhook", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    service: StripeWebhookService = Depends(get_stripe_webhook_service),
):
    """
    Stripe webhook handler.

    Handled Events:
    - checkout.session.completed
    - customer.subscription.created / updated / deleted
    - invoice.payment_succeeded / invoice.paid
    - invoice.payment_failed
    """
    payload = await request.body()
    try:
        _, message, _ = await service.process_webhook(payload, stripe_signature)
    except SignatureInvalidError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Webhook Error: {e.message}"
        )
    except Exception as e:
        logger.error(f"Stripe webhook processing failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    return {"received": True, "message": message}


@router.get("/test")
async def test_webhook():
    return {
        "success": True,
        "message": "Webhook endpoint is working",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
