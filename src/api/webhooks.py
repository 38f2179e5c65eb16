"""Webhook endpoints for Stripe payment events."""

import logging
from typing import Annotated

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from src.config import get_settings
from src.database import get_db
from src.services.credit_ledger import CreditLedger
from src.services.payments import handle_checkout_completed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def handle_stripe_event(
    request: Request,
    db: Annotated[Session, Depends(get_db)],
    stripe_signature: Annotated[str | None, Header()] = None,
) -> dict:
    """Handle Stripe webhook events.

    Verifies the Stripe-Signature header with the configured webhook secret.
    ``checkout.session.completed`` credits the buyer; other events are
    acknowledged and ignored.
    """
    if not stripe_signature:
        raise HTTPException(status_code=400, detail="No signature")

    webhook_secret = get_settings().stripe_webhook_secret
    if not webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    payload = await request.body()
    try:
        event = stripe.Webhook.construct_event(payload, stripe_signature, webhook_secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Stripe webhook verification failed: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature") from e

    logger.info(f"Received Stripe event {event['id']} ({event['type']})")
    if event["type"] == "checkout.session.completed":
        await run_in_threadpool(handle_checkout_completed, CreditLedger(db), event["data"]["object"])

    return {"received": True}
