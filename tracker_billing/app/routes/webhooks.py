"""Inbound payment provider webhook."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from ..errors import WebhookSignatureError
from ..schemas.billing import WebhookAck
from ..services.billing import get_payment_gateway, get_reconciliation_engine

logger = logging.getLogger("billing")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def receive_stripe_webhook(request: Request) -> WebhookAck:
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        event = get_payment_gateway().construct_event(payload, signature)
    except WebhookSignatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Webhook Error: {exc}"
        ) from exc

    logger.info("Received Stripe webhook %s (%s)", event.get("type"), event.get("id"))
    engine = get_reconciliation_engine()
    try:
        result = await run_in_threadpool(engine.handle_event, event)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    if not result.accepted:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Webhook processing failed", "eventId": result.event_id},
        )
    return WebhookAck.from_result(result)
