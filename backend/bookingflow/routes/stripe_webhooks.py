"""
Stripe Webhook Endpoints

Receives signed payment events and hands them to the webhook event
processor. The response code is the contract with Stripe's redelivery:

- 400: signature missing or invalid; Stripe will not be able to fix this by retrying
- 200: event recorded and applied, already applied, or not relevant
- 500: event recorded but its handler failed; Stripe redelivers
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..api.dependencies.services import get_webhook_processor
from ..core.exceptions import DomainException
from ..schemas.payment_schemas import WebhookResponse
from ..services.webhook_event_processor import IngestOutcome, WebhookEventProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/stripe", tags=["stripe-webhooks"])


@router.post("/payment-events", response_model=WebhookResponse)
async def handle_payment_events(
    request: Request, processor: WebhookEventProcessor = Depends(get_webhook_processor)
) -> WebhookResponse:
    """
    Handle Stripe payment webhook events.

    Processes events like:
    - checkout.session.completed / async_payment_succeeded / async_payment_failed / expired
    - payment_intent.succeeded
    - payment_intent.payment_failed
    - payment_intent.requires_action
    - charge.refunded
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        logger.warning("Missing Stripe signature header")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Missing stripe-signature header"
        )

    try:
        result = await asyncio.to_thread(processor.ingest, payload, signature)
    except DomainException as exc:
        logger.error(f"Error processing Stripe webhook: {exc.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to process webhook"
        )
    except Exception as e:
        logger.error(f"Error processing Stripe webhook: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to process webhook"
        )

    if result.outcome is IngestOutcome.REJECTED:
        logger.warning("Invalid Stripe webhook signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result.message or "Invalid webhook signature",
        )

    logger.info(f"Processed Stripe webhook event: {result.event_type} ({result.outcome.value})")
    return WebhookResponse(
        status=result.outcome.value,
        event_type=result.event_type or "",
        message=result.transition.value if result.transition else result.message,
    )
