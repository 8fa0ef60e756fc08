"""
Billing webhook route.

- POST /api/webhooks/stripe: Verify and apply Stripe events
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from restohub.api.subscription import get_billing_provider
from restohub.features.billing.provider import BillingProvider, BillingWebhookError
from restohub.features.subscription.webhooks import process_webhook_event


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
):
    """
    Handle Stripe webhook events.

    Signature verification uses STRIPE_WEBHOOK_SECRET; event deduplication
    uses the event id (billing_events table).

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    if provider is None:
        raise HTTPException(status_code=503, detail="Billing disabled")

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        event = await run_in_threadpool(process_webhook_event, headers, body, provider=provider)
    except BillingWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"received": True, "event_id": event.event_id}
