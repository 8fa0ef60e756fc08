"""
Billing webhook handler.

Verifies provider events and applies them to local subscription rows through
the same snapshot upsert used by sync_with_stripe. Every event id is recorded
in billing_events; replays of an already-recorded event are skipped.
"""
import hashlib
import logging
from typing import Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from restohub.core.database import billing_events, get_db_session
from restohub.core.errors import SubscriptionNotFoundError
from restohub.features.billing.provider import BillingProvider, ProviderEvent
from restohub.features.subscription.lifecycle import (
    metadata_int,
    resolve_provider,
    apply_provider_snapshot,
    log_subscription_event,
)
from restohub.models.subscription import utc_now


logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
INVOICE_EVENTS = ("invoice.paid", "invoice.payment_failed")


def _record_event(event: ProviderEvent, payload_hash: str) -> bool:
    """
    Insert the ledger row.

    False when the event was already handled. A recorded event that failed
    (processed is false) is handed back for another attempt on redelivery.
    """
    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.processed).where(billing_events.c.stripe_event_id == event.event_id)
        ).first()
    if existing:
        return not existing.processed

    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    stripe_event_id=event.event_id,
                    event_type=event.event_type,
                    payload_hash=payload_hash,
                    processed=False,
                )
            )
    except IntegrityError:
        # Another delivery of the same event won the insert
        return False
    return True


def _mark_event(event_id: str, *, processed: bool = True, error: Optional[str] = None) -> None:
    values = {"processed": processed, "error": error}
    if processed:
        values["processed_at"] = utc_now()
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == event_id)
            .values(**values)
        )


def _dispatch(event: ProviderEvent, provider: BillingProvider) -> None:
    metadata = event.data.get("metadata") or {}

    if event.event_type == "checkout.session.completed":
        subscription_id = event.data.get("subscription")
        if not subscription_id:
            logger.info("[webhook] checkout without subscription, ignoring", extra={"event_id": event.event_id})
            return
        snapshot = provider.retrieve_subscription(subscription_id)
        apply_provider_snapshot(
            snapshot,
            account_id=metadata_int(metadata, "accountId"),
            plan_id=metadata_int(metadata, "planId"),
        )
        return

    if event.event_type in SUBSCRIPTION_EVENTS and event.subscription is not None:
        apply_provider_snapshot(event.subscription)
        return

    if event.event_type in INVOICE_EVENTS:
        subscription_id = event.data.get("subscription")
        if not subscription_id:
            return
        # Retrieve-and-apply like sync_with_stripe, with errors propagating
        apply_provider_snapshot(provider.retrieve_subscription(subscription_id))
        return

    logger.debug("[webhook] unhandled event type", extra={"event_type": event.event_type})


def process_webhook_event(
    headers: Dict[str, str],
    body: bytes,
    *,
    provider: Optional[BillingProvider] = None,
) -> ProviderEvent:
    """
    Process a billing webhook (idempotent).

    1. Verify signature
    2. Record the event id (skip if already recorded)
    3. Apply state changes
    4. Mark as processed, or store the error and re-raise

    Raises:
        BillingWebhookError: signature invalid or payload unparseable
    """
    provider = resolve_provider(provider)
    event = provider.construct_event(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    if not _record_event(event, payload_hash):
        logger.info("[webhook] duplicate event skipped", extra={"event_id": event.event_id})
        return event

    try:
        _dispatch(event, provider)
    except SubscriptionNotFoundError as e:
        # Subscriptions unknown to this application are acknowledged, not retried
        logger.warning("[webhook] event for unknown subscription", extra={"event_id": event.event_id})
        _mark_event(event.event_id, error=str(e))
        return event
    except Exception as e:
        _mark_event(event.event_id, processed=False, error=str(e))
        raise

    _mark_event(event.event_id)
    log_subscription_event("webhook.processed", stripe_event_id=event.event_id, webhook_event_type=event.event_type)
    return event
