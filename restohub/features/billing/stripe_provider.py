"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles webhook signature verification and normalizes Stripe subscriptions
into ProviderSubscription snapshots.
"""
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import stripe

from restohub.core.config import settings
from restohub.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    ProviderCheckoutSession,
    ProviderEvent,
    ProviderPortalSession,
    ProviderSubscription,
)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a plain dict or a StripeObject."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def subscription_from_stripe(data: Any) -> ProviderSubscription:
    """Normalize a Stripe subscription object (or its dict form)."""
    items = _get(_get(data, "items"), "data") or []
    first_item = items[0] if items else None

    # Newer API versions carry the period on the subscription item
    period_start = _get(data, "current_period_start") or _get(first_item, "current_period_start")
    period_end = _get(data, "current_period_end") or _get(first_item, "current_period_end")

    metadata = _get(data, "metadata") or {}
    return ProviderSubscription(
        subscription_id=_get(data, "id"),
        status=_get(data, "status") or "unknown",
        customer_id=_get(data, "customer"),
        current_period_start=_from_timestamp(period_start),
        current_period_end=_from_timestamp(period_end),
        cancel_at_period_end=bool(_get(data, "cancel_at_period_end", False)),
        canceled_at=_from_timestamp(_get(data, "canceled_at")),
        trial_start=_from_timestamp(_get(data, "trial_start")),
        trial_end=_from_timestamp(_get(data, "trial_end")),
        price_id=_get(_get(first_item, "price"), "id"),
        metadata={str(k): str(v) for k, v in dict(metadata).items()},
    )


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET setting)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.api_version = settings.STRIPE_API_VERSION

    def create_customer(self, email: Optional[str], metadata: Optional[Dict[str, str]] = None) -> str:
        """Create Stripe customer."""
        customer_data: Dict[str, Any] = {"metadata": metadata or {}}
        if email:
            customer_data["email"] = email
        try:
            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}") from e

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> ProviderCheckoutSession:
        """Create Stripe checkout session."""
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
                subscription_data={"metadata": metadata or {}},
            )
            return ProviderCheckoutSession(session_id=session.id, url=session.url)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}") from e

    def create_billing_portal_session(self, customer_id: str, return_url: str) -> ProviderPortalSession:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            return ProviderPortalSession(session_id=session.id, url=session.url)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}") from e

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            return subscription_from_stripe(stripe.Subscription.retrieve(subscription_id))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e}") from e

    def update_subscription(
        self,
        subscription_id: str,
        *,
        cancel_at_period_end: Optional[bool] = None,
        price_id: Optional[str] = None,
    ) -> ProviderSubscription:
        params: Dict[str, Any] = {}
        if cancel_at_period_end is not None:
            params["cancel_at_period_end"] = cancel_at_period_end
        try:
            if price_id:
                current = stripe.Subscription.retrieve(subscription_id)
                items = _get(_get(current, "items"), "data") or []
                if not items:
                    raise BillingProviderError(f"Subscription {subscription_id} has no items to re-price")
                params["items"] = [{"id": _get(items[0], "id"), "price": price_id}]
                params["proration_behavior"] = "create_prorations"
            updated = stripe.Subscription.modify(subscription_id, **params)
            return subscription_from_stripe(updated)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription update failed: {e}") from e

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            return subscription_from_stripe(stripe.Subscription.cancel(subscription_id))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e}") from e

    def construct_event(self, headers: Dict[str, str], body: bytes) -> ProviderEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}") from e

        return self._parse_event(event)

    def _parse_event(self, event: Any) -> ProviderEvent:
        """Parse Stripe event into a normalized ProviderEvent."""
        event_type = _get(event, "type")
        data = _get(_get(event, "data"), "object") or {}

        subscription = None
        if event_type and event_type.startswith("customer.subscription."):
            subscription = subscription_from_stripe(data)

        return ProviderEvent(
            event_id=_get(event, "id"),
            event_type=event_type,
            data={
                "subscription": _get(data, "subscription"),
                "customer": _get(data, "customer"),
                "metadata": {str(k): str(v) for k, v in dict(_get(data, "metadata") or {}).items()},
            },
            subscription=subscription,
        )
