"""
Billing provider protocol.

Defines the narrow interface the subscription lifecycle needs from a billing
provider (Stripe, or a fake in tests). Provider-specific types stay behind it;
the entitlement resolver never sees them.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class ProviderCheckoutSession:
    """Hosted checkout session created by the provider."""
    session_id: str
    url: str


@dataclass(frozen=True)
class ProviderPortalSession:
    """Customer billing portal session created by the provider."""
    session_id: str
    url: str


@dataclass(frozen=True)
class ProviderSubscription:
    """Normalized snapshot of a provider-side subscription."""
    subscription_id: str
    status: str  # active, trialing, past_due, canceled, unpaid, incomplete, ...
    customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    price_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderEvent:
    """Verified webhook event."""
    event_id: str
    event_type: str
    data: Dict[str, Any]
    subscription: Optional[ProviderSubscription] = None


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout session creation
    - Billing portal session creation
    - Subscription retrieve / update / cancel
    - Webhook signature verification and parsing
    """

    def create_customer(self, email: Optional[str], metadata: Optional[Dict[str, str]] = None) -> str:
        """
        Create a billing customer.

        Returns:
            Provider customer ID (e.g., Stripe customer ID)

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> ProviderCheckoutSession:
        """
        Create a hosted checkout session for a subscription.

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def create_billing_portal_session(self, customer_id: str, return_url: str) -> ProviderPortalSession:
        """
        Create a self-service billing portal session for a customer.

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        """
        Fetch the provider's current view of a subscription.

        Raises:
            BillingProviderError: If the subscription cannot be fetched
        """
        ...

    def update_subscription(
        self,
        subscription_id: str,
        *,
        cancel_at_period_end: Optional[bool] = None,
        price_id: Optional[str] = None,
    ) -> ProviderSubscription:
        """
        Apply changes at the provider and return the resulting snapshot.

        Raises:
            BillingProviderError: If the provider rejects the change
        """
        ...

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        """
        Cancel a subscription immediately.

        Raises:
            BillingProviderError: If cancellation fails
        """
        ...

    def construct_event(self, headers: Dict[str, str], body: bytes) -> ProviderEvent:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
