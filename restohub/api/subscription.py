"""
Subscription API routes.

- GET  /api/subscription/status: Resolved entitlement for the caller
- POST /api/subscription/checkout: Start hosted checkout for a plan
- POST /api/subscription/billing-portal: Open the self-service billing portal
- POST /api/subscription/cancel: Cancel now or at period end
- POST /api/subscription/reactivate: Undo a pending cancel-at-period-end
- POST /api/subscription/sync: Reconcile one subscription (admin)
"""
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from restohub.core.auth import SessionIdentity, account_id_from_identity, require_session
from restohub.core.errors import PermissionError, SubscriptionNotFoundError
from restohub.features.billing.provider import BillingProvider, BillingProviderError
from restohub.features.subscription.lifecycle import (
    cancel_subscription,
    create_billing_portal_session,
    create_subscription,
    get_account_subscription,
    get_provider,
    reactivate_subscription,
    sync_with_stripe,
)
from restohub.features.subscription.service import check_subscription_status, get_usage_metrics


router = APIRouter(prefix="/subscription", tags=["subscription"])


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: int = Field(alias="planId", gt=0)
    success_url: Optional[str] = Field(default=None, alias="successUrl")
    cancel_url: Optional[str] = Field(default=None, alias="cancelUrl")


class CancelRequest(BaseModel):
    immediate: bool = False


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscription_id: str = Field(alias="subscriptionId", min_length=1)


def get_billing_provider() -> Optional[BillingProvider]:
    """Provider dependency (overridden in tests)."""
    return get_provider()


def _require_provider(provider: Optional[BillingProvider]) -> BillingProvider:
    if provider is None:
        raise HTTPException(status_code=503, detail="Billing disabled")
    return provider


def _current_provider_subscription_id(account_id: int) -> str:
    row = get_account_subscription(account_id)
    if not row or not row.get("stripe_subscription_id"):
        raise SubscriptionNotFoundError("No subscription found for this account")
    return row["stripe_subscription_id"]


@router.get("/status")
def get_status(identity: SessionIdentity = Depends(require_session)):
    account_id = account_id_from_identity(identity)
    status = check_subscription_status(account_id)
    return {
        "success": True,
        "subscription": status.model_dump(mode="json"),
        "usage": get_usage_metrics(account_id),
    }


@router.post("/checkout")
def create_checkout(
    request: CheckoutRequest,
    identity: SessionIdentity = Depends(require_session),
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
):
    """
    Start a hosted checkout.

    Errors:
        404: plan or account not found
        502: billing provider error
        503: billing disabled
    """
    try:
        checkout = create_subscription(
            account_id_from_identity(identity),
            request.plan_id,
            provider=_require_provider(provider),
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=f"Failed to start checkout: {e}")
    return {"success": True, "sessionId": checkout.session_id, "url": checkout.url}


@router.post("/billing-portal")
def open_billing_portal(
    identity: SessionIdentity = Depends(require_session),
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
):
    """
    Open the billing portal for the caller.

    Errors:
        400: no billing customer yet, or account on the Free plan
        502: billing provider error
        503: billing disabled
    """
    account_id = account_id_from_identity(identity)
    try:
        portal = create_billing_portal_session(account_id, provider=_require_provider(provider))
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=f"Failed to access billing portal: {e}")
    return {"success": True, "url": portal.url, "sessionId": portal.session_id}


@router.post("/cancel")
def cancel(
    request: CancelRequest,
    identity: SessionIdentity = Depends(require_session),
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
):
    subscription_id = _current_provider_subscription_id(account_id_from_identity(identity))
    try:
        cancel_subscription(subscription_id, request.immediate, provider=_require_provider(provider))
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=f"Failed to cancel subscription: {e}")
    message = "Subscription canceled" if request.immediate else "Subscription will cancel at period end"
    return {"success": True, "message": message}


@router.post("/reactivate")
def reactivate(
    identity: SessionIdentity = Depends(require_session),
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
):
    subscription_id = _current_provider_subscription_id(account_id_from_identity(identity))
    try:
        reactivate_subscription(subscription_id, provider=_require_provider(provider))
    except BillingProviderError as e:
        raise HTTPException(status_code=502, detail=f"Failed to reactivate subscription: {e}")
    return {"success": True, "message": "Subscription reactivated"}


@router.post("/sync")
def sync(
    request: SyncRequest,
    identity: SessionIdentity = Depends(require_session),
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
):
    if not identity.is_admin:
        raise PermissionError("Admin role required")
    result = sync_with_stripe(request.subscription_id, provider=_require_provider(provider))
    return asdict(result)
