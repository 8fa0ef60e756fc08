"""
Subscription lifecycle manager.

Coordinates:
- Checkout initiation (provider customer + hosted checkout session)
- Billing portal sessions for paying accounts
- Provider-first updates, cancellation and reactivation
- Reconciliation of local rows with the provider snapshot

The provider is the system of record: every mutation calls the provider first
and only then writes the local row. Local writes are conditional on the row
version read before the provider call, so a concurrent writer surfaces as
ConcurrentModificationError instead of a silent overwrite.

All Stripe-specific code is in features/billing/stripe_provider.py.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select, update

from restohub.core.config import settings
from restohub.core.database import (
    accounts,
    get_db_session,
    subscription_plans,
    user_subscriptions,
)
from restohub.core.errors import (
    AccountNotFoundError,
    ConcurrentModificationError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
    ValidationError,
)
from restohub.core.logging import get_request_id, log_event
from restohub.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    ProviderSubscription,
)
from restohub.features.billing.stripe_provider import StripeProvider
from restohub.features.subscription.service import check_subscription_status
from restohub.models.subscription import (
    BillingPortalSession,
    CheckoutSession,
    SubscriptionUpdate,
    SyncResult,
    as_utc,
    utc_now,
)


logger = logging.getLogger(__name__)

# Local columns mirrored from the provider snapshot
_SNAPSHOT_FIELDS = (
    "status",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "canceled_at",
    "trial_start",
    "trial_end",
)


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def resolve_provider(provider: Optional[BillingProvider]) -> BillingProvider:
    resolved = provider or get_provider()
    if resolved is None:
        raise BillingProviderError("Billing not enabled")
    return resolved


def log_subscription_event(
    event_type: str,
    account_id: Optional[int] = None,
    plan_id: Optional[int] = None,
    **fields: Any,
) -> None:
    """Structured lifecycle log line, correlated with the current request."""
    log_event(
        "info",
        f"[subscription] {event_type}",
        request_id=get_request_id(),
        account_id=account_id,
        plan_id=plan_id,
        event_type=event_type,
        extra=fields or None,
    )


def get_customer_stripe_id(account_id: int) -> Optional[str]:
    with get_db_session() as session:
        return session.execute(
            select(accounts.c.stripe_customer_id).where(accounts.c.id == account_id)
        ).scalar_one_or_none()


def get_account_subscription(account_id: int) -> Optional[Dict[str, Any]]:
    """Most recent local subscription row for an account, whatever its status."""
    with get_db_session() as session:
        row = session.execute(
            select(user_subscriptions)
            .where(user_subscriptions.c.account_id == account_id)
            .order_by(user_subscriptions.c.created_at.desc(), user_subscriptions.c.id.desc())
            .limit(1)
        ).first()
    return dict(row._mapping) if row else None


def _get_local_row(session, provider_subscription_id: str):
    return session.execute(
        select(user_subscriptions).where(
            user_subscriptions.c.stripe_subscription_id == provider_subscription_id
        )
    ).first()


def _conditional_write(session, row, values: Dict[str, Any]) -> None:
    """UPDATE ... WHERE version = :seen, bumping the version."""
    result = session.execute(
        update(user_subscriptions)
        .where(user_subscriptions.c.id == row.id)
        .where(user_subscriptions.c.version == row.version)
        .values(**values, version=row.version + 1, updated_at=utc_now())
    )
    if result.rowcount == 0:
        raise ConcurrentModificationError(
            f"Subscription {row.stripe_subscription_id} was modified concurrently"
        )


def _write_after_provider(
    provider_subscription_id: str,
    seen_row,
    values: Dict[str, Any],
    *,
    retries: int = 1,
) -> None:
    """
    Mirror provider-accepted values into the row as it was read before the provider call.

    A version mismatch is not a conflict by itself: the provider webhook for
    this same change often lands first. The write counts as done when the
    fresh row already holds `values`, and is retried against the fresh version
    when only other columns moved. It raises only when another writer changed
    one of the columns being written.
    """
    if seen_row is None:
        logger.warning(
            "[subscription] no local row to mirror provider change",
            extra={"stripe_subscription_id": provider_subscription_id},
        )
        return
    try:
        with get_db_session() as session:
            _conditional_write(session, seen_row, values)
        return
    except ConcurrentModificationError:
        fresh = _read_row(provider_subscription_id)
        if fresh is None:
            raise
        if all(_same(getattr(fresh, key), value) for key, value in values.items()):
            logger.info(
                "[subscription] change already applied by a concurrent writer",
                extra={"stripe_subscription_id": provider_subscription_id},
            )
            return
        conflicted = [key for key in values if not _same(getattr(fresh, key), getattr(seen_row, key))]
        if conflicted or retries <= 0:
            raise
    _write_after_provider(provider_subscription_id, fresh, values, retries=retries - 1)


def _read_row(provider_subscription_id: str):
    with get_db_session() as session:
        return _get_local_row(session, provider_subscription_id)


def create_subscription(
    account_id: int,
    plan_id: int,
    *,
    provider: Optional[BillingProvider] = None,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> CheckoutSession:
    """
    Start a hosted checkout for a plan.

    Ensures the account has a provider customer (created and stored on first
    use), then opens a checkout session tagged with accountId/planId metadata.
    No local subscription row is written here; activation arrives later
    through the webhook handler or a sync.

    Raises:
        PlanNotFoundError: plan missing or inactive
        AccountNotFoundError: account missing
        ValidationError: plan has no provider price
        BillingProviderError: provider rejected a call
    """
    with get_db_session() as session:
        plan = session.execute(
            select(subscription_plans.c.id, subscription_plans.c.stripe_price_id)
            .where(subscription_plans.c.id == plan_id)
            .where(subscription_plans.c.is_active.is_(True))
        ).first()
        if plan is None:
            raise PlanNotFoundError(f"Subscription plan {plan_id} not found")

        account = session.execute(
            select(accounts.c.id, accounts.c.email, accounts.c.name, accounts.c.stripe_customer_id)
            .where(accounts.c.id == account_id)
        ).first()
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")

    if not plan.stripe_price_id:
        raise ValidationError(f"Subscription plan {plan_id} has no billing price", code="plan_not_billable")

    provider = resolve_provider(provider)

    customer_id = account.stripe_customer_id
    if not customer_id:
        customer_id = provider.create_customer(account.email, metadata={"accountId": str(account_id)})
        with get_db_session() as session:
            session.execute(
                update(accounts)
                .where(accounts.c.id == account_id)
                .values(stripe_customer_id=customer_id)
            )
        log_subscription_event("customer.created", account_id, stripe_customer_id=customer_id)

    checkout = provider.create_checkout_session(
        customer_id=customer_id,
        price_id=plan.stripe_price_id,
        success_url=success_url or f"{settings.BASE_URL}/dashboard?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=cancel_url or f"{settings.BASE_URL}/pricing",
        metadata={"accountId": str(account_id), "planId": str(plan_id)},
    )
    log_subscription_event("checkout.created", account_id, plan_id=plan_id, session_id=checkout.session_id)
    return CheckoutSession(session_id=checkout.session_id, url=checkout.url)


def create_billing_portal_session(
    account_id: int,
    *,
    provider: Optional[BillingProvider] = None,
    return_url: Optional[str] = None,
) -> BillingPortalSession:
    """
    Open the provider's self-service billing portal for a paying account.

    Raises:
        ValidationError: account has no billing customer, or is on Free
        BillingProviderError: provider rejected the call
    """
    customer_id = get_customer_stripe_id(account_id)
    if not customer_id:
        raise ValidationError(
            "No billing information found. Please subscribe to a plan first.",
            code="no_billing_customer",
        )

    plan = check_subscription_status(account_id).plan
    plan_id = plan.id
    if plan.is_free:
        raise ValidationError(
            "Billing portal is only available for paid subscriptions",
            code="free_plan",
        )

    provider = resolve_provider(provider)
    try:
        portal = provider.create_billing_portal_session(
            customer_id=customer_id,
            return_url=return_url or f"{settings.BASE_URL}/dashboard?tab=billing",
        )
    except BillingProviderError as e:
        log_event(
            "error",
            "[subscription] billing_portal.failed",
            request_id=get_request_id(),
            account_id=account_id,
            plan_id=plan_id,
            event_type="billing_portal.failed",
            extra={"error": str(e)},
        )
        raise
    log_subscription_event(
        "billing_portal.accessed",
        account_id,
        plan_id=plan_id,
        stripe_customer_id=customer_id,
        portal_session_id=portal.session_id,
    )
    return BillingPortalSession(session_id=portal.session_id, url=portal.url)


def update_subscription(
    provider_subscription_id: str,
    changes: SubscriptionUpdate,
    *,
    provider: Optional[BillingProvider] = None,
) -> ProviderSubscription:
    """
    Apply changes at the provider, then mirror them locally.

    A provider failure propagates before the local row is touched.
    """
    provider = resolve_provider(provider)
    seen_row = _read_row(provider_subscription_id)

    price_id = None
    if changes.plan_id is not None:
        with get_db_session() as session:
            price_id = session.execute(
                select(subscription_plans.c.stripe_price_id)
                .where(subscription_plans.c.id == changes.plan_id)
                .where(subscription_plans.c.is_active.is_(True))
            ).scalar_one_or_none()
        if not price_id:
            raise PlanNotFoundError(f"Subscription plan {changes.plan_id} not found")

    snapshot = provider.update_subscription(
        provider_subscription_id,
        cancel_at_period_end=changes.cancel_at_period_end,
        price_id=price_id,
    )

    values: Dict[str, Any] = {}
    if changes.status:
        values["status"] = changes.status
    if changes.cancel_at_period_end is not None:
        values["cancel_at_period_end"] = changes.cancel_at_period_end
    if changes.plan_id is not None:
        values["subscription_plan_id"] = changes.plan_id

    if values:
        _write_after_provider(provider_subscription_id, seen_row, values)
    log_subscription_event(
        "subscription.updated",
        seen_row.account_id if seen_row else None,
        plan_id=changes.plan_id or (seen_row.subscription_plan_id if seen_row else None),
        stripe_subscription_id=provider_subscription_id,
        fields=sorted(values),
    )
    return snapshot


def cancel_subscription(
    provider_subscription_id: str,
    immediate: bool = False,
    *,
    provider: Optional[BillingProvider] = None,
    now: Optional[datetime] = None,
) -> None:
    """
    Cancel at the provider, then locally.

    immediate=True ends the subscription now (status canceled, canceled_at set).
    Otherwise it stays usable until period end with cancel_at_period_end set
    and canceled_at untouched. Provider errors propagate.
    """
    provider = resolve_provider(provider)
    seen_row = _read_row(provider_subscription_id)

    if immediate:
        snapshot = provider.cancel_subscription(provider_subscription_id)
        values = {
            "status": "canceled",
            "canceled_at": snapshot.canceled_at or (as_utc(now) if now else utc_now()),
            "cancel_at_period_end": False,
        }
    else:
        provider.update_subscription(provider_subscription_id, cancel_at_period_end=True)
        values = {"cancel_at_period_end": True}

    _write_after_provider(provider_subscription_id, seen_row, values)
    log_subscription_event(
        "subscription.canceled",
        seen_row.account_id if seen_row else None,
        plan_id=seen_row.subscription_plan_id if seen_row else None,
        stripe_subscription_id=provider_subscription_id,
        immediate=immediate,
    )


def reactivate_subscription(
    provider_subscription_id: str,
    *,
    provider: Optional[BillingProvider] = None,
) -> ProviderSubscription:
    """Undo a pending cancel-at-period-end."""
    return update_subscription(
        provider_subscription_id,
        SubscriptionUpdate(cancel_at_period_end=False),
        provider=provider,
    )


def _plan_id_for_price(session, price_id: Optional[str]) -> Optional[int]:
    if not price_id:
        return None
    return session.execute(
        select(subscription_plans.c.id)
        .where(subscription_plans.c.stripe_price_id == price_id)
        .order_by(subscription_plans.c.id)
        .limit(1)
    ).scalar_one_or_none()


def _account_id_for_customer(session, customer_id: Optional[str]) -> Optional[int]:
    if not customer_id:
        return None
    return session.execute(
        select(accounts.c.id).where(accounts.c.stripe_customer_id == customer_id)
    ).scalar_one_or_none()


def metadata_int(metadata: Dict[str, str], key: str) -> Optional[int]:
    try:
        return int(metadata[key])
    except (KeyError, TypeError, ValueError):
        return None


def _same(current: Any, desired: Any) -> bool:
    if isinstance(current, datetime) or isinstance(desired, datetime):
        return as_utc(current) == as_utc(desired)
    if isinstance(desired, bool):
        return bool(current) == desired
    return current == desired


def apply_provider_snapshot(
    snapshot: ProviderSubscription,
    *,
    account_id: Optional[int] = None,
    plan_id: Optional[int] = None,
) -> List[str]:
    """
    Overwrite the local row with the provider's view of the subscription.

    Updates the row keyed by the provider subscription id, or inserts it when
    missing and the account and plan can be determined (arguments, snapshot
    metadata, stored customer id, price mapping). Writes nothing when the row
    already matches, so reapplying a snapshot is idempotent.

    Returns:
        Human-readable list of changes (empty when nothing changed)

    Raises:
        SubscriptionNotFoundError: no local row and no way to create one
        ConcurrentModificationError: row changed while applying
    """
    desired: Dict[str, Any] = {
        "status": snapshot.status,
        "current_period_start": snapshot.current_period_start,
        "current_period_end": snapshot.current_period_end,
        "cancel_at_period_end": bool(snapshot.cancel_at_period_end),
        "canceled_at": snapshot.canceled_at,
        "trial_start": snapshot.trial_start,
        "trial_end": snapshot.trial_end,
    }

    with get_db_session() as session:
        row = _get_local_row(session, snapshot.subscription_id)
        mapped_plan_id = (
            plan_id
            or _plan_id_for_price(session, snapshot.price_id)
            or metadata_int(snapshot.metadata, "planId")
        )

        if row is None:
            owner_id = (
                account_id
                or metadata_int(snapshot.metadata, "accountId")
                or _account_id_for_customer(session, snapshot.customer_id)
            )
            if owner_id is None or mapped_plan_id is None:
                raise SubscriptionNotFoundError(
                    f"No local subscription for {snapshot.subscription_id} and no account/plan to create it"
                )
            session.execute(
                insert(user_subscriptions).values(
                    account_id=owner_id,
                    subscription_plan_id=mapped_plan_id,
                    stripe_subscription_id=snapshot.subscription_id,
                    stripe_customer_id=snapshot.customer_id,
                    **desired,
                )
            )
            log_subscription_event(
                "subscription.created",
                owner_id,
                plan_id=mapped_plan_id,
                stripe_subscription_id=snapshot.subscription_id,
                status=snapshot.status,
            )
            return ["Subscription created"]

        if mapped_plan_id is not None:
            desired["subscription_plan_id"] = mapped_plan_id

        values = {
            key: value
            for key, value in desired.items()
            if not _same(getattr(row, key), value)
        }
        if not values:
            return []

        _conditional_write(session, row, values)

    changes = ["Subscription status synchronized"]
    changes.extend(f"{key} updated" for key in _SNAPSHOT_FIELDS + ("subscription_plan_id",) if key in values)
    log_subscription_event(
        "subscription.synchronized",
        row.account_id,
        plan_id=values.get("subscription_plan_id", row.subscription_plan_id),
        stripe_subscription_id=snapshot.subscription_id,
        fields=sorted(values),
    )
    return changes


def sync_with_stripe(
    provider_subscription_id: str,
    *,
    provider: Optional[BillingProvider] = None,
) -> SyncResult:
    """
    Reconcile the local row with the provider's current snapshot.

    Never raises: failures come back as SyncResult(success=False, errors=[...]).
    """
    try:
        snapshot = resolve_provider(provider).retrieve_subscription(provider_subscription_id)
        changes = apply_provider_snapshot(snapshot)
        return SyncResult(success=True, changes=changes)
    except Exception as e:
        logger.error(
            "[subscription] sync failed",
            exc_info=True,
            extra={"stripe_subscription_id": provider_subscription_id},
        )
        return SyncResult(success=False, changes=[], errors=[str(e)])
