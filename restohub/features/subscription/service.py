"""
restohub/features/subscription/service.py

Entitlement resolver.

Handles:
- Resolving a SubscriptionStatus for an account (plan, features, limits,
  billing and trial info)
- The synthetic Free status used when no entitling subscription exists
- Convenience checks built on the resolved status

Status reads fail open: any error while resolving degrades to the Free status
and is logged, it never propagates to the caller.
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import case, select

from restohub.core.database import (
    get_db_session,
    subscription_features,
    subscription_plans,
    user_subscriptions,
)
from restohub.features.usage.service import get_current_usage
from restohub.models.subscription import (
    FREE_MENU_ITEMS_LIMIT,
    FREE_PLAN_ID,
    FREE_PLAN_NAME,
    BillingInfo,
    FeatureLimit,
    SubscriptionPlan,
    SubscriptionStatus,
    TrialInfo,
    UsageLimitCheck,
    as_utc,
    parse_json_column,
)


logger = logging.getLogger(__name__)

# Statuses after which a row no longer grants anything; the account falls back to Free
TERMINAL_STATUSES = ("canceled", "incomplete_expired")

# Statuses that count as an active subscription
ACTIVE_STATUSES = ("active", "trialing")

FREE_BILLING_WINDOW_DAYS = 30

_DAY_SECONDS = 24 * 60 * 60


def _normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def get_free_plan() -> SubscriptionPlan:
    return SubscriptionPlan(
        id=FREE_PLAN_ID,
        name=FREE_PLAN_NAME,
        description="Free tier with limited features",
        price=0,
        billing_interval="monthly",
        features=[
            f"Limited menu items (up to {FREE_MENU_ITEMS_LIMIT})",
            "Basic reservations",
            "Standard support",
        ],
        feature_limits={"menu_items": FREE_MENU_ITEMS_LIMIT},
        trial_settings={},
        is_active=True,
    )


def get_free_subscription_status(now: Optional[Any] = None, account_id: Optional[int] = None) -> SubscriptionStatus:
    """
    Build the Free status.

    Pure factory: every call returns a fresh value. When an account id is
    given, the menu_items limit reports that account's current usage.
    """
    start = _normalize_now(now)
    period_end = start + timedelta(days=FREE_BILLING_WINDOW_DAYS)

    current = 0
    if account_id is not None:
        try:
            current = get_current_usage(account_id, "menu_items")
        except Exception:
            logger.warning(
                "[subscription] usage lookup failed for free tier",
                exc_info=True,
                extra={"account_id": account_id, "limit_key": "menu_items"},
            )

    return SubscriptionStatus(
        is_active=True,
        plan=get_free_plan(),
        features={"basic_features": True},
        limits={
            "menu_items": FeatureLimit(current=current, maximum=FREE_MENU_ITEMS_LIMIT, unit="items"),
        },
        billing_info=BillingInfo(
            current_period_start=start,
            current_period_end=period_end,
            next_billing_date=period_end,
            amount=0,
            currency="usd",
            status="active",
        ),
    )


def _select_current_subscription(account_id: int):
    """Most recent non-terminal subscription joined with its plan; active rows win ties."""
    return (
        select(
            user_subscriptions,
            subscription_plans.c.name.label("plan_name"),
            subscription_plans.c.description.label("plan_description"),
            subscription_plans.c.price.label("plan_price"),
            subscription_plans.c.billing_interval,
            subscription_plans.c.features.label("plan_features"),
            subscription_plans.c.feature_limits,
            subscription_plans.c.trial_settings,
            subscription_plans.c.stripe_product_id,
            subscription_plans.c.stripe_price_id,
            subscription_plans.c.is_active.label("plan_is_active"),
        )
        .join(subscription_plans, user_subscriptions.c.subscription_plan_id == subscription_plans.c.id)
        .where(user_subscriptions.c.account_id == account_id)
        .where(user_subscriptions.c.status.notin_(TERMINAL_STATUSES))
        .order_by(
            case((user_subscriptions.c.status == "active", 0), else_=1),
            user_subscriptions.c.created_at.desc(),
            user_subscriptions.c.id.desc(),
        )
        .limit(1)
    )


def _plan_from_row(row) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=row.subscription_plan_id,
        name=row.plan_name,
        description=row.plan_description,
        price=float(row.plan_price or 0),
        billing_interval=row.billing_interval or "monthly",
        features=parse_json_column(row.plan_features, []),
        feature_limits=parse_json_column(row.feature_limits, {}),
        trial_settings=parse_json_column(row.trial_settings, {}),
        stripe_product_id=row.stripe_product_id,
        stripe_price_id=row.stripe_price_id,
        is_active=bool(row.plan_is_active),
    )


def _get_feature_access(session, plan_id: int) -> Dict[str, bool]:
    rows = session.execute(
        select(subscription_features.c.feature_key, subscription_features.c.is_enabled)
        .where(subscription_features.c.subscription_plan_id == plan_id)
    ).all()
    return {row.feature_key: bool(row.is_enabled) for row in rows}


def _get_limit_rows(session, plan_id: int):
    return session.execute(
        select(
            subscription_features.c.feature_key,
            subscription_features.c.limit_value,
            subscription_features.c.limit_type,
        )
        .where(subscription_features.c.subscription_plan_id == plan_id)
        .where(subscription_features.c.limit_value.isnot(None))
    ).all()


def _build_feature_limits(account_id: int, limit_rows) -> Dict[str, FeatureLimit]:
    # Usage counters may open their own sessions, so this runs outside the read session
    limits: Dict[str, FeatureLimit] = {}
    for row in limit_rows:
        limits[row.feature_key] = FeatureLimit(
            current=get_current_usage(account_id, row.feature_key),
            maximum=row.limit_value,
            unit=row.limit_type or "count",
        )
    return limits


def _get_billing_info(row) -> BillingInfo:
    period_end = as_utc(row.current_period_end)
    return BillingInfo(
        current_period_start=as_utc(row.current_period_start),
        current_period_end=period_end,
        next_billing_date=period_end,
        amount=float(row.plan_price or 0),
        currency="usd",
        status=row.status,
    )


def compute_trial_info(
    trial_start: Optional[datetime],
    trial_end: Optional[datetime],
    now: Optional[Any] = None,
) -> Optional[TrialInfo]:
    """
    Trial window state. None when the subscription never had a trial.

    In trial means trial_start <= now <= trial_end; days remaining is the
    ceiling of the remaining time in days, 0 outside the window.
    """
    if trial_start is None:
        return None

    normalized_now = _normalize_now(now)
    start = as_utc(trial_start)
    end = as_utc(trial_end)

    is_in_trial = end is not None and start <= normalized_now <= end
    days_remaining = 0
    if is_in_trial:
        days_remaining = max(0, math.ceil((end - normalized_now).total_seconds() / _DAY_SECONDS))

    return TrialInfo(
        is_in_trial=is_in_trial,
        trial_start=start,
        trial_end=end,
        days_remaining=days_remaining,
    )


def check_subscription_status(account_id: int, now: Optional[Any] = None) -> SubscriptionStatus:
    """
    Resolve the entitlement state of an account.

    Returns the Free status when the account has no entitling subscription or
    when anything fails along the way.
    """
    normalized_now = _normalize_now(now)
    try:
        with get_db_session() as session:
            row = session.execute(_select_current_subscription(account_id)).first()
            if row is not None:
                plan = _plan_from_row(row)
                features = _get_feature_access(session, plan.id)
                limit_rows = _get_limit_rows(session, plan.id)

        if row is None:
            return get_free_subscription_status(normalized_now, account_id=account_id)

        return SubscriptionStatus(
            is_active=row.status in ACTIVE_STATUSES,
            plan=plan,
            features=features,
            limits=_build_feature_limits(account_id, limit_rows),
            billing_info=_get_billing_info(row),
            trial_info=compute_trial_info(row.trial_start, row.trial_end, normalized_now),
        )
    except Exception:
        logger.warning(
            "[subscription] status resolution failed, falling back to free tier",
            exc_info=True,
            extra={"account_id": account_id},
        )
        return get_free_subscription_status(normalized_now)


def has_feature_access(account_id: int, feature_key: str) -> bool:
    status = check_subscription_status(account_id)
    return bool(status.features.get(feature_key, False))


def get_feature_limit(account_id: int, limit_key: str) -> Optional[FeatureLimit]:
    status = check_subscription_status(account_id)
    return status.limits.get(limit_key)


def evaluate_usage_limit(status: SubscriptionStatus, limit_key: str) -> UsageLimitCheck:
    """Usage check against an already-resolved status. Unknown keys are unlimited."""
    limit = status.limits.get(limit_key)
    if limit is None:
        return UsageLimitCheck(allowed=True, current=0, maximum=math.inf, remaining=math.inf)
    return UsageLimitCheck(
        allowed=limit.current < limit.maximum,
        current=limit.current,
        maximum=limit.maximum,
        remaining=max(0, limit.maximum - limit.current),
    )


def check_usage_limit(account_id: int, limit_key: str) -> UsageLimitCheck:
    try:
        return evaluate_usage_limit(check_subscription_status(account_id), limit_key)
    except Exception:
        logger.error("[subscription] usage limit check failed", exc_info=True, extra={"account_id": account_id, "limit_key": limit_key})
        return UsageLimitCheck(allowed=False, current=0, maximum=0, remaining=0)


def get_usage_metrics(account_id: int) -> Dict[str, Dict[str, float]]:
    """Usage per limit key: current, limit and percentage used."""
    status = check_subscription_status(account_id)
    metrics: Dict[str, Dict[str, float]] = {}
    for key, limit in status.limits.items():
        percentage = 100.0 if limit.maximum <= 0 else round(limit.current * 100.0 / limit.maximum, 2)
        metrics[key] = {
            "current": limit.current,
            "limit": limit.maximum,
            "percentage": percentage,
        }
    return metrics
