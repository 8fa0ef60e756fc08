"""
restohub/features/plans/service.py

Plan catalogue service.

Handles:
- Listing the plans offered for purchase
- Plan seeding (starter, professional, enterprise)

Plans carry their marketing feature list and limit map as JSON text; the
entitlements the resolver enforces live in subscription_features rows.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select

from restohub.core.database import get_db_session, subscription_features, subscription_plans
from restohub.models.subscription import SubscriptionPlan, parse_json_column


logger = logging.getLogger(__name__)

# Default plan configurations; -1 means unlimited (no limit row)
DEFAULT_PLANS = {
    "Starter": {
        "description": "Perfect for small restaurants getting started",
        "price": 29.99,
        "features": ["menu_management", "basic_orders", "customer_support"],
        "limits": {"menu_items": 50, "orders_per_month": 100, "staff_accounts": 2},
        "trial_settings": {"trial_days": 14, "trial_features": ["menu_management", "basic_orders"]},
    },
    "Professional": {
        "description": "Advanced features for growing restaurants",
        "price": 79.99,
        "features": [
            "menu_management",
            "advanced_orders",
            "inventory_management",
            "analytics",
            "customer_support",
            "staff_management",
        ],
        "limits": {"menu_items": 200, "orders_per_month": 1000, "staff_accounts": 10},
        "trial_settings": {"trial_days": 14, "trial_features": ["menu_management", "advanced_orders", "analytics"]},
    },
    "Enterprise": {
        "description": "Complete solution for large restaurant chains",
        "price": 199.99,
        "features": [
            "menu_management",
            "advanced_orders",
            "inventory_management",
            "analytics",
            "customer_support",
            "staff_management",
            "multi_location",
            "api_access",
            "custom_integrations",
        ],
        "limits": {"menu_items": -1, "orders_per_month": -1, "staff_accounts": -1, "locations": -1},
        "trial_settings": {"trial_days": 30, "trial_features": ["menu_management", "advanced_orders", "analytics", "multi_location"]},
    },
}


def _plan_from_row(row) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=row.id,
        name=row.name,
        description=row.description,
        price=float(row.price or 0),
        billing_interval=row.billing_interval or "monthly",
        features=parse_json_column(row.features, []),
        feature_limits=parse_json_column(row.feature_limits, {}),
        trial_settings=parse_json_column(row.trial_settings, {}),
        stripe_product_id=row.stripe_product_id,
        stripe_price_id=row.stripe_price_id,
        is_active=bool(row.is_active),
    )


def list_active_plans() -> List[SubscriptionPlan]:
    """Plans currently offered, cheapest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(subscription_plans)
            .where(subscription_plans.c.is_active.is_(True))
            .order_by(subscription_plans.c.price.asc(), subscription_plans.c.id.asc())
        ).all()
    return [_plan_from_row(row) for row in rows]


def get_plan(plan_id: int) -> Optional[SubscriptionPlan]:
    with get_db_session() as session:
        row = session.execute(
            select(subscription_plans).where(subscription_plans.c.id == plan_id)
        ).first()
    return _plan_from_row(row) if row else None


def _entitlement_rows(plan_id: int, config: Dict[str, Any]) -> List[Dict[str, Any]]:
    rows: Dict[str, Dict[str, Any]] = {}
    for feature_key in config.get("features", []):
        rows[feature_key] = {"feature_key": feature_key, "is_enabled": True, "limit_value": None, "limit_type": None}
    for limit_key, maximum in config.get("limits", {}).items():
        rows[limit_key] = {
            "feature_key": limit_key,
            "is_enabled": True,
            "limit_value": None if maximum < 0 else maximum,
            "limit_type": "count",
        }
    return [{"subscription_plan_id": plan_id, **row} for row in rows.values()]


def seed_plans(price_ids: Optional[Dict[str, str]] = None) -> Dict[str, int]:
    """
    Seed default plans and their entitlement rows (idempotent by plan name).

    Args:
        price_ids: Optional plan name -> Stripe price id mapping

    Returns:
        Plan name -> plan id for every default plan
    """
    price_ids = price_ids or {}
    plan_ids: Dict[str, int] = {}

    with get_db_session() as session:
        for name, config in DEFAULT_PLANS.items():
            existing = session.execute(
                select(subscription_plans.c.id).where(subscription_plans.c.name == name)
            ).scalar_one_or_none()
            if existing is not None:
                plan_ids[name] = existing
                continue

            result = session.execute(
                insert(subscription_plans).values(
                    name=name,
                    description=config["description"],
                    price=config["price"],
                    billing_interval="monthly",
                    features=json.dumps(config["features"]),
                    feature_limits=json.dumps(config["limits"]),
                    trial_settings=json.dumps(config["trial_settings"]),
                    stripe_price_id=price_ids.get(name),
                    is_active=True,
                )
            )
            plan_id = result.inserted_primary_key[0]
            session.execute(insert(subscription_features), _entitlement_rows(plan_id, config))
            plan_ids[name] = plan_id
            logger.info("[plans] seeded plan", extra={"plan_name": name, "plan_id": plan_id})

    return plan_ids
