# restohub/conftest.py
import os
from datetime import datetime, timedelta, timezone

import pytest

# Must be set before restohub.core.config builds its settings
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")

from sqlalchemy import insert

from restohub.core.auth import create_session_token
from restohub.core.database import (
    accounts,
    get_db_session,
    reset_database,
    subscription_features,
    subscription_plans,
    user_subscriptions,
)
from restohub.features.usage.service import clear_usage_counters
from restohub.tests.mocks import FakeBillingProvider


FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Fresh schema and no usage counters for every test."""
    reset_database()
    clear_usage_counters()
    yield
    clear_usage_counters()


@pytest.fixture
def fake_provider():
    return FakeBillingProvider()


@pytest.fixture
def make_account():
    def _make(email="owner@bistro.test", name="Bistro", role="user", stripe_customer_id=None, account_id=None):
        values = dict(email=email, name=name, role=role, stripe_customer_id=stripe_customer_id)
        if account_id is not None:
            values["id"] = account_id
        with get_db_session() as session:
            result = session.execute(insert(accounts).values(**values))
            return result.inserted_primary_key[0]
    return _make


@pytest.fixture
def make_plan():
    def _make(
        name="Standard",
        price=49.0,
        stripe_price_id="price_standard",
        features=None,
        limits=None,
        is_active=True,
        raw_columns=None,
    ):
        """features: {key: enabled}; limits: {key: maximum}; raw_columns overrides JSON text columns."""
        columns = {
            "features": '["menu_management", "online_ordering"]',
            "feature_limits": '{"menu_items": 100}',
            "trial_settings": '{"trial_days": 14}',
        }
        columns.update(raw_columns or {})
        with get_db_session() as session:
            plan_id = session.execute(
                insert(subscription_plans).values(
                    name=name,
                    description=f"{name} plan",
                    price=price,
                    billing_interval="monthly",
                    stripe_price_id=stripe_price_id,
                    is_active=is_active,
                    **columns,
                )
            ).inserted_primary_key[0]

            rows = []
            for key, enabled in (features if features is not None else {"online_ordering": True}).items():
                rows.append({"feature_key": key, "is_enabled": enabled, "limit_value": None, "limit_type": None})
            for key, maximum in (limits if limits is not None else {"menu_items": 100}).items():
                rows.append({"feature_key": key, "is_enabled": True, "limit_value": maximum, "limit_type": "items"})
            if rows:
                session.execute(
                    insert(subscription_features),
                    [{"subscription_plan_id": plan_id, **row} for row in rows],
                )
            return plan_id
    return _make


@pytest.fixture
def make_subscription():
    def _make(account_id, plan_id, status="active", stripe_subscription_id="sub_test_1", created_at=None, **fields):
        now = datetime.now(timezone.utc)
        values = dict(
            account_id=account_id,
            subscription_plan_id=plan_id,
            status=status,
            current_period_start=now - timedelta(days=5),
            current_period_end=now + timedelta(days=25),
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id="cus_existing",
        )
        if created_at is not None:
            values["created_at"] = created_at
        values.update(fields)
        with get_db_session() as session:
            return session.execute(insert(user_subscriptions).values(**values)).inserted_primary_key[0]
    return _make


@pytest.fixture
def auth_headers():
    def _headers(account_id, role=None):
        return {"Authorization": f"Bearer {create_session_token(account_id, role=role)}"}
    return _headers
