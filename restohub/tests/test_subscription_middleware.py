"""Tests for page-route access control and the API guards."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from restohub.features.subscription.middleware import (
    SubscriptionAccessMiddleware,
    SubscriptionMiddlewareConfig,
    check_feature_access,
    feature_access_middleware,
    get_subscription_context,
    is_admin_route,
    require_feature,
    require_usage_below,
    requires_subscription,
    should_skip,
    usage_limit_middleware,
)
from restohub.features.usage.service import register_usage_counter
from restohub.main import create_app


def _build_app(config=None):
    app = create_app(access_config=config)

    @app.get("/dashboard")
    def dashboard():
        return {"page": "dashboard"}

    @app.get("/menu/items")
    def menu_items():
        return {"page": "menu"}

    @app.get("/admin/users")
    def admin_users():
        return {"page": "admin-users"}

    @app.get("/pricing")
    def pricing():
        return {"page": "pricing"}

    @app.get("/blog")
    def blog():
        return {"page": "blog"}

    @app.get("/api/orders/online", dependencies=[Depends(require_feature("online_ordering"))])
    def online_orders():
        return {"ok": True}

    @app.post("/api/menu-items", dependencies=[Depends(require_usage_below("menu_items"))])
    def create_menu_item():
        return {"ok": True}

    @app.get("/api/guard/feature/{key}")
    async def feature_guard(key: str, request: Request):
        return await feature_access_middleware(request, key) or {"passed": True}

    @app.get("/api/guard/usage/{key}")
    async def usage_guard(key: str, request: Request):
        return await usage_limit_middleware(request, key) or {"passed": True}

    return app


@pytest.fixture
def client():
    return TestClient(_build_app(), follow_redirects=False)


@pytest.mark.parametrize(
    "path,expected",
    [
        ("/dashboard", True),
        ("/dashboard/settings", True),
        ("/menu", True),
        ("/admin/users", True),
        ("/pricing", False),
        ("/", False),
        ("/blog", False),
        ("/menus", False),
    ],
)
def test_requires_subscription(path, expected):
    assert requires_subscription(path) is expected


def test_route_helpers():
    assert is_admin_route("/admin/users/7") is True
    assert is_admin_route("/admin/reports") is False
    assert should_skip("/_next/static/chunk.js") is True
    assert should_skip("/favicon.ico") is True
    assert should_skip("/api/webhooks/stripe") is True
    assert should_skip("/api/subscription-plans") is True
    assert should_skip("/dashboard") is False


def test_free_route_skips_session_and_resolution(client):
    with patch("restohub.features.subscription.middleware.get_session_identity") as identity, \
         patch("restohub.features.subscription.middleware.check_subscription_status") as resolve:
        response = client.get("/pricing")

    assert response.status_code == 200
    identity.assert_not_called()
    resolve.assert_not_called()


def test_protected_without_session_redirects_to_login(client):
    response = client.get("/dashboard")

    assert response.status_code == 307
    assert response.headers["location"] == "/login?callbackUrl=/dashboard"


def test_invalid_token_counts_as_no_session(client):
    response = client.get("/dashboard", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 307
    assert response.headers["location"].startswith("/login")


def test_unprotected_route_without_session_passes(client):
    response = client.get("/blog")

    assert response.status_code == 200


def test_free_account_passes_with_summary_header(client, make_account, auth_headers):
    account_id = make_account()

    response = client.get("/dashboard", headers=auth_headers(account_id))

    assert response.status_code == 200
    summary = json.loads(response.headers["x-subscription-status"])
    assert summary == {"isActive": True, "planName": "Free", "planId": 0, "trialDaysRemaining": 0}


def test_session_cookie_is_accepted(client, make_account, auth_headers):
    account_id = make_account()
    token = auth_headers(account_id)["Authorization"].split(" ", 1)[1]
    cookie = f"next-auth.session-token={token}"

    response = client.get("/dashboard", headers={"Cookie": cookie})

    assert response.status_code == 200


def test_past_due_paid_plan_redirects_to_pricing(client, make_account, make_plan, make_subscription, auth_headers):
    account_id = make_account()
    make_subscription(account_id, make_plan(name="Standard"), status="past_due")

    response = client.get("/dashboard", headers=auth_headers(account_id))

    assert response.status_code == 307
    assert response.headers["location"] == "/pricing?reason=subscription_required"


def test_persisted_plan_named_free_is_not_the_free_tier(client, make_account, make_plan, make_subscription, auth_headers):
    account_id = make_account()
    make_subscription(account_id, make_plan(name="Free", price=0.0), status="past_due")

    response = client.get("/dashboard", headers=auth_headers(account_id))

    assert response.status_code == 307
    assert response.headers["location"] == "/pricing?reason=subscription_required"


def test_expired_trial_redirects_to_pricing(client, make_account, make_plan, make_subscription, auth_headers):
    account_id = make_account()
    now = datetime.now(timezone.utc)
    make_subscription(
        account_id,
        make_plan(),
        status="trialing",
        trial_start=now - timedelta(days=20),
        trial_end=now - timedelta(days=14),
    )

    response = client.get("/dashboard", headers=auth_headers(account_id))

    assert response.status_code == 307
    assert response.headers["location"] == "/pricing?reason=trial_expired"


def test_active_trial_passes_with_days_remaining(client, make_account, make_plan, make_subscription, auth_headers):
    account_id = make_account()
    now = datetime.now(timezone.utc)
    make_subscription(
        account_id,
        make_plan(),
        status="trialing",
        trial_start=now - timedelta(days=1),
        trial_end=now + timedelta(days=6, hours=12),
    )

    response = client.get("/menu/items", headers=auth_headers(account_id))

    assert response.status_code == 200
    summary = json.loads(response.headers["x-subscription-status"])
    assert summary["trialDaysRemaining"] == 7
    assert get_subscription_context(response.headers).is_in_trial is True


def test_active_paid_plan_passes(client, make_account, make_plan, make_subscription, auth_headers):
    account_id = make_account()
    plan_id = make_plan(name="Standard")
    make_subscription(account_id, plan_id)

    response = client.get("/dashboard", headers=auth_headers(account_id))

    assert response.status_code == 200
    context = get_subscription_context(response.headers)
    assert context.plan_name == "Standard"
    assert context.plan_id == plan_id
    assert context.is_active is True


def test_admin_route_requires_admin_role(client, make_account, auth_headers):
    account_id = make_account()

    denied = client.get("/admin/users", headers=auth_headers(account_id))
    allowed = client.get("/admin/users", headers=auth_headers(account_id, role="admin"))

    assert denied.status_code == 307
    assert denied.headers["location"] == "/dashboard"
    assert allowed.status_code == 200
    assert "x-subscription-status" not in allowed.headers


def test_admin_bypass_config(make_account, auth_headers):
    client = TestClient(_build_app(SubscriptionMiddlewareConfig(admin_bypass=True)), follow_redirects=False)

    response = client.get("/admin/users", headers=auth_headers(make_account()))

    assert response.status_code == 200


def test_free_tier_disallowed_still_passes_active_free(make_account, auth_headers):
    client = TestClient(_build_app(SubscriptionMiddlewareConfig(allow_free_tier=False)), follow_redirects=False)

    response = client.get("/dashboard", headers=auth_headers(make_account()))

    assert response.status_code == 200
    assert json.loads(response.headers["x-subscription-status"])["planName"] == "Free"


def test_require_active_disabled_skips_resolution(make_account, auth_headers):
    client = TestClient(
        _build_app(SubscriptionMiddlewareConfig(require_active_subscription=False)),
        follow_redirects=False,
    )

    with patch("restohub.features.subscription.middleware.check_subscription_status") as resolve:
        response = client.get("/dashboard", headers=auth_headers(make_account()))

    assert response.status_code == 200
    resolve.assert_not_called()


def _failing_app(development):
    app = FastAPI()
    app.add_middleware(SubscriptionAccessMiddleware, config=SubscriptionMiddlewareConfig(), development=development)

    @app.get("/dashboard")
    def dashboard():
        return {"page": "dashboard"}

    @app.get("/blog")
    def blog():
        return {"page": "blog"}

    return TestClient(app, follow_redirects=False)


def test_evaluation_error_fails_open_in_development(make_account, auth_headers):
    client = _failing_app(development=True)

    with patch("restohub.features.subscription.middleware.check_subscription_status", side_effect=RuntimeError("boom")):
        response = client.get("/dashboard", headers=auth_headers(make_account()))

    assert response.status_code == 200


def test_evaluation_error_fails_closed_in_production(make_account, auth_headers):
    client = _failing_app(development=False)

    with patch("restohub.features.subscription.middleware.get_session_identity", side_effect=RuntimeError("boom")):
        protected = client.get("/dashboard", headers=auth_headers(make_account()))
        unprotected = client.get("/blog", headers=auth_headers(make_account(email="other@bistro.test")))

    assert protected.status_code == 307
    assert protected.headers["location"] == "/pricing"
    assert unprotected.status_code == 200


def test_feature_guard_requires_session(client):
    response = client.get("/api/orders/online")

    assert response.status_code == 401
    assert response.json() == {"error": "Authentication required", "success": False}


def test_feature_guard_rejects_missing_feature(client, make_account, auth_headers):
    response = client.get("/api/orders/online", headers=auth_headers(make_account()))

    assert response.status_code == 403
    body = response.json()
    assert body["requiredFeature"] == "online_ordering"
    assert body["currentPlan"] == "Free"
    assert body["success"] is False
    assert body["error"] == "Feature not available in your current plan"


def test_feature_guard_passes_enabled_feature(client, make_account, make_plan, make_subscription, auth_headers):
    account_id = make_account()
    make_subscription(account_id, make_plan(features={"online_ordering": True}))

    response = client.get("/api/orders/online", headers=auth_headers(account_id))

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_feature_guard_rejects_disabled_feature(client, make_account, make_plan, make_subscription, auth_headers):
    account_id = make_account()
    make_subscription(account_id, make_plan(features={"analytics": False}))

    response = client.get("/api/guard/feature/analytics", headers=auth_headers(account_id))

    assert response.status_code == 403
    assert response.json()["requiredFeature"] == "analytics"


def test_feature_guard_error_returns_500(client, make_account, auth_headers):
    with patch("restohub.features.subscription.middleware.check_subscription_status", side_effect=RuntimeError("boom")):
        response = client.get("/api/guard/feature/analytics", headers=auth_headers(make_account()))

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to verify feature access", "success": False}


@pytest.mark.parametrize("usage,status_code", [(24, 200), (25, 429), (26, 429)])
def test_usage_guard_boundary(client, make_account, auth_headers, usage, status_code):
    account_id = make_account()
    register_usage_counter("menu_items", lambda _account_id: usage)

    response = client.post("/api/menu-items", headers=auth_headers(account_id))

    assert response.status_code == status_code


def test_usage_guard_at_free_limit(client, make_account, auth_headers):
    account_id = make_account()
    register_usage_counter("menu_items", lambda _account_id: 25)

    response = client.get("/api/guard/usage/menu_items", headers=auth_headers(account_id))

    assert response.status_code == 429
    assert response.json() == {
        "error": "Usage limit exceeded for menu_items",
        "success": False,
        "limit": 25,
        "current": 25,
        "upgradeRequired": True,
    }


def test_usage_guard_unknown_key_passes(client, make_account, auth_headers):
    response = client.get("/api/guard/usage/reservations", headers=auth_headers(make_account()))

    assert response.status_code == 200
    assert response.json() == {"passed": True}


def test_usage_guard_requires_session(client):
    response = client.post("/api/menu-items")

    assert response.status_code == 401


def test_usage_guard_error_returns_500(client, make_account, auth_headers):
    with patch("restohub.features.subscription.middleware.check_subscription_status", side_effect=RuntimeError("boom")):
        response = client.get("/api/guard/usage/menu_items", headers=auth_headers(make_account()))

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to verify usage limits", "success": False}


def test_subscription_context_tolerates_bad_header():
    assert get_subscription_context({}) is None
    assert get_subscription_context({"x-subscription-status": "{broken"}) is None
    assert get_subscription_context({"x-subscription-status": '{"isActive": true}'}) is None


def test_check_feature_access_helper(make_account, make_plan, make_subscription):
    account_id = make_account()
    make_subscription(account_id, make_plan(features={"online_ordering": True}))

    assert check_feature_access(account_id, "online_ordering") is True
    assert check_feature_access(account_id, "analytics") is False

    with patch("restohub.features.subscription.middleware.has_feature_access", side_effect=RuntimeError("boom")):
        assert check_feature_access(account_id, "online_ordering") is False
