"""Tests for entitlement resolution."""

import math
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from restohub.features.subscription.service import (
    check_subscription_status,
    check_usage_limit,
    compute_trial_info,
    get_feature_limit,
    get_free_subscription_status,
    get_usage_metrics,
    has_feature_access,
)
from restohub.features.usage.service import register_usage_counter
from restohub.models.subscription import FREE_MENU_ITEMS_LIMIT, FREE_PLAN_ID, FREE_PLAN_NAME


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_no_subscription_resolves_to_free(make_account):
    account_id = make_account()

    status = check_subscription_status(account_id, now=NOW)

    assert status.is_active is True
    assert status.plan.name == FREE_PLAN_NAME
    assert status.plan.id == FREE_PLAN_ID
    assert status.plan.price == 0
    assert status.features == {"basic_features": True}
    assert list(status.limits) == ["menu_items"]
    assert status.limits["menu_items"].current == 0
    assert status.limits["menu_items"].maximum == FREE_MENU_ITEMS_LIMIT
    assert status.trial_info is None


def test_free_billing_window_is_thirty_days_from_now():
    status = get_free_subscription_status(NOW)

    assert status.billing_info.current_period_start == NOW
    assert status.billing_info.current_period_end == NOW + timedelta(days=30)
    assert status.billing_info.amount == 0


def test_free_status_is_a_fresh_value_each_call():
    first = get_free_subscription_status(NOW)
    second = get_free_subscription_status(NOW)

    assert first == second
    assert first is not second
    assert first.limits is not second.limits


def test_free_status_reports_registered_usage(make_account):
    account_id = make_account()
    register_usage_counter("menu_items", lambda _account_id: 7)

    status = check_subscription_status(account_id, now=NOW)

    assert status.limits["menu_items"].current == 7


def test_active_subscription_builds_plan_features_and_limits(make_account, make_plan, make_subscription):
    account_id = make_account()
    plan_id = make_plan(features={"online_ordering": True, "analytics": False}, limits={"menu_items": 100})
    make_subscription(account_id, plan_id)
    register_usage_counter("menu_items", lambda _account_id: 12)

    status = check_subscription_status(account_id, now=NOW)

    assert status.is_active is True
    assert status.plan.id == plan_id
    assert status.plan.name == "Standard"
    assert status.plan.features == ["menu_management", "online_ordering"]
    assert status.plan.feature_limits == {"menu_items": 100}
    assert status.plan.trial_settings == {"trial_days": 14}
    assert status.features == {"online_ordering": True, "analytics": False, "menu_items": True}
    assert status.limits["menu_items"].current == 12
    assert status.limits["menu_items"].maximum == 100
    assert status.limits["menu_items"].unit == "items"
    assert status.billing_info.amount == 49.0
    assert status.billing_info.status == "active"
    assert status.trial_info is None


def test_limit_without_counter_defaults_to_zero_usage(make_account, make_plan, make_subscription):
    account_id = make_account()
    plan_id = make_plan(limits={"reservations": 500})
    make_subscription(account_id, plan_id)

    status = check_subscription_status(account_id, now=NOW)

    assert status.limits["reservations"].current == 0


def test_malformed_plan_json_degrades_to_defaults(make_account, make_plan, make_subscription):
    account_id = make_account()
    plan_id = make_plan(raw_columns={"features": "{not json", "feature_limits": "[1, 2]", "trial_settings": ""})
    make_subscription(account_id, plan_id)

    status = check_subscription_status(account_id, now=NOW)

    assert status.plan.name == "Standard"
    assert status.plan.features == []
    assert status.plan.feature_limits == {}
    assert status.plan.trial_settings == {}


def test_canceled_subscription_falls_back_to_free(make_account, make_plan, make_subscription):
    account_id = make_account()
    plan_id = make_plan()
    make_subscription(account_id, plan_id, status="canceled")

    status = check_subscription_status(account_id, now=NOW)

    assert status.plan.name == FREE_PLAN_NAME


def test_past_due_subscription_is_inactive(make_account, make_plan, make_subscription):
    account_id = make_account()
    plan_id = make_plan()
    make_subscription(account_id, plan_id, status="past_due")

    status = check_subscription_status(account_id, now=NOW)

    assert status.is_active is False
    assert status.plan.id == plan_id


def test_active_row_wins_over_newer_past_due_row(make_account, make_plan, make_subscription):
    account_id = make_account()
    plan_id = make_plan()
    make_subscription(account_id, plan_id, status="active", stripe_subscription_id="sub_old",
                      created_at=NOW - timedelta(days=60))
    make_subscription(account_id, plan_id, status="past_due", stripe_subscription_id="sub_new",
                      created_at=NOW - timedelta(days=1))

    status = check_subscription_status(account_id, now=NOW)

    assert status.is_active is True


def test_most_recent_active_row_is_selected(make_account, make_plan, make_subscription):
    account_id = make_account()
    old_plan = make_plan(name="Starter", stripe_price_id="price_starter")
    new_plan = make_plan(name="Professional", stripe_price_id="price_pro")
    make_subscription(account_id, old_plan, stripe_subscription_id="sub_old", created_at=NOW - timedelta(days=60))
    make_subscription(account_id, new_plan, stripe_subscription_id="sub_new", created_at=NOW - timedelta(days=1))

    status = check_subscription_status(account_id, now=NOW)

    assert status.plan.name == "Professional"


def test_database_failure_fails_open_to_free(make_account):
    account_id = make_account()

    with patch("restohub.features.subscription.service.get_db_session", side_effect=RuntimeError("db down")):
        status = check_subscription_status(account_id, now=NOW)

    assert status.plan.name == FREE_PLAN_NAME
    assert status.is_active is True
    assert status.limits["menu_items"].current == 0


def test_counter_failure_fails_open_to_free(make_account, make_plan, make_subscription):
    account_id = make_account()
    plan_id = make_plan()
    make_subscription(account_id, plan_id)

    def broken_counter(_account_id):
        raise RuntimeError("counter down")

    register_usage_counter("menu_items", broken_counter)

    status = check_subscription_status(account_id, now=NOW)

    assert status.plan.name == FREE_PLAN_NAME


def test_trial_info_inside_window():
    info = compute_trial_info(NOW - timedelta(days=2), NOW + timedelta(days=3, hours=1), NOW)

    assert info.is_in_trial is True
    assert info.days_remaining == 4


def test_trial_info_exact_day_boundary():
    info = compute_trial_info(NOW - timedelta(days=1), NOW + timedelta(days=5), NOW)

    assert info.days_remaining == 5


def test_trial_info_after_window():
    info = compute_trial_info(NOW - timedelta(days=20), NOW - timedelta(days=14), NOW)

    assert info.is_in_trial is False
    assert info.days_remaining == 0


def test_trial_info_absent_without_trial_start():
    assert compute_trial_info(None, NOW + timedelta(days=3), NOW) is None


def test_trial_info_accepts_naive_timestamps():
    info = compute_trial_info(datetime(2025, 2, 27, 12, 0), datetime(2025, 3, 2, 12, 0), NOW)

    assert info.is_in_trial is True
    assert info.days_remaining == 1


def test_trialing_subscription_carries_trial_info(make_account, make_plan, make_subscription):
    account_id = make_account()
    plan_id = make_plan()
    make_subscription(
        account_id,
        plan_id,
        status="trialing",
        trial_start=NOW - timedelta(days=1),
        trial_end=NOW + timedelta(days=13),
    )

    status = check_subscription_status(account_id, now=NOW)

    assert status.is_active is True
    assert status.trial_info.is_in_trial is True
    assert status.trial_info.days_remaining == 13


def test_feature_helpers(make_account, make_plan, make_subscription):
    account_id = make_account()
    plan_id = make_plan(features={"online_ordering": True, "analytics": False})
    make_subscription(account_id, plan_id)

    assert has_feature_access(account_id, "online_ordering") is True
    assert has_feature_access(account_id, "analytics") is False
    assert has_feature_access(account_id, "unknown") is False
    assert get_feature_limit(account_id, "menu_items").maximum == 100
    assert get_feature_limit(account_id, "unknown") is None


@pytest.mark.parametrize("usage,allowed,remaining", [(24, True, 1), (25, False, 0), (30, False, 0)])
def test_check_usage_limit_boundary(make_account, usage, allowed, remaining):
    account_id = make_account()
    register_usage_counter("menu_items", lambda _account_id: usage)

    check = check_usage_limit(account_id, "menu_items")

    assert check.allowed is allowed
    assert check.current == usage
    assert check.maximum == FREE_MENU_ITEMS_LIMIT
    assert check.remaining == remaining


def test_check_usage_limit_unknown_key_is_unlimited(make_account):
    check = check_usage_limit(make_account(), "reservations")

    assert check.allowed is True
    assert check.maximum == math.inf
    assert check.remaining == math.inf


def test_check_usage_limit_error_denies(make_account):
    account_id = make_account()

    with patch("restohub.features.subscription.service.check_subscription_status", side_effect=RuntimeError("boom")):
        check = check_usage_limit(account_id, "menu_items")

    assert check.allowed is False
    assert (check.current, check.maximum, check.remaining) == (0, 0, 0)


def test_usage_metrics_percentages(make_account):
    account_id = make_account()
    register_usage_counter("menu_items", lambda _account_id: 10)

    metrics = get_usage_metrics(account_id)

    assert metrics == {"menu_items": {"current": 10, "limit": 25, "percentage": 40.0}}


def test_summary_shape(make_account):
    summary = check_subscription_status(make_account(), now=NOW).summary()

    assert summary == {"isActive": True, "planName": "Free", "planId": 0, "trialDaysRemaining": 0}
