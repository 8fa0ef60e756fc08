"""
Subscription access control.

Page routes go through SubscriptionAccessMiddleware, which allows, redirects
to login/pricing/dashboard, and attaches a compact entitlement summary header.
API routes use the JSON guards (feature_access_middleware,
usage_limit_middleware) directly or through the require_* dependencies.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import HTTPConnection

from restohub.core.auth import account_id_from_identity, get_session_identity
from restohub.core.config import Settings, is_development, settings
from restohub.features.subscription.service import (
    check_subscription_status,
    evaluate_usage_limit,
    has_feature_access,
)
from restohub.models.subscription import SubscriptionContext, SubscriptionStatus


logger = logging.getLogger(__name__)

PROTECTED_ROUTES = (
    "/dashboard",
    "/admin",
    "/menu",
    "/reservations",
    "/orders",
    "/staff",
    "/kitchen",
    "/account",
)

# Always accessible; "/" only matches the landing page itself
FREE_ROUTES = (
    "/",
    "/login",
    "/register",
    "/pricing",
    "/about-us",
    "/contact",
    "/terms-of-service",
    "/privacy-policy",
    "/api/auth",
    "/api/subscription-plans",
)

ADMIN_ROUTES = (
    "/admin/subscription-plans",
    "/admin/users",
    "/admin/settings",
)

PASSTHROUGH_PREFIXES = ("/_next", "/static", "/api/auth", "/api/webhooks")

LOGIN_PATH = "/login"
DASHBOARD_PATH = "/dashboard"


@dataclass
class SubscriptionMiddlewareConfig:
    require_active_subscription: bool = True
    allow_free_tier: bool = True
    admin_bypass: bool = False
    redirect_url: str = "/pricing"
    status_header: str = "x-subscription-status"

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "SubscriptionMiddlewareConfig":
        cfg = cfg or settings
        return cls(
            require_active_subscription=cfg.SUBSCRIPTION_REQUIRE_ACTIVE,
            allow_free_tier=cfg.SUBSCRIPTION_ALLOW_FREE_TIER,
            admin_bypass=cfg.SUBSCRIPTION_ADMIN_BYPASS,
            redirect_url=cfg.SUBSCRIPTION_REDIRECT_URL,
            status_header=cfg.SUBSCRIPTION_STATUS_HEADER,
        )


@dataclass
class AccessDecision:
    """Outcome of evaluating one page request."""
    redirect_to: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None
    status: Optional[SubscriptionStatus] = field(default=None, repr=False)

    @property
    def allowed(self) -> bool:
        return self.redirect_to is None


ALLOW = AccessDecision()


def _matches(pathname: str, route: str) -> bool:
    if route == "/":
        return pathname == "/"
    return pathname == route or pathname.startswith(route + "/")


def is_free_route(pathname: str) -> bool:
    return any(_matches(pathname, route) for route in FREE_ROUTES)


def requires_subscription(pathname: str) -> bool:
    if is_free_route(pathname):
        return False
    return any(_matches(pathname, route) for route in PROTECTED_ROUTES)


def is_admin_route(pathname: str) -> bool:
    return any(_matches(pathname, route) for route in ADMIN_ROUTES)


def should_skip(pathname: str) -> bool:
    """Framework assets, auth and webhook endpoints, files and free routes."""
    if pathname.startswith(PASSTHROUGH_PREFIXES):
        return True
    if "." in pathname.rsplit("/", 1)[-1]:
        return True
    return is_free_route(pathname)


def _with_query(path: str, **params: str) -> str:
    return f"{path}?{urlencode(params, safe='/')}" if params else path


def evaluate_access(
    request: HTTPConnection,
    config: SubscriptionMiddlewareConfig,
) -> AccessDecision:
    """
    Decide a page request. Errors propagate; the middleware owns the
    development/production failure policy.
    """
    pathname = request.url.path

    identity = get_session_identity(request)
    account_id = account_id_from_identity(identity)
    if account_id is None:
        if requires_subscription(pathname):
            return AccessDecision(redirect_to=_with_query(LOGIN_PATH, callbackUrl=pathname))
        return ALLOW

    if is_admin_route(pathname):
        if identity.is_admin or config.admin_bypass:
            return ALLOW
        return AccessDecision(redirect_to=DASHBOARD_PATH)

    if not requires_subscription(pathname) or not config.require_active_subscription:
        return ALLOW

    status = check_subscription_status(account_id)
    is_free = status.plan.is_free

    if config.allow_free_tier and is_free:
        return AccessDecision(summary=status.summary(), status=status)

    if not status.is_active and not is_free:
        return AccessDecision(redirect_to=_with_query(config.redirect_url, reason="subscription_required"))

    trial = status.trial_info
    if status.billing_info.status == "trialing" and trial is not None and trial.days_remaining <= 0:
        return AccessDecision(redirect_to=_with_query(config.redirect_url, reason="trial_expired"))

    return AccessDecision(summary=status.summary(), status=status)


class SubscriptionAccessMiddleware(BaseHTTPMiddleware):
    """Entitlement gate for page routes."""

    def __init__(self, app, *, config: Optional[SubscriptionMiddlewareConfig] = None, development: Optional[bool] = None):
        super().__init__(app)
        self.config = config or SubscriptionMiddlewareConfig.from_settings()
        self.development = development

    def _is_development(self) -> bool:
        return is_development() if self.development is None else self.development

    async def dispatch(self, request: Request, call_next):
        pathname = request.url.path
        if should_skip(pathname):
            return await call_next(request)

        try:
            decision = await run_in_threadpool(evaluate_access, request, self.config)
        except Exception:
            logger.error("[subscription] access check failed", exc_info=True, extra={"path": pathname})
            if self._is_development():
                logger.warning("[subscription] allowing access in development mode", extra={"path": pathname})
                return await call_next(request)
            if requires_subscription(pathname):
                return RedirectResponse(self.config.redirect_url, status_code=307)
            return await call_next(request)

        if not decision.allowed:
            return RedirectResponse(decision.redirect_to, status_code=307)

        if decision.status is not None:
            request.state.subscription_status = decision.status
        response = await call_next(request)
        if decision.summary is not None:
            response.headers[self.config.status_header] = json.dumps(decision.summary)
        return response


def _auth_required() -> JSONResponse:
    return JSONResponse({"error": "Authentication required", "success": False}, status_code=401)


async def feature_access_middleware(request: HTTPConnection, required_feature: str) -> Optional[JSONResponse]:
    """
    API guard for a feature key.

    Returns None to continue, or the 401/403/500 JSON response to send.
    """
    try:
        account_id = account_id_from_identity(get_session_identity(request))
        if account_id is None:
            return _auth_required()

        status = await run_in_threadpool(check_subscription_status, account_id)
        if not status.features.get(required_feature):
            return JSONResponse(
                {
                    "error": "Feature not available in your current plan",
                    "success": False,
                    "requiredFeature": required_feature,
                    "currentPlan": status.plan.name,
                },
                status_code=403,
            )
        return None
    except Exception:
        logger.error("[subscription] feature access check failed", exc_info=True, extra={"feature_key": required_feature})
        return JSONResponse({"error": "Failed to verify feature access", "success": False}, status_code=500)


async def usage_limit_middleware(request: HTTPConnection, limit_key: str) -> Optional[JSONResponse]:
    """
    API guard for a usage limit. Rejects with 429 once current >= maximum.

    Returns None to continue, or the 401/429/500 JSON response to send.
    """
    try:
        account_id = account_id_from_identity(get_session_identity(request))
        if account_id is None:
            return _auth_required()

        status = await run_in_threadpool(check_subscription_status, account_id)
        if limit_key in status.limits:
            check = evaluate_usage_limit(status, limit_key)
            if not check.allowed:
                return JSONResponse(
                    {
                        "error": f"Usage limit exceeded for {limit_key}",
                        "success": False,
                        "limit": int(check.maximum),
                        "current": check.current,
                        "upgradeRequired": True,
                    },
                    status_code=429,
                )
        return None
    except Exception:
        logger.error("[subscription] usage limit check failed", exc_info=True, extra={"limit_key": limit_key})
        return JSONResponse({"error": "Failed to verify usage limits", "success": False}, status_code=500)


class GuardRejected(Exception):
    """Carries a guard's JSON response out of a FastAPI dependency."""

    def __init__(self, response: JSONResponse):
        super().__init__(response.status_code)
        self.response = response


async def guard_rejected_handler(request: Request, exc: GuardRejected):
    return exc.response


def require_feature(feature_key: str):
    """FastAPI dependency: Depends(require_feature("online_ordering"))."""
    async def dependency(request: Request) -> None:
        response = await feature_access_middleware(request, feature_key)
        if response is not None:
            raise GuardRejected(response)
    return dependency


def require_usage_below(limit_key: str):
    async def dependency(request: Request) -> None:
        response = await usage_limit_middleware(request, limit_key)
        if response is not None:
            raise GuardRejected(response)
    return dependency


def get_subscription_context(headers: Mapping[str, str], header_name: Optional[str] = None) -> Optional[SubscriptionContext]:
    """Decode the summary header set by SubscriptionAccessMiddleware. None when absent or unreadable."""
    raw = headers.get(header_name or settings.SUBSCRIPTION_STATUS_HEADER)
    if not raw:
        return None
    try:
        data = json.loads(raw)
        return SubscriptionContext(
            is_active=data["isActive"],
            plan_id=data["planId"],
            plan_name=data["planName"],
            trial_days_remaining=data.get("trialDaysRemaining") or 0,
        )
    except (TypeError, ValueError, KeyError):
        logger.warning("[subscription] unreadable subscription context header")
        return None


def check_feature_access(account_id: int, feature_key: str) -> bool:
    try:
        return has_feature_access(account_id, feature_key)
    except Exception:
        logger.error("[subscription] feature access lookup failed", exc_info=True, extra={"account_id": account_id})
        return False
