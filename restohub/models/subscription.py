"""
restohub/models/subscription.py

Subscription and entitlement models.

SubscriptionStatus is derived per request and never persisted. Feature and
limit keys are data-driven (rows in subscription_features), so both maps stay
string-keyed rather than a closed enum.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


logger = logging.getLogger(__name__)

FREE_PLAN_ID = 0
FREE_PLAN_NAME = "Free"
FREE_MENU_ITEMS_LIMIT = 25


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite returns them naive; stored values are UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_json_column(raw: Any, default: Any) -> Any:
    """
    Parse a JSON-encoded text column.

    None, empty and malformed values (or a value of the wrong shape) yield
    `default`; stored JSON never makes a status read fail.
    """
    if raw is None or raw == "":
        return default
    if isinstance(raw, (list, dict)):
        value = raw
    else:
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("[subscription] malformed JSON column, using default", extra={"raw": str(raw)[:200]})
            return default
    if not isinstance(value, type(default)):
        return default
    return value


class SubscriptionPlan(BaseModel):
    """A named subscription tier. Id 0 is the synthetic Free plan."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: Optional[str] = None
    price: float = 0
    billing_interval: str = "monthly"
    features: List[str] = Field(default_factory=list)
    feature_limits: Dict[str, Any] = Field(default_factory=dict)
    trial_settings: Dict[str, Any] = Field(default_factory=dict)
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    is_active: bool = True

    @property
    def is_free(self) -> bool:
        return self.id == FREE_PLAN_ID


class FeatureLimit(BaseModel):
    model_config = ConfigDict(frozen=True)

    current: int
    maximum: int
    unit: str = "count"


class BillingInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    next_billing_date: Optional[datetime]
    amount: float
    currency: str = "usd"
    status: str


class TrialInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_in_trial: bool
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    days_remaining: int = 0


class SubscriptionStatus(BaseModel):
    """Resolved entitlement state for one account at one point in time."""
    model_config = ConfigDict(frozen=True)

    is_active: bool
    plan: SubscriptionPlan
    features: Dict[str, bool] = Field(default_factory=dict)
    limits: Dict[str, FeatureLimit] = Field(default_factory=dict)
    billing_info: BillingInfo
    trial_info: Optional[TrialInfo] = None

    def summary(self) -> Dict[str, Any]:
        """Compact form carried in the entitlement summary header."""
        return {
            "isActive": self.is_active,
            "planName": self.plan.name,
            "planId": self.plan.id,
            "trialDaysRemaining": self.trial_info.days_remaining if self.trial_info else 0,
        }


class SubscriptionUpdate(BaseModel):
    """Changes accepted by update_subscription. Only set fields are applied."""
    cancel_at_period_end: Optional[bool] = None
    plan_id: Optional[int] = None
    status: Optional[str] = None


class CheckoutSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    url: str


class BillingPortalSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    url: str


class UsageLimitCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    current: int
    maximum: float
    remaining: float


class SubscriptionContext(BaseModel):
    """Summary decoded from the entitlement header by downstream page code."""
    model_config = ConfigDict(frozen=True)

    is_active: bool
    plan_id: int
    plan_name: str
    trial_days_remaining: int = 0

    @property
    def is_in_trial(self) -> bool:
        return self.trial_days_remaining > 0


@dataclass
class SyncResult:
    """Outcome of applying a provider snapshot to the local row."""
    success: bool
    changes: List[str] = field(default_factory=list)
    errors: Optional[List[str]] = None
