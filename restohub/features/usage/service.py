"""
restohub/features/usage/service.py

Usage accounting hook.

Handles:
- Per-limit-key usage counters (registry consulted by the entitlement resolver)
- Usage event emission
- Usage counting over the usage_events table
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Any
import logging
from sqlalchemy import select, insert, func

from restohub.core.database import get_db_session, usage_events
from restohub.models.subscription import as_utc, utc_now


logger = logging.getLogger(__name__)

UsageCounter = Callable[[int], int]

# limit_key -> counter(account_id); keys without a counter report 0
_usage_counters: Dict[str, UsageCounter] = {}


def register_usage_counter(limit_key: str, counter: UsageCounter) -> None:
    """Register the usage counter backing a limit key (replaces any existing one)."""
    _usage_counters[limit_key] = counter


def unregister_usage_counter(limit_key: str) -> None:
    _usage_counters.pop(limit_key, None)


def clear_usage_counters() -> None:
    _usage_counters.clear()


def get_current_usage(account_id: int, limit_key: str) -> int:
    """
    Current usage of `limit_key` for an account.

    Returns 0 when no counter is registered for the key. Counter errors
    propagate; the resolver owns the fail-open policy.
    """
    counter = _usage_counters.get(limit_key)
    if counter is None:
        return 0
    return int(counter(account_id) or 0)


def emit_usage_event(
    account_id: int,
    usage_key: str,
    occurred_at: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> None:
    """
    Record a usage event.

    Args:
        account_id: Account performing the action
        usage_key: Usage type (menu_items.created, reservations.created, etc.)
        occurred_at: Timestamp of usage (defaults to now)
        metadata: Optional metadata (menu_item_id, etc.)
    """
    occurred_at = as_utc(occurred_at or utc_now())

    with get_db_session() as session:
        session.execute(
            insert(usage_events).values(
                account_id=account_id,
                usage_key=usage_key,
                occurred_at=occurred_at,
                metadata=metadata
            )
        )


def get_usage_count(
    account_id: int,
    usage_key: str,
    now: Optional[datetime] = None,
    window_days: Optional[int] = None
) -> int:
    """
    Count usage events for one key.

    Args:
        account_id: Account to query
        usage_key: Usage key to count
        now: Fixed timestamp for deterministic queries
        window_days: Optional rolling window in days

    Returns:
        Count of usage events
    """
    now = as_utc(now or utc_now())

    query = (
        select(func.count())
        .select_from(usage_events)
        .where(usage_events.c.account_id == account_id)
        .where(usage_events.c.usage_key == usage_key)
        .where(usage_events.c.occurred_at <= now)
    )
    if window_days:
        query = query.where(usage_events.c.occurred_at >= now - timedelta(days=window_days))

    with get_db_session() as session:
        return session.execute(query).scalar_one()


def event_counter(usage_key: str, window_days: Optional[int] = None) -> UsageCounter:
    """Build a counter backed by usage_events, for register_usage_counter."""
    def _count(account_id: int) -> int:
        return get_usage_count(account_id, usage_key, window_days=window_days)
    return _count
