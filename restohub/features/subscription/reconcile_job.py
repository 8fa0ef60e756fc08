"""
Scheduled reconciliation job.

Runs sync_with_stripe over local subscriptions that still have a provider
counterpart, so drift from provider-side events that never reached the
webhook handler (dunning, involuntary churn) is corrected. Each run is
recorded in billing_job_runs.

Runs sweep the table in id order, `limit` rows at a time. The last id checked
is stored in the run's stats as `cursor`; the next run resumes after it and
wraps back to the start once a batch comes up short, so every row is visited
within ceil(rows / limit) + 1 runs.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import insert, select

from restohub.core.database import billing_job_runs, get_db_session, user_subscriptions
from restohub.core.logging import get_request_id, log_event
from restohub.features.billing.provider import BillingProvider
from restohub.features.subscription.lifecycle import resolve_provider, sync_with_stripe
from restohub.models.subscription import as_utc, parse_json_column, utc_now


JOB_NAME = "subscription.reconcile"


def _last_cursor(session) -> int:
    raw = session.execute(
        select(billing_job_runs.c.stats_json)
        .where(billing_job_runs.c.job_name == JOB_NAME)
        .order_by(billing_job_runs.c.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    cursor = parse_json_column(raw, {}).get("cursor", 0)
    return cursor if isinstance(cursor, int) else 0


def run_reconcile_job(
    now: datetime,
    *,
    provider: Optional[BillingProvider] = None,
    limit: int = 100,
) -> Dict[str, Any]:
    provider = resolve_provider(provider)
    started_at = as_utc(now)

    with get_db_session() as session:
        cursor = _last_cursor(session)
        rows = session.execute(
            select(user_subscriptions.c.id, user_subscriptions.c.stripe_subscription_id)
            .where(user_subscriptions.c.id > cursor)
            .where(user_subscriptions.c.stripe_subscription_id.isnot(None))
            .where(user_subscriptions.c.status != "canceled")
            .order_by(user_subscriptions.c.id)
            .limit(limit)
        ).all()

    synchronized = 0
    failed = 0
    for row in rows:
        result = sync_with_stripe(row.stripe_subscription_id, provider=provider)
        if not result.success:
            failed += 1
        elif result.changes:
            synchronized += 1

    stats = {
        "checked": len(rows),
        "synchronized": synchronized,
        "failed": failed,
        "cursor": rows[-1].id if len(rows) == limit else 0,
    }
    with get_db_session() as session:
        session.execute(
            insert(billing_job_runs).values(
                job_name=JOB_NAME,
                started_at=started_at,
                finished_at=utc_now(),
                status="success" if failed == 0 else "partial",
                stats_json=json.dumps(stats),
            )
        )

    log_event("info", "[reconcile] job finished", request_id=get_request_id(), event_type=JOB_NAME, extra=stats)
    return {**stats, "timestamp": started_at.isoformat()}
