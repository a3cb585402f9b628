"""Data governance helpers (retention cleanup)."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from storefront.config import Settings


async def run_retention_cleanup(
    repos,
    idempotency_records,
    *,
    settings: Settings,
    trigger: str = "manual",
) -> dict[str, Any]:
    now = datetime.now(UTC)

    idempotency_deleted = await idempotency_records.purge_expired(now)

    webhook_cutoff = now - timedelta(days=max(1, int(settings.webhook_event_retention_days)))
    webhook_events_deleted = await repos.webhook_events.purge_received_before(webhook_cutoff)

    billing_cutoff = now - timedelta(days=max(1, int(settings.billing_event_retention_days)))
    billing_events_deleted = await repos.billing_events.purge_created_before(billing_cutoff)

    summary = {
        "status": "ok",
        "trigger": trigger,
        "ran_at": now.isoformat(),
        "idempotency_records_deleted": int(idempotency_deleted),
        "webhook_events_deleted": int(webhook_events_deleted),
        "billing_events_deleted": int(billing_events_deleted),
        "webhook_cutoff": webhook_cutoff.isoformat(),
        "billing_cutoff": billing_cutoff.isoformat(),
    }
    repos.billing_events.record("retention.cleanup", metadata=summary)
    return summary
