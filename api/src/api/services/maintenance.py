"""Background maintenance loop (billing reconciliation + retention cleanup)."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from storefront.config import get_settings
from storefront.database import get_session, get_session_factory

from api.repositories.idempotency import IdempotencyRecordRepository
from api.repositories.unit_of_work import Repositories
from api.services.billing_reconciliation import run_billing_reconciliation
from api.services.governance import run_retention_cleanup
from api.services.notifications import Notifier
from api.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


async def run_maintenance_worker(
    stop_event: asyncio.Event,
    *,
    poll_interval_seconds: float = 300.0,
) -> None:
    settings = get_settings()
    gateway = StripeGateway.from_settings(settings)
    notifier = Notifier.from_settings(settings)
    idempotency_records = IdempotencyRecordRepository(get_session_factory())
    reconcile_interval = timedelta(
        hours=max(1, int(settings.billing_reconciliation_interval_hours))
    )
    retention_interval = timedelta(hours=24)
    last_reconcile_at: datetime | None = None
    last_retention_at: datetime | None = None

    logger.info("Maintenance worker started")
    try:
        while not stop_event.is_set():
            now = datetime.now(UTC)
            should_reconcile = (
                last_reconcile_at is None or (now - last_reconcile_at) >= reconcile_interval
            )
            should_retention = (
                last_retention_at is None or (now - last_retention_at) >= retention_interval
            )

            if should_reconcile:
                try:
                    async with get_session() as db:
                        await run_billing_reconciliation(
                            Repositories.for_session(db),
                            gateway,
                            settings=settings,
                            notifier=notifier,
                            trigger="scheduled",
                        )
                    last_reconcile_at = datetime.now(UTC)
                except Exception:
                    logger.exception("Scheduled billing reconciliation failed")

            if should_retention:
                try:
                    async with get_session() as db:
                        await run_retention_cleanup(
                            Repositories.for_session(db),
                            idempotency_records,
                            settings=settings,
                            trigger="scheduled",
                        )
                    last_retention_at = datetime.now(UTC)
                except Exception:
                    logger.exception("Scheduled retention cleanup failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval_seconds)
            except TimeoutError:
                pass
    finally:
        logger.info("Maintenance worker stopped")
