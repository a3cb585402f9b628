"""Processed webhook event ids."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.models import StripeWebhookEvent


class WebhookEventRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def register(self, stripe_event_id: str, event_type: str) -> bool:
        """Persist the event id; return False if it was already processed."""
        existing = await self._db.execute(
            select(StripeWebhookEvent.id).where(
                StripeWebhookEvent.stripe_event_id == stripe_event_id
            )
        )
        if existing.scalars().first() is not None:
            return False

        result = await self._db.execute(
            insert(StripeWebhookEvent)
            .values(stripe_event_id=stripe_event_id, event_type=event_type)
            .on_conflict_do_nothing(index_elements=["stripe_event_id"])
            .returning(StripeWebhookEvent.id)
        )
        return result.scalar_one_or_none() is not None

    async def purge_received_before(self, cutoff: datetime) -> int:
        result = await self._db.execute(
            delete(StripeWebhookEvent).where(StripeWebhookEvent.received_at < cutoff)
        )
        return int(result.rowcount or 0)
