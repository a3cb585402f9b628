"""Billing audit trail."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.models import BillingEvent


class BillingEventRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    def record(
        self,
        event_type: str,
        *,
        order_id: uuid.UUID | None = None,
        stripe_subscription_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._db.add(
            BillingEvent(
                event_type=event_type,
                order_id=order_id,
                stripe_subscription_id=stripe_subscription_id,
                metadata_json=metadata or {},
            )
        )

    async def purge_created_before(self, cutoff: datetime) -> int:
        result = await self._db.execute(
            delete(BillingEvent).where(BillingEvent.created_at < cutoff)
        )
        return int(result.rowcount or 0)
