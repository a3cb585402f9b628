"""Subscription mirror persistence."""

from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.models import Subscription


class SubscriptionRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get_by_stripe_id(self, stripe_subscription_id: str) -> Subscription | None:
        result = await self._db.execute(
            select(Subscription).where(
                Subscription.stripe_subscription_id == stripe_subscription_id
            )
        )
        return result.scalars().first()

    async def find_user_for_customer(self, stripe_customer_id: str) -> uuid.UUID | None:
        result = await self._db.execute(
            select(Subscription.user_id)
            .where(Subscription.stripe_customer_id == stripe_customer_id)
            .limit(1)
        )
        return result.scalars().first()

    async def list_for_user(self, user_id: uuid.UUID) -> list[Subscription]:
        result = await self._db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_all(self) -> list[Subscription]:
        result = await self._db.execute(select(Subscription).order_by(Subscription.created_at))
        return list(result.scalars().all())

    async def add(self, subscription: Subscription) -> Subscription:
        self._db.add(subscription)
        await self._db.flush()
        return subscription

    async def save(self, subscription: Subscription) -> None:
        await self._db.flush()
