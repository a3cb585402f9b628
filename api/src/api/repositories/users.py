"""User lookups and processor customer mapping."""

from __future__ import annotations

import uuid

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.models import User


class UserRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get(self, user_id: uuid.UUID) -> User | None:
        return await self._db.get(User, user_id, populate_existing=True)

    async def set_stripe_customer_id(self, user_id: uuid.UUID, customer_id: str) -> bool:
        """Store the mapping once; returns False if another customer was stored first."""
        result = await self._db.execute(
            update(User)
            .where(User.id == user_id, User.stripe_customer_id.is_(None))
            .values(stripe_customer_id=customer_id)
        )
        return bool(result.rowcount)
