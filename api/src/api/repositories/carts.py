"""Cart lookups for checkout."""

from __future__ import annotations

import uuid

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.models import Cart, CartItem


class CartRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get(self, cart_id: uuid.UUID) -> Cart | None:
        return await self._db.get(Cart, cart_id)

    async def clear(self, cart_id: uuid.UUID) -> int:
        result = await self._db.execute(delete(CartItem).where(CartItem.cart_id == cart_id))
        return int(result.rowcount or 0)
