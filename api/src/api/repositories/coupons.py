"""Coupon persistence."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.models import Coupon


class CouponRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get_by_code(self, code: str) -> Coupon | None:
        result = await self._db.execute(select(Coupon).where(Coupon.code == code))
        return result.scalars().first()

    async def deactivate(self, code: str, *, user_id: uuid.UUID | None = None) -> bool:
        stmt = update(Coupon).where(Coupon.code == code, Coupon.is_active.is_(True))
        if user_id is not None:
            stmt = stmt.where(Coupon.user_id == user_id)
        result = await self._db.execute(
            stmt.values(is_active=False, updated_at=datetime.now(UTC))
        )
        return bool(result.rowcount)

    async def replace_gift_coupon(
        self,
        *,
        user_id: uuid.UUID,
        code: str,
        discount_percentage: int,
        expires_at: datetime,
    ) -> Coupon:
        """Drop the user's previous gift coupon and issue a new one."""
        await self._db.execute(
            delete(Coupon).where(Coupon.user_id == user_id, Coupon.code.like("GIFT%"))
        )
        now = datetime.now(UTC)
        coupon = Coupon(
            id=uuid.uuid4(),
            code=code,
            discount_percentage=discount_percentage,
            min_purchase_amount=0,
            user_id=user_id,
            is_active=True,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        self._db.add(coupon)
        await self._db.flush()
        return coupon
