"""Order persistence with compare-and-set status updates."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.models import Order, OrderItem


class OrderRepository:
    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get(self, order_id: uuid.UUID) -> Order | None:
        return await self._db.get(Order, order_id, populate_existing=True)

    async def get_by_payment_intent(self, intent_id: str) -> Order | None:
        result = await self._db.execute(
            select(Order)
            .where(Order.processor_payment_intent_id == intent_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_by_checkout_session(self, session_id: str) -> Order | None:
        result = await self._db.execute(
            select(Order)
            .where(Order.processor_checkout_session_id == session_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def create(
        self,
        *,
        user_id: uuid.UUID,
        currency: str,
        items: list[dict[str, Any]],
        items_total: int,
        discount_amount: int,
        total_amount: int,
        coupon_code: str | None = None,
        status: str = "pending",
        payment_status: str | None = None,
        checkout_session_id: str | None = None,
        payment_intent_id: str | None = None,
    ) -> Order:
        now = datetime.now(UTC)
        order = Order(
            id=uuid.uuid4(),
            user_id=user_id,
            currency=currency,
            items_total=items_total,
            discount_amount=discount_amount,
            total_amount=total_amount,
            coupon_code=coupon_code,
            status=status,
            payment_status=payment_status,
            processor_checkout_session_id=checkout_session_id,
            processor_payment_intent_id=payment_intent_id,
            amount_refunded=0,
            status_version=0,
            paid_at=now if status == "paid" else None,
            created_at=now,
            updated_at=now,
        )
        order.items = [
            OrderItem(
                id=uuid.uuid4(),
                position=position,
                product_id=item.get("product_id"),
                name=item["name"],
                quantity=item["quantity"],
                unit_price=item["unit_price"],
            )
            for position, item in enumerate(items)
        ]
        self._db.add(order)
        await self._db.flush()
        return order

    async def attach_payment_intent(
        self,
        order_id: uuid.UUID,
        intent_id: str,
        *,
        payment_status: str | None,
    ) -> bool:
        """Bind an intent only if the order has none and is still payable."""
        result = await self._db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.processor_payment_intent_id.is_(None),
                Order.processor_checkout_session_id.is_(None),
                Order.status.in_(("pending", "processing")),
            )
            .values(
                processor_payment_intent_id=intent_id,
                payment_status=payment_status,
                updated_at=datetime.now(UTC),
            )
        )
        return bool(result.rowcount)

    async def transition(
        self,
        order_id: uuid.UUID,
        *,
        from_statuses: Iterable[str],
        to_status: str,
        values: dict[str, Any] | None = None,
    ) -> bool:
        """Move an order to ``to_status`` only while it is in one of ``from_statuses``."""
        result = await self._db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status.in_(tuple(from_statuses)))
            .values(
                status=to_status,
                status_version=Order.status_version + 1,
                updated_at=datetime.now(UTC),
                **(values or {}),
            )
        )
        return bool(result.rowcount)

    async def update_payment_status(self, order_id: uuid.UUID, payment_status: str) -> None:
        await self._db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(payment_status=payment_status, updated_at=datetime.now(UTC))
        )

    async def list_unsettled(self, *, updated_before: datetime, limit: int = 200) -> list[Order]:
        result = await self._db.execute(
            select(Order)
            .where(
                Order.status.in_(("pending", "processing")),
                Order.processor_payment_intent_id.is_not(None),
                Order.updated_at < updated_before,
            )
            .order_by(Order.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def record_partial_refund(
        self,
        order_id: uuid.UUID,
        *,
        refund_id: str | None,
        amount_refunded: int,
    ) -> bool:
        """Track a partial refund on a paid order without changing its status."""
        result = await self._db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == "paid",
                Order.amount_refunded < amount_refunded,
            )
            .values(
                processor_refund_id=refund_id,
                amount_refunded=amount_refunded,
                updated_at=datetime.now(UTC),
            )
        )
        return bool(result.rowcount)
