"""Bundle of request-scoped repositories sharing one session."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from api.repositories.billing_events import BillingEventRepository
from api.repositories.carts import CartRepository
from api.repositories.coupons import CouponRepository
from api.repositories.orders import OrderRepository
from api.repositories.subscriptions import SubscriptionRepository
from api.repositories.users import UserRepository
from api.repositories.webhook_events import WebhookEventRepository


@dataclass
class Repositories:
    orders: Any
    carts: Any
    coupons: Any
    users: Any
    subscriptions: Any
    webhook_events: Any
    billing_events: Any
    _commit: Callable[[], Awaitable[None]]

    @classmethod
    def for_session(cls, db: AsyncSession) -> Repositories:
        return cls(
            orders=OrderRepository(db),
            carts=CartRepository(db),
            coupons=CouponRepository(db),
            users=UserRepository(db),
            subscriptions=SubscriptionRepository(db),
            webhook_events=WebhookEventRepository(db),
            billing_events=BillingEventRepository(db),
            _commit=db.commit,
        )

    async def commit(self) -> None:
        await self._commit()
