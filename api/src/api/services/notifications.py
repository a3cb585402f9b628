"""Outbound order notifications (fulfillment and payment alerts).

Delivery is best-effort: callers schedule these after the state change has
committed and ``run_deferred`` swallows and logs any failure.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
from storefront.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeferredEffect:
    name: str
    run: Callable[[], Awaitable[None]]


async def run_deferred(effect: DeferredEffect) -> None:
    try:
        await effect.run()
    except Exception:
        logger.exception("Deferred effect %s failed", effect.name)


class Notifier:
    def __init__(self, *, webhook_url: str = "", timeout_seconds: float = 5.0) -> None:
        self._webhook_url = webhook_url.strip()
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> Notifier:
        return cls(
            webhook_url=settings.notification_webhook_url,
            timeout_seconds=settings.notification_timeout_seconds,
        )

    async def send(self, event_type: str, payload: dict[str, Any]) -> None:
        if not self._webhook_url:
            logger.info(
                "Notification %s (no webhook configured): %s", event_type, payload.get("id")
            )
            return
        body = {
            "type": event_type,
            "sent_at": datetime.now(UTC).isoformat(),
            "data": payload,
        }
        async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
            response = await client.post(self._webhook_url, json=body)
            response.raise_for_status()
        logger.info("Notification %s delivered", event_type)

    async def order_paid(self, order: dict[str, Any]) -> None:
        await self.send("order.paid", order)

    async def payment_failed(self, order: dict[str, Any]) -> None:
        await self.send("order.payment_failed", order)

    def order_paid_effect(self, order: dict[str, Any]) -> DeferredEffect:
        async def _run() -> None:
            await self.order_paid(order)

        return DeferredEffect("fulfillment", _run)

    def payment_failed_effect(self, order: dict[str, Any]) -> DeferredEffect:
        async def _run() -> None:
            await self.payment_failed(order)

        return DeferredEffect("payment_failed_alert", _run)
