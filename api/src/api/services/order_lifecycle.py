"""Order status machine and conditional transitions.

Transitions are idempotent by target state: moving an order to the status
it already has is a no-op, and a move the table does not allow (for example
``failed`` arriving after ``paid``) is logged and audited as an anomaly
instead of regressing the order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from storefront.models import Order

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing", "paid", "failed", "cancelled"}),
    "processing": frozenset({"paid", "failed", "cancelled"}),
    "failed": frozenset({"paid", "cancelled"}),
    "paid": frozenset({"refunded", "cancelled"}),
    "cancelled": frozenset(),
    "refunded": frozenset(),
}

PAYABLE_STATUSES = ("pending", "processing")
TERMINAL_STATUSES = ("cancelled", "refunded")

APPLY = "apply"
NOOP = "noop"
ANOMALY = "anomaly"

MAX_TRANSITION_ATTEMPTS = 3


def classify(current: str, target: str) -> str:
    if current == target:
        return NOOP
    if target in ALLOWED_TRANSITIONS.get(current, frozenset()):
        return APPLY
    return ANOMALY


@dataclass(frozen=True)
class TransitionResult:
    outcome: str
    order: Order
    previous_status: str

    @property
    def applied(self) -> bool:
        return self.outcome == APPLY


async def transition_order(
    repos,
    order: Order,
    target: str,
    *,
    source: str,
    values: dict[str, Any] | None = None,
) -> TransitionResult:
    """Move ``order`` to ``target`` with a compare-and-set on its observed status.

    If another writer changes the order between read and write, the order is
    re-read and the transition is re-classified against the new status.
    """
    current = order
    for _ in range(MAX_TRANSITION_ATTEMPTS):
        previous = current.status
        verdict = classify(previous, target)
        if verdict == NOOP:
            logger.info("Order %s already %s (%s)", current.id, target, source)
            return TransitionResult(NOOP, current, previous)
        if verdict == ANOMALY:
            logger.warning(
                "Rejected order transition %s -> %s for %s (%s)",
                previous,
                target,
                current.id,
                source,
            )
            repos.billing_events.record(
                "order.transition.rejected",
                order_id=current.id,
                metadata={"from": previous, "to": target, "source": source},
            )
            return TransitionResult(ANOMALY, current, previous)

        moved = await repos.orders.transition(
            current.id,
            from_statuses=(previous,),
            to_status=target,
            values=values,
        )
        refreshed = await repos.orders.get(current.id)
        if moved:
            logger.info("Order %s %s -> %s (%s)", current.id, previous, target, source)
            repos.billing_events.record(
                "order.transition",
                order_id=current.id,
                metadata={"from": previous, "to": target, "source": source},
            )
            return TransitionResult(APPLY, refreshed or current, previous)
        if refreshed is None:
            break
        current = refreshed

    logger.warning("Order %s transition to %s lost repeated races (%s)", order.id, target, source)
    return TransitionResult(ANOMALY, current, current.status)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_order(order: Order) -> dict[str, Any]:
    return {
        "id": str(order.id),
        "userId": str(order.user_id),
        "status": order.status,
        "currency": order.currency,
        "itemsTotal": order.items_total,
        "discountAmount": order.discount_amount,
        "totalAmount": order.total_amount,
        "couponCode": order.coupon_code,
        "items": [
            {
                "productId": item.product_id,
                "name": item.name,
                "quantity": item.quantity,
                "unitPrice": item.unit_price,
            }
            for item in order.items
        ],
        "paymentDetails": {
            "processorPaymentIntentId": order.processor_payment_intent_id,
            "processorCheckoutSessionId": order.processor_checkout_session_id,
            "paymentStatus": order.payment_status,
            "refundId": order.processor_refund_id,
            "amountRefunded": order.amount_refunded,
            "failureCode": order.failure_code,
            "failureMessage": order.failure_message,
        },
        "statusVersion": order.status_version,
        "paidAt": _iso(order.paid_at),
        "cancelledAt": _iso(order.cancelled_at),
        "refundedAt": _iso(order.refunded_at),
        "createdAt": _iso(order.created_at),
        "updatedAt": _iso(order.updated_at),
    }
