"""Payment intents bound to orders, plus order cancel and refund."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from storefront.models import Order

from api.errors import Forbidden, NotFound, PaymentFlowError, ValidationError
from api.services.order_lifecycle import (
    ANOMALY,
    PAYABLE_STATUSES,
    serialize_order,
    transition_order,
)

logger = logging.getLogger(__name__)

REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


def payment_intent_idempotency_key(order_id: uuid.UUID) -> str:
    return f"order:{order_id}:payment_intent"


def _intent_payload(order: Order, intent: dict[str, Any]) -> dict[str, Any]:
    return {
        "clientSecret": intent.get("client_secret"),
        "intentId": intent.get("id"),
        "orderId": str(order.id),
        "amount": order.total_amount,
        "currency": order.currency,
        "status": intent.get("status"),
    }


class PaymentIntentManager:
    def __init__(self, repos, gateway) -> None:
        self._repos = repos
        self._gateway = gateway

    async def _load_order(self, order_id: uuid.UUID, requester, *, allow_admin: bool) -> Order:
        order = await self._repos.orders.get(order_id)
        if order is None:
            raise NotFound("Order not found")
        is_owner = str(order.user_id) == str(requester.id)
        if not is_owner and not (allow_admin and getattr(requester, "is_admin", False)):
            raise Forbidden("Order belongs to another user")
        return order

    async def create_or_get_payment_intent(
        self,
        order_id: uuid.UUID,
        requester,
    ) -> dict[str, Any]:
        """Return the order's payment intent, creating it on first call.

        Re-entry (page reloads, double submits) returns the already attached
        intent. Creation uses a processor idempotency key derived from the
        order id and attaches the result with a conditional update, so two
        concurrent first calls end up sharing one intent.
        """
        order = await self._load_order(order_id, requester, allow_admin=False)
        if order.status not in PAYABLE_STATUSES:
            raise ValidationError(
                f"Order is {order.status} and cannot be paid",
                code="ORDER_NOT_PAYABLE",
                fields={"orderId": f"order is {order.status}"},
            )
        if order.processor_checkout_session_id:
            raise ValidationError(
                "Order is being paid through hosted checkout",
                code="ORDER_NOT_PAYABLE",
                fields={"orderId": "order has a checkout session"},
            )
        if order.total_amount <= 0:
            raise ValidationError(
                "Order total must be positive",
                code="ORDER_NOT_PAYABLE",
                fields={"orderId": "order total is zero"},
            )

        if order.processor_payment_intent_id:
            intent = await self._gateway.retrieve_payment_intent(order.processor_payment_intent_id)
            return _intent_payload(order, intent)

        intent = await self._gateway.create_payment_intent(
            amount=order.total_amount,
            currency=order.currency,
            metadata={"order_id": str(order.id), "user_id": str(order.user_id)},
            receipt_email=getattr(requester, "email", None),
            idempotency_key=payment_intent_idempotency_key(order.id),
        )
        intent_id = str(intent["id"])
        attached = await self._repos.orders.attach_payment_intent(
            order.id,
            intent_id,
            payment_status=intent.get("status"),
        )
        if attached:
            self._repos.billing_events.record(
                "payment_intent.created",
                order_id=order.id,
                metadata={"intent_id": intent_id, "amount": order.total_amount},
            )
            logger.info("Payment intent %s attached to order %s", intent_id, order.id)
            refreshed = await self._repos.orders.get(order.id)
            return _intent_payload(refreshed or order, intent)

        current = await self._repos.orders.get(order.id)
        if current is None:
            raise NotFound("Order not found")
        if current.processor_payment_intent_id == intent_id:
            return _intent_payload(current, intent)
        if current.processor_payment_intent_id:
            logger.warning(
                "Order %s already bound to %s; discarding intent %s",
                current.id,
                current.processor_payment_intent_id,
                intent_id,
            )
            self._repos.billing_events.record(
                "payment_intent.race_lost",
                order_id=current.id,
                metadata={
                    "winner": current.processor_payment_intent_id,
                    "discarded": intent_id,
                },
            )
            winner = await self._gateway.retrieve_payment_intent(
                current.processor_payment_intent_id
            )
            return _intent_payload(current, winner)
        raise ValidationError(
            f"Order is {current.status} and cannot be paid",
            code="ORDER_NOT_PAYABLE",
            fields={"orderId": f"order is {current.status}"},
        )

    async def get_payment_status(self, order_id: uuid.UUID, requester) -> dict[str, Any]:
        """Local order state merged with a best-effort live read of the intent."""
        order = await self._load_order(order_id, requester, allow_admin=True)
        snapshot: dict[str, Any] = {
            "orderId": str(order.id),
            "status": order.status,
            "paymentStatus": order.payment_status,
            "totalAmount": order.total_amount,
            "amountRefunded": order.amount_refunded,
            "currency": order.currency,
            "statusVersion": order.status_version,
            "processorPaymentIntentId": order.processor_payment_intent_id,
            "processorCheckoutSessionId": order.processor_checkout_session_id,
            "failureCode": order.failure_code,
            "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
            "processor": {"live": False},
        }
        if not order.processor_payment_intent_id:
            return snapshot

        try:
            intent = await self._gateway.retrieve_payment_intent(
                order.processor_payment_intent_id
            )
        except PaymentFlowError as exc:
            logger.warning(
                "Live status fetch failed for order %s (%s): %s",
                order.id,
                exc.code,
                exc.message,
            )
            snapshot["processor"] = {"live": False, "error": exc.code}
            return snapshot

        last_error = intent.get("last_payment_error") or {}
        snapshot["processor"] = {
            "live": True,
            "intentId": intent.get("id"),
            "status": intent.get("status"),
            "amount": intent.get("amount"),
            "amountReceived": intent.get("amount_received"),
            "lastPaymentErrorCode": last_error.get("code"),
        }
        return snapshot

    async def cancel_order(self, order_id: uuid.UUID, requester) -> dict[str, Any]:
        """Owner cancel. Unpaid orders cancel their intent; paid orders are refunded in full."""
        order = await self._load_order(order_id, requester, allow_admin=True)
        if order.status == "cancelled":
            return serialize_order(order)
        if order.status == "refunded":
            raise ValidationError(
                "Refunded orders cannot be cancelled",
                code="ORDER_NOT_CANCELLABLE",
                fields={"orderId": "order is refunded"},
            )

        now = datetime.now(UTC)
        if order.status == "paid":
            refund = await self._refund_at_processor(
                order, amount=None, reason="requested_by_customer"
            )
            values = {
                "processor_refund_id": refund.get("id"),
                "amount_refunded": order.total_amount,
                "cancelled_at": now,
                "refunded_at": now,
                "payment_status": "refunded",
            }
        else:
            intent_status = None
            if order.processor_payment_intent_id:
                intent = await self._gateway.retrieve_payment_intent(
                    order.processor_payment_intent_id
                )
                intent_status = intent.get("status")
                if intent_status in ("succeeded", "processing"):
                    raise ValidationError(
                        "Payment is already settling; wait for confirmation",
                        code="ORDER_PAYMENT_SETTLING",
                        fields={"orderId": f"payment is {intent_status}"},
                    )
                if intent_status != "canceled":
                    intent = await self._gateway.cancel_payment_intent(
                        order.processor_payment_intent_id
                    )
                    intent_status = intent.get("status")
            values = {"cancelled_at": now, "payment_status": intent_status or "canceled"}

        result = await transition_order(
            self._repos, order, "cancelled", source="order.cancel", values=values
        )
        if result.outcome == ANOMALY:
            raise ValidationError(
                f"Order is {result.order.status} and cannot be cancelled",
                code="ORDER_NOT_CANCELLABLE",
                fields={"orderId": f"order is {result.order.status}"},
            )
        return serialize_order(result.order)

    async def refund_order(
        self,
        order_id: uuid.UUID,
        requester,
        *,
        amount: int | None = None,
        reason: str = "requested_by_customer",
    ) -> dict[str, Any]:
        """Admin refund of a paid order, full or partial."""
        if not getattr(requester, "is_admin", False):
            raise Forbidden("Only administrators can issue refunds")
        order = await self._repos.orders.get(order_id)
        if order is None:
            raise NotFound("Order not found")
        if order.status != "paid":
            raise ValidationError(
                f"Order is {order.status} and cannot be refunded",
                code="ORDER_NOT_REFUNDABLE",
                fields={"orderId": f"order is {order.status}"},
            )
        if reason not in REFUND_REASONS:
            raise ValidationError(
                "Invalid refund reason",
                fields={"reason": f"must be one of {', '.join(REFUND_REASONS)}"},
            )
        remaining = order.total_amount - order.amount_refunded
        if amount is not None and not 0 < amount <= remaining:
            raise ValidationError(
                "Invalid refund amount",
                fields={"amount": f"must be between 1 and {remaining}"},
            )

        refund = await self._refund_at_processor(order, amount=amount, reason=reason)
        refunded_total = order.amount_refunded + int(refund.get("amount") or amount or remaining)
        self._repos.billing_events.record(
            "order.refund.issued",
            order_id=order.id,
            metadata={
                "refund_id": refund.get("id"),
                "amount": refund.get("amount"),
                "reason": reason,
                "admin_id": str(requester.id),
            },
        )
        if refunded_total < order.total_amount:
            await self._repos.orders.record_partial_refund(
                order.id, refund_id=refund.get("id"), amount_refunded=refunded_total
            )
            refreshed = await self._repos.orders.get(order.id)
            return serialize_order(refreshed or order)

        result = await transition_order(
            self._repos,
            order,
            "refunded",
            source="order.refund",
            values={
                "processor_refund_id": refund.get("id"),
                "amount_refunded": order.total_amount,
                "refunded_at": datetime.now(UTC),
                "payment_status": "refunded",
            },
        )
        return serialize_order(result.order)

    async def _charge_intent_id(self, order: Order) -> str:
        if order.processor_payment_intent_id:
            return order.processor_payment_intent_id
        if order.processor_checkout_session_id:
            session = await self._gateway.retrieve_checkout_session(
                order.processor_checkout_session_id
            )
            intent_id = session.get("payment_intent")
            if isinstance(intent_id, dict):
                intent_id = intent_id.get("id")
            if intent_id:
                return str(intent_id)
        raise ValidationError(
            "Order has no captured payment to refund",
            code="ORDER_NOT_REFUNDABLE",
            fields={"orderId": "no payment on record"},
        )

    async def _refund_at_processor(
        self,
        order: Order,
        *,
        amount: int | None,
        reason: str,
    ) -> dict[str, Any]:
        intent_id = await self._charge_intent_id(order)
        return await self._gateway.create_refund(
            payment_intent_id=intent_id,
            amount=amount,
            reason=reason,
            metadata={"order_id": str(order.id), "user_id": str(order.user_id)},
            idempotency_key=(
                f"order:{order.id}:refund:{order.amount_refunded}:{amount or 'full'}"
            ),
        )
