"""Stripe webhook verification, dedup and dispatch.

Flow per delivery: verify the signature over the raw body, validate the
envelope, register the event id (unique constraint, so redeliveries are
acknowledged without work), dispatch by event type through ``_handlers``,
then commit. Handlers return deferred effects (fulfillment, alerts) that
the caller runs after the acknowledgement and whose failures are only
logged.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from storefront.models import Order

from api.errors import ValidationError
from api.services.notifications import DeferredEffect
from api.services.order_lifecycle import serialize_order, transition_order

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any], dict[str, Any]], Awaitable[list[DeferredEffect]]]


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    duplicate: bool = False
    handled: bool = False
    deferred: list[DeferredEffect] = field(default_factory=list)

    def ack(self) -> dict[str, Any]:
        body: dict[str, Any] = {"received": True}
        if self.duplicate:
            body["duplicate"] = True
        return body


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


def _object_id(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


class WebhookEventProcessor:
    def __init__(self, repos, gateway, *, checkout, subscriptions, notifier) -> None:
        self._repos = repos
        self._gateway = gateway
        self._checkout = checkout
        self._subscriptions = subscriptions
        self._notifier = notifier
        self._handlers: dict[str, Handler] = {
            "payment_intent.succeeded": self._on_payment_succeeded,
            "payment_intent.payment_failed": self._on_payment_failed,
            "payment_intent.processing": self._on_payment_processing,
            "payment_intent.canceled": self._on_payment_canceled,
            "charge.refunded": self._on_charge_refunded,
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_changed,
            "invoice.payment_failed": self._on_invoice_failed,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_succeeded": self._on_invoice_paid,
        }

    @property
    def handled_event_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    async def handle(self, payload: bytes, sig_header: str) -> WebhookOutcome:
        event = self._gateway.construct_event(payload, sig_header)

        event_id = str(event.get("id", "")).strip()
        event_type = str(event.get("type", "")).strip()
        event_data = event.get("data")
        if (
            not event_id
            or not event_type
            or not isinstance(event_data, dict)
            or not isinstance(event_data.get("object"), dict)
        ):
            raise ValidationError("Invalid webhook payload")
        data = event_data["object"]

        if not await self._repos.webhook_events.register(event_id, event_type):
            logger.info("Stripe duplicate webhook ignored: %s", event_id)
            self._repos.billing_events.record(
                "stripe.webhook.duplicate",
                metadata={"event_id": event_id, "event_type": event_type},
            )
            await self._repos.commit()
            return WebhookOutcome(event_id, event_type, duplicate=True)

        outcome = WebhookOutcome(event_id, event_type)
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Stripe webhook %s (%s) has no handler; acknowledged", event_type, event_id)
        else:
            logger.info("Stripe webhook: %s (%s)", event_type, event_id)
            outcome.deferred = await handler(data, event)
            outcome.handled = True

        self._repos.billing_events.record(
            "stripe.webhook.processed",
            metadata={"event_id": event_id, "event_type": event_type, "handled": outcome.handled},
        )
        await self._repos.commit()
        return outcome

    # Payment intents

    async def _order_for_intent(self, intent: dict[str, Any]) -> Order | None:
        intent_id = str(intent.get("id") or "")
        if not intent_id:
            return None
        order = await self._repos.orders.get_by_payment_intent(intent_id)
        if order is not None:
            return order

        order_id = _parse_uuid((intent.get("metadata") or {}).get("order_id"))
        if order_id is None:
            logger.info("No order for payment intent %s", intent_id)
            return None
        order = await self._repos.orders.get(order_id)
        if order is None:
            logger.warning("Payment intent %s references unknown order %s", intent_id, order_id)
            return None
        if order.processor_payment_intent_id or order.processor_checkout_session_id:
            logger.warning(
                "Payment intent %s does not match order %s (bound to %s)",
                intent_id,
                order.id,
                order.processor_payment_intent_id or order.processor_checkout_session_id,
            )
            return None
        return order

    @staticmethod
    def _intent_values(order: Order, intent: dict[str, Any], **values: Any) -> dict[str, Any]:
        values["payment_status"] = intent.get("status") or values.get("payment_status")
        if not order.processor_payment_intent_id:
            values["processor_payment_intent_id"] = str(intent["id"])
        return values

    async def _on_payment_succeeded(
        self, intent: dict[str, Any], event: dict[str, Any]
    ) -> list[DeferredEffect]:
        order = await self._order_for_intent(intent)
        if order is None:
            return []
        result = await transition_order(
            self._repos,
            order,
            "paid",
            source=event["type"],
            values=self._intent_values(
                order,
                intent,
                payment_status="succeeded",
                paid_at=datetime.now(UTC),
                failure_code=None,
                failure_message=None,
            ),
        )
        if not result.applied:
            return []
        return [self._notifier.order_paid_effect(serialize_order(result.order))]

    async def _on_payment_failed(
        self, intent: dict[str, Any], event: dict[str, Any]
    ) -> list[DeferredEffect]:
        order = await self._order_for_intent(intent)
        if order is None:
            return []
        last_error = intent.get("last_payment_error") or {}
        result = await transition_order(
            self._repos,
            order,
            "failed",
            source=event["type"],
            values=self._intent_values(
                order,
                intent,
                payment_status="requires_payment_method",
                failure_code=last_error.get("decline_code") or last_error.get("code"),
                failure_message=last_error.get("message"),
            ),
        )
        if not result.applied:
            return []
        return [self._notifier.payment_failed_effect(serialize_order(result.order))]

    async def _on_payment_processing(
        self, intent: dict[str, Any], event: dict[str, Any]
    ) -> list[DeferredEffect]:
        order = await self._order_for_intent(intent)
        if order is not None:
            await transition_order(
                self._repos,
                order,
                "processing",
                source=event["type"],
                values=self._intent_values(order, intent, payment_status="processing"),
            )
        return []

    async def _on_payment_canceled(
        self, intent: dict[str, Any], event: dict[str, Any]
    ) -> list[DeferredEffect]:
        order = await self._order_for_intent(intent)
        if order is not None:
            await transition_order(
                self._repos,
                order,
                "cancelled",
                source=event["type"],
                values=self._intent_values(
                    order, intent, payment_status="canceled", cancelled_at=datetime.now(UTC)
                ),
            )
        return []

    # Charges and checkout

    async def _on_charge_refunded(
        self, charge: dict[str, Any], event: dict[str, Any]
    ) -> list[DeferredEffect]:
        intent_id = _object_id(charge.get("payment_intent"))
        if not intent_id:
            logger.info("Refunded charge %s has no payment intent", charge.get("id"))
            return []
        order = await self._repos.orders.get_by_payment_intent(intent_id)
        if order is None:
            session = await self._gateway.find_checkout_session_for_intent(intent_id)
            if session is not None:
                order = await self._repos.orders.get_by_checkout_session(str(session["id"]))
        if order is None:
            logger.info("No order for refunded payment intent %s", intent_id)
            return []
        if order.status in ("refunded", "cancelled"):
            logger.info("Order %s already settled as %s", order.id, order.status)
            return []

        amount_refunded = min(int(charge.get("amount_refunded") or 0), order.total_amount)
        refunds = (charge.get("refunds") or {}).get("data") or []
        refund_id = refunds[0].get("id") if refunds else order.processor_refund_id
        if charge.get("refunded") or amount_refunded >= order.total_amount:
            await transition_order(
                self._repos,
                order,
                "refunded",
                source=event["type"],
                values={
                    "amount_refunded": order.total_amount,
                    "processor_refund_id": refund_id,
                    "refunded_at": datetime.now(UTC),
                    "payment_status": "refunded",
                },
            )
        elif amount_refunded > order.amount_refunded:
            await self._repos.orders.record_partial_refund(
                order.id, refund_id=refund_id, amount_refunded=amount_refunded
            )
            logger.info("Order %s partially refunded (%s)", order.id, amount_refunded)
        return []

    async def _on_checkout_completed(
        self, session: dict[str, Any], event: dict[str, Any]
    ) -> list[DeferredEffect]:
        if session.get("mode") != "payment":
            return []
        if session.get("payment_status") != "paid":
            logger.info(
                "Checkout session %s completed with payment status %s",
                session.get("id"),
                session.get("payment_status"),
            )
            return []
        if _parse_uuid((session.get("metadata") or {}).get("user_id")) is None:
            logger.warning("Checkout session %s has no user metadata", session.get("id"))
            return []

        full_session = await self._gateway.retrieve_checkout_session(str(session["id"]))
        payload, created = await self._checkout.fulfill_session(full_session, source=event["type"])
        if not created:
            return []
        return [self._notifier.order_paid_effect(payload["order"])]

    # Subscriptions

    async def _on_subscription_changed(
        self, stripe_sub: dict[str, Any], event: dict[str, Any]
    ) -> list[DeferredEffect]:
        await self._subscriptions.sync_from_processor(
            stripe_sub, event_created=event.get("created")
        )
        return []

    async def _on_invoice_failed(
        self, invoice: dict[str, Any], event: dict[str, Any]
    ) -> list[DeferredEffect]:
        await self._subscriptions.apply_invoice_outcome(
            _object_id(invoice.get("subscription")),
            paid=False,
            event_created=event.get("created"),
        )
        return []

    async def _on_invoice_paid(
        self, invoice: dict[str, Any], event: dict[str, Any]
    ) -> list[DeferredEffect]:
        await self._subscriptions.apply_invoice_outcome(
            _object_id(invoice.get("subscription")),
            paid=True,
            event_created=event.get("created"),
        )
        return []
