"""In-memory stand-ins for repositories, the Stripe gateway and the notifier."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from typing import Any

from api.errors import NotFound
from api.repositories.idempotency import IdempotencySnapshot
from api.repositories.unit_of_work import Repositories
from api.services.notifications import Notifier
from api.services.stripe_gateway import StripeGateway
from storefront.models import Coupon, Order, OrderItem, Subscription

WEBHOOK_SECRET = "whsec_test_secret"


def make_settings(**overrides: Any) -> SimpleNamespace:
    values = {
        "site_url": "https://shop.test",
        "admin_url": "https://admin.shop.test",
        "default_currency": "usd",
        "gift_coupon_threshold_amount": 20000,
        "gift_coupon_percentage": 10,
        "gift_coupon_valid_days": 30,
        "subscription_staleness_seconds": 300,
        "order_reconcile_after_minutes": 30,
        "webhook_event_retention_days": 30,
        "billing_event_retention_days": 365,
        "idempotency_retention_hours": 24,
        "idempotency_wait_seconds": 1.0,
        "idempotency_lease_seconds": 60,
        "idempotency_poll_interval_seconds": 0.01,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def make_user(**overrides: Any) -> SimpleNamespace:
    values = {
        "id": uuid.uuid4(),
        "email": "buyer@shop.test",
        "display_name": "Buyer",
        "stripe_customer_id": None,
        "is_admin": False,
        "is_active": True,
        "token_version": 0,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def make_order(user_id: uuid.UUID, **overrides: Any) -> Order:
    now = datetime.now(UTC)
    values: dict[str, Any] = {
        "id": uuid.uuid4(),
        "user_id": user_id,
        "currency": "usd",
        "items_total": 9999,
        "discount_amount": 0,
        "total_amount": 9999,
        "coupon_code": None,
        "status": "pending",
        "payment_status": None,
        "processor_payment_intent_id": None,
        "processor_checkout_session_id": None,
        "processor_refund_id": None,
        "amount_refunded": 0,
        "failure_code": None,
        "failure_message": None,
        "status_version": 0,
        "paid_at": None,
        "cancelled_at": None,
        "refunded_at": None,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    order = Order(**values)
    order.items = [
        OrderItem(
            id=uuid.uuid4(),
            position=0,
            product_id="prod_1",
            name="Widget",
            quantity=1,
            unit_price=values["items_total"],
        )
    ]
    return order


def make_cart(user_id: uuid.UUID, items: list[tuple[str, str, int, int]], **overrides: Any):
    values = {
        "id": uuid.uuid4(),
        "user_id": user_id,
        "currency": "usd",
        "items": [
            SimpleNamespace(
                product_id=product_id,
                name=name,
                unit_price=unit_price,
                quantity=quantity,
                image_url=None,
            )
            for product_id, name, unit_price, quantity in items
        ],
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def make_coupon(code: str, percentage: int, **overrides: Any) -> Coupon:
    now = datetime.now(UTC)
    values: dict[str, Any] = {
        "id": uuid.uuid4(),
        "code": code,
        "discount_percentage": percentage,
        "min_purchase_amount": 0,
        "user_id": None,
        "is_active": True,
        "expires_at": None,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return Coupon(**values)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"), f"{ts}.{payload}".encode(), hashlib.sha256
    ).hexdigest()
    return f"t={ts},v1={signature}"


def make_event(event_id: str, event_type: str, obj: dict[str, Any], **extra: Any) -> str:
    event = {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": extra.pop("created", int(time.time())),
        "data": {"object": obj},
        **extra,
    }
    return json.dumps(event)


class FakeOrders:
    def __init__(self) -> None:
        self.rows: dict[uuid.UUID, Order] = {}
        self.transition_calls: list[tuple[uuid.UUID, tuple[str, ...], str]] = []

    def put(self, order: Order) -> Order:
        self.rows[order.id] = order
        return order

    async def get(self, order_id):
        return self.rows.get(order_id)

    async def get_by_payment_intent(self, intent_id):
        return next(
            (o for o in self.rows.values() if o.processor_payment_intent_id == intent_id), None
        )

    async def get_by_checkout_session(self, session_id):
        return next(
            (o for o in self.rows.values() if o.processor_checkout_session_id == session_id),
            None,
        )

    async def create(
        self,
        *,
        user_id,
        currency,
        items,
        items_total,
        discount_amount,
        total_amount,
        coupon_code=None,
        status="pending",
        payment_status=None,
        checkout_session_id=None,
        payment_intent_id=None,
    ):
        order = make_order(
            user_id,
            currency=currency,
            items_total=items_total,
            discount_amount=discount_amount,
            total_amount=total_amount,
            coupon_code=coupon_code,
            status=status,
            payment_status=payment_status,
            processor_checkout_session_id=checkout_session_id,
            processor_payment_intent_id=payment_intent_id,
            paid_at=datetime.now(UTC) if status == "paid" else None,
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
        return self.put(order)

    async def attach_payment_intent(self, order_id, intent_id, *, payment_status):
        order = self.rows.get(order_id)
        if (
            order is None
            or order.processor_payment_intent_id
            or order.processor_checkout_session_id
            or order.status not in ("pending", "processing")
        ):
            return False
        order.processor_payment_intent_id = intent_id
        order.payment_status = payment_status
        return True

    async def transition(self, order_id, *, from_statuses, to_status, values=None):
        self.transition_calls.append((order_id, tuple(from_statuses), to_status))
        order = self.rows.get(order_id)
        if order is None or order.status not in tuple(from_statuses):
            return False
        order.status = to_status
        order.status_version += 1
        order.updated_at = datetime.now(UTC)
        for key, value in (values or {}).items():
            setattr(order, key, value)
        return True

    async def update_payment_status(self, order_id, payment_status):
        self.rows[order_id].payment_status = payment_status

    async def list_unsettled(self, *, updated_before, limit=200):
        rows = [
            o
            for o in self.rows.values()
            if o.status in ("pending", "processing")
            and o.processor_payment_intent_id
            and o.updated_at < updated_before
        ]
        return sorted(rows, key=lambda o: o.updated_at)[:limit]

    async def record_partial_refund(self, order_id, *, refund_id, amount_refunded):
        order = self.rows.get(order_id)
        if order is None or order.status != "paid" or order.amount_refunded >= amount_refunded:
            return False
        order.processor_refund_id = refund_id
        order.amount_refunded = amount_refunded
        return True


class FakeCarts:
    def __init__(self) -> None:
        self.rows: dict[uuid.UUID, Any] = {}
        self.cleared: list[uuid.UUID] = []

    def put(self, cart):
        self.rows[cart.id] = cart
        return cart

    async def get(self, cart_id):
        return self.rows.get(cart_id)

    async def clear(self, cart_id):
        self.cleared.append(cart_id)
        cart = self.rows.get(cart_id)
        if cart is None:
            return 0
        count = len(cart.items)
        cart.items = []
        return count


class FakeCoupons:
    def __init__(self) -> None:
        self.rows: dict[str, Coupon] = {}

    def put(self, coupon: Coupon) -> Coupon:
        self.rows[coupon.code] = coupon
        return coupon

    async def get_by_code(self, code):
        return self.rows.get(code)

    async def deactivate(self, code, *, user_id=None):
        coupon = self.rows.get(code)
        if coupon is None or not coupon.is_active:
            return False
        if user_id is not None and coupon.user_id != user_id:
            return False
        coupon.is_active = False
        return True

    async def replace_gift_coupon(self, *, user_id, code, discount_percentage, expires_at):
        for existing in [c for c in self.rows.values() if c.user_id == user_id]:
            if existing.code.startswith("GIFT"):
                del self.rows[existing.code]
        return self.put(
            make_coupon(code, discount_percentage, user_id=user_id, expires_at=expires_at)
        )


class FakeUsers:
    def __init__(self) -> None:
        self.rows: dict[uuid.UUID, Any] = {}

    def put(self, user):
        self.rows[user.id] = user
        return user

    async def get(self, user_id):
        return self.rows.get(user_id)

    async def set_stripe_customer_id(self, user_id, customer_id):
        user = self.rows.get(user_id)
        if user is None or user.stripe_customer_id:
            return False
        user.stripe_customer_id = customer_id
        return True


class FakeSubscriptions:
    def __init__(self) -> None:
        self.rows: list[Subscription] = []
        self.saves = 0

    async def get_by_stripe_id(self, stripe_subscription_id):
        return next(
            (s for s in self.rows if s.stripe_subscription_id == stripe_subscription_id), None
        )

    async def find_user_for_customer(self, stripe_customer_id):
        return next(
            (s.user_id for s in self.rows if s.stripe_customer_id == stripe_customer_id), None
        )

    async def list_for_user(self, user_id):
        rows = [s for s in self.rows if s.user_id == user_id]
        return sorted(rows, key=lambda s: s.created_at, reverse=True)

    async def list_all(self):
        return sorted(self.rows, key=lambda s: s.created_at)

    async def add(self, subscription):
        self.rows.append(subscription)
        return subscription

    async def save(self, subscription):
        self.saves += 1


class FakeWebhookEvents:
    def __init__(self) -> None:
        self.ids: dict[str, str] = {}

    async def register(self, stripe_event_id, event_type):
        if stripe_event_id in self.ids:
            return False
        self.ids[stripe_event_id] = event_type
        return True

    async def purge_received_before(self, cutoff):
        return 0


class FakeBillingEvents:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def record(self, event_type, *, order_id=None, stripe_subscription_id=None, metadata=None):
        self.events.append(
            {
                "event_type": event_type,
                "order_id": order_id,
                "stripe_subscription_id": stripe_subscription_id,
                "metadata": metadata or {},
            }
        )

    def types(self) -> list[str]:
        return [e["event_type"] for e in self.events]

    async def purge_created_before(self, cutoff):
        return 0


def make_repos() -> Repositories:
    commits: list[int] = []

    async def _commit() -> None:
        commits.append(1)

    repos = Repositories(
        orders=FakeOrders(),
        carts=FakeCarts(),
        coupons=FakeCoupons(),
        users=FakeUsers(),
        subscriptions=FakeSubscriptions(),
        webhook_events=FakeWebhookEvents(),
        billing_events=FakeBillingEvents(),
        _commit=_commit,
    )
    repos.commits = commits
    return repos


class FakeIdempotencyRecords:
    """Mirrors IdempotencyRecordRepository without a database."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], IdempotencySnapshot] = {}

    async def claim(
        self, key, operation, *, owner_id, request_hash, expires_at, locked_until=None
    ):
        now = datetime.now(UTC)
        existing = self.rows.get((key, operation))
        if existing is not None and existing.expires_at <= now:
            del self.rows[(key, operation)]
            existing = None
        snapshot = IdempotencySnapshot(
            key=key,
            operation=operation,
            owner_id=owner_id,
            status="in_flight",
            request_hash=request_hash,
            response=None,
            error=None,
            expires_at=expires_at,
            locked_until=locked_until or expires_at,
        )
        if existing is not None:
            lapsed = (
                existing.status == "in_flight"
                and existing.locked_until is not None
                and existing.locked_until <= now
                and (owner_id is None or existing.owner_id in (None, owner_id))
                and (request_hash is None or existing.request_hash in (None, request_hash))
            )
            if not lapsed:
                return existing, False
            snapshot = replace(
                existing, locked_until=snapshot.locked_until, expires_at=expires_at
            )
        self.rows[(key, operation)] = snapshot
        return snapshot, True

    async def get(self, key, operation):
        return self.rows.get((key, operation))

    async def complete(self, key, operation, response):
        current = self.rows.get((key, operation))
        if current is not None and current.status == "in_flight":
            self.rows[(key, operation)] = replace(current, status="completed", response=response)

    async def fail(self, key, operation, error):
        current = self.rows.get((key, operation))
        if current is not None and current.status == "in_flight":
            self.rows[(key, operation)] = replace(current, status="failed", error=error)

    async def clear(self, key, operation):
        return self.rows.pop((key, operation), None) is not None

    async def purge_expired(self, now=None):
        cutoff = now or datetime.now(UTC)
        expired = [k for k, v in self.rows.items() if v.expires_at <= cutoff]
        for k in expired:
            del self.rows[k]
        return len(expired)


class FakeGateway:
    """Records processor calls and honours processor idempotency keys."""

    configured = True

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.errors: dict[str, Exception] = {}
        self.intents: dict[str, dict[str, Any]] = {}
        self.sessions: dict[str, dict[str, Any]] = {}
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.next_intent: dict[str, Any] | None = None
        self.next_subscription: dict[str, Any] | None = None
        self._by_idempotency_key: dict[str, dict[str, Any]] = {}
        self._counter = 0
        self._verifier = StripeGateway(secret_key="sk_test_fake", webhook_secret=webhook_secret)

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    async def _record(self, name: str, /, **params: Any) -> None:
        self.calls.append((name, params))
        await asyncio.sleep(0)
        if name in self.errors:
            raise self.errors[name]

    def called(self, name: str) -> list[dict[str, Any]]:
        return [params for call, params in self.calls if call == name]

    async def create_payment_intent(
        self, *, amount, currency, metadata, receipt_email, idempotency_key
    ):
        await self._record(
            "create_payment_intent",
            amount=amount,
            currency=currency,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        if idempotency_key in self._by_idempotency_key:
            return self._by_idempotency_key[idempotency_key]
        base = self.next_intent or {}
        intent_id = base.get("id") or self._next_id("pi")
        intent = {
            "id": intent_id,
            "object": "payment_intent",
            "amount": amount,
            "currency": currency,
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret",
            "metadata": metadata,
            **base,
        }
        self.next_intent = None
        self.intents[intent_id] = intent
        self._by_idempotency_key[idempotency_key] = intent
        return intent

    async def retrieve_payment_intent(self, intent_id):
        await self._record("retrieve_payment_intent", intent_id=intent_id)
        if intent_id not in self.intents:
            raise NotFound("Stripe object not found for payment_intent.retrieve")
        return self.intents[intent_id]

    async def cancel_payment_intent(self, intent_id):
        await self._record("cancel_payment_intent", intent_id=intent_id)
        intent = self.intents[intent_id]
        intent["status"] = "canceled"
        return intent

    async def create_refund(self, *, payment_intent_id, amount, reason, metadata, idempotency_key):
        await self._record(
            "create_refund",
            payment_intent_id=payment_intent_id,
            amount=amount,
            reason=reason,
            idempotency_key=idempotency_key,
        )
        if idempotency_key in self._by_idempotency_key:
            return self._by_idempotency_key[idempotency_key]
        intent = self.intents.get(payment_intent_id) or {}
        refund = {
            "id": self._next_id("re"),
            "object": "refund",
            "payment_intent": payment_intent_id,
            "amount": amount if amount is not None else intent.get("amount"),
            "status": "succeeded",
        }
        self._by_idempotency_key[idempotency_key] = refund
        return refund

    async def create_checkout_session(
        self, *, line_items, success_url, cancel_url, metadata, customer_email=None, coupon_id=None
    ):
        await self._record(
            "create_checkout_session",
            line_items=line_items,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            coupon_id=coupon_id,
        )
        session_id = self._next_id("cs_test")
        session = {
            "id": session_id,
            "object": "checkout.session",
            "url": f"https://checkout.stripe.test/{session_id}",
            "mode": "payment",
            "payment_status": "unpaid",
            "metadata": metadata,
        }
        self.sessions[session_id] = session
        return session

    async def retrieve_checkout_session(self, session_id):
        await self._record("retrieve_checkout_session", session_id=session_id)
        if session_id not in self.sessions:
            raise NotFound("Stripe object not found for checkout_session.retrieve")
        return self.sessions[session_id]

    async def find_checkout_session_for_intent(self, intent_id):
        await self._record("find_checkout_session_for_intent", intent_id=intent_id)
        return next(
            (s for s in self.sessions.values() if s.get("payment_intent") == intent_id), None
        )

    async def create_amount_coupon(self, *, amount_off, currency, name, idempotency_key):
        await self._record(
            "create_amount_coupon",
            amount_off=amount_off,
            currency=currency,
            name=name,
            idempotency_key=idempotency_key,
        )
        return {"id": self._next_id("co"), "amount_off": amount_off, "currency": currency}

    async def create_customer(self, *, email, name, metadata, idempotency_key):
        await self._record(
            "create_customer", email=email, metadata=metadata, idempotency_key=idempotency_key
        )
        if idempotency_key in self._by_idempotency_key:
            return self._by_idempotency_key[idempotency_key]
        customer = {"id": self._next_id("cus"), "email": email}
        self._by_idempotency_key[idempotency_key] = customer
        return customer

    async def create_subscription(
        self, *, customer_id, price_id, payment_method_id, metadata, idempotency_key
    ):
        await self._record(
            "create_subscription",
            customer_id=customer_id,
            price_id=price_id,
            payment_method_id=payment_method_id,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        if idempotency_key in self._by_idempotency_key:
            return self._by_idempotency_key[idempotency_key]
        sub_id = self._next_id("sub")
        now = int(time.time())
        sub = {
            "id": sub_id,
            "object": "subscription",
            "customer": customer_id,
            "status": "incomplete",
            "cancel_at_period_end": False,
            "current_period_start": now,
            "current_period_end": now + 30 * 86400,
            "metadata": metadata,
            "items": {
                "data": [{"price": {"id": price_id, "recurring": {"interval": "month"}}}]
            },
            "latest_invoice": {
                "id": self._next_id("in"),
                "payment_intent": {"id": self._next_id("pi"), "client_secret": "sub_secret"},
            },
            **(self.next_subscription or {}),
        }
        self.next_subscription = None
        self.subscriptions[sub_id] = sub
        self._by_idempotency_key[idempotency_key] = sub
        return sub

    async def retrieve_subscription(self, subscription_id):
        await self._record("retrieve_subscription", subscription_id=subscription_id)
        if subscription_id not in self.subscriptions:
            raise NotFound("Stripe object not found for subscription.retrieve")
        return self.subscriptions[subscription_id]

    async def schedule_subscription_cancel(self, subscription_id):
        await self._record("schedule_subscription_cancel", subscription_id=subscription_id)
        sub = self.subscriptions[subscription_id]
        sub["cancel_at_period_end"] = True
        return sub

    async def cancel_subscription_now(self, subscription_id):
        await self._record("cancel_subscription_now", subscription_id=subscription_id)
        sub = self.subscriptions[subscription_id]
        sub["status"] = "canceled"
        sub["canceled_at"] = int(time.time())
        return sub

    def construct_event(self, payload, sig_header):
        return self._verifier.construct_event(payload, sig_header)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        super().__init__()
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def send(self, event_type, payload):
        self.sent.append((event_type, payload))


def make_subscription(user_id: uuid.UUID, stripe_id: str, **overrides: Any) -> Subscription:
    now = datetime.now(UTC)
    values: dict[str, Any] = {
        "id": uuid.uuid4(),
        "user_id": user_id,
        "stripe_customer_id": "cus_existing",
        "stripe_subscription_id": stripe_id,
        "stripe_price_id": "price_basic",
        "status": "active",
        "billing_interval": "month",
        "current_period_start": now,
        "current_period_end": now + timedelta(days=30),
        "cancel_at_period_end": False,
        "canceled_at": None,
        "last_event_at": None,
        "synced_at": now,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return Subscription(**values)
