"""Tests for hosted checkout sessions and order creation from them."""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime, timedelta

import pytest
from api.errors import Forbidden, NotFound, PaymentIncomplete, ValidationError
from api.services.checkout import CheckoutSessionManager
from api.services.idempotency_store import IdempotencyStore

from fakes import (
    FakeGateway,
    FakeIdempotencyRecords,
    make_cart,
    make_coupon,
    make_repos,
    make_settings,
    make_user,
)


@pytest.fixture
def buyer():
    return make_user()


@pytest.fixture
def repos():
    return make_repos()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def manager(repos, gateway):
    store = IdempotencyStore(FakeIdempotencyRecords(), wait_seconds=1.0, poll_interval_seconds=0.01)
    return CheckoutSessionManager(repos, gateway, store, settings=make_settings())


def _paid_session(
    session_id: str,
    user_id: uuid.UUID,
    *,
    cart_id: uuid.UUID | None = None,
    lines: list[tuple[str, str, int, int]],
    discount: int = 0,
    coupon_code: str = "",
) -> dict:
    items_total = sum(price * qty for _, _, price, qty in lines)
    return {
        "id": session_id,
        "object": "checkout.session",
        "mode": "payment",
        "payment_status": "paid",
        "currency": "usd",
        "amount_subtotal": items_total,
        "amount_total": items_total - discount,
        "total_details": {"amount_discount": discount},
        "payment_intent": f"pi_for_{session_id}",
        "metadata": {
            "user_id": str(user_id),
            "cart_id": str(cart_id) if cart_id else "",
            "coupon_code": coupon_code,
        },
        "line_items": {
            "data": [
                {
                    "description": name,
                    "quantity": qty,
                    "amount_subtotal": price * qty,
                    "price": {
                        "unit_amount": price,
                        "product": {"id": f"prod_{pid}", "metadata": {"product_id": pid}},
                    },
                }
                for pid, name, price, qty in lines
            ]
        },
    }


@pytest.mark.asyncio
async def test_create_session_applies_coupon_discount(manager, repos, gateway, buyer):
    cart = repos.carts.put(
        make_cart(buyer.id, [("p1", "Mug", 2500, 2), ("p2", "Sticker", 1000, 1)])
    )
    repos.coupons.put(make_coupon("SAVE10", 10))

    result = await manager.create_checkout_session(
        cart.id,
        buyer,
        success_url="https://shop.test/checkout/success",
        cancel_url="https://shop.test/cart",
        coupon_code="save10",
    )

    assert result["amountSubtotal"] == 6000
    assert result["discountAmount"] == 600
    assert result["totalAmount"] == 5400
    assert result["url"].startswith("https://checkout.stripe.test/")
    [coupon_call] = gateway.called("create_amount_coupon")
    assert coupon_call["amount_off"] == 600
    [session_call] = gateway.called("create_checkout_session")
    assert session_call["success_url"].endswith("session_id={CHECKOUT_SESSION_ID}")
    assert session_call["metadata"]["coupon_code"] == "SAVE10"
    assert session_call["metadata"]["expected_total"] == "5400"
    assert [line["quantity"] for line in session_call["line_items"]] == [2, 1]
    assert session_call["line_items"][0]["price_data"]["unit_amount"] == 2500


def _pay_created_session(gateway, session_id: str) -> None:
    """Mark a session paid the way the processor reports it, from what was sent at creation."""
    [session_call] = gateway.called("create_checkout_session")
    discount = sum(call["amount_off"] for call in gateway.called("create_amount_coupon"))
    data = []
    for line in session_call["line_items"]:
        price_data = line["price_data"]
        product = price_data["product_data"]
        data.append(
            {
                "description": product["name"],
                "quantity": line["quantity"],
                "amount_subtotal": price_data["unit_amount"] * line["quantity"],
                "price": {
                    "unit_amount": price_data["unit_amount"],
                    "product": {"id": "prod_x", "metadata": product["metadata"]},
                },
            }
        )
    subtotal = sum(line["amount_subtotal"] for line in data)
    gateway.sessions[session_id].update(
        payment_status="paid",
        currency="usd",
        payment_intent=f"pi_for_{session_id}",
        amount_subtotal=subtotal,
        amount_total=subtotal - discount,
        total_details={"amount_discount": discount},
        line_items={"data": data},
    )


@pytest.mark.asyncio
async def test_completed_session_total_matches_created_session(manager, repos, gateway, buyer):
    cart = repos.carts.put(
        make_cart(buyer.id, [("p1", "Mug", 2500, 2), ("p2", "Sticker", 1000, 1)])
    )
    repos.coupons.put(make_coupon("SAVE10", 10))
    created = await manager.create_checkout_session(
        cart.id,
        buyer,
        success_url="https://shop.test/checkout/success",
        cancel_url="https://shop.test/cart",
        coupon_code="SAVE10",
    )
    session_id = created["sessionId"]
    _pay_created_session(gateway, session_id)

    payload, was_created = await manager.complete_checkout(session_id, buyer)

    order = payload["order"]
    line_sum = sum(item["unitPrice"] * item["quantity"] for item in order["items"])
    assert was_created is True
    assert line_sum == order["itemsTotal"] == 6000
    assert order["discountAmount"] == 600
    assert order["totalAmount"] == line_sum - order["discountAmount"]
    assert order["totalAmount"] == created["totalAmount"]
    assert order["couponCode"] == "SAVE10"
    assert "checkout.total_mismatch" not in repos.billing_events.types()


@pytest.mark.asyncio
async def test_create_session_without_coupon_skips_processor_coupon(manager, repos, gateway, buyer):
    cart = repos.carts.put(make_cart(buyer.id, [("p1", "Mug", 2500, 1)]))

    result = await manager.create_checkout_session(
        cart.id,
        buyer,
        success_url="https://shop.test/ok?session_id={CHECKOUT_SESSION_ID}",
        cancel_url="https://shop.test/cart",
    )

    assert result["discountAmount"] == 0
    assert gateway.called("create_amount_coupon") == []
    assert gateway.called("create_checkout_session")[0]["coupon_id"] is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "coupon",
    [
        make_coupon("OLD10", 10, is_active=False),
        make_coupon("GONE10", 10, expires_at=datetime.now(UTC) - timedelta(days=1)),
        make_coupon("BIG10", 10, min_purchase_amount=100000),
    ],
)
async def test_unusable_coupon_is_rejected(manager, repos, buyer, coupon):
    cart = repos.carts.put(make_cart(buyer.id, [("p1", "Mug", 2500, 1)]))
    repos.coupons.put(coupon)

    with pytest.raises(ValidationError) as exc_info:
        await manager.create_checkout_session(
            cart.id,
            buyer,
            success_url="https://shop.test/ok",
            cancel_url="https://shop.test/cart",
            coupon_code=coupon.code,
        )

    assert "couponCode" in exc_info.value.fields


@pytest.mark.asyncio
async def test_unknown_coupon_is_rejected(manager, repos, buyer):
    cart = repos.carts.put(make_cart(buyer.id, [("p1", "Mug", 2500, 1)]))

    with pytest.raises(ValidationError):
        await manager.create_checkout_session(
            cart.id,
            buyer,
            success_url="https://shop.test/ok",
            cancel_url="https://shop.test/cart",
            coupon_code="NOPE",
        )


@pytest.mark.asyncio
async def test_other_users_coupon_is_rejected(manager, repos, buyer):
    cart = repos.carts.put(make_cart(buyer.id, [("p1", "Mug", 2500, 1)]))
    repos.coupons.put(make_coupon("GIFTABC123", 10, user_id=uuid.uuid4()))

    with pytest.raises(ValidationError):
        await manager.create_checkout_session(
            cart.id,
            buyer,
            success_url="https://shop.test/ok",
            cancel_url="https://shop.test/cart",
            coupon_code="GIFTABC123",
        )


@pytest.mark.asyncio
async def test_invalid_cart_items_report_field_errors(manager, repos, buyer):
    cart = repos.carts.put(make_cart(buyer.id, [("p1", "", 0, 1)]))

    with pytest.raises(ValidationError) as exc_info:
        await manager.create_checkout_session(
            cart.id,
            buyer,
            success_url="https://shop.test/ok",
            cancel_url="https://shop.test/cart",
        )

    assert set(exc_info.value.fields) == {"items[0].name", "items[0].price"}


@pytest.mark.asyncio
async def test_empty_cart_is_rejected(manager, repos, buyer):
    cart = repos.carts.put(make_cart(buyer.id, []))

    with pytest.raises(ValidationError):
        await manager.create_checkout_session(
            cart.id,
            buyer,
            success_url="https://shop.test/ok",
            cancel_url="https://shop.test/cart",
        )


@pytest.mark.asyncio
async def test_redirect_to_foreign_origin_is_rejected(manager, repos, buyer):
    cart = repos.carts.put(make_cart(buyer.id, [("p1", "Mug", 2500, 1)]))

    with pytest.raises(ValidationError) as exc_info:
        await manager.create_checkout_session(
            cart.id,
            buyer,
            success_url="https://evil.test/steal",
            cancel_url="https://shop.test/cart",
        )

    assert "successUrl" in exc_info.value.fields


@pytest.mark.asyncio
async def test_cart_ownership_is_enforced(manager, repos, buyer):
    cart = repos.carts.put(make_cart(uuid.uuid4(), [("p1", "Mug", 2500, 1)]))

    with pytest.raises(Forbidden):
        await manager.create_checkout_session(
            cart.id,
            buyer,
            success_url="https://shop.test/ok",
            cancel_url="https://shop.test/cart",
        )
    with pytest.raises(NotFound):
        await manager.create_checkout_session(
            uuid.uuid4(),
            buyer,
            success_url="https://shop.test/ok",
            cancel_url="https://shop.test/cart",
        )


@pytest.mark.asyncio
async def test_complete_checkout_creates_paid_order(manager, repos, gateway, buyer):
    cart = repos.carts.put(
        make_cart(buyer.id, [("p1", "Mug", 2500, 2), ("p2", "Sticker", 1000, 1)])
    )
    repos.coupons.put(make_coupon("SAVE10", 10, user_id=buyer.id))
    gateway.sessions["cs_1"] = _paid_session(
        "cs_1",
        buyer.id,
        cart_id=cart.id,
        lines=[("p1", "Mug", 2500, 2), ("p2", "Sticker", 1000, 1)],
        discount=600,
        coupon_code="SAVE10",
    )

    payload, created = await manager.complete_checkout("cs_1", buyer)

    order = payload["order"]
    assert created is True
    assert order["status"] == "paid"
    assert order["itemsTotal"] == 6000
    assert order["discountAmount"] == 600
    assert order["totalAmount"] == order["itemsTotal"] - order["discountAmount"] == 5400
    assert [item["productId"] for item in order["items"]] == ["p1", "p2"]
    assert order["paymentDetails"]["processorCheckoutSessionId"] == "cs_1"
    assert repos.coupons.rows["SAVE10"].is_active is False
    assert repos.carts.cleared == [cart.id]
    assert repos.commits


@pytest.mark.asyncio
async def test_repeated_completion_returns_same_order(manager, repos, gateway, buyer):
    gateway.sessions["cs_1"] = _paid_session("cs_1", buyer.id, lines=[("p1", "Mug", 2500, 1)])

    first, first_created = await manager.complete_checkout("cs_1", buyer)
    second, second_created = await manager.complete_checkout("cs_1", buyer)

    assert first_created is True
    assert second_created is False
    assert first["order"]["id"] == second["order"]["id"]
    assert len(repos.orders.rows) == 1


@pytest.mark.asyncio
async def test_concurrent_completion_creates_one_order(manager, repos, gateway, buyer):
    gateway.sessions["cs_1"] = _paid_session("cs_1", buyer.id, lines=[("p1", "Mug", 2500, 1)])

    results = await asyncio.gather(
        manager.complete_checkout("cs_1", buyer),
        manager.complete_checkout("cs_1", buyer),
    )

    assert len(repos.orders.rows) == 1
    assert sorted(created for _, created in results) == [False, True]
    assert results[0][0]["order"]["id"] == results[1][0]["order"]["id"]


@pytest.mark.asyncio
async def test_unpaid_session_is_payment_incomplete(manager, gateway, buyer):
    session = _paid_session("cs_1", buyer.id, lines=[("p1", "Mug", 2500, 1)])
    session["payment_status"] = "unpaid"
    gateway.sessions["cs_1"] = session

    with pytest.raises(PaymentIncomplete):
        await manager.complete_checkout("cs_1", buyer)


@pytest.mark.asyncio
async def test_other_users_session_is_forbidden(manager, repos, gateway, buyer):
    gateway.sessions["cs_1"] = _paid_session("cs_1", uuid.uuid4(), lines=[("p1", "Mug", 2500, 1)])

    with pytest.raises(Forbidden):
        await manager.complete_checkout("cs_1", buyer)
    assert repos.orders.rows == {}


@pytest.mark.asyncio
async def test_large_order_issues_gift_coupon(manager, repos, gateway, buyer):
    gateway.sessions["cs_1"] = _paid_session("cs_1", buyer.id, lines=[("p1", "TV", 25000, 1)])

    await manager.complete_checkout("cs_1", buyer)

    gifts = [c for c in repos.coupons.rows.values() if c.user_id == buyer.id]
    assert len(gifts) == 1
    assert gifts[0].code.startswith("GIFT")
    assert gifts[0].discount_percentage == 10


@pytest.mark.asyncio
async def test_total_mismatch_is_audited(manager, repos, gateway, buyer):
    session = _paid_session("cs_1", buyer.id, lines=[("p1", "Mug", 2500, 1)])
    session["amount_total"] = 2400
    gateway.sessions["cs_1"] = session

    payload, _ = await manager.complete_checkout("cs_1", buyer)

    assert payload["order"]["totalAmount"] == 2500
    assert "checkout.total_mismatch" in repos.billing_events.types()
