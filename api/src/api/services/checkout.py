"""Hosted checkout sessions and exactly-once order creation from them."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from storefront.config import Settings

from api.errors import Forbidden, NotFound, PaymentIncomplete, ValidationError
from api.services.coupons import discount_for, issue_gift_coupon, resolve_coupon
from api.services.order_lifecycle import serialize_order
from api.services.validation import parse_uuid, validate_redirect_url

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETE_OPERATION = "checkout.complete"
SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


def _with_session_placeholder(url: str) -> str:
    if SESSION_ID_PLACEHOLDER in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}session_id={SESSION_ID_PLACEHOLDER}"


def _validate_cart_items(items) -> list[dict[str, Any]]:
    errors: dict[str, str] = {}
    lines: list[dict[str, Any]] = []
    for index, item in enumerate(items):
        name = str(item.name or "").strip()
        if not name:
            errors[f"items[{index}].name"] = "required"
        if not isinstance(item.unit_price, int) or item.unit_price <= 0:
            errors[f"items[{index}].price"] = "must be a positive amount"
        if not isinstance(item.quantity, int) or item.quantity <= 0:
            errors[f"items[{index}].quantity"] = "must be a positive integer"
        lines.append(
            {
                "product_id": item.product_id,
                "name": name,
                "unit_price": item.unit_price,
                "quantity": item.quantity,
                "image_url": getattr(item, "image_url", None),
            }
        )
    if not lines:
        raise ValidationError("Cart is empty", fields={"cartId": "cart has no items"})
    if errors:
        raise ValidationError("Cart contains invalid items", fields=errors)
    return lines


def _line_item_payload(line: dict[str, Any], currency: str) -> dict[str, Any]:
    product_data: dict[str, Any] = {
        "name": line["name"],
        "metadata": {"product_id": str(line["product_id"])},
    }
    if line.get("image_url"):
        product_data["images"] = [line["image_url"]]
    return {
        "price_data": {
            "currency": currency,
            "unit_amount": line["unit_price"],
            "product_data": product_data,
        },
        "quantity": line["quantity"],
    }


def _order_items_from_session(session: dict[str, Any]) -> tuple[list[dict[str, Any]], int]:
    line_items = (session.get("line_items") or {}).get("data") or []
    items: list[dict[str, Any]] = []
    items_total = 0
    for line in line_items:
        price = line.get("price") or {}
        product = price.get("product")
        product_id = None
        if isinstance(product, dict):
            product_id = (product.get("metadata") or {}).get("product_id") or product.get("id")
        elif product:
            product_id = str(product)
        quantity = int(line.get("quantity") or 1)
        unit_price = price.get("unit_amount")
        subtotal = line.get("amount_subtotal")
        if unit_price is None:
            unit_price = int(subtotal or 0) // quantity
        if subtotal is None:
            subtotal = int(unit_price) * quantity
        items_total += int(subtotal)
        items.append(
            {
                "product_id": product_id,
                "name": line.get("description") or "Item",
                "quantity": quantity,
                "unit_price": int(unit_price),
            }
        )
    return items, items_total


class CheckoutSessionManager:
    def __init__(self, repos, gateway, store, *, settings: Settings) -> None:
        self._repos = repos
        self._gateway = gateway
        self._store = store
        self._settings = settings

    async def create_checkout_session(
        self,
        cart_id: uuid.UUID,
        requester,
        *,
        success_url: str,
        cancel_url: str,
        coupon_code: str | None = None,
    ) -> dict[str, Any]:
        success_url = validate_redirect_url(
            success_url, field="successUrl", settings=self._settings
        )
        cancel_url = validate_redirect_url(cancel_url, field="cancelUrl", settings=self._settings)

        cart = await self._repos.carts.get(cart_id)
        if cart is None:
            raise NotFound("Cart not found")
        if str(cart.user_id) != str(requester.id):
            raise Forbidden("Cart belongs to another user")

        lines = _validate_cart_items(cart.items)
        currency = (cart.currency or self._settings.default_currency).lower()
        subtotal = sum(line["unit_price"] * line["quantity"] for line in lines)

        coupon = None
        discount = 0
        if coupon_code and coupon_code.strip():
            coupon = await resolve_coupon(
                self._repos, coupon_code, user_id=requester.id, subtotal=subtotal
            )
            discount = discount_for(subtotal, coupon.discount_percentage)
        total = subtotal - discount
        if total <= 0:
            raise ValidationError(
                "Coupon covers the full order amount",
                fields={"couponCode": "discount leaves nothing to charge"},
            )

        processor_coupon_id = None
        if discount:
            processor_coupon = await self._gateway.create_amount_coupon(
                amount_off=discount,
                currency=currency,
                name=coupon.code,
                idempotency_key=f"cart:{cart.id}:coupon:{coupon.code}:{discount}",
            )
            processor_coupon_id = processor_coupon["id"]

        metadata = {
            "user_id": str(requester.id),
            "cart_id": str(cart.id),
            "coupon_code": coupon.code if coupon else "",
            "expected_total": str(total),
        }
        session = await self._gateway.create_checkout_session(
            line_items=[_line_item_payload(line, currency) for line in lines],
            success_url=_with_session_placeholder(success_url),
            cancel_url=cancel_url,
            metadata=metadata,
            customer_email=getattr(requester, "email", None),
            coupon_id=processor_coupon_id,
        )
        self._repos.billing_events.record(
            "checkout.session.created",
            metadata={
                "session_id": session.get("id"),
                "user_id": str(requester.id),
                "subtotal": subtotal,
                "discount": discount,
                "coupon_code": metadata["coupon_code"] or None,
            },
        )
        logger.info("Checkout session %s created for cart %s", session.get("id"), cart.id)
        return {
            "url": session.get("url"),
            "sessionId": session.get("id"),
            "amountSubtotal": subtotal,
            "discountAmount": discount,
            "totalAmount": total,
            "currency": currency,
        }

    async def complete_checkout(self, session_id: str, requester) -> tuple[dict[str, Any], bool]:
        """Exchange a paid session for its order; returns (payload, created_by_this_call)."""
        session_id = str(session_id or "").strip()
        if not session_id:
            raise ValidationError("sessionId is required", fields={"sessionId": "required"})

        session = await self._gateway.retrieve_checkout_session(session_id)
        owner = (session.get("metadata") or {}).get("user_id")
        if str(owner or "") != str(requester.id):
            raise Forbidden("Checkout session belongs to another user")
        if session.get("payment_status") != "paid":
            raise PaymentIncomplete(
                "Checkout session has not been paid",
                fields={"sessionId": f"payment status is {session.get('payment_status')}"},
            )
        return await self.fulfill_session(session, source="checkout.success")

    async def fulfill_session(
        self,
        session: dict[str, Any],
        *,
        source: str,
    ) -> tuple[dict[str, Any], bool]:
        """Create the order for a paid session once, whichever caller gets there first."""
        session_id = str(session["id"])
        user_id = parse_uuid((session.get("metadata") or {}).get("user_id"), field="userId")
        created = False

        async def _create() -> dict[str, Any]:
            nonlocal created
            payload, created = await self._create_order(session, user_id, source=source)
            return payload

        payload = await self._store.execute(
            session_id,
            CHECKOUT_COMPLETE_OPERATION,
            _create,
            owner_id=user_id,
        )
        return payload, created

    async def _create_order(
        self,
        session: dict[str, Any],
        user_id: uuid.UUID,
        *,
        source: str,
    ) -> tuple[dict[str, Any], bool]:
        session_id = str(session["id"])
        existing = await self._repos.orders.get_by_checkout_session(session_id)
        if existing is not None:
            return {"order": serialize_order(existing)}, False

        items, items_total = _order_items_from_session(session)
        if not items:
            raise ValidationError(
                "Checkout session has no line items", fields={"sessionId": "no line items"}
            )
        discount = int((session.get("total_details") or {}).get("amount_discount") or 0)
        total = items_total - discount
        amount_total = session.get("amount_total")
        if amount_total is not None and int(amount_total) != total:
            logger.warning(
                "Checkout session %s total mismatch: processor=%s computed=%s",
                session_id,
                amount_total,
                total,
            )
            self._repos.billing_events.record(
                "checkout.total_mismatch",
                metadata={"session_id": session_id, "processor": amount_total, "computed": total},
            )

        metadata = session.get("metadata") or {}
        coupon_code = metadata.get("coupon_code") or None
        order = await self._repos.orders.create(
            user_id=user_id,
            currency=str(session.get("currency") or self._settings.default_currency).lower(),
            items=items,
            items_total=items_total,
            discount_amount=discount,
            total_amount=total,
            coupon_code=coupon_code,
            status="paid",
            payment_status=session.get("payment_status"),
            checkout_session_id=session_id,
        )
        if coupon_code:
            await self._repos.coupons.deactivate(coupon_code, user_id=user_id)
        cart_id = metadata.get("cart_id")
        if cart_id:
            await self._repos.carts.clear(parse_uuid(cart_id, field="cartId"))
        if total >= self._settings.gift_coupon_threshold_amount:
            gift = await issue_gift_coupon(self._repos, user_id=user_id, settings=self._settings)
            logger.info("Issued gift coupon %s for order %s", gift.code, order.id)

        self._repos.billing_events.record(
            "checkout.order.created",
            order_id=order.id,
            metadata={"session_id": session_id, "total": total, "source": source},
        )
        payload = {"order": serialize_order(order)}
        await self._repos.commit()
        logger.info("Order %s created from checkout session %s", order.id, session_id)
        return payload, True
