"""Stripe SDK gateway.

All processor traffic goes through ``StripeGateway``. Credentials are held
by the instance and passed on every request, so nothing touches the SDK's
module-level ``stripe.api_key``. Each call runs in a worker thread under a
bounded timeout and processor errors are mapped onto the domain taxonomy.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

import stripe
from storefront.config import Settings

from api.errors import (
    NotFound,
    PaymentDeclined,
    ProcessorNotConfigured,
    SignatureError,
    UpstreamError,
    UpstreamTimeout,
    ValidationError,
)

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_EXPAND = ["line_items", "line_items.data.price.product"]
SUBSCRIPTION_EXPAND = ["latest_invoice.payment_intent"]


def _plain(obj: Any) -> dict[str, Any]:
    """Convert an SDK object into plain JSON-compatible dicts."""
    if obj is None:
        return {}
    if type(obj) is dict:
        return obj
    return json.loads(str(obj))


def _describe(exc: stripe.StripeError) -> str:
    message = getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__
    return str(message).strip()


class StripeGateway:
    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: str = "",
        api_version: str | None = None,
        timeout_seconds: float = 10.0,
        webhook_tolerance_seconds: int = 300,
    ) -> None:
        self._secret_key = secret_key.strip()
        self._webhook_secret = webhook_secret.strip()
        self._api_version = api_version
        self._timeout_seconds = timeout_seconds
        self._webhook_tolerance_seconds = webhook_tolerance_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> StripeGateway:
        return cls(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_version=settings.stripe_api_version or None,
            timeout_seconds=settings.processor_timeout_seconds,
            webhook_tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self._secret_key)

    def _request_options(self, idempotency_key: str | None) -> dict[str, Any]:
        options: dict[str, Any] = {"api_key": self._secret_key}
        if self._api_version:
            options["stripe_version"] = self._api_version
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    async def _call(
        self,
        operation: str,
        fn: Callable[..., Any],
        *args: Any,
        idempotency_key: str | None = None,
        **params: Any,
    ) -> dict[str, Any]:
        if not self.configured:
            raise ProcessorNotConfigured("Stripe is not configured")
        kwargs = {**params, **self._request_options(idempotency_key)}
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as exc:
            logger.warning(
                "Stripe %s timed out after %.1fs", operation, self._timeout_seconds
            )
            raise UpstreamTimeout(f"Stripe {operation} timed out") from exc
        except stripe.CardError as exc:
            error = getattr(exc, "error", None)
            decline_code = getattr(error, "decline_code", None) if error else None
            logger.info("Stripe %s declined: %s (%s)", operation, exc.code, decline_code)
            raise PaymentDeclined(
                _describe(exc),
                code="PAYMENT_DECLINED",
                fields={"decline_code": str(decline_code or exc.code or "card_declined")},
            ) from exc
        except stripe.APIConnectionError as exc:
            logger.warning("Stripe %s connection failed: %s", operation, exc)
            raise UpstreamTimeout(f"Stripe {operation} connection failed") from exc
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "http_status", None) == 404:
                raise NotFound(f"Stripe object not found for {operation}") from exc
            logger.error("Stripe %s rejected request: %s", operation, _describe(exc))
            raise UpstreamError(f"Stripe {operation} rejected: {_describe(exc)}") from exc
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", operation, _describe(exc))
            raise UpstreamError(f"Stripe {operation} failed: {_describe(exc)}") from exc
        return _plain(result)

    # Payment intents

    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        receipt_email: str | None,
        idempotency_key: str,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if receipt_email:
            params["receipt_email"] = receipt_email
        return await self._call(
            "payment_intent.create",
            stripe.PaymentIntent.create,
            idempotency_key=idempotency_key,
            **params,
        )

    async def retrieve_payment_intent(self, intent_id: str) -> dict[str, Any]:
        return await self._call(
            "payment_intent.retrieve", stripe.PaymentIntent.retrieve, intent_id
        )

    async def cancel_payment_intent(self, intent_id: str) -> dict[str, Any]:
        return await self._call("payment_intent.cancel", stripe.PaymentIntent.cancel, intent_id)

    async def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount: int | None,
        reason: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "payment_intent": payment_intent_id,
            "reason": reason,
            "metadata": metadata,
        }
        if amount is not None:
            params["amount"] = amount
        return await self._call(
            "refund.create",
            stripe.Refund.create,
            idempotency_key=idempotency_key,
            **params,
        )

    # Checkout

    async def create_checkout_session(
        self,
        *,
        line_items: list[dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        customer_email: str | None = None,
        coupon_id: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if customer_email:
            params["customer_email"] = customer_email
        if coupon_id:
            params["discounts"] = [{"coupon": coupon_id}]
        return await self._call(
            "checkout_session.create", stripe.checkout.Session.create, **params
        )

    async def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        return await self._call(
            "checkout_session.retrieve",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=CHECKOUT_SESSION_EXPAND,
        )

    async def find_checkout_session_for_intent(self, intent_id: str) -> dict[str, Any] | None:
        result = await self._call(
            "checkout_session.list",
            stripe.checkout.Session.list,
            payment_intent=intent_id,
            limit=1,
        )
        sessions = result.get("data") or []
        return sessions[0] if sessions else None

    async def create_amount_coupon(
        self,
        *,
        amount_off: int,
        currency: str,
        name: str,
        idempotency_key: str,
    ) -> dict[str, Any]:
        return await self._call(
            "coupon.create",
            stripe.Coupon.create,
            idempotency_key=idempotency_key,
            amount_off=amount_off,
            currency=currency,
            duration="once",
            name=name[:40],
            metadata={"type": "discount", "code": name},
        )

    # Customers and subscriptions

    async def create_customer(
        self,
        *,
        email: str,
        name: str | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"email": email, "metadata": metadata}
        if name:
            params["name"] = name
        return await self._call(
            "customer.create",
            stripe.Customer.create,
            idempotency_key=idempotency_key,
            **params,
        )

    async def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        payment_method_id: str | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": SUBSCRIPTION_EXPAND,
            "metadata": metadata,
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
        return await self._call(
            "subscription.create",
            stripe.Subscription.create,
            idempotency_key=idempotency_key,
            **params,
        )

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._call(
            "subscription.retrieve", stripe.Subscription.retrieve, subscription_id
        )

    async def schedule_subscription_cancel(self, subscription_id: str) -> dict[str, Any]:
        return await self._call(
            "subscription.modify",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )

    async def cancel_subscription_now(self, subscription_id: str) -> dict[str, Any]:
        return await self._call(
            "subscription.cancel", stripe.Subscription.cancel, subscription_id
        )

    # Webhooks

    def construct_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify a webhook signature over the raw body and return the parsed event."""
        if not self._webhook_secret:
            raise ProcessorNotConfigured("Stripe webhook secret is not configured")
        if not sig_header:
            raise SignatureError("Missing Stripe-Signature header")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureError("Webhook payload is not valid UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(
                body,
                sig_header,
                self._webhook_secret,
                self._webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureError("Invalid webhook signature") from exc
        try:
            event = json.loads(body)
        except ValueError as exc:
            raise ValidationError("Invalid webhook payload") from exc
        if not isinstance(event, dict):
            raise ValidationError("Invalid webhook payload")
        return event
