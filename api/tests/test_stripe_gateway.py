"""Tests for the Stripe SDK gateway (request options and error mapping)."""

from __future__ import annotations

import json
import time
from unittest.mock import patch

import pytest
import stripe
from api.errors import (
    NotFound,
    PaymentDeclined,
    ProcessorNotConfigured,
    SignatureError,
    UpstreamError,
    UpstreamTimeout,
)
from api.services.stripe_gateway import StripeGateway

from fakes import WEBHOOK_SECRET, sign_payload


def _gateway(**kwargs) -> StripeGateway:
    kwargs.setdefault("secret_key", "sk_test_123")
    kwargs.setdefault("webhook_secret", WEBHOOK_SECRET)
    kwargs.setdefault("api_version", "2023-10-16")
    return StripeGateway(**kwargs)


@pytest.mark.asyncio
async def test_create_payment_intent_passes_key_and_idempotency_key():
    created = {"id": "pi_123", "client_secret": "secret_abc", "status": "requires_payment_method"}
    with patch("stripe.PaymentIntent.create", return_value=created) as create:
        intent = await _gateway().create_payment_intent(
            amount=9999,
            currency="usd",
            metadata={"order_id": "o-1"},
            receipt_email="buyer@shop.test",
            idempotency_key="order:o-1:payment_intent",
        )

    assert intent["id"] == "pi_123"
    kwargs = create.call_args.kwargs
    assert kwargs["amount"] == 9999
    assert kwargs["currency"] == "usd"
    assert kwargs["api_key"] == "sk_test_123"
    assert kwargs["stripe_version"] == "2023-10-16"
    assert kwargs["idempotency_key"] == "order:o-1:payment_intent"
    assert kwargs["receipt_email"] == "buyer@shop.test"


@pytest.mark.asyncio
async def test_checkout_session_includes_discount_and_metadata():
    with patch("stripe.checkout.Session.create", return_value={"id": "cs_1"}) as create:
        await _gateway().create_checkout_session(
            line_items=[{"price_data": {}, "quantity": 1}],
            success_url="https://shop.test/ok",
            cancel_url="https://shop.test/cart",
            metadata={"user_id": "u-1"},
            coupon_id="co_1",
        )

    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "payment"
    assert kwargs["discounts"] == [{"coupon": "co_1"}]
    assert kwargs["payment_intent_data"] == {"metadata": {"user_id": "u-1"}}
    assert "idempotency_key" not in kwargs


@pytest.mark.asyncio
async def test_card_error_maps_to_payment_declined():
    error = stripe.CardError("Your card was declined.", "card", "card_declined")
    with patch("stripe.PaymentIntent.create", side_effect=error):
        with pytest.raises(PaymentDeclined) as exc_info:
            await _gateway().create_payment_intent(
                amount=100,
                currency="usd",
                metadata={},
                receipt_email=None,
                idempotency_key="k",
            )

    assert exc_info.value.status_code == 402
    assert exc_info.value.fields["decline_code"] == "card_declined"


@pytest.mark.asyncio
async def test_connection_error_maps_to_upstream_timeout():
    with patch(
        "stripe.PaymentIntent.retrieve", side_effect=stripe.APIConnectionError("network down")
    ):
        with pytest.raises(UpstreamTimeout) as exc_info:
            await _gateway().retrieve_payment_intent("pi_1")

    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_missing_object_maps_to_not_found():
    error = stripe.InvalidRequestError("No such payment_intent", "id", http_status=404)
    with patch("stripe.PaymentIntent.retrieve", side_effect=error):
        with pytest.raises(NotFound):
            await _gateway().retrieve_payment_intent("pi_missing")


@pytest.mark.asyncio
async def test_invalid_request_maps_to_upstream_error():
    error = stripe.InvalidRequestError("Amount must be positive", "amount", http_status=400)
    with patch("stripe.Refund.create", side_effect=error):
        with pytest.raises(UpstreamError) as exc_info:
            await _gateway().create_refund(
                payment_intent_id="pi_1",
                amount=-1,
                reason="requested_by_customer",
                metadata={},
                idempotency_key="k",
            )

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_slow_call_times_out():
    def _slow(*args, **kwargs):
        time.sleep(0.3)
        return {"id": "pi_1"}

    with patch("stripe.PaymentIntent.retrieve", side_effect=_slow):
        with pytest.raises(UpstreamTimeout):
            await _gateway(timeout_seconds=0.05).retrieve_payment_intent("pi_1")


@pytest.mark.asyncio
async def test_unconfigured_gateway_refuses_calls():
    gateway = _gateway(secret_key="")

    assert gateway.configured is False
    with pytest.raises(ProcessorNotConfigured):
        await gateway.retrieve_subscription("sub_1")


@pytest.mark.asyncio
async def test_find_checkout_session_for_intent():
    with patch(
        "stripe.checkout.Session.list", return_value={"data": [{"id": "cs_9"}]}
    ) as list_sessions:
        session = await _gateway().find_checkout_session_for_intent("pi_9")

    assert session == {"id": "cs_9"}
    assert list_sessions.call_args.kwargs["payment_intent"] == "pi_9"


def test_construct_event_verifies_signature():
    payload = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}})

    event = _gateway().construct_event(payload.encode("utf-8"), sign_payload(payload))

    assert event["id"] == "evt_1"


def test_construct_event_rejects_bad_signature():
    payload = json.dumps({"id": "evt_1"})

    with pytest.raises(SignatureError):
        _gateway().construct_event(payload.encode("utf-8"), "t=1,v1=deadbeef")
    with pytest.raises(SignatureError):
        _gateway().construct_event(b"\xff\xfe", sign_payload("x"))


def test_construct_event_requires_webhook_secret():
    with pytest.raises(ProcessorNotConfigured):
        _gateway(webhook_secret="").construct_event(b"{}", "t=1,v1=abc")
