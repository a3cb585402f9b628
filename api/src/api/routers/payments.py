"""Payment intent, checkout and webhook endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from storefront.models import User

from api.dependencies import (
    get_checkout_manager,
    get_current_user,
    get_notifier,
    get_payment_intent_manager,
    get_webhook_processor,
)
from api.errors import SignatureError
from api.schemas import (
    CheckoutSuccessRequest,
    CreateCheckoutSessionRequest,
    CreatePaymentIntentRequest,
    RefundRequest,
)
from api.services.checkout import CheckoutSessionManager
from api.services.notifications import Notifier, run_deferred
from api.services.payment_intents import PaymentIntentManager
from api.services.validation import parse_uuid
from api.services.webhook_processor import WebhookEventProcessor

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/create-payment-intent")
async def create_payment_intent(
    req: CreatePaymentIntentRequest,
    user: User = Depends(get_current_user),
    manager: PaymentIntentManager = Depends(get_payment_intent_manager),
):
    order_id = parse_uuid(req.order_id, field="orderId")
    return await manager.create_or_get_payment_intent(order_id, user)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: WebhookEventProcessor = Depends(get_webhook_processor),
):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    try:
        outcome = await processor.handle(payload, sig_header)
    except SignatureError:
        logger.warning("Rejected Stripe webhook with invalid signature")
        raise
    for effect in outcome.deferred:
        background_tasks.add_task(run_deferred, effect)
    return outcome.ack()


@router.get("/order/{order_id}/status")
async def payment_status(
    order_id: str,
    user: User = Depends(get_current_user),
    manager: PaymentIntentManager = Depends(get_payment_intent_manager),
):
    return await manager.get_payment_status(parse_uuid(order_id, field="orderId"), user)


@router.post("/create-checkout-session")
async def create_checkout_session(
    req: CreateCheckoutSessionRequest,
    user: User = Depends(get_current_user),
    manager: CheckoutSessionManager = Depends(get_checkout_manager),
):
    return await manager.create_checkout_session(
        parse_uuid(req.cart_id, field="cartId"),
        user,
        success_url=req.success_url,
        cancel_url=req.cancel_url,
        coupon_code=req.coupon_code,
    )


@router.post("/checkout-success")
async def checkout_success(
    req: CheckoutSuccessRequest,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    manager: CheckoutSessionManager = Depends(get_checkout_manager),
    notifier: Notifier = Depends(get_notifier),
):
    payload, created = await manager.complete_checkout(req.session_id, user)
    if created:
        background_tasks.add_task(run_deferred, notifier.order_paid_effect(payload["order"]))
    return payload


@router.post("/order/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    user: User = Depends(get_current_user),
    manager: PaymentIntentManager = Depends(get_payment_intent_manager),
):
    return {"order": await manager.cancel_order(parse_uuid(order_id, field="orderId"), user)}


@router.post("/order/{order_id}/refund")
async def refund_order(
    order_id: str,
    req: RefundRequest,
    user: User = Depends(get_current_user),
    manager: PaymentIntentManager = Depends(get_payment_intent_manager),
):
    order = await manager.refund_order(
        parse_uuid(order_id, field="orderId"),
        user,
        amount=req.amount,
        reason=req.reason,
    )
    return {"order": order}
