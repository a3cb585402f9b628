"""Subscription endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from storefront.models import User

from api.dependencies import get_current_user, get_idempotency_key, get_subscription_manager
from api.schemas import CancelSubscriptionRequest, CreateSubscriptionRequest
from api.services.subscriptions import SubscriptionLifecycleManager

router = APIRouter()


@router.post("", status_code=201)
async def create_subscription(
    req: CreateSubscriptionRequest,
    user: User = Depends(get_current_user),
    idempotency_key: str | None = Depends(get_idempotency_key),
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    return await manager.create_subscription(
        user,
        price_id=req.price_id,
        payment_method_id=req.payment_method_id,
        idempotency_key=idempotency_key,
        metadata=req.metadata,
    )


@router.get("/user/me")
async def my_subscriptions(
    user: User = Depends(get_current_user),
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    return {"subscriptions": await manager.list_subscriptions(user)}


@router.get("/{subscription_id}")
async def get_subscription(
    subscription_id: str,
    refresh: bool = False,
    user: User = Depends(get_current_user),
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    return await manager.get_subscription(subscription_id, user, refresh=refresh)


@router.post("/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: str,
    req: CancelSubscriptionRequest | None = None,
    user: User = Depends(get_current_user),
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    body = req or CancelSubscriptionRequest()
    return await manager.cancel_subscription(
        subscription_id,
        user,
        cancel_at_period_end=body.cancel_at_period_end,
    )
