"""SQLAlchemy ORM models for the storefront payment core."""

from storefront.models.base import Base
from storefront.models.user import User
from storefront.models.cart import Cart, CartItem
from storefront.models.coupon import Coupon
from storefront.models.order import ORDER_STATUSES, Order, OrderItem
from storefront.models.subscription import SUBSCRIPTION_STATUSES, Subscription
from storefront.models.idempotency_record import IdempotencyRecord
from storefront.models.stripe_webhook_event import StripeWebhookEvent
from storefront.models.billing_event import BillingEvent

__all__ = [
    "Base",
    "User",
    "Cart",
    "CartItem",
    "Coupon",
    "ORDER_STATUSES",
    "Order",
    "OrderItem",
    "SUBSCRIPTION_STATUSES",
    "Subscription",
    "IdempotencyRecord",
    "StripeWebhookEvent",
    "BillingEvent",
]
