"""Request bodies for payment endpoints (camelCase on the wire)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreatePaymentIntentRequest(CamelModel):
    order_id: str


class CreateCheckoutSessionRequest(CamelModel):
    cart_id: str
    coupon_code: str | None = Field(default=None, max_length=32)
    success_url: str
    cancel_url: str


class CheckoutSuccessRequest(CamelModel):
    session_id: str = Field(max_length=255)


class RefundRequest(CamelModel):
    amount: int | None = Field(default=None, gt=0)
    reason: str = "requested_by_customer"


class CreateSubscriptionRequest(CamelModel):
    price_id: str = Field(max_length=255)
    payment_method_id: str | None = Field(default=None, max_length=255)
    metadata: dict[str, str] = Field(default_factory=dict)


class CancelSubscriptionRequest(CamelModel):
    cancel_at_period_end: bool = True
