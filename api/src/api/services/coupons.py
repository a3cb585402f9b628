"""Coupon helpers for checkout discounts and post-purchase gift coupons."""

from __future__ import annotations

import re
import secrets
import string
import uuid
from datetime import UTC, datetime, timedelta

from storefront.config import Settings
from storefront.models import Coupon

from api.errors import ValidationError

CODE_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9_-]{2,31}$")
GIFT_PREFIX = "GIFT"
_GIFT_ALPHABET = string.ascii_uppercase + string.digits


def normalize_coupon_code(raw: str) -> str:
    """Normalize and validate a user-facing coupon code."""
    code = raw.strip().upper()
    if not CODE_PATTERN.fullmatch(code):
        raise ValueError("Code must be 3-32 chars and only use letters, numbers, '-' or '_'")
    return code


def coupon_rejection(
    coupon: Coupon,
    *,
    user_id: uuid.UUID,
    subtotal: int,
    now: datetime | None = None,
) -> str | None:
    """Return why the coupon cannot be applied, or None when it is usable."""
    current = now or datetime.now(UTC)
    if not coupon.is_active:
        return "Coupon is no longer active"
    if coupon.expires_at and coupon.expires_at <= current:
        return "Coupon has expired"
    if coupon.user_id is not None and str(coupon.user_id) != str(user_id):
        return "Coupon is invalid"
    if subtotal < int(coupon.min_purchase_amount or 0):
        return "Order total does not meet the coupon minimum"
    return None


async def resolve_coupon(
    repos,
    raw_code: str,
    *,
    user_id: uuid.UUID,
    subtotal: int,
) -> Coupon:
    """Look up a coupon that applies to this purchase or raise ``ValidationError``."""
    try:
        code = normalize_coupon_code(raw_code)
    except ValueError as exc:
        raise ValidationError("Coupon is invalid", fields={"couponCode": str(exc)})

    coupon = await repos.coupons.get_by_code(code)
    if coupon is None:
        raise ValidationError("Coupon is invalid", fields={"couponCode": "not found"})
    reason = coupon_rejection(coupon, user_id=user_id, subtotal=subtotal)
    if reason:
        raise ValidationError(reason, fields={"couponCode": reason})
    return coupon


def discount_for(subtotal: int, percentage: int) -> int:
    """Discount in minor units, rounded down so totals never go below the coupon rate."""
    bounded = min(max(int(percentage), 1), 100)
    return subtotal * bounded // 100


def generate_gift_code() -> str:
    return GIFT_PREFIX + "".join(secrets.choice(_GIFT_ALPHABET) for _ in range(6))


async def issue_gift_coupon(repos, *, user_id: uuid.UUID, settings: Settings) -> Coupon:
    return await repos.coupons.replace_gift_coupon(
        user_id=user_id,
        code=generate_gift_code(),
        discount_percentage=settings.gift_coupon_percentage,
        expires_at=datetime.now(UTC) + timedelta(days=max(1, settings.gift_coupon_valid_days)),
    )
