"""Recurring subscriptions mirrored from Stripe.

The local row is a read-through cache of processor state. Reads older than
``subscription_staleness_seconds`` (or explicitly refreshed) go back to
Stripe; webhook deliveries older than the newest applied state are ignored.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from storefront.config import Settings
from storefront.models import SUBSCRIPTION_STATUSES, Subscription

from api.errors import Forbidden, NotFound, PaymentFlowError, ValidationError
from api.services.idempotency_store import request_fingerprint
from api.services.validation import parse_uuid

logger = logging.getLogger(__name__)

CREATE_OPERATION = "subscription.create"
ENDED_STATUSES = ("canceled", "incomplete_expired")


def _as_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OSError):
        return None


def _extract_price_id(stripe_sub: dict[str, Any]) -> str | None:
    items = (stripe_sub.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


def _extract_interval(stripe_sub: dict[str, Any]) -> str | None:
    items = (stripe_sub.get("items") or {}).get("data") or []
    if not items:
        return None
    item = items[0]
    recurring = (item.get("price") or {}).get("recurring") or {}
    return recurring.get("interval") or (item.get("plan") or {}).get("interval")


def _extract_client_secret(stripe_sub: dict[str, Any]) -> str | None:
    invoice = stripe_sub.get("latest_invoice")
    if not isinstance(invoice, dict):
        return None
    intent = invoice.get("payment_intent")
    if not isinstance(intent, dict):
        return None
    return intent.get("client_secret")


def _customer_id(stripe_sub: dict[str, Any]) -> str:
    customer = stripe_sub.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return str(customer or "")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_subscription(sub: Subscription, *, stale: bool | None = None) -> dict[str, Any]:
    payload = {
        "id": sub.stripe_subscription_id,
        "userId": str(sub.user_id),
        "customerId": sub.stripe_customer_id,
        "priceId": sub.stripe_price_id,
        "status": sub.status,
        "billingInterval": sub.billing_interval,
        "currentPeriodStart": _iso(sub.current_period_start),
        "currentPeriodEnd": _iso(sub.current_period_end),
        "cancelAtPeriodEnd": sub.cancel_at_period_end,
        "canceledAt": _iso(sub.canceled_at),
        "syncedAt": _iso(sub.synced_at),
    }
    if stale is not None:
        payload["stale"] = stale
    return payload


class SubscriptionLifecycleManager:
    def __init__(self, repos, gateway, store=None, *, settings: Settings) -> None:
        self._repos = repos
        self._gateway = gateway
        self._store = store
        self._settings = settings

    async def create_subscription(
        self,
        user,
        *,
        price_id: str,
        payment_method_id: str | None,
        idempotency_key: str | None,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Create a processor subscription once per idempotency key."""
        price_id = str(price_id or "").strip()
        if not price_id:
            raise ValidationError("priceId is required", fields={"priceId": "required"})
        extra = {str(k): str(v) for k, v in (metadata or {}).items()}
        request_hash = request_fingerprint(
            {"priceId": price_id, "paymentMethodId": payment_method_id, "metadata": extra}
        )

        async def _create() -> dict[str, Any]:
            return await self._create(
                user,
                price_id=price_id,
                payment_method_id=payment_method_id,
                metadata=extra,
                idempotency_key=str(idempotency_key).strip(),
            )

        return await self._store.execute(
            idempotency_key,
            CREATE_OPERATION,
            _create,
            owner_id=user.id,
            request_hash=request_hash,
        )

    async def _create(
        self,
        user,
        *,
        price_id: str,
        payment_method_id: str | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> dict[str, Any]:
        customer_id = await self.ensure_customer(user)
        stripe_sub = await self._gateway.create_subscription(
            customer_id=customer_id,
            price_id=price_id,
            payment_method_id=payment_method_id,
            metadata={**metadata, "user_id": str(user.id)},
            idempotency_key=f"subscription:{user.id}:{idempotency_key}",
        )
        mirror = await self._repos.subscriptions.get_by_stripe_id(stripe_sub["id"])
        if mirror is None:
            mirror = await self._new_mirror(stripe_sub, user_id=user.id)
        await self._apply_processor_state(mirror, stripe_sub)
        self._repos.billing_events.record(
            "subscription.created",
            stripe_subscription_id=mirror.stripe_subscription_id,
            metadata={"user_id": str(user.id), "price_id": price_id, "status": mirror.status},
        )
        payload = {
            "subscription": serialize_subscription(mirror),
            "clientSecret": _extract_client_secret(stripe_sub),
        }
        await self._repos.commit()
        logger.info("Subscription %s created for user %s", mirror.stripe_subscription_id, user.id)
        return payload

    async def ensure_customer(self, user) -> str:
        """Return the user's processor customer, creating and storing it once."""
        current = await self._repos.users.get(user.id)
        if current is None:
            raise NotFound("User not found")
        if current.stripe_customer_id:
            return current.stripe_customer_id

        customer = await self._gateway.create_customer(
            email=current.email,
            name=current.display_name,
            metadata={"user_id": str(current.id)},
            idempotency_key=f"customer:{current.id}",
        )
        customer_id = str(customer["id"])
        if await self._repos.users.set_stripe_customer_id(current.id, customer_id):
            return customer_id

        winner = await self._repos.users.get(current.id)
        if winner is not None and winner.stripe_customer_id:
            logger.warning(
                "User %s already mapped to customer %s; not storing %s",
                current.id,
                winner.stripe_customer_id,
                customer_id,
            )
            return winner.stripe_customer_id
        return customer_id

    async def _load_owned(self, subscription_id: str, user) -> Subscription:
        mirror = await self._repos.subscriptions.get_by_stripe_id(str(subscription_id))
        if mirror is None:
            raise NotFound("Subscription not found")
        if str(mirror.user_id) != str(user.id):
            raise Forbidden("Subscription belongs to another user")
        return mirror

    async def cancel_subscription(
        self,
        subscription_id: str,
        user,
        *,
        cancel_at_period_end: bool = True,
    ) -> dict[str, Any]:
        mirror = await self._load_owned(subscription_id, user)
        if mirror.status in ENDED_STATUSES:
            return serialize_subscription(mirror)

        if cancel_at_period_end:
            stripe_sub = await self._gateway.schedule_subscription_cancel(
                mirror.stripe_subscription_id
            )
        else:
            stripe_sub = await self._gateway.cancel_subscription_now(mirror.stripe_subscription_id)
        await self._apply_processor_state(mirror, stripe_sub)
        self._repos.billing_events.record(
            "subscription.cancel_requested",
            stripe_subscription_id=mirror.stripe_subscription_id,
            metadata={
                "user_id": str(user.id),
                "cancel_at_period_end": cancel_at_period_end,
                "status": mirror.status,
            },
        )
        return serialize_subscription(mirror)

    async def get_subscription(
        self,
        subscription_id: str,
        user,
        *,
        refresh: bool = False,
    ) -> dict[str, Any]:
        mirror = await self._load_owned(subscription_id, user)
        if not refresh and not self._is_stale(mirror):
            return serialize_subscription(mirror, stale=False)
        try:
            await self.refresh_mirror(mirror)
        except PaymentFlowError as exc:
            logger.warning(
                "Subscription %s refresh failed (%s); serving cached state",
                mirror.stripe_subscription_id,
                exc.code,
            )
            return serialize_subscription(mirror, stale=True)
        return serialize_subscription(mirror, stale=False)

    async def list_subscriptions(self, user) -> list[dict[str, Any]]:
        rows = await self._repos.subscriptions.list_for_user(user.id)
        return [serialize_subscription(row, stale=self._is_stale(row)) for row in rows]

    async def refresh_mirror(self, mirror: Subscription) -> bool:
        stripe_sub = await self._gateway.retrieve_subscription(mirror.stripe_subscription_id)
        return await self._apply_processor_state(mirror, stripe_sub)

    def _is_stale(self, mirror: Subscription) -> bool:
        if mirror.synced_at is None:
            return True
        tolerance = timedelta(seconds=max(0, self._settings.subscription_staleness_seconds))
        return datetime.now(UTC) - mirror.synced_at > tolerance

    async def sync_from_processor(
        self,
        stripe_sub: dict[str, Any],
        *,
        event_created: int | None = None,
    ) -> Subscription | None:
        """Upsert the mirror from a webhook payload, ignoring out-of-date deliveries."""
        event_time = _as_datetime(event_created)
        mirror = await self._repos.subscriptions.get_by_stripe_id(str(stripe_sub["id"]))
        if mirror is not None and self._is_outdated(mirror, event_time):
            logger.info(
                "Ignoring out-of-date event for subscription %s", mirror.stripe_subscription_id
            )
            return mirror

        if mirror is None:
            user_id = await self._resolve_user(stripe_sub)
            if user_id is None:
                logger.warning(
                    "Cannot find user for Stripe customer %s", _customer_id(stripe_sub)
                )
                return None
            mirror = await self._new_mirror(stripe_sub, user_id=user_id)

        await self._apply_processor_state(mirror, stripe_sub, event_time=event_time)
        return mirror

    async def apply_invoice_outcome(
        self,
        stripe_subscription_id: str | None,
        *,
        paid: bool,
        event_created: int | None = None,
    ) -> Subscription | None:
        if not stripe_subscription_id:
            return None
        mirror = await self._repos.subscriptions.get_by_stripe_id(str(stripe_subscription_id))
        if mirror is None:
            logger.info("Invoice event for unknown subscription %s", stripe_subscription_id)
            return None
        event_time = _as_datetime(event_created)
        if self._is_outdated(mirror, event_time):
            logger.info("Ignoring out-of-date invoice event for %s", stripe_subscription_id)
            return mirror

        next_status = mirror.status
        if not paid and mirror.status not in ENDED_STATUSES:
            next_status = "past_due"
        elif paid and mirror.status in ("past_due", "incomplete", "unpaid"):
            next_status = "active"
        now = datetime.now(UTC)
        if next_status != mirror.status:
            logger.info(
                "Subscription %s %s -> %s (invoice)",
                stripe_subscription_id,
                mirror.status,
                next_status,
            )
            mirror.status = next_status
            mirror.updated_at = now
        if event_time is not None:
            mirror.last_event_at = event_time
        await self._repos.subscriptions.save(mirror)
        return mirror

    @staticmethod
    def _is_outdated(mirror: Subscription, event_time: datetime | None) -> bool:
        return (
            event_time is not None
            and mirror.last_event_at is not None
            and event_time < mirror.last_event_at
        )

    async def _resolve_user(self, stripe_sub: dict[str, Any]) -> uuid.UUID | None:
        meta_user = (stripe_sub.get("metadata") or {}).get("user_id")
        if meta_user:
            try:
                user_id = parse_uuid(meta_user, field="userId")
            except ValidationError:
                user_id = None
            if user_id is not None and await self._repos.users.get(user_id) is not None:
                return user_id
        customer_id = _customer_id(stripe_sub)
        if customer_id:
            return await self._repos.subscriptions.find_user_for_customer(customer_id)
        return None

    async def _new_mirror(self, stripe_sub: dict[str, Any], *, user_id: uuid.UUID) -> Subscription:
        now = datetime.now(UTC)
        mirror = Subscription(
            id=uuid.uuid4(),
            user_id=user_id,
            stripe_customer_id=_customer_id(stripe_sub),
            stripe_subscription_id=str(stripe_sub["id"]),
            status="incomplete",
            cancel_at_period_end=False,
            created_at=now,
            updated_at=now,
        )
        return await self._repos.subscriptions.add(mirror)

    async def _apply_processor_state(
        self,
        mirror: Subscription,
        stripe_sub: dict[str, Any],
        *,
        event_time: datetime | None = None,
    ) -> bool:
        """Copy processor fields onto the mirror; returns True when anything changed."""
        changes: dict[str, Any] = {
            "stripe_price_id": _extract_price_id(stripe_sub) or mirror.stripe_price_id,
            "billing_interval": _extract_interval(stripe_sub) or mirror.billing_interval,
            "current_period_start": _as_datetime(stripe_sub.get("current_period_start")),
            "current_period_end": _as_datetime(stripe_sub.get("current_period_end")),
            "cancel_at_period_end": bool(stripe_sub.get("cancel_at_period_end", False)),
            "canceled_at": _as_datetime(stripe_sub.get("canceled_at")),
        }
        status = str(stripe_sub.get("status") or "").strip()
        if status in SUBSCRIPTION_STATUSES:
            changes["status"] = status
        elif status:
            logger.warning(
                "Unknown subscription status %r for %s", status, mirror.stripe_subscription_id
            )
        customer_id = _customer_id(stripe_sub)
        if customer_id:
            changes["stripe_customer_id"] = customer_id

        changed = False
        for field, value in changes.items():
            if getattr(mirror, field) != value:
                setattr(mirror, field, value)
                changed = True

        now = datetime.now(UTC)
        if changed:
            mirror.updated_at = now
        if event_time is not None and (
            mirror.last_event_at is None or event_time > mirror.last_event_at
        ):
            mirror.last_event_at = event_time
        mirror.synced_at = now
        await self._repos.subscriptions.save(mirror)
        return changed
