"""Stripe billing reconciliation service.

Webhooks are the primary signal; this pass catches what they miss. It
refreshes every subscription mirror and re-reads payment intents for orders
that have sat in pending/processing longer than the configured grace period.
Orders it settles get the same fulfillment and failure notifications a
webhook would have fired, after the pass is committed.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from storefront.config import Settings

from api.errors import NotFound, PaymentFlowError
from api.services.notifications import DeferredEffect, Notifier, run_deferred
from api.services.order_lifecycle import APPLY, serialize_order, transition_order
from api.services.subscriptions import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)

INTENT_STATUS_TARGETS = {
    "succeeded": "paid",
    "processing": "processing",
    "canceled": "cancelled",
}


def _target_for_intent(intent: dict[str, Any]) -> str | None:
    status = str(intent.get("status") or "")
    if status in INTENT_STATUS_TARGETS:
        return INTENT_STATUS_TARGETS[status]
    if status == "requires_payment_method" and intent.get("last_payment_error"):
        return "failed"
    return None


async def _reconcile_subscriptions(repos, manager: SubscriptionLifecycleManager) -> dict[str, int]:
    scanned = updated = missing = failures = 0
    for sub in await repos.subscriptions.list_all():
        scanned += 1
        try:
            if await manager.refresh_mirror(sub):
                updated += 1
        except NotFound:
            missing += 1
        except PaymentFlowError as exc:
            failures += 1
            logger.warning(
                "Billing reconciliation failed for %s: %s", sub.stripe_subscription_id, exc.message
            )
    return {"scanned": scanned, "updated": updated, "missing": missing, "failures": failures}


async def _reconcile_orders(
    repos, gateway, notifier: Notifier, effects: list[DeferredEffect], *, settings: Settings
) -> dict[str, int]:
    cutoff = datetime.now(UTC) - timedelta(minutes=max(1, settings.order_reconcile_after_minutes))
    scanned = updated = failures = 0
    for order in await repos.orders.list_unsettled(updated_before=cutoff):
        scanned += 1
        try:
            intent = await gateway.retrieve_payment_intent(order.processor_payment_intent_id)
        except PaymentFlowError as exc:
            failures += 1
            logger.warning("Order reconciliation failed for %s: %s", order.id, exc.message)
            continue

        target = _target_for_intent(intent)
        if target is None:
            continue
        values: dict[str, Any] = {"payment_status": intent.get("status")}
        now = datetime.now(UTC)
        if target == "paid":
            values["paid_at"] = now
        elif target == "cancelled":
            values["cancelled_at"] = now
        elif target == "failed":
            last_error = intent.get("last_payment_error") or {}
            values["failure_code"] = last_error.get("decline_code") or last_error.get("code")
            values["failure_message"] = last_error.get("message")
        result = await transition_order(
            repos, order, target, source="reconciliation", values=values
        )
        if result.outcome != APPLY:
            continue
        updated += 1
        if target == "paid":
            effects.append(notifier.order_paid_effect(serialize_order(result.order)))
        elif target == "failed":
            effects.append(notifier.payment_failed_effect(serialize_order(result.order)))
    return {"scanned": scanned, "updated": updated, "failures": failures}


async def run_billing_reconciliation(
    repos,
    gateway,
    *,
    settings: Settings,
    notifier: Notifier,
    trigger: str = "manual",
) -> dict[str, Any]:
    started_at = datetime.now(UTC)
    if not gateway.configured:
        summary = {
            "status": "skipped",
            "reason": "Stripe is not configured",
            "trigger": trigger,
            "started_at": started_at.isoformat(),
        }
        repos.billing_events.record("billing.reconciliation.skipped", metadata=summary)
        return summary

    manager = SubscriptionLifecycleManager(repos, gateway, settings=settings)
    subscriptions = await _reconcile_subscriptions(repos, manager)
    effects: list[DeferredEffect] = []
    orders = await _reconcile_orders(repos, gateway, notifier, effects, settings=settings)

    summary = {
        "status": "ok",
        "trigger": trigger,
        "started_at": started_at.isoformat(),
        "finished_at": datetime.now(UTC).isoformat(),
        "subscriptions": subscriptions,
        "orders": orders,
    }
    repos.billing_events.record("billing.reconciliation.run", metadata=summary)
    logger.info("Billing reconciliation (%s): %s", trigger, summary)
    await repos.commit()
    for effect in effects:
        await run_deferred(effect)
    return summary
