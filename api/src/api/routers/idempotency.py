"""Clearing stored idempotent outcomes so a client can retry a failed operation."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from storefront.models import User

from api.dependencies import get_current_user, get_idempotency_key, get_idempotency_store
from api.errors import NotFound
from api.services.checkout import CHECKOUT_COMPLETE_OPERATION
from api.services.idempotency_store import IdempotencyStore
from api.services.subscriptions import CREATE_OPERATION

router = APIRouter()

CLEARABLE_OPERATIONS = frozenset({CREATE_OPERATION, CHECKOUT_COMPLETE_OPERATION})


@router.delete("/{operation}")
async def clear_idempotency_key(
    operation: str,
    user: User = Depends(get_current_user),
    idempotency_key: str | None = Depends(get_idempotency_key),
    store: IdempotencyStore = Depends(get_idempotency_store),
):
    if operation not in CLEARABLE_OPERATIONS:
        raise NotFound("Unknown idempotent operation")
    cleared = await store.clear(idempotency_key, operation, owner_id=user.id)
    return {"cleared": cleared}
