"""Exactly-once execution of side-effecting operations keyed by client tokens.

Records are keyed by ``(key, operation)``. The first caller inserts an
in-flight marker (the composite primary key makes the insert atomic), runs
the operation and stores its JSON result or error. Later callers with the
same pair get the stored result or the stored error back. A concurrent
duplicate waits for the first caller up to ``wait_seconds`` and then gets a
409 ``IDEMPOTENCY_IN_PROGRESS``. Every in-flight marker carries a lease; once
it lapses the worker is presumed dead and the next caller with the same
owner and request takes the key over.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from storefront.config import Settings

from api.errors import Conflict, Forbidden, PaymentFlowError, ValidationError

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 255


def request_fingerprint(payload: dict[str, Any]) -> str:
    """Stable SHA-256 of a JSON payload (sorted keys, compact separators)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def _normalize(result: Any) -> Any:
    return json.loads(json.dumps(result, default=str))


def _same_owner(stored: uuid.UUID | None, owner_id: uuid.UUID | None) -> bool:
    if stored is None or owner_id is None:
        return True
    return str(stored) == str(owner_id)


def _lease_lapsed(snapshot) -> bool:
    return snapshot.locked_until is not None and snapshot.locked_until <= datetime.now(UTC)


class IdempotencyStore:
    def __init__(
        self,
        records,
        *,
        retention: timedelta = timedelta(hours=24),
        lease: timedelta = timedelta(seconds=60),
        wait_seconds: float = 5.0,
        poll_interval_seconds: float = 0.25,
    ) -> None:
        self._records = records
        self._retention = retention
        self._lease = lease
        self._wait_seconds = wait_seconds
        self._poll_interval_seconds = poll_interval_seconds

    @classmethod
    def from_settings(cls, records, settings: Settings) -> IdempotencyStore:
        return cls(
            records,
            retention=timedelta(hours=max(1, int(settings.idempotency_retention_hours))),
            lease=timedelta(seconds=max(1, int(settings.idempotency_lease_seconds))),
            wait_seconds=settings.idempotency_wait_seconds,
            poll_interval_seconds=settings.idempotency_poll_interval_seconds,
        )

    async def execute(
        self,
        key: str | None,
        operation: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        owner_id: uuid.UUID | None = None,
        request_hash: str | None = None,
    ) -> Any:
        key = _validate_key(key)
        deadline = time.monotonic() + self._wait_seconds

        while True:
            now = datetime.now(UTC)
            snapshot, created = await self._records.claim(
                key,
                operation,
                owner_id=owner_id,
                request_hash=request_hash,
                expires_at=now + self._retention,
                locked_until=now + self._lease,
            )
            if created:
                return await self._run(key, operation, fn)

            if snapshot is not None:
                if not _same_owner(snapshot.owner_id, owner_id):
                    raise Conflict(
                        "Idempotency key is already in use",
                        code="IDEMPOTENCY_KEY_REUSED",
                    )
                if (
                    request_hash is not None
                    and snapshot.request_hash is not None
                    and snapshot.request_hash != request_hash
                ):
                    raise Conflict(
                        "Idempotency key was used with a different request",
                        code="IDEMPOTENCY_KEY_REUSED",
                    )
                if snapshot.status == "completed":
                    logger.info("Idempotent replay for %s (%s)", operation, key)
                    return snapshot.response
                if snapshot.status == "failed":
                    logger.info("Idempotent replay of stored failure for %s (%s)", operation, key)
                    raise PaymentFlowError.from_dict(snapshot.error or {})

            if time.monotonic() >= deadline:
                raise Conflict(
                    "A request with this idempotency key is still in progress",
                    code="IDEMPOTENCY_IN_PROGRESS",
                    retryable=True,
                )
            await asyncio.sleep(self._poll_interval_seconds)

    async def _run(self, key: str, operation: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            result = await fn()
        except PaymentFlowError as exc:
            await self._records.fail(key, operation, exc.to_dict())
            raise
        except asyncio.CancelledError:
            await self._records.clear(key, operation)
            raise
        except Exception as exc:
            logger.exception("Idempotent operation %s failed unexpectedly (%s)", operation, key)
            await self._records.fail(
                key,
                operation,
                {
                    "code": "INTERNAL_ERROR",
                    "message": f"{operation} failed",
                    "status_code": 500,
                    "retryable": False,
                    "fields": {},
                    "exception": exc.__class__.__name__,
                },
            )
            raise

        stored = _normalize(result)
        await self._records.complete(key, operation, stored)
        return stored

    async def clear(
        self,
        key: str | None,
        operation: str,
        *,
        owner_id: uuid.UUID | None = None,
    ) -> bool:
        """Remove a stored outcome so the caller can run the operation again."""
        key = _validate_key(key)
        snapshot = await self._records.get(key, operation)
        if snapshot is None:
            return False
        if not _same_owner(snapshot.owner_id, owner_id):
            raise Forbidden("Idempotency key belongs to another user")
        if snapshot.status == "in_flight" and not _lease_lapsed(snapshot):
            raise Conflict(
                "A request with this idempotency key is still in progress",
                code="IDEMPOTENCY_IN_PROGRESS",
                retryable=True,
            )
        return await self._records.clear(key, operation)


def _validate_key(key: str | None) -> str:
    normalized = str(key or "").strip()
    if not normalized:
        raise ValidationError(
            "Idempotency key is required",
            fields={"idempotencyKey": "required"},
        )
    if len(normalized) > MAX_KEY_LENGTH:
        raise ValidationError(
            "Idempotency key is too long",
            fields={"idempotencyKey": f"at most {MAX_KEY_LENGTH} characters"},
        )
    return normalized
