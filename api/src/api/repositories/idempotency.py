"""Persistence for idempotency records.

Each call opens and commits its own session so an in-flight marker becomes
visible to concurrent requests before the guarded operation starts, and a
stored outcome survives a rollback of the caller's request transaction.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from storefront.models import IdempotencyRecord


@dataclass(frozen=True)
class IdempotencySnapshot:
    key: str
    operation: str
    owner_id: uuid.UUID | None
    status: str
    request_hash: str | None
    response: Any
    error: dict[str, Any] | None
    expires_at: datetime
    locked_until: datetime | None = None


def _snapshot(record: IdempotencyRecord) -> IdempotencySnapshot:
    return IdempotencySnapshot(
        key=record.key,
        operation=record.operation,
        owner_id=record.owner_id,
        status=record.status,
        request_hash=record.request_hash,
        response=record.response,
        error=record.error,
        expires_at=record.expires_at,
        locked_until=record.locked_until,
    )


class IdempotencyRecordRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def claim(
        self,
        key: str,
        operation: str,
        *,
        owner_id: uuid.UUID | None,
        request_hash: str | None,
        expires_at: datetime,
        locked_until: datetime | None = None,
    ) -> tuple[IdempotencySnapshot | None, bool]:
        """Insert an in-flight marker; return (snapshot, created).

        An expired record for the same key is discarded first. An in-flight
        record whose lease has lapsed is taken over by the same owner and
        request. The snapshot is ``None`` only when a concurrent caller
        cleared the record in between.
        """
        now = datetime.now(UTC)
        locked_until = locked_until or expires_at
        claimed = IdempotencySnapshot(
            key=key,
            operation=operation,
            owner_id=owner_id,
            status="in_flight",
            request_hash=request_hash,
            response=None,
            error=None,
            expires_at=expires_at,
            locked_until=locked_until,
        )
        async with self._session_factory() as session:
            await session.execute(
                delete(IdempotencyRecord).where(
                    IdempotencyRecord.key == key,
                    IdempotencyRecord.operation == operation,
                    IdempotencyRecord.expires_at <= now,
                )
            )
            stmt = (
                insert(IdempotencyRecord)
                .values(
                    key=key,
                    operation=operation,
                    owner_id=owner_id,
                    status="in_flight",
                    request_hash=request_hash,
                    created_at=now,
                    locked_until=locked_until,
                    expires_at=expires_at,
                )
                .on_conflict_do_nothing(index_elements=["key", "operation"])
                .returning(IdempotencyRecord.key)
            )
            inserted = (await session.execute(stmt)).scalar_one_or_none()
            if inserted is not None:
                await session.commit()
                return claimed, True

            conditions = [
                IdempotencyRecord.key == key,
                IdempotencyRecord.operation == operation,
                IdempotencyRecord.status == "in_flight",
                IdempotencyRecord.locked_until <= now,
            ]
            if owner_id is not None:
                conditions.append(
                    or_(
                        IdempotencyRecord.owner_id.is_(None),
                        IdempotencyRecord.owner_id == owner_id,
                    )
                )
            if request_hash is not None:
                conditions.append(
                    or_(
                        IdempotencyRecord.request_hash.is_(None),
                        IdempotencyRecord.request_hash == request_hash,
                    )
                )
            taken_over = (
                await session.execute(
                    update(IdempotencyRecord)
                    .where(*conditions)
                    .values(created_at=now, locked_until=locked_until, expires_at=expires_at)
                    .returning(IdempotencyRecord.key)
                )
            ).scalar_one_or_none()
            await session.commit()
            if taken_over is not None:
                return claimed, True
            record = await session.get(IdempotencyRecord, (key, operation))
            return (_snapshot(record) if record else None), False

    async def get(self, key: str, operation: str) -> IdempotencySnapshot | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(IdempotencyRecord).where(
                    IdempotencyRecord.key == key,
                    IdempotencyRecord.operation == operation,
                )
            )
            record = result.scalars().first()
            return _snapshot(record) if record else None

    async def complete(self, key: str, operation: str, response: Any) -> None:
        await self._finish(key, operation, status="completed", response=response, error=None)

    async def fail(self, key: str, operation: str, error: dict[str, Any]) -> None:
        await self._finish(key, operation, status="failed", response=None, error=error)

    async def _finish(
        self,
        key: str,
        operation: str,
        *,
        status: str,
        response: Any,
        error: dict[str, Any] | None,
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(IdempotencyRecord)
                .where(
                    IdempotencyRecord.key == key,
                    IdempotencyRecord.operation == operation,
                    IdempotencyRecord.status == "in_flight",
                )
                .values(
                    status=status,
                    response=response,
                    error=error,
                    completed_at=datetime.now(UTC),
                )
            )
            await session.commit()

    async def clear(self, key: str, operation: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(IdempotencyRecord).where(
                    IdempotencyRecord.key == key,
                    IdempotencyRecord.operation == operation,
                )
            )
            await session.commit()
            return bool(result.rowcount)

    async def purge_expired(self, now: datetime | None = None) -> int:
        cutoff = now or datetime.now(UTC)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= cutoff)
            )
            await session.commit()
            return int(result.rowcount or 0)
