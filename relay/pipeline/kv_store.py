"""Small key/value layer over the ``kv_entries`` table.

Keys carry their own namespace prefix (``by-ticket:``, ``dedup:``,
``deleted:thread:``, ``customer:``). Expired rows read as absent and are
reclaimed lazily on write.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay.database import utcnow
from relay.models.kv_entry import KVEntry

logger = logging.getLogger(__name__)


class KeyValueStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def _expiry(self, ttl_seconds: float | None) -> datetime | None:
        if ttl_seconds is None:
            return None
        return self._clock() + timedelta(seconds=ttl_seconds)

    def _live(self):
        now = self._clock()
        return (KVEntry.expires_at.is_(None)) | (KVEntry.expires_at > now)

    async def get(self, key: str) -> str | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(KVEntry.value).where(KVEntry.key == key, self._live())
            )
            return result.scalar_one_or_none()

    async def get_json(self, key: str) -> Any | None:
        raw = await self.get(key)
        return json.loads(raw) if raw is not None else None

    async def get_many(self, keys: list[str]) -> dict[str, str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(KVEntry.key, KVEntry.value).where(KVEntry.key.in_(keys), self._live())
            )
            return {row.key: row.value for row in result}

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        """Upsert ``key``; last writer wins."""
        expires_at = self._expiry(ttl_seconds)
        for _ in range(2):
            async with self._session_factory() as session:
                entry = await session.get(KVEntry, key)
                if entry is None:
                    session.add(KVEntry(key=key, value=value, expires_at=expires_at, created_at=self._clock()))
                else:
                    entry.value = value
                    entry.expires_at = expires_at
                try:
                    await session.commit()
                    return
                except IntegrityError:
                    await session.rollback()
                    logger.debug("Concurrent insert on %s, retrying as update", key)
        raise RuntimeError(f"Could not upsert key {key}")

    async def set_json(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        await self.set(key, json.dumps(value, default=str), ttl_seconds)

    async def insert_all(self, entries: dict[str, str], ttl_seconds: float | None = None) -> None:
        """Insert every entry in one transaction or none of them.

        Raises ``IntegrityError`` when any live key already exists.
        """
        now = self._clock()
        expires_at = self._expiry(ttl_seconds)
        async with self._session_factory() as session:
            await session.execute(
                delete(KVEntry).where(
                    KVEntry.key.in_(list(entries)),
                    KVEntry.expires_at.is_not(None),
                    KVEntry.expires_at <= now,
                )
            )
            for key, value in entries.items():
                session.add(KVEntry(key=key, value=value, expires_at=expires_at, created_at=now))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise

    async def purge_expired(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(KVEntry).where(
                    KVEntry.expires_at.is_not(None),
                    KVEntry.expires_at <= self._clock(),
                )
            )
            await session.commit()
            return result.rowcount or 0
