"""Remembers recent message deletions per chat thread.

Used as a recency guard: right after a user deletes something in a thread,
an incoming relay for that thread is more likely an echo of stale content
than a new message.
"""

import logging
from datetime import datetime, timedelta

from relay.pipeline.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

DELETED_PREFIX = "deleted:thread:"
KEEP_LAST = 10
RETENTION_SECONDS = 60


class DeletionTracker:
    def __init__(self, kv: KeyValueStore):
        self._kv = kv

    async def record(self, thread_id: str, message_id: str | None = None) -> None:
        key = DELETED_PREFIX + thread_id
        now = self._kv.now()
        entries = await self._kv.get_json(key) or []
        cutoff = now - timedelta(seconds=RETENTION_SECONDS)
        entries = [e for e in entries if datetime.fromisoformat(e["deleted_at"]) > cutoff]
        entries.append({"message_id": message_id, "deleted_at": now.isoformat()})
        await self._kv.set_json(key, entries[-KEEP_LAST:], ttl_seconds=RETENTION_SECONDS)
        logger.debug("Recorded deletion of %s in thread %s", message_id, thread_id)

    async def recently_deleted(self, thread_id: str, window_seconds: float = 10.0) -> bool:
        entries = await self._kv.get_json(DELETED_PREFIX + thread_id) or []
        cutoff = self._kv.now() - timedelta(seconds=window_seconds)
        return any(datetime.fromisoformat(e["deleted_at"]) > cutoff for e in entries)
