"""Short-lived content fingerprints that stop re-delivery of the same event.

A fingerprint is written in the same transaction as the queue row it
protects, so a duplicate webhook either sees the fingerprint or loses the
insert race on it.
"""

from __future__ import annotations

import base64
import hashlib
import json
import re
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from relay.database import utcnow
from relay.models.kv_entry import KVEntry
from relay.schemas.events import (
    AttachmentPayload,
    Event,
    MessagePayload,
    StatusChangedPayload,
    ThreadCreatedPayload,
)

DEDUP_PREFIX = "dedup:"

_WHITESPACE = re.compile(r"\s+")


def _content_of(event: Event) -> str:
    payload = event.payload
    if isinstance(payload, (MessagePayload, AttachmentPayload)):
        names = ",".join(a.name for a in payload.attachments)
        return f"{payload.text}|{names}" if names else payload.text
    if isinstance(payload, ThreadCreatedPayload):
        return f"{payload.title}|{payload.text}"
    if isinstance(payload, StatusChangedPayload):
        return f"{payload.status or ''}|{','.join(payload.tags)}"
    return ""


def normalized_prefix(text: str, length: int) -> str:
    return _WHITESPACE.sub(" ", text).strip()[:length]


def fingerprint_key(event: Event, content_prefix: int = 100) -> str:
    """``dedup:{base64(sha256(platform, type, conversation, content prefix))}``"""
    material = json.dumps(
        [
            event.source_platform.value,
            event.event_type.value,
            event.conversation_id,
            normalized_prefix(_content_of(event), content_prefix),
        ],
        ensure_ascii=False,
    )
    digest = hashlib.sha256(material.encode("utf-8")).digest()
    return DEDUP_PREFIX + base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class DeduplicationIndex:
    def __init__(
        self,
        ttl_seconds: int = 300,
        content_prefix: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.content_prefix = content_prefix
        self._clock = clock

    def key_for(self, event: Event) -> str:
        return fingerprint_key(event, self.content_prefix)

    async def lookup(self, session: AsyncSession, key: str) -> str | None:
        """Return the event id that owns ``key`` if the fingerprint is live."""
        result = await session.execute(
            select(KVEntry.value).where(KVEntry.key == key, KVEntry.expires_at > self._clock())
        )
        return result.scalar_one_or_none()

    async def stage(self, session: AsyncSession, key: str, event_id: str) -> None:
        """Add the fingerprint to ``session``; the caller's commit makes it visible.

        An expired fingerprint with the same key is cleared first. A live one
        makes the caller's commit fail with ``IntegrityError``.
        """
        now = self._clock()
        await session.execute(
            delete(KVEntry).where(KVEntry.key == key, KVEntry.expires_at <= now)
        )
        session.add(
            KVEntry(
                key=key,
                value=event_id,
                expires_at=now + timedelta(seconds=self.ttl_seconds),
                created_at=now,
            )
        )
