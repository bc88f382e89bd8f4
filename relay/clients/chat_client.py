"""Chat platform REST client (bot token, channel/thread endpoints)."""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from pydantic import BaseModel

from relay.config import settings
from relay.errors import PermanentPlatformError, raise_for_platform_status

logger = logging.getLogger(__name__)

PLATFORM = "chat"
PUBLIC_THREAD = 11


class ChatMessage(BaseModel):
    id: str
    content: str = ""


class ChatClient:
    """Send, fetch and archive thread messages via the chat REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        bot_token: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        base_url = base_url or settings.chat_api_base_url
        bot_token = bot_token or settings.chat_bot_token
        if not base_url or not bot_token:
            raise RuntimeError("Chat not configured, set RELAY_CHAT_API_BASE_URL and RELAY_CHAT_BOT_TOKEN")
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bot {bot_token}",
            "Content-Type": "application/json",
        }
        self._client = client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        resp = await self._client.request(method, f"{self._base_url}{path}", headers=self._headers, **kwargs)
        raise_for_platform_status(resp, PLATFORM)
        return resp

    async def send_message(
        self,
        thread_id: str,
        content: str,
        reply_to: Optional[str] = None,
        embeds: list[dict] | None = None,
    ) -> str:
        """Post ``content`` to a thread and return the new message id."""
        payload: dict = {"content": content}
        if reply_to:
            payload["message_reference"] = {"message_id": reply_to, "fail_if_not_exists": False}
        if embeds:
            payload["embeds"] = embeds
        resp = await self._request("POST", f"/channels/{thread_id}/messages", json=payload)
        message_id = str(resp.json().get("id") or "")
        logger.info("Chat message %s sent to thread %s", message_id, thread_id)
        return message_id

    async def create_thread(self, parent_channel_id: str, name: str) -> str:
        resp = await self._request(
            "POST",
            f"/channels/{parent_channel_id}/threads",
            json={"name": name, "type": PUBLIC_THREAD, "auto_archive_duration": 1440},
        )
        thread_id = resp.json().get("id")
        if not thread_id:
            raise PermanentPlatformError(
                "Thread was created but the response has no id",
                details={"platform": PLATFORM, "parent_channel_id": parent_channel_id},
            )
        logger.info("Chat thread %s created under %s", thread_id, parent_channel_id)
        return str(thread_id)

    async def archive_thread(self, thread_id: str) -> None:
        await self._request("PATCH", f"/channels/{thread_id}", json={"archived": True})
        logger.info("Chat thread %s archived", thread_id)

    async def fetch_recent_messages(self, thread_id: str, limit: int = 10) -> list[ChatMessage]:
        resp = await self._request("GET", f"/channels/{thread_id}/messages", params={"limit": limit})
        return [
            ChatMessage(id=str(item["id"]), content=item.get("content") or "")
            for item in resp.json()
            if isinstance(item, dict) and item.get("id")
        ]

    async def close(self) -> None:
        await self._client.aclose()
