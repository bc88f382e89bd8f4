"""Ticketing platform REST client (API key auth)."""

from __future__ import annotations

import logging

import httpx

from relay.config import settings
from relay.errors import PermanentPlatformError, raise_for_platform_status
from relay.pipeline.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

PLATFORM = "ticketing"
CUSTOMER_PREFIX = "customer:"
# Relayed messages are tagged so their webhooks can be recognised as echoes.
MESSAGE_SOURCE = "chat"


class TicketingClient:
    """Create tickets, post messages and resolve customers."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        channel_id: str | None = None,
        cache: KeyValueStore | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        base_url = base_url or settings.ticketing_api_base_url
        api_key = api_key or settings.ticketing_api_key
        if not base_url or not api_key:
            raise RuntimeError("Ticketing not configured, set RELAY_TICKETING_API_BASE_URL and RELAY_TICKETING_API_KEY")
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "X-API-KEY": api_key,
            "Content-Type": "application/json",
        }
        self._channel_id = channel_id if channel_id is not None else settings.ticketing_channel_id
        self._cache = cache
        self._client = client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    async def _post(self, path: str, payload: dict) -> dict:
        resp = await self._client.post(f"{self._base_url}{path}", json=payload, headers=self._headers)
        raise_for_platform_status(resp, PLATFORM)
        return resp.json() if resp.content else {}

    async def create_ticket(
        self,
        title: str,
        content: str,
        customer_id: str | None = None,
        on_behalf_of: dict | None = None,
    ) -> dict:
        """Open a conversation and return ``{"id", "friendly_id"}``.

        Both ids are required; a response without them is a permanent failure.
        """
        payload = {
            "type": "slack",
            "title": title,
            "markdown": content,
            "status": "open",
            "channelId": self._channel_id.strip() if self._channel_id else None,
            "customerId": customer_id,
            "onBehalfOf": on_behalf_of,
        }
        data = await self._post("/conversations", payload)
        if not data.get("id") or not data.get("friendlyId"):
            logger.error("Ticket response missing id/friendlyId: %s", data)
            raise PermanentPlatformError(
                "Ticket was created but the response is missing required fields",
                details={"platform": PLATFORM, "response": data},
            )
        logger.info("Created ticket %s (%s)", data["friendlyId"], data["id"])
        return {"id": str(data["id"]), "friendly_id": str(data["friendlyId"])}

    async def post_message(self, ticket_id: str, content: str, on_behalf_of: dict | None = None) -> dict:
        payload = {
            "markdown": content,
            "onBehalfOf": on_behalf_of,
            "metadata": {"source": MESSAGE_SOURCE},
        }
        data = await self._post(f"/conversations/{ticket_id}/messages", payload)
        logger.info("Posted message to ticket %s", ticket_id)
        return data

    async def get_or_create_customer(self, identity: str, email: str = "", name: str = "") -> str:
        """Return the customer id for a chat identity, creating it on first use."""
        key = CUSTOMER_PREFIX + identity
        if self._cache is not None:
            cached = await self._cache.get_json(key)
            if cached and cached.get("customer_id"):
                return cached["customer_id"]

        data = await self._post("/customers", {"name": name or identity})
        customer_id = data.get("customerId") or data.get("id")
        if not customer_id:
            raise PermanentPlatformError(
                "Customer response is missing customerId",
                details={"platform": PLATFORM, "response": data},
            )
        customer_id = str(customer_id)
        if self._cache is not None:
            await self._cache.set_json(key, {"customer_id": customer_id, "name": name, "email": email})
        logger.info("Created customer %s for %s", customer_id, identity)
        return customer_id

    async def close(self) -> None:
        await self._client.aclose()
