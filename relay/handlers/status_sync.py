"""Mirrors ticket status changes into the bound chat thread."""

from __future__ import annotations

import logging
from typing import Iterable

from relay.clients.chat_client import ChatClient
from relay.pipeline.mapping import MappingStore
from relay.schemas.events import Event, StatusChangedPayload
from relay.templates.chat_templates import render_status_notice

logger = logging.getLogger(__name__)


class StatusSync:
    def __init__(
        self,
        chat: ChatClient,
        mappings: MappingStore,
        closed_statuses: Iterable[str] = ("closed", "resolved"),
    ) -> None:
        self._chat = chat
        self._mappings = mappings
        self._closed = {s.lower() for s in closed_statuses}

    async def apply(self, event: Event) -> bool:
        payload: StatusChangedPayload = event.payload
        ticket_id = payload.conversation_id

        if not payload.status:
            logger.info("Ticket %s updated without a status change (tags: %s)", ticket_id, payload.tags)
            return False

        binding = await self._mappings.find_by_ticket(ticket_id)
        if binding is None:
            # Tickets opened outside chat have no thread.
            logger.debug("No thread bound to ticket %s, ignoring status %s", ticket_id, payload.status)
            return False

        text, embeds = render_status_notice(payload)
        await self._chat.send_message(binding.thread_id, text, embeds=embeds)
        logger.info("Posted status %s for ticket %s to thread %s", payload.status, ticket_id, binding.thread_id)

        if payload.status.lower() in self._closed:
            try:
                await self._chat.archive_thread(binding.thread_id)
            except Exception as exc:
                logger.warning("Failed to archive thread %s: %s", binding.thread_id, exc)
        return True
