"""Creates the counterpart of a new chat thread or ticket and binds the pair."""

from __future__ import annotations

import logging

from relay.clients.chat_client import ChatClient
from relay.clients.ticketing_client import TicketingClient
from relay.errors import ValidationError
from relay.handlers.message_sync import author_email
from relay.pipeline.mapping import MappingStore
from relay.schemas.events import Event, ThreadCreatedPayload
from relay.templates.chat_templates import thread_name
from relay.templates.ticketing_templates import on_behalf_of, ticket_body, ticket_title

logger = logging.getLogger(__name__)


class ThreadSync:
    def __init__(
        self,
        chat: ChatClient,
        ticketing: TicketingClient,
        mappings: MappingStore,
        *,
        parent_channel_id: str = "",
        email_domain: str = "chat.invalid",
    ) -> None:
        self._chat = chat
        self._ticketing = ticketing
        self._mappings = mappings
        self._parent_channel_id = parent_channel_id
        self._email_domain = email_domain

    async def open_ticket(self, event: Event) -> str | None:
        """Open a ticket for a new chat thread. Returns the ticket id."""
        payload: ThreadCreatedPayload = event.payload
        thread_id = payload.conversation_id

        existing = await self._mappings.find_by_thread(thread_id)
        if existing is not None:
            logger.info("Thread %s already bound to ticket %s, skipping", thread_id, existing.ticket_id)
            return existing.ticket_id

        author = payload.author
        email = author_email(author, self._email_domain)
        customer_id = None
        if author is not None:
            customer_id = await self._ticketing.get_or_create_customer(author.id, email, author.name)

        ticket = await self._ticketing.create_ticket(
            ticket_title(payload),
            ticket_body(payload),
            customer_id=customer_id,
            on_behalf_of=on_behalf_of(author, email),
        )
        await self._mappings.bind(ticket["id"], thread_id)

        try:
            await self._chat.send_message(
                thread_id, f"Ticket #{ticket['friendly_id']} created. Replies here are shared with support."
            )
        except Exception as exc:
            logger.warning("Could not post ticket confirmation in thread %s: %s", thread_id, exc)
        return ticket["id"]

    async def open_thread(self, event: Event) -> str | None:
        """Open a chat thread for a new ticket. Returns the thread id."""
        payload: ThreadCreatedPayload = event.payload
        ticket_id = payload.conversation_id

        existing = await self._mappings.find_by_ticket(ticket_id)
        if existing is not None:
            logger.info("Ticket %s already bound to thread %s, skipping", ticket_id, existing.thread_id)
            return existing.thread_id

        parent = payload.parent_channel_id or self._parent_channel_id
        if not parent:
            raise ValidationError(
                f"No parent channel to open a thread for ticket {ticket_id}",
                details={"ticket_id": ticket_id},
            )

        thread_id = await self._chat.create_thread(parent, thread_name(payload))
        await self._mappings.bind(ticket_id, thread_id)
        if payload.text.strip():
            await self._chat.send_message(thread_id, payload.text.strip())
        logger.info("Opened thread %s for ticket %s", thread_id, ticket_id)
        return thread_id
