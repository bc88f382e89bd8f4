"""Relays chat and ticket messages to the other side.

Delivery is at-least-once, so every path here must tolerate seeing the same
event twice: echoes are dropped by origin, and content already present in
the chat thread is never posted again.
"""

from __future__ import annotations

import html
import logging
from typing import Any, Mapping, Union

from relay.clients.chat_client import ChatClient, ChatMessage
from relay.clients.ticketing_client import TicketingClient
from relay.handlers.attachments import AttachmentPolicy
from relay.handlers.deletions import DeletionTracker
from relay.handlers.message_matching import (
    DEFAULT_FUZZY_RATIO,
    is_duplicate_message,
    process_quoted_content,
    strip_attachment_section,
)
from relay.pipeline.mapping import MappingStore, resolve_with_retry
from relay.schemas.events import AttachmentPayload, Author, Event, MessagePayload, Platform
from relay.templates.chat_templates import render_relayed_message
from relay.templates.ticketing_templates import on_behalf_of, render_message

logger = logging.getLogger(__name__)

RelayedPayload = Union[MessagePayload, AttachmentPayload]


def author_email(author: Author | None, domain: str) -> str:
    if author is None:
        return ""
    return author.email or f"{author.id}@{domain}"


class MessageSync:
    def __init__(
        self,
        chat: ChatClient,
        ticketing: TicketingClient,
        mappings: MappingStore,
        deletions: DeletionTracker,
        *,
        lookup_options: Mapping[str, Any] | None = None,
        fuzzy_ratio: float = DEFAULT_FUZZY_RATIO,
        recent_message_limit: int = 10,
        deletion_window: float = 10.0,
        email_domain: str = "chat.invalid",
        attachment_policy: AttachmentPolicy | None = None,
    ) -> None:
        self._chat = chat
        self._ticketing = ticketing
        self._mappings = mappings
        self._deletions = deletions
        self._lookup_options = dict(lookup_options or {})
        self._fuzzy_ratio = fuzzy_ratio
        self._recent_limit = recent_message_limit
        self._deletion_window = deletion_window
        self._email_domain = email_domain
        self._attachments = attachment_policy or AttachmentPolicy()

    async def deliver_to_chat(self, event: Event) -> str | None:
        """Post a ticket message into its bound chat thread.

        Returns the new chat message id, or None when the message was skipped.
        """
        payload: RelayedPayload = event.payload
        ticket_id = payload.conversation_id

        if payload.origin == Platform.CHAT.value:
            logger.debug("Skipping echo of chat message in ticket %s", ticket_id)
            return None
        if payload.author is None and not payload.attachments:
            logger.debug("Message in ticket %s has no author (bot/system), skipping", ticket_id)
            return None

        binding = await resolve_with_retry(self._mappings.resolve_by_ticket, ticket_id, **self._lookup_options)
        thread_id = binding.thread_id

        if await self._deletions.recently_deleted(thread_id, self._deletion_window):
            logger.info("Thread %s had a recent deletion; suppressing relay from ticket %s", thread_id, ticket_id)
            return None

        screened = self._attachments.screen(payload.attachments)
        if screened.rejected:
            logger.warning(
                "Ticket %s: %d attachment(s) not relayed (%s)",
                ticket_id, len(screened.rejected), "; ".join(screened.notices),
            )
        content = render_relayed_message(html.unescape(payload.text or ""), screened.accepted)
        if not content:
            logger.debug("Nothing to relay for ticket %s", ticket_id)
            return None

        recent = await self._chat.fetch_recent_messages(thread_id, self._recent_limit)
        quoted = process_quoted_content(content, recent, self._fuzzy_ratio)
        if quoted.reply_to is None:
            comparable = [ChatMessage(id=m.id, content=strip_attachment_section(m.content)) for m in recent]
            if is_duplicate_message(comparable, strip_attachment_section(content), self._fuzzy_ratio):
                logger.info("Duplicate message for thread %s suppressed", thread_id)
                return None
        elif quoted.is_duplicate:
            logger.info("Duplicate quoted reply for thread %s suppressed", thread_id)
            return None

        message_id = await self._chat.send_message(thread_id, quoted.content_to_send, reply_to=quoted.reply_to)
        logger.info(
            "Relayed ticket %s message to thread %s%s",
            ticket_id, thread_id, f" as reply to {quoted.reply_to}" if quoted.reply_to else "",
        )
        return message_id

    async def deliver_to_ticketing(self, event: Event) -> bool:
        """Post a chat thread message into its bound ticket."""
        payload: RelayedPayload = event.payload
        thread_id = payload.conversation_id

        if payload.origin == Platform.TICKETING.value:
            logger.debug("Skipping echo of ticket message in thread %s", thread_id)
            return False
        if not payload.text.strip() and not payload.attachments:
            logger.debug("Empty message in thread %s, skipping", thread_id)
            return False

        binding = await resolve_with_retry(self._mappings.resolve_by_thread, thread_id, **self._lookup_options)

        screened = self._attachments.screen(payload.attachments)
        if not payload.text.strip() and not screened.accepted:
            logger.info("Nothing relayable in thread %s message after attachment checks", thread_id)
            await self._notify_rejected(thread_id, screened.notices)
            return False

        author = payload.author
        email = author_email(author, self._email_domain)
        if author is not None:
            await self._ticketing.get_or_create_customer(author.id, email, author.name)

        await self._ticketing.post_message(
            binding.ticket_id,
            render_message(payload.text, screened.accepted),
            on_behalf_of(author, email),
        )
        logger.info("Relayed thread %s message to ticket %s", thread_id, binding.ticket_id)
        await self._notify_rejected(thread_id, screened.notices)
        return True

    async def _notify_rejected(self, thread_id: str, notices: list[str]) -> None:
        if not notices:
            return
        try:
            await self._chat.send_message(thread_id, "\n".join(notices))
        except Exception as exc:
            logger.warning("Could not post attachment notice to thread %s: %s", thread_id, exc)
