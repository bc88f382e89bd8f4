"""Routes dequeued events to the sync logic for their type and direction."""

from __future__ import annotations

import logging

from relay.errors import ValidationError
from relay.handlers.message_sync import MessageSync
from relay.handlers.status_sync import StatusSync
from relay.handlers.thread_sync import ThreadSync
from relay.pipeline.dispatcher import Handler
from relay.schemas.events import Event, EventType, Platform

logger = logging.getLogger(__name__)


class EventHandlers:
    def __init__(self, messages: MessageSync, threads: ThreadSync, statuses: StatusSync) -> None:
        self.messages = messages
        self.threads = threads
        self.statuses = statuses

    async def handle_message(self, event: Event) -> None:
        if event.target_platform is Platform.CHAT:
            await self.messages.deliver_to_chat(event)
        else:
            await self.messages.deliver_to_ticketing(event)

    async def handle_thread_created(self, event: Event) -> None:
        if event.target_platform is Platform.CHAT:
            await self.threads.open_thread(event)
        else:
            await self.threads.open_ticket(event)

    async def handle_status_changed(self, event: Event) -> None:
        if event.target_platform is not Platform.CHAT:
            raise ValidationError(
                "Status changes are only relayed from tickets to chat",
                details={"event_id": str(event.event_id)},
            )
        await self.statuses.apply(event)

    def registry(self) -> dict[EventType, Handler]:
        return {
            EventType.MESSAGE_CREATED: self.handle_message,
            EventType.ATTACHMENT_ADDED: self.handle_message,
            EventType.THREAD_CREATED: self.handle_thread_created,
            EventType.CONVERSATION_STATUS_CHANGED: self.handle_status_changed,
        }
