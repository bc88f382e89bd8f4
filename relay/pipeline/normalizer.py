"""Turn raw webhook bodies from either platform into canonical ``Event``s.

Priority is a static function of the event:

- status changes that carry a status are HIGH
- tag/metadata-only conversation updates are LOW
- everything else is NORMAL
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from relay.errors import ValidationError
from relay.schemas.events import (
    AttachmentDescriptor,
    AttachmentPayload,
    Author,
    Event,
    EventSource,
    MessagePayload,
    Platform,
    Priority,
    StatusChangedPayload,
    ThreadCreatedPayload,
    WebhookEnvelope,
)

logger = logging.getLogger(__name__)

URL_VERIFICATION = "url_verification"

# Ticketing posts this placeholder text for file-only messages.
_FILE_PLACEHOLDERS = {"", "file attached"}

# Values of ``metadata.source`` that mean "written by the chat side".
_CHAT_ORIGINS = {"chat", "discord"}


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _require_id(value: Any, field: str, event: str) -> str:
    if value in (None, ""):
        raise ValidationError(
            f"{event} payload is missing {field}",
            details={"event": event, "field": field},
        )
    return str(value)


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, (int, float)):
        # Epoch seconds or milliseconds.
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds).astimezone()
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _attachments(items: Any) -> list[AttachmentDescriptor]:
    result = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        name = _first(item, "name", "filename", "title")
        if not name:
            continue
        result.append(
            AttachmentDescriptor(
                id=str(item.get("id") or ""),
                name=str(name),
                size=int(item.get("size") or 0),
                mime_type=str(_first(item, "mimetype", "mime_type", "content_type", "filetype") or ""),
                url=str(_first(item, "url", "url_private", "permalink", "proxy_url") or ""),
            )
        )
    return result


# ----------------------------------------------------------------------
# Ticketing
# ----------------------------------------------------------------------


def _ticketing_author(data: dict[str, Any]) -> Optional[Author]:
    user = data.get("user") if isinstance(data.get("user"), dict) else {}
    user_id = _first(data, "userId") or user.get("id")
    if not user_id:
        return None
    return Author(
        id=str(user_id),
        name=str(_first(user, "name", "displayName", "realName") or ""),
        email=str(user.get("email") or ""),
    )


def _ticketing_origin(data: dict[str, Any]) -> Optional[str]:
    metadata = data.get("metadata")
    if isinstance(metadata, dict) and metadata.get("source"):
        source = str(metadata["source"]).lower()
        return Platform.CHAT.value if source in _CHAT_ORIGINS else source
    return None


def _ticketing_event(event: str, data: dict[str, Any]) -> tuple[Any, Priority]:
    if event == "message_created":
        conversation_id = _require_id(_first(data, "conversationId", "id"), "conversationId", event)
        text = str(_first(data, "text", "markdown") or "")
        files = _attachments(data.get("files") or data.get("attachments"))
        fields = dict(
            conversation_id=conversation_id,
            message_id=str(data["id"]) if data.get("id") and data.get("conversationId") else None,
            text=text,
            author=_ticketing_author(data),
            attachments=files,
            origin=_ticketing_origin(data),
            created_at=_parse_time(_first(data, "createdAt", "ts")),
        )
        if files and text.strip().lower() in _FILE_PLACEHOLDERS:
            return AttachmentPayload(**fields), Priority.NORMAL
        return MessagePayload(**fields), Priority.NORMAL

    if event == "conversation_updated":
        conversation = data.get("conversation") if isinstance(data.get("conversation"), dict) else data
        conversation_id = _require_id(conversation.get("id"), "id", event)
        status = conversation.get("status") or None
        tags = [
            str(tag.get("name") if isinstance(tag, dict) else tag)
            for tag in conversation.get("tags") or []
        ]
        payload = StatusChangedPayload(
            conversation_id=conversation_id,
            status=str(status) if status else None,
            friendly_id=str(conversation["friendlyId"]) if conversation.get("friendlyId") else None,
            title=str(conversation.get("title") or ""),
            tags=tags,
        )
        return payload, Priority.HIGH if payload.status else Priority.LOW

    if event in ("conversation_created", "conversation.created"):
        conversation = data.get("conversation") if isinstance(data.get("conversation"), dict) else data
        conversation_id = _require_id(conversation.get("id"), "id", event)
        initial = conversation.get("initialMessage") if isinstance(conversation.get("initialMessage"), dict) else {}
        return (
            ThreadCreatedPayload(
                conversation_id=conversation_id,
                title=str(conversation.get("title") or ""),
                friendly_id=str(conversation["friendlyId"]) if conversation.get("friendlyId") else None,
                text=str(_first(initial, "text", "markdown") or _first(conversation, "markdown", "text") or ""),
                author=_ticketing_author(initial) or _ticketing_author(conversation),
            ),
            Priority.NORMAL,
        )

    raise ValidationError(f"Unsupported ticketing event '{event}'", details={"event": event})


# ----------------------------------------------------------------------
# Chat
# ----------------------------------------------------------------------


def _chat_author(data: dict[str, Any]) -> Optional[Author]:
    author = data.get("author")
    if not isinstance(author, dict) or not author.get("id"):
        return None
    return Author(
        id=str(author["id"]),
        name=str(_first(author, "display_name", "global_name", "username", "name") or ""),
        email=str(author.get("email") or ""),
    )


def _chat_origin(data: dict[str, Any]) -> Optional[str]:
    metadata = data.get("metadata")
    if isinstance(metadata, dict) and metadata.get("source"):
        return str(metadata["source"]).lower()
    author = data.get("author")
    # The relay posts into chat as a bot; bot-authored messages are echoes.
    if isinstance(author, dict) and author.get("bot"):
        return Platform.TICKETING.value
    return None


def _chat_event(event: str, data: dict[str, Any]) -> tuple[Any, Priority]:
    if event in ("message_create", "attachment"):
        thread_id = _require_id(_first(data, "threadId", "thread_id", "channelId", "channel_id"), "threadId", event)
        fields = dict(
            conversation_id=str(thread_id),
            message_id=str(data["id"]) if data.get("id") else None,
            text=str(_first(data, "content", "text") or ""),
            author=_chat_author(data),
            attachments=_attachments(data.get("attachments")),
            origin=_chat_origin(data),
            created_at=_parse_time(_first(data, "timestamp", "createdAt")),
        )
        if event == "attachment":
            return AttachmentPayload(**fields), Priority.NORMAL
        return MessagePayload(**fields), Priority.NORMAL

    if event == "thread_create":
        thread_id = _require_id(_first(data, "id", "threadId"), "id", event)
        return (
            ThreadCreatedPayload(
                conversation_id=str(thread_id),
                title=str(_first(data, "name", "title") or ""),
                text=str(_first(data, "content", "text") or ""),
                author=_chat_author(data),
                parent_channel_id=str(_first(data, "parentId", "parent_id") or "") or None,
            ),
            Priority.NORMAL,
        )

    raise ValidationError(f"Unsupported chat event '{event}'", details={"event": event})


def normalize(
    source_platform: Platform,
    envelope: WebhookEnvelope | dict[str, Any],
    source: EventSource = EventSource.WEBHOOK,
) -> Event:
    """Build an ``Event`` from a verified webhook body.

    Raises ``ValidationError`` for unknown event types, missing
    conversation/thread identifiers, or bodies that do not parse.
    """
    try:
        if not isinstance(envelope, WebhookEnvelope):
            envelope = WebhookEnvelope.model_validate(envelope)
        if envelope.event == URL_VERIFICATION:
            raise ValidationError("url_verification is not a relay event", details={"event": envelope.event})

        builder = _ticketing_event if source_platform is Platform.TICKETING else _chat_event
        payload, priority = builder(envelope.event, envelope.data)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Malformed webhook body",
            details={"errors": [err["msg"] for err in exc.errors()]},
        ) from exc

    event = Event(
        source_platform=source_platform,
        target_platform=source_platform.counterpart,
        payload=payload,
        priority=int(priority),
        source=source,
    )
    logger.debug(
        "Normalized %s %s for %s (priority %d)",
        source_platform.value, event.event_type.value, event.conversation_id, event.priority,
    )
    return event
