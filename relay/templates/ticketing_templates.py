"""Ticketing message and ticket body builders."""

from __future__ import annotations

from relay.schemas.events import AttachmentDescriptor, Author, ThreadCreatedPayload

DEFAULT_TITLE = "Support request"


def ticket_title(payload: ThreadCreatedPayload) -> str:
    return (payload.title or DEFAULT_TITLE).strip()[:255]


def ticket_body(payload: ThreadCreatedPayload) -> str:
    return payload.text.strip() or ticket_title(payload)


def render_message(text: str, attachments: list[AttachmentDescriptor]) -> str:
    """Markdown for a chat message; attachments become links under the text."""
    parts = [text.strip()] if text and text.strip() else []
    if attachments:
        parts.append("Attachments: " + ", ".join(
            f"[{a.name}]({a.url})" if a.url else a.name for a in attachments
        ))
    return "\n\n".join(parts)


def on_behalf_of(author: Author | None, email: str) -> dict:
    name = (author.name or author.id) if author else "Chat user"
    return {"name": name, "email": email}
