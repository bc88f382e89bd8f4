"""Chat message and embed builders."""

from __future__ import annotations

from relay.schemas.events import AttachmentDescriptor, StatusChangedPayload, ThreadCreatedPayload

_STATUS_STYLES: dict[str, tuple[int, str]] = {
    "open": (0xF44336, "Open"),
    "in_progress": (0xFFEB3B, "In Progress"),
    "on_hold": (0xFF9800, "Waiting"),
    "closed": (0x4CAF50, "Resolved"),
    "resolved": (0x4CAF50, "Resolved"),
}

MAX_THREAD_NAME = 100
MAX_MESSAGE_LENGTH = 2000


def status_style(status: str) -> tuple[int, str]:
    """Embed colour and display name for a ticket status."""
    key = status.lower()
    if key in _STATUS_STYLES:
        return _STATUS_STYLES[key]
    return 0x9E9E9E, status[:1].upper() + status[1:]


def ticket_label(friendly_id: str | None, fallback: str) -> str:
    return f"#{friendly_id}" if friendly_id else fallback


def render_status_notice(payload: StatusChangedPayload) -> tuple[str, list[dict]]:
    """Plain-text fallback plus embed for a ticket status change."""
    colour, display = status_style(payload.status or "unknown")
    label = ticket_label(payload.friendly_id, payload.conversation_id)
    text = f"Ticket {label} status: {display}"
    embed = {
        "title": "Ticket Status Updated",
        "color": colour,
        "fields": [
            {"name": "Ticket ID", "value": label, "inline": True},
            {"name": "Status", "value": display, "inline": True},
        ],
    }
    return text, [embed]


def render_attachment_section(attachments: list[AttachmentDescriptor]) -> str:
    """Trailing ``Attachments: [name](url), ...`` block; empty when there is nothing to link."""
    links = [f"[{a.name}]({a.url})" if a.url else a.name for a in attachments]
    if not links:
        return ""
    return "\n\nAttachments: " + ", ".join(links)


def render_relayed_message(text: str, attachments: list[AttachmentDescriptor]) -> str:
    content = (text or "").strip() + render_attachment_section(attachments)
    return content.strip()[:MAX_MESSAGE_LENGTH]


def thread_name(payload: ThreadCreatedPayload) -> str:
    title = payload.title or "Support ticket"
    if payload.friendly_id:
        title = f"#{payload.friendly_id} {title}"
    return title[:MAX_THREAD_NAME]
