"""Text matching used to keep relayed messages from showing up twice."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

logger = logging.getLogger(__name__)

MIN_DUPLICATE_LENGTH = 5
MIN_FUZZY_LENGTH = 10
DEFAULT_FUZZY_RATIO = 1.5

_WHITESPACE = re.compile(r"\s+")
_ATTACHMENT_PATTERNS = (
    re.compile(r"\n\nAttachments: <[^>]+>"),
    re.compile(r"\n\nAttachments: \[[^\]]+\]\([^)]+\)"),
    re.compile(r"\n\nAttachments: .+$"),
)
_QUOTE_PREFIX = re.compile(r"^>\s?")


class ThreadMessage(Protocol):
    id: str
    content: str


@dataclass
class QuotedContent:
    content_to_send: str
    reply_to: Optional[str] = None
    is_duplicate: bool = False


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def strip_attachment_section(content: str) -> str:
    """Drop a trailing ``Attachments: ...`` block (angle-bracket, markdown link or plain)."""
    if not content:
        return ""
    for pattern in _ATTACHMENT_PATTERNS:
        content = pattern.sub("", content)
    return content.strip()


def is_duplicate_message(
    messages: Iterable[ThreadMessage],
    content: str,
    fuzzy_ratio: float = DEFAULT_FUZZY_RATIO,
) -> bool:
    """True if ``content`` already appears among ``messages``.

    Exact match on whitespace-normalized text, or for candidates of at least
    ten characters, containment either way with the longer text no more than
    ``fuzzy_ratio`` times the shorter. Candidates under five characters never
    count as duplicates.
    """
    candidate = normalize_whitespace(content)
    if len(candidate) < MIN_DUPLICATE_LENGTH:
        return False

    existing = [normalize_whitespace(m.content) for m in messages]
    if candidate in existing:
        logger.debug("Exact duplicate message detected")
        return True

    if len(candidate) < MIN_FUZZY_LENGTH:
        return False
    for other in existing:
        if not other:
            continue
        if candidate in other and len(other) <= len(candidate) * fuzzy_ratio:
            logger.debug("Content duplicate message detected (fuzzy match)")
            return True
        if other in candidate and len(candidate) <= len(other) * fuzzy_ratio:
            logger.debug("Content duplicate message detected (fuzzy match)")
            return True
    return False


def process_quoted_content(
    content: str,
    messages: list[ThreadMessage],
    fuzzy_ratio: float = DEFAULT_FUZZY_RATIO,
) -> QuotedContent:
    """Turn a leading ``> quote`` into a reply to the quoted thread message.

    Only the first run of consecutive quoted lines is considered. When it
    matches an existing message (ignoring attachment sections) the rest of the
    text is sent as a reply to that message. Quotes of attachment sections are
    left alone.
    """
    result = QuotedContent(content_to_send=content)
    if not content or not messages:
        return result

    quoted_lines: list[str] = []
    for line in content.split("\n"):
        if line.strip().startswith(">"):
            quoted_lines.append(line)
        elif quoted_lines:
            break
    if not quoted_lines:
        return result

    quoted_raw = "\n".join(quoted_lines)
    quoted = "\n".join(_QUOTE_PREFIX.sub("", line.strip()).strip() for line in quoted_lines).strip()
    remainder = content.replace(quoted_raw, "", 1).strip()

    if quoted.startswith("Attachments: ["):
        return result

    target = strip_attachment_section(quoted)
    match = next(
        (m for m in messages if m.id and strip_attachment_section(m.content) == target),
        None,
    )
    if match is None:
        return result

    result.reply_to = match.id
    result.content_to_send = remainder or " "
    result.is_duplicate = is_duplicate_message(messages, remainder, fuzzy_ratio)
    return result
