"""Which attachments may travel with a relayed message."""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass, field

from relay.schemas.events import AttachmentDescriptor

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_TYPES = ("image/png", "image/jpeg", "image/jpg", "image/gif", "image/webp")

UNSUPPORTED_TYPE_NOTICE = "⚠️ Only images (PNG, JPEG, GIF, WebP) are supported."
TOO_LARGE_NOTICE = "📏 File too large. Maximum size is {limit} per image."
TOO_MANY_NOTICE = "📎 Too many files. Maximum is {limit} images per message."


def normalize_content_type(content_type: str) -> str:
    """``"IMAGE/PNG; charset=utf-8"`` -> ``"image/png"``."""
    return content_type.split(";")[0].strip().lower()


def _megabytes(size: int) -> str:
    return f"{size / (1024 * 1024):g}MB"


@dataclass
class ScreenedAttachments:
    accepted: list[AttachmentDescriptor] = field(default_factory=list)
    rejected: list[AttachmentDescriptor] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)


@dataclass
class AttachmentPolicy:
    max_file_size: int = 8 * 1024 * 1024
    max_files: int = 10
    allowed_types: tuple[str, ...] = DEFAULT_ALLOWED_TYPES

    def content_type(self, attachment: AttachmentDescriptor) -> str:
        if attachment.mime_type:
            return normalize_content_type(attachment.mime_type)
        guessed, _ = mimetypes.guess_type(attachment.name)
        return guessed or ""

    def screen(self, attachments: list[AttachmentDescriptor]) -> ScreenedAttachments:
        """Split ``attachments`` into files to relay and files to drop.

        More than ``max_files`` rejects the whole batch. Otherwise each file
        must have an allowed type and fit ``max_file_size``; a size of zero
        means the platform did not report one. ``notices`` holds one
        user-facing line per distinct reason.
        """
        result = ScreenedAttachments()
        if not attachments:
            return result

        if len(attachments) > self.max_files:
            logger.warning("Dropping %d attachments; limit is %d per message", len(attachments), self.max_files)
            result.rejected = list(attachments)
            result.notices.append(TOO_MANY_NOTICE.format(limit=self.max_files))
            return result

        allowed = {normalize_content_type(t) for t in self.allowed_types}
        for attachment in attachments:
            content_type = self.content_type(attachment)
            if content_type not in allowed:
                logger.info("Skipping attachment %s with unsupported type %r", attachment.name, content_type)
                notice = UNSUPPORTED_TYPE_NOTICE
            elif attachment.size > self.max_file_size:
                logger.info("Skipping attachment %s: %d bytes exceeds limit", attachment.name, attachment.size)
                notice = TOO_LARGE_NOTICE.format(limit=_megabytes(self.max_file_size))
            else:
                result.accepted.append(attachment)
                continue
            result.rejected.append(attachment)
            if notice not in result.notices:
                result.notices.append(notice)
        return result
