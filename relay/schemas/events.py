"""Pydantic models for webhook payloads and the canonical relay event."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class Platform(str, Enum):
    CHAT = "chat"
    TICKETING = "ticketing"

    @property
    def counterpart(self) -> "Platform":
        return Platform.TICKETING if self is Platform.CHAT else Platform.CHAT


class EventType(str, Enum):
    MESSAGE_CREATED = "message_created"
    ATTACHMENT_ADDED = "attachment_added"
    THREAD_CREATED = "thread_created"
    CONVERSATION_STATUS_CHANGED = "conversation_status_changed"


class EventSource(str, Enum):
    WEBHOOK = "webhook"
    RETRY = "retry"
    MANUAL = "manual"


class Priority(int, Enum):
    LOW = 1
    NORMAL = 5
    HIGH = 10


class Author(BaseModel):
    id: str
    name: str = ""
    email: str = ""


class AttachmentDescriptor(BaseModel):
    id: str = ""
    name: str
    size: int = 0
    mime_type: str = ""
    url: str = ""


class MessagePayload(BaseModel):
    event_type: Literal["message_created"] = "message_created"
    conversation_id: str
    message_id: Optional[str] = None
    text: str = ""
    author: Optional[Author] = None
    attachments: list[AttachmentDescriptor] = Field(default_factory=list)
    # Platform that originally authored the message, when it was relayed.
    origin: Optional[str] = None
    created_at: Optional[datetime] = None


class AttachmentPayload(BaseModel):
    event_type: Literal["attachment_added"] = "attachment_added"
    conversation_id: str
    message_id: Optional[str] = None
    text: str = ""
    author: Optional[Author] = None
    attachments: list[AttachmentDescriptor] = Field(default_factory=list)
    origin: Optional[str] = None
    created_at: Optional[datetime] = None


class ThreadCreatedPayload(BaseModel):
    event_type: Literal["thread_created"] = "thread_created"
    conversation_id: str
    title: str = ""
    friendly_id: Optional[str] = None
    text: str = ""
    author: Optional[Author] = None
    parent_channel_id: Optional[str] = None


class StatusChangedPayload(BaseModel):
    event_type: Literal["conversation_status_changed"] = "conversation_status_changed"
    conversation_id: str
    status: Optional[str] = None
    friendly_id: Optional[str] = None
    title: str = ""
    tags: list[str] = Field(default_factory=list)


EventPayload = Annotated[
    Union[MessagePayload, AttachmentPayload, ThreadCreatedPayload, StatusChangedPayload],
    Field(discriminator="event_type"),
]


class Event(BaseModel):
    """Canonical unit of work. Only ``attempt_count`` ever changes after creation."""

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    source_platform: Platform
    target_platform: Platform
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: EventPayload
    priority: int = int(Priority.NORMAL)
    attempt_count: int = 0
    source: EventSource = EventSource.WEBHOOK

    @property
    def event_type(self) -> EventType:
        return EventType(self.payload.event_type)

    @property
    def conversation_id(self) -> str:
        return self.payload.conversation_id

    def with_attempts(self, attempt_count: int) -> "Event":
        return self.model_copy(update={"attempt_count": attempt_count})


class WebhookEnvelope(BaseModel):
    """Verified, parsed webhook body handed over by the HTTP layer."""

    model_config = ConfigDict(extra="ignore")

    event: str
    data: dict[str, Any] = Field(default_factory=dict)


class WebhookResponse(BaseModel):
    status: str
    job_id: Optional[str] = None
    errors: list[str] = Field(default_factory=list)
