"""Queue, binding and operational-surface models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from relay.schemas.events import Event


class QueueName(str, Enum):
    NORMAL = "queue:normal"
    PRIORITY = "queue:priority"
    DEAD_LETTER = "queue:dead-letter"


class QueueRecord(BaseModel):
    """An Event under a worker's lease. Handlers report back through ack/fail."""

    job_id: str
    queue_name: QueueName
    event: Event
    enqueued_at: datetime
    lease_expires_at: datetime
    lease_token: str


class DeadLetterRecord(BaseModel):
    job_id: str
    event: Event
    failed_at: datetime
    error_message: str
    error_class: Optional[str] = None
    original_queue: QueueName


class ThreadBinding(BaseModel):
    ticket_id: str
    thread_id: str
    created_at: datetime


class QueueStatus(BaseModel):
    queue_sizes: dict[str, int] = Field(default_factory=dict)
    active_workers: int = 0
    is_processing: bool = False
    counters: dict[str, int] = Field(default_factory=dict)


class HealthReport(BaseModel):
    status: str
    store: bool
    dispatcher: bool
    queues: dict[str, int] = Field(default_factory=dict)
    reasons: list[str] = Field(default_factory=list)


class ReplayResponse(BaseModel):
    replayed: int
