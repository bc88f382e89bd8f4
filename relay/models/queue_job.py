"""Durable queue rows: normal, priority and dead-letter live in one table."""

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from relay.database import Base, utcnow


class QueueJob(Base):
    __tablename__ = "queue_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, unique=True, nullable=False, index=True)
    queue_name = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    event_json = Column(Text, nullable=False)
    priority = Column(Integer, nullable=False, default=5)
    attempt_count = Column(Integer, nullable=False, default=0)
    enqueued_at = Column(DateTime, default=utcnow, nullable=False)
    available_at = Column(DateTime, default=utcnow, nullable=False)
    lease_token = Column(String, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    error_class = Column(String, nullable=True)
    original_queue = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_queue_jobs_ready", "queue_name", "available_at", "priority"),
    )
