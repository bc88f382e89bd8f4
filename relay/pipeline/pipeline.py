"""The relay pipeline: one object that owns the stores, queues and workers.

Built explicitly (normally by the FastAPI lifespan) and handed its platform
clients, so nothing in the delivery path reaches for process-wide state.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay.clients.chat_client import ChatClient
from relay.clients.ticketing_client import TicketingClient
from relay.config import Settings
from relay.database import ping
from relay.errors import ValidationError
from relay.handlers.attachments import AttachmentPolicy
from relay.handlers.deletions import DeletionTracker
from relay.handlers.event_handler import EventHandlers
from relay.handlers.message_sync import MessageSync
from relay.handlers.status_sync import StatusSync
from relay.handlers.thread_sync import ThreadSync
from relay.pipeline.dedup import DeduplicationIndex
from relay.pipeline.dispatcher import Dispatcher
from relay.pipeline.kv_store import KeyValueStore
from relay.pipeline.mapping import MappingStore
from relay.pipeline.normalizer import normalize
from relay.pipeline.queue_manager import QueueManager
from relay.pipeline.rate_limiter import TokenBucketRateLimiter
from relay.pipeline.retry import RetryPolicy
from relay.schemas.events import Platform, WebhookEnvelope, WebhookResponse
from relay.schemas.queue import DeadLetterRecord, HealthReport, QueueName, QueueStatus

logger = logging.getLogger(__name__)


class RelayPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        chat: ChatClient,
        ticketing: TicketingClient,
        config: Settings,
        *,
        kv: KeyValueStore | None = None,
        lookup_options: dict[str, Any] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self.chat = chat
        self.ticketing = ticketing

        self.kv = kv or KeyValueStore(session_factory)
        self.mappings = MappingStore(self.kv)
        self.deletions = DeletionTracker(self.kv)
        self.dedup = DeduplicationIndex(config.dedup_ttl_seconds, config.dedup_content_prefix)
        self.queue = QueueManager(
            session_factory,
            self.dedup,
            {
                QueueName.NORMAL: RetryPolicy(
                    config.max_attempts_normal, config.retry_base_delay_seconds, config.retry_max_delay_seconds
                ),
                QueueName.PRIORITY: RetryPolicy(
                    config.max_attempts_priority, config.retry_base_delay_seconds, config.retry_max_delay_seconds
                ),
            },
            priority_weight=config.priority_weight,
            normal_weight=config.normal_weight,
            poll_interval=config.poll_interval_seconds,
        )

        if lookup_options is None:
            lookup_options = {
                "max_attempts": config.lookup_max_attempts,
                "max_window": config.lookup_max_window_seconds,
                "base_delay": config.lookup_base_delay_seconds,
                "max_delay": config.lookup_max_delay_seconds,
            }
        self.handlers = EventHandlers(
            MessageSync(
                chat,
                ticketing,
                self.mappings,
                self.deletions,
                lookup_options=lookup_options,
                fuzzy_ratio=config.fuzzy_length_ratio,
                recent_message_limit=config.recent_message_limit,
                deletion_window=config.recent_deletion_window_seconds,
                email_domain=config.customer_email_domain,
                attachment_policy=AttachmentPolicy(
                    max_file_size=config.attachment_max_file_size_bytes,
                    max_files=config.attachment_max_files,
                    allowed_types=tuple(config.attachment_allowed_types),
                ),
            ),
            ThreadSync(
                chat,
                ticketing,
                self.mappings,
                parent_channel_id=config.chat_parent_channel_id,
                email_domain=config.customer_email_domain,
            ),
            StatusSync(chat, self.mappings, config.closed_statuses),
        )
        self.dispatcher = Dispatcher(
            self.queue,
            self.handlers.registry(),
            concurrency={
                QueueName.PRIORITY: config.priority_concurrency,
                QueueName.NORMAL: config.normal_concurrency,
            },
            rate_limiter=TokenBucketRateLimiter.per_window(config.rate_limit_max, config.rate_limit_window_seconds),
            lease_seconds=config.lease_seconds,
            handler_timeout=config.handler_timeout_seconds,
            dequeue_timeout=config.dequeue_timeout_seconds,
            idle_interval=config.poll_interval_seconds,
        )

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        purged = await self.kv.purge_expired()
        if purged:
            logger.info("Purged %d expired key(s) on startup", purged)
        await self.dispatcher.start()

    async def stop(self, drain_timeout: float | None = None) -> None:
        await self.dispatcher.stop(
            self._config.drain_timeout_seconds if drain_timeout is None else drain_timeout
        )

    # ------------------------------------------------------------------
    # inbound
    # ------------------------------------------------------------------

    async def ingest(self, source_platform: Platform, body: WebhookEnvelope | dict) -> WebhookResponse:
        """Normalize and enqueue one webhook body.

        Never raises for bad input: malformed events come back as ``rejected``
        so the caller acknowledges them instead of retrying.
        """
        try:
            event = normalize(source_platform, body)
        except ValidationError as exc:
            logger.warning("Rejected %s webhook: %s", source_platform.value, exc.message)
            return WebhookResponse(status="rejected", errors=[exc.message])

        result = await self.queue.submit(event)
        self.dispatcher.counters["duplicates" if result.duplicate else "queued"] += 1
        return WebhookResponse(status="duplicate" if result.duplicate else "queued", job_id=result.job_id)

    async def record_deleted_message(self, thread_id: str, message_id: str | None = None) -> None:
        await self.deletions.record(thread_id, message_id)

    # ------------------------------------------------------------------
    # operational surface
    # ------------------------------------------------------------------

    async def get_queue_status(self) -> QueueStatus:
        return QueueStatus(
            queue_sizes=await self.queue.queue_sizes(),
            active_workers=self.dispatcher.active_workers,
            is_processing=self.dispatcher.is_running,
            counters=dict(self.dispatcher.counters),
        )

    async def get_health(self) -> HealthReport:
        """``unhealthy`` when the store is unreachable, ``degraded`` when the
        dispatcher is down or the dead-letter queue is backing up."""
        store_ok = await ping(self._session_factory)
        dispatcher_ok = self.dispatcher.is_running
        reasons: list[str] = []
        sizes: dict[str, int] = {}

        if not store_ok:
            reasons.append("store unreachable")
            return HealthReport(status="unhealthy", store=False, dispatcher=dispatcher_ok, reasons=reasons)

        try:
            sizes = await self.queue.queue_sizes()
        except Exception as exc:
            logger.error("Could not read queue sizes: %s", exc)
            reasons.append("queue sizes unavailable")

        if not dispatcher_ok:
            reasons.append("dispatcher not running")
        dead = sizes.get(QueueName.DEAD_LETTER.value, 0)
        if dead >= self._config.dead_letter_degraded_threshold:
            reasons.append(f"{dead} event(s) in dead-letter queue")
        if self.dispatcher.last_store_error:
            reasons.append(f"last store error: {self.dispatcher.last_store_error}")

        return HealthReport(
            status="degraded" if reasons else "healthy",
            store=True,
            dispatcher=dispatcher_ok,
            queues=sizes,
            reasons=reasons,
        )

    async def replay_dead_letter(self, limit: int = 50) -> int:
        return await self.queue.replay_dead_letter(limit)

    async def list_dead_letters(self, limit: int = 50) -> list[DeadLetterRecord]:
        return await self.queue.list_dead_letters(limit)
