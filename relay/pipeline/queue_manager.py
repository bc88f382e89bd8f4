"""Durable priority-aware queues with lease semantics.

All three logical queues (``queue:normal``, ``queue:priority``,
``queue:dead-letter``) are rows in ``queue_jobs`` keyed by ``queue_name``.
Every state change is a single conditional UPDATE/DELETE guarded by the
row's lease token, so workers never need a shared lock:

- ``dequeue`` claims the oldest ready row whose lease is free or expired.
- ``ack`` deletes the row if the caller still holds the lease.
- ``fail`` asks the retry policy, then either pushes ``available_at`` into
  the future (delayed visibility) or moves the row to the dead-letter queue.

A lease that lapses without ack/fail counts as a failed attempt
(``LEASE_EXPIRED``) when the row is next claimed.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable
from uuid import uuid4

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay.database import utcnow
from relay.errors import ErrorClass, LeaseExpired, classify_error
from relay.models.queue_job import QueueJob
from relay.pipeline.dedup import DeduplicationIndex
from relay.pipeline.retry import RetryDecision, RetryPolicy
from relay.schemas.events import Event, EventSource, Priority
from relay.schemas.queue import DeadLetterRecord, QueueName, QueueRecord

logger = logging.getLogger(__name__)

ACTIVE_QUEUES = (QueueName.PRIORITY, QueueName.NORMAL)


@dataclass(frozen=True)
class EnqueueResult:
    job_id: str
    queue_name: QueueName
    duplicate: bool = False


def queue_for_priority(priority: int) -> QueueName:
    return QueueName.PRIORITY if priority >= Priority.HIGH else QueueName.NORMAL


class QueueManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dedup: DeduplicationIndex,
        policies: dict[QueueName, RetryPolicy] | None = None,
        *,
        priority_weight: int = 2,
        normal_weight: int = 1,
        poll_interval: float = 0.25,
        claim_retries: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._dedup = dedup
        self._policies = policies or {}
        self._poll_interval = poll_interval
        self._claim_retries = claim_retries
        self._clock = clock
        schedule = [QueueName.PRIORITY] * max(priority_weight, 0) + [QueueName.NORMAL] * max(normal_weight, 0)
        self._schedule = itertools.cycle(schedule or list(ACTIVE_QUEUES))

    def policy_for(self, queue_name: QueueName) -> RetryPolicy:
        return self._policies.get(queue_name, RetryPolicy())

    # ------------------------------------------------------------------
    # enqueue
    # ------------------------------------------------------------------

    async def enqueue(self, event: Event, priority: int | None = None) -> str:
        """Queue ``event`` and return its job id (the existing one for duplicates)."""
        return (await self.submit(event, priority)).job_id

    async def submit(
        self,
        event: Event,
        priority: int | None = None,
        *,
        deduplicate: bool = True,
        queue_name: QueueName | None = None,
        delay: float = 0.0,
    ) -> EnqueueResult:
        if priority is not None and priority != event.priority:
            event = event.model_copy(update={"priority": priority})
        target = queue_name or queue_for_priority(event.priority)
        if target is QueueName.DEAD_LETTER:
            raise ValueError("Events cannot be enqueued directly into the dead-letter queue")

        job_id = str(event.event_id)
        now = self._clock()
        key = self._dedup.key_for(event) if deduplicate else None

        async with self._session_factory() as session:
            if key is not None:
                existing = await self._dedup.lookup(session, key)
                if existing is not None:
                    logger.info(
                        "Duplicate %s event for %s suppressed (original job %s)",
                        event.event_type.value, event.conversation_id, existing,
                    )
                    return EnqueueResult(existing, target, duplicate=True)
                await self._dedup.stage(session, key, job_id)

            session.add(self._new_row(event, job_id, target, now, now + timedelta(seconds=delay)))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                if key is not None:
                    existing = await self._dedup.lookup(session, key)
                    if existing is not None:
                        logger.info("Duplicate event %s lost the fingerprint race to %s", job_id, existing)
                        return EnqueueResult(existing, target, duplicate=True)
                raise

        logger.info(
            "Queued %s event %s on %s (priority %d)",
            event.event_type.value, job_id, target.value, event.priority,
        )
        return EnqueueResult(job_id, target)

    @staticmethod
    def _new_row(event: Event, job_id: str, queue_name: QueueName, now: datetime, available_at: datetime) -> QueueJob:
        return QueueJob(
            job_id=job_id,
            queue_name=queue_name.value,
            event_type=event.event_type.value,
            event_json=event.model_dump_json(),
            priority=event.priority,
            attempt_count=event.attempt_count,
            enqueued_at=now,
            available_at=available_at,
        )

    # ------------------------------------------------------------------
    # dequeue
    # ------------------------------------------------------------------

    def _claim_order(self, allowed: Iterable[QueueName] | None) -> list[QueueName]:
        allowed_set = set(allowed) if allowed is not None else set(ACTIVE_QUEUES)
        preferred = next(self._schedule)
        order = [preferred] + [q for q in ACTIVE_QUEUES if q is not preferred]
        return [q for q in order if q in allowed_set]

    async def dequeue(
        self,
        lease_duration: float,
        timeout: float = 0.0,
        *,
        queue_names: Iterable[QueueName] | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> QueueRecord | None:
        """Claim the next ready record, polling for up to ``timeout`` seconds.

        Priority and normal queues are visited in a weighted round-robin
        (``priority_weight`` : ``normal_weight``); an empty preferred queue
        falls through to the other so neither starves.
        """
        order = self._claim_order(queue_names)
        if not order:
            return None
        deadline = time.monotonic() + timeout
        while True:
            record = await self._claim_next(order, lease_duration)
            if record is not None:
                return record
            remaining = deadline - time.monotonic()
            if remaining <= 0 or (stop_event is not None and stop_event.is_set()):
                return None
            await asyncio.sleep(min(self._poll_interval, remaining))

    async def _claim_next(self, order: list[QueueName], lease_duration: float) -> QueueRecord | None:
        async with self._session_factory() as session:
            for queue_name in order:
                for _ in range(self._claim_retries):
                    now = self._clock()
                    row = (
                        await session.execute(
                            select(
                                QueueJob.id,
                                QueueJob.job_id,
                                QueueJob.event_json,
                                QueueJob.enqueued_at,
                                QueueJob.attempt_count,
                                QueueJob.lease_token,
                            )
                            .where(
                                QueueJob.queue_name == queue_name.value,
                                QueueJob.available_at <= now,
                                or_(QueueJob.lease_token.is_(None), QueueJob.lease_expires_at <= now),
                            )
                            .order_by(QueueJob.priority.desc(), QueueJob.id)
                            .limit(1)
                        )
                    ).first()
                    # End the read transaction before writing.
                    await session.commit()
                    if row is None:
                        break

                    attempt_count = row.attempt_count
                    if row.lease_token is not None:
                        attempt_count += 1
                        stalled = LeaseExpired(f"lease expired before ack (attempt {attempt_count})")
                        decision = self.policy_for(queue_name).decide(stalled, attempt_count)
                        logger.warning(
                            "Lease expired for job %s on %s (attempt %d); %s",
                            row.job_id, queue_name.value, attempt_count, decision.action.value,
                        )
                        if not decision.should_retry:
                            await self._move_to_dead_letter(
                                session, row.id, row.lease_token, queue_name, attempt_count,
                                str(stalled), stalled.error_class, now,
                            )
                            continue

                    token = uuid4().hex
                    lease_expires_at = now + timedelta(seconds=lease_duration)
                    result = await session.execute(
                        update(QueueJob)
                        .where(QueueJob.id == row.id, _holds(row.lease_token))
                        .values(
                            lease_token=token,
                            lease_expires_at=lease_expires_at,
                            attempt_count=attempt_count,
                        )
                    )
                    await session.commit()
                    if result.rowcount != 1:
                        # Another worker claimed it between our read and write.
                        continue

                    event = Event.model_validate_json(row.event_json).with_attempts(attempt_count)
                    return QueueRecord(
                        job_id=row.job_id,
                        queue_name=queue_name,
                        event=event,
                        enqueued_at=row.enqueued_at,
                        lease_expires_at=lease_expires_at,
                        lease_token=token,
                    )
        return None

    # ------------------------------------------------------------------
    # outcome
    # ------------------------------------------------------------------

    async def ack(self, job_id: str, lease_token: str) -> bool:
        """Remove a successfully handled record. False if the lease was lost."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(QueueJob).where(
                    QueueJob.job_id == job_id,
                    QueueJob.lease_token == lease_token,
                    QueueJob.queue_name != QueueName.DEAD_LETTER.value,
                )
            )
            await session.commit()
        if result.rowcount != 1:
            logger.warning("Ack for job %s ignored: lease no longer held", job_id)
            return False
        logger.debug("Acked job %s", job_id)
        return True

    async def fail(self, job_id: str, lease_token: str, error: BaseException | ErrorClass) -> RetryDecision | None:
        """Record a failed attempt and apply the retry policy.

        Returns the decision, or None when the caller no longer holds the lease.
        """
        error_class = error if isinstance(error, ErrorClass) else classify_error(error)
        message = error_class.value if isinstance(error, ErrorClass) else (str(error) or type(error).__name__)
        message = message[:500]

        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(QueueJob.id, QueueJob.queue_name, QueueJob.attempt_count).where(
                        QueueJob.job_id == job_id, QueueJob.lease_token == lease_token
                    )
                )
            ).first()
            await session.commit()
            if row is None:
                logger.warning("Fail for job %s ignored: lease no longer held", job_id)
                return None

            queue_name = QueueName(row.queue_name)
            attempt_count = row.attempt_count + 1
            decision = self.policy_for(queue_name).decide(error_class, attempt_count)
            now = self._clock()

            if not decision.should_retry:
                moved = await self._move_to_dead_letter(
                    session, row.id, lease_token, queue_name, attempt_count, message, error_class, now,
                )
                if not moved:
                    return None
                return decision

            result = await session.execute(
                update(QueueJob)
                .where(QueueJob.id == row.id, QueueJob.lease_token == lease_token)
                .values(
                    attempt_count=attempt_count,
                    available_at=now + timedelta(seconds=decision.delay),
                    lease_token=None,
                    lease_expires_at=None,
                    error_message=message,
                    error_class=error_class.value,
                )
            )
            await session.commit()
            if result.rowcount != 1:
                logger.warning("Retry for job %s lost its lease before requeue", job_id)
                return None

        logger.warning(
            "Job %s failed (%s, attempt %d/%d); retrying in %.1fs",
            job_id, error_class.value, attempt_count, self.policy_for(queue_name).max_attempts, decision.delay,
        )
        return decision

    async def _move_to_dead_letter(
        self,
        session: AsyncSession,
        row_id: int,
        lease_token: str | None,
        queue_name: QueueName,
        attempt_count: int,
        message: str,
        error_class: ErrorClass,
        now: datetime,
    ) -> bool:
        result = await session.execute(
            update(QueueJob)
            .where(QueueJob.id == row_id, _holds(lease_token))
            .values(
                queue_name=QueueName.DEAD_LETTER.value,
                original_queue=queue_name.value,
                attempt_count=attempt_count,
                failed_at=now,
                error_message=message,
                error_class=error_class.value,
                lease_token=None,
                lease_expires_at=None,
            )
        )
        await session.commit()
        if result.rowcount != 1:
            return False
        logger.warning(
            "Moved job row %d from %s to dead-letter after %d attempt(s): %s",
            row_id, queue_name.value, attempt_count, message,
        )
        return True

    # ------------------------------------------------------------------
    # dead-letter + inspection
    # ------------------------------------------------------------------

    async def list_dead_letters(self, limit: int = 50) -> list[DeadLetterRecord]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(QueueJob)
                    .where(QueueJob.queue_name == QueueName.DEAD_LETTER.value)
                    .order_by(QueueJob.id)
                    .limit(limit)
                )
            ).scalars().all()
        return [
            DeadLetterRecord(
                job_id=row.job_id,
                event=Event.model_validate_json(row.event_json).with_attempts(row.attempt_count),
                failed_at=row.failed_at,
                error_message=row.error_message or "",
                error_class=row.error_class,
                original_queue=QueueName(row.original_queue or QueueName.NORMAL.value),
            )
            for row in rows
        ]

    async def replay_dead_letter(self, limit: int = 50) -> int:
        """Re-enqueue up to ``limit`` dead letters as fresh events on the normal queue."""
        replayed = 0
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(QueueJob.id, QueueJob.job_id, QueueJob.event_json)
                    .where(QueueJob.queue_name == QueueName.DEAD_LETTER.value)
                    .order_by(QueueJob.id)
                    .limit(limit)
                )
            ).all()
            await session.commit()

            for row in rows:
                original = Event.model_validate_json(row.event_json)
                fresh = original.model_copy(update={
                    "event_id": uuid4(),
                    "source": EventSource.RETRY,
                    "attempt_count": 0,
                    "received_at": datetime.now(timezone.utc),
                })
                removed = await session.execute(
                    delete(QueueJob).where(
                        QueueJob.id == row.id,
                        QueueJob.queue_name == QueueName.DEAD_LETTER.value,
                    )
                )
                if removed.rowcount != 1:
                    await session.rollback()
                    continue
                now = self._clock()
                session.add(self._new_row(fresh, str(fresh.event_id), QueueName.NORMAL, now, now))
                await session.commit()
                replayed += 1
                logger.info("Replayed dead letter %s as %s", row.job_id, fresh.event_id)
        return replayed

    async def queue_sizes(self) -> dict[str, int]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(QueueJob.queue_name, func.count(QueueJob.id)).group_by(QueueJob.queue_name)
                )
            ).all()
        sizes = {name.value: 0 for name in QueueName}
        for queue_name, count in rows:
            sizes[queue_name] = count
        return sizes


def _holds(lease_token: str | None):
    if lease_token is None:
        return QueueJob.lease_token.is_(None)
    return QueueJob.lease_token == lease_token
