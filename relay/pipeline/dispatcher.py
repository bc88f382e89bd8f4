"""Worker pool that drains the priority and normal queues.

Each queue has its own in-flight cap. A worker reserves a slot on every
queue with spare capacity, dequeues across those queues, keeps the slot of
the queue it got a record from and hands the rest back. Slot bookkeeping
happens between awaits, so it needs no lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from typing import Awaitable, Callable, Mapping

from relay.errors import HandlerTimeout, ValidationError, classify_error
from relay.pipeline.queue_manager import QueueManager
from relay.pipeline.rate_limiter import TokenBucketRateLimiter
from relay.schemas.events import Event, EventType
from relay.schemas.queue import QueueName, QueueRecord

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Awaitable[None]]


class Dispatcher:
    def __init__(
        self,
        queue: QueueManager,
        handlers: Mapping[EventType, Handler],
        *,
        concurrency: Mapping[QueueName, int] | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
        lease_seconds: float = 60.0,
        handler_timeout: float = 30.0,
        dequeue_timeout: float = 5.0,
        idle_interval: float = 0.25,
        store_error_backoff: float = 1.0,
    ) -> None:
        self._queue = queue
        self._handlers = dict(handlers)
        self._limits = dict(concurrency or {QueueName.PRIORITY: 10, QueueName.NORMAL: 5})
        self._in_flight = {name: 0 for name in self._limits}
        self._limiter = rate_limiter
        self._lease_seconds = lease_seconds
        self._handler_timeout = handler_timeout
        self._dequeue_timeout = dequeue_timeout
        self._idle_interval = idle_interval
        self._store_error_backoff = store_error_backoff
        self._stopping = asyncio.Event()
        self._workers: list[asyncio.Task] = []
        self._busy = 0
        self.counters: Counter[str] = Counter()
        self.last_store_error: str | None = None

        if handler_timeout >= lease_seconds:
            logger.warning(
                "Handler timeout %.1fs is not shorter than the lease (%.1fs); "
                "slow handlers may be redelivered while still running",
                handler_timeout, lease_seconds,
            )

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    @property
    def worker_count(self) -> int:
        return sum(self._limits.values())

    @property
    def is_running(self) -> bool:
        return bool(self._workers) and not self._stopping.is_set()

    @property
    def active_workers(self) -> int:
        return self._busy

    @property
    def in_flight(self) -> dict[str, int]:
        return {name.value: count for name, count in self._in_flight.items()}

    async def start(self) -> None:
        if self._workers:
            return
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._run_worker(n), name=f"relay-worker-{n}")
            for n in range(self.worker_count)
        ]
        logger.info(
            "Dispatcher started with %d workers (%s)",
            self.worker_count,
            ", ".join(f"{name.value}={limit}" for name, limit in self._limits.items()),
        )

    async def stop(self, drain_timeout: float = 30.0) -> None:
        """Stop dequeuing, let in-flight handlers finish, then cancel stragglers.

        Cancelled records keep their lease and are redelivered once it lapses.
        """
        if not self._workers:
            return
        self._stopping.set()
        done, pending = await asyncio.wait(self._workers, timeout=drain_timeout)
        if pending:
            logger.warning("Drain timeout after %.1fs; cancelling %d worker(s)", drain_timeout, len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error("Worker %s exited with error: %s", task.get_name(), task.exception())
        self._workers = []
        logger.info("Dispatcher stopped")

    # ------------------------------------------------------------------
    # worker loop
    # ------------------------------------------------------------------

    def _reserve(self) -> list[QueueName]:
        reserved = [name for name, limit in self._limits.items() if self._in_flight[name] < limit]
        for name in reserved:
            self._in_flight[name] += 1
        return reserved

    def _release(self, names) -> None:
        for name in names:
            self._in_flight[name] -= 1

    async def _run_worker(self, number: int) -> None:
        while not self._stopping.is_set():
            reserved = self._reserve()
            if not reserved:
                await asyncio.sleep(self._idle_interval)
                continue

            try:
                record = await self._queue.dequeue(
                    self._lease_seconds,
                    self._dequeue_timeout,
                    queue_names=reserved,
                    stop_event=self._stopping,
                )
            except asyncio.CancelledError:
                self._release(reserved)
                raise
            except Exception as exc:
                # Store trouble: report and back off, other workers keep going.
                self._release(reserved)
                self.counters["store_errors"] += 1
                self.last_store_error = str(exc)
                logger.error("Worker %d could not dequeue: %s", number, exc)
                await asyncio.sleep(self._store_error_backoff)
                continue

            self.last_store_error = None
            self._release([name for name in reserved if record is None or name is not record.queue_name])
            if record is None:
                continue
            try:
                await self.process(record)
            finally:
                self._release([record.queue_name])

    async def process(self, record: QueueRecord) -> None:
        """Run the handler for one leased record and report ack/fail."""
        event = record.event
        handler = self._handlers.get(event.event_type)
        started = time.monotonic()
        self._busy += 1
        try:
            if handler is None:
                raise ValidationError(
                    f"No handler registered for {event.event_type.value}",
                    details={"event_type": event.event_type.value},
                )
            if self._limiter is not None:
                await self._limiter.acquire()
            try:
                await asyncio.wait_for(handler(event), timeout=self._handler_timeout)
            except asyncio.TimeoutError as exc:
                self.counters["timeouts"] += 1
                raise HandlerTimeout(
                    f"Handler for {event.event_type.value} exceeded {self._handler_timeout:.1f}s",
                    details={"job_id": record.job_id},
                ) from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._report_failure(record, exc)
        else:
            await self._report_success(record, time.monotonic() - started)
        finally:
            self._busy -= 1

    async def _report_success(self, record: QueueRecord, elapsed: float) -> None:
        try:
            acked = await self._queue.ack(record.job_id, record.lease_token)
        except Exception as exc:
            self.last_store_error = str(exc)
            logger.error("Ack failed for job %s: %s", record.job_id, exc)
            return
        if acked:
            self.counters["completed"] += 1
            logger.info(
                "Processed %s job %s from %s in %.2fs",
                record.event.event_type.value, record.job_id, record.queue_name.value, elapsed,
            )
        else:
            self.counters["acks_lost"] += 1

    async def _report_failure(self, record: QueueRecord, exc: Exception) -> None:
        self.counters["failed"] += 1
        error_class = classify_error(exc)
        logger.warning(
            "Job %s (%s) failed with %s: %s",
            record.job_id, record.event.event_type.value, error_class.value, exc,
        )
        try:
            decision = await self._queue.fail(record.job_id, record.lease_token, exc)
        except Exception as store_exc:
            self.last_store_error = str(store_exc)
            logger.error("Could not record failure of job %s: %s", record.job_id, store_exc)
            return
        if decision is None:
            return
        if decision.should_retry:
            self.counters["retried"] += 1
        else:
            self.counters["dead_lettered"] += 1
