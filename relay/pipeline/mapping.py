"""Bidirectional ticket <-> thread bindings.

Each binding is stored twice, under ``by-ticket:{ticketId}`` and
``by-thread:{threadId}``, so either side resolves with one key read. Both
keys are written in one transaction; if that fails neither key exists and the
caller retries the whole ``bind``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from sqlalchemy.exc import IntegrityError, OperationalError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.stop import stop_base

from relay.errors import BindingConflict, MappingNotFound
from relay.pipeline.kv_store import KeyValueStore
from relay.schemas.queue import ThreadBinding

logger = logging.getLogger(__name__)

TICKET_PREFIX = "by-ticket:"
THREAD_PREFIX = "by-thread:"


def ticket_key(ticket_id: str) -> str:
    return f"{TICKET_PREFIX}{ticket_id}"


def thread_key(thread_id: str) -> str:
    return f"{THREAD_PREFIX}{thread_id}"


class MappingStore:
    def __init__(self, kv: KeyValueStore, bind_attempts: int = 3) -> None:
        self._kv = kv
        self._bind_attempts = bind_attempts

    async def bind(self, ticket_id: str, thread_id: str) -> ThreadBinding:
        """Bind ``ticket_id`` to ``thread_id``.

        Re-binding the same pair is a no-op that returns the stored binding.
        Binding either side to a different counterpart raises
        ``BindingConflict``; an existing binding is never overwritten.
        """
        if not ticket_id or not thread_id:
            raise ValueError("ticket_id and thread_id are required")

        retrying = AsyncRetrying(
            # Lost a race with a concurrent binder or the store hiccuped;
            # nothing was written, so the whole bind is safe to repeat.
            retry=retry_if_exception_type((IntegrityError, OperationalError)),
            stop=stop_after_attempt(self._bind_attempts),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return await retrying(self._bind_once, ticket_id, thread_id)

    async def _bind_once(self, ticket_id: str, thread_id: str) -> ThreadBinding:
        t_key, th_key = ticket_key(ticket_id), thread_key(thread_id)
        existing = await self._kv.get_many([t_key, th_key])
        by_ticket = _parse(existing.get(t_key))
        by_thread = _parse(existing.get(th_key))

        if by_ticket and by_ticket.thread_id != thread_id:
            raise BindingConflict(
                f"Ticket {ticket_id} is already bound to thread {by_ticket.thread_id}",
                details={"ticket_id": ticket_id, "thread_id": by_ticket.thread_id},
            )
        if by_thread and by_thread.ticket_id != ticket_id:
            raise BindingConflict(
                f"Thread {thread_id} is already bound to ticket {by_thread.ticket_id}",
                details={"ticket_id": by_thread.ticket_id, "thread_id": thread_id},
            )

        if by_ticket and by_thread:
            logger.debug("Ticket %s already bound to thread %s", ticket_id, thread_id)
            return by_ticket

        # Either nothing exists yet, or a half-written pair left by an older
        # writer; complete it with the surviving record's timestamp.
        binding = by_ticket or by_thread or ThreadBinding(
            ticket_id=ticket_id, thread_id=thread_id, created_at=self._kv.now()
        )
        raw = binding.model_dump_json()
        missing = {key: raw for key, present in ((t_key, by_ticket), (th_key, by_thread)) if not present}
        await self._kv.insert_all(missing)
        logger.info("Bound ticket %s with thread %s", ticket_id, thread_id)
        return binding

    async def resolve_by_ticket(self, ticket_id: str) -> ThreadBinding:
        binding = _parse(await self._kv.get(ticket_key(ticket_id)))
        if binding is None:
            raise MappingNotFound(
                f"No thread bound to ticket {ticket_id}",
                context={"ticket_id": ticket_id},
            )
        return binding

    async def resolve_by_thread(self, thread_id: str) -> ThreadBinding:
        binding = _parse(await self._kv.get(thread_key(thread_id)))
        if binding is None:
            raise MappingNotFound(
                f"No ticket bound to thread {thread_id}",
                context={"thread_id": thread_id},
            )
        return binding

    async def find_by_ticket(self, ticket_id: str) -> ThreadBinding | None:
        return _parse(await self._kv.get(ticket_key(ticket_id)))

    async def find_by_thread(self, thread_id: str) -> ThreadBinding | None:
        return _parse(await self._kv.get(thread_key(thread_id)))


def _parse(raw: str | None) -> ThreadBinding | None:
    if raw is None:
        return None
    return ThreadBinding.model_validate_json(raw)


class stop_after_window(stop_base):
    """Stop once ``max_window`` seconds have passed on ``clock`` since ``started``."""

    def __init__(self, max_window: float, clock: Callable[[], float], started: float) -> None:
        self.max_window = max_window
        self.clock = clock
        self.started = started

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self.clock() - self.started >= self.max_window


async def resolve_with_retry(
    lookup: Callable[[str], Awaitable[ThreadBinding]],
    key: str,
    *,
    max_attempts: int = 3,
    max_window: float = 10.0,
    base_delay: float = 1.0,
    max_delay: float = 5.0,
    jitter: float = 0.1,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ThreadBinding:
    """Resolve a binding, tolerating a webhook that raced ahead of ``bind``.

    Only ``MappingNotFound`` is retried, with capped exponential delay, for at
    most ``max_attempts`` tries inside ``max_window`` seconds. The final
    ``MappingNotFound`` carries ``attempts_made``, ``total_retry_time`` and
    ``likely_race_condition`` in its context.
    """
    started = clock()
    backoff = wait_exponential_jitter(initial=base_delay, max=max_delay, jitter=base_delay * jitter)

    def wait_within_window(retry_state: RetryCallState) -> float:
        remaining = max(max_window - (clock() - started), 0.0)
        return min(backoff(retry_state), remaining)

    def log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            "Mapping not found for %s (attempt %d/%d, %.2fs elapsed); retrying in %.2fs",
            key, retry_state.attempt_number, max_attempts, clock() - started,
            retry_state.next_action.sleep,
        )

    attempts = 0
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(MappingNotFound),
            stop=stop_after_attempt(max_attempts) | stop_after_window(max_window, clock, started),
            wait=wait_within_window,
            before_sleep=log_retry,
            sleep=sleep,
            reraise=True,
        ):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                binding = await lookup(key)
                if attempts > 1:
                    logger.info("Mapping for %s resolved on attempt %d", key, attempts)
                return binding
    except MappingNotFound as exc:
        last_error = exc

    total = clock() - started
    likely_race = total < max_window
    context = dict(last_error.context)
    context.update({
        "attempts_made": attempts,
        "total_retry_time": round(total, 3),
        "likely_race_condition": likely_race,
        "original_error": str(last_error),
    })
    if likely_race:
        logger.warning(
            "Potential race for %s: mapping still missing after %d attempts over %.2fs",
            key, attempts, total,
        )
    else:
        logger.error(
            "Mapping lookup for %s failed after %d attempts over %.2fs; treating as unmapped",
            key, attempts, total,
        )
    raise MappingNotFound(str(last_error), context=context) from last_error
