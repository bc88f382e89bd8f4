"""Tests for the durable queues: leases, retries, dead letters, fairness."""

import pytest

from relay.database import async_session
from relay.errors import ErrorClass, TransientPlatformError, ValidationError
from relay.pipeline.dedup import DeduplicationIndex, fingerprint_key
from relay.pipeline.queue_manager import QueueManager
from relay.pipeline.retry import RetryPolicy
from relay.schemas.events import EventSource, Platform, Priority
from relay.schemas.queue import QueueName


@pytest.fixture
def queue(clock):
    return QueueManager(
        async_session,
        DeduplicationIndex(ttl_seconds=300, clock=clock),
        {
            QueueName.NORMAL: RetryPolicy(max_attempts=3),
            QueueName.PRIORITY: RetryPolicy(max_attempts=2),
        },
        clock=clock,
    )


async def test_enqueue_routes_by_priority(queue, make_event):
    await queue.enqueue(make_event("T1"))
    await queue.enqueue(make_event("T2", priority=Priority.HIGH))
    await queue.enqueue(make_event("T3"), priority=Priority.HIGH)
    await queue.enqueue(make_event("T4", priority=Priority.LOW))

    sizes = await queue.queue_sizes()
    assert sizes == {"queue:normal": 2, "queue:priority": 2, "queue:dead-letter": 0}


async def test_dequeue_leases_and_ack_removes(queue, make_event):
    event = make_event("T1")
    job_id = await queue.enqueue(event)
    assert job_id == str(event.event_id)

    record = await queue.dequeue(lease_duration=30)
    assert record.job_id == job_id
    assert record.queue_name is QueueName.NORMAL
    assert record.event.payload.text == "Hello from support"
    assert (record.lease_expires_at - record.enqueued_at).total_seconds() == 30

    # Leased records are invisible to other workers.
    assert await queue.dequeue(lease_duration=30) is None

    assert await queue.ack(record.job_id, record.lease_token) is True
    assert (await queue.queue_sizes())["queue:normal"] == 0


async def test_ack_with_stale_token_is_ignored(queue, make_event):
    await queue.enqueue(make_event("T1"))
    record = await queue.dequeue(lease_duration=30)
    assert await queue.ack(record.job_id, "not-my-lease") is False
    assert (await queue.queue_sizes())["queue:normal"] == 1


async def test_duplicate_content_is_not_queued_twice(queue, make_event, clock):
    first = make_event("T1", "Same  text\nhere")
    second = make_event("T1", "Same text here")

    first_result = await queue.submit(first)
    second_result = await queue.submit(second)
    assert second_result.duplicate is True
    assert second_result.job_id == first_result.job_id
    assert (await queue.queue_sizes())["queue:normal"] == 1

    clock.advance(301)
    third = await queue.submit(make_event("T1", "Same text here"))
    assert third.duplicate is False


async def test_fingerprint_depends_on_conversation_and_platform(make_event):
    base = fingerprint_key(make_event("T1", "hello there"))
    assert base.startswith("dedup:")
    assert base == fingerprint_key(make_event("T1", "hello   there"))
    assert base != fingerprint_key(make_event("T2", "hello there"))
    assert base != fingerprint_key(make_event("T1", "hello there", source=Platform.CHAT))


async def test_retryable_failure_is_delayed_not_dropped(queue, make_event, clock):
    await queue.enqueue(make_event("T1"))
    record = await queue.dequeue(lease_duration=30)

    decision = await queue.fail(record.job_id, record.lease_token, TransientPlatformError("503"))
    assert decision.should_retry
    assert decision.delay == 1.0

    # Not visible until the backoff has elapsed.
    assert await queue.dequeue(lease_duration=30) is None
    clock.advance(1)
    retried = await queue.dequeue(lease_duration=30)
    assert retried.job_id == record.job_id
    assert retried.event.attempt_count == 1


async def test_exhausted_retries_move_to_dead_letter(queue, make_event, clock):
    await queue.enqueue(make_event("T1"))
    for attempt in range(1, 4):
        record = await queue.dequeue(lease_duration=30)
        assert record is not None
        decision = await queue.fail(record.job_id, record.lease_token, ErrorClass.SERVICE_UNAVAILABLE)
        clock.advance(60)

    assert not decision.should_retry
    assert await queue.dequeue(lease_duration=30) is None

    dead = await queue.list_dead_letters()
    assert len(dead) == 1
    assert dead[0].original_queue is QueueName.NORMAL
    assert dead[0].error_class == "service_unavailable"
    assert dead[0].event.attempt_count == 3


async def test_non_retryable_failure_dead_letters_immediately(queue, make_event):
    await queue.enqueue(make_event("T1", priority=Priority.HIGH))
    record = await queue.dequeue(lease_duration=30)

    decision = await queue.fail(record.job_id, record.lease_token, ValidationError("bad payload"))
    assert not decision.should_retry

    dead = await queue.list_dead_letters()
    assert dead[0].original_queue is QueueName.PRIORITY
    assert dead[0].error_message == "bad payload"
    assert dead[0].error_class == "validation"


async def test_expired_lease_is_redelivered_as_failed_attempt(queue, make_event, clock):
    await queue.enqueue(make_event("T1"))
    first = await queue.dequeue(lease_duration=30)

    clock.advance(31)
    second = await queue.dequeue(lease_duration=30)
    assert second.job_id == first.job_id
    assert second.lease_token != first.lease_token
    assert second.event.attempt_count == 1

    # The stalled worker lost its lease.
    assert await queue.ack(first.job_id, first.lease_token) is False
    assert await queue.fail(first.job_id, first.lease_token, ErrorClass.TIMEOUT) is None
    assert await queue.ack(second.job_id, second.lease_token) is True


async def test_repeatedly_stalled_record_ends_in_dead_letter(queue, make_event, clock):
    await queue.enqueue(make_event("T1", priority=Priority.HIGH))
    await queue.dequeue(lease_duration=10)
    clock.advance(11)
    assert await queue.dequeue(lease_duration=10) is not None
    clock.advance(11)

    # Priority queue allows two attempts; the second expiry exhausts them.
    assert await queue.dequeue(lease_duration=10) is None
    dead = await queue.list_dead_letters()
    assert dead[0].error_class == "lease_expired"
    assert dead[0].error_message == "lease expired before ack (attempt 2)"


async def test_weighted_round_robin_serves_both_queues(queue, make_event):
    for n in range(6):
        await queue.enqueue(make_event(f"P{n}", priority=Priority.HIGH))
        await queue.enqueue(make_event(f"N{n}"))

    served = []
    for _ in range(9):
        record = await queue.dequeue(lease_duration=30)
        served.append(record.queue_name)
        await queue.ack(record.job_id, record.lease_token)

    assert served.count(QueueName.PRIORITY) == 6
    assert served.count(QueueName.NORMAL) == 3
    # Normal work is interleaved, not deferred until priority drains.
    assert QueueName.NORMAL in served[:3]


async def test_empty_preferred_queue_falls_through(queue, make_event):
    for n in range(3):
        await queue.enqueue(make_event(f"N{n}"))
    for _ in range(3):
        record = await queue.dequeue(lease_duration=30)
        assert record.queue_name is QueueName.NORMAL


async def test_dequeue_can_be_restricted_to_queues(queue, make_event):
    await queue.enqueue(make_event("P1", priority=Priority.HIGH))
    assert await queue.dequeue(lease_duration=30, queue_names=[QueueName.NORMAL]) is None
    record = await queue.dequeue(lease_duration=30, queue_names=[QueueName.PRIORITY])
    assert record.queue_name is QueueName.PRIORITY


async def test_replay_creates_fresh_events_on_normal_queue(queue, make_event):
    original = make_event("P1", priority=Priority.HIGH)
    await queue.enqueue(original)
    record = await queue.dequeue(lease_duration=30)
    await queue.fail(record.job_id, record.lease_token, ValidationError("bad"))

    assert await queue.replay_dead_letter(limit=10) == 1
    sizes = await queue.queue_sizes()
    assert sizes["queue:dead-letter"] == 0
    assert sizes["queue:normal"] == 1

    replayed = await queue.dequeue(lease_duration=30)
    assert replayed.queue_name is QueueName.NORMAL
    assert replayed.event.event_id != original.event_id
    assert replayed.event.source is EventSource.RETRY
    assert replayed.event.attempt_count == 0
    assert replayed.event.conversation_id == "P1"


async def test_dequeue_waits_up_to_timeout(queue):
    assert await queue.dequeue(lease_duration=30, timeout=0.05) is None
