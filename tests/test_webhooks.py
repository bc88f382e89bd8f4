"""Tests for the webhook and operations endpoints."""

from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient, ASGITransport

from relay.config import Settings
from relay.database import async_session
from relay.main import app
from relay.pipeline.pipeline import RelayPipeline


TICKET_MESSAGE = {
    "event": "message_created",
    "data": {
        "id": "msg-1",
        "conversationId": "conv-1",
        "text": "Hello from support",
        "userId": "agent-7",
    },
}

CHAT_MESSAGE = {
    "event": "message_create",
    "data": {
        "id": "m1",
        "threadId": "thread-1",
        "content": "My screen is blank",
        "author": {"id": "u1", "username": "sam"},
    },
}


@pytest.fixture
async def pipeline():
    relay_pipeline = RelayPipeline(async_session, AsyncMock(), AsyncMock(), Settings())
    app.state.pipeline = relay_pipeline
    yield relay_pipeline
    del app.state.pipeline


@pytest.fixture
async def client(pipeline):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


async def test_ticket_message_is_queued(client, pipeline):
    resp = await client.post("/api/v1/webhooks/ticketing", json=TICKET_MESSAGE)

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "queued"
    assert data["job_id"]
    assert (await pipeline.queue.queue_sizes())["queue:normal"] == 1


async def test_duplicate_webhook_returns_original_job(client, pipeline):
    resp1 = await client.post("/api/v1/webhooks/ticketing", json=TICKET_MESSAGE)
    resp2 = await client.post("/api/v1/webhooks/ticketing", json=TICKET_MESSAGE)

    assert resp2.status_code == 200
    assert resp2.json()["status"] == "duplicate"
    assert resp2.json()["job_id"] == resp1.json()["job_id"]
    assert (await pipeline.queue.queue_sizes())["queue:normal"] == 1


async def test_status_change_goes_to_priority_queue(client, pipeline):
    body = {"event": "conversation_updated", "data": {"id": "conv-1", "status": "closed"}}
    resp = await client.post("/api/v1/webhooks/ticketing", json=body)

    assert resp.json()["status"] == "queued"
    assert (await pipeline.queue.queue_sizes())["queue:priority"] == 1


async def test_malformed_event_is_rejected_without_error_status(client, pipeline):
    resp = await client.post("/api/v1/webhooks/ticketing", json={"event": "message_created", "data": {}})

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "rejected"
    assert data["errors"]
    assert sum((await pipeline.queue.queue_sizes()).values()) == 0


async def test_url_verification_is_never_queued(client, pipeline):
    resp = await client.post("/api/v1/webhooks/ticketing", json={"event": "url_verification", "data": {}})

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert sum((await pipeline.queue.queue_sizes()).values()) == 0


async def test_chat_message_is_queued(client, pipeline):
    resp = await client.post("/api/v1/webhooks/chat", json=CHAT_MESSAGE)

    assert resp.json()["status"] == "queued"
    record = await pipeline.queue.dequeue(30)
    assert record.event.target_platform.value == "ticketing"


async def test_chat_deletion_feeds_recency_guard(client, pipeline):
    body = {"event": "message_deleted", "data": {"id": "m1", "threadId": "thread-1"}}
    resp = await client.post("/api/v1/webhooks/chat", json=body)

    assert resp.json()["status"] == "ignored"
    assert await pipeline.deletions.recently_deleted("thread-1")
    assert sum((await pipeline.queue.queue_sizes()).values()) == 0


async def test_queue_status(client, pipeline):
    await client.post("/api/v1/webhooks/ticketing", json=TICKET_MESSAGE)
    await client.post("/api/v1/webhooks/ticketing", json=TICKET_MESSAGE)

    resp = await client.get("/api/v1/queue/status")

    assert resp.status_code == 200
    data = resp.json()
    assert data["queue_sizes"]["queue:normal"] == 1
    assert data["is_processing"] is False
    assert data["active_workers"] == 0
    assert data["counters"]["queued"] == 1
    assert data["counters"]["duplicates"] == 1


async def test_dead_letter_inspection_and_replay(client, pipeline):
    await client.post("/api/v1/webhooks/ticketing", json=TICKET_MESSAGE)
    record = await pipeline.queue.dequeue(30)
    await pipeline.queue.fail(record.job_id, record.lease_token, RuntimeError("Authorization failed"))

    resp = await client.get("/api/v1/queue/dead-letter", params={"limit": 10})
    dead = resp.json()
    assert len(dead) == 1
    assert dead[0]["error_class"] == "auth"
    assert dead[0]["original_queue"] == "queue:normal"

    resp = await client.post("/api/v1/queue/dead-letter/replay", params={"limit": 10})
    assert resp.json() == {"replayed": 1}
    sizes = await pipeline.queue.queue_sizes()
    assert sizes["queue:dead-letter"] == 0
    assert sizes["queue:normal"] == 1


async def test_health_reports_degraded_when_dispatcher_stopped(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["store"] is True
    assert "dispatcher not running" in data["reasons"]


async def test_health_is_healthy_while_processing(client, file_db):
    config = Settings(normal_concurrency=1, priority_concurrency=1, poll_interval_seconds=0.01)
    running = RelayPipeline(file_db, AsyncMock(), AsyncMock(), config)
    app.state.pipeline = running
    await running.start()
    try:
        resp = await client.get("/health")
    finally:
        await running.stop(drain_timeout=1)

    assert resp.json()["status"] == "healthy"
