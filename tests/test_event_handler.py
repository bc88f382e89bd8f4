"""Tests for thread creation, status mirroring and event routing."""

from unittest.mock import AsyncMock

import pytest

from relay.database import async_session
from relay.errors import BindingConflict, ValidationError
from relay.handlers.event_handler import EventHandlers
from relay.handlers.status_sync import StatusSync
from relay.handlers.thread_sync import ThreadSync
from relay.pipeline.kv_store import KeyValueStore
from relay.pipeline.mapping import MappingStore
from relay.schemas.events import Author, Event, EventType, Platform, StatusChangedPayload, ThreadCreatedPayload


def _thread_event(source: Platform, conversation_id: str, **fields) -> Event:
    return Event(
        source_platform=source,
        target_platform=source.counterpart,
        payload=ThreadCreatedPayload(conversation_id=conversation_id, **fields),
    )


def _status_event(status: str | None, **fields) -> Event:
    return Event(
        source_platform=Platform.TICKETING,
        target_platform=Platform.CHAT,
        payload=StatusChangedPayload(conversation_id="T1", status=status, friendly_id="42", **fields),
    )


@pytest.fixture
def mappings():
    return MappingStore(KeyValueStore(async_session))


@pytest.fixture
def chat():
    mock_chat = AsyncMock()
    mock_chat.create_thread.return_value = "thread-9"
    mock_chat.send_message.return_value = "chat-msg-1"
    return mock_chat


@pytest.fixture
def ticketing():
    mock_ticketing = AsyncMock()
    mock_ticketing.get_or_create_customer.return_value = "cust-1"
    mock_ticketing.create_ticket.return_value = {"id": "T9", "friendly_id": "9"}
    return mock_ticketing


@pytest.fixture
def threads(chat, ticketing, mappings):
    return ThreadSync(chat, ticketing, mappings, parent_channel_id="forum-1")


async def test_new_chat_thread_opens_ticket_and_binds(threads, ticketing, chat, mappings):
    event = _thread_event(
        Platform.CHAT, "thread-1", title="Login broken", text="Cannot log in", author=Author(id="u1", name="Sam"),
    )

    ticket_id = await threads.open_ticket(event)

    assert ticket_id == "T9"
    ticketing.create_ticket.assert_awaited_once_with(
        "Login broken",
        "Cannot log in",
        customer_id="cust-1",
        on_behalf_of={"name": "Sam", "email": "u1@chat.invalid"},
    )
    assert (await mappings.resolve_by_thread("thread-1")).ticket_id == "T9"
    chat.send_message.assert_awaited_once()


async def test_thread_created_twice_opens_one_ticket(threads, ticketing):
    event = _thread_event(Platform.CHAT, "thread-1", title="Login broken", author=Author(id="u1"))
    await threads.open_ticket(event)
    assert await threads.open_ticket(event) == "T9"
    assert ticketing.create_ticket.await_count == 1


async def test_ticket_confirmation_failure_is_not_fatal(threads, chat, mappings):
    chat.send_message.side_effect = RuntimeError("chat down")
    await threads.open_ticket(_thread_event(Platform.CHAT, "thread-1", title="x"))
    assert await mappings.find_by_thread("thread-1") is not None


async def test_new_ticket_opens_thread(threads, chat, mappings):
    event = _thread_event(Platform.TICKETING, "T1", title="Printer on fire", friendly_id="7", text="Help")

    thread_id = await threads.open_thread(event)

    assert thread_id == "thread-9"
    chat.create_thread.assert_awaited_once_with("forum-1", "#7 Printer on fire")
    chat.send_message.assert_awaited_once_with("thread-9", "Help")
    assert (await mappings.resolve_by_ticket("T1")).thread_id == "thread-9"


async def test_new_ticket_without_parent_channel_is_rejected(chat, ticketing, mappings):
    threads = ThreadSync(chat, ticketing, mappings)
    with pytest.raises(ValidationError):
        await threads.open_thread(_thread_event(Platform.TICKETING, "T1", title="x"))
    chat.create_thread.assert_not_awaited()


async def test_conflicting_bind_surfaces(threads, mappings):
    await mappings.bind("T9", "thread-other")
    with pytest.raises(BindingConflict):
        await threads.open_ticket(_thread_event(Platform.CHAT, "thread-1", title="x"))


async def test_status_change_posts_notice_and_archives(chat, mappings):
    await mappings.bind("T1", "thread-1")
    statuses = StatusSync(chat, mappings, ["closed", "resolved"])

    assert await statuses.apply(_status_event("resolved")) is True

    args, kwargs = chat.send_message.await_args
    assert args == ("thread-1", "Ticket #42 status: Resolved")
    assert kwargs["embeds"][0]["title"] == "Ticket Status Updated"
    chat.archive_thread.assert_awaited_once_with("thread-1")


async def test_open_status_does_not_archive(chat, mappings):
    await mappings.bind("T1", "thread-1")
    await StatusSync(chat, mappings).apply(_status_event("in_progress"))

    assert chat.send_message.await_args.args[1] == "Ticket #42 status: In Progress"
    chat.archive_thread.assert_not_awaited()


async def test_archive_failure_is_logged_only(chat, mappings):
    await mappings.bind("T1", "thread-1")
    chat.archive_thread.side_effect = RuntimeError("missing permission")
    assert await StatusSync(chat, mappings).apply(_status_event("closed")) is True


async def test_status_for_unbound_ticket_is_skipped(chat, mappings):
    assert await StatusSync(chat, mappings).apply(_status_event("closed")) is False
    chat.send_message.assert_not_awaited()


async def test_tag_only_update_is_not_posted(chat, mappings):
    await mappings.bind("T1", "thread-1")
    assert await StatusSync(chat, mappings).apply(_status_event(None, tags=["billing"])) is False
    chat.send_message.assert_not_awaited()


async def test_registry_routes_by_direction():
    messages, threads, statuses = AsyncMock(), AsyncMock(), AsyncMock()
    handlers = EventHandlers(messages, threads, statuses)
    registry = handlers.registry()
    assert set(registry) == set(EventType)

    await registry[EventType.THREAD_CREATED](_thread_event(Platform.CHAT, "thread-1"))
    await registry[EventType.THREAD_CREATED](_thread_event(Platform.TICKETING, "T1"))
    threads.open_ticket.assert_awaited_once()
    threads.open_thread.assert_awaited_once()

    await registry[EventType.CONVERSATION_STATUS_CHANGED](_status_event("open"))
    statuses.apply.assert_awaited_once()


async def test_status_towards_ticketing_is_rejected():
    handlers = EventHandlers(AsyncMock(), AsyncMock(), AsyncMock())
    event = Event(
        source_platform=Platform.CHAT,
        target_platform=Platform.TICKETING,
        payload=StatusChangedPayload(conversation_id="thread-1", status="open"),
    )
    with pytest.raises(ValidationError):
        await handlers.handle_status_changed(event)
