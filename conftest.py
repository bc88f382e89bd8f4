"""Shared test configuration, loaded before any relay module."""

import os

# Override database URL before any relay modules are imported.
os.environ["RELAY_DATABASE_URL"] = "sqlite+aiosqlite://"

from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import relay.models.kv_entry  # noqa: F401
import relay.models.queue_job  # noqa: F401
from relay.database import Base, build_engine, engine, init_db
from relay.schemas.events import Author, Event, MessagePayload, Platform, Priority


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
async def _reset_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def file_db(tmp_path):
    """File-backed database for tests that run several workers at once."""
    file_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/relay.db")
    await init_db(target=file_engine)
    yield async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)
    await file_engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_event():
    def _make(
        conversation_id: str = "T1",
        text: str = "Hello from support",
        *,
        source: Platform = Platform.TICKETING,
        priority: Priority = Priority.NORMAL,
        origin: str | None = None,
        author: Author | None = Author(id="u1", name="Sam"),
    ) -> Event:
        return Event(
            source_platform=source,
            target_platform=source.counterpart,
            payload=MessagePayload(conversation_id=conversation_id, text=text, author=author, origin=origin),
            priority=int(priority),
        )

    return _make
