"""Database connection and session management."""

import logging
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from relay.config import settings

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _ensure_sqlite_directory(database_url: str) -> None:
    if not database_url.startswith("sqlite+aiosqlite:///"):
        return
    sqlite_path = database_url.removeprefix("sqlite+aiosqlite:///")
    if sqlite_path in {"", ":memory:"}:
        return
    db_file = Path(sqlite_path)
    if db_file.parent and str(db_file.parent) != ".":
        db_file.parent.mkdir(parents=True, exist_ok=True)


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; SQLite gets WAL and a generous busy timeout."""
    _ensure_sqlite_directory(database_url)
    if "sqlite" not in database_url:
        return create_async_engine(database_url, echo=echo, pool_pre_ping=True)

    sqlite_engine = create_async_engine(
        database_url,
        echo=echo,
        connect_args={"timeout": 30},
    )

    @event.listens_for(sqlite_engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA busy_timeout=30000;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    return sqlite_engine


engine = build_engine(settings.database_url, echo=settings.debug)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def init_db(target: AsyncEngine | None = None) -> None:
    # Model modules register their tables on Base.metadata when imported.
    import relay.models.kv_entry  # noqa: F401
    import relay.models.queue_job  # noqa: F401

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ping(session_factory: async_sessionmaker[AsyncSession]) -> bool:
    """Return True when the store answers a trivial query."""
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as exc:
        logger.error("Store ping failed: %s", exc)
        return False


async def close_db() -> None:
    await engine.dispose()
