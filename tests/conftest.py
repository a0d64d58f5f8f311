"""Shared fixtures: in-memory SQLite database and a Redis Streams fake."""

import asyncio
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SERPER_API_KEY", "test-serper-key")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import deepsearch.models  # noqa: F401
from deepsearch.database import Base


@pytest.fixture
async def session_maker() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enforce_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


class TickingClock:
    """Returns a strictly increasing UTC time on every call."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        self.step = step

    def __call__(self) -> datetime:
        self.now += self.step
        return self.now


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


class FakeStreamRedis:
    """In-process stand-in for the Redis commands the stream buffer and cache use."""

    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[bytes, dict[bytes, bytes]]]] = {}
        self.values: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}

    async def xadd(self, key, fields, maxlen=None, approximate=True):
        entries = self.streams.setdefault(key, [])
        msg_id = f"{len(entries) + 1}-0".encode()
        entries.append((
            msg_id,
            {k.encode(): str(v).encode() for k, v in fields.items()},
        ))
        return msg_id

    async def xread(self, streams, block=None, count=None):
        (key, last_id), = streams.items()
        last = last_id.decode() if isinstance(last_id, bytes) else last_id
        last_n = int(last.split("-")[0])
        pending = [
            (msg_id, fields)
            for msg_id, fields in self.streams.get(key, [])
            if int(msg_id.decode().split("-")[0]) > last_n
        ]
        if not pending:
            # Stand-in for XREAD BLOCK: give the publisher a turn
            await asyncio.sleep(0.005)
            return []
        return [(key.encode(), pending[:count] if count else pending)]

    async def expire(self, key, ttl):
        self.ttls[key] = ttl
        return key in self.streams or key in self.values

    async def exists(self, key):
        return int(key in self.streams or key in self.values)

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value.encode() if isinstance(value, str) else value
        if ex is not None:
            self.ttls[key] = ex
        return True


@pytest.fixture
def fake_redis() -> FakeStreamRedis:
    return FakeStreamRedis()
