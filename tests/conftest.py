"""
Test configuration and fixtures.
Uses a file-backed SQLite database per test so worker code that opens its
own sessions sees the same data. Mocks all external services.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TOKEN_HASH_PEPPER", "test-pepper")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("DISPATCHER_ENABLED", "false")
os.environ.setdefault("GITHUB_API_TOKEN", "")

import fnmatch
import time
import uuid
from contextlib import ExitStack
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import event as sa_event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

import src.models  # noqa: F401 - registers every table on Base.metadata
from src.database import Base
from src.models.project import Project
from src.schemas.events import CanonicalEvent, EventKind


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


SESSION_FACTORY_TARGETS = (
    "src.api.webhooks.async_session_factory",
    "src.services.ingress_audit.async_session_factory",
    "src.workers.event_dispatcher.async_session_factory",
)


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite database, WAL mode so readers never block writers."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    @sa_event.listens_for(engine.sync_engine, "connect")
    def _set_wal(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    """Session for arranging and asserting test state."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def patch_sessions(session_factory):
    """Point every module that opens its own sessions at the test database."""
    with ExitStack() as stack:
        for target in SESSION_FACTORY_TARGETS:
            stack.enter_context(patch(target, session_factory))
        yield session_factory


@pytest.fixture
async def project(db):
    p = Project(name="Checkout rewrite", repository="acme/shop")
    db.add(p)
    await db.commit()
    return p


def make_event(
    project_id: uuid.UUID,
    kind: EventKind = EventKind.TASK_STARTED,
    payload: dict | None = None,
    source_id: str = "agent-1",
    external_event_id: str | None = None,
    occurred_at: datetime | None = None,
) -> CanonicalEvent:
    """CanonicalEvent as the normalizer would produce it."""
    now = datetime.now(timezone.utc)
    external_event_id = external_event_id or f"evt-{uuid.uuid4().hex[:12]}"
    return CanonicalEvent(
        external_event_id=external_event_id,
        dedup_key=external_event_id,
        source_id=source_id,
        project_id=project_id,
        kind=kind,
        occurred_at=occurred_at or now,
        payload=payload if payload is not None else {"task_id": "T-1"},
        received_at=now,
        available_at=now,
    )


class FakePipeline:
    """Queues commands and runs them against FakeRedis on execute()."""

    def __init__(self, redis):
        self._redis = redis
        self._calls = []

    def __getattr__(self, name):
        def _queue(*args, **kwargs):
            self._calls.append((name, args, kwargs))
            return self
        return _queue

    async def execute(self):
        results = []
        for name, args, kwargs in self._calls:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._calls = []
        return results


class FakeRedis:
    """
    In-memory double for the Redis commands the pipeline uses.
    TTLs are stored but only enforced for keys whose expiry is in the past
    relative to time.time(), so tests can advance the clock with patch.
    """

    def __init__(self):
        self.values: dict = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.lists: dict[str, list] = {}
        self.expiry: dict[str, float] = {}
        self.published: list[tuple[str, str]] = []

    def _expired(self, key):
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.time():
            self.values.pop(key, None)
            self.zsets.pop(key, None)
            self.expiry.pop(key, None)
            return True
        return False

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def ping(self):
        return True

    async def get(self, key):
        self._expired(key)
        value = self.values.get(key)
        return None if value is None else str(value)

    async def set(self, key, value, ex=None, nx=False):
        self._expired(key)
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex is not None:
            self.expiry[key] = time.time() + ex
        else:
            self.expiry.pop(key, None)
        return True

    async def exists(self, *keys):
        return sum(1 for k in keys if not self._expired(k) and (k in self.values or k in self.zsets))

    async def delete(self, *keys):
        removed = 0
        for k in keys:
            removed += int(self.values.pop(k, None) is not None or self.zsets.pop(k, None) is not None)
            self.expiry.pop(k, None)
        return removed

    async def incr(self, key):
        self._expired(key)
        self.values[key] = int(self.values.get(key, 0)) + 1
        return self.values[key]

    async def expire(self, key, seconds, nx=False):
        if nx and key in self.expiry:
            return False
        self.expiry[key] = time.time() + seconds
        return True

    async def ttl(self, key):
        if key not in self.expiry:
            return -1
        return int(self.expiry[key] - time.time())

    async def zremrangebyscore(self, key, min_score, max_score):
        zset = self.zsets.get(key, {})
        doomed = [m for m, s in zset.items() if min_score <= s <= max_score]
        for m in doomed:
            del zset[m]
        return len(doomed)

    async def zadd(self, key, mapping):
        self._expired(key)
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def zrange(self, key, start, end, withscores=False):
        items = sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1])
        end = len(items) if end == -1 else end + 1
        items = items[start:end]
        return items if withscores else [m for m, _ in items]

    async def zrem(self, key, *members):
        zset = self.zsets.get(key, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    async def lpush(self, key, *values):
        lst = self.lists.setdefault(key, [])
        for v in values:
            lst.insert(0, v)
        return len(lst)

    async def ltrim(self, key, start, end):
        lst = self.lists.get(key, [])
        self.lists[key] = lst[start:end + 1]
        return True

    async def rpop(self, key):
        lst = self.lists.get(key, [])
        return lst.pop() if lst else None

    async def brpop(self, key, timeout=0):
        value = await self.rpop(key)
        return (key, value) if value is not None else None

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    async def scan_iter(self, match=None):
        for key in list(self.values):
            if not self._expired(key) and (match is None or fnmatch.fnmatch(key, match)):
                yield key

    async def aclose(self):
        return None


@pytest.fixture
def fake_redis():
    """Stateful in-memory Redis patched in wherever the pipeline reaches for it."""
    redis = FakeRedis()
    getter = AsyncMock(return_value=redis)
    with patch("src.utils.dedup.get_redis", getter), \
            patch("src.services.cache_invalidation.get_redis", getter):
        yield redis


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("src.utils.dedup.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def mock_alert():
    """Captures alerts instead of posting them."""
    with patch("src.workers.event_dispatcher.send_alert", new_callable=AsyncMock) as mock:
        yield mock
