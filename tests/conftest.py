"""
tests/conftest.py — Shared Test Fixtures
=========================================

In-memory doubles for every external dependency: SQLite for storage, a
dict-backed Redis, an ``httpx.MockTransport`` backend, and a responder
that records replies instead of talking to Discord.
"""

from __future__ import annotations

import asyncio
import fnmatch
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB

from tasklink.config import TaskLinkConfig
from tasklink.database.models import Base
from tasklink.engine.cache import CacheLayer
from tasklink.engine.interactions import (
    Interaction,
    InteractionExpired,
    InteractionKind,
    Invoker,
    Reply,
)

TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
OLD_ACCOUNT = datetime(2020, 1, 1, tzinfo=UTC)
GUILD_ID = "5001"
CHANNEL_ID = "7001"

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run *coro* to completion on a fresh event loop."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------
class FakeClock:
    """Controllable clock.  Call it for an aware datetime, ``.time()`` for epoch seconds."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Redis double
# ---------------------------------------------------------------------------
class _FakePipeline:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._ops: list[tuple[str, str, int | None]] = []

    async def __aenter__(self) -> _FakePipeline:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self._ops.clear()

    def set(self, name: str, value: str, ex: int | None = None) -> _FakePipeline:
        self._ops.append((name, value, ex))
        return self

    async def execute(self) -> list[bool]:
        self._redis._check()
        for name, value, ex in self._ops:
            self._redis.store[name] = value
            self._redis.ttls[name] = ex
        return [True] * len(self._ops)


class FakeRedis:
    """Dict-backed stand-in for ``redis.asyncio.Redis`` (decoded responses).

    Set ``fail = True`` to make every call raise a connection error.
    """

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("fake redis is down")

    async def ping(self) -> bool:
        self._check()
        return True

    async def set(self, name: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.store[name] = value
        self.ttls[name] = ex
        return True

    async def get(self, name: str) -> str | None:
        self._check()
        return self.store.get(name)

    async def delete(self, *names: str) -> int:
        self._check()
        removed = 0
        for name in names:
            if self.store.pop(name, None) is not None:
                self.ttls.pop(name, None)
                removed += 1
        return removed

    async def exists(self, name: str) -> int:
        self._check()
        return int(name in self.store)

    async def mget(self, names: list[str]) -> list[str | None]:
        self._check()
        return [self.store.get(n) for n in names]

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        return _FakePipeline(self)

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        self._check()
        for name in list(self.store):
            if match is None or fnmatch.fnmatchcase(name, match):
                yield name

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Backend double
# ---------------------------------------------------------------------------
class BackendStub:
    """Canned backend responses keyed by ``(method, path)``.

    A route holds a list of responses; each call consumes one until the
    last, which then repeats.  Unrouted requests get a 404.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Any]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, json: Any = None, status: int = 200,
            headers: dict[str, str] | None = None) -> None:
        self.routes.setdefault((method.upper(), path), []).append((status, json, headers))

    def raise_on(self, method: str, path: str, exc: Exception) -> None:
        self.routes.setdefault((method.upper(), path), []).append(exc)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": "not found"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        status, body, headers = item
        if body is None:
            return httpx.Response(status, headers=headers)
        return httpx.Response(status, json=body, headers=headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r.method == method.upper() and r.url.path == path)


async def no_sleep(_: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Discord doubles
# ---------------------------------------------------------------------------
class FakeResponder:
    """Records what the dispatcher sends.  ``expired=True`` refuses everything."""

    def __init__(self, *, expired: bool = False) -> None:
        self.expired = expired
        self.replies: list[Reply] = []
        self.edits: list[Reply] = []
        self.deferred: list[bool] = []
        self._responded = False

    @property
    def responded(self) -> bool:
        return self._responded

    async def reply(self, reply: Reply) -> None:
        if self.expired:
            raise InteractionExpired("Unknown interaction")
        self.replies.append(reply)
        self._responded = True

    async def edit_reply(self, reply: Reply) -> None:
        if self.expired:
            raise InteractionExpired("Unknown interaction")
        self.edits.append(reply)

    async def defer_reply(self, *, ephemeral: bool = True) -> None:
        if self.expired:
            raise InteractionExpired("Unknown interaction")
        self.deferred.append(ephemeral)
        self._responded = True

    async def get_user(self, user_id: str) -> Any:
        return None

    async def get_guild_member(self, user_id: str) -> Any:
        return None

    async def get_guild_owner(self) -> Any:
        return None

    @property
    def sent(self) -> list[Reply]:
        """Every reply or edit, in the order they were made."""
        return [*self.replies, *self.edits]

    @property
    def last(self) -> Reply:
        return self.sent[-1]


def make_invoker(
    user_id: str = "1001",
    *,
    member: bool = True,
    admin: bool = False,
    owner: bool = False,
    bot: bool = False,
    created_at: datetime = OLD_ACCOUNT,
) -> Invoker:
    return Invoker(
        user_id=user_id,
        created_at=created_at,
        bot=bot,
        display_name=f"user-{user_id}",
        is_member=member,
        is_admin=admin,
        is_owner=owner,
    )


def make_interaction(
    kind: InteractionKind = InteractionKind.SLASH_COMMAND,
    name: str = "help",
    *,
    options: dict[str, Any] | None = None,
    guild_id: str | None = GUILD_ID,
    channel_id: str | None = CHANNEL_ID,
    content: str | None = None,
    source_address: str | None = None,
    invoker: Invoker | None = None,
    **invoker_kw: Any,
) -> Interaction:
    return Interaction(
        kind=kind,
        invoker=invoker or make_invoker(**invoker_kw),
        guild_id=guild_id,
        channel_id=channel_id,
        name=name,
        options=options or {},
        content=content,
        source_address=source_address,
        id="9001",
    )


def make_config(**overrides: Any) -> TaskLinkConfig:
    values: dict[str, Any] = {
        "bot_token": "test-bot-token",
        "client_id": "123456789012345678",
        "storage_uri": "sqlite://",
        "api_base_url": "https://backend.test",
        "api_key": "test-api-key",
        "cache_url": "redis://cache.test:6379/0",
    }
    values.update(overrides)
    return TaskLinkConfig(**values)


def make_admin_token(sub: str = "99999", username: str = "FixtureAdmin", *, is_admin: bool = True) -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from tasklink.api.deps import JWT_ALGORITHM

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": is_admin},
        TEST_JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all TaskLink tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used by ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis) -> CacheLayer:
    """A connected cache layer over :class:`FakeRedis`."""
    layer = CacheLayer("redis://cache.test:6379/0", client=fake_redis, reconnect_interval=0.01)
    run_async(layer.connect())
    return layer


@pytest.fixture
def backend() -> BackendStub:
    return BackendStub()


@pytest.fixture
def runtime(db_engine, cache, backend):
    """A fully wired runtime over SQLite, FakeRedis and the backend stub."""
    from tasklink.runtime import build_runtime

    rt = build_runtime(make_config(), engine=db_engine, cache=cache, backend_transport=backend.transport)
    rt.backend._sleep = no_sleep
    yield rt
    run_async(rt.backend.close())


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()
