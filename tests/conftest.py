"""
tests/conftest.py -- Shared test fixtures for Cosmos unit and integration tests.

This module provides:
  - FakeRedis: in-memory async stand-in for redis.asyncio.Redis
  - fake_redis / cache: a FakeRedis and a CacheStore wrapping it
  - anyio_backend: pins @pytest.mark.anyio tests to asyncio
  - _make_test_stores(): creates isolated in-memory DBs for users, moderation
    and instance settings
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - api_client: TestClient plus admin / member tokens for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import fnmatch
import os
import time
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import NamedTuple

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from api.limiter import limiter
from api.main import app, build_services, shutdown_services
from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from cache.store import CacheStore
from core.config import get_settings
from instance.store import SettingStore
from moderation.store import ModerationStore

# ---------------------------------------------------------------------------
# Redis double
# ---------------------------------------------------------------------------


class _FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple]] = []

    async def __aenter__(self) -> "_FakePipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        self._ops.clear()

    def delete(self, *keys: str) -> "_FakePipeline":
        self._ops.append(("delete", keys))
        return self

    async def execute(self) -> list:
        results = []
        for name, args in self._ops:
            results.append(await getattr(self._redis, name)(*args))
        self._ops.clear()
        return results


class FakeRedis:
    """The subset of redis.asyncio.Redis that CacheStore uses, in memory.

    Values are stored as str (decode_responses=True semantics). Set
    fail=True to make every call raise redis.exceptions.ConnectionError.
    """

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiry: dict[str, float] = {}
        self.fail = False
        self.calls: list[str] = []

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    def _live(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and time.monotonic() >= deadline:
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.data

    async def get(self, key: str):
        self._check("get")
        return self.data[key] if self._live(key) else None

    async def set(self, key: str, value, ex=None, px=None, nx=False):
        self._check("set")
        if nx and self._live(key):
            return None
        self.data[key] = str(value)
        self.expiry.pop(key, None)
        if ex:
            self.expiry[key] = time.monotonic() + ex
        elif px:
            self.expiry[key] = time.monotonic() + px / 1000
        return True

    async def mget(self, keys):
        self._check("mget")
        return [self.data[k] if self._live(k) else None for k in keys]

    async def delete(self, *keys: str) -> int:
        self._check("delete")
        removed = 0
        for k in keys:
            if self._live(k):
                del self.data[k]
                self.expiry.pop(k, None)
                removed += 1
        return removed

    async def scan(self, cursor=0, match=None, count=None):
        self._check("scan")
        # Two pages, so callers must follow the cursor.
        keys = sorted(k for k in list(self.data) if self._live(k) and (match is None or fnmatch.fnmatchcase(k, match)))
        half = len(keys) // 2
        if int(cursor) == 0 and half:
            return 1, keys[:half]
        return 0, keys[half:] if int(cursor) == 1 else keys

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        self._check("pipeline")
        return _FakePipeline(self)

    async def incr(self, key: str) -> int:
        self._check("incr")
        value = int(self.data.get(key, "0")) + 1
        self.data[key] = str(value)
        return value

    async def ping(self) -> bool:
        self._check("ping")
        return True

    async def aclose(self) -> None:
        self.calls.append("aclose")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis: FakeRedis) -> CacheStore:
    return CacheStore(fake_redis, prefix="cosmos")


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, ModerationStore, SettingStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   and fixtures don't share state (e.g. 'api', 'unit').
    """
    url = f"sqlite:///file:test_cosmos_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=url), ModerationStore(db_url=url), SettingStore(db_url=url)


def _patch_lifespan(
    user_store: UserStore,
    moderation: ModerationStore,
    setting_store: SettingStore,
    cache: CacheStore,
):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores and cache into app.state through the same
    build_services() the real lifespan uses.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app.state, get_settings(), user_store, moderation, setting_store, cache)
        app.state.registry.start_background_init()
        yield
        await shutdown_services(app.state)

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


class ApiClient(NamedTuple):
    client: TestClient
    admin_token: str
    admin_id: str
    member_token: str
    member_id: str


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiClient, None, None]:
    """Yield an ApiClient for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers against isolated in-memory stores and a
    FakeRedis-backed cache. Two accounts exist: "testadmin" (role admin) and
    "member" (role user). Tokens go in Authorization headers.
    """
    user_store, moderation, setting_store = _make_test_stores(request.module.__name__.rsplit(".", 1)[-1])
    cache = CacheStore(FakeRedis(), prefix="cosmos")

    admin_id = user_store.create_user(
        User(username="testadmin", hashed_password=hash_password("testpass123"), role="admin")
    )
    member_id = user_store.create_user(
        User(username="member", hashed_password=hash_password("memberpass123"), role="user")
    )
    admin_token = create_access_token(user_id=admin_id, username="testadmin", role="admin", expire_seconds=3600)
    member_token = create_access_token(user_id=member_id, username="member", role="user", expire_seconds=3600)

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(user_store, moderation, setting_store, cache)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield ApiClient(client, admin_token, admin_id, member_token, member_id)
