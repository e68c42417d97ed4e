"""Unit tests for auth/registry.py -- the process-wide role registry.

Covers:
- static roles are present before initialization and survive clear_dynamic()
- generate_roles_from_db() skips malformed rows and backfills the cache
- load_roles_from_cache() registers cached roles and discards malformed payloads
- the cache is read before the DB, and an id is never registered twice
- concurrent ensure_initialized() calls share one initialization
- reset() lets ensure_initialized() run again
- store failures count as zero roles loaded
- define_role() persists, registers and publishes; rejects duplicates and bad statements
"""

import asyncio
import json
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from auth.access import ADMIN_ROLE, USER_ROLE
from auth.models import RoleRecord
from auth.registry import InvalidStatementsError, RoleExistsError, RoleRegistry
from auth.store import UserStore

pytestmark = pytest.mark.anyio


@pytest.fixture
def user_store():
    store = UserStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def registry(user_store, cache):
    return RoleRegistry(user_store, cache)


def _mock_store(rows=None) -> MagicMock:
    store = MagicMock()
    store.list_roles.return_value = rows or []
    store.get_role.return_value = None
    return store


# ---------------------------------------------------------------------------
# Static roles
# ---------------------------------------------------------------------------


async def test_static_roles_available_before_init(registry):
    assert not registry.initialized
    assert ADMIN_ROLE in registry
    assert USER_ROLE in registry
    assert registry.is_static(ADMIN_ROLE)
    assert registry.get(USER_ROLE).authorize({"invitation": ["create"]}).success


async def test_register_dynamic_role_is_idempotent(registry):
    assert registry.register_dynamic_role("editor", {"post": ["read"]})
    assert not registry.register_dynamic_role("editor", {"post": ["write"]})
    assert registry.statements_for("editor") == {"post": ["read"]}


async def test_register_refuses_static_id_and_malformed(registry):
    assert not registry.register_dynamic_role(ADMIN_ROLE, {"post": ["read"]})
    assert not registry.register_dynamic_role("broken", {"post": []})
    assert "broken" not in registry


async def test_clear_dynamic_keeps_static(registry):
    registry.register_dynamic_role("editor", {"post": ["read"]})
    registry.register_dynamic_role("viewer", {"post": ["list"]})
    assert registry.clear_dynamic() == 2
    assert registry.role_ids() == sorted([ADMIN_ROLE, USER_ROLE])


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


async def test_generate_roles_from_db_skips_malformed_and_backfills(registry, user_store, fake_redis):
    user_store.create_role(RoleRecord(id="moderator", statements=json.dumps({"violation": ["list"]})))
    user_store.create_role(RoleRecord(id="badjson", statements="{oops"))
    user_store.create_role(RoleRecord(id="badshape", statements=json.dumps({"violation": "list"})))

    assert await registry.generate_roles_from_db() == 1
    assert "moderator" in registry
    assert "badjson" not in registry
    assert "badshape" not in registry

    await registry.flush_backfills()
    assert json.loads(fake_redis.data["cosmos:roles:moderator"]) == {"violation": ["list"]}


async def test_generate_roles_from_db_skips_existing(registry, user_store):
    user_store.create_role(RoleRecord(id="moderator", statements=json.dumps({"violation": ["list"]})))
    assert await registry.generate_roles_from_db() == 1
    assert await registry.generate_roles_from_db() == 0


async def test_load_roles_from_cache(registry, cache, fake_redis):
    await cache.set_json("cosmos:roles:editor", {"post": ["read", "write"]})
    await cache.set_json("cosmos:roles:empty", {})
    fake_redis.data["cosmos:roles:garbage"] = "not-json"

    assert await registry.load_roles_from_cache() == 1
    assert registry.statements_for("editor") == {"post": ["read", "write"]}
    assert "empty" not in registry
    assert "garbage" not in registry


async def test_cache_is_read_before_db(registry, user_store, cache):
    await cache.set_json("cosmos:roles:editor", {"post": ["read"]})
    user_store.create_role(RoleRecord(id="editor", statements=json.dumps({"post": ["read", "delete"]})))

    await registry.ensure_initialized()
    assert registry.statements_for("editor") == {"post": ["read"]}


async def test_db_failure_counts_as_zero(cache):
    store = _mock_store()
    store.list_roles.side_effect = OperationalError("SELECT", {}, Exception("db down"))
    registry = RoleRegistry(store, cache)
    assert await registry.generate_roles_from_db() == 0
    await registry.ensure_initialized()
    assert registry.initialized
    assert ADMIN_ROLE in registry


async def test_cache_failure_falls_back_to_db(user_store, cache, fake_redis):
    user_store.create_role(RoleRecord(id="moderator", statements=json.dumps({"violation": ["list"]})))
    fake_redis.fail = True
    registry = RoleRegistry(user_store, cache)
    await registry.ensure_initialized()
    await registry.flush_backfills()
    assert "moderator" in registry


# ---------------------------------------------------------------------------
# One-shot initialization
# ---------------------------------------------------------------------------


async def test_concurrent_initialization_runs_once(cache):
    store = _mock_store([RoleRecord(id="moderator", statements=json.dumps({"violation": ["list"]}))])
    registry = RoleRegistry(store, cache)

    await asyncio.gather(*(registry.ensure_initialized() for _ in range(20)))

    assert store.list_roles.call_count == 1
    assert registry.initialized
    assert "moderator" in registry


async def test_background_init_shared_with_callers(cache):
    store = _mock_store()
    registry = RoleRegistry(store, cache)
    task = registry.start_background_init()
    assert task is not None
    await registry.ensure_initialized()
    await task
    assert store.list_roles.call_count == 1
    assert registry.start_background_init() is None


async def test_reset_allows_reinitialization(cache):
    store = _mock_store()
    registry = RoleRegistry(store, cache)
    await registry.ensure_initialized()
    await registry.ensure_initialized()
    assert store.list_roles.call_count == 1

    registry.reset()
    await registry.ensure_initialized()
    assert store.list_roles.call_count == 2


# ---------------------------------------------------------------------------
# define_role
# ---------------------------------------------------------------------------


async def test_define_role_persists_registers_and_caches(registry, user_store, cache):
    statements = await registry.define_role("reviewer", {"violation": ["manage", "list", "list"]})
    assert statements == {"violation": ["list", "manage"]}
    assert "reviewer" in registry
    assert json.loads(user_store.get_role("reviewer").statements) == {"violation": ["list", "manage"]}
    assert await cache.get_json("cosmos:roles:reviewer") == {"violation": ["list", "manage"]}


async def test_define_role_rejects_duplicates(registry, user_store):
    await registry.define_role("reviewer", {"violation": ["list"]})
    with pytest.raises(RoleExistsError):
        await registry.define_role("reviewer", {"violation": ["manage"]})
    with pytest.raises(RoleExistsError):
        await registry.define_role(ADMIN_ROLE, {"violation": ["manage"]})

    user_store.create_role(RoleRecord(id="dbonly", statements=json.dumps({"x": ["y"]})))
    with pytest.raises(RoleExistsError):
        await registry.define_role("dbonly", {"x": ["y"]})


async def test_define_role_rejects_bad_statements(registry):
    with pytest.raises(InvalidStatementsError):
        await registry.define_role("empty", {"violation": []})
    assert "empty" not in registry
