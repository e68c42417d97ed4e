"""Unit tests for instance/service.py -- tiered instance settings.

Covers:
- parse_value() / format_value() type rules
- a true miss writes the "__NULL__" sentinel and later reads skip the DB
- DB hits and defaults backfill the cache
- set() persists, overwrites a sentinel and bumps the settings version
- get_all() batches cache reads and resolves misses per key
- clear_cache() drops entries but keeps the version counter
- a DB failure falls back to the default without writing a sentinel
- with the cache disabled every read goes to the DB
"""

import json
import time
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from cache.store import NEG_SENTINEL, CacheStore
from instance.service import InstanceSettings, format_value, parse_value
from instance.store import SettingStore

pytestmark = pytest.mark.anyio


@pytest.fixture
def setting_store():
    store = SettingStore("sqlite:///:memory:")
    store.get = MagicMock(wraps=store.get)
    yield store
    store.close()


@pytest.fixture
def service(setting_store, cache):
    return InstanceSettings(setting_store, cache, ttl=300, negative_ttl=120)


# ---------------------------------------------------------------------------
# Value codec
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("true", True),
        ("FALSE", False),
        ("42", 42),
        ("2.5", 2.5),
        ('["a", "b"]', ["a", "b"]),
        ("[1, 2.5]", [1, 2.5]),
        ('[1, "a"]', '[1, "a"]'),
        ('{"a": 1}', '{"a": 1}'),
        ("Infinity", "Infinity"),
        ("Cosmos", "Cosmos"),
        ("", ""),
    ],
)
def test_parse_value(raw, expected):
    assert parse_value(raw) == expected


def test_format_value_matches_parse():
    assert format_value(True) == "true"
    assert format_value(["x", "y"]) == '["x", "y"]'
    assert parse_value(format_value(False)) is False


# ---------------------------------------------------------------------------
# Tiered reads
# ---------------------------------------------------------------------------


async def test_true_miss_is_negatively_cached(service, setting_store, fake_redis):
    assert await service.get("nova_url") is None
    assert fake_redis.data["cosmos:settings:nova_url"] == NEG_SENTINEL
    assert fake_redis.expiry["cosmos:settings:nova_url"]

    assert await service.get("nova_url") is None
    assert await service.get("nova_url") is None
    assert setting_store.get.call_count == 1


async def test_db_hit_backfills_cache(service, setting_store, fake_redis):
    setting_store.upsert("app_logo", "https://cdn.example/logo.png")
    assert await service.get("app_logo") == "https://cdn.example/logo.png"
    assert json.loads(fake_redis.data["cosmos:settings:app_logo"]) == "https://cdn.example/logo.png"

    assert await service.get("app_logo") == "https://cdn.example/logo.png"
    assert setting_store.get.call_count == 1


async def test_default_used_and_cached(service, fake_redis):
    assert await service.get("app_name") == "Cosmos"
    assert await service.get("setup_completed") is False
    assert json.loads(fake_redis.data["cosmos:settings:setup_completed"]) == "false"


async def test_stored_value_beats_default(service, setting_store):
    setting_store.upsert("app_name", "Nebula")
    assert await service.get("app_name") == "Nebula"


async def test_db_failure_returns_default_without_sentinel(service, setting_store, fake_redis):
    setting_store.get.side_effect = OperationalError("SELECT", {}, Exception("db down"))
    assert await service.get("app_name") == "Cosmos"
    assert await service.get("nova_url") is None
    assert "cosmos:settings:nova_url" not in fake_redis.data


async def test_disabled_cache_reads_db_every_time(setting_store):
    service = InstanceSettings(setting_store, CacheStore(None))
    assert await service.get("nova_url") is None
    assert await service.get("nova_url") is None
    assert setting_store.get.call_count == 2


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def test_set_replaces_sentinel_and_bumps_version(service, setting_store, fake_redis):
    assert await service.get("nova_url") is None
    assert await service.set("nova_url", "https://nova.example") == "https://nova.example"

    assert setting_store.get.call_count == 1
    assert await service.get("nova_url") == "https://nova.example"
    assert setting_store.get.call_count == 1
    assert fake_redis.data["cosmos:settings:__version__"] == "1"
    remaining = fake_redis.expiry["cosmos:settings:nova_url"] - time.monotonic()
    assert 0 < remaining <= 330


async def test_set_round_trips_types(service):
    assert await service.set("nexirift_mode", True) is True
    assert await service.get("nexirift_mode") is True
    assert await service.set("app_header", ["one", "two"]) == ["one", "two"]


async def test_set_store_failure_propagates(service, setting_store, fake_redis):
    setting_store.upsert = MagicMock(side_effect=OperationalError("UPDATE", {}, Exception("db down")))
    with pytest.raises(OperationalError):
        await service.set("app_name", "Nebula")
    assert "cosmos:settings:__version__" not in fake_redis.data


# ---------------------------------------------------------------------------
# Bulk and maintenance
# ---------------------------------------------------------------------------


async def test_get_all_resolves_every_key(service, setting_store, fake_redis):
    setting_store.upsert("app_logo", "logo.png")
    settings = await service.get_all()
    assert set(settings) == set(service.keys)
    assert settings["app_name"] == "Cosmos"
    assert settings["app_logo"] == "logo.png"
    assert settings["nova_url"] is None

    calls = setting_store.get.call_count
    again = await service.get_all()
    assert again == settings
    assert setting_store.get.call_count == calls
    assert "mget" in fake_redis.calls


async def test_clear_cache_keeps_version(service, fake_redis):
    await service.set("app_name", "Nebula")
    await service.get("nova_url")
    cleared = await service.clear_cache()
    assert cleared == 2
    assert "cosmos:settings:app_name" not in fake_redis.data
    assert "cosmos:settings:nova_url" not in fake_redis.data
    assert fake_redis.data["cosmos:settings:__version__"] == "1"
