"""
instance/service.py -- Tiered reads and cache-aware writes for settings.

Lookup order for get(key):
  1. cache   cosmos:settings:<key>; the "__NULL__" sentinel is a known miss
             and answers None without touching the database
  2. store   the settings table; a hit is written back to the cache
  3. default instance.defaults.DEFAULTS; a hit is written back to the cache
  4. miss    remember it with the sentinel for settings_negative_ttl seconds

A database error during step 2 is logged and treated as a miss, but no
sentinel is written for it, so the next read retries the database.

set(key, value) writes the store first, then overwrites the cache entry
(clearing any sentinel) with a jittered TTL and bumps
cosmos:settings:__version__ so other nodes can tell settings changed.

Cached entries are the raw stored text encoded as a JSON string; parsing
into bool / int / float / list happens on every read, from any tier.

Layer rule: no imports from api/, auth/, or moderation/.
"""

from __future__ import annotations

import json
import logging
import math
import random
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from cache.store import CacheDomains, CacheStore, safe_json_parse
from instance.defaults import DEFAULTS, SETTING_KEYS
from instance.store import SettingStore

logger = logging.getLogger("cosmos.settings")

VERSION_KEY_NAME = "__version__"
_TTL_JITTER = 30


# ---------------------------------------------------------------------------
# Value codec
# ---------------------------------------------------------------------------


def parse_value(raw: str | None) -> Any:
    """Turn stored text into the richest matching type.

    "true"/"false" (any case) become bools, integers and finite floats become
    numbers, and JSON arrays of only strings or only numbers become lists.
    Everything else, including objects and mixed arrays, stays a string.
    """
    if not raw:
        return ""
    lowered = raw.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        number = float(raw)
    except ValueError:
        pass
    else:
        return number if math.isfinite(number) else raw

    if raw.startswith("[") and raw.endswith("]"):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return raw
        if all(isinstance(x, str) for x in parsed):
            return parsed
        if all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in parsed):
            return parsed
    return raw


def format_value(value: Any) -> str:
    """Inverse of parse_value() for the types it produces."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return json.dumps(value)
    return str(value)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class InstanceSettings:
    def __init__(
        self,
        store: SettingStore,
        cache: CacheStore,
        ttl: int = 300,
        negative_ttl: int = 120,
        defaults: dict[str, Any] | None = None,
        keys: tuple[str, ...] = SETTING_KEYS,
    ) -> None:
        self._store = store
        self._cache = cache
        self._ttl = ttl
        self._negative_ttl = negative_ttl
        self._defaults = DEFAULTS if defaults is None else defaults
        self.keys = keys

    def is_known(self, key: str) -> bool:
        return key in self.keys

    def cache_key(self, key: str) -> str:
        return self._cache.key(CacheDomains.SETTINGS, key)

    @property
    def version_key(self) -> str:
        return self.cache_key(VERSION_KEY_NAME)

    async def _backfill(self, key: str, raw: str, jitter: bool = False) -> None:
        ttl = self._ttl + (random.randrange(_TTL_JITTER) if jitter else 0)
        await self._cache.set_json(self.cache_key(key), raw, ttl=ttl)

    async def get(self, key: str) -> Any | None:
        """Resolve one setting through cache, store and defaults. None on a true miss."""
        cache_key = self.cache_key(key)
        raw = await self._cache.get_raw(cache_key)
        if CacheStore.is_negative(raw):
            logger.debug("Setting %s: negative cache hit", key)
            return None
        cached = safe_json_parse(raw)
        if isinstance(cached, str):
            return parse_value(cached)

        try:
            stored = self._store.get(key)
        except SQLAlchemyError:
            logger.exception("Failed to read setting %s from the database", key)
            return self._defaults.get(key)

        if stored is not None:
            await self._backfill(key, stored)
            return parse_value(stored)

        default = self._defaults.get(key)
        if default is not None:
            await self._backfill(key, format_value(default))
            return default

        await self._cache.set_negative(cache_key, ttl=self._negative_ttl)
        logger.debug("Setting %s: true miss, negative entry written", key)
        return None

    async def get_all(self) -> dict[str, Any]:
        """Every known key. One MGET first; misses and sentinels go through get()."""
        hits = await self._cache.mget_json([self.cache_key(k) for k in self.keys])
        resolved: dict[str, Any] = {}
        for key, hit in zip(self.keys, hits):
            resolved[key] = parse_value(hit) if isinstance(hit, str) else await self.get(key)
        return resolved

    async def set(self, key: str, value: Any) -> Any:
        """Persist a value and refresh its cache entry. Returns the value as read back.

        Store errors propagate; cache errors are logged by CacheStore and ignored.
        """
        raw = format_value(value)
        self._store.upsert(key, raw)
        await self._backfill(key, raw, jitter=True)
        version = await self._cache.incr(self.version_key)
        logger.info("Setting %s updated (version=%d)", key, version)
        return parse_value(raw)

    async def clear_cache(self) -> int:
        """Drop every cached setting and negative entry. The version counter stays."""
        keys = await self._cache.scan_keys(self._cache.key(CacheDomains.SETTINGS, "*"))
        cleared = await self._cache.del_keys([k for k in keys if k != self.version_key])
        logger.info("Cleared %d setting cache key(s)", cleared)
        return cleared
