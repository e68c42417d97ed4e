"""
cache/store.py -- Redis-backed JSON cache, key scanning, and distributed lock.

The cache is an optimization, never a source of truth. Every operation is
best-effort: on a Redis failure it logs on the "cosmos.cache" logger and
returns a neutral value (None, 0, [], False) instead of raising, so callers
fall back to the durable store.

Key naming convention:
    <prefix>:<domain>:<entity>[:<id>]
    cosmos:roles:<roleId>
    cosmos:meta:lock:<name>

Usage:
    cache = CacheStore.from_url("redis://localhost:6379/0")
    await cache.set_json(cache.key(CacheDomains.ROLES, "editor"), {"post": ["read"]})
    data = await cache.get_json(cache.key(CacheDomains.ROLES, "editor"))
    lock = await cache.acquire_lock("roles:refresh")
    try:
        ...
    finally:
        await cache.release_lock(lock)
    await cache.close()

A CacheStore built with client=None (REDIS_URL unset) behaves like a cache
that always misses.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any

from redis import asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger("cosmos.cache")

# Errors that mean "the cache is unavailable right now". Connection drops
# surface as OSError subclasses on some platforms before redis-py wraps them.
_CACHE_ERRORS = (RedisError, OSError)

NEG_SENTINEL = "__NULL__"


class CacheDomains:
    SETTINGS = "settings"
    ROLES = "roles"
    META = "meta"


@dataclass(frozen=True)
class Lock:
    """A held distributed lock. token identifies the holder for release."""

    key: str
    token: str
    ttl_ms: int


class CacheStore:
    def __init__(self, client: aioredis.Redis | None, prefix: str = "cosmos") -> None:
        self._client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "cosmos", socket_timeout: float = 5.0) -> "CacheStore":
        """Build a store from a redis:// URL. An empty URL disables the cache.

        I/O timeouts live in the client configuration; nothing in this module
        re-implements them.
        """
        if not url:
            logger.info("REDIS_URL not set -- cache disabled")
            return cls(None, prefix=prefix)
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, prefix=prefix)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def key(self, domain: str, *parts: str) -> str:
        return ":".join([self.prefix, domain, *parts])

    # ------------------------------------------------------------------
    # JSON helpers
    # ------------------------------------------------------------------

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Serialize value and store it, optionally expiring after ttl seconds."""
        if self._client is None:
            return False
        try:
            payload = json.dumps(value)
            if ttl:
                await self._client.set(key, payload, ex=ttl)
            else:
                await self._client.set(key, payload)
            return True
        except _CACHE_ERRORS as e:
            logger.warning("set_json failed for %s: %s", key, e)
            return False

    async def get_json(self, key: str) -> Any | None:
        """Return the decoded value for key, or None on miss, bad JSON or error."""
        if self._client is None:
            return None
        try:
            raw = await self._client.get(key)
        except _CACHE_ERRORS as e:
            logger.warning("get_json failed for %s: %s", key, e)
            return None
        return safe_json_parse(raw)

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    async def mget_json(self, keys: list[str]) -> list[Any | None]:
        """Fetch many keys in one round trip. Result is index-aligned with keys."""
        if self._client is None or not keys:
            return [None for _ in keys]
        try:
            raw = await self._client.mget(keys)
        except _CACHE_ERRORS as e:
            logger.warning("mget_json failed: %s", e)
            return [None for _ in keys]
        return [safe_json_parse(r) for r in raw]

    async def del_keys(self, keys: list[str]) -> int:
        """Delete keys in a single pipeline. Returns the number of keys removed."""
        if self._client is None or not keys:
            return 0
        try:
            async with self._client.pipeline(transaction=False) as pipe:
                for k in keys:
                    pipe.delete(k)
                results = await pipe.execute()
        except _CACHE_ERRORS as e:
            logger.warning("del_keys failed: %s", e)
            return 0
        return sum(int(r or 0) for r in results)

    async def scan_keys(self, pattern: str, count: int = 200) -> list[str]:
        """Collect keys matching pattern with cursor-based SCAN.

        Never uses KEYS: a full-keyspace listing blocks Redis for every other
        client while it runs. On error, returns whatever was collected so far.
        """
        if self._client is None:
            return []
        out: list[str] = []
        cursor = 0
        try:
            while True:
                cursor, batch = await self._client.scan(cursor=cursor, match=pattern, count=count)
                out.extend(batch)
                if int(cursor) == 0:
                    break
        except _CACHE_ERRORS as e:
            logger.warning("scan_keys failed for %s: %s", pattern, e)
        return out

    async def incr(self, key: str) -> int:
        """Increment a counter. Returns the new value, or 0 when unavailable."""
        if self._client is None:
            return 0
        try:
            return int(await self._client.incr(key))
        except _CACHE_ERRORS as e:
            logger.warning("incr failed for %s: %s", key, e)
            return 0

    # ------------------------------------------------------------------
    # Negative caching
    # ------------------------------------------------------------------

    async def set_negative(self, key: str, ttl: int = 120) -> None:
        """Store a null sentinel so a hot miss does not stampede the DB."""
        if self._client is None:
            return
        try:
            await self._client.set(key, NEG_SENTINEL, ex=ttl)
        except _CACHE_ERRORS as e:
            logger.debug("set_negative failed for %s: %s", key, e)

    async def get_raw(self, key: str) -> str | None:
        if self._client is None:
            return None
        try:
            return await self._client.get(key)
        except _CACHE_ERRORS as e:
            logger.warning("get failed for %s: %s", key, e)
            return None

    @staticmethod
    def is_negative(raw: Any) -> bool:
        return raw == NEG_SENTINEL

    # ------------------------------------------------------------------
    # Distributed lock
    # ------------------------------------------------------------------

    async def acquire_lock(
        self,
        name: str,
        ttl_ms: int = 5000,
        retry_every_ms: int = 150,
        max_wait_ms: int = 3000,
    ) -> Lock | None:
        """Acquire a named lock with SET NX PX, polling until max_wait_ms.

        Returns the Lock on success, None on timeout or when the cache is
        unavailable. The TTL guarantees a crashed holder cannot keep the
        lock forever.
        """
        if self._client is None:
            return None
        lock_key = self.key(CacheDomains.META, "lock", name)
        token = secrets.token_hex(16)
        deadline = time.monotonic() + max_wait_ms / 1000

        while True:
            try:
                ok = await self._client.set(lock_key, token, px=ttl_ms, nx=True)
            except _CACHE_ERRORS as e:
                logger.warning("acquire_lock failed for %s: %s", lock_key, e)
                return None
            if ok:
                return Lock(key=lock_key, token=token, ttl_ms=ttl_ms)
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(retry_every_ms / 1000)

    async def release_lock(self, lock: Lock | None) -> None:
        """Release lock only if this holder's token is still the stored one.

        After a TTL expiry another node may own the key; comparing tokens
        keeps a slow holder from deleting that node's lock.
        """
        if lock is None or self._client is None:
            return
        try:
            stored = await self._client.get(lock.key)
            if stored == lock.token:
                await self._client.delete(lock.key)
        except _CACHE_ERRORS as e:
            logger.warning("release_lock failed for %s: %s", lock.key, e)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except _CACHE_ERRORS:
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def safe_json_parse(raw: str | bytes | None) -> Any | None:
    """Decode JSON, returning None for empty input or malformed payloads."""
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None
