"""
auth/refresh.py -- Coordinated reload of the role registry.

refresh_roles() runs under the distributed lock "roles:refresh". If the lock
cannot be acquired within the bounded wait, the refresh proceeds anyway and
logs it: one slow node must not block every refresh. Concurrent refreshes are
therefore possible; registration is idempotent, so the worst outcome is
redundant work.

The lock has no fencing token. After a TTL expiry under clock skew two nodes
may both believe they hold it; everything done here tolerates that.

Who may call this is decided by the HTTP layer (api/routes/v1/roles.py
requires moderation:view).

Layer rule: no imports from api/ or moderation/.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from auth.registry import RoleRegistry
from cache.store import CacheDomains, CacheStore

logger = logging.getLogger("cosmos.roles")

REFRESH_LOCK_NAME = "roles:refresh"


@dataclass
class RefreshOptions:
    clear_dynamic: bool = False
    bust_cache: bool = False
    reload_cache: bool = True
    reload_db: bool = True
    reinitialize: bool = False


@dataclass
class RefreshResult:
    removed: int
    cache_loaded: int
    db_loaded: int
    total: int

    def to_dict(self) -> dict:
        return asdict(self)


class RoleRefresher:
    def __init__(
        self,
        registry: RoleRegistry,
        cache: CacheStore,
        lock_ttl_ms: int = 5000,
        lock_retry_ms: int = 150,
        lock_max_wait_ms: int = 3000,
    ) -> None:
        self.registry = registry
        self._cache = cache
        self._lock_ttl_ms = lock_ttl_ms
        self._lock_retry_ms = lock_retry_ms
        self._lock_max_wait_ms = lock_max_wait_ms

    @property
    def version_key(self) -> str:
        return self._cache.key(CacheDomains.META, "roles", "version")

    async def bump_version(self) -> int:
        """Advance the roles version counter so other nodes notice a change."""
        return await self._cache.incr(self.version_key)

    async def refresh_roles(self, options: RefreshOptions | None = None) -> RefreshResult:
        opts = options or RefreshOptions()
        lock = await self._cache.acquire_lock(
            REFRESH_LOCK_NAME,
            ttl_ms=self._lock_ttl_ms,
            retry_every_ms=self._lock_retry_ms,
            max_wait_ms=self._lock_max_wait_ms,
        )
        if lock is None:
            logger.warning("Could not acquire %s lock; refreshing without it", REFRESH_LOCK_NAME)

        removed = cache_loaded = db_loaded = 0
        try:
            if opts.clear_dynamic:
                removed = self.registry.clear_dynamic()

            if opts.reinitialize:
                self.registry.reset()

            if opts.bust_cache:
                keys = await self._cache.scan_keys(self.registry.role_cache_pattern())
                busted = await self._cache.del_keys(keys)
                logger.info("Busted %d role cache key(s)", busted)

            if opts.reload_cache:
                cache_loaded = await self.registry.load_roles_from_cache()

            if opts.reload_db:
                db_loaded = await self.registry.generate_roles_from_db()

            version = await self.bump_version()
            logger.info(
                "Roles refreshed (removed=%d, cache=%d, db=%d, total=%d, version=%d)",
                removed,
                cache_loaded,
                db_loaded,
                len(self.registry),
                version,
            )
            return RefreshResult(
                removed=removed,
                cache_loaded=cache_loaded,
                db_loaded=db_loaded,
                total=len(self.registry),
            )
        finally:
            await self._cache.release_lock(lock)

    async def force_full_rebuild(self) -> RefreshResult:
        """Destructive resync: drop dynamic roles and the role cache, reload from the DB."""
        return await self.refresh_roles(
            RefreshOptions(
                clear_dynamic=True,
                bust_cache=True,
                reload_cache=False,
                reload_db=True,
                reinitialize=True,
            )
        )
