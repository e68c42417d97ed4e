"""
auth/registry.py -- Process-wide registry of compiled roles.

Role definitions come from three places with different latency and
availability: code (static roles), the Redis cache, and the SQL roles table.
RoleRegistry reconciles them into one map without double-registering and
without racing two initializations.

Lifecycle:
  RoleRegistry(...)            static roles seeded, nothing loaded yet
  start_background_init()      called once at app startup, never awaited there
  await ensure_initialized()   cache load then DB load, once per lifetime;
                               concurrent callers share the in-flight task
  clear_dynamic() / reset()    used by auth/refresh.py only

Invariants:
  - "admin" is static and is never removed.
  - A role's compiled form and its raw statements are written together with
    no await in between, so a reader sees both or neither.
  - register_dynamic_role() is idempotent; redundant loads from the cache
    path, the DB path, or another process are harmless.

Failure policy: cache failures read as misses (cache/store.py), store
failures are logged and count as zero roles loaded. The registry keeps
serving whatever it already holds.

Layer rule: no imports from api/ or moderation/.
"""

from __future__ import annotations

import asyncio
import json
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.access import ADMIN_ROLE, AccessControl, Role, Statements, normalize_statements
from auth.models import RoleRecord
from auth.store import UserStore
from cache.store import CacheDomains, CacheStore

logger = logging.getLogger("cosmos.roles")


class RoleExistsError(Exception):
    """A role with this id is already registered or persisted."""


class InvalidStatementsError(ValueError):
    """Role statements are not a non-empty {resource: [action, ...]} mapping."""


class RoleRegistry:
    def __init__(
        self,
        store: UserStore,
        cache: CacheStore,
        access: AccessControl | None = None,
        cache_ttl: int | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self.access = access or AccessControl()
        self._cache_ttl = cache_ttl or None
        self._roles: dict[str, Role] = {}
        self._statements: dict[str, Statements] = {}
        self._static: frozenset[str] = frozenset()
        self._initialized = False
        self._init_task: asyncio.Task | None = None
        self._backfills: set[asyncio.Task] = set()
        self._seed_static()

    def _seed_static(self) -> None:
        static = self.access.static_roles()
        for role_id, statements in static.items():
            self._put(role_id, statements)
        self._static = frozenset(static) | {ADMIN_ROLE}

    def _put(self, role_id: str, statements: Statements) -> None:
        # Both maps are written back to back; no await may sit between them.
        role = self.access.new_role(statements)
        self._roles[role_id] = role
        self._statements[role_id] = statements

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def get(self, role_id: str) -> Role | None:
        return self._roles.get(role_id)

    def statements_for(self, role_id: str) -> Statements | None:
        statements = self._statements.get(role_id)
        if statements is None:
            return None
        return {domain: sorted(actions) for domain, actions in sorted(statements.items())}

    def role_ids(self) -> list[str]:
        return sorted(self._roles)

    def is_static(self, role_id: str) -> bool:
        return role_id in self._static

    def __contains__(self, role_id: str) -> bool:
        return role_id in self._roles

    def __len__(self) -> int:
        return len(self._roles)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def role_cache_key(self, role_id: str) -> str:
        return self._cache.key(CacheDomains.ROLES, role_id)

    def role_cache_pattern(self) -> str:
        return self._cache.key(CacheDomains.ROLES, "*")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_dynamic_role(self, role_id: str, statements: Statements) -> bool:
        """Compile and store a role. Returns False (no-op) if role_id exists."""
        if role_id in self._roles:
            return False
        normalized = normalize_statements(statements)
        if normalized is None:
            logger.warning("Refusing to register role %r: malformed statements", role_id)
            return False
        self._put(role_id, normalized)
        logger.debug("Registered dynamic role %r", role_id)
        return True

    async def define_role(self, role_id: str, statements: object) -> Statements:
        """Persist a new role, register it, and publish it to the cache.

        Raises InvalidStatementsError for malformed statements and
        RoleExistsError when the id is taken (static, dynamic, or in the DB).
        The cache write is awaited so other processes see the role on their
        next refresh.
        """
        normalized = normalize_statements(statements)
        if normalized is None:
            raise InvalidStatementsError(role_id)
        if role_id in self._roles or self._store.get_role(role_id) is not None:
            raise RoleExistsError(role_id)
        try:
            self._store.create_role(RoleRecord(id=role_id, statements=json.dumps(normalized)))
        except IntegrityError as exc:
            raise RoleExistsError(role_id) from exc
        self.register_dynamic_role(role_id, normalized)
        await self._cache.set_json(self.role_cache_key(role_id), normalized, ttl=self._cache_ttl)
        logger.info("Defined role %r (%d resource(s))", role_id, len(normalized))
        return self.statements_for(role_id) or normalized

    async def load_roles_from_cache(self) -> int:
        """Register every well-formed role found under the roles cache prefix."""
        keys = await self._cache.scan_keys(self.role_cache_pattern())
        if not keys:
            return 0
        values = await self._cache.mget_json(keys)
        prefix = self.role_cache_key("")
        loaded = 0
        for key, value in zip(keys, values):
            role_id = key[len(prefix):] if key.startswith(prefix) else key
            if not role_id or role_id in self._roles:
                continue
            statements = normalize_statements(value)
            if statements is None:
                logger.debug("Discarding malformed cached role %r", role_id)
                continue
            if self.register_dynamic_role(role_id, statements):
                loaded += 1
        if loaded:
            logger.info("Loaded %d role(s) from cache", loaded)
        return loaded

    async def generate_roles_from_db(self) -> int:
        """Register every well-formed role row not already present.

        Each newly registered role is written back to the cache as a
        fire-and-forget task; a failed backfill is logged and ignored.
        """
        try:
            rows = self._store.list_roles()
        except SQLAlchemyError:
            logger.exception("Failed to load roles from the database")
            return 0
        created = 0
        for row in rows:
            if row.id in self._roles:
                continue
            try:
                raw = json.loads(row.statements)
            except (TypeError, ValueError):
                logger.warning("Discarding role %r: statements are not valid JSON", row.id)
                continue
            statements = normalize_statements(raw)
            if statements is None:
                logger.warning("Discarding role %r: malformed statements", row.id)
                continue
            if self.register_dynamic_role(row.id, statements):
                created += 1
                self._schedule_backfill(row.id, statements)
        if created:
            logger.info("Loaded %d role(s) from the database", created)
        return created

    def _schedule_backfill(self, role_id: str, statements: Statements) -> None:
        task = asyncio.ensure_future(self._backfill(role_id, statements))
        self._backfills.add(task)
        task.add_done_callback(self._backfills.discard)

    async def _backfill(self, role_id: str, statements: Statements) -> None:
        ok = await self._cache.set_json(self.role_cache_key(role_id), statements, ttl=self._cache_ttl)
        if not ok and self._cache.enabled:
            logger.warning("Cache backfill failed for role %r", role_id)

    async def flush_backfills(self) -> None:
        """Wait for outstanding cache backfills (shutdown and tests)."""
        if self._backfills:
            await asyncio.gather(*list(self._backfills), return_exceptions=True)

    # ------------------------------------------------------------------
    # One-shot initialization
    # ------------------------------------------------------------------

    async def ensure_initialized(self) -> None:
        """Load cache then DB roles exactly once; concurrent callers share the run."""
        if self._initialized:
            return
        task = self._start()
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    def start_background_init(self) -> asyncio.Task | None:
        """Kick off initialization without blocking the caller (app startup)."""
        if self._initialized:
            return None
        return self._start()

    def _start(self) -> asyncio.Task:
        # A finished task here means a failed run or a reset(); start over.
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.ensure_future(self._initialize())
        return self._init_task

    async def _initialize(self) -> None:
        cache_loaded = await self.load_roles_from_cache()
        db_loaded = await self.generate_roles_from_db()
        self._initialized = True
        logger.info(
            "Role registry initialized (cache=%d, db=%d, total=%d)",
            cache_loaded,
            db_loaded,
            len(self._roles),
        )

    # ------------------------------------------------------------------
    # Refresh support (auth/refresh.py)
    # ------------------------------------------------------------------

    def clear_dynamic(self) -> int:
        """Drop every non-static role. Returns the number removed."""
        removed = [role_id for role_id in self._roles if role_id not in self._static]
        for role_id in removed:
            del self._roles[role_id]
            del self._statements[role_id]
        if removed:
            logger.info("Cleared %d dynamic role(s)", len(removed))
        return len(removed)

    def reset(self) -> None:
        """Forget the one-shot flag so ensure_initialized() runs again on demand."""
        self._initialized = False
