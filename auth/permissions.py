"""
auth/permissions.py -- The permission-check contract shared by every endpoint.

PermissionChecker answers "may this user (or role string) perform this one
action set on this one domain?". It fails closed: malformed requests,
unresolvable identities, unknown roles, and internal errors all yield False.

Single-resource rule: a request names exactly one domain. Anything else is
rejected before the registry is consulted.

Multi-role rule: a user's role string is comma-joined ("user,editor"). The
request is allowed if ANY single role grants every requested action. Partial
grants from different roles are never combined.

get_user_effective_permissions() is informational (which settings sections
to render, which buttons to show). It is NOT a security boundary; the gate is
always check_permissions() on the real action.

Layer rule: no imports from api/ or moderation/.
"""

from __future__ import annotations

import logging

from auth.access import Statements, is_single_resource_request
from auth.models import User
from auth.registry import RoleRegistry
from auth.store import UserStore

logger = logging.getLogger("cosmos.auth")


class PermissionChecker:
    def __init__(self, registry: RoleRegistry, store: UserStore, probing_enabled: bool = False) -> None:
        self.registry = registry
        self._store = store
        self.probing_enabled = probing_enabled

    async def has_permission(self, role: str, requested: dict[str, list[str]]) -> bool:
        """Evaluate a single-resource request against a comma-joined role string."""
        if not is_single_resource_request(requested):
            return False
        try:
            await self.registry.ensure_initialized()
            for role_id in (r.strip() for r in (role or "").split(",")):
                if not role_id:
                    continue
                compiled = self.registry.get(role_id)
                if compiled is not None and compiled.authorize(requested).success:
                    return True
            return False
        except Exception:
            logger.exception("Permission evaluation failed for role %r", role)
            return False

    async def check_permissions(
        self,
        requested: dict[str, list[str]],
        user_id: str | None = None,
        session_user: User | None = None,
    ) -> bool:
        """Return True only if the resolved user may perform the requested actions.

        Identity resolution order: explicit user_id, then the session user.
        """
        if not is_single_resource_request(requested):
            return False
        acting_id = user_id or (session_user.id if session_user is not None else None)
        if not acting_id:
            return False
        try:
            if session_user is not None and session_user.id == acting_id:
                role = session_user.role
            else:
                role = self._store.get_role_string(acting_id)
            if not role:
                return False
            return await self.has_permission(role, requested)
        except Exception:
            logger.exception("An error occurred while checking permissions for user %s", acting_id)
            return False

    async def get_user_effective_permissions(
        self,
        user_id: str | None = None,
        session_user: User | None = None,
    ) -> Statements:
        """Best-effort aggregation of everything the user's roles grant.

        With probing enabled, role membership is inferred: each registered
        role gets one representative check (its first domain and first
        action) through check_permissions(), and a passing check attributes
        the whole role to the user. A user holding a role whose grants
        overlap another role's first action will be credited with both.
        """
        acting_id = user_id or (session_user.id if session_user is not None else None)
        if not acting_id:
            return {}
        await self.registry.ensure_initialized()

        if self.probing_enabled:
            held = await self._infer_roles(acting_id, session_user)
        else:
            if session_user is not None and session_user.id == acting_id:
                role = session_user.role
            else:
                role = self._store.get_role_string(acting_id) or ""
            held = [r.strip() for r in role.split(",") if r.strip() in self.registry]

        merged: dict[str, set[str]] = {}
        for role_id in held:
            for domain, actions in (self.registry.statements_for(role_id) or {}).items():
                merged.setdefault(domain, set()).update(actions)
        return {domain: sorted(actions) for domain, actions in sorted(merged.items())}

    async def _infer_roles(self, acting_id: str, session_user: User | None) -> list[str]:
        held = []
        for role_id in self.registry.role_ids():
            statements = self.registry.statements_for(role_id)
            if not statements:
                continue
            domain = next(iter(statements))
            sample = {domain: [statements[domain][0]]}
            if await self.check_permissions(sample, user_id=acting_id, session_user=session_user):
                held.append(role_id)
        return held
