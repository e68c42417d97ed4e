"""
auth/access.py -- Permission statements, compiled roles, and the access-control universe.

A *statement* maps a domain (resource) to the actions allowed on it:

    {"violation": ["create", "list"], "user": ["ban"]}

Role compiles a statement map into frozensets so authorization is a pure
set-membership check. A role grants a request only if every requested action
for the requested domain is present in the role's statement for that domain.

Statement providers model the plugin-style composition of the permission
universe: each provider contributes a named statement map and they are merged
in declared order. A later provider EXTENDS an earlier provider's domain (the
union of both action lists); nothing a provider declares is ever dropped by a
later one.

Layer rule: no imports from api/, moderation/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NamedTuple

Statements = dict[str, list[str]]


class StatementProvider(NamedTuple):
    name: str
    statements: Statements


# ---------------------------------------------------------------------------
# Built-in statement providers
# ---------------------------------------------------------------------------

ADMIN_STATEMENTS: Statements = {
    "user": ["create", "list", "set-role", "ban", "impersonate", "delete", "set-password", "get", "update"],
    "session": ["list", "revoke", "delete"],
}

ORGANIZATION_STATEMENTS: Statements = {
    "organization": ["update", "delete"],
    "member": ["create", "update", "delete"],
    "invitation": ["create", "cancel"],
    "team": ["create", "update", "delete"],
    "ac": ["create", "read", "update", "delete"],
}

MODERATION_STATEMENTS: Statements = {
    "moderation": ["view"],
}

VIOLATION_STATEMENTS: Statements = {
    "violation": ["create", "list", "update", "manage"],
}

DEFAULT_PROVIDERS: tuple[StatementProvider, ...] = (
    StatementProvider("admin", ADMIN_STATEMENTS),
    StatementProvider("organization", ORGANIZATION_STATEMENTS),
    StatementProvider("moderation", MODERATION_STATEMENTS),
    StatementProvider("vortex", VIOLATION_STATEMENTS),
)

ADMIN_ROLE = "admin"
USER_ROLE = "user"

USER_STATEMENTS: Statements = {
    "invitation": ["create"],
}


def merge_statements(providers: list[StatementProvider] | tuple[StatementProvider, ...]) -> Statements:
    """Merge provider statements in order; a later provider extends earlier domains.

    >>> merge_statements([StatementProvider("a", {"x": ["read"]}), StatementProvider("b", {"x": ["write"]})])
    {'x': ['read', 'write']}
    """
    merged: dict[str, set[str]] = {}
    for provider in providers:
        for domain, actions in provider.statements.items():
            merged.setdefault(domain, set()).update(actions)
    return {domain: sorted(actions) for domain, actions in merged.items()}


def normalize_statements(raw: Any) -> Statements | None:
    """Validate and normalize a raw statement payload from the cache or DB.

    Accepts only an object whose every property is a non-empty list of
    strings. Returns the map with duplicates collapsed and actions sorted, or
    None for anything else. Never raises.
    """
    if not isinstance(raw, dict) or not raw:
        return None
    normalized: Statements = {}
    for domain, actions in raw.items():
        if not isinstance(domain, str) or not domain:
            return None
        if not isinstance(actions, list) or not actions:
            return None
        if not all(isinstance(a, str) and a for a in actions):
            return None
        normalized[domain] = sorted(set(actions))
    return normalized


def is_single_resource_request(requested: Any) -> bool:
    """True if requested is {domain: [action, ...]} with exactly one domain.

    An empty action list is ambiguous and rejected.
    """
    if not isinstance(requested, dict) or len(requested) != 1:
        return False
    (domain, actions), = requested.items()
    if not isinstance(domain, str) or not domain:
        return False
    if not isinstance(actions, list) or not actions:
        return False
    return all(isinstance(a, str) for a in actions)


# ---------------------------------------------------------------------------
# Compiled roles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthorizeResult:
    success: bool
    error: str | None = None


class Role:
    """A compiled role: immutable domain -> frozenset(actions)."""

    __slots__ = ("_grants",)

    def __init__(self, statements: Statements) -> None:
        self._grants: dict[str, frozenset[str]] = {
            domain: frozenset(actions) for domain, actions in statements.items()
        }

    def authorize(self, requested: dict[str, list[str]]) -> AuthorizeResult:
        for domain, actions in requested.items():
            allowed = self._grants.get(domain)
            if allowed is None:
                return AuthorizeResult(False, f"Not authorized to access resource: {domain}")
            if not actions or not set(actions) <= allowed:
                return AuthorizeResult(False, f"Unauthorized to access resource: {domain}")
        return AuthorizeResult(True)

    @property
    def statements(self) -> Statements:
        return {domain: sorted(actions) for domain, actions in sorted(self._grants.items())}

    def __repr__(self) -> str:
        return f"Role({self.statements!r})"


class AccessControl:
    """The permission universe built from statement providers.

    new_role() compiles a statement map into a Role. Roles loaded at runtime
    may reference domains outside the universe; they are compiled as-is and
    simply never match a request for a domain they do not name.
    """

    def __init__(self, providers: list[StatementProvider] | tuple[StatementProvider, ...] = DEFAULT_PROVIDERS) -> None:
        self.providers = tuple(providers)
        self.statements: Statements = merge_statements(self.providers)

    def new_role(self, statements: Statements) -> Role:
        return Role(statements)

    def static_roles(self) -> dict[str, Statements]:
        """Roles defined in code. admin holds the full universe."""
        return {
            ADMIN_ROLE: {domain: list(actions) for domain, actions in self.statements.items()},
            USER_ROLE: {domain: list(actions) for domain, actions in USER_STATEMENTS.items()},
        }
