"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work; dataclasses own the domain shape.

Layer rule: no imports from api/, moderation/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """Represents an authenticated identity.

    role is a comma-joined role string ("user", "admin", "user,editor").
    Authorization succeeds if ANY listed role grants the full request, so the
    order of roles in the string carries no meaning.
    """

    username: str
    role: str = "user"
    id: str | None = None
    email: str | None = None
    display_name: str | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    last_login: str | None = None
    is_active: bool = True

    @property
    def roles(self) -> list[str]:
        return [r.strip() for r in self.role.split(",") if r.strip()]


@dataclass
class RoleRecord:
    """A durable role definition. statements is the raw JSON text as stored."""

    id: str
    statements: str
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Invitation:
    """A single-use invite code. user_id is set once someone signs up with it."""

    code: str
    creator_id: str
    id: str | None = None
    user_id: str | None = None
    created_at: str | None = None
    used_at: str | None = None
