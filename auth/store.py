"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper (same as moderation/store.py).
UserStore is the repository; the _row_to_* functions are the mappers.
Route and registry code never touches SQL directly.

Tables:
  users        -- identities with a comma-joined role string
  roles        -- durable dynamic role definitions (statements as JSON text)
  invitations  -- invite codes issued by users

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, moderation/, or cache/.
"""

from __future__ import annotations

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from auth.models import Invitation, RoleRecord, User
from core.db import make_engine, new_id, now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), unique=True),
    Column("display_name", String(255)),
    Column("hashed_password", Text),
    Column("role", String(255), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_roles = Table(
    "roles",
    metadata,
    Column("id", String(100), primary_key=True),
    Column("statements", Text, nullable=False),  # JSON object {domain: [actions]}
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_invitations = Table(
    "invitations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("code", String(32), nullable=False, unique=True),
    Column("creator_id", String(36), nullable=False),
    Column("user_id", String(36)),
    Column("created_at", String(32), nullable=False),
    Column("used_at", String(32)),
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class InvitationUnavailableError(Exception):
    """The invitation code is unknown or has already been claimed."""


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, RoleRecord and Invitation entities.

    Usage:
        store = UserStore("sqlite:///cosmos.db")
        uid = store.create_user(User(username="admin", role="admin", hashed_password=...))
        store.create_role(RoleRecord(id="editor", statements='{"post": ["update"]}'))
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username or email exists.
        """
        user_id = user.id or new_id()
        with self.engine.begin() as conn:
            conn.execute(_user_insert(user, user_id))
        return user_id

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_role_string(self, user_id: str) -> str | None:
        """Return the comma-joined role string for an active user, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users.c.role).where((_users.c.id == user_id) & (_users.c.is_active == 1))
            ).fetchone()
        return row.role if row is not None else None

    def set_role(self, user_id: str, role: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(role=role))
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=now_iso()))

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def list_roles(self) -> list[RoleRecord]:
        """Return every durable role row ordered by id."""
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.id)).fetchall()
        return [_row_to_role(r) for r in rows]

    def get_role(self, role_id: str) -> RoleRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def create_role(self, role: RoleRecord) -> None:
        """Insert a role row. Raises IntegrityError if the id already exists."""
        now = now_iso()
        with self.engine.begin() as conn:
            conn.execute(_roles.insert().values(id=role.id, statements=role.statements, created_at=now, updated_at=now))

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def count_invitations(self, creator_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_invitations).where(_invitations.c.creator_id == creator_id)
            ).scalar()
        return result or 0

    def create_invitation(self, invitation: Invitation) -> Invitation:
        invitation_id = invitation.id or new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _invitations.insert().values(
                    id=invitation_id,
                    code=invitation.code,
                    creator_id=invitation.creator_id,
                    created_at=now_iso(),
                )
            )
            row = conn.execute(_invitations.select().where(_invitations.c.id == invitation_id)).fetchone()
        return _row_to_invitation(row)

    def list_invitations(self, creator_id: str) -> list[Invitation]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _invitations.select()
                .where(_invitations.c.creator_id == creator_id)
                .order_by(_invitations.c.created_at.desc())
            ).fetchall()
        return [_row_to_invitation(r) for r in rows]

    def get_invitation_by_code(self, code: str) -> Invitation | None:
        with self.engine.connect() as conn:
            row = conn.execute(_invitations.select().where(_invitations.c.code == code)).fetchone()
        return _row_to_invitation(row) if row is not None else None

    def create_user_with_invitation(self, user: User, code: str) -> str:
        """Insert a user and claim an unused invitation in one transaction.

        The claim is an UPDATE guarded by user_id IS NULL, so of two sign-ups
        racing for the same code exactly one commits. The loser's user row is
        rolled back with it.

        Raises InvitationUnavailableError if the code is unknown or already
        claimed, IntegrityError if the username or email exists.
        """
        user_id = user.id or new_id()
        with self.engine.begin() as conn:
            conn.execute(_user_insert(user, user_id))
            claimed = conn.execute(
                _invitations.update()
                .where((_invitations.c.code == code) & _invitations.c.user_id.is_(None))
                .values(user_id=user_id, used_at=now_iso())
            )
            if claimed.rowcount == 0:
                raise InvitationUnavailableError(code)
        return user_id

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_insert(user: User, user_id: str):
    return _users.insert().values(
        id=user_id,
        username=user.username,
        email=user.email,
        display_name=user.display_name,
        hashed_password=user.hashed_password,
        role=user.role,
        created_at=now_iso(),
        is_active=1 if user.is_active else 0,
    )


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        display_name=row.display_name,
        hashed_password=row.hashed_password,
        role=row.role,
        created_at=row.created_at,
        last_login=row.last_login,
        is_active=bool(row.is_active),
    )


def _row_to_role(row) -> RoleRecord:
    return RoleRecord(
        id=row.id,
        statements=row.statements,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_invitation(row) -> Invitation:
    return Invitation(
        id=row.id,
        code=row.code,
        creator_id=row.creator_id,
        user_id=row.user_id,
        created_at=row.created_at,
        used_at=row.used_at,
    )
