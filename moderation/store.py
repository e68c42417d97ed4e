"""
moderation/store.py -- SQLAlchemy Core persistence for violations and disputes.

Pattern: Repository + Data Mapper, same as auth/store.py. ModerationStore is
the repository; _row_to_violation / _row_to_dispute are the mappers.

JSON columns: content, applicable_rules and moderation_metadata are stored as
JSON text and decoded by the mappers, so every read path returns
applicable_rules as a list.

Integrity:
  UNIQUE(violation_id) on disputes backs the one-dispute-per-violation rule.
  The route checks first for a friendly 409; the constraint closes the race
  between two concurrent dispute requests.

  resolve_dispute() guards its UPDATE with status = 'pending', so of two
  concurrent resolutions exactly one wins. With atomic=True the dispute and
  violation updates share one transaction; with atomic=False they commit
  independently and a crash in between leaves the dispute resolved while the
  violation still shows its old overturned value.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = ModerationStore("sqlite:///cosmos.db")
    v = store.create_violation(Violation(user_id=..., moderator_id=..., content={}, severity=5))
    d = store.create_dispute(Dispute(violation_id=v.id, user_id=v.user_id, reason="..."))
    store.resolve_dispute(d.id, "approved", reviewer_id=..., justification="...")
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from core.db import make_engine, new_id, now_iso
from moderation.models import DISPUTE_APPROVED, DISPUTE_PENDING, MODERATION_APPROVED, Dispute, Violation

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_violations = Table(
    "violations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36)),
    Column("moderator_id", String(36)),
    Column("content", Text, nullable=False),  # JSON payload
    Column("severity", Integer, nullable=False),
    Column("applicable_rules", Text, nullable=False, server_default="[]"),  # JSON array
    Column("public_comment", Text),
    Column("internal_note", Text),
    Column("overturned", Integer, nullable=False, server_default="0"),
    Column("expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_updated_by", String(36)),
    Column("moderation_status", String(30), nullable=False, server_default=MODERATION_APPROVED),
    Column("moderation_metadata", Text),  # JSON object
)

_disputes = Table(
    "disputes",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("violation_id", String(36), nullable=False),
    Column("user_id", String(36), nullable=False),
    Column("reason", Text, nullable=False),
    Column("status", String(20), nullable=False, server_default=DISPUTE_PENDING),
    Column("justification", Text),
    Column("reviewed_by", String(36)),
    Column("reviewed_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("violation_id", name="uq_dispute_violation"),
)

# Sortable columns exposed to the list endpoint. Anything else is rejected
# before it reaches SQL.
VIOLATION_SORT_COLUMNS = {
    "createdAt": _violations.c.created_at,
    "updatedAt": _violations.c.updated_at,
    "severity": _violations.c.severity,
    "expiresAt": _violations.c.expires_at,
}

# Fields update_violation() accepts.
_UPDATABLE = {"content", "public_comment", "internal_note", "severity", "overturned", "expires_at"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _loads(raw: Optional[str], default: Any = None) -> Any:
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ModerationStore:
    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Violations
    # ------------------------------------------------------------------

    def create_violation(self, violation: Violation, default_expiry_days: int = 30) -> Violation:
        """Insert a violation. expires_at defaults to creation time + default_expiry_days."""
        now = datetime.now(timezone.utc)
        violation_id = violation.id or new_id()
        expires_at = violation.expires_at or (now + timedelta(days=default_expiry_days)).isoformat()
        with self.engine.begin() as conn:
            conn.execute(
                _violations.insert().values(
                    id=violation_id,
                    user_id=violation.user_id,
                    moderator_id=violation.moderator_id,
                    content=json.dumps(violation.content),
                    severity=violation.severity,
                    applicable_rules=json.dumps(list(violation.applicable_rules)),
                    public_comment=violation.public_comment,
                    internal_note=violation.internal_note,
                    overturned=1 if violation.overturned else 0,
                    expires_at=expires_at,
                    created_at=now.isoformat(),
                    updated_at=now.isoformat(),
                    last_updated_by=violation.moderator_id,
                    moderation_status=violation.moderation_status,
                    moderation_metadata=(
                        json.dumps(violation.moderation_metadata) if violation.moderation_metadata is not None else None
                    ),
                )
            )
            return self._get_violation(conn, violation_id)

    def get_violation(self, violation_id: str) -> Violation | None:
        with self.engine.connect() as conn:
            return self._get_violation(conn, violation_id)

    def _get_violation(self, conn: Connection, violation_id: str) -> Violation | None:
        row = conn.execute(_violations.select().where(_violations.c.id == violation_id)).fetchone()
        return _row_to_violation(row) if row is not None else None

    def get_violations(self, violation_ids: list[str]) -> dict[str, Violation]:
        """Batch lookup keyed by id. Missing ids are simply absent."""
        if not violation_ids:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(_violations.select().where(_violations.c.id.in_(violation_ids))).fetchall()
        return {row.id: _row_to_violation(row) for row in rows}

    def list_violations(
        self,
        user_id: str | None = None,
        moderator_id: str | None = None,
        overturned: bool | None = None,
        moderation_status: str | None = None,
        limit: int = 10,
        offset: int = 0,
        sort_by: str = "createdAt",
        sort_direction: str = "desc",
    ) -> tuple[list[Violation], int]:
        """Return one page of violations and the total matching count.

        Raises ValueError for an unknown sort_by or sort_direction.
        """
        column = VIOLATION_SORT_COLUMNS.get(sort_by)
        if column is None:
            raise ValueError(f"Unknown sort column: {sort_by!r}")
        if sort_direction not in ("asc", "desc"):
            raise ValueError(f"Unknown sort direction: {sort_direction!r}")

        conditions = []
        if user_id is not None:
            conditions.append(_violations.c.user_id == user_id)
        if moderator_id is not None:
            conditions.append(_violations.c.moderator_id == moderator_id)
        if overturned is not None:
            conditions.append(_violations.c.overturned == (1 if overturned else 0))
        if moderation_status is not None:
            conditions.append(_violations.c.moderation_status == moderation_status)

        order = column.asc() if sort_direction == "asc" else column.desc()
        query = _violations.select().where(*conditions).order_by(order, _violations.c.id).limit(limit).offset(offset)
        count_query = select(func.count()).select_from(_violations).where(*conditions)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            total = conn.execute(count_query).scalar() or 0
        return [_row_to_violation(r) for r in rows], total

    def update_violation(
        self,
        violation_id: str,
        updated_by: str,
        require_status: str | None = MODERATION_APPROVED,
        **fields: Any,
    ) -> Violation | None:
        """Apply field updates to a violation.

        Only rows whose moderation_status equals require_status are touched;
        pass require_status=None to skip the gate. Returns the updated
        Violation, or None if no eligible row exists.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown violation fields: {unknown!r}")
        values: dict[str, Any] = {"updated_at": now_iso(), "last_updated_by": updated_by}
        for name, value in fields.items():
            if name == "content":
                values[name] = json.dumps(value)
            elif name == "overturned":
                values[name] = 1 if value else 0
            else:
                values[name] = value

        condition = _violations.c.id == violation_id
        if require_status is not None:
            condition = condition & (_violations.c.moderation_status == require_status)
        with self.engine.begin() as conn:
            result = conn.execute(_violations.update().where(condition).values(**values))
            if result.rowcount == 0:
                return None
            return self._get_violation(conn, violation_id)

    def set_moderation_status(self, violation_id: str, status: str, metadata: dict | None = None) -> bool:
        """Record the upstream moderation workflow's verdict for a violation."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _violations.update()
                .where(_violations.c.id == violation_id)
                .values(
                    moderation_status=status,
                    moderation_metadata=json.dumps(metadata) if metadata is not None else None,
                    updated_at=now_iso(),
                )
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def create_dispute(self, dispute: Dispute) -> Dispute:
        """Insert a pending dispute.

        Raises sqlalchemy.exc.IntegrityError if the violation already has one.
        """
        dispute_id = dispute.id or new_id()
        now = now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _disputes.insert().values(
                    id=dispute_id,
                    violation_id=dispute.violation_id,
                    user_id=dispute.user_id,
                    reason=dispute.reason,
                    status=DISPUTE_PENDING,
                    created_at=now,
                    updated_at=now,
                )
            )
            return self._get_dispute(conn, dispute_id)

    def get_dispute(self, dispute_id: str) -> Dispute | None:
        with self.engine.connect() as conn:
            return self._get_dispute(conn, dispute_id)

    def _get_dispute(self, conn: Connection, dispute_id: str) -> Dispute | None:
        row = conn.execute(_disputes.select().where(_disputes.c.id == dispute_id)).fetchone()
        return _row_to_dispute(row) if row is not None else None

    def get_dispute_for_violation(self, violation_id: str) -> Dispute | None:
        with self.engine.connect() as conn:
            row = conn.execute(_disputes.select().where(_disputes.c.violation_id == violation_id)).fetchone()
        return _row_to_dispute(row) if row is not None else None

    def list_disputes(
        self,
        status: str | None = None,
        user_id: str | None = None,
        violation_id: str | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[Dispute], int]:
        """Return one page of disputes (newest first) and the total count."""
        conditions = []
        if status is not None:
            conditions.append(_disputes.c.status == status)
        if user_id is not None:
            conditions.append(_disputes.c.user_id == user_id)
        if violation_id is not None:
            conditions.append(_disputes.c.violation_id == violation_id)

        query = (
            _disputes.select()
            .where(*conditions)
            .order_by(_disputes.c.created_at.desc(), _disputes.c.id)
            .limit(limit)
            .offset(offset)
        )
        count_query = select(func.count()).select_from(_disputes).where(*conditions)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            total = conn.execute(count_query).scalar() or 0
        return [_row_to_dispute(r) for r in rows], total

    def resolve_dispute(
        self,
        dispute_id: str,
        status: str,
        reviewer_id: str,
        justification: str | None = None,
        atomic: bool = True,
    ) -> Dispute | None:
        """Move a pending dispute to its terminal status and set overturned.

        The violation's overturned flag becomes True iff status is approved.
        Returns the resolved Dispute, or None when the dispute was not pending
        (missing, or already resolved by a concurrent request).
        """
        now = now_iso()
        dispute_update = (
            _disputes.update()
            .where((_disputes.c.id == dispute_id) & (_disputes.c.status == DISPUTE_PENDING))
            .values(status=status, justification=justification, reviewed_by=reviewer_id, reviewed_at=now, updated_at=now)
        )
        overturned = 1 if status == DISPUTE_APPROVED else 0

        if atomic:
            with self.engine.begin() as conn:
                if conn.execute(dispute_update).rowcount == 0:
                    return None
                dispute = self._get_dispute(conn, dispute_id)
                self._set_overturned(conn, dispute.violation_id, overturned, reviewer_id, now)
                return dispute

        with self.engine.begin() as conn:
            if conn.execute(dispute_update).rowcount == 0:
                return None
            dispute = self._get_dispute(conn, dispute_id)
        with self.engine.begin() as conn:
            self._set_overturned(conn, dispute.violation_id, overturned, reviewer_id, now)
        return dispute

    def _set_overturned(self, conn: Connection, violation_id: str, overturned: int, reviewer_id: str, now: str) -> None:
        conn.execute(
            _violations.update()
            .where(_violations.c.id == violation_id)
            .values(overturned=overturned, last_updated_by=reviewer_id, updated_at=now)
        )

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_violation(row) -> Violation:
    return Violation(
        id=row.id,
        user_id=row.user_id,
        moderator_id=row.moderator_id,
        content=_loads(row.content),
        severity=row.severity,
        applicable_rules=_loads(row.applicable_rules, default=[]),
        public_comment=row.public_comment,
        internal_note=row.internal_note,
        overturned=bool(row.overturned),
        expires_at=row.expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_updated_by=row.last_updated_by,
        moderation_status=row.moderation_status,
        moderation_metadata=_loads(row.moderation_metadata),
    )


def _row_to_dispute(row) -> Dispute:
    return Dispute(
        id=row.id,
        violation_id=row.violation_id,
        user_id=row.user_id,
        reason=row.reason,
        status=row.status,
        justification=row.justification,
        reviewed_by=row.reviewed_by,
        reviewed_at=row.reviewed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
