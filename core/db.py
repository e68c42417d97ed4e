"""
core/db.py -- Engine construction shared by every SQLAlchemy repository.

UserStore, ModerationStore and SettingStore each own an engine built here,
so the SQLite tweaks live in one place:
  check_same_thread=False  -- TestClient and uvicorn run sync handlers in a
                              thread pool
  PRAGMA journal_mode=WAL  -- readers do not block during writes (file DBs
                              only; in-memory DBs reject WAL)

Layer rule: core/ is the kernel. No imports from api/, auth/, moderation/,
instance/, or cache/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _is_memory(db_url: str) -> bool:
    return ":memory:" in db_url or "mode=memory" in db_url


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite tweaks every store needs."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite") and not _is_memory(db_url):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex
