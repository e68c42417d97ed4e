"""
instance/store.py -- SQLAlchemy Core persistence for instance settings.

One row per key. Values are stored as text exactly as written
(format_value() in instance/service.py); parsing happens on the way out.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

from sqlalchemy import Column, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine

from core.db import make_engine, now_iso

metadata = MetaData()

_settings = Table(
    "settings",
    metadata,
    Column("key", String(100), primary_key=True),
    Column("value", Text, nullable=False),
    Column("updated_at", String(32), nullable=False),
)


class SettingStore:
    """Repository for raw setting values.

    Usage:
        store = SettingStore("sqlite:///cosmos.db")
        store.upsert("app_name", "Cosmos")
        store.get("app_name")   # "Cosmos"
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def get(self, key: str) -> str | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_settings.c.value).where(_settings.c.key == key)).fetchone()
        return row.value if row is not None else None

    def upsert(self, key: str, value: str) -> None:
        now = now_iso()
        with self.engine.begin() as conn:
            updated = conn.execute(
                _settings.update().where(_settings.c.key == key).values(value=value, updated_at=now)
            )
            if updated.rowcount == 0:
                conn.execute(_settings.insert().values(key=key, value=value, updated_at=now))

    def close(self) -> None:
        self.engine.dispose()
