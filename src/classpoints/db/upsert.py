"""Dialect-aware INSERT for ON CONFLICT upserts.

PostgreSQL in production, SQLite in tests and local runs. Both dialects
expose ``on_conflict_do_update`` / ``on_conflict_do_nothing`` with the same
signature, so callers build one statement for either backend.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(db: AsyncSession, model: Any) -> Any:
    """Return an ``insert(model)`` construct for the session's dialect."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    msg = f"Upserts not supported on dialect {dialect!r}"
    raise RuntimeError(msg)
