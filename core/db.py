"""
core/db.py -- Engine construction shared by every SQLAlchemy Core store.

Each store (users, auditor tokens, audit log, equipment) owns its own Engine
and MetaData, but they are all built the same way:

  - SQLite URLs get check_same_thread=False because FastAPI runs sync route
    handlers in a thread pool and the pool hands connections across threads.
  - SQLite connections are switched to WAL journal mode for concurrent read
    safety. In-memory databases ignore the pragma, which is harmless.

Timestamps are stored as ISO 8601 UTC strings (TEXT columns). All writers use
now_iso() so lexical comparison of stored values matches chronological order.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode. Set per-connection because SQLite PRAGMAs are
    not inherited by new connections from the pool."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_iso(value: datetime) -> str:
    """Normalise a datetime to the stored UTC ISO form. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()
