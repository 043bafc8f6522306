"""
core/db.py -- Shared SQLAlchemy engine and schema metadata for the SQL stores.

Every SQL-backed store (principals, roles, sessions, login attempts) declares
its tables on the one `metadata` object below and is handed the same Engine,
so a single connection string decides where all state lives. Swapping SQLite
for PostgreSQL is a connection string change, not a rewrite.

In-memory SQLite URLs get a StaticPool: a plain ':memory:' database is
per-connection, so without it each pooled connection (and each thread) would
see a blank schema.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _is_memory_sqlite(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in db_url


def create_store_engine(db_url: str) -> Engine:
    """Build an Engine suitable for the gatekeeper stores. Each store creates its own tables."""
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if _is_memory_sqlite(db_url):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(db_url, **kwargs)
    if db_url.startswith("sqlite") and not _is_memory_sqlite(db_url):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Timestamp mapping -- stored as ISO 8601 text, handled as aware UTC datetimes
# ---------------------------------------------------------------------------


def as_utc(value: datetime) -> datetime:
    """Aware UTC copy of value. Naive datetimes are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_now(now: datetime | None) -> datetime:
    """The instant an operation runs at: the caller's now (as UTC) or the clock."""
    return as_utc(now) if now is not None else utcnow()


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    # Fixed width so text comparison in SQL orders chronologically
    return as_utc(value).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
