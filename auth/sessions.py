"""
auth/sessions.py -- Session Manager: opaque tokens with absolute expiry.

Lifecycle per token:
  Active(principal_id, expires_at)
    -> Expired  (derived at validation time once now >= expires_at)
    -> Revoked  (explicit logout or revoke_all; terminal)
  Nothing returns to Active. A new login issues a new token.

validate() answers None for both "never issued / revoked" and "expired" so
callers cannot probe which tokens once existed. Expired rows may linger in
the store until purge_expired() runs; they never validate.

Tokens are stored only as HMAC digests (see auth/tokens.py). The raw token is
returned once by issue() and lives only in the caller's hands.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta

from sqlalchemy import Column, Integer, String, Table
from sqlalchemy.engine import Engine

from auth.models import Session
from auth.tokens import digest_token, generate_session_token
from core.db import as_utc, from_iso, metadata, resolve_now, to_iso, utcnow

logger = logging.getLogger("gatekeeper.sessions")

DEFAULT_SESSION_TTL = 3600  # 1 hour

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_sessions = Table(
    "sessions",
    metadata,
    Column("token_digest", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("principal_id", Integer, nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)


class SessionStore(ABC):
    @abstractmethod
    def add(self, session: Session) -> None: ...

    @abstractmethod
    def get(self, token_digest: str) -> Session | None: ...

    @abstractmethod
    def delete(self, token_digest: str) -> bool: ...

    @abstractmethod
    def delete_for_principal(self, principal_id: int) -> int: ...

    @abstractmethod
    def purge_expired(self, now: datetime) -> int:
        """Delete sessions with expires_at <= now. Returns rows removed."""


class MemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def add(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.token_digest] = replace(session, expires_at=as_utc(session.expires_at))

    def get(self, token_digest: str) -> Session | None:
        with self._lock:
            s = self._sessions.get(token_digest)
            return replace(s) if s is not None else None

    def delete(self, token_digest: str) -> bool:
        with self._lock:
            return self._sessions.pop(token_digest, None) is not None

    def delete_for_principal(self, principal_id: int) -> int:
        with self._lock:
            doomed = [d for d, s in self._sessions.items() if s.principal_id == principal_id]
            for digest in doomed:
                del self._sessions[digest]
            return len(doomed)

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            now = as_utc(now)
            doomed = [d for d, s in self._sessions.items() if not s.is_valid_at(now)]
            for digest in doomed:
                del self._sessions[digest]
            return len(doomed)


class SqlSessionStore(SessionStore):
    """Session table over SQLAlchemy Core. Timestamps are ISO 8601 UTC text,
    which sorts and compares correctly as strings."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine, tables=[_sessions])

    def add(self, session: Session) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    token_digest=session.token_digest,
                    principal_id=session.principal_id,
                    expires_at=to_iso(session.expires_at),
                    created_at=to_iso(session.created_at or utcnow()),
                )
            )

    def get(self, token_digest: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_digest == token_digest)).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete(self, token_digest: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.token_digest == token_digest))
        return result.rowcount > 0

    def delete_for_principal(self, principal_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.principal_id == principal_id))
        return result.rowcount

    def purge_expired(self, now: datetime) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= to_iso(now)))
        return result.rowcount


def _row_to_session(row) -> Session:
    return Session(
        token_digest=row.token_digest,
        principal_id=row.principal_id,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
    )


class SessionManager:
    """Issue, validate and revoke opaque session tokens.

    Usage:
        sessions = SessionManager(MemorySessionStore(), secret_key=settings.secret_key)
        token = sessions.issue(principal_id=7)
        sessions.validate(token)   # 7 until the hour is up, then None
        sessions.revoke(token)     # idempotent
    """

    def __init__(self, store: SessionStore, secret_key: str, ttl_seconds: int = DEFAULT_SESSION_TTL) -> None:
        self._store = store
        self._secret_key = secret_key
        self.ttl = timedelta(seconds=ttl_seconds)

    def issue(self, principal_id: int, now: datetime | None = None) -> str:
        now = resolve_now(now)
        token = generate_session_token()
        self._store.add(
            Session(
                token_digest=digest_token(self._secret_key, token),
                principal_id=principal_id,
                expires_at=now + self.ttl,
                created_at=now,
            )
        )
        logger.debug("Issued session for principal %s", principal_id)
        return token

    def validate(self, token: str, now: datetime | None = None) -> int | None:
        """Return the bound principal id iff the token is known and unexpired."""
        if not token:
            return None
        session = self._store.get(digest_token(self._secret_key, token))
        if session is None or not session.is_valid_at(resolve_now(now)):
            logger.debug("Rejected unknown or expired session token")
            return None
        return session.principal_id

    def revoke(self, token: str) -> None:
        """Remove a session. Revoking an unknown token is not an error."""
        if token:
            self._store.delete(digest_token(self._secret_key, token))

    def revoke_all(self, principal_id: int) -> int:
        """Remove every session of a principal (deletion, deactivation, forced logout)."""
        removed = self._store.delete_for_principal(principal_id)
        if removed:
            logger.info("Revoked %d session(s) for principal %s", removed, principal_id)
        return removed

    def purge_expired(self, now: datetime | None = None) -> int:
        return self._store.purge_expired(resolve_now(now))
