"""
auth/limiter.py -- Brute-force lockout over a sliding window of failed logins.

A bucket is locked while it holds at least THRESHOLD failed attempts with
timestamp > now - WINDOW. Failures age out on their own; a successful login
does not clear them. The defaults (5 failures / 15 minutes) blunt credential
stuffing without any external state.

Buckets:
  - a resolved principal is bucketed by its id;
  - an email that resolved to nobody is bucketed by the normalised email
    (principal_id == UNKNOWN_PRINCIPAL), so unknown and known emails lock
    out the same way and lockouts do not reveal which emails exist.

Atomicity: guard() serializes each bucket. The authentication service
holds it across check -> verify -> record, so two concurrent failures cannot
both observe "4 failures, not yet locked" and slip through. The locks are
process-local; a single logical authority for sessions is assumed.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta

from sqlalchemy import Boolean, Column, Integer, String, Table, and_, func, select
from sqlalchemy.engine import Engine

from auth.models import UNKNOWN_PRINCIPAL, LoginAttempt
from core.db import as_utc, from_iso, metadata, resolve_now, to_iso

logger = logging.getLogger("gatekeeper.limiter")

LOCKOUT_WINDOW = timedelta(minutes=15)
LOCKOUT_THRESHOLD = 5

# Buckets share a fixed pool of locks so memory stays bounded however many
# distinct emails are tried. Same bucket, same stripe.
_LOCK_STRIPES = 64

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_login_attempts = Table(
    "login_attempts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_id", Integer, nullable=False, index=True),
    Column("email", String(255), nullable=False, server_default=""),
    Column("timestamp", String(32), nullable=False),
    Column("successful", Boolean, nullable=False),
    Column("source_address", String(45), nullable=False, server_default=""),
)


class AttemptLog(ABC):
    """Append-only login attempt log."""

    @abstractmethod
    def append(self, attempt: LoginAttempt) -> None: ...

    @abstractmethod
    def count_failures(self, principal_id: int, email: str, since: datetime) -> int:
        """Count failed attempts in the bucket with timestamp strictly after since."""

    @abstractmethod
    def recent(self, principal_id: int, email: str = "", limit: int = 20) -> list[LoginAttempt]:
        """Newest-first attempts in a bucket (for audit display)."""

    @abstractmethod
    def purge_before(self, cutoff: datetime) -> int:
        """Drop attempts at or before cutoff; they can no longer affect a lockout."""


def _in_bucket(attempt: LoginAttempt, principal_id: int, email: str) -> bool:
    if principal_id != UNKNOWN_PRINCIPAL:
        return attempt.principal_id == principal_id
    return attempt.principal_id == UNKNOWN_PRINCIPAL and attempt.email == email


class MemoryAttemptLog(AttemptLog):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._attempts: list[LoginAttempt] = []

    def append(self, attempt: LoginAttempt) -> None:
        with self._lock:
            self._attempts.append(replace(attempt, timestamp=as_utc(attempt.timestamp)))

    def count_failures(self, principal_id: int, email: str, since: datetime) -> int:
        since = as_utc(since)
        with self._lock:
            return sum(
                1
                for a in self._attempts
                if not a.successful and a.timestamp > since and _in_bucket(a, principal_id, email)
            )

    def recent(self, principal_id: int, email: str = "", limit: int = 20) -> list[LoginAttempt]:
        with self._lock:
            matching = [a for a in self._attempts if _in_bucket(a, principal_id, email)]
        return list(reversed(matching))[:limit]

    def purge_before(self, cutoff: datetime) -> int:
        cutoff = as_utc(cutoff)
        with self._lock:
            before = len(self._attempts)
            self._attempts = [a for a in self._attempts if a.timestamp > cutoff]
            return before - len(self._attempts)


class SqlAttemptLog(AttemptLog):
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine, tables=[_login_attempts])

    def append(self, attempt: LoginAttempt) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _login_attempts.insert().values(
                    principal_id=attempt.principal_id,
                    email=attempt.email,
                    timestamp=to_iso(attempt.timestamp),
                    successful=attempt.successful,
                    source_address=attempt.source_address,
                )
            )

    def count_failures(self, principal_id: int, email: str, since: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_login_attempts)
                .where(
                    and_(
                        _bucket_clause(principal_id, email),
                        _login_attempts.c.successful.is_(False),
                        _login_attempts.c.timestamp > to_iso(since),
                    )
                )
            ).scalar()
        return result or 0

    def recent(self, principal_id: int, email: str = "", limit: int = 20) -> list[LoginAttempt]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _login_attempts.select()
                .where(_bucket_clause(principal_id, email))
                .order_by(_login_attempts.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def purge_before(self, cutoff: datetime) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_login_attempts.delete().where(_login_attempts.c.timestamp <= to_iso(cutoff)))
        return result.rowcount


def _bucket_clause(principal_id: int, email: str):
    if principal_id != UNKNOWN_PRINCIPAL:
        return _login_attempts.c.principal_id == principal_id
    return and_(_login_attempts.c.principal_id == UNKNOWN_PRINCIPAL, _login_attempts.c.email == email)


def _row_to_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        principal_id=row.principal_id,
        email=row.email,
        timestamp=from_iso(row.timestamp),
        successful=bool(row.successful),
        source_address=row.source_address,
    )


class RateLimiter:
    """Record login outcomes and decide whether a bucket is locked.

    Usage:
        limiter = RateLimiter(MemoryAttemptLog())
        with limiter.guard(principal.id):
            if limiter.is_locked(principal.id, now):
                ...
            limiter.record_attempt(principal.id, False, "10.0.0.5", now)
    """

    def __init__(
        self,
        log: AttemptLog,
        window_seconds: int = int(LOCKOUT_WINDOW.total_seconds()),
        threshold: int = LOCKOUT_THRESHOLD,
    ) -> None:
        self._log = log
        self.window = timedelta(seconds=window_seconds)
        self.threshold = threshold
        self._stripes = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    @staticmethod
    def _bucket(principal_id: int, email: str) -> tuple[int, str]:
        return (principal_id, "") if principal_id != UNKNOWN_PRINCIPAL else (UNKNOWN_PRINCIPAL, email)

    @contextmanager
    def guard(self, principal_id: int, email: str = "") -> Iterator[None]:
        """Serialize check-then-record for one bucket."""
        key = self._bucket(principal_id, email)
        with self._stripes[hash(key) % _LOCK_STRIPES]:
            yield

    def record_attempt(
        self,
        principal_id: int,
        successful: bool,
        source_address: str,
        now: datetime | None = None,
        email: str = "",
    ) -> None:
        self._log.append(
            LoginAttempt(
                principal_id=principal_id,
                timestamp=resolve_now(now),
                successful=successful,
                source_address=source_address,
                email=email,
            )
        )

    def failure_count(self, principal_id: int, now: datetime | None = None, email: str = "") -> int:
        now = resolve_now(now)
        return self._log.count_failures(principal_id, email, now - self.window)

    def is_locked(self, principal_id: int, now: datetime | None = None, email: str = "") -> bool:
        return self.failure_count(principal_id, now, email) >= self.threshold

    def recent_attempts(self, principal_id: int, email: str = "", limit: int = 20) -> list[LoginAttempt]:
        return self._log.recent(principal_id, email, limit)

    def purge(self, now: datetime | None = None) -> int:
        """Drop attempts that have aged out of the window."""
        removed = self._log.purge_before(resolve_now(now) - self.window)
        if removed:
            logger.info("Purged %d aged-out login attempt(s)", removed)
        return removed
