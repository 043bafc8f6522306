"""
auth/store.py -- The Credential Store: principal records and password checks.

Pattern: Repository + Data Mapper. CredentialStore is the abstract repository;
MemoryCredentialStore keeps process-scoped state and SqlCredentialStore
persists through SQLAlchemy Core, with _row_to_principal as the mapper.
Password hashing and verification live on the base class so every backend
hashes the same way.

Security:
  All SQL queries use bound parameters. No f-strings in SQL.
  Password digests never leave this module and auth/service.py.

Policy: set_password() does not revoke existing sessions. A password change
  is not treated as evidence of compromise; forced logout is an explicit
  separate call (SessionManager.revoke_all).
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime

from sqlalchemy import Column, Integer, String, Table, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Principal, UserStatus
from auth.tokens import DEFAULT_ROUNDS, dummy_hash, hash_password, verify_password
from core.db import as_utc, from_iso, metadata, resolve_now, to_iso, utcnow
from core.errors import Conflict, NotFound

# Fields update() accepts. Anything else is a programming error.
_MUTABLE_FIELDS = frozenset(
    {"email", "name", "role", "status", "two_factor_enabled", "password_digest", "last_password_change", "last_login"}
)
_TIMESTAMP_FIELDS = ("last_password_change", "last_login", "created_at")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_principals = Table(
    "principals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("role", String(100), nullable=False),  # Role name, not id
    Column("status", String(10), nullable=False, server_default=UserStatus.ACTIVE.value),
    Column("password_digest", Text, nullable=False, server_default=""),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("last_password_change", String(32)),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialStore(ABC):
    """Principal data access plus salted-digest password handling."""

    def __init__(self, rounds: int = DEFAULT_ROUNDS) -> None:
        self.rounds = rounds
        self._dummy_digest = dummy_hash(rounds)

    # ------------------------------------------------------------------
    # Data access (backend specific)
    # ------------------------------------------------------------------

    @abstractmethod
    def get(self, principal_id: int) -> Principal | None: ...

    @abstractmethod
    def find_by_email(self, email: str) -> Principal | None:
        """Look up a principal by email (normalised before matching)."""

    @abstractmethod
    def list_all(self) -> list[Principal]:
        """Return every principal in id (creation) order."""

    @abstractmethod
    def create(self, principal: Principal) -> int:
        """Insert a principal and return its id. Raises Conflict on a duplicate email."""

    @abstractmethod
    def update(self, principal_id: int, **fields) -> bool:
        """Update mutable fields. Returns False if principal_id is unknown.

        Raises ValueError on an unknown field name and Conflict when a new
        email is already taken.
        """

    @abstractmethod
    def delete(self, principal_id: int) -> bool: ...

    @abstractmethod
    def count_by_role(self, role_name: str) -> int: ...

    @abstractmethod
    def rename_role(self, old_name: str, new_name: str) -> int:
        """Re-point principals holding old_name to new_name; returns how many moved."""

    # ------------------------------------------------------------------
    # Credentials (shared by all backends)
    # ------------------------------------------------------------------

    def hash(self, plaintext: str) -> str:
        return hash_password(plaintext, self.rounds)

    def verify_password(self, principal: Principal, plaintext: str) -> bool:
        """Constant-time check of plaintext against the principal's digest."""
        return verify_password(plaintext, principal.password_digest)

    def burn_verification(self, plaintext: str) -> None:
        """Run one discarded verification so a lookup miss costs as much as a hit."""
        verify_password(plaintext, self._dummy_digest)

    def set_password(self, principal_id: int, plaintext: str, now: datetime | None = None) -> None:
        """Replace the digest and stamp last_password_change. Sessions are kept."""
        digest = self.hash(plaintext)
        if not self.update(principal_id, password_digest=digest, last_password_change=resolve_now(now)):
            raise NotFound("User not found.")

    def touch_last_login(self, principal_id: int, now: datetime | None = None) -> None:
        self.update(principal_id, last_login=resolve_now(now))

    @staticmethod
    def _check_fields(fields: dict) -> None:
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown principal fields: {unknown!r}")


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


def _utc_fields(fields: dict) -> dict:
    """The timestamp entries of fields, normalised to aware UTC."""
    return {k: as_utc(fields[k]) for k in _TIMESTAMP_FIELDS if fields.get(k) is not None}


class MemoryCredentialStore(CredentialStore):
    def __init__(self, rounds: int = DEFAULT_ROUNDS) -> None:
        super().__init__(rounds)
        self._lock = threading.RLock()
        self._principals: dict[int, Principal] = {}
        self._next_id = 1

    def get(self, principal_id: int) -> Principal | None:
        with self._lock:
            p = self._principals.get(principal_id)
            return replace(p) if p is not None else None

    def find_by_email(self, email: str) -> Principal | None:
        email = normalize_email(email)
        with self._lock:
            for p in self._principals.values():
                if p.email == email:
                    return replace(p)
        return None

    def list_all(self) -> list[Principal]:
        with self._lock:
            return [replace(p) for p in self._principals.values()]

    def create(self, principal: Principal) -> int:
        email = normalize_email(principal.email)
        with self._lock:
            self._check_email_free(email, None)
            principal_id = self._next_id
            self._next_id += 1
            stored = replace(principal, id=principal_id, email=email, created_at=principal.created_at or utcnow())
            self._principals[principal_id] = replace(stored, **_utc_fields(vars(stored)))
            return principal_id

    def update(self, principal_id: int, **fields) -> bool:
        self._check_fields(fields)
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        if "status" in fields:
            fields["status"] = UserStatus(fields["status"])
        fields.update(_utc_fields(fields))
        with self._lock:
            current = self._principals.get(principal_id)
            if current is None:
                return False
            if "email" in fields:
                self._check_email_free(fields["email"], principal_id)
            self._principals[principal_id] = replace(current, **fields)
            return True

    def delete(self, principal_id: int) -> bool:
        with self._lock:
            return self._principals.pop(principal_id, None) is not None

    def count_by_role(self, role_name: str) -> int:
        with self._lock:
            return sum(1 for p in self._principals.values() if p.role == role_name)

    def rename_role(self, old_name: str, new_name: str) -> int:
        with self._lock:
            moved = 0
            for pid, p in self._principals.items():
                if p.role == old_name:
                    self._principals[pid] = replace(p, role=new_name)
                    moved += 1
            return moved

    def _check_email_free(self, email: str, own_id: int | None) -> None:
        for p in self._principals.values():
            if p.email == email and p.id != own_id:
                raise Conflict("A user with that email already exists.")


# ---------------------------------------------------------------------------
# SQLAlchemy backend
# ---------------------------------------------------------------------------


class SqlCredentialStore(CredentialStore):
    """Principal repository over SQLAlchemy Core.

    Usage:
        store = SqlCredentialStore(create_store_engine("sqlite:///gatekeeper.db"))
        pid = store.create(Principal(email="a@example.com", name="A", role="Viewer",
                                     password_digest=store.hash("secret-pass")))
        principal = store.find_by_email("a@example.com")
    """

    def __init__(self, engine: Engine, rounds: int = DEFAULT_ROUNDS) -> None:
        super().__init__(rounds)
        self.engine = engine
        metadata.create_all(self.engine, tables=[_principals])

    def get(self, principal_id: int) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_principals.select().where(_principals.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def find_by_email(self, email: str) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where(_principals.c.email == normalize_email(email))
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def list_all(self) -> list[Principal]:
        with self.engine.connect() as conn:
            rows = conn.execute(_principals.select().order_by(_principals.c.id)).fetchall()
        return [_row_to_principal(r) for r in rows]

    def create(self, principal: Principal) -> int:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _principals.insert().values(
                        email=normalize_email(principal.email),
                        name=principal.name,
                        role=principal.role,
                        status=principal.status.value,
                        password_digest=principal.password_digest,
                        two_factor_enabled=1 if principal.two_factor_enabled else 0,
                        last_password_change=to_iso(principal.last_password_change),
                        last_login=to_iso(principal.last_login),
                        created_at=to_iso(principal.created_at or utcnow()),
                    )
                )
        except IntegrityError as exc:
            raise Conflict("A user with that email already exists.") from exc
        return result.inserted_primary_key[0]

    def update(self, principal_id: int, **fields) -> bool:
        self._check_fields(fields)
        values = dict(fields)
        if "email" in values:
            values["email"] = normalize_email(values["email"])
        if "status" in values:
            values["status"] = UserStatus(values["status"]).value
        if "two_factor_enabled" in values:
            values["two_factor_enabled"] = 1 if values["two_factor_enabled"] else 0
        for key in ("last_password_change", "last_login"):
            if key in values:
                values[key] = to_iso(values[key])
        if not values:
            return self.get(principal_id) is not None
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_principals.update().where(_principals.c.id == principal_id).values(**values))
        except IntegrityError as exc:
            raise Conflict("A user with that email already exists.") from exc
        return result.rowcount > 0

    def delete(self, principal_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_principals.delete().where(_principals.c.id == principal_id))
        return result.rowcount > 0

    def count_by_role(self, role_name: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_principals).where(_principals.c.role == role_name)
            ).scalar()
        return result or 0

    def rename_role(self, old_name: str, new_name: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_principals.update().where(_principals.c.role == old_name).values(role=new_name))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        name=row.name,
        role=row.role,
        status=UserStatus(row.status),
        password_digest=row.password_digest or "",
        two_factor_enabled=bool(row.two_factor_enabled),
        last_password_change=from_iso(row.last_password_change),
        last_login=from_iso(row.last_login),
        created_at=from_iso(row.created_at),
    )
