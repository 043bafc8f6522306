"""
rbac/store.py -- Pluggable persistence for Role entities.

Pattern: Repository. RoleStore is the abstract contract the registry talks
to; MemoryRoleStore keeps process-scoped state, SqlRoleStore persists through
SQLAlchemy Core (Repository + Data Mapper, same shape as auth/store.py).

Both backends hand out copies: mutating a returned Role never changes stored
state until it is written back with save().

Layer rule: no imports from auth/.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import replace

from sqlalchemy import Column, Integer, String, Table, Text, UniqueConstraint, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.db import metadata, to_iso, utcnow
from core.errors import Conflict
from rbac.models import Permission, Resource, Role, parse_actions, sorted_actions

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("color", String(7), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_role_permissions = Table(
    "role_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", Integer, nullable=False),
    Column("resource", String(20), nullable=False),
    Column("actions", Text, nullable=False),  # comma-separated, canonical order
    Column("position", Integer, nullable=False),  # preserves entry order
    UniqueConstraint("role_id", "resource", name="uq_role_resource"),
)


def _copy(role: Role) -> Role:
    return replace(role, permissions=list(role.permissions))


class RoleStore(ABC):
    """Contract every role backend implements."""

    @abstractmethod
    def get(self, role_id: int) -> Role | None: ...

    @abstractmethod
    def get_by_name(self, name: str) -> Role | None: ...

    @abstractmethod
    def list_all(self) -> list[Role]:
        """Return every role in id (creation) order."""

    @abstractmethod
    def create(self, role: Role) -> int:
        """Insert a role and return its id. Raises Conflict on a duplicate name."""

    @abstractmethod
    def save(self, role: Role) -> bool:
        """Overwrite name, color and permissions of an existing role.

        Returns False if role.id is unknown. Raises Conflict on a duplicate name.
        """

    @abstractmethod
    def delete(self, role_id: int) -> bool: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryRoleStore(RoleStore):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._roles: dict[int, Role] = {}
        self._next_id = 1

    def get(self, role_id: int) -> Role | None:
        with self._lock:
            role = self._roles.get(role_id)
            return _copy(role) if role is not None else None

    def get_by_name(self, name: str) -> Role | None:
        with self._lock:
            for role in self._roles.values():
                if role.name == name:
                    return _copy(role)
        return None

    def list_all(self) -> list[Role]:
        with self._lock:
            return [_copy(r) for r in self._roles.values()]

    def create(self, role: Role) -> int:
        with self._lock:
            self._check_unique(role.name, None)
            role_id = self._next_id
            self._next_id += 1
            self._roles[role_id] = replace(_copy(role), id=role_id)
            return role_id

    def save(self, role: Role) -> bool:
        with self._lock:
            if role.id not in self._roles:
                return False
            self._check_unique(role.name, role.id)
            self._roles[role.id] = _copy(role)
            return True

    def delete(self, role_id: int) -> bool:
        with self._lock:
            return self._roles.pop(role_id, None) is not None

    def _check_unique(self, name: str, own_id: int | None) -> None:
        for existing in self._roles.values():
            if existing.name == name and existing.id != own_id:
                raise Conflict(f"A role named {name!r} already exists.")


# ---------------------------------------------------------------------------
# SQLAlchemy backend
# ---------------------------------------------------------------------------


class SqlRoleStore(RoleStore):
    """Role repository over SQLAlchemy Core.

    Usage:
        store = SqlRoleStore(create_store_engine("sqlite:///gatekeeper.db"))
        role_id = store.create(Role(name="Auditor", color="#112233"))
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine, tables=[_roles, _role_permissions])

    def get(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
            if row is None:
                return None
            return _row_to_role(row, self._load_permissions(conn, [row.id]).get(row.id, []))

    def get_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
            if row is None:
                return None
            return _row_to_role(row, self._load_permissions(conn, [row.id]).get(row.id, []))

    def list_all(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.id)).fetchall()
            perms = self._load_permissions(conn, [r.id for r in rows])
        return [_row_to_role(r, perms.get(r.id, [])) for r in rows]

    def create(self, role: Role) -> int:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_roles.insert().values(name=role.name, color=role.color, created_at=to_iso(utcnow())))
                role_id = result.inserted_primary_key[0]
                self._write_permissions(conn, role_id, role.permissions)
        except IntegrityError as exc:
            raise Conflict(f"A role named {role.name!r} already exists.") from exc
        return role_id

    def save(self, role: Role) -> bool:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _roles.update().where(_roles.c.id == role.id).values(name=role.name, color=role.color)
                )
                if result.rowcount == 0:
                    return False
                conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role.id))
                self._write_permissions(conn, role.id, role.permissions)
        except IntegrityError as exc:
            raise Conflict(f"A role named {role.name!r} already exists.") from exc
        return True

    def delete(self, role_id: int) -> bool:
        with self.engine.begin() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
        return result.rowcount > 0

    @staticmethod
    def _write_permissions(conn, role_id: int, permissions: list[Permission]) -> None:
        for position, perm in enumerate(permissions):
            conn.execute(
                _role_permissions.insert().values(
                    role_id=role_id,
                    resource=perm.resource.value,
                    actions=",".join(a.value for a in sorted_actions(perm.actions)),
                    position=position,
                )
            )

    @staticmethod
    def _load_permissions(conn, role_ids: list[int]) -> dict[int, list[Permission]]:
        if not role_ids:
            return {}
        rows = conn.execute(
            select(_role_permissions)
            .where(_role_permissions.c.role_id.in_(role_ids))
            .order_by(_role_permissions.c.role_id, _role_permissions.c.position)
        ).fetchall()
        grouped: dict[int, list[Permission]] = {}
        for row in rows:
            grouped.setdefault(row.role_id, []).append(_row_to_permission(row))
        return grouped


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_permission(row) -> Permission:
    actions = [a for a in row.actions.split(",") if a]
    return Permission(resource=Resource(row.resource), actions=parse_actions(actions))


def _row_to_role(row, permissions: list[Permission]) -> Role:
    return Role(id=row.id, name=row.name, color=row.color, permissions=permissions)
