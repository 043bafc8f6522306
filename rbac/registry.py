"""
rbac/registry.py -- The Role/Permission Registry.

Owns role definitions and answers the single authorization question:
may a role perform an action on a resource? The answer is default-deny --
only an explicit Permission entry containing the action grants access.

Principals reference roles by name. The registry never imports the
credential store; it is handed anything that satisfies RoleReferences so it
can refuse to delete a role still in use and carry renames over to the
principals that reference the old name.

Read-modify-write operations (set_permission, toggle_permission, update) run
under one registry lock so two concurrent edits to the same role cannot lose
each other's changes.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Iterable, Protocol

from core.errors import Conflict, NotFound, ValidationFailed
from core.query import FieldSet, ListParams, Page, paginate
from rbac.models import (
    DEFAULT_ROLES,
    Action,
    Resource,
    Role,
    parse_action,
    parse_actions,
    parse_resource,
    validate_color,
    validate_role_name,
)
from rbac.store import RoleStore

logger = logging.getLogger("gatekeeper.rbac")

ROLE_FIELDS: FieldSet[Role] = FieldSet(
    search=(lambda r: r.name,),
    sortable={
        "id": lambda r: r.id,
        "name": lambda r: r.name,
        "color": lambda r: r.color,
    },
    filterable={
        "name": lambda r: r.name,
        "color": lambda r: r.color,
    },
)


class RoleReferences(Protocol):
    """What the registry needs to know about principals holding a role."""

    def count_by_role(self, role_name: str) -> int: ...

    def rename_role(self, old_name: str, new_name: str) -> int: ...


class RoleRegistry:
    """Role CRUD plus authorization decisions.

    Usage:
        registry = RoleRegistry(MemoryRoleStore(), references=credential_store)
        role = registry.create("Auditor", "#112233")
        registry.set_permission(role.id, "Content", {"Read"})
        registry.authorize(role, Resource.CONTENT, Action.READ)   # True
    """

    def __init__(self, store: RoleStore, references: RoleReferences | None = None) -> None:
        self._store = store
        self._references = references
        self._lock = threading.RLock()

    def bind_references(self, references: RoleReferences) -> None:
        self._references = references

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, role_id: int) -> Role | None:
        return self._store.get(role_id)

    def get_by_name(self, name: str) -> Role | None:
        return self._store.get_by_name(name)

    def require(self, role_id: int) -> Role:
        role = self._store.get(role_id)
        if role is None:
            raise NotFound("Role not found.")
        return role

    def list_all(self, params: ListParams | None = None, max_page_size: int = 100) -> Page[Role]:
        return paginate(self._store.list_all(), params or ListParams(), ROLE_FIELDS, max_page_size)

    @contextmanager
    def holding_role(self, name: str) -> Iterator[Role]:
        """Keep role name alive while the caller assigns it to a principal.

        Raises ValidationFailed for an unknown name. delete() and update() take
        the same lock, so the role cannot be deleted or renamed until the block
        exits.
        """
        with self._lock:
            role = self._store.get_by_name(name)
            if role is None:
                raise ValidationFailed(f"Unknown role {name!r}.")
            yield role

    @staticmethod
    def list_resources() -> list[Resource]:
        return list(Resource)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, name: str, color: str) -> Role:
        """Create a role with an empty permission set."""
        role = Role(name=validate_role_name(name), color=validate_color(color))
        with self._lock:
            self._check_name_free(role.name, None)
            role.id = self._store.create(role)
        logger.info("Created role %r (id=%s)", role.name, role.id)
        return role

    def update(self, role_id: int, name: str | None = None, color: str | None = None) -> Role:
        """Rename and/or recolor a role; principals follow a rename."""
        with self._lock:
            role = self.require(role_id)
            old_name = role.name
            if name is not None:
                role.name = validate_role_name(name)
                self._check_name_free(role.name, role.id)
            if color is not None:
                role.color = validate_color(color)
            self._store.save(role)
            if role.name != old_name and self._references is not None:
                moved = self._references.rename_role(old_name, role.name)
                logger.info("Renamed role %r to %r (%d principal(s) re-pointed)", old_name, role.name, moved)
        return role

    def set_permission(self, role_id: int, resource: Resource | str, actions: Iterable[Action | str]) -> Role:
        """Replace the action set for one resource on a role.

        Idempotent: the same set twice leaves the role as after the first call.
        An empty set removes the resource's entry.
        """
        resource = parse_resource(resource)
        wanted = parse_actions(actions)
        with self._lock:
            role = self.require(role_id)
            current = role.permission_for(resource)
            if (current.actions if current else frozenset()) == wanted:
                return role
            role.permissions = role.with_permission(resource, wanted)
            self._store.save(role)
        logger.info(
            "Set %s permissions on role %r to %s",
            resource.value,
            role.name,
            sorted(a.value for a in wanted) or "none",
        )
        return role

    def toggle_permission(self, role_id: int, resource: Resource | str, action: Action | str) -> Role:
        """Flip one action on one resource, merging into the existing entry."""
        resource = parse_resource(resource)
        action = parse_action(action)
        with self._lock:
            role = self.require(role_id)
            current = role.permission_for(resource)
            actions = set(current.actions) if current else set()
            actions.symmetric_difference_update({action})
            return self.set_permission(role_id, resource, actions)

    def delete(self, role_id: int) -> None:
        """Delete a role. Refuses with Conflict while any principal references it."""
        with self._lock:
            role = self.require(role_id)
            if self._references is not None:
                in_use = self._references.count_by_role(role.name)
                if in_use:
                    raise Conflict(f"Role {role.name!r} is assigned to {in_use} user(s) and cannot be deleted.")
            self._store.delete(role_id)
        logger.info("Deleted role %r (id=%s)", role.name, role_id)

    def seed_defaults(self) -> int:
        """Install the stock Admin/Editor/Viewer roles into an empty store.

        Returns the number of roles created (0 when any role already exists).
        """
        with self._lock:
            if self._store.list_all():
                return 0
            for template in DEFAULT_ROLES:
                self._store.create(Role(name=template.name, color=template.color, permissions=list(template.permissions)))
        logger.info("Seeded %d default roles", len(DEFAULT_ROLES))
        return len(DEFAULT_ROLES)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    @staticmethod
    def authorize(role: Role | None, resource: Resource | str, action: Action | str) -> bool:
        """True iff role has an entry for resource whose action set holds action."""
        if role is None:
            return False
        return role.allows(parse_resource(resource), parse_action(action))

    def _check_name_free(self, name: str, own_id: int | None) -> None:
        for existing in self._store.list_all():
            if existing.name.lower() == name.lower() and existing.id != own_id:
                raise Conflict(f"A role named {existing.name!r} already exists.")
