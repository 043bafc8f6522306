"""
rbac/models.py -- Domain types for the role/permission model.

Resources and actions are closed enumerations. Values arriving from callers
as plain strings go through parse_resource() / parse_action(), which reject
anything outside the enumeration with ValidationFailed.

A Role holds an ordered list of Permission entries with at most one entry per
resource. Authorization is default-deny: a resource with no entry grants
nothing.

Layer rule: no imports from auth/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from core.errors import ValidationFailed

COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")


class Resource(str, Enum):
    USERS = "Users"
    ROLES = "Roles"
    CONTENT = "Content"
    SETTINGS = "Settings"


class Action(str, Enum):
    CREATE = "Create"
    READ = "Read"
    UPDATE = "Update"
    DELETE = "Delete"


# Canonical display order (enum declaration order)
_ACTION_ORDER = {action: i for i, action in enumerate(Action)}


def parse_resource(value: Resource | str) -> Resource:
    if isinstance(value, Resource):
        return value
    try:
        return Resource(value)
    except ValueError:
        raise ValidationFailed(f"Unknown resource {value!r}.") from None


def parse_action(value: Action | str) -> Action:
    if isinstance(value, Action):
        return value
    try:
        return Action(value)
    except ValueError:
        raise ValidationFailed(f"Unknown action {value!r}.") from None


def parse_actions(values: Iterable[Action | str]) -> frozenset[Action]:
    """Coerce an iterable of action names into a set; duplicates collapse."""
    if isinstance(values, (str, Action)):
        values = [values]
    return frozenset(parse_action(v) for v in values)


def sorted_actions(actions: Iterable[Action]) -> list[Action]:
    return sorted(actions, key=_ACTION_ORDER.__getitem__)


@dataclass(frozen=True)
class Permission:
    """The set of actions a role may perform on one resource type."""

    resource: Resource
    actions: frozenset[Action] = frozenset()


@dataclass
class Role:
    """A named bundle of permissions that principals reference by name.

    color is display metadata for the dashboard; authorization ignores it.
    id is None before the record is written to a store.
    """

    name: str
    color: str
    permissions: list[Permission] = field(default_factory=list)
    id: Optional[int] = None

    def permission_for(self, resource: Resource) -> Permission | None:
        for perm in self.permissions:
            if perm.resource == resource:
                return perm
        return None

    def allows(self, resource: Resource, action: Action) -> bool:
        perm = self.permission_for(resource)
        return perm is not None and action in perm.actions

    def with_permission(self, resource: Resource, actions: frozenset[Action]) -> list[Permission]:
        """Return the permission list with resource's entry replaced by actions.

        An existing entry keeps its position; a new one is appended. An empty
        action set drops the entry.
        """
        updated: list[Permission] = []
        placed = False
        for perm in self.permissions:
            if perm.resource == resource:
                placed = True
                if actions:
                    updated.append(Permission(resource, actions))
            else:
                updated.append(perm)
        if not placed and actions:
            updated.append(Permission(resource, actions))
        return updated


def validate_role_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationFailed("Role name cannot be empty.")
    if len(name) > 100:
        raise ValidationFailed("Role name cannot exceed 100 characters.")
    return name


def validate_color(color: str) -> str:
    color = (color or "").strip()
    if not COLOR_PATTERN.match(color):
        raise ValidationFailed(f"Color must be a #RRGGBB hex string, got {color!r}.")
    return color.upper()


# Stock roles installed by RoleRegistry.seed_defaults()
DEFAULT_ROLES: tuple[Role, ...] = (
    Role(
        name="Admin",
        color="#FF6B6B",
        permissions=[
            Permission(Resource.USERS, frozenset(Action)),
            Permission(Resource.ROLES, frozenset(Action)),
            Permission(Resource.CONTENT, frozenset(Action)),
            Permission(Resource.SETTINGS, frozenset({Action.READ, Action.UPDATE})),
        ],
    ),
    Role(
        name="Editor",
        color="#4ECDC4",
        permissions=[
            Permission(Resource.CONTENT, frozenset({Action.CREATE, Action.READ, Action.UPDATE})),
            Permission(Resource.USERS, frozenset({Action.READ})),
        ],
    ),
    Role(
        name="Viewer",
        color="#45B7D1",
        permissions=[
            Permission(Resource.CONTENT, frozenset({Action.READ})),
            Permission(Resource.USERS, frozenset({Action.READ})),
        ],
    ),
)
