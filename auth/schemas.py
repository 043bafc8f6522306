"""
auth/schemas.py -- Caller-facing input and output models (pydantic v2).

These models define the contract between the core and whatever sits on top
of it (dashboard, HTTP layer, CLI). They are intentionally separate from the
dataclasses in auth/models.py and rbac/models.py, which own the internal
domain representation. AuthService maps between the two.

UserView has no password or digest field, so a serialized principal cannot
leak credentials no matter how it is dumped.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from auth.models import Principal, UserStatus
from core.errors import ValidationFailed
from rbac.models import Action, Resource, Role, sorted_actions

# Deliberately loose: one "@", no whitespace, a dot in the domain part.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

M = TypeVar("M", bound=BaseModel)


def parse_input(model: type[M], data: M | Mapping[str, Any]) -> M:
    """Coerce a mapping (or pass through an instance) into model.

    pydantic's ValidationError is converted to ValidationFailed naming the
    first offending field.
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(dict(data))
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ())) or "input"
        raise ValidationFailed(f"{where}: {first.get('msg', 'invalid value')}") from exc


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Input for AuthService.create_user.

    confirm_password is optional; when given it must equal password (the
    dashboard's "confirm password" box).
    """

    name: str = Field(min_length=1, max_length=255)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    role: str = Field(min_length=1, max_length=100)
    status: UserStatus = UserStatus.ACTIVE
    password: str = Field(min_length=8, max_length=255)
    confirm_password: Optional[str] = None
    two_factor_enabled: bool = False

    @field_validator("name", "email", "role", mode="before")
    @classmethod
    def strip_text(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()

    @model_validator(mode="after")
    def passwords_match(self) -> "UserCreate":
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Passwords do not match.")
        return self


class UserUpdate(BaseModel):
    """Partial update. Fields left as None are not touched."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    role: Optional[str] = Field(default=None, min_length=1, max_length=100)
    status: Optional[UserStatus] = None
    password: Optional[str] = Field(default=None, min_length=8, max_length=255)
    confirm_password: Optional[str] = None
    two_factor_enabled: Optional[bool] = None

    @field_validator("name", "email", "role", mode="before")
    @classmethod
    def strip_text(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value is not None else None

    @model_validator(mode="after")
    def passwords_match(self) -> "UserUpdate":
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Passwords do not match.")
        return self


class RoleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    color: str = Field(pattern=r"^#[0-9A-Fa-f]{6}$")

    @field_validator("name", "color", mode="before")
    @classmethod
    def strip_text(cls, value: Any) -> Any:
        return _strip(value)


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")

    @field_validator("name", "color", mode="before")
    @classmethod
    def strip_text(cls, value: Any) -> Any:
        return _strip(value)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserView(BaseModel):
    """A principal as callers see it. Carries no credential material."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    role: str
    status: UserStatus
    two_factor_enabled: bool
    last_login: Optional[datetime] = None
    last_password_change: Optional[datetime] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "UserView":
        return cls(
            id=principal.id,
            name=principal.name,
            email=principal.email,
            role=principal.role,
            status=principal.status,
            two_factor_enabled=principal.two_factor_enabled,
            last_login=principal.last_login,
            last_password_change=principal.last_password_change,
        )


class PermissionView(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource: Resource
    actions: list[Action]


class RoleView(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    color: str
    permissions: list[PermissionView]

    @classmethod
    def from_role(cls, role: Role) -> "RoleView":
        return cls(
            id=role.id,
            name=role.name,
            color=role.color,
            permissions=[
                PermissionView(resource=p.resource, actions=sorted_actions(p.actions)) for p in role.permissions
            ],
        )
