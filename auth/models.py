"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the
service do the work.

password_digest lives on Principal because the credential store and the
authentication service need it; it never crosses the service boundary --
auth/schemas.UserView has no field for it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

# LoginAttempt.principal_id for an email that resolved to no principal
UNKNOWN_PRINCIPAL = 0


class UserStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


@dataclass
class Principal:
    """An account that can authenticate.

    email is stored normalised (trimmed, lower-case) and is unique.
    role holds a Role *name*, not an id -- roles are referenced by name.
    id is None before the record is written to a store.
    """

    email: str
    name: str
    role: str
    password_digest: str = ""
    status: UserStatus = UserStatus.ACTIVE
    two_factor_enabled: bool = False
    last_password_change: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime | None = None
    id: int | None = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def __repr__(self) -> str:
        # Keep the digest out of logs and tracebacks
        return f"Principal(id={self.id!r}, email={self.email!r}, role={self.role!r}, status={self.status.value})"


@dataclass
class Session:
    """A live login. Only the HMAC digest of the token is ever stored."""

    token_digest: str
    principal_id: int
    expires_at: datetime
    created_at: datetime | None = None

    def is_valid_at(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class LoginAttempt:
    """Append-only record of one login attempt. Never updated or deleted early.

    email is the normalised address that was submitted; for an unknown email
    (principal_id == UNKNOWN_PRINCIPAL) it is the rate-limit bucket key.
    """

    principal_id: int
    timestamp: datetime
    successful: bool
    source_address: str
    email: str = ""
