"""
core/errors.py -- Error taxonomy for the access-control core.

Every failure a caller can act on is a GatekeeperError subclass carrying a
stable machine-readable code and a human message. to_dict() produces the
same {"code": ..., "message": ...} envelope the rendering layer displays.

AuthenticationFailed deliberately has a single fixed message: the caller must
never be able to tell "no such user" from "wrong password".

Storage-layer failures (I/O, connection loss) are not part of this taxonomy
and propagate unchanged.
"""

from __future__ import annotations


class GatekeeperError(Exception):
    """Base class for every error the core surfaces to callers."""

    code = "error"
    default_message = "Request failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class NotFound(GatekeeperError):
    code = "not_found"
    default_message = "Not found."


class Conflict(GatekeeperError):
    code = "conflict"
    default_message = "The request conflicts with existing state."


class AuthenticationFailed(GatekeeperError):
    code = "bad_credentials"
    default_message = "Invalid email or password."

    def __init__(self) -> None:
        # The message is fixed on purpose; see module docstring.
        super().__init__()


class RateLimited(GatekeeperError):
    code = "rate_limited"
    default_message = "Too many failed login attempts. Please try again later."


class ValidationFailed(GatekeeperError):
    code = "validation_failed"
    default_message = "Invalid input."
