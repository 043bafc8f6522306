"""
auth/tokens.py -- Password hashing and session token utilities.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). Bcrypt is the right
       choice for low-entropy secrets because its cost factor makes brute-force
       expensive. The cost factor is configurable (Settings.bcrypt_rounds).
       dummy_hash() backs timing equalization in the credential store so
       response time does not reveal whether an email exists.

  Session tokens: secrets.token_hex(32) gives 256 bits of entropy -- guessing
       a live token is computationally infeasible. Stores keep only
       HMAC-SHA256(SECRET_KEY, token), so a leaked session table cannot be
       replayed without also knowing SECRET_KEY. The digest is deterministic,
       which keeps validation an O(1) lookup.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

import bcrypt

from core.errors import ValidationFailed

# bcrypt only looks at the first 72 bytes; longer input is rejected instead
# of being silently truncated.
MAX_PASSWORD_BYTES = 72
DEFAULT_ROUNDS = 12


def hash_password(plain: str, rounds: int = DEFAULT_ROUNDS) -> str:
    """Return a salted bcrypt digest of the given plaintext password."""
    encoded = plain.encode("utf-8")
    if not encoded:
        raise ValidationFailed("Password cannot be empty.")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValidationFailed(f"Password cannot exceed {MAX_PASSWORD_BYTES} bytes.")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt digest.

    Malformed or empty digests (e.g. an account created without a password)
    and over-long inputs verify as False instead of raising.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def dummy_hash(rounds: int = DEFAULT_ROUNDS) -> str:
    """Return a throwaway digest at the given cost for timing equalization.

    Verifying against it costs the same as verifying a real digest of the
    same cost, so a lookup miss can run bcrypt too instead of returning early.
    """
    return hash_password("gatekeeper_timing_dummy", rounds)


def generate_session_token() -> str:
    """Generate a fresh opaque session token (64 hex chars)."""
    return secrets.token_hex(32)


def digest_token(secret_key: str, raw_token: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_token) as a hex string."""
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()
