"""
core/config.py -- Runtime settings for gatekeeper, read with pydantic-settings.

Only this module touches the environment. Stores, the service and the CLI
receive a Settings instance (usually from get_settings()) and never read
os.environ themselves.

How values arrive:
  Each field maps to an upper-case env var of the same name (session_ttl_seconds
      -> SESSION_TTL_SECONDS), optionally via a .env file in the working
      directory. pydantic coerces and range-checks them.

  get_settings() is wrapped in lru_cache, so the environment is read once per
      process. Tests that change env vars clear the cache around themselves.

  Two after-validators run once every field is known: one applies the
      SECRET_KEY policy, the other cross-checks log level and page sizes.

SECRET_KEY:
  Session tokens are persisted only as HMAC-SHA256(SECRET_KEY, token), so the
  key is mandatory outside DEBUG and must be at least 32 characters. Rotating
  it invalidates every outstanding session.

Layer rule: core/ is the kernel. This module may not import from auth/ or rbac/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatekeeper.config")

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    """Every tunable of the access-control core.

    Defaults match the documented policy (1-hour sessions, 5 failures per
    15 minutes). Settings(debug=True) is enough to build one in tests.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # "" means unset; validate_secret_key replaces it or refuses to start.
    secret_key: str = ""
    # Empty string selects the in-memory stores.
    database_url: str = ""
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_ttl_seconds: int = Field(default=3600, ge=1)

    # ------------------------------------------------------------------
    # Brute-force lockout
    # ------------------------------------------------------------------

    lockout_window_seconds: int = Field(default=900, ge=1)
    lockout_threshold: int = Field(default=5, ge=1)

    # ------------------------------------------------------------------
    # Password hashing -- bcrypt accepts 4..31, each step doubles the cost
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    default_page_size: int = Field(default=10, ge=1)
    max_page_size: int = Field(default=100, ge=1)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Fill in a throwaway key under DEBUG, otherwise demand a real one.

        A generated key lives only as long as the process, so sessions kept
        in a SQL backend stop validating after a restart.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("DEBUG is on and SECRET_KEY is unset; using a per-process key.")
            else:
                raise ValueError(
                    "SECRET_KEY is required unless DEBUG=true. "
                    "Export it or put it in .env (32+ characters)."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long.")
        return self

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Reject a log level logging does not know and a default page larger than the cap."""
        self.log_level = self.log_level.upper()
        if self.log_level not in _VALID_LOG_LEVELS:
            raise ValueError(f"Invalid LOG_LEVEL: {self.log_level!r}")
        if self.default_page_size > self.max_page_size:
            raise ValueError("DEFAULT_PAGE_SIZE cannot exceed MAX_PAGE_SIZE.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Process-wide Settings, built from the environment on first use.

    Call get_settings.cache_clear() after changing env vars (tests do).
    """
    return Settings()
