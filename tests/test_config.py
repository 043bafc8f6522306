"""Unit tests for core/config.py -- SECRET_KEY policy and limit validation."""

import pytest
from pydantic import ValidationError

from core.config import Settings, get_settings


class TestSecretKey:
    def test_debug_generates_key(self) -> None:
        s = Settings(debug=True, secret_key="")
        assert len(s.secret_key) >= 32

    def test_production_requires_key(self) -> None:
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            Settings(debug=False, secret_key="")

    def test_short_key_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least 32"):
            Settings(debug=True, secret_key="too-short")

    def test_explicit_key_kept(self) -> None:
        key = "k" * 40
        assert Settings(debug=False, secret_key=key).secret_key == key


class TestLimits:
    def test_defaults(self) -> None:
        s = Settings(debug=True)
        assert s.session_ttl_seconds == 3600
        assert s.lockout_window_seconds == 900
        assert s.lockout_threshold == 5
        assert s.default_page_size == 10
        assert s.database_url == ""

    def test_log_level_normalised(self) -> None:
        assert Settings(debug=True, log_level="warning").log_level == "WARNING"
        with pytest.raises(ValidationError):
            Settings(debug=True, log_level="chatty")

    def test_bcrypt_rounds_bounds(self) -> None:
        with pytest.raises(ValidationError):
            Settings(debug=True, bcrypt_rounds=3)

    def test_default_page_over_cap(self) -> None:
        with pytest.raises(ValidationError):
            Settings(debug=True, default_page_size=50, max_page_size=20)


def test_get_settings_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("SECRET_KEY", "e" * 48)
    monkeypatch.setenv("SESSION_TTL_SECONDS", "60")
    get_settings.cache_clear()
    try:
        s = get_settings()
        assert s.secret_key == "e" * 48
        assert s.session_ttl_seconds == 60
        assert get_settings() is s
    finally:
        get_settings.cache_clear()
