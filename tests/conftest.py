"""
tests/conftest.py -- Shared fixtures for the gatekeeper test suite.

This module provides:
  - T0: a fixed "now" so lockout windows and session expiry are tested with
        explicit instants instead of wall-clock sleeps
  - settings: Settings with a fixed secret key and bcrypt's minimum cost (4)
        so hashing does not dominate test runtime
  - backend: parametrised over "memory" and "sqlite" so every store-facing
        test runs against both backends
  - service: a fully wired AuthService with the stock roles and three users

SQLite tests use sqlite:///:memory:; core.db.create_store_engine gives it a
StaticPool so every connection (and thread) sees the same database.

The DEBUG env var is set before any project import so get_settings() can
auto-generate SECRET_KEY instead of raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from datetime import datetime, timezone

# CRITICAL: Set DEBUG before any core/auth import.
os.environ.setdefault("DEBUG", "true")

import pytest

from auth.service import AuthService
from core.config import Settings
from core.db import create_store_engine

T0 = datetime(2024, 6, 15, 10, 0, 0, tzinfo=timezone.utc)

TEST_SECRET = "test-secret-key-0123456789abcdef0123456789abcdef"
PASSWORD = "correct-horse-1"


def make_settings(**overrides) -> Settings:
    values = {"secret_key": TEST_SECRET, "bcrypt_rounds": 4, "debug": True}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture(params=["memory", "sqlite"])
def backend(request) -> str:
    return request.param


@pytest.fixture
def engine():
    e = create_store_engine("sqlite:///:memory:")
    yield e
    e.dispose()


@pytest.fixture
def service(backend: str) -> Generator[AuthService, None, None]:
    """AuthService with Admin/Editor/Viewer roles and three users.

    Users (all with password PASSWORD):
      - john@example.com -> Admin, Active
      - jane@example.com -> Editor, Active
      - bob@example.com  -> Viewer, Inactive
    """
    database_url = "sqlite:///:memory:" if backend == "sqlite" else ""
    svc = AuthService.from_settings(make_settings(database_url=database_url))
    svc.seed_default_roles()
    svc.create_user({"name": "John Doe", "email": "john@example.com", "role": "Admin", "password": PASSWORD}, now=T0)
    svc.create_user(
        {"name": "Jane Smith", "email": "jane@example.com", "role": "Editor", "password": PASSWORD}, now=T0
    )
    svc.create_user(
        {
            "name": "Bob Johnson",
            "email": "bob@example.com",
            "role": "Viewer",
            "status": "Inactive",
            "password": PASSWORD,
        },
        now=T0,
    )
    yield svc
    svc.close()
