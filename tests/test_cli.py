"""End-to-end tests for main.py -- the admin CLI over a SQLite file."""

import json

import pytest

from core.config import get_settings
from main import main

ADMIN_PASSWORD = "admin-password-1"


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    """Run the CLI in a scratch directory with a fixed key and cheap hashing."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "cli-secret-key-0123456789abcdef0123456789")
    monkeypatch.setenv("BCRYPT_ROUNDS", "4")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    get_settings.cache_clear()
    yield f"sqlite:///{tmp_path / 'cli.db'}"
    get_settings.cache_clear()


def _run(db_url: str, *args: str) -> int:
    return main(["--database-url", db_url, *args])


def _seed(db_url: str) -> None:
    assert _run(db_url, "seed", "--admin-email", "admin@example.com", "--admin-password", ADMIN_PASSWORD) == 0


def test_login_authorize_logout_round(cli_env, capsys) -> None:
    _seed(cli_env)
    capsys.readouterr()

    assert _run(cli_env, "login", "admin@example.com", "--password", ADMIN_PASSWORD) == 0
    token = capsys.readouterr().out.strip().splitlines()[-1]

    assert _run(cli_env, "authorize", token, "Users", "Delete") == 0
    assert "allowed" in capsys.readouterr().out

    assert _run(cli_env, "authorize", token, "Settings", "Delete") == 1
    assert "denied" in capsys.readouterr().out

    assert _run(cli_env, "logout", token) == 0
    assert _run(cli_env, "authorize", token, "Users", "Read") == 1


def test_bad_password_exits_with_error(cli_env, capsys) -> None:
    _seed(cli_env)
    capsys.readouterr()
    assert _run(cli_env, "login", "admin@example.com", "--password", "wrong-password") == 2
    assert "Invalid email or password." in capsys.readouterr().err


def test_users_json_has_no_password(cli_env, capsys) -> None:
    _seed(cli_env)
    capsys.readouterr()
    assert _run(cli_env, "users", "--json") == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["total"] == 1
    assert payload["data"][0]["email"] == "admin@example.com"
    assert "password_digest" not in payload["data"][0]


def test_roles_listing(cli_env, capsys) -> None:
    _seed(cli_env)
    capsys.readouterr()
    assert _run(cli_env, "roles") == 0
    out = capsys.readouterr().out
    assert "Admin" in out and "Viewer" in out
    assert "3 role(s)" in out


def test_unknown_sort_field_is_reported(cli_env, capsys) -> None:
    _seed(cli_env)
    capsys.readouterr()
    assert _run(cli_env, "users", "--sort", "password") == 2
    assert "Cannot sort on field" in capsys.readouterr().err


def test_purge_prints_counts(cli_env, capsys) -> None:
    _seed(cli_env)
    capsys.readouterr()
    assert _run(cli_env, "purge") == 0
    assert json.loads(capsys.readouterr().out) == {"sessions": 0, "attempts": 0}
