"""Unit tests for auth/sessions.py -- token issuance, expiry and revocation.

Covers:
- 1-hour TTL boundary (valid at +3599s, gone at +3600s and +3601s)
- revoke() then validate() is absent; revoking twice is fine
- revoke_all() cascades across every session of one principal
- Only the HMAC digest of a token reaches the store
- Expired sessions never validate, whether or not they were purged
"""

from datetime import timedelta

import pytest

from auth.sessions import MemorySessionStore, SessionManager, SqlSessionStore
from auth.tokens import digest_token
from tests.conftest import T0, TEST_SECRET


@pytest.fixture
def store(backend: str, engine):
    return SqlSessionStore(engine) if backend == "sqlite" else MemorySessionStore()


@pytest.fixture
def sessions(store) -> SessionManager:
    return SessionManager(store, secret_key=TEST_SECRET, ttl_seconds=3600)


class TestExpiry:
    def test_valid_just_before_ttl(self, sessions: SessionManager) -> None:
        token = sessions.issue(42, T0)
        assert sessions.validate(token, T0 + timedelta(seconds=3599)) == 42

    def test_absent_at_and_after_ttl(self, sessions: SessionManager) -> None:
        token = sessions.issue(42, T0)
        assert sessions.validate(token, T0 + timedelta(seconds=3600)) is None
        assert sessions.validate(token, T0 + timedelta(seconds=3601)) is None

    def test_expired_row_stays_invalid_without_purge(self, sessions: SessionManager, store) -> None:
        token = sessions.issue(42, T0)
        assert store.get(digest_token(TEST_SECRET, token)) is not None
        assert sessions.validate(token, T0 + timedelta(hours=2)) is None

    def test_purge_removes_only_expired(self, sessions: SessionManager) -> None:
        old = sessions.issue(1, T0)
        fresh = sessions.issue(2, T0 + timedelta(minutes=30))
        removed = sessions.purge_expired(T0 + timedelta(minutes=61))
        assert removed == 1
        assert sessions.validate(old, T0 + timedelta(minutes=61)) is None
        assert sessions.validate(fresh, T0 + timedelta(minutes=61)) == 2

    def test_naive_instants_are_utc(self, sessions: SessionManager, store) -> None:
        token = sessions.issue(42, T0.replace(tzinfo=None))
        assert store.get(digest_token(TEST_SECRET, token)).expires_at == T0 + timedelta(hours=1)
        assert sessions.validate(token, T0 + timedelta(seconds=3599)) == 42
        assert sessions.validate(token, (T0 + timedelta(seconds=3600)).replace(tzinfo=None)) is None
        assert sessions.purge_expired((T0 + timedelta(hours=2)).replace(tzinfo=None)) == 1


class TestRevocation:
    def test_revoke_then_validate_is_absent(self, sessions: SessionManager) -> None:
        token = sessions.issue(42, T0)
        sessions.revoke(token)
        assert sessions.validate(token, T0) is None

    def test_revoke_twice_is_not_an_error(self, sessions: SessionManager) -> None:
        token = sessions.issue(42, T0)
        sessions.revoke(token)
        sessions.revoke(token)
        sessions.revoke("never-issued")

    def test_revoke_all_cascades(self, sessions: SessionManager) -> None:
        a = sessions.issue(42, T0)
        b = sessions.issue(42, T0)
        other = sessions.issue(43, T0)
        assert sessions.revoke_all(42) == 2
        assert sessions.validate(a, T0) is None
        assert sessions.validate(b, T0) is None
        assert sessions.validate(other, T0) == 43


class TestTokens:
    def test_unknown_and_empty_tokens_are_absent(self, sessions: SessionManager) -> None:
        assert sessions.validate("deadbeef", T0) is None
        assert sessions.validate("", T0) is None

    def test_concurrent_sessions_are_independent(self, sessions: SessionManager) -> None:
        first = sessions.issue(42, T0)
        second = sessions.issue(42, T0)
        assert first != second
        sessions.revoke(first)
        assert sessions.validate(second, T0) == 42

    def test_store_holds_digest_not_token(self, sessions: SessionManager, store) -> None:
        token = sessions.issue(42, T0)
        assert store.get(token) is None
        stored = store.get(digest_token(TEST_SECRET, token))
        assert stored.principal_id == 42
        assert stored.expires_at == T0 + timedelta(hours=1)

    def test_different_secret_cannot_validate(self, store) -> None:
        token = SessionManager(store, secret_key=TEST_SECRET).issue(42, T0)
        assert SessionManager(store, secret_key="z" * 40).validate(token, T0) is None
