"""Unit tests for auth/store.py -- principal records on both backends.

Covers:
- create/get/find_by_email with email normalisation
- Duplicate email -> Conflict (on create and on update)
- update() field whitelist and unknown-id handling
- set_password replaces the digest and stamps last_password_change
- Role reference counting and renames
"""

from datetime import timedelta

import pytest

from auth.models import Principal, UserStatus
from auth.store import MemoryCredentialStore, SqlCredentialStore
from core.errors import Conflict, NotFound
from tests.conftest import T0


@pytest.fixture
def store(backend: str, engine):
    return SqlCredentialStore(engine, rounds=4) if backend == "sqlite" else MemoryCredentialStore(rounds=4)


def _principal(store, email: str = "john@example.com", role: str = "Admin", **extra) -> int:
    return store.create(
        Principal(
            email=email,
            name="John Doe",
            role=role,
            password_digest=store.hash("correct-horse-1"),
            created_at=T0,
            **extra,
        )
    )


class TestLookup:
    def test_create_and_get(self, store) -> None:
        pid = _principal(store)
        p = store.get(pid)
        assert p.id == pid
        assert p.email == "john@example.com"
        assert p.status == UserStatus.ACTIVE
        assert p.created_at == T0

    def test_email_is_normalised(self, store) -> None:
        pid = _principal(store, email="  John@Example.COM ")
        assert store.get(pid).email == "john@example.com"
        assert store.find_by_email("JOHN@example.com").id == pid

    def test_missing_lookups_return_none(self, store) -> None:
        assert store.get(999) is None
        assert store.find_by_email("nobody@example.com") is None

    def test_list_all_in_creation_order(self, store) -> None:
        a = _principal(store, email="a@example.com")
        b = _principal(store, email="b@example.com")
        assert [p.id for p in store.list_all()] == [a, b]

    def test_returned_records_are_copies(self, store) -> None:
        pid = _principal(store)
        store.get(pid).name = "Mallory"
        assert store.get(pid).name == "John Doe"

    def test_naive_timestamps_stored_as_utc(self, store) -> None:
        pid = store.create(Principal(email="a@example.com", name="A", role="Viewer", created_at=T0.replace(tzinfo=None)))
        store.touch_last_login(pid, (T0 + timedelta(hours=1)).replace(tzinfo=None))
        p = store.get(pid)
        assert p.created_at == T0
        assert p.last_login == T0 + timedelta(hours=1)


class TestUniqueness:
    def test_duplicate_email_conflicts(self, store) -> None:
        _principal(store)
        with pytest.raises(Conflict):
            _principal(store, email="JOHN@example.com")

    def test_update_to_taken_email_conflicts(self, store) -> None:
        _principal(store, email="a@example.com")
        b = _principal(store, email="b@example.com")
        with pytest.raises(Conflict):
            store.update(b, email="A@example.com")


class TestUpdate:
    def test_update_fields(self, store) -> None:
        pid = _principal(store)
        assert store.update(pid, name="Johnny", status="Inactive", two_factor_enabled=True) is True
        p = store.get(pid)
        assert p.name == "Johnny"
        assert p.status == UserStatus.INACTIVE
        assert p.two_factor_enabled is True

    def test_update_unknown_id(self, store) -> None:
        assert store.update(999, name="Ghost") is False

    def test_update_rejects_unknown_field(self, store) -> None:
        pid = _principal(store)
        with pytest.raises(ValueError):
            store.update(pid, is_admin=True)

    def test_delete(self, store) -> None:
        pid = _principal(store)
        assert store.delete(pid) is True
        assert store.delete(pid) is False
        assert store.get(pid) is None


class TestPasswords:
    def test_verify(self, store) -> None:
        p = store.get(_principal(store))
        assert store.verify_password(p, "correct-horse-1") is True
        assert store.verify_password(p, "wrong-horse-1") is False

    def test_digest_is_stored_not_plaintext(self, store) -> None:
        p = store.get(_principal(store))
        assert p.password_digest != "correct-horse-1"
        assert "correct-horse-1" not in repr(p)

    def test_set_password(self, store) -> None:
        pid = _principal(store)
        store.set_password(pid, "new-password-2", now=T0 + timedelta(days=1))
        p = store.get(pid)
        assert store.verify_password(p, "new-password-2") is True
        assert store.verify_password(p, "correct-horse-1") is False
        assert p.last_password_change == T0 + timedelta(days=1)

    def test_set_password_unknown_principal(self, store) -> None:
        with pytest.raises(NotFound):
            store.set_password(999, "new-password-2")

    def test_touch_last_login(self, store) -> None:
        pid = _principal(store)
        store.touch_last_login(pid, T0 + timedelta(hours=3))
        assert store.get(pid).last_login == T0 + timedelta(hours=3)


class TestRoleReferences:
    def test_count_and_rename(self, store) -> None:
        _principal(store, email="a@example.com", role="Editor")
        _principal(store, email="b@example.com", role="Editor")
        _principal(store, email="c@example.com", role="Viewer")
        assert store.count_by_role("Editor") == 2
        assert store.rename_role("Editor", "Author") == 2
        assert store.count_by_role("Editor") == 0
        assert store.count_by_role("Author") == 2
        assert store.count_by_role("Viewer") == 1
