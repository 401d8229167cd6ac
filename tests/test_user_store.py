"""Unit tests for auth/store.py -- users, roles and assignments.

Covers:
- standard roles are seeded once, highest level first
- create_user is atomic: an unknown role name writes nothing
- email lookups are case-insensitive and duplicates raise IntegrityError
- create_first_superuser succeeds only while no superuser exists
- assign/revoke round trip; expired assignments are not current
- update_user rejects unknown fields
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


def _user(email: str, **fields) -> User:
    return User(email=email, first_name="Test", last_name="User", password_hash=hash_password("pw-123456"), **fields)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


def test_standard_roles_seeded(store):
    names = [r.name for r in store.list_roles()]
    assert names[0] == "superuser"
    assert set(names) == {"superuser", "admin", "manager", "auditor", "user", "viewer"}


def test_reseeding_is_idempotent(store):
    store._seed_roles()
    assert len(store.list_roles()) == 6


def test_only_superuser_role_is_flagged(store):
    flagged = [r.name for r in store.list_roles() if r.is_super_user]
    assert flagged == ["superuser"]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def test_create_and_lookup_case_insensitive(store):
    uid = store.create_user(_user("Mixed.Case@Example.com"), role_names=["user"])
    found = store.get_by_email("mixed.case@EXAMPLE.com")
    assert found is not None
    assert found.id == uid
    assert found.email == "mixed.case@example.com"


def test_duplicate_email_raises(store):
    store.create_user(_user("dup@example.com"))
    with pytest.raises(IntegrityError):
        store.create_user(_user("DUP@example.com"))


def test_unknown_role_rolls_back(store):
    with pytest.raises(ValueError):
        store.create_user(_user("ghost@example.com"), role_names=["user", "wizard"])
    assert store.get_by_email("ghost@example.com") is None


def test_list_users_excludes_inactive_on_request(store):
    keep = store.create_user(_user("keep@example.com"))
    gone = store.create_user(_user("gone@example.com"))
    store.update_user(gone, active=False)

    assert {u.id for u in store.list_users()} == {keep, gone}
    assert {u.id for u in store.list_users(include_inactive=False)} == {keep}


def test_update_user_rejects_unknown_fields(store):
    uid = store.create_user(_user("fields@example.com"))
    with pytest.raises(ValueError):
        store.update_user(uid, password_hash="nope")


def test_update_missing_user_returns_false(store):
    assert store.update_user(9999, department="QA") is False


def test_update_password_sets_flag(store):
    uid = store.create_user(_user("pw@example.com"))
    assert store.update_password(uid, hash_password("another-pw"), must_change_password=True)
    assert store.get_by_id(uid).must_change_password is True


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


def test_first_superuser_only_once(store):
    assert store.has_superusers() is False
    first = store.create_first_superuser(_user("root@example.com"))
    assert first is not None
    assert store.user_is_superuser(first)
    assert store.has_superusers() is True

    assert store.create_first_superuser(_user("second@example.com")) is None
    assert store.get_by_email("second@example.com") is None


def test_inactive_superuser_does_not_count(store):
    uid = store.create_user(_user("sleeping@example.com"), role_names=["superuser"])
    store.update_user(uid, active=False)
    assert store.has_superusers() is False


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


def test_assign_and_revoke(store):
    uid = store.create_user(_user("roles@example.com"), role_names=["user"])
    manager = store.get_role_by_name("manager")

    store.assign_role(uid, manager.id, assigned_by=None)
    assert [r.name for r in store.get_user_roles(uid)] == ["manager", "user"]

    assert store.revoke_role(uid, manager.id) is True
    assert [r.name for r in store.get_user_roles(uid)] == ["user"]
    assert store.revoke_role(uid, manager.id) is False


def test_reassign_after_revoke_reactivates(store):
    uid = store.create_user(_user("again@example.com"))
    viewer = store.get_role_by_name("viewer")
    store.assign_role(uid, viewer.id, assigned_by=None)
    store.revoke_role(uid, viewer.id)
    store.assign_role(uid, viewer.id, assigned_by=None)
    assert [r.name for r in store.get_user_roles(uid)] == ["viewer"]


def test_expired_assignment_is_not_current(store):
    uid = store.create_user(_user("temp@example.com"))
    auditor = store.get_role_by_name("auditor")
    yesterday = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    store.assign_role(uid, auditor.id, assigned_by=None, expires_at=yesterday)
    assert store.get_user_roles(uid) == []


def test_future_expiry_is_current(store):
    uid = store.create_user(_user("later@example.com"))
    auditor = store.get_role_by_name("auditor")
    tomorrow = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
    store.assign_role(uid, auditor.id, assigned_by=None, expires_at=tomorrow)
    assert [r.name for r in store.get_user_roles(uid)] == ["auditor"]
