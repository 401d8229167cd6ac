"""
tests/test_auth_routes.py -- Integration tests for /api/v1/auth.

Coverage:
  - login: success body shape, no-store header, last_login_at stamped
  - login: unknown email, wrong password and inactive account are indistinguishable
  - login: one audit entry per attempt, success or failure
  - refresh: re-reads roles from the database; reusing a token mints valid tokens
  - logout acknowledges
  - check-superusers / initial-superuser: first-run bootstrap succeeds exactly once
  - request validation: 400 {"errors": [...]} naming the field
  - login rate limit: 429 with Retry-After once the app's configured limit is exceeded
"""

from __future__ import annotations

from fastapi.testclient import TestClient
from jose import jwt

from api.limiter import limiter
from api.main import create_app
from conftest import PASSWORD, TEST_SECRET, make_settings, seed_user

LOGIN = "/api/v1/auth/login"


class TestLogin:
    def test_login_success(self, harness) -> None:
        resp = harness.client.post(LOGIN, json={"email": "manager@eqms.test", "password": PASSWORD})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["user"]["email"] == "manager@eqms.test"
        assert data["user"]["roles"] == ["manager"]
        assert data["user"]["firstName"] == "Manager"
        assert not {"password", "passwordHash"} & set(data["user"])
        assert resp.headers["cache-control"] == "no-store"

    def test_token_claims(self, harness) -> None:
        token = harness.client.post(LOGIN, json={"email": "admin@eqms.test", "password": PASSWORD}).json()["token"]
        claims = jwt.decode(token, TEST_SECRET, algorithms=["HS256"])
        assert claims["id"] == harness.users["admin"]
        assert claims["email"] == "admin@eqms.test"
        assert claims["roles"] == ["admin"]
        assert len(claims["roleIds"]) == 1
        assert claims["exp"] - claims["iat"] == 24 * 3600

    def test_email_is_case_insensitive(self, harness) -> None:
        resp = harness.client.post(LOGIN, json={"email": "Viewer@EQMS.test", "password": PASSWORD})
        assert resp.status_code == 200

    def test_login_stamps_last_login(self, harness) -> None:
        before = harness.app.state.user_store.get_by_id(harness.users["user"]).last_login_at
        harness.client.post(LOGIN, json={"email": "user@eqms.test", "password": PASSWORD})
        after = harness.app.state.user_store.get_by_id(harness.users["user"]).last_login_at
        assert after is not None
        assert after != before

    def test_failures_are_indistinguishable(self, harness) -> None:
        store = harness.app.state.user_store
        inactive_id = seed_user(store, "gone@eqms.test", ["user"])
        store.update_user(inactive_id, active=False)

        attempts = [
            {"email": "nobody@eqms.test", "password": PASSWORD},
            {"email": "viewer@eqms.test", "password": "wrong-password"},
            {"email": "gone@eqms.test", "password": PASSWORD},
        ]
        for body in attempts:
            resp = harness.client.post(LOGIN, json=body)
            assert resp.status_code == 401
            assert resp.json() == {"error": "Invalid credentials"}

    def test_failed_login_does_not_touch_last_login(self, harness) -> None:
        uid = harness.users["auditor"]
        before = harness.app.state.user_store.get_by_id(uid).last_login_at
        harness.client.post(LOGIN, json={"email": "auditor@eqms.test", "password": "nope-nope"})
        assert harness.app.state.user_store.get_by_id(uid).last_login_at == before

    def test_each_attempt_writes_one_audit_entry(self, harness) -> None:
        def count() -> int:
            return len(harness.audit_entries(action="login", limit=1000))

        start = count()
        harness.client.post(LOGIN, json={"email": "superuser@eqms.test", "password": PASSWORD})
        assert count() == start + 1
        harness.client.post(LOGIN, json={"email": "superuser@eqms.test", "password": "bad-password"})
        assert count() == start + 2

        latest = harness.audit_entries(action="login", limit=1)[0]
        assert latest.success is False
        assert latest.status_code == 401
        assert latest.entity_identifier == "superuser@eqms.test"

    def test_missing_password_is_400_naming_field(self, harness) -> None:
        resp = harness.client.post(LOGIN, json={"email": "admin@eqms.test"})
        assert resp.status_code == 400
        errors = resp.json()["errors"]
        assert any("password" in e["message"] for e in errors)


class TestSessionEndpoints:
    def test_profile(self, harness) -> None:
        resp = harness.client.get("/api/v1/auth/profile", headers=harness.auth("admin"))
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == harness.users["admin"]
        assert data["active"] is True
        assert data["roles"] == ["admin"]

    def test_logout_acknowledges(self, harness) -> None:
        resp = harness.client.post("/api/v1/auth/logout", headers=harness.auth("viewer"))
        assert resp.status_code == 200
        assert resp.json() == {"message": "Logged out successfully"}
        entry = harness.audit_entries(action="logout", limit=1)[0]
        assert entry.user_id == harness.users["viewer"]

    def test_token_still_valid_after_logout(self, harness) -> None:
        """No server-side revocation: the token works until it expires."""
        harness.client.post("/api/v1/auth/logout", headers=harness.auth("viewer"))
        assert harness.client.get("/api/v1/auth/profile", headers=harness.auth("viewer")).status_code == 200

    def test_logout_requires_token(self, harness) -> None:
        assert harness.client.post("/api/v1/auth/logout").status_code == 401

    def test_refresh_picks_up_role_changes(self, harness) -> None:
        store = harness.app.state.user_store
        uid = seed_user(store, "promoted@eqms.test", ["user"])
        token = harness.token_for(uid)
        store.assign_role(uid, store.get_role_by_name("manager").id, harness.users["superuser"])

        resp = harness.client.post("/api/v1/auth/refresh", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["user"]["roles"] == ["manager", "user"]
        claims = jwt.decode(resp.json()["token"], TEST_SECRET, algorithms=["HS256"])
        assert claims["roles"] == ["manager", "user"]

    def test_refresh_twice_with_same_token(self, harness) -> None:
        uid = seed_user(harness.app.state.user_store, "twice@eqms.test", ["viewer"])
        headers = {"Authorization": f"Bearer {harness.token_for(uid)}"}

        first = harness.client.post("/api/v1/auth/refresh", headers=headers)
        second = harness.client.post("/api/v1/auth/refresh", headers=headers)
        assert first.status_code == second.status_code == 200

        for resp in (first, second):
            token = resp.json()["token"]
            claims = jwt.decode(token, TEST_SECRET, algorithms=["HS256"])
            assert claims["id"] == uid
            assert claims["roles"] == ["viewer"]
            profile = harness.client.get("/api/v1/auth/profile", headers={"Authorization": f"Bearer {token}"})
            assert profile.json()["id"] == uid

        assert len(harness.audit_entries(action="refresh", entity_id=uid)) == 2

    def test_refresh_for_deactivated_user_is_404(self, harness) -> None:
        store = harness.app.state.user_store
        uid = seed_user(store, "leaver@eqms.test", ["user"])
        token = harness.token_for(uid)
        store.update_user(uid, active=False)
        resp = harness.client.post("/api/v1/auth/refresh", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 404
        assert resp.json() == {"error": "User not found"}


class TestBootstrap:
    BODY = {"email": "root@eqms.test", "password": "BootstrapPass1", "firstName": "Root", "lastName": "Admin"}

    def test_initial_superuser_succeeds_once(self, fresh_harness) -> None:
        client = fresh_harness.client
        assert client.get("/api/v1/auth/check-superusers").json() == {"hasSuperusers": False}

        resp = client.post("/api/v1/auth/initial-superuser", json=self.BODY)
        assert resp.status_code == 201, resp.text
        user_id = resp.json()["userId"]
        assert client.get("/api/v1/auth/check-superusers").json() == {"hasSuperusers": True}

        second = client.post("/api/v1/auth/initial-superuser", json={**self.BODY, "email": "other@eqms.test"})
        assert second.status_code == 403
        assert second.json() == {"error": "System already initialized with a superuser"}

        login = client.post(LOGIN, json={"email": "root@eqms.test", "password": "BootstrapPass1"})
        assert login.json()["user"]["roles"] == ["superuser"]

        entries = fresh_harness.audit_entries(entity_type="user", action="create")
        assert [e.entity_id for e in entries if e.success] == [user_id]
        assert all("password" not in (e.new_values or {}) for e in entries)

    def test_short_password_is_400(self, fresh_harness) -> None:
        resp = fresh_harness.client.post("/api/v1/auth/initial-superuser", json={**self.BODY, "password": "short"})
        assert resp.status_code == 400
        assert any(e["field"] == "password" for e in resp.json()["errors"])


class TestLoginRateLimit:
    def test_limit_returns_429_with_retry_after(self, harness) -> None:
        limiter.reset()
        limiter.enabled = True
        try:
            statuses = [
                harness.client.post(LOGIN, json={"email": "nobody@eqms.test", "password": "x"}).status_code
                for _ in range(11)
            ]
            assert statuses[:10] == [401] * 10
            assert statuses[10] == 429
            blocked = harness.client.post(LOGIN, json={"email": "nobody@eqms.test", "password": "x"})
            assert blocked.status_code == 429
            assert blocked.json() == {"error": "Too many requests. Please try again later."}
            assert "retry-after" in blocked.headers
        finally:
            limiter.enabled = False
            limiter.reset()

    def test_limit_follows_app_settings(self, harness) -> None:
        """Each app enforces its own configured limit with its own counter."""
        limiter.reset()
        limiter.enabled = True
        try:
            app = create_app(make_settings("tight_limit", login_rate_limit="2/minute"))
            with TestClient(app) as client:
                statuses = [
                    client.post(LOGIN, json={"email": "nobody@eqms.test", "password": "x"}).status_code
                    for _ in range(3)
                ]
            assert statuses == [401, 401, 429]

            other = harness.client.post(LOGIN, json={"email": "nobody@eqms.test", "password": "x"})
            assert other.status_code == 401
        finally:
            limiter.enabled = False
            limiter.reset()
