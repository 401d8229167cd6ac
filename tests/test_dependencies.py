"""
tests/test_dependencies.py -- Authentication dispatch and role guards, end to end.

These run through the real ASGI stack so the header parsing, the strategy
lookup on app.state.authenticators, and the exception handlers that shape the
{"error": ...} body are all exercised together.

Coverage:
  - authenticate_token: missing / wrong scheme / empty -> 401, bad or expired -> 403
  - flexible_auth: missing -> 401, unknown scheme -> 401, bad auditor token -> 403
  - authorize_roles: disjoint roles -> 403, intersecting roles -> pass
  - session authentication trusts signed claims without a database read
"""

from __future__ import annotations

import pytest

from auth.dependencies import parse_authorization

PROFILE = "/api/v1/auth/profile"
EQUIPMENT = "/api/v1/equipment"


class TestParseAuthorization:
    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            ("Bearer abc.def", ("bearer", "abc.def")),
            ("bearer abc", ("bearer", "abc")),
            ("AuditorToken 00ff", ("auditortoken", "00ff")),
            ("Bearer", ("bearer", "")),
            ("  Bearer   spaced  ", ("bearer", "spaced")),
        ],
    )
    def test_split(self, header, expected) -> None:
        assert parse_authorization(header) == expected


class TestAuthenticateToken:
    def test_missing_header_is_401(self, harness) -> None:
        resp = harness.client.get(PROFILE)
        assert resp.status_code == 401
        assert resp.json() == {"error": "Access token required"}

    def test_wrong_scheme_is_401(self, harness) -> None:
        resp = harness.client.get(PROFILE, headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "Access token required"

    def test_scheme_without_credentials_is_401(self, harness) -> None:
        resp = harness.client.get(PROFILE, headers={"Authorization": "Bearer "})
        assert resp.status_code == 401

    def test_garbage_token_is_403(self, harness) -> None:
        resp = harness.client.get(PROFILE, headers={"Authorization": "Bearer not.a.token"})
        assert resp.status_code == 403
        assert resp.json() == {"error": "Invalid or expired token"}

    def test_expired_token_is_403(self, harness) -> None:
        codec = harness.app.state.token_codec
        token = codec.sign({"id": harness.users["admin"], "email": "admin@eqms.test", "roles": ["admin"]}, -5)
        resp = harness.client.get(PROFILE, headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403

    def test_lowercase_scheme_accepted(self, harness) -> None:
        resp = harness.client.get(PROFILE, headers={"Authorization": f"bearer {harness.tokens['viewer']}"})
        assert resp.status_code == 200

    def test_auditor_token_not_accepted_on_session_routes(self, harness) -> None:
        resp = harness.client.get(PROFILE, headers={"Authorization": "AuditorToken " + "0" * 64})
        assert resp.status_code == 401


class TestFlexibleAuth:
    def test_missing_header_is_401(self, harness) -> None:
        resp = harness.client.get(EQUIPMENT)
        assert resp.status_code == 401
        assert resp.json() == {"error": "Authentication required"}

    def test_unknown_scheme_is_401(self, harness) -> None:
        resp = harness.client.get(EQUIPMENT, headers={"Authorization": "Token abc"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid authorization header format"}

    def test_unknown_auditor_token_is_403(self, harness) -> None:
        resp = harness.client.get(EQUIPMENT, headers={"Authorization": "AuditorToken " + "0" * 64})
        assert resp.status_code == 403
        assert resp.json() == {"error": "Invalid or expired auditor access token"}

    def test_session_token_accepted(self, harness) -> None:
        resp = harness.client.get(EQUIPMENT, headers=harness.auth("viewer"))
        assert resp.status_code == 200


class TestAuthorizeRoles:
    def test_viewer_cannot_create_equipment(self, harness) -> None:
        resp = harness.client.post(
            EQUIPMENT,
            json={"equipmentNumber": "EQ-DENY", "name": "Scale", "location": "Lab"},
            headers=harness.auth("viewer"),
        )
        assert resp.status_code == 403
        assert resp.json() == {"error": "Access denied: insufficient permissions"}

    def test_unauthenticated_write_is_401_not_403(self, harness) -> None:
        resp = harness.client.post(EQUIPMENT, json={"equipmentNumber": "EQ-ANON", "name": "x", "location": "y"})
        assert resp.status_code == 401

    def test_any_intersecting_role_passes(self, harness) -> None:
        resp = harness.client.get("/api/v1/users", headers=harness.auth("manager"))
        assert resp.status_code == 200

    def test_role_names_are_case_sensitive(self, harness) -> None:
        codec = harness.app.state.token_codec
        token = codec.sign({"id": harness.users["admin"], "email": "admin@eqms.test", "roles": ["ADMIN"]})
        resp = harness.client.get("/api/v1/users", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403

    def test_roles_are_read_from_the_token(self, harness) -> None:
        """Authentication is stateless: the signed role list is trusted as-is."""
        codec = harness.app.state.token_codec
        token = codec.sign({"id": harness.users["viewer"], "email": "viewer@eqms.test", "roles": ["manager"]})
        resp = harness.client.get("/api/v1/users", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
