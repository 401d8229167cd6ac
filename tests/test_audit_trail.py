"""
tests/test_audit_trail.py -- Audit trail recording behaviour.

Coverage:
  - redact() strips sensitive keys at any depth
  - diff_values() keeps only changed keys and ignores updatedAt
  - client_ip() / session_id() request context extraction
  - GET requests write nothing; a mutating request writes exactly one entry
  - a failing audit store never changes the client-visible response
  - unhandled errors answer with the generic 500 body and are still recorded
"""

from __future__ import annotations

from fastapi.testclient import TestClient
from starlette.requests import Request

from audit.recorder import client_ip, diff_values, redact, session_id
from conftest import PASSWORD
from core.errors import InternalError

EQUIPMENT = "/api/v1/equipment"


def _request(headers: dict[str, str] | None = None, client: tuple[str, int] | None = ("10.0.0.9", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/v1/equipment",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestRedact:
    def test_nested_sensitive_keys_removed(self) -> None:
        values = {
            "email": "a@b.c",
            "password": "hunter2",
            "profile": {"newPassword": "x", "department": "QA"},
            "items": [{"token": "abc", "name": "gauge"}],
        }
        assert redact(values) == {
            "email": "a@b.c",
            "profile": {"department": "QA"},
            "items": [{"name": "gauge"}],
        }

    def test_scalars_pass_through(self) -> None:
        assert redact("plain") == "plain"
        assert redact(None) is None


class TestDiffValues:
    def test_only_changed_keys_kept(self) -> None:
        changed, old, new = diff_values(
            {"name": "Scale", "location": "Lab 1", "updatedAt": "t1"},
            {"name": "Scale", "location": "Lab 2", "updatedAt": "t2"},
        )
        assert changed == ["location"]
        assert old == {"location": "Lab 1"}
        assert new == {"location": "Lab 2"}

    def test_added_and_removed_keys_count(self) -> None:
        changed, old, new = diff_values({"a": 1}, {"b": 2})
        assert changed == ["a", "b"]
        assert old == {"a": 1, "b": None}
        assert new == {"a": None, "b": 2}

    def test_identical_snapshots(self) -> None:
        assert diff_values({"a": [1, 2]}, {"a": [1, 2]}) == ([], {}, {})


class TestRequestContext:
    def test_forwarded_for_first_hop_wins(self) -> None:
        req = _request({"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "X-Real-IP": "198.51.100.2"})
        assert client_ip(req) == "203.0.113.7"

    def test_real_ip_then_peer(self) -> None:
        assert client_ip(_request({"X-Real-IP": "198.51.100.2"})) == "198.51.100.2"
        assert client_ip(_request()) == "10.0.0.9"
        assert client_ip(_request(client=None)) is None

    def test_session_id_is_token_prefix(self) -> None:
        token = "eyJhbGciOiJIUzI1NiJ9.payload.signature"
        assert session_id(_request({"Authorization": f"Bearer {token}"})) == token[:20]
        assert session_id(_request({"Authorization": "AuditorToken abc"})) is None
        assert session_id(_request()) is None

    def test_session_id_scheme_is_case_insensitive(self) -> None:
        token = "eyJhbGciOiJIUzI1NiJ9.payload.signature"
        assert session_id(_request({"Authorization": f"bearer {token}"})) == token[:20]
        assert session_id(_request({"Authorization": f"BEARER  {token}"})) == token[:20]
        assert session_id(_request({"Authorization": "Bearer"})) is None


# ---------------------------------------------------------------------------
# Recording through the app
# ---------------------------------------------------------------------------


class TestRecording:
    def _count(self, harness) -> int:
        _entries, total = harness.app.state.audit_store.find_all()
        return total

    def test_reads_write_nothing(self, harness) -> None:
        before = self._count(harness)
        harness.client.get(EQUIPMENT, headers=harness.auth("viewer"))
        harness.client.get("/api/v1/auth/profile", headers=harness.auth("viewer"))
        harness.client.get("/api/v1/users/roles", headers=harness.auth("viewer"))
        assert self._count(harness) == before

    def test_mutation_writes_exactly_one_entry(self, harness) -> None:
        before = self._count(harness)
        resp = harness.client.post(
            EQUIPMENT,
            json={"equipmentNumber": "TRAIL-1", "name": "Caliper", "location": "Bench"},
            headers={**harness.auth("manager"), "User-Agent": "trail-test", "X-Forwarded-For": "203.0.113.50"},
        )
        assert resp.status_code == 201
        assert self._count(harness) == before + 1

        entry = harness.audit_entries(limit=1)[0]
        assert entry.entity_id == resp.json()["id"]
        assert entry.user_email == "manager@eqms.test"
        assert entry.user_name == "Manager Tester"
        assert entry.ip_address == "203.0.113.50"
        assert entry.user_agent == "trail-test"
        assert entry.request_url == EQUIPMENT
        assert entry.session_id == harness.tokens["manager"][:20]

    def test_store_failure_is_invisible_to_client(self, harness, monkeypatch) -> None:
        def boom(entry):
            raise RuntimeError("audit database unavailable")

        monkeypatch.setattr(harness.app.state.audit_store, "create", boom)

        resp = harness.client.post(
            EQUIPMENT,
            json={"equipmentNumber": "TRAIL-2", "name": "Micrometer", "location": "Bench"},
            headers=harness.auth("manager"),
        )
        assert resp.status_code == 201
        assert resp.json()["equipmentNumber"] == "TRAIL-2"

        login = harness.client.post("/api/v1/auth/login", json={"email": "admin@eqms.test", "password": PASSWORD})
        assert login.status_code == 200


class TestUnexpectedErrors:
    def _client(self, harness) -> TestClient:
        return TestClient(harness.app, raise_server_exceptions=False)

    def test_read_failure_is_generic_500(self, harness, monkeypatch) -> None:
        def boom(*args):
            raise RuntimeError("disk I/O error")

        monkeypatch.setattr(harness.app.state.equipment_store, "list_equipment", boom)
        resp = self._client(harness).get(EQUIPMENT, headers=harness.auth("viewer"))
        assert resp.status_code == 500
        assert resp.json() == InternalError().to_body()
        assert "disk I/O error" not in resp.text

    def test_write_failure_is_recorded_as_500(self, harness, monkeypatch) -> None:
        def boom(item):
            raise RuntimeError("disk I/O error")

        monkeypatch.setattr(harness.app.state.equipment_store, "create", boom)
        resp = self._client(harness).post(
            EQUIPMENT,
            json={"equipmentNumber": "TRAIL-3", "name": "Gauge block", "location": "Bench"},
            headers=harness.auth("manager"),
        )
        assert resp.status_code == 500
        assert resp.json() == {"error": "An unexpected error occurred."}

        entry = harness.audit_entries(entity_type="equipment", limit=1)[0]
        assert entry.status_code == 500
        assert entry.success is False
        assert entry.entity_identifier == "TRAIL-3"
