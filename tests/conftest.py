"""
tests/conftest.py -- Shared test fixtures for E-QMS integration tests.

This module provides:
  - make_settings(): Settings pointing at an isolated in-memory database
  - seed_user(): inserts a user with the given roles straight into the store
  - Harness / harness: a running TestClient plus one user and session token
    per standard role (superuser, admin, manager, auditor, user, viewer)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The real lifespan runs: create_app(settings) opens every store against the
in-memory URL, so tests exercise the same wiring as production.

The DEBUG env var must be set before any core import so get_settings() never
raises for a missing JWT_SECRET while modules are being collected.
"""

from __future__ import annotations

import os
import re
import uuid
from collections.abc import Generator
from dataclasses import dataclass, field

# CRITICAL: Set DEBUG before any core/auth import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import create_app
from auth.models import ADMIN, AUDITOR, MANAGER, SUPERUSER, USER, VIEWER, User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import Settings

TEST_SECRET = "test-secret-" + "x" * 40
PASSWORD = "CorrectHorse9!"
PERSONAS = (SUPERUSER, ADMIN, MANAGER, AUDITOR, USER, VIEWER)


def memory_url(name: str) -> str:
    return f"sqlite:///file:eqms_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(name: str = "test", **overrides) -> Settings:
    values = {
        "debug": True,
        "jwt_secret": TEST_SECRET,
        "database_url": memory_url(name),
        "frontend_url": "http://eqms.test",
    }
    values.update(overrides)
    return Settings(**values)


def seed_user(store: UserStore, email: str, roles: list[str], password: str = PASSWORD, **fields) -> int:
    fields.setdefault("first_name", email.split("@")[0].title())
    fields.setdefault("last_name", "Tester")
    user = User(
        email=email,
        password_hash=hash_password(password),
        must_change_password=False,
        **fields,
    )
    return store.create_user(user, role_names=roles)


@dataclass
class Harness:
    client: TestClient
    app: FastAPI
    users: dict[str, int] = field(default_factory=dict)
    tokens: dict[str, str] = field(default_factory=dict)

    def auth(self, persona: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.tokens[persona]}"}

    def token_for(self, user_id: int) -> str:
        user_store = self.app.state.user_store
        user = user_store.get_by_id(user_id)
        return self.app.state.session_issuer.mint(user, user_store.get_user_roles(user_id))

    def audit_entries(self, **filters):
        entries, _total = self.app.state.audit_store.find_all(**filters)
        return entries


def _start(name: str, seed: bool = True) -> Generator[Harness, None, None]:
    limiter.enabled = False
    app = create_app(make_settings(name))
    with TestClient(app, raise_server_exceptions=True) as client:
        harness = Harness(client=client, app=app)
        for persona in PERSONAS if seed else ():
            uid = seed_user(app.state.user_store, f"{persona}@eqms.test", [persona])
            harness.users[persona] = uid
            harness.tokens[persona] = harness.token_for(uid)
        yield harness


# ---------------------------------------------------------------------------
# Module-scoped fixture -- one app and database per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def harness(request) -> Generator[Harness, None, None]:
    """Yield a Harness with one seeded user and token per standard role."""
    yield from _start(request.module.__name__.rsplit(".", 1)[-1])


@pytest.fixture
def fresh_harness(request) -> Generator[Harness, None, None]:
    """Function-scoped Harness over an empty database (no users at all)."""
    yield from _start(re.sub(r"\W+", "_", request.node.name)[:40], seed=False)
