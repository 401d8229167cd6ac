"""
auth/auditor_store.py -- Persistence and validation for auditor access tokens.

Pattern: Repository + Data Mapper, same shape as auth/store.py.

Lifecycle of a token:
  create_token()   -- generates the raw value, stores only its HMAC hash and a
                      display preview, returns (id, raw_token) once.
  validate_token() -- hash lookup; the token must be active, unexpired and
                      under its max_uses quota. Usage counter, last_used_at and
                      last_used_ip are updated on every successful validation.
  revoke_token()   -- soft revoke with reason and revoker id.
  cleanup_expired_tokens() -- marks expired-but-active tokens inactive.

The usage increment is a single conditional UPDATE (current_uses < max_uses),
so two concurrent requests cannot both consume the last permitted use.

Layer rule: imports from core/ and auth/ only.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, and_, or_
from sqlalchemy.engine import Engine

from auth.models import AuditorAccessToken
from auth.tokens import auditor_token_preview, generate_auditor_token, hash_auditor_token
from core.db import create_store_engine, now_iso

logger = logging.getLogger("eqms.auth")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_tokens = Table(
    "auditor_access_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("token_preview", String(20), nullable=False),
    Column("auditor_name", String(200), nullable=False),
    Column("auditor_email", String(255), nullable=False),
    Column("auditor_organization", String(200)),
    Column("expires_at", String(40), nullable=False),
    Column("max_uses", Integer),
    Column("current_uses", Integer, nullable=False, server_default="0"),
    Column("scope_type", String(50), nullable=False),
    Column("scope_entity_id", Integer),
    Column("allowed_resources", Text),  # JSON list or NULL
    Column("active", Integer, nullable=False, server_default="1"),
    Column("revoked_at", String(40)),
    Column("revoked_by", Integer),
    Column("revocation_reason", String(500)),
    Column("purpose", String(500)),
    Column("notes", Text),
    Column("created_at", String(40), nullable=False),
    Column("created_by", Integer, nullable=False),
    Column("last_used_at", String(40)),
    Column("last_used_ip", String(45)),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditorTokenStore:
    """Repository for AuditorAccessToken entities.

    The HMAC secret is injected so the store never reads configuration itself.
    """

    def __init__(self, db_url: str, secret: str) -> None:
        self.engine: Engine = create_store_engine(db_url)
        self._secret = secret
        _metadata.create_all(self.engine)

    def create_token(self, token: AuditorAccessToken) -> tuple[int, str]:
        """Persist a new token and return (token_id, raw_token).

        The raw value is returned exactly once; only its hash is stored.
        """
        raw = generate_auditor_token()
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.insert().values(
                    token_hash=hash_auditor_token(raw, self._secret),
                    token_preview=auditor_token_preview(raw),
                    auditor_name=token.auditor_name,
                    auditor_email=token.auditor_email,
                    auditor_organization=token.auditor_organization,
                    expires_at=token.expires_at,
                    max_uses=token.max_uses,
                    current_uses=0,
                    scope_type=token.scope_type,
                    scope_entity_id=token.scope_entity_id,
                    allowed_resources=json.dumps(token.allowed_resources) if token.allowed_resources else None,
                    active=1,
                    purpose=token.purpose,
                    notes=token.notes,
                    created_at=now_iso(),
                    created_by=token.created_by,
                )
            )
            conn.commit()
            token_id = result.inserted_primary_key[0]
        logger.info("Auditor token %d issued for %s (scope=%s)", token_id, token.auditor_email, token.scope_type)
        return token_id, raw

    def validate_token(self, raw_token: str, ip_address: str | None = None) -> AuditorAccessToken | None:
        """Return the token if it is usable right now, else None.

        A successful validation consumes one use.
        """
        token_hash = hash_auditor_token(raw_token, self._secret)
        now = now_iso()
        usable = and_(
            _tokens.c.token_hash == token_hash,
            _tokens.c.active == 1,
            _tokens.c.expires_at > now,
            or_(_tokens.c.max_uses.is_(None), _tokens.c.current_uses < _tokens.c.max_uses),
        )
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where(usable)
                .values(
                    current_uses=_tokens.c.current_uses + 1,
                    last_used_at=now,
                    last_used_ip=ip_address,
                )
            )
            conn.commit()
            if result.rowcount == 0:
                return None
            row = conn.execute(_tokens.select().where(_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_token(row) if row is not None else None

    def list_tokens(
        self,
        active_only: bool = False,
        created_by: int | None = None,
        auditor_email: str | None = None,
        scope_type: str | None = None,
    ) -> list[AuditorAccessToken]:
        """Return tokens newest first, optionally filtered."""
        query = _tokens.select()
        if active_only:
            query = query.where(and_(_tokens.c.active == 1, _tokens.c.expires_at > now_iso()))
        if created_by is not None:
            query = query.where(_tokens.c.created_by == created_by)
        if auditor_email:
            query = query.where(_tokens.c.auditor_email == auditor_email)
        if scope_type:
            query = query.where(_tokens.c.scope_type == scope_type)
        query = query.order_by(_tokens.c.created_at.desc(), _tokens.c.id.desc())
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_token(r) for r in rows]

    def get_token(self, token_id: int) -> AuditorAccessToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.id == token_id)).fetchone()
        return _row_to_token(row) if row is not None else None

    def revoke_token(self, token_id: int, revoked_by: int, reason: str) -> bool:
        """Deactivate a token. Returns False if it was not found or already revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where(and_(_tokens.c.id == token_id, _tokens.c.active == 1))
                .values(active=0, revoked_at=now_iso(), revoked_by=revoked_by, revocation_reason=reason)
            )
            conn.commit()
        return result.rowcount > 0

    def cleanup_expired_tokens(self) -> int:
        """Mark every expired-but-active token inactive. Returns the number changed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update().where(and_(_tokens.c.active == 1, _tokens.c.expires_at <= now_iso())).values(active=0)
            )
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_token(row) -> AuditorAccessToken:
    return AuditorAccessToken(
        id=row.id,
        token_hash=row.token_hash,
        token_preview=row.token_preview,
        auditor_name=row.auditor_name,
        auditor_email=row.auditor_email,
        auditor_organization=row.auditor_organization,
        expires_at=row.expires_at,
        max_uses=row.max_uses,
        current_uses=row.current_uses,
        scope_type=row.scope_type,
        scope_entity_id=row.scope_entity_id,
        allowed_resources=json.loads(row.allowed_resources) if row.allowed_resources else None,
        active=bool(row.active),
        revoked_at=row.revoked_at,
        revoked_by=row.revoked_by,
        revocation_reason=row.revocation_reason,
        purpose=row.purpose,
        notes=row.notes,
        created_at=row.created_at,
        created_by=row.created_by,
        last_used_at=row.last_used_at,
        last_used_ip=row.last_used_ip,
    )
