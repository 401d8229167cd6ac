"""
api/routes/v1/auditor_tokens.py -- Administration of auditor access tokens.

Routes (registration order matters: /options before /{token_id}):
  POST /auditor-access-tokens                    -- generate     (admin, manager, superuser)
  GET  /auditor-access-tokens                    -- list         (admin, manager, auditor, superuser)
  GET  /auditor-access-tokens/options            -- form options (admin, manager, superuser)
  GET  /auditor-access-tokens/{token_id}         -- detail       (admin, manager, auditor, superuser)
  PUT  /auditor-access-tokens/{token_id}/revoke  -- revoke       (admin, manager, superuser)
  POST /auditor-access-tokens/cleanup            -- expire stale (admin, superuser)

The raw token appears in exactly one response: the one from POST. Listings
only ever show token_preview.

Every mutating route writes its own SYSTEM-category audit entry.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    AuditorTokenCreate,
    AuditorTokenCreatedResponse,
    AuditorTokenList,
    AuditorTokenOptions,
    AuditorTokenResponse,
    AuditorTokenRevoke,
    AuditorTokenRevokedResponse,
    CleanupResponse,
    ScopeOption,
)
from audit.models import AuditAction, AuditActionCategory
from audit.recorder import AuditTrailRecorder
from auth.auditor_store import AuditorTokenStore
from auth.dependencies import authenticate_token, authorize_roles, get_current_user
from auth.models import ADMIN, AUDITOR, AUDITOR_SCOPES, MANAGER, SUPERUSER, AuditorAccessToken, AuthenticatedUser
from core.config import Settings
from core.db import to_iso
from core.errors import NotFoundError, ValidationError

logger = logging.getLogger("eqms.api")

router = APIRouter(dependencies=[Depends(authenticate_token)])

_issuers = Depends(authorize_roles(ADMIN, MANAGER, SUPERUSER))
_viewers = Depends(authorize_roles(ADMIN, MANAGER, AUDITOR, SUPERUSER))
_admins = Depends(authorize_roles(ADMIN, SUPERUSER))

_ENTITY = "auditor_access_token"
_RESOURCE_TYPES = ["audit", "document", "ncr", "capa", "equipment", "training", "audit-finding"]
_DEFAULT_EXPIRATION_HOURS = [24, 48, 72, 168]


def _store(request: Request) -> AuditorTokenStore:
    return request.app.state.auditor_store


def _recorder(request: Request) -> AuditTrailRecorder:
    return request.app.state.audit_recorder


def _to_response(token: AuditorAccessToken) -> AuditorTokenResponse:
    fields = asdict(token)
    fields.pop("token_hash")
    return AuditorTokenResponse(**fields)


# ---------------------------------------------------------------------------
# POST /auditor-access-tokens -- generate
# ---------------------------------------------------------------------------


@router.post("/auditor-access-tokens", response_model=AuditorTokenCreatedResponse, status_code=201, dependencies=[_issuers])
def generate_token(
    request: Request,
    body: AuditorTokenCreate,
    caller: AuthenticatedUser = Depends(get_current_user),
) -> AuditorTokenCreatedResponse:
    """Issue a time-boxed read-only token for an external auditor."""
    settings: Settings = request.app.state.settings
    horizon = datetime.now(timezone.utc) + timedelta(days=settings.auditor_token_max_days)
    if body.expires_at > horizon:
        raise ValidationError(
            [
                {
                    "field": "expiresAt",
                    "location": "body",
                    "message": f"expiresAt: must be within {settings.auditor_token_max_days} days",
                }
            ]
        )

    expires_at = to_iso(body.expires_at)
    token_id, raw = _store(request).create_token(
        AuditorAccessToken(
            auditor_name=body.auditor_name,
            auditor_email=body.auditor_email,
            auditor_organization=body.auditor_organization,
            expires_at=expires_at,
            max_uses=body.max_uses,
            scope_type=body.scope_type,
            scope_entity_id=body.scope_entity_id,
            allowed_resources=body.allowed_resources,
            purpose=body.purpose,
            notes=body.notes,
            created_by=caller.id,
        )
    )
    _recorder(request).log_create(
        request,
        AuditActionCategory.SYSTEM,
        _ENTITY,
        token_id,
        body.auditor_email,
        new_values={
            "auditorName": body.auditor_name,
            "auditorEmail": body.auditor_email,
            "scopeType": body.scope_type,
            "scopeEntityId": body.scope_entity_id,
            "expiresAt": expires_at,
            "purpose": body.purpose,
        },
        description=f"Generated auditor access token for {body.auditor_name} ({body.auditor_email})",
    )
    return AuditorTokenCreatedResponse(
        message="Auditor access token generated successfully",
        token=raw,
        token_id=token_id,
        expires_at=expires_at,
        access_url=f"{settings.frontend_url.rstrip('/')}/auditor-access?token={raw}",
        warning="Store this token securely. It will not be displayed again.",
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/auditor-access-tokens", response_model=AuditorTokenList, dependencies=[_viewers])
def list_tokens(
    request: Request,
    active_only: bool = Query(default=False, alias="activeOnly"),
    auditor_email: str | None = Query(default=None, alias="auditorEmail"),
    scope_type: str | None = Query(default=None, alias="scopeType"),
) -> AuditorTokenList:
    tokens = _store(request).list_tokens(active_only=active_only, auditor_email=auditor_email, scope_type=scope_type)
    return AuditorTokenList(tokens=[_to_response(t) for t in tokens], count=len(tokens))


@router.get("/auditor-access-tokens/options", response_model=AuditorTokenOptions, dependencies=[_issuers])
def token_options() -> AuditorTokenOptions:
    return AuditorTokenOptions(
        scope_types=[
            ScopeOption(
                value=scope,
                label=scope.replace("_", " ").title(),
                requires_entity_id=scope.startswith("specific_"),
            )
            for scope in AUDITOR_SCOPES
        ],
        resource_types=_RESOURCE_TYPES,
        default_expiration_hours=_DEFAULT_EXPIRATION_HOURS,
    )


@router.get("/auditor-access-tokens/{token_id}", response_model=AuditorTokenResponse, dependencies=[_viewers])
def get_token(request: Request, token_id: int) -> AuditorTokenResponse:
    token = _store(request).get_token(token_id)
    if token is None:
        raise NotFoundError("Auditor access token not found")
    return _to_response(token)


# ---------------------------------------------------------------------------
# Revocation and cleanup
# ---------------------------------------------------------------------------


@router.put(
    "/auditor-access-tokens/{token_id}/revoke",
    response_model=AuditorTokenRevokedResponse,
    dependencies=[_issuers],
)
def revoke_token(
    request: Request,
    token_id: int,
    body: AuditorTokenRevoke,
    caller: AuthenticatedUser = Depends(get_current_user),
) -> AuditorTokenRevokedResponse:
    store = _store(request)
    reason = body.reason.strip()
    if not reason:
        raise ValidationError(message="Revocation reason is required")
    token = store.get_token(token_id)
    if token is None:
        raise NotFoundError("Auditor access token not found")
    if not token.active or not store.revoke_token(token_id, caller.id, reason):
        raise ValidationError(message="Token is already revoked")

    _recorder(request).log_audit(
        request,
        action=AuditAction.REVOKE,
        category=AuditActionCategory.SYSTEM,
        entity_type=_ENTITY,
        description=f"Revoked auditor access token for {token.auditor_name} ({token.auditor_email})",
        entity_id=token_id,
        entity_identifier=token.auditor_email,
        old_values={"active": True},
        new_values={"active": False, "revokedBy": caller.id, "revocationReason": reason},
        status_code=200,
    )
    logger.info("Auditor token %d revoked by user %d", token_id, caller.id)
    return AuditorTokenRevokedResponse(message="Auditor access token revoked successfully", token_id=token_id)


@router.post("/auditor-access-tokens/cleanup", response_model=CleanupResponse, dependencies=[_admins])
def cleanup_expired_tokens(request: Request) -> CleanupResponse:
    count = _store(request).cleanup_expired_tokens()
    _recorder(request).log_audit(
        request,
        action=AuditAction.DELETE,
        category=AuditActionCategory.SYSTEM,
        entity_type=_ENTITY,
        description=f"Cleaned up {count} expired auditor access tokens",
        additional_data={"count": count},
        status_code=200,
    )
    return CleanupResponse(message="Expired tokens cleaned up successfully", count=count)
