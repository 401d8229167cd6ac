"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Two credential schemes share the Authorization header:

  Authorization: Bearer <session token>       -> SessionAuthenticator
  Authorization: AuditorToken <raw token>     -> AuditorAuthenticator

Each scheme is an Authenticator strategy registered on app.state.authenticators,
keyed by the lowercased scheme name. Dependencies parse the header into
(scheme, credentials) and look the strategy up; nothing here string-matches
prefixes.

  authenticate_token   -- session tokens only. Missing/malformed header -> 401
                          "Access token required"; rejected token -> 403
                          "Invalid or expired token".
  flexible_auth        -- either scheme. Missing header -> 401; unknown scheme
                          -> 401 "Invalid authorization header format".
  authorize_roles(...) -- guard factory. Reads request.state.user, so it must
                          be listed after authenticate_token in a route's
                          dependencies (FastAPI resolves them in order).
  enforce_read_only    -- auditor principals may only GET.
  check_resource_scope -- auditor principals may only reach their scope.

Authentication is stateless for session tokens: claims are trusted as signed,
no database read happens. Roles are therefore the roles at issuance time.

Layer rule: no imports from api/ or equipment/.
"""

from __future__ import annotations

import logging
from typing import Callable, Protocol

from fastapi import Request

from audit.recorder import client_ip
from auth.auditor_store import AuditorTokenStore
from auth.models import SCOPE_FULL_READ_ONLY, AuditorPrincipal, AuthenticatedUser
from auth.tokens import TokenCodec, parse_authorization
from core.errors import (
    ForbiddenError,
    InvalidFormatError,
    InvalidTokenError,
    MissingTokenError,
    UnauthenticatedError,
)

logger = logging.getLogger("eqms.auth")

BEARER = "bearer"
AUDITOR_TOKEN = "auditortoken"

# ---------------------------------------------------------------------------
# Authenticator strategies
# ---------------------------------------------------------------------------


class Authenticator(Protocol):
    def authenticate(self, request: Request, credentials: str) -> AuthenticatedUser | AuditorPrincipal: ...


class SessionAuthenticator:
    """Verifies session tokens and attaches an AuthenticatedUser to request.state.user."""

    def __init__(self, codec: TokenCodec) -> None:
        self.codec = codec

    def authenticate(self, request: Request, credentials: str) -> AuthenticatedUser:
        claims = self.codec.verify(credentials)
        user = AuthenticatedUser(
            id=claims["id"],
            email=claims["email"],
            first_name=claims.get("firstName", ""),
            last_name=claims.get("lastName", ""),
            roles=list(claims["roles"]),
            role_ids=list(claims.get("roleIds", [])),
            token=credentials,
        )
        request.state.user = user
        return user


class AuditorAuthenticator:
    """Validates auditor tokens and attaches an AuditorPrincipal to request.state.auditor.

    Every successful validation consumes one use of the token.
    """

    def __init__(self, store: AuditorTokenStore) -> None:
        self.store = store

    def authenticate(self, request: Request, credentials: str) -> AuditorPrincipal:
        token = self.store.validate_token(credentials, client_ip(request))
        if token is None:
            logger.warning("Auditor token rejected from %s on %s", client_ip(request), request.url.path)
            raise InvalidTokenError("Invalid or expired auditor access token")
        principal = AuditorPrincipal(
            token_id=token.id,
            auditor_name=token.auditor_name,
            auditor_email=token.auditor_email,
            scope_type=token.scope_type,
            expires_at=token.expires_at,
            scope_entity_id=token.scope_entity_id,
            allowed_resources=token.allowed_resources,
        )
        request.state.auditor = principal
        logger.info(
            "Auditor access: %s %s by %s (token %d)",
            request.method,
            request.url.path,
            token.auditor_email,
            token.id,
        )
        return principal


def _authenticators(request: Request) -> dict[str, Authenticator]:
    return request.app.state.authenticators


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def authenticate_token(request: Request) -> AuthenticatedUser:
    """Require a valid session token.

    Use in a route's dependencies list:
        @router.post("/x", dependencies=[Depends(authenticate_token)])
    """
    header = request.headers.get("Authorization")
    if not header:
        raise MissingTokenError()
    scheme, credentials = parse_authorization(header)
    if scheme != BEARER or not credentials:
        raise MissingTokenError()
    return _authenticators(request)[BEARER].authenticate(request, credentials)


def flexible_auth(request: Request) -> AuthenticatedUser | AuditorPrincipal:
    """Accept either a session token or an auditor token, dispatched by scheme."""
    header = request.headers.get("Authorization")
    if not header:
        raise UnauthenticatedError("Authentication required")
    scheme, credentials = parse_authorization(header)
    authenticator = _authenticators(request).get(scheme)
    if authenticator is None or not credentials:
        raise InvalidFormatError()
    return authenticator.authenticate(request, credentials)


def get_current_user(request: Request) -> AuthenticatedUser:
    """Return the identity attached by authenticate_token, or raise 401."""
    user = getattr(request.state, "user", None)
    if user is None:
        raise UnauthenticatedError()
    return user


def authorize_roles(*allowed_roles: str) -> Callable[[Request], AuthenticatedUser]:
    """Return a guard admitting identities whose roles intersect allowed_roles.

    Matching is case-sensitive on role names from the token.
    """
    allowed = frozenset(allowed_roles)

    def guard(request: Request) -> AuthenticatedUser:
        user = get_current_user(request)
        if allowed.isdisjoint(user.roles):
            logger.info("User %d denied %s %s (roles=%s)", user.id, request.method, request.url.path, user.roles)
            raise ForbiddenError()
        return user

    guard.__name__ = f"authorize_roles_{'_'.join(sorted(allowed))}"
    return guard


def enforce_read_only(request: Request) -> None:
    """Reject any non-GET request made with an auditor token."""
    if getattr(request.state, "auditor", None) is not None and request.method != "GET":
        raise ForbiddenError("Read-only access: Only GET requests are allowed with auditor tokens")


def check_resource_scope(resource_type: str, id_param: str = "id") -> Callable[[Request], None]:
    """Return a dependency restricting auditor tokens to their declared scope.

    Session-token requests pass through untouched.
    """

    def scope_guard(request: Request) -> None:
        auditor: AuditorPrincipal | None = getattr(request.state, "auditor", None)
        if auditor is None or auditor.scope_type == SCOPE_FULL_READ_ONLY:
            return
        if auditor.allowed_resources and resource_type not in auditor.allowed_resources:
            raise ForbiddenError(
                f"Access denied: {resource_type} is not in the allowed resources for this token",
                allowedResources=auditor.allowed_resources,
            )
        if auditor.scope_type.startswith("specific_") and auditor.scope_entity_id:
            raw = request.path_params.get(id_param)
            try:
                requested = int(raw) if raw is not None else None
            except ValueError:
                requested = None
            if requested is not None and requested != auditor.scope_entity_id:
                raise ForbiddenError(
                    f"Access denied: Token is scoped to {auditor.scope_type} with ID {auditor.scope_entity_id}",
                    requestedId=requested,
                    allowedId=auditor.scope_entity_id,
                )

    scope_guard.__name__ = f"check_resource_scope_{resource_type}"
    return scope_guard
