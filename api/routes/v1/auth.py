"""
api/routes/v1/auth.py -- Session and bootstrap endpoints.

Routes:
  POST /api/v1/auth/login              -- password login; returns {token, user}
  POST /api/v1/auth/logout             -- acknowledgement only (Bearer)
  POST /api/v1/auth/refresh            -- re-mint from current DB state (Bearer)
  GET  /api/v1/auth/profile            -- current identity (Bearer)
  GET  /api/v1/auth/check-superusers   -- public; {hasSuperusers}
  POST /api/v1/auth/initial-superuser  -- public; creates the first superuser once

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  SessionIssuer.login() owns timing equalization and the generic
  "Invalid credentials" response -- never inline the lookup + verify here.
  Cache-Control: no-store on every response that carries a token.

Audit:
  login / logout / refresh write their own entries through SessionIssuer.
  initial-superuser is recorded by AuditRoute from its descriptor.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter, login_key, login_rate_limit
from api.models import (
    InitialSuperuserRequest,
    InitialSuperuserResponse,
    LoginRequest,
    MessageResponse,
    ProfileResponse,
    SessionResponse,
    SuperuserCheckResponse,
    UserSummary,
)
from audit.models import AuditActionCategory, AuditDescriptor
from audit.recorder import AuditRoute, audited
from auth.dependencies import authenticate_token, get_current_user
from auth.models import AuthenticatedUser, Role, User
from auth.session import SessionIssuer, SessionResult
from auth.store import UserStore
from auth.tokens import hash_password
from core.errors import ConflictError, ForbiddenError

# Auth policy:
# - POST /auth/login, GET /auth/check-superusers, POST /auth/initial-superuser: public
# - everything else: session token (authenticate_token)
router = APIRouter(route_class=AuditRoute)


def _summary(user: User, roles: list[Role]) -> UserSummary:
    return UserSummary(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        department=user.department,
        roles=[r.name for r in roles],
        must_change_password=user.must_change_password,
    )


def _session_response(result: SessionResult) -> JSONResponse:
    body = SessionResponse(token=result.token, user=_summary(result.user, result.roles))
    resp = JSONResponse(content=body.model_dump(by_alias=True))
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=SessionResponse)
@limiter.limit(login_rate_limit, key_func=login_key)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password and return a session token.

    Unknown email, inactive account and wrong password all produce the same
    401 {"error": "Invalid credentials"}.
    """
    issuer: SessionIssuer = request.app.state.session_issuer
    return _session_response(issuer.login(request, body.email, body.password))


@router.post("/auth/logout", response_model=MessageResponse, dependencies=[Depends(authenticate_token)])
def logout(request: Request) -> MessageResponse:
    """Acknowledge logout. The client discards its token; there is no server-side state to clear."""
    issuer: SessionIssuer = request.app.state.session_issuer
    issuer.logout(request, getattr(request.state, "user", None))
    return MessageResponse(message="Logged out successfully")


@router.post("/auth/refresh", response_model=SessionResponse, dependencies=[Depends(authenticate_token)])
def refresh(request: Request, current_user: AuthenticatedUser = Depends(get_current_user)) -> JSONResponse:
    """Mint a new token from a fresh read of the user and their current roles."""
    issuer: SessionIssuer = request.app.state.session_issuer
    return _session_response(issuer.refresh(request, current_user))


@router.get("/auth/profile", response_model=ProfileResponse, dependencies=[Depends(authenticate_token)])
def profile(request: Request, current_user: AuthenticatedUser = Depends(get_current_user)) -> ProfileResponse:
    issuer: SessionIssuer = request.app.state.session_issuer
    user, roles = issuer.profile(current_user)
    return ProfileResponse(
        **_summary(user, roles).model_dump(),
        active=user.active,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


# ---------------------------------------------------------------------------
# First-run bootstrap
# ---------------------------------------------------------------------------


@router.get("/auth/check-superusers", response_model=SuperuserCheckResponse)
def check_superusers(request: Request) -> SuperuserCheckResponse:
    """Public: lets the SPA decide whether to show the first-run setup screen."""
    user_store: UserStore = request.app.state.user_store
    return SuperuserCheckResponse(has_superusers=user_store.has_superusers())


@router.post("/auth/initial-superuser", response_model=InitialSuperuserResponse, status_code=201)
@audited(
    AuditDescriptor(
        category=AuditActionCategory.USER_MANAGEMENT,
        entity_type="user",
        id_field="userId",
        identifier_field="email",
    )
)
def create_initial_superuser(request: Request, body: InitialSuperuserRequest) -> InitialSuperuserResponse:
    """Create the first superuser. Allowed exactly once per installation.

    The superuser check and the insert share one transaction in the store, so
    two concurrent first-run requests cannot both succeed.
    """
    user_store: UserStore = request.app.state.user_store
    user = User(
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        password_hash=hash_password(body.password),
    )
    try:
        user_id = user_store.create_first_superuser(user)
    except IntegrityError as exc:
        raise ConflictError("User with this email already exists") from exc
    if user_id is None:
        raise ForbiddenError("System already initialized with a superuser")
    return InitialSuperuserResponse(message="Superuser created successfully", user_id=user_id)
