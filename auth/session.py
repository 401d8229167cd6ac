"""
auth/session.py -- Session issuance: login, refresh, logout, profile.

SessionIssuer is the only place session tokens are minted. It is built once
by the app factory with its collaborators injected:

  users    -- UserStore (identity + role lookups)
  codec    -- TokenCodec (configured secret + TTL)
  recorder -- AuditTrailRecorder (authentication events)

Login is a single-shot state machine:
  unknown email / inactive account / wrong password
      -> InvalidCredentialsError, generic "Invalid credentials"
  success
      -> roles loaded, last_login_at stamped, token minted
Exactly one audit entry is written per attempt, success or failure, and
last_login_at is written only on success. Every failure path runs exactly one
bcrypt comparison so timing does not reveal which accounts exist.

There is no server-side session state. Logout is an acknowledgement; a token
stays valid until it expires.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request

from audit.models import AuditAction, AuditActionCategory
from audit.recorder import AuditTrailRecorder
from auth.models import AuthenticatedUser, Role, User
from auth.store import UserStore
from auth.tokens import TokenCodec, burn_password_check, verify_password
from core.errors import InvalidCredentialsError, NotFoundError, UnauthenticatedError

logger = logging.getLogger("eqms.auth")

_ENTITY = "user"


@dataclass
class SessionResult:
    token: str
    user: User
    roles: list[Role]


class SessionIssuer:
    """Orchestrates credential checks, role loading, token minting and audit events."""

    def __init__(self, users: UserStore, codec: TokenCodec, recorder: AuditTrailRecorder) -> None:
        self.users = users
        self.codec = codec
        self.recorder = recorder

    def mint(self, user: User, roles: list[Role]) -> str:
        return self.codec.sign(
            {
                "id": user.id,
                "email": user.email,
                "firstName": user.first_name,
                "lastName": user.last_name,
                "roles": [r.name for r in roles],
                "roleIds": [r.id for r in roles],
            }
        )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, request: Request, email: str, password: str) -> SessionResult:
        user = self.users.get_by_email(email)
        if user is None or not user.active:
            burn_password_check(password)
            logger.info("Login rejected for %s (unknown or inactive account)", email)
            self.recorder.log_failure(
                request,
                AuditAction.LOGIN,
                AuditActionCategory.AUTHENTICATION,
                _ENTITY,
                "Invalid credentials",
                status_code=401,
                entity_id=user.id if user else None,
                entity_identifier=email,
                description="Failed login attempt",
            )
            raise InvalidCredentialsError()

        if not verify_password(password, user.password_hash):
            logger.info("Login rejected for %s (bad password)", email)
            self.recorder.log_failure(
                request,
                AuditAction.LOGIN,
                AuditActionCategory.AUTHENTICATION,
                _ENTITY,
                "Invalid credentials",
                status_code=401,
                entity_id=user.id,
                entity_identifier=user.email,
                description="Failed login attempt",
            )
            raise InvalidCredentialsError()

        roles = self.users.get_user_roles(user.id)
        self.users.update_last_login(user.id)
        token = self.mint(user, roles)
        self.recorder.log_audit(
            request,
            action=AuditAction.LOGIN,
            category=AuditActionCategory.AUTHENTICATION,
            entity_type=_ENTITY,
            description="User logged in",
            entity_id=user.id,
            entity_identifier=user.email,
            status_code=200,
            actor=user,
        )
        logger.info("Login succeeded for user %d", user.id)
        return SessionResult(token=token, user=user, roles=roles)

    # ------------------------------------------------------------------
    # Refresh / logout / profile
    # ------------------------------------------------------------------

    def refresh(self, request: Request, identity: AuthenticatedUser) -> SessionResult:
        """Re-mint from a fresh read of the user and their current roles."""
        user = self.users.get_by_id(identity.id)
        if user is None or not user.active:
            raise NotFoundError("User not found")
        roles = self.users.get_user_roles(user.id)
        token = self.mint(user, roles)
        self.recorder.log_audit(
            request,
            action=AuditAction.REFRESH,
            category=AuditActionCategory.AUTHENTICATION,
            entity_type=_ENTITY,
            description="Session token refreshed",
            entity_id=user.id,
            entity_identifier=user.email,
            status_code=200,
        )
        return SessionResult(token=token, user=user, roles=roles)

    def logout(self, request: Request, identity: AuthenticatedUser | None) -> None:
        if identity is None:
            raise UnauthenticatedError()
        self.recorder.log_audit(
            request,
            action=AuditAction.LOGOUT,
            category=AuditActionCategory.AUTHENTICATION,
            entity_type=_ENTITY,
            description="User logged out",
            entity_id=identity.id,
            entity_identifier=identity.email,
            status_code=200,
        )

    def profile(self, identity: AuthenticatedUser) -> tuple[User, list[Role]]:
        user = self.users.get_by_id(identity.id)
        if user is None:
            raise NotFoundError("User not found")
        return user, self.users.get_user_roles(user.id)
