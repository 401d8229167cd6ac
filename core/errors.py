"""
core/errors.py -- Application error taxonomy.

Every failure a route can report maps to one of these classes. Handlers and
dependencies raise them; a single exception handler in api/main.py turns any
AppError into the wire envelope {"error": "<message>", ...extra}.

The 401-vs-403 split is deliberate: a missing credential is 401, a credential
that was presented and rejected (bad signature, expired, revoked auditor
token) is 403. InvalidCredentialsError is the exception -- a failed login is
401 because no credential has been established yet.

Layer rule: no imports from api/, auth/, audit/, or equipment/.
"""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base class for errors that map directly to an HTTP response."""

    status_code: int = 500
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        return {"error": self.message, **self.extra}


class ValidationError(AppError):
    """Malformed input. Carries a list of per-field problems."""

    status_code = 400
    default_message = "Validation failed"

    def __init__(self, errors: list[dict[str, Any]] | None = None, message: str | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []

    def to_body(self) -> dict[str, Any]:
        if self.errors:
            return {"errors": self.errors}
        return {"error": self.message}


class UnauthenticatedError(AppError):
    status_code = 401
    default_message = "User not authenticated"


class MissingTokenError(UnauthenticatedError):
    default_message = "Access token required"


class InvalidFormatError(UnauthenticatedError):
    default_message = "Invalid authorization header format"


class InvalidCredentialsError(AppError):
    status_code = 401
    default_message = "Invalid credentials"


class InvalidTokenError(AppError):
    status_code = 403
    default_message = "Invalid or expired token"


class ForbiddenError(AppError):
    status_code = 403
    default_message = "Access denied: insufficient permissions"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Resource already exists"


class InternalError(AppError):
    """Unexpected failure. The message sent to the client is always generic."""

    status_code = 500
