"""
api/main.py -- FastAPI application factory for the E-QMS API.

Run with:      uvicorn asgi:app --reload

create_app(settings) builds a fully wired application. Settings are read once
(get_settings()) only when the caller does not pass any, then flow by
injection: the TokenCodec gets the JWT secret/TTL, the AuditorTokenStore gets
the auditor HMAC secret, CORS gets FRONTEND_URL. Nothing below this module
reads configuration on its own.

Middleware stack (outermost to innermost):
  1. log_requests          -- one log line per request with latency
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- adds CORS headers for the SPA origin
  4. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the stores on startup and disposes their engines on shutdown.
Tests run the same lifespan against named in-memory SQLite URLs.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import HealthResponse
from api.routes.v1.audit_logs import router as audit_logs_router
from api.routes.v1.auditor_tokens import router as auditor_tokens_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.equipment import router as equipment_router
from api.routes.v1.users import router as users_router
from audit.recorder import AuditTrailRecorder
from audit.store import AuditLogStore
from auth.auditor_store import AuditorTokenStore
from auth.dependencies import AUDITOR_TOKEN, BEARER, AuditorAuthenticator, SessionAuthenticator
from auth.session import SessionIssuer
from auth.store import UserStore
from auth.tokens import TokenCodec
from core.config import Settings, get_settings
from core.errors import AppError, InternalError
from equipment.store import EquipmentStore

API_VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("eqms.api")


# ---------------------------------------------------------------------------
# State wiring
# ---------------------------------------------------------------------------


def wire_state(
    app: FastAPI,
    settings: Settings,
    user_store: UserStore,
    auditor_store: AuditorTokenStore,
    audit_store: AuditLogStore,
    equipment_store: EquipmentStore,
) -> None:
    """Attach stores and the services built on them to app.state.

    Called once from the lifespan after the stores are opened.
    """
    codec = TokenCodec(settings.jwt_secret, settings.token_ttl_seconds)
    recorder = AuditTrailRecorder(audit_store)
    app.state.settings = settings
    app.state.user_store = user_store
    app.state.auditor_store = auditor_store
    app.state.audit_store = audit_store
    app.state.equipment_store = equipment_store
    app.state.token_codec = codec
    app.state.audit_recorder = recorder
    app.state.session_issuer = SessionIssuer(user_store, codec, recorder)
    app.state.authenticators = {
        BEARER: SessionAuthenticator(codec),
        AUDITOR_TOKEN: AuditorAuthenticator(auditor_store),
    }


def _make_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Open every store against DATABASE_URL on startup; dispose engines on shutdown."""
        logger.info("E-QMS API starting up")
        stores = (
            UserStore(settings.database_url),
            AuditorTokenStore(settings.database_url, settings.auditor_token_secret),
            AuditLogStore(settings.database_url),
            EquipmentStore(settings.database_url),
        )
        wire_state(app, settings, *stores)
        logger.info("Stores initialized (superuser present=%s)", app.state.user_store.has_superusers())

        yield

        for store in stores:
            store.close()
        logger.info("E-QMS API shutdown complete")

    return lifespan


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves as {"error": "<message>"} except request validation,
# which leaves as 400 {"errors": [...]} with one entry per invalid field.
# ---------------------------------------------------------------------------


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one entry per invalid field; each message names the field."""
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ())]
        location = loc[0] if loc else "body"
        field = ".".join(loc[1:]) or location
        errors.append({"field": field, "location": location, "message": f"{field}: {err.get('msg', 'invalid')}"})
    return JSONResponse(status_code=400, content={"errors": errors})


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Framework-raised HTTP errors (404 for unknown paths, 405) in the same envelope."""
    response = JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})
    if exc.headers:
        response.headers.update(exc.headers)
    return response


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded.

    Must stay sync: SlowAPIMiddleware calls it without awaiting.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(status_code=429, content={"error": "Too many requests. Please try again later."})
    response.headers["Retry-After"] = str(retry_after)
    return response


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The traceback goes to the server log only; the client gets a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    error = InternalError()
    return JSONResponse(status_code=error.status_code, content=error.to_body())


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.user_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check database query failed")
        database = "error"
    return HealthResponse(version=API_VERSION, components={"app": "ok", "database": database})


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="E-QMS core API: authentication, role-based access, auditor access tokens and the audit trail.",
        version=API_VERSION,
        lifespan=_make_lifespan(settings),
    )

    # add_middleware() wraps the existing stack, so the last one added is the
    # outermost: TrustedHost -> CORS -> SlowAPI.
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)
    # SlowAPI looks for app.state.limiter by convention.
    app.state.limiter = limiter
    app.middleware("http")(log_requests)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
    app.include_router(users_router, prefix="/api/v1", tags=["Users"])
    app.include_router(equipment_router, prefix="/api/v1", tags=["Equipment"])
    app.include_router(auditor_tokens_router, prefix="/api/v1", tags=["Auditor Tokens"])
    app.include_router(audit_logs_router, prefix="/api/v1", tags=["Audit Logs"])
    # No rate limit on health -- monitors must not be throttled.
    app.add_api_route("/api/v1/health", health, methods=["GET"], response_model=HealthResponse, tags=["Health"])

    return app
