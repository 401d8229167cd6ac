"""
audit/recorder.py -- Audit trail recording for mutating requests.

Two ways to produce an audit entry:

  1. Declarative: decorate the endpoint with @audited(AuditDescriptor(...)) and
     register it on a router whose route_class is AuditRoute. AuditRoute wraps
     the route handler, lets it run (or renders its exception through the
     app's registered exception handlers), and then attaches the audit write
     to the response as a Starlette BackgroundTask. The write therefore runs
     after the response has been sent and can never delay or alter it.

  2. Explicit: handlers call AuditTrailRecorder.log_create / log_update /
     log_delete / log_failure / log_audit when they hold precise old/new
     values. These write immediately, inside the handler.

A route uses one or the other, never both, so every mutating request yields
exactly one entry. GET/HEAD/OPTIONS are never recorded by AuditRoute.

Failure policy: AuditTrailRecorder.record() catches every exception from the
store and logs it with logger.exception. Audit failures never reach the client.

Pattern: Interceptor. AuditRoute is the FastAPI-native seam for wrapping a
single route's request/response cycle (a custom APIRoute subclass), narrower
than an app-wide middleware and with access to path params and the resolved
identity on request.state.
"""

from __future__ import annotations

import inspect
import json
import logging
from typing import Any, Callable

from fastapi import Request, Response
from fastapi.routing import APIRoute
from starlette.background import BackgroundTask, BackgroundTasks
from starlette.concurrency import run_in_threadpool
from starlette.requests import ClientDisconnect

from audit.models import AuditAction, AuditActionCategory, AuditDescriptor, AuditLogEntry
from audit.store import AuditLogStore
from auth.tokens import parse_authorization
from core.errors import InternalError

logger = logging.getLogger("eqms.audit")

# Keys never written to old_values / new_values.
SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "passwordHash",
        "password_hash",
        "currentPassword",
        "newPassword",
        "token",
        "secret",
    }
)
# Keys that never count as a change when diffing old against new.
_DIFF_IGNORED = SENSITIVE_FIELDS | {"updatedAt", "updated_at"}

_UNAUDITED_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
_METHOD_ACTIONS = {
    "POST": AuditAction.CREATE,
    "PUT": AuditAction.UPDATE,
    "PATCH": AuditAction.UPDATE,
    "DELETE": AuditAction.DELETE,
}
_PAST_TENSE = {
    AuditAction.CREATE: "Created",
    AuditAction.UPDATE: "Updated",
    AuditAction.DELETE: "Deleted",
    AuditAction.ASSIGN: "Assigned",
    AuditAction.REVOKE: "Revoked",
}

# ---------------------------------------------------------------------------
# Request context helpers
# ---------------------------------------------------------------------------


def client_ip(request: Request) -> str | None:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def session_id(request: Request) -> str | None:
    """First 20 characters of the bearer token, as a stable per-session marker."""
    scheme, credentials = parse_authorization(request.headers.get("authorization", ""))
    if scheme != "bearer":
        return None
    return credentials[:20] or None


def _request_url(request: Request) -> str:
    if request.url.query:
        return f"{request.url.path}?{request.url.query}"
    return request.url.path


def redact(values: Any) -> Any:
    """Return a copy of values with sensitive keys removed at every depth."""
    if isinstance(values, dict):
        return {k: redact(v) for k, v in values.items() if k not in SENSITIVE_FIELDS}
    if isinstance(values, list):
        return [redact(v) for v in values]
    return values


def diff_values(old: dict, new: dict) -> tuple[list[str], dict, dict]:
    """Compare two snapshots and return (changed_fields, old_subset, new_subset).

    Only keys whose JSON representation differs are kept.
    """
    changed: list[str] = []
    old_out: dict = {}
    new_out: dict = {}
    for key in dict.fromkeys([*old.keys(), *new.keys()]):
        if key in _DIFF_IGNORED:
            continue
        before, after = old.get(key), new.get(key)
        if json.dumps(before, default=str, sort_keys=True) != json.dumps(after, default=str, sort_keys=True):
            changed.append(key)
            old_out[key] = before
            new_out[key] = after
    return changed, old_out, new_out


def _dig(data: Any, path: str | None) -> Any:
    """Resolve a dotted path ("user.id") inside nested dicts."""
    if not path:
        return None
    for part in path.split("."):
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------


class AuditTrailRecorder:
    """Builds audit entries from request context and writes them to the store.

    Usage:
        recorder = AuditTrailRecorder(AuditLogStore(db_url))
        recorder.log_create(request, AuditActionCategory.EQUIPMENT, "equipment", 7, "EQ-007", new_values={...})
    """

    def __init__(self, store: AuditLogStore) -> None:
        self.store = store

    def record(self, entry: AuditLogEntry) -> int | None:
        """Persist an entry. Never raises; returns None when the write failed."""
        try:
            return self.store.create(entry)
        except Exception:
            logger.exception(
                "Failed to write audit entry (%s %s %s)",
                entry.action,
                entry.entity_type,
                entry.entity_id,
            )
            return None

    def build_entry(
        self,
        request: Request,
        *,
        action: AuditAction | str,
        category: AuditActionCategory | str,
        entity_type: str,
        description: str | None = None,
        entity_id: int | None = None,
        entity_identifier: str | None = None,
        old_values: dict | None = None,
        new_values: dict | None = None,
        success: bool = True,
        error_message: str | None = None,
        status_code: int | None = None,
        additional_data: dict | None = None,
        actor: Any = None,
    ) -> AuditLogEntry:
        """Assemble an entry from explicit values plus the request context.

        actor defaults to request.state.user; pass it explicitly where the
        identity is known but not yet attached (a successful login).
        When both old_values and new_values are given they are diffed and only
        changed keys are kept.
        """
        if actor is None:
            actor = getattr(request.state, "user", None)

        changed_fields = None
        old_clean = redact(old_values) if old_values is not None else None
        new_clean = redact(new_values) if new_values is not None else None
        if old_clean is not None and new_clean is not None:
            changed_fields, old_clean, new_clean = diff_values(old_clean, new_clean)

        return AuditLogEntry(
            action=getattr(action, "value", action),
            action_category=getattr(category, "value", category),
            entity_type=entity_type,
            action_description=description,
            entity_id=entity_id,
            entity_identifier=entity_identifier,
            old_values=old_clean,
            new_values=new_clean,
            changed_fields=changed_fields,
            user_id=getattr(actor, "id", None),
            user_name=f"{actor.first_name} {actor.last_name}".strip() if actor is not None else None,
            user_email=getattr(actor, "email", None),
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
            request_method=request.method,
            request_url=_request_url(request),
            success=success,
            error_message=error_message,
            status_code=status_code,
            session_id=session_id(request),
            additional_data=additional_data,
        )

    # ------------------------------------------------------------------
    # Explicit helpers
    # ------------------------------------------------------------------

    def log_audit(self, request: Request, **fields: Any) -> int | None:
        return self.record(self.build_entry(request, **fields))

    def log_create(
        self,
        request: Request,
        category: AuditActionCategory,
        entity_type: str,
        entity_id: int,
        entity_identifier: str | None = None,
        new_values: dict | None = None,
        description: str | None = None,
    ) -> int | None:
        return self.log_audit(
            request,
            action=AuditAction.CREATE,
            category=category,
            entity_type=entity_type,
            description=description or f"Created {entity_type}",
            entity_id=entity_id,
            entity_identifier=entity_identifier,
            new_values=new_values,
            status_code=201,
        )

    def log_update(
        self,
        request: Request,
        category: AuditActionCategory,
        entity_type: str,
        entity_id: int,
        entity_identifier: str | None = None,
        old_values: dict | None = None,
        new_values: dict | None = None,
        description: str | None = None,
    ) -> int | None:
        return self.log_audit(
            request,
            action=AuditAction.UPDATE,
            category=category,
            entity_type=entity_type,
            description=description or f"Updated {entity_type}",
            entity_id=entity_id,
            entity_identifier=entity_identifier,
            old_values=old_values,
            new_values=new_values,
            status_code=200,
        )

    def log_delete(
        self,
        request: Request,
        category: AuditActionCategory,
        entity_type: str,
        entity_id: int,
        entity_identifier: str | None = None,
        old_values: dict | None = None,
        description: str | None = None,
    ) -> int | None:
        return self.log_audit(
            request,
            action=AuditAction.DELETE,
            category=category,
            entity_type=entity_type,
            description=description or f"Deleted {entity_type}",
            entity_id=entity_id,
            entity_identifier=entity_identifier,
            old_values=old_values,
            status_code=200,
        )

    def log_failure(
        self,
        request: Request,
        action: AuditAction,
        category: AuditActionCategory,
        entity_type: str,
        error_message: str,
        status_code: int = 500,
        entity_id: int | None = None,
        entity_identifier: str | None = None,
        description: str | None = None,
        actor: Any = None,
    ) -> int | None:
        return self.log_audit(
            request,
            action=action,
            category=category,
            entity_type=entity_type,
            description=description or f"Failed to {getattr(action, 'value', action)} {entity_type}",
            entity_id=entity_id,
            entity_identifier=entity_identifier,
            success=False,
            error_message=error_message,
            status_code=status_code,
            actor=actor,
        )

    # ------------------------------------------------------------------
    # Declarative path (used by AuditRoute)
    # ------------------------------------------------------------------

    async def entry_for_exchange(
        self,
        request: Request,
        status_code: int,
        response_body: Any,
        descriptor: AuditDescriptor,
    ) -> AuditLogEntry:
        """Build the entry for one finished request/response pair."""
        success = 200 <= status_code < 400
        action = descriptor.action or _METHOD_ACTIONS.get(request.method, AuditAction.UPDATE)
        request_body = await _request_json(request)

        entity_id = None
        if descriptor.id_param:
            entity_id = _as_int(request.path_params.get(descriptor.id_param))
        if entity_id is None and descriptor.id_field:
            entity_id = _as_int(_dig(response_body, descriptor.id_field))

        identifier = None
        if descriptor.identifier_field:
            identifier = _dig(response_body, descriptor.identifier_field)
            if identifier is None:
                identifier = _dig(request_body, descriptor.identifier_field)

        error_message = None
        additional_data = None
        if not success and isinstance(response_body, dict):
            error_message = response_body.get("error")
            if "errors" in response_body:
                error_message = error_message or "Validation failed"
                additional_data = {"errors": response_body["errors"]}

        if success:
            description = f"{_PAST_TENSE.get(action, str(action.value).title())} {descriptor.entity_type}"
        else:
            description = f"Failed to {action.value} {descriptor.entity_type}"

        return self.build_entry(
            request,
            action=action,
            category=descriptor.category,
            entity_type=descriptor.entity_type,
            description=description,
            entity_id=entity_id,
            entity_identifier=str(identifier) if identifier is not None else None,
            new_values=request_body if isinstance(request_body, dict) and action != AuditAction.DELETE else None,
            success=success,
            error_message=error_message,
            status_code=status_code,
            additional_data=additional_data,
        )


async def _request_json(request: Request) -> Any:
    """Return the parsed JSON request body, or None. Never raises."""
    try:
        raw = await request.body()
    except (RuntimeError, ClientDisconnect):
        return None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Declarative wiring: @audited + AuditRoute
# ---------------------------------------------------------------------------


def audited(descriptor: AuditDescriptor) -> Callable:
    """Attach an AuditDescriptor to an endpoint.

    Must be the innermost decorator (directly above def) so the function the
    router registers carries the attribute.
    """

    def decorator(func: Callable) -> Callable:
        func.__audit_descriptor__ = descriptor
        return func

    return decorator


def _lookup_exception_handler(app: Any, exc: Exception) -> Callable | None:
    """Find the app's handler for exc by walking its MRO.

    The catch-all Exception handler is skipped: unexpected
    errors keep propagating to Starlette's ServerErrorMiddleware.
    """
    handlers = getattr(app, "exception_handlers", {}) or {}
    for cls in type(exc).__mro__:
        if cls in (Exception, BaseException):
            return None
        if cls in handlers:
            return handlers[cls]
    return None


def _response_json(response: Response) -> Any:
    body = getattr(response, "body", None)
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def _attach_background(response: Response, task: BackgroundTask) -> None:
    if response.background is None:
        response.background = task
    else:
        response.background = BackgroundTasks(tasks=[response.background, task])


class AuditRoute(APIRoute):
    """APIRoute that records one audit entry per mutating request.

    Routes without an AuditDescriptor behave exactly like APIRoute.
    """

    def get_route_handler(self) -> Callable:
        handler = super().get_route_handler()
        descriptor: AuditDescriptor | None = getattr(self.endpoint, "__audit_descriptor__", None)
        if descriptor is None:
            return handler

        async def audited_handler(request: Request) -> Response:
            if request.method in _UNAUDITED_METHODS:
                return await handler(request)

            recorder: AuditTrailRecorder | None = getattr(request.app.state, "audit_recorder", None)
            try:
                response = await handler(request)
            except Exception as exc:
                exc_handler = _lookup_exception_handler(request.app, exc)
                if exc_handler is None:
                    if recorder is not None:
                        entry = await recorder.entry_for_exchange(
                            request, 500, InternalError().to_body(), descriptor
                        )
                        await run_in_threadpool(recorder.record, entry)
                    raise
                if inspect.iscoroutinefunction(exc_handler):
                    response = await exc_handler(request, exc)
                else:
                    response = await run_in_threadpool(exc_handler, request, exc)

            if recorder is not None:
                entry = await recorder.entry_for_exchange(
                    request, response.status_code, _response_json(response), descriptor
                )
                _attach_background(response, BackgroundTask(recorder.record, entry))
            return response

        return audited_handler
