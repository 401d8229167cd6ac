"""
api/routes/v1/audit_logs.py -- Read-only queries over the audit trail.

Routes (registration order matters: fixed segments before /{log_id}):
  GET /audit-logs                                   -- filtered, paginated list
  GET /audit-logs/statistics                        -- aggregate counts
  GET /audit-logs/failed                            -- failed actions, newest first
  GET /audit-logs/entity/{entity_type}/{entity_id}  -- one entity's history
  GET /audit-logs/users/{user_id}                   -- one user's activity
  GET /audit-logs/{log_id}                          -- single entry

All routes need a session token and the admin, manager or superuser role,
except user activity, which any user may read for their own id.

There is no write surface here: entries are created only by
audit/recorder.py.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    AuditLogPage,
    AuditLogResponse,
    AuditStatisticsResponse,
    EntityTrailResponse,
    FailedActionsResponse,
    UserActivityResponse,
)
from audit.models import AuditLogEntry
from audit.store import AuditLogStore
from auth.dependencies import authenticate_token, authorize_roles, get_current_user
from auth.models import ADMIN, MANAGER, SUPERUSER, AuthenticatedUser
from core.db import to_iso
from core.errors import ForbiddenError, NotFoundError

router = APIRouter(dependencies=[Depends(authenticate_token)])

_PRIVILEGED = (ADMIN, MANAGER, SUPERUSER)
_reviewers = Depends(authorize_roles(*_PRIVILEGED))


def _store(request: Request) -> AuditLogStore:
    return request.app.state.audit_store


def _to_response(entry: AuditLogEntry) -> AuditLogResponse:
    return AuditLogResponse(**asdict(entry))


def _iso(value: datetime | None) -> str | None:
    return to_iso(value) if value is not None else None


@router.get("/audit-logs", response_model=AuditLogPage, dependencies=[_reviewers])
def list_audit_logs(
    request: Request,
    user_id: int | None = Query(default=None, alias="userId"),
    action: str | None = None,
    action_category: str | None = Query(default=None, alias="actionCategory"),
    entity_type: str | None = Query(default=None, alias="entityType"),
    entity_id: int | None = Query(default=None, alias="entityId"),
    success: bool | None = None,
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> AuditLogPage:
    entries, total = _store(request).find_all(
        user_id=user_id,
        action=action,
        action_category=action_category,
        entity_type=entity_type,
        entity_id=entity_id,
        success=success,
        start_date=_iso(start_date),
        end_date=_iso(end_date),
        limit=limit,
        offset=offset,
    )
    return AuditLogPage(logs=[_to_response(e) for e in entries], total=total, limit=limit, offset=offset)


@router.get("/audit-logs/statistics", response_model=AuditStatisticsResponse, dependencies=[_reviewers])
def audit_statistics(
    request: Request,
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
) -> AuditStatisticsResponse:
    return AuditStatisticsResponse(**_store(request).statistics(_iso(start_date), _iso(end_date)))


@router.get("/audit-logs/failed", response_model=FailedActionsResponse, dependencies=[_reviewers])
def failed_actions(
    request: Request,
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    limit: int = Query(default=100, ge=1, le=1000),
) -> FailedActionsResponse:
    """Failed actions for security monitoring (denied logins, rejected writes)."""
    entries = _store(request).failed_actions(_iso(start_date), _iso(end_date), limit)
    return FailedActionsResponse(failed_actions=[_to_response(e) for e in entries], count=len(entries))


@router.get(
    "/audit-logs/entity/{entity_type}/{entity_id}",
    response_model=EntityTrailResponse,
    dependencies=[_reviewers],
)
def entity_trail(request: Request, entity_type: str, entity_id: int) -> EntityTrailResponse:
    entries = _store(request).entity_trail(entity_type, entity_id)
    return EntityTrailResponse(
        entity_type=entity_type,
        entity_id=entity_id,
        audit_trail=[_to_response(e) for e in entries],
    )


@router.get("/audit-logs/users/{user_id}", response_model=UserActivityResponse)
def user_activity(
    request: Request,
    user_id: int,
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    limit: int = Query(default=100, ge=1, le=1000),
    caller: AuthenticatedUser = Depends(get_current_user),
) -> UserActivityResponse:
    """Activity of one user. Non-privileged callers may only read their own."""
    if user_id != caller.id and not set(_PRIVILEGED) & set(caller.roles):
        raise ForbiddenError("You can only view your own activity logs")
    entries = _store(request).user_activity(user_id, _iso(start_date), _iso(end_date), limit)
    return UserActivityResponse(user_id=user_id, activity=[_to_response(e) for e in entries])


@router.get("/audit-logs/{log_id}", response_model=AuditLogResponse, dependencies=[_reviewers])
def get_audit_log(request: Request, log_id: int) -> AuditLogResponse:
    entry = _store(request).find_by_id(log_id)
    if entry is None:
        raise NotFoundError("Audit log not found")
    return _to_response(entry)
