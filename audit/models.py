"""
audit/models.py -- Domain types for the audit trail.

AuditLogEntry is the append-only record. AuditDescriptor is the per-route
declaration that tells AuditRoute how to fill entity_type / entity_id /
entity_identifier for a mutating request, instead of guessing from the
response shape.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class AuditActionCategory(str, Enum):
    AUTHENTICATION = "authentication"
    USER_MANAGEMENT = "user_management"
    DOCUMENT = "document"
    NCR = "ncr"
    CAPA = "capa"
    EQUIPMENT = "equipment"
    DEPARTMENT = "department"
    PROCESS = "process"
    CALIBRATION = "calibration"
    INSPECTION = "inspection"
    SERVICE_MAINTENANCE = "service_maintenance"
    TRAINING = "training"
    ATTACHMENT = "attachment"
    SYSTEM = "system"


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    VIEW = "view"
    LOGIN = "login"
    LOGOUT = "logout"
    REFRESH = "refresh"
    APPROVE = "approve"
    REJECT = "reject"
    ASSIGN = "assign"
    REVOKE = "revoke"
    COMPLETE = "complete"
    VERIFY = "verify"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    STATUS_CHANGE = "status_change"


@dataclass
class AuditLogEntry:
    """One row of the audit_log table.

    old_values / new_values / additional_data hold plain dicts; the store
    serializes them to JSON. changed_fields is a list of key names.
    """

    action: str
    action_category: str
    entity_type: str
    id: int | None = None
    timestamp: str | None = None
    user_id: int | None = None
    user_name: str | None = None
    user_email: str | None = None
    action_description: str | None = None
    entity_id: int | None = None
    entity_identifier: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    changed_fields: list[str] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_method: str | None = None
    request_url: str | None = None
    success: bool = True
    error_message: str | None = None
    status_code: int | None = None
    session_id: str | None = None
    additional_data: dict[str, Any] | None = None


@dataclass(frozen=True)
class AuditDescriptor:
    """How a route's request/response maps onto an audit entry.

    Attributes:
        category:          AuditActionCategory for every entry the route writes.
        entity_type:       Entity name recorded on the entry (e.g. "equipment").
        id_param:          Path parameter holding the entity id, if any.
        id_field:          Response field (dotted path allowed) holding the id
                           when there is no path parameter, e.g. "id" or
                           "userId".
        identifier_field:  Human-readable identifier field (e.g.
                           "equipmentNumber", "email"), read from the
                           response first and then from the request body.
        action:            Overrides the action inferred from the HTTP method.
    """

    category: AuditActionCategory
    entity_type: str
    id_param: str | None = None
    id_field: str | None = "id"
    identifier_field: str | None = None
    action: AuditAction | None = None
