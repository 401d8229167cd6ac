"""
API request and response models for the E-QMS REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py,
audit/models.py and equipment/models.py, which own the internal domain
representation. Route handlers map between the two.

Wire format: every model derives from ApiModel, which aliases snake_case
attributes to camelCase JSON keys. Requests accept either spelling; responses
are always camelCase (FastAPI serializes response_model by alias).

No response model has a password or hash field, so a hash can never be
serialized by accident.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from auth.models import AUDITOR_SCOPES


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_email(value: str) -> str:
    value = value.strip().lower()
    local, _, domain = value.partition("@")
    if not local or "." not in domain or " " in value:
        raise ValueError("must be a valid email address")
    return value


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class MessageResponse(ApiModel):
    model_config = ConfigDict(frozen=True)

    message: str


class HealthResponse(ApiModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(ApiModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _check_email(value)


class UserSummary(ApiModel):
    """Identity summary returned by login, refresh and profile."""

    id: int
    email: str
    first_name: str
    last_name: str
    department: Optional[str] = None
    roles: list[str]
    must_change_password: bool = False


class SessionResponse(ApiModel):
    token: str
    user: UserSummary


class ProfileResponse(UserSummary):
    active: bool
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None


class SuperuserCheckResponse(ApiModel):
    has_superusers: bool


class InitialSuperuserRequest(ApiModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _check_email(value)


class InitialSuperuserResponse(ApiModel):
    message: str
    user_id: int


# ---------------------------------------------------------------------------
# Users and roles
# ---------------------------------------------------------------------------


class RoleResponse(ApiModel):
    id: int
    name: str
    display_name: str
    description: Optional[str] = None
    level: int
    is_super_user: bool


class UserCreate(ApiModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    department: Optional[str] = Field(default=None, max_length=100)
    roles: list[str] = Field(default_factory=lambda: ["user"], min_length=1)
    must_change_password: bool = True

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _check_email(value)


class UserUpdate(ApiModel):
    email: Optional[str] = Field(default=None, min_length=3, max_length=255)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    department: Optional[str] = Field(default=None, max_length=100)
    active: Optional[bool] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value) if value is not None else None


class UserResponse(ApiModel):
    id: int
    email: str
    first_name: str
    last_name: str
    department: Optional[str] = None
    active: bool
    must_change_password: bool
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None
    roles: list[str]


class RoleAssign(ApiModel):
    role_id: int = Field(ge=1)
    expires_at: Optional[datetime] = None


class PasswordChange(ApiModel):
    current_password: Optional[str] = Field(default=None, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)


# ---------------------------------------------------------------------------
# Equipment
# ---------------------------------------------------------------------------


class EquipmentStatus(str, Enum):
    operational = "operational"
    maintenance = "maintenance"
    out_of_service = "out_of_service"
    calibration_due = "calibration_due"
    retired = "retired"


class EquipmentCreate(ApiModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    equipment_number: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=200)
    location: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    manufacturer: Optional[str] = Field(default=None, max_length=200)
    model: Optional[str] = Field(default=None, max_length=200)
    serial_number: Optional[str] = Field(default=None, max_length=200)
    department: Optional[str] = Field(default=None, max_length=100)
    responsible_person: Optional[int] = None
    status: EquipmentStatus = EquipmentStatus.operational
    purchase_date: Optional[date] = None
    last_calibration_date: Optional[date] = None
    next_calibration_date: Optional[date] = None
    calibration_interval: Optional[int] = Field(default=None, ge=1)
    last_maintenance_date: Optional[date] = None
    next_maintenance_date: Optional[date] = None
    maintenance_interval: Optional[int] = Field(default=None, ge=1)


class EquipmentUpdate(ApiModel):
    """Partial update; only fields present in the body are written."""

    model_config = ConfigDict(str_strip_whitespace=True)

    equipment_number: Optional[str] = Field(default=None, min_length=1, max_length=100)
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    location: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    manufacturer: Optional[str] = Field(default=None, max_length=200)
    model: Optional[str] = Field(default=None, max_length=200)
    serial_number: Optional[str] = Field(default=None, max_length=200)
    department: Optional[str] = Field(default=None, max_length=100)
    responsible_person: Optional[int] = None
    status: Optional[EquipmentStatus] = None
    purchase_date: Optional[date] = None
    last_calibration_date: Optional[date] = None
    next_calibration_date: Optional[date] = None
    calibration_interval: Optional[int] = Field(default=None, ge=1)
    last_maintenance_date: Optional[date] = None
    next_maintenance_date: Optional[date] = None
    maintenance_interval: Optional[int] = Field(default=None, ge=1)


class EquipmentResponse(ApiModel):
    id: int
    equipment_number: str
    name: str
    location: str
    description: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    department: Optional[str] = None
    responsible_person: Optional[int] = None
    status: str
    purchase_date: Optional[str] = None
    last_calibration_date: Optional[str] = None
    next_calibration_date: Optional[str] = None
    calibration_interval: Optional[int] = None
    last_maintenance_date: Optional[str] = None
    next_maintenance_date: Optional[str] = None
    maintenance_interval: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Auditor access tokens
# ---------------------------------------------------------------------------


class AuditorTokenCreate(ApiModel):
    auditor_name: str = Field(min_length=1, max_length=200)
    auditor_email: str = Field(min_length=3, max_length=255)
    auditor_organization: Optional[str] = Field(default=None, max_length=200)
    expires_at: datetime
    max_uses: Optional[int] = Field(default=None, ge=1)
    scope_type: str = "full_read_only"
    scope_entity_id: Optional[int] = Field(default=None, ge=1)
    allowed_resources: Optional[list[str]] = None
    purpose: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("auditor_email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _check_email(value)

    @field_validator("scope_type")
    @classmethod
    def known_scope(cls, value: str) -> str:
        if value not in AUDITOR_SCOPES:
            raise ValueError(f"must be one of: {', '.join(AUDITOR_SCOPES)}")
        return value

    @field_validator("expires_at")
    @classmethod
    def in_future(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        if value <= datetime.now(timezone.utc):
            raise ValueError("expiration date must be in the future")
        return value

    @model_validator(mode="after")
    def entity_for_specific_scope(self) -> "AuditorTokenCreate":
        if self.scope_type.startswith("specific_") and self.scope_entity_id is None:
            raise ValueError("scopeEntityId is required for specific scope types")
        return self


class AuditorTokenCreatedResponse(ApiModel):
    """Returned once at creation. token is the raw value and is never shown again."""

    message: str
    token: str
    token_id: int
    expires_at: str
    access_url: str
    warning: str


class AuditorTokenResponse(ApiModel):
    id: int
    token_preview: str
    auditor_name: str
    auditor_email: str
    auditor_organization: Optional[str] = None
    expires_at: str
    max_uses: Optional[int] = None
    current_uses: int
    scope_type: str
    scope_entity_id: Optional[int] = None
    allowed_resources: Optional[list[str]] = None
    active: bool
    revoked_at: Optional[str] = None
    revoked_by: Optional[int] = None
    revocation_reason: Optional[str] = None
    purpose: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None
    created_by: int
    last_used_at: Optional[str] = None
    last_used_ip: Optional[str] = None


class AuditorTokenRevoke(ApiModel):
    reason: str = Field(min_length=1, max_length=500)


class AuditorTokenList(ApiModel):
    tokens: list[AuditorTokenResponse]
    count: int


class AuditorTokenRevokedResponse(ApiModel):
    message: str
    token_id: int


class ScopeOption(ApiModel):
    value: str
    label: str
    requires_entity_id: bool


class AuditorTokenOptions(ApiModel):
    """Choices the token generation form offers."""

    scope_types: list[ScopeOption]
    resource_types: list[str]
    default_expiration_hours: list[int]


class CleanupResponse(ApiModel):
    message: str
    count: int


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditLogResponse(ApiModel):
    id: int
    timestamp: str
    user_id: Optional[int] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    action: str
    action_category: str
    action_description: Optional[str] = None
    entity_type: str
    entity_id: Optional[int] = None
    entity_identifier: Optional[str] = None
    old_values: Optional[Any] = None
    new_values: Optional[Any] = None
    changed_fields: Optional[list[str]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_method: Optional[str] = None
    request_url: Optional[str] = None
    success: bool
    error_message: Optional[str] = None
    status_code: Optional[int] = None
    session_id: Optional[str] = None
    additional_data: Optional[Any] = None


class AuditLogPage(ApiModel):
    logs: list[AuditLogResponse]
    total: int
    limit: int
    offset: int


class AuditStatisticsResponse(ApiModel):
    total_actions: int
    successful_actions: int
    failed_actions: int
    unique_users: int
    entity_types: int
    by_category: dict[str, int]
    by_action: dict[str, int]


class EntityTrailResponse(ApiModel):
    entity_type: str
    entity_id: int
    audit_trail: list[AuditLogResponse]


class UserActivityResponse(ApiModel):
    user_id: int
    activity: list[AuditLogResponse]


class FailedActionsResponse(ApiModel):
    failed_actions: list[AuditLogResponse]
    count: int
