"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work; these classes only own the domain shape.

Layer rule: no imports from api/, audit/, or equipment/.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Role names
#
# Role checks compare these strings case-sensitively against the names carried
# in the session token. They are also the seeded rows of the roles table.
# ---------------------------------------------------------------------------

SUPERUSER = "superuser"
ADMIN = "admin"
MANAGER = "manager"
AUDITOR = "auditor"
USER = "user"
VIEWER = "viewer"

# Auditor access token scopes
SCOPE_FULL_READ_ONLY = "full_read_only"
AUDITOR_SCOPES = (
    SCOPE_FULL_READ_ONLY,
    "specific_audit",
    "specific_document",
    "specific_ncr",
    "specific_capa",
    "specific_equipment",
)


@dataclass
class User:
    """A registered identity.

    email is stored lowercased; lookups are case-insensitive. password_hash is
    never serialized to the wire -- api/models.py has no field for it.
    Deactivation is a soft delete (active=False).
    """

    email: str
    first_name: str
    last_name: str
    password_hash: str
    id: int | None = None
    department: str | None = None
    active: bool = True
    must_change_password: bool = False
    last_login_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    created_by: int | None = None


@dataclass
class Role:
    name: str
    display_name: str
    level: int
    id: int | None = None
    description: str | None = None
    is_super_user: bool = False
    active: bool = True


@dataclass
class RoleAssignment:
    """A row of the user_roles relation joined with its role."""

    user_id: int
    role: Role
    assigned_by: int | None = None
    assigned_at: str | None = None
    active: bool = True
    expires_at: str | None = None


@dataclass
class AuthenticatedUser:
    """Identity decoded from a verified session token.

    Built from token claims only -- no database read. Roles reflect the state
    at token issuance and stay in effect until the token expires or is
    refreshed.
    """

    id: int
    email: str
    first_name: str = ""
    last_name: str = ""
    roles: list[str] = field(default_factory=list)
    role_ids: list[int] = field(default_factory=list)
    token: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class AuditorAccessToken:
    """A time-boxed, read-only credential for an external auditor.

    Security design:
    - token_hash is HMAC-SHA256(AUDITOR_TOKEN_SECRET, raw_token). The raw token
      is returned ONCE at creation and never persisted.
    - token_preview (first 8 + "..." + last 4) lets admins tell tokens apart.
    - allowed_resources None means "no resource restriction"; scope_entity_id
      pins specific_* scopes to a single record.
    """

    auditor_name: str
    auditor_email: str
    expires_at: str
    scope_type: str
    created_by: int
    token_hash: str = ""
    token_preview: str = ""
    id: int | None = None
    auditor_organization: str | None = None
    max_uses: int | None = None
    current_uses: int = 0
    scope_entity_id: int | None = None
    allowed_resources: list[str] | None = None
    active: bool = True
    revoked_at: str | None = None
    revoked_by: int | None = None
    revocation_reason: str | None = None
    purpose: str | None = None
    notes: str | None = None
    created_at: str | None = None
    last_used_at: str | None = None
    last_used_ip: str | None = None


@dataclass
class AuditorPrincipal:
    """The validated auditor token attached to request.state.auditor."""

    token_id: int
    auditor_name: str
    auditor_email: str
    scope_type: str
    expires_at: str
    scope_entity_id: int | None = None
    allowed_resources: list[str] | None = None
