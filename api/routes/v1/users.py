"""
api/routes/v1/users.py -- User and role administration.

Routes (registration order matters: /users/roles before /users/{user_id}):
  GET    /users                          -- list users          (admin, manager, superuser)
  GET    /users/roles                    -- list roles          (any authenticated user)
  GET    /users/{user_id}                -- user detail         (admin, manager, superuser)
  POST   /users                          -- create user         (admin, superuser)
  PUT    /users/{user_id}                -- update, reactivate  (admin, superuser)
  DELETE /users/{user_id}                -- deactivate          (admin, superuser)
  POST   /users/{user_id}/roles          -- assign role         (admin, superuser)
  DELETE /users/{user_id}/roles/{role_id} -- remove role        (admin, superuser)
  PUT    /users/{user_id}/password       -- change password     (self, admin, superuser)

Invariants:
  A superuser-flagged role may only be assigned or removed by a caller who
  currently holds one. The check reads the caller's roles from the database,
  not from the token.
  Users are never hard-deleted; DELETE /users/{id} sets active=False, and a
  caller cannot deactivate their own account.

Audit: every mutating route writes one entry through the explicit recorder
helpers, with before/after snapshots where they exist.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import PasswordChange, RoleAssign, RoleResponse, UserCreate, UserResponse, UserUpdate
from audit.models import AuditAction, AuditActionCategory
from audit.recorder import AuditTrailRecorder
from auth.dependencies import authenticate_token, authorize_roles, get_current_user
from auth.models import ADMIN, MANAGER, SUPERUSER, AuthenticatedUser, Role, User
from auth.store import UserStore
from auth.tokens import hash_password, verify_password
from core.db import to_iso
from core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError

router = APIRouter(dependencies=[Depends(authenticate_token)])

_readers = Depends(authorize_roles(ADMIN, MANAGER, SUPERUSER))
_writers = Depends(authorize_roles(ADMIN, SUPERUSER))

_CATEGORY = AuditActionCategory.USER_MANAGEMENT


def _store(request: Request) -> UserStore:
    return request.app.state.user_store


def _recorder(request: Request) -> AuditTrailRecorder:
    return request.app.state.audit_recorder


def _to_response(user: User, roles: list[Role]) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        department=user.department,
        active=user.active,
        must_change_password=user.must_change_password,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
        roles=[r.name for r in roles],
    )


def _snapshot(user: User) -> dict:
    return {
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "department": user.department,
        "active": user.active,
    }


def _require_user(store: UserStore, user_id: int) -> User:
    user = store.get_by_id(user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def _require_superuser_for(store: UserStore, caller: AuthenticatedUser, role: Role, verb: str) -> None:
    if role.is_super_user and not store.user_is_superuser(caller.id):
        raise ForbiddenError(f"Only superusers can {verb} superuser role")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserResponse], dependencies=[_readers])
def list_users(
    request: Request,
    include_inactive: bool = Query(default=True, alias="includeInactive"),
) -> list[UserResponse]:
    store = _store(request)
    return [_to_response(u, store.get_user_roles(u.id)) for u in store.list_users(include_inactive)]


@router.get("/users/roles", response_model=list[RoleResponse])
def list_roles(request: Request) -> list[RoleResponse]:
    return [
        RoleResponse(
            id=r.id,
            name=r.name,
            display_name=r.display_name,
            description=r.description,
            level=r.level,
            is_super_user=r.is_super_user,
        )
        for r in _store(request).list_roles()
    ]


@router.get("/users/{user_id}", response_model=UserResponse, dependencies=[_readers])
def get_user(request: Request, user_id: int) -> UserResponse:
    store = _store(request)
    user = _require_user(store, user_id)
    return _to_response(user, store.get_user_roles(user.id))


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserResponse, status_code=201, dependencies=[_writers])
def create_user(
    request: Request,
    body: UserCreate,
    caller: AuthenticatedUser = Depends(get_current_user),
) -> UserResponse:
    """Create a user with an initial role set in one transaction."""
    store = _store(request)
    roles = []
    for name in dict.fromkeys(body.roles):
        role = store.get_role_by_name(name)
        if role is None or not role.active:
            raise ValidationError([{"field": "roles", "location": "body", "message": f"roles: unknown role '{name}'"}])
        _require_superuser_for(store, caller, role, "assign")
        roles.append(role)

    user = User(
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        department=body.department,
        password_hash=hash_password(body.password),
        must_change_password=body.must_change_password,
        created_by=caller.id,
    )
    try:
        user_id = store.create_user(user, role_names=[r.name for r in roles], assigned_by=caller.id)
    except IntegrityError as exc:
        raise ConflictError("User with this email already exists") from exc

    created = store.get_by_id(user_id)
    current_roles = store.get_user_roles(user_id)
    _recorder(request).log_create(
        request,
        _CATEGORY,
        "user",
        user_id,
        created.email,
        new_values={**_snapshot(created), "roles": [r.name for r in current_roles]},
    )
    return _to_response(created, current_roles)


@router.put("/users/{user_id}", response_model=UserResponse, dependencies=[_writers])
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    caller: AuthenticatedUser = Depends(get_current_user),
) -> UserResponse:
    """Partial profile update. active=true reactivates a deactivated account."""
    store = _store(request)
    before = _require_user(store, user_id)
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if fields.get("active") is False:
        if user_id == caller.id:
            raise ValidationError(message="You cannot deactivate your own account")
        if store.user_is_superuser(user_id) and not store.user_is_superuser(caller.id):
            raise ForbiddenError("Only superusers can deactivate a superuser")

    if fields:
        try:
            store.update_user(user_id, **fields)
        except IntegrityError as exc:
            raise ConflictError("User with this email already exists") from exc
    after = store.get_by_id(user_id)
    _recorder(request).log_update(request, _CATEGORY, "user", user_id, after.email, _snapshot(before), _snapshot(after))
    return _to_response(after, store.get_user_roles(user_id))


@router.delete("/users/{user_id}", response_model=UserResponse, dependencies=[_writers])
def deactivate_user(
    request: Request,
    user_id: int,
    caller: AuthenticatedUser = Depends(get_current_user),
) -> UserResponse:
    """Soft-delete: mark the user inactive. Their existing tokens stay valid until expiry."""
    store = _store(request)
    if user_id == caller.id:
        raise ValidationError(message="You cannot deactivate your own account")
    user = _require_user(store, user_id)
    if store.user_is_superuser(user_id) and not store.user_is_superuser(caller.id):
        raise ForbiddenError("Only superusers can deactivate a superuser")
    store.update_user(user_id, active=False)
    after = store.get_by_id(user_id)
    _recorder(request).log_update(
        request,
        _CATEGORY,
        "user",
        user_id,
        user.email,
        _snapshot(user),
        _snapshot(after),
        description="Deactivated user",
    )
    return _to_response(after, store.get_user_roles(user_id))


@router.post("/users/{user_id}/roles", response_model=UserResponse, dependencies=[_writers])
def assign_role(
    request: Request,
    user_id: int,
    body: RoleAssign,
    caller: AuthenticatedUser = Depends(get_current_user),
) -> UserResponse:
    store = _store(request)
    user = _require_user(store, user_id)
    role = store.get_role(body.role_id)
    if role is None or not role.active:
        raise NotFoundError("Role not found")
    _require_superuser_for(store, caller, role, "assign")

    expires_at = to_iso(body.expires_at) if body.expires_at else None
    store.assign_role(user_id, role.id, caller.id, expires_at)
    _recorder(request).log_audit(
        request,
        action=AuditAction.ASSIGN,
        category=_CATEGORY,
        entity_type="user_role",
        description=f"Assigned role {role.name}",
        entity_id=user_id,
        entity_identifier=user.email,
        new_values={"roleId": role.id, "role": role.name, "expiresAt": expires_at},
        status_code=200,
    )
    return _to_response(user, store.get_user_roles(user_id))


@router.delete("/users/{user_id}/roles/{role_id}", response_model=UserResponse, dependencies=[_writers])
def remove_role(
    request: Request,
    user_id: int,
    role_id: int,
    caller: AuthenticatedUser = Depends(get_current_user),
) -> UserResponse:
    store = _store(request)
    user = _require_user(store, user_id)
    role = store.get_role(role_id)
    if role is None:
        raise NotFoundError("Role not found")
    _require_superuser_for(store, caller, role, "remove")
    if not store.revoke_role(user_id, role_id):
        raise NotFoundError("Role assignment not found")
    _recorder(request).log_audit(
        request,
        action=AuditAction.REVOKE,
        category=_CATEGORY,
        entity_type="user_role",
        description=f"Removed role {role.name}",
        entity_id=user_id,
        entity_identifier=user.email,
        old_values={"roleId": role.id, "role": role.name},
        status_code=200,
    )
    return _to_response(user, store.get_user_roles(user_id))


@router.put("/users/{user_id}/password", response_model=dict)
def change_password(
    request: Request,
    user_id: int,
    body: PasswordChange,
    caller: AuthenticatedUser = Depends(get_current_user),
) -> dict:
    """Change a password.

    Users changing their own password must supply the current one. Admins and
    superusers may reset anyone's password; the user must then change it at
    next login.
    """
    store = _store(request)
    is_self = caller.id == user_id
    is_admin = bool({ADMIN, SUPERUSER} & set(caller.roles))
    if not is_self and not is_admin:
        raise ForbiddenError()
    user = _require_user(store, user_id)
    if is_self:
        if not body.current_password or not verify_password(body.current_password, user.password_hash):
            raise ValidationError(message="Current password is incorrect")
    store.update_password(user_id, hash_password(body.new_password), must_change_password=not is_self)
    _recorder(request).log_update(
        request,
        _CATEGORY,
        "user",
        user_id,
        user.email,
        description="Changed password" if is_self else "Reset password",
    )
    return {"message": "Password updated successfully"}
