"""
api/routes/v1/equipment.py -- Equipment registry routes.

Routes (in registration order to avoid FastAPI path capture conflicts):
  GET    /equipment                     -- list, filter by status/department
  GET    /equipment/calibration-due     -- due within ?days=N (default 30)
  GET    /equipment/{equipment_id}      -- detail
  POST   /equipment                     -- create   (admin, manager, superuser)
  PUT    /equipment/{equipment_id}      -- update   (admin, manager, superuser)
  DELETE /equipment/{equipment_id}      -- delete   (admin, superuser)

Reads accept either a session token or an auditor token (flexible_auth).
Auditor tokens are then held to GET and to their declared scope; a
specific_equipment token only reaches the one equipment id it names.

Writes go through the same dispatcher, so an auditor token is refused with
403 by enforce_read_only before the role guard runs. POST and DELETE are
audited from their descriptors; PUT records its own entry because it holds
the before/after rows.
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import EquipmentCreate, EquipmentResponse, EquipmentStatus, EquipmentUpdate
from audit.models import AuditActionCategory, AuditDescriptor
from audit.recorder import AuditRoute, AuditTrailRecorder, audited
from auth.dependencies import (
    authorize_roles,
    check_resource_scope,
    enforce_read_only,
    flexible_auth,
)
from auth.models import ADMIN, MANAGER, SUPERUSER
from core.errors import ConflictError, NotFoundError
from equipment.models import Equipment
from equipment.store import EquipmentStore

router = APIRouter(route_class=AuditRoute)

_read_access = [
    Depends(flexible_auth),
    Depends(enforce_read_only),
    Depends(check_resource_scope("equipment", "equipment_id")),
]
_editors = [Depends(flexible_auth), Depends(enforce_read_only), Depends(authorize_roles(ADMIN, MANAGER, SUPERUSER))]
_deleters = [Depends(flexible_auth), Depends(enforce_read_only), Depends(authorize_roles(ADMIN, SUPERUSER))]
# NOT NULL columns; an explicit null for one of these is ignored on update.
_REQUIRED_FIELDS = frozenset({"equipment_number", "name", "location", "status"})


def _store(request: Request) -> EquipmentStore:
    return request.app.state.equipment_store


def _to_response(item: Equipment) -> EquipmentResponse:
    return EquipmentResponse(**asdict(item))


def _snapshot(item: Equipment) -> dict:
    return {k: v for k, v in EquipmentResponse(**asdict(item)).model_dump(by_alias=True).items() if k != "id"}


def _require(store: EquipmentStore, equipment_id: int) -> Equipment:
    item = store.get(equipment_id)
    if item is None:
        raise NotFoundError("Equipment not found")
    return item


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/equipment", response_model=list[EquipmentResponse], dependencies=_read_access)
def list_equipment(
    request: Request,
    status: EquipmentStatus | None = None,
    department: str | None = None,
) -> list[EquipmentResponse]:
    items = _store(request).list_equipment(status.value if status else None, department)
    return [_to_response(i) for i in items]


@router.get("/equipment/calibration-due", response_model=list[EquipmentResponse], dependencies=_read_access)
def calibration_due(request: Request, days: int = Query(default=30, ge=0, le=3650)) -> list[EquipmentResponse]:
    """Equipment whose next calibration is overdue or falls within the next `days` days."""
    return [_to_response(i) for i in _store(request).calibration_due(days)]


@router.get("/equipment/{equipment_id}", response_model=EquipmentResponse, dependencies=_read_access)
def get_equipment(request: Request, equipment_id: int) -> EquipmentResponse:
    return _to_response(_require(_store(request), equipment_id))


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


@router.post("/equipment", response_model=EquipmentResponse, status_code=201, dependencies=_editors)
@audited(
    AuditDescriptor(
        category=AuditActionCategory.EQUIPMENT,
        entity_type="equipment",
        id_field="id",
        identifier_field="equipmentNumber",
    )
)
def create_equipment(request: Request, body: EquipmentCreate) -> EquipmentResponse:
    store = _store(request)
    item = Equipment(**body.model_dump(mode="json"))
    try:
        equipment_id = store.create(item)
    except IntegrityError as exc:
        raise ConflictError("Equipment number already exists") from exc
    return _to_response(store.get(equipment_id))


@router.put("/equipment/{equipment_id}", response_model=EquipmentResponse, dependencies=_editors)
def update_equipment(request: Request, equipment_id: int, body: EquipmentUpdate) -> EquipmentResponse:
    """Partial update. Only fields present in the body are written."""
    store = _store(request)
    before = _require(store, equipment_id)
    fields = {
        k: v
        for k, v in body.model_dump(mode="json", exclude_unset=True).items()
        if v is not None or k not in _REQUIRED_FIELDS
    }
    if fields:
        try:
            store.update(equipment_id, **fields)
        except IntegrityError as exc:
            raise ConflictError("Equipment number already exists") from exc
    after = store.get(equipment_id)
    recorder: AuditTrailRecorder = request.app.state.audit_recorder
    recorder.log_update(
        request,
        AuditActionCategory.EQUIPMENT,
        "equipment",
        equipment_id,
        after.equipment_number,
        _snapshot(before),
        _snapshot(after),
    )
    return _to_response(after)


@router.delete("/equipment/{equipment_id}", response_model=EquipmentResponse, dependencies=_deleters)
@audited(
    AuditDescriptor(
        category=AuditActionCategory.EQUIPMENT,
        entity_type="equipment",
        id_param="equipment_id",
        identifier_field="equipmentNumber",
    )
)
def delete_equipment(request: Request, equipment_id: int) -> EquipmentResponse:
    """Hard delete. Returns the removed record so the audit entry can name it."""
    store = _store(request)
    item = _require(store, equipment_id)
    store.delete(equipment_id)
    return _to_response(item)
