"""
equipment/store.py -- SQLAlchemy Core persistence for the equipment registry.

Pattern: Repository + Data Mapper (same as auth/store.py).

equipment_number is UNIQUE; a duplicate insert raises IntegrityError and the
route layer maps it to 409.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import date, timedelta

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, and_
from sqlalchemy.engine import Engine

from core.db import create_store_engine, now_iso
from equipment.models import Equipment

_metadata = MetaData()

_equipment = Table(
    "equipment",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("equipment_number", String(100), nullable=False, unique=True),
    Column("name", String(200), nullable=False),
    Column("description", Text),
    Column("manufacturer", String(200)),
    Column("model", String(200)),
    Column("serial_number", String(200)),
    Column("location", String(200), nullable=False),
    Column("department", String(100)),
    Column("responsible_person", Integer),
    Column("status", String(30), nullable=False, server_default="operational"),
    Column("purchase_date", String(10)),
    Column("last_calibration_date", String(10)),
    Column("next_calibration_date", String(10)),
    Column("calibration_interval", Integer),
    Column("last_maintenance_date", String(10)),
    Column("next_maintenance_date", String(10)),
    Column("maintenance_interval", Integer),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40)),
)

_MUTABLE_FIELDS = frozenset(c.name for c in _equipment.columns) - {"id", "created_at", "updated_at"}


class EquipmentStore:
    """Repository for Equipment entities."""

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)

    def create(self, item: Equipment) -> int:
        """Insert and return the new id. Raises IntegrityError on duplicate equipment_number."""
        values = {k: v for k, v in asdict(item).items() if k in _MUTABLE_FIELDS}
        with self.engine.connect() as conn:
            result = conn.execute(_equipment.insert().values(created_at=now_iso(), **values))
            conn.commit()
            return result.inserted_primary_key[0]

    def get(self, equipment_id: int) -> Equipment | None:
        with self.engine.connect() as conn:
            row = conn.execute(_equipment.select().where(_equipment.c.id == equipment_id)).fetchone()
        return _row_to_equipment(row) if row is not None else None

    def list_equipment(self, status: str | None = None, department: str | None = None) -> list[Equipment]:
        """Return equipment ordered by name, optionally filtered."""
        query = _equipment.select()
        if status:
            query = query.where(_equipment.c.status == status)
        if department:
            query = query.where(_equipment.c.department == department)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_equipment.c.name)).fetchall()
        return [_row_to_equipment(r) for r in rows]

    def update(self, equipment_id: int, **fields) -> bool:
        """Update the given columns. Returns False if the id does not exist."""
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown equipment fields: {sorted(unknown)!r}")
        with self.engine.connect() as conn:
            result = conn.execute(
                _equipment.update().where(_equipment.c.id == equipment_id).values(updated_at=now_iso(), **fields)
            )
            conn.commit()
        return result.rowcount > 0

    def delete(self, equipment_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_equipment.delete().where(_equipment.c.id == equipment_id))
            conn.commit()
        return result.rowcount > 0

    def calibration_due(self, days: int = 30) -> list[Equipment]:
        """Equipment whose next calibration falls within `days` from today, overdue included.

        Soonest first. Retired equipment is excluded.
        """
        horizon = (date.today() + timedelta(days=days)).isoformat()
        query = (
            _equipment.select()
            .where(
                and_(
                    _equipment.c.next_calibration_date.is_not(None),
                    _equipment.c.next_calibration_date <= horizon,
                    _equipment.c.status != "retired",
                )
            )
            .order_by(_equipment.c.next_calibration_date)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_equipment(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


def _row_to_equipment(row) -> Equipment:
    return Equipment(**{c.name: getattr(row, c.name) for c in _equipment.columns})
