"""
equipment/models.py -- Domain dataclass for the equipment registry.

Pattern: Data class (pure data container, zero logic).
Dates (purchase, calibration, maintenance) are ISO "YYYY-MM-DD" strings;
created_at / updated_at are full ISO UTC timestamps.
"""

from __future__ import annotations

from dataclasses import dataclass

EQUIPMENT_STATUSES = ("operational", "maintenance", "out_of_service", "calibration_due", "retired")


@dataclass
class Equipment:
    equipment_number: str
    name: str
    location: str
    id: int | None = None
    description: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    serial_number: str | None = None
    department: str | None = None
    responsible_person: int | None = None
    status: str = "operational"
    purchase_date: str | None = None
    last_calibration_date: str | None = None
    next_calibration_date: str | None = None
    calibration_interval: int | None = None  # days
    last_maintenance_date: str | None = None
    next_maintenance_date: str | None = None
    maintenance_interval: int | None = None  # days
    created_at: str | None = None
    updated_at: str | None = None
