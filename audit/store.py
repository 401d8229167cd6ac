"""
audit/store.py -- Append-only SQLAlchemy Core store for audit log entries.

Pattern: Repository + Data Mapper. The repository has no update
or delete methods; compliance requires that entries, once written, are only
ever read.

JSON columns (old_values, new_values, additional_data) are serialized with
json.dumps(default=str) so dates and enums never break a write.
"""

from __future__ import annotations

import json

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, and_, case, func, select, true
from sqlalchemy.engine import Engine

from audit.models import AuditLogEntry
from core.db import create_store_engine, now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", String(40), nullable=False, index=True),
    Column("user_id", Integer, index=True),
    Column("user_name", String(200)),
    Column("user_email", String(255)),
    Column("action", String(50), nullable=False),
    Column("action_category", String(50), nullable=False),
    Column("action_description", String(500)),
    Column("entity_type", String(50), nullable=False),
    Column("entity_id", Integer),
    Column("entity_identifier", String(255)),
    Column("old_values", Text),
    Column("new_values", Text),
    Column("changed_fields", Text),  # comma-separated
    Column("ip_address", String(45)),
    Column("user_agent", String(500)),
    Column("request_method", String(10)),
    Column("request_url", String(500)),
    Column("success", Integer, nullable=False, server_default="1"),
    Column("error_message", Text),
    Column("status_code", Integer),
    Column("session_id", String(100)),
    Column("additional_data", Text),
)

_DEFAULT_LIMIT = 100
_MAX_LIMIT = 1000


def _dump(value) -> str | None:
    return json.dumps(value, default=str) if value is not None else None


def _load(value: str | None):
    if not value:
        return None
    try:
        return json.loads(value)
    except ValueError:
        return {"raw": value}


def _clamp(limit: int | None) -> int:
    if not limit or limit < 1:
        return _DEFAULT_LIMIT
    return min(limit, _MAX_LIMIT)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditLogStore:
    """Append-only repository for AuditLogEntry records."""

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)

    def create(self, entry: AuditLogEntry) -> int:
        """Insert an entry and return its id. timestamp defaults to now."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_log.insert().values(
                    timestamp=entry.timestamp or now_iso(),
                    user_id=entry.user_id,
                    user_name=entry.user_name,
                    user_email=entry.user_email,
                    action=str(getattr(entry.action, "value", entry.action)),
                    action_category=str(getattr(entry.action_category, "value", entry.action_category)),
                    action_description=entry.action_description,
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    entity_identifier=entry.entity_identifier,
                    old_values=_dump(entry.old_values),
                    new_values=_dump(entry.new_values),
                    changed_fields=", ".join(entry.changed_fields) if entry.changed_fields else None,
                    ip_address=entry.ip_address,
                    user_agent=(entry.user_agent or "")[:500] or None,
                    request_method=entry.request_method,
                    request_url=(entry.request_url or "")[:500] or None,
                    success=1 if entry.success else 0,
                    error_message=entry.error_message,
                    status_code=entry.status_code,
                    session_id=entry.session_id,
                    additional_data=_dump(entry.additional_data),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_all(
        self,
        user_id: int | None = None,
        action: str | None = None,
        action_category: str | None = None,
        entity_type: str | None = None,
        entity_id: int | None = None,
        success: bool | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> tuple[list[AuditLogEntry], int]:
        """Return (entries newest first, total matching count)."""
        conditions = []
        if user_id is not None:
            conditions.append(_audit_log.c.user_id == user_id)
        if action:
            conditions.append(_audit_log.c.action == action)
        if action_category:
            conditions.append(_audit_log.c.action_category == action_category)
        if entity_type:
            conditions.append(_audit_log.c.entity_type == entity_type)
        if entity_id is not None:
            conditions.append(_audit_log.c.entity_id == entity_id)
        if success is not None:
            conditions.append(_audit_log.c.success == (1 if success else 0))
        if start_date:
            conditions.append(_audit_log.c.timestamp >= start_date)
        if end_date:
            conditions.append(_audit_log.c.timestamp <= end_date)
        where = and_(true(), *conditions)

        query = (
            _audit_log.select()
            .where(where)
            .order_by(_audit_log.c.timestamp.desc(), _audit_log.c.id.desc())
            .limit(_clamp(limit))
            .offset(max(offset, 0))
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            total = conn.execute(select(func.count()).select_from(_audit_log).where(where)).scalar() or 0
        return [_row_to_entry(r) for r in rows], total

    def find_by_id(self, entry_id: int) -> AuditLogEntry | None:
        with self.engine.connect() as conn:
            row = conn.execute(_audit_log.select().where(_audit_log.c.id == entry_id)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def entity_trail(self, entity_type: str, entity_id: int) -> list[AuditLogEntry]:
        """Every entry for one entity, newest first."""
        entries, _total = self.find_all(entity_type=entity_type, entity_id=entity_id, limit=_MAX_LIMIT)
        return entries

    def user_activity(
        self,
        user_id: int,
        start_date: str | None = None,
        end_date: str | None = None,
        limit: int | None = None,
    ) -> list[AuditLogEntry]:
        entries, _total = self.find_all(user_id=user_id, start_date=start_date, end_date=end_date, limit=limit)
        return entries

    def failed_actions(
        self,
        start_date: str | None = None,
        end_date: str | None = None,
        limit: int | None = None,
    ) -> list[AuditLogEntry]:
        entries, _total = self.find_all(success=False, start_date=start_date, end_date=end_date, limit=limit)
        return entries

    def statistics(self, start_date: str | None = None, end_date: str | None = None) -> dict:
        """Aggregate counts: totals, success/failure, distinct users, per category and per action."""
        conditions = []
        if start_date:
            conditions.append(_audit_log.c.timestamp >= start_date)
        if end_date:
            conditions.append(_audit_log.c.timestamp <= end_date)
        where = and_(true(), *conditions)

        totals_query = select(
            func.count().label("total"),
            func.coalesce(func.sum(case((_audit_log.c.success == 1, 1), else_=0)), 0).label("ok"),
            func.coalesce(func.sum(case((_audit_log.c.success == 0, 1), else_=0)), 0).label("failed"),
            func.count(func.distinct(_audit_log.c.user_id)).label("users"),
            func.count(func.distinct(_audit_log.c.entity_type)).label("entity_types"),
        ).select_from(_audit_log).where(where)
        by_category_query = (
            select(_audit_log.c.action_category, func.count()).where(where).group_by(_audit_log.c.action_category)
        )
        by_action_query = select(_audit_log.c.action, func.count()).where(where).group_by(_audit_log.c.action)

        with self.engine.connect() as conn:
            totals = conn.execute(totals_query).one()
            by_category = {name: count for name, count in conn.execute(by_category_query)}
            by_action = {name: count for name, count in conn.execute(by_action_query)}

        return {
            "total_actions": totals.total,
            "successful_actions": int(totals.ok),
            "failed_actions": int(totals.failed),
            "unique_users": totals.users,
            "entity_types": totals.entity_types,
            "by_category": by_category,
            "by_action": by_action,
        }

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        timestamp=row.timestamp,
        user_id=row.user_id,
        user_name=row.user_name,
        user_email=row.user_email,
        action=row.action,
        action_category=row.action_category,
        action_description=row.action_description,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        entity_identifier=row.entity_identifier,
        old_values=_load(row.old_values),
        new_values=_load(row.new_values),
        changed_fields=[f.strip() for f in row.changed_fields.split(",")] if row.changed_fields else None,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        request_method=row.request_method,
        request_url=row.request_url,
        success=bool(row.success),
        error_message=row.error_message,
        status_code=row.status_code,
        session_id=row.session_id,
        additional_data=_load(row.additional_data),
    )
