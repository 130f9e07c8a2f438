"""
audit/store.py -- Append-only SQLAlchemy Core store for audit records.

Pattern: Repository + Data Mapper (same as auth/store.py), with one twist:
the repository has no update or delete method. Immutability is a property
of the interface -- there is simply no code path that rewrites a row.

Queries:
  query()        paginated, newest first, filterable by actor, action,
                 resource and time range. Pagination is a keyset cursor
                 on (timestamp, id), base64url-wrapped so it survives a
                 query string. Pages stay stable while new records are
                 appended at the head.
  export_range() every record in [start, end), newest first, for bulk export.
                 The caller bounds the span; this method trusts it.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, and_, or_, select, func
from sqlalchemy.engine import Engine

from audit.models import AuditAction, AuditRecord, AuditResult, ResourceType
from core.clock import from_iso, to_iso
from core.db import create_store_engine
from core.errors import ValidationError

logger = logging.getLogger("admingate.audit")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'admingate.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_records = Table(
    "audit_records",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", String(32), nullable=False),
    Column("actor_id", Integer),
    Column("actor_email", String(255), nullable=False),
    Column("action", String(50), nullable=False),
    Column("resource_type", String(30), nullable=False),
    Column("resource_id", String(255)),
    Column("details", Text, nullable=False, server_default="{}"),  # JSON object
    Column("source_address", String(45), nullable=False),
    Column("session_id", String(64)),
    Column("request_id", String(64)),
    Column("result", String(10), nullable=False),
    Column("status_code", Integer),
    Index("ix_audit_ts", "timestamp"),
    Index("ix_audit_actor_ts", "actor_id", "timestamp"),
    Index("ix_audit_action_ts", "action", "timestamp"),
    Index("ix_audit_resource", "resource_type", "resource_id"),
)


# ---------------------------------------------------------------------------
# Cursor helpers
# ---------------------------------------------------------------------------


def encode_cursor(record: AuditRecord) -> str:
    """Opaque, URL-safe cursor for the page after record."""
    raw = f"{to_iso(record.timestamp)}|{record.id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> tuple[str, int]:
    """Unwrap a cursor into (iso timestamp, id). Raises ValidationError if malformed."""
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.b64decode(padded, altchars=b"-_", validate=True).decode("utf-8")
        parts = raw.split("|", 1)
        if len(parts) != 2:
            raise ValueError(cursor)
        return to_iso(from_iso(parts[0])), int(parts[1])
    except ValueError as exc:
        raise ValidationError("Invalid pagination cursor.") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditStore:
    """Repository for AuditRecord entities. Append and read only."""

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)

    def append(self, record: AuditRecord) -> AuditRecord:
        """Persist record and return it with its assigned id."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _records.insert().values(
                    timestamp=to_iso(record.timestamp),
                    actor_id=record.actor_id,
                    actor_email=record.actor_email,
                    action=record.action.value,
                    resource_type=record.resource_type.value,
                    resource_id=record.resource_id,
                    details=json.dumps(record.details, default=str, sort_keys=True),
                    source_address=record.source_address,
                    session_id=record.session_id,
                    request_id=record.request_id,
                    result=record.result.value,
                    status_code=record.status_code,
                )
            )
        return replace(record, id=result.inserted_primary_key[0])

    def query(
        self,
        *,
        actor_id: Optional[int] = None,
        action: Optional[AuditAction] = None,
        resource_type: Optional[ResourceType] = None,
        resource_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> tuple[list[AuditRecord], Optional[str]]:
        """Return one page of records (newest first) and the cursor for the next page.

        The next cursor is None when this page is the last one.
        """
        conditions = self._filters(actor_id, action, resource_type, resource_id, start, end)
        if cursor:
            ts, rid = decode_cursor(cursor)
            conditions.append(or_(_records.c.timestamp < ts, and_(_records.c.timestamp == ts, _records.c.id < rid)))
        query = (
            _records.select()
            .where(*conditions)
            .order_by(_records.c.timestamp.desc(), _records.c.id.desc())
            .limit(limit + 1)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        records = [_row_to_record(r) for r in rows[:limit]]
        next_cursor = encode_cursor(records[-1]) if len(rows) > limit and records else None
        return records, next_cursor

    def export_range(
        self,
        start: datetime,
        end: datetime,
        *,
        actor_id: Optional[int] = None,
        action: Optional[AuditAction] = None,
    ) -> list[AuditRecord]:
        """Every record with start <= timestamp < end, newest first."""
        conditions = self._filters(actor_id, action, None, None, start, end)
        query = _records.select().where(*conditions).order_by(_records.c.timestamp.desc(), _records.c.id.desc())
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_record(r) for r in rows]

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_records)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _filters(actor_id, action, resource_type, resource_id, start, end) -> list:
        conditions = []
        if actor_id is not None:
            conditions.append(_records.c.actor_id == actor_id)
        if action is not None:
            conditions.append(_records.c.action == AuditAction(action).value)
        if resource_type is not None:
            conditions.append(_records.c.resource_type == ResourceType(resource_type).value)
        if resource_id is not None:
            conditions.append(_records.c.resource_id == resource_id)
        if start is not None:
            conditions.append(_records.c.timestamp >= to_iso(start))
        if end is not None:
            conditions.append(_records.c.timestamp < to_iso(end))
        return conditions


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_record(row) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        timestamp=from_iso(row.timestamp),
        actor_id=row.actor_id,
        actor_email=row.actor_email,
        action=AuditAction(row.action),
        resource_type=ResourceType(row.resource_type),
        resource_id=row.resource_id,
        details=json.loads(row.details or "{}"),
        source_address=row.source_address,
        session_id=row.session_id,
        request_id=row.request_id,
        result=AuditResult(row.result),
        status_code=row.status_code,
    )
