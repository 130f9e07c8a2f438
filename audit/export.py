"""
audit/export.py -- Renders audit records to CSV or JSON for bulk export.

The time-span bound lives here too (check_export_range) so the HTTP route and
the operator CLI reject the same requests with the same message.
"""

import csv
import io
import json
from datetime import datetime, timedelta
from enum import Enum

from audit.models import AuditRecord
from core.clock import to_iso
from core.errors import ValidationError


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"


COLUMNS = [
    "id",
    "timestamp",
    "actor_id",
    "actor_email",
    "action",
    "resource_type",
    "resource_id",
    "result",
    "status_code",
    "source_address",
    "session_id",
    "request_id",
    "details",
]

# Characters that make spreadsheet applications treat a cell as a formula (CWE-1236).
_FORMULA_PREFIXES = ("=", "+", "-", "@")


def check_export_range(start: datetime, end: datetime, max_days: int) -> None:
    """Raise ValidationError unless start < end and the span is at most max_days."""
    if end <= start:
        raise ValidationError("Export end must be after start.")
    if end - start > timedelta(days=max_days):
        raise ValidationError(
            f"Export range exceeds the {max_days}-day maximum.",
            detail={"max_days": max_days, "requested_days": (end - start).days},
        )


def _sanitize_csv_cell(value) -> str:
    """Neutralize a cell against formula injection by prefixing a tab."""
    if value is None:
        return ""
    text = str(value)
    if text.startswith(_FORMULA_PREFIXES):
        return "\t" + text
    return text


def _as_dict(record: AuditRecord) -> dict:
    return {
        "id": record.id,
        "timestamp": to_iso(record.timestamp),
        "actor_id": record.actor_id,
        "actor_email": record.actor_email,
        "action": record.action.value,
        "resource_type": record.resource_type.value,
        "resource_id": record.resource_id,
        "result": record.result.value,
        "status_code": record.status_code,
        "source_address": record.source_address,
        "session_id": record.session_id,
        "request_id": record.request_id,
        "details": record.details,
    }


def to_json(records: list[AuditRecord]) -> str:
    return json.dumps([_as_dict(r) for r in records], indent=2, default=str)


def to_csv(records: list[AuditRecord]) -> str:
    """Render records as CSV, one row per record, details as a JSON cell."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(COLUMNS)
    for record in records:
        row = _as_dict(record)
        row["details"] = json.dumps(row["details"], sort_keys=True, default=str)
        writer.writerow([_sanitize_csv_cell(row[col]) for col in COLUMNS])
    return buf.getvalue()


def render(records: list[AuditRecord], fmt: ExportFormat) -> str:
    if ExportFormat(fmt) is ExportFormat.CSV:
        return to_csv(records)
    return to_json(records)
