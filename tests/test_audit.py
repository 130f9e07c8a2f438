"""
tests/test_audit.py -- Unit tests for the audit store, recorder and export.

Covers:
  - AuditRecorder stamps the injected clock and request context
  - A store failure never reaches the caller: fallback log line + failure_count
  - query(): newest first, filters, keyset cursor pagination, bad cursors
  - export_range(): half-open [start, end), newest first
  - check_export_range(): 30 days accepted, 120 days rejected
  - CSV export neutralizes spreadsheet formula prefixes (CWE-1236)
"""

from __future__ import annotations

import csv
import io
import json
import logging
import string
from base64 import urlsafe_b64encode
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from conftest import memory_url
from sqlalchemy.exc import OperationalError

from audit.export import COLUMNS, ExportFormat, _sanitize_csv_cell, check_export_range, render
from audit.models import AuditAction, AuditContext, AuditResult, ResourceType
from audit.recorder import AuditRecorder
from audit.store import AuditStore
from core.errors import ValidationError

CONTEXT = AuditContext(source_address="10.0.0.1", session_id="sess-1", request_id="req-12345678")


@pytest.fixture
def store():
    s = AuditStore(memory_url("audit"))
    yield s
    s.close()


@pytest.fixture
def recorder(store, clock):
    return AuditRecorder(store, clock=clock)


def _record(recorder, action=AuditAction.USER_LIST, actor_id=1, **kwargs):
    return recorder.record(
        actor_id=actor_id,
        actor_email=f"actor{actor_id}@example.com",
        action=action,
        resource_type=kwargs.pop("resource_type", ResourceType.IDENTITY),
        context=CONTEXT,
        **kwargs,
    )


def _seed(recorder, clock, count, **kwargs):
    """count records one minute apart; returns them oldest first."""
    records = []
    for _ in range(count):
        records.append(_record(recorder, **kwargs))
        clock.advance(minutes=1)
    return records


def _opaque(payload: str) -> str:
    return urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


class TestRecorder:
    def test_record_is_stamped_and_stored(self, recorder, store, clock):
        stored = _record(recorder, resource_id=42, details={"before": "active", "after": "suspended"}, status_code=200)
        assert stored.id is not None
        assert stored.timestamp == clock.now
        assert stored.resource_id == "42"
        assert stored.source_address == "10.0.0.1"
        assert stored.session_id == "sess-1"
        assert stored.request_id == "req-12345678"
        records, _ = store.query()
        assert records[0] == stored

    def test_store_failure_goes_to_fallback(self, recorder, store, caplog):
        error = OperationalError("INSERT", {}, Exception("disk full"))
        with patch.object(store, "append", side_effect=error):
            with caplog.at_level(logging.WARNING, logger="admingate.audit"):
                result = _record(recorder, action=AuditAction.USER_STATUS_CHANGE, resource_id=9)
        assert result is None
        assert recorder.failure_count == 1
        fallback = [r for r in caplog.records if r.name == "admingate.audit.fallback"]
        assert len(fallback) == 1
        payload = json.loads(fallback[0].getMessage())
        assert payload["action"] == "user.status_change"
        assert payload["resource_id"] == "9"
        assert store.count() == 0

    def test_failure_count_accumulates(self, recorder, store):
        with patch.object(store, "append", side_effect=OperationalError("INSERT", {}, Exception("x"))):
            _record(recorder)
            _record(recorder)
        assert recorder.failure_count == 2
        assert _record(recorder) is not None
        assert recorder.failure_count == 2


class TestQuery:
    def test_newest_first(self, recorder, store, clock):
        seeded = _seed(recorder, clock, 3)
        records, cursor = store.query()
        assert [r.id for r in records] == [r.id for r in reversed(seeded)]
        assert cursor is None

    def test_filters(self, recorder, store, clock):
        _seed(recorder, clock, 2, actor_id=1)
        _seed(recorder, clock, 3, actor_id=2, action=AuditAction.SESSION_TERMINATE, resource_type=ResourceType.SESSION)
        assert len(store.query(actor_id=2)[0]) == 3
        assert len(store.query(action=AuditAction.USER_LIST)[0]) == 2
        assert len(store.query(resource_type=ResourceType.SESSION, actor_id=1)[0]) == 0

    def test_time_range_is_half_open(self, recorder, store, clock):
        start = clock.now
        seeded = _seed(recorder, clock, 4)
        records, _ = store.query(start=start + timedelta(minutes=1), end=start + timedelta(minutes=3))
        assert [r.id for r in records] == [seeded[2].id, seeded[1].id]

    def test_cursor_walks_every_record_once(self, recorder, store, clock):
        seeded = _seed(recorder, clock, 7)
        # Two records sharing a timestamp must still page deterministically.
        seeded.append(_record(recorder))
        seeded.append(_record(recorder))
        seen, cursor, pages = [], None, 0
        while True:
            records, cursor = store.query(limit=3, cursor=cursor)
            seen.extend(r.id for r in records)
            pages += 1
            if cursor is None:
                break
        assert pages == 3
        assert sorted(seen) == sorted(r.id for r in seeded)
        assert len(seen) == len(set(seen))

    def test_new_records_do_not_shift_a_cursor(self, recorder, store, clock):
        _seed(recorder, clock, 4)
        first, cursor = store.query(limit=2)
        _seed(recorder, clock, 2)
        second, _ = store.query(limit=2, cursor=cursor)
        assert all(r.timestamp < first[-1].timestamp for r in second)

    def test_cursor_is_url_safe(self, recorder, store, clock):
        _seed(recorder, clock, 3)
        _, cursor = store.query(limit=1)
        assert set(cursor) <= set(string.ascii_letters + string.digits + "-_")

    @pytest.mark.parametrize(
        "cursor",
        [
            "garbage",
            "2024-06-01T12:00:00.000000+00:00|3",
            _opaque("2024-06-01T12:00:00|x"),
            _opaque("not-a-date|5"),
            _opaque("no separator"),
        ],
    )
    def test_malformed_cursor_is_rejected(self, store, cursor):
        with pytest.raises(ValidationError):
            store.query(cursor=cursor)


class TestExport:
    def test_export_range_is_newest_first(self, recorder, store, clock):
        start = clock.now
        seeded = _seed(recorder, clock, 5)
        records = store.export_range(start, start + timedelta(days=30))
        assert [r.id for r in records] == [r.id for r in reversed(seeded)]

    def test_thirty_days_is_accepted(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        check_export_range(start, start + timedelta(days=30), max_days=90)

    def test_one_hundred_twenty_days_is_rejected(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        with pytest.raises(ValidationError) as exc_info:
            check_export_range(start, start + timedelta(days=120), max_days=90)
        assert exc_info.value.detail["max_days"] == 90

    def test_reversed_range_is_rejected(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        with pytest.raises(ValidationError):
            check_export_range(start, start, max_days=90)

    def test_csv_has_one_row_per_record(self, recorder, clock):
        records = _seed(recorder, clock, 2)
        rows = list(csv.reader(io.StringIO(render(records, ExportFormat.CSV))))
        assert rows[0] == COLUMNS
        assert len(rows) == 3

    def test_json_export(self, recorder, clock):
        records = _seed(recorder, clock, 2, details={"count": 3})
        payload = json.loads(render(records, ExportFormat.JSON))
        assert [p["id"] for p in payload] == [r.id for r in records]
        assert payload[0]["details"] == {"count": 3}
        assert payload[0]["result"] == AuditResult.SUCCESS.value


class TestCsvFormulaInjection:
    @pytest.mark.parametrize("value", ["=HYPERLINK(\"http://evil\")", "+1+1", "-2+3", "@SUM(A1)"])
    def test_formula_prefixes_are_neutralized(self, value):
        assert _sanitize_csv_cell(value) == "\t" + value

    @pytest.mark.parametrize("value", ["admin@example.com", "user.list", "42", ""])
    def test_plain_values_pass_through(self, value):
        assert _sanitize_csv_cell(value) == value

    def test_none_is_empty(self):
        assert _sanitize_csv_cell(None) == ""

    def test_actor_email_is_sanitized_in_the_export(self, store, clock):
        recorder = AuditRecorder(store, clock=clock)
        record = recorder.record(
            actor_id=3,
            actor_email="=cmd|' /C calc'!A0",
            action=AuditAction.AUTH_LOGOUT,
            resource_type=ResourceType.SESSION,
            context=CONTEXT,
        )
        rows = list(csv.reader(io.StringIO(render([record], ExportFormat.CSV))))
        assert rows[1][COLUMNS.index("actor_email")].startswith("\t=")
