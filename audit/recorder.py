"""
audit/recorder.py -- The audit write path that never fails the caller.

AuditRecorder.record() is called after a privileged action has already
happened. If the store write fails, the action is not undone and the caller
is not told: the full record goes to the "admingate.audit.fallback" logger
(one JSON object per line, so it can be replayed into the store) and
failure_count is incremented. That counter is the observable signal for
"audit writes are being lost".

Only SQLAlchemyError and serialization errors are absorbed. A programming
error (a bad enum value, say) still raises so tests catch it.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from audit.models import AuditAction, AuditContext, AuditRecord, AuditResult, ResourceType
from audit.store import AuditStore
from core.clock import Clock, to_iso, utcnow

logger = logging.getLogger("admingate.audit")
fallback_logger = logging.getLogger("admingate.audit.fallback")


class AuditRecorder:
    def __init__(self, store: AuditStore, *, clock: Clock = utcnow) -> None:
        self.store = store
        self._clock = clock
        self._lock = threading.Lock()
        self.failure_count = 0

    def record(
        self,
        *,
        actor_id: Optional[int],
        actor_email: str,
        action: AuditAction,
        resource_type: ResourceType,
        context: AuditContext,
        resource_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        result: AuditResult = AuditResult.SUCCESS,
        status_code: Optional[int] = None,
    ) -> Optional[AuditRecord]:
        """Append one record. Returns the stored record, or None if it went to the fallback."""
        record = AuditRecord(
            timestamp=self._clock(),
            actor_id=actor_id,
            actor_email=actor_email,
            action=AuditAction(action),
            resource_type=ResourceType(resource_type),
            resource_id=None if resource_id is None else str(resource_id),
            details=dict(details or {}),
            source_address=context.source_address,
            session_id=context.session_id,
            request_id=context.request_id,
            result=AuditResult(result),
            status_code=status_code,
        )
        try:
            return self.store.append(record)
        except (SQLAlchemyError, TypeError, ValueError):
            with self._lock:
                self.failure_count += 1
                failures = self.failure_count
            logger.error("Audit write failed (%d so far); record sent to fallback channel", failures, exc_info=True)
            fallback_logger.warning(_to_json(record))
            return None


def _to_json(record: AuditRecord) -> str:
    payload = asdict(record)
    payload["timestamp"] = to_iso(record.timestamp)
    return json.dumps(payload, default=str, sort_keys=True)
