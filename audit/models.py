"""
audit/models.py -- Audit record and the closed set of audited actions.

An AuditRecord is immutable once written. Nothing in the runtime updates or
deletes one; AuditStore exposes append and read operations only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class AuditAction(str, Enum):
    AUTH_LOGIN = "auth.login"
    AUTH_ADMIN_LOGIN = "auth.admin_login"
    AUTH_LOGOUT = "auth.logout"
    SESSION_LIST = "session.list"
    SESSION_TERMINATE = "session.terminate"
    SESSION_TERMINATE_ALL = "session.terminate_all"
    USER_LIST = "user.list"
    USER_STATUS_CHANGE = "user.status_change"
    USER_PERMISSIONS_UPDATE = "user.permissions_update"
    USER_UNLOCK = "user.unlock"
    AUDIT_VIEW = "audit.view"
    AUDIT_EXPORT = "audit.export"
    SECURITY_VIEW = "security.view"
    SECURITY_SUSPICIOUS_SOURCE = "security.suspicious_source"


class ResourceType(str, Enum):
    IDENTITY = "identity"
    SESSION = "session"
    AUDIT_LOG = "audit_log"
    SOURCE_ADDRESS = "source_address"
    RATE_LIMIT = "rate_limit"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class AuditContext:
    """Request context an audit record is stamped with."""

    source_address: str
    session_id: Optional[str] = None
    request_id: Optional[str] = None


@dataclass(frozen=True)
class AuditRecord:
    """One privileged action, as it was recorded.

    actor_id is None for actions with no authenticated actor (a detection
    signal raised during login, for instance). status_code is the HTTP status
    the triggering request finished with, when there was one.
    """

    timestamp: datetime
    actor_id: Optional[int]
    actor_email: str
    action: AuditAction
    resource_type: ResourceType
    source_address: str
    result: AuditResult = AuditResult.SUCCESS
    resource_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    status_code: Optional[int] = None
    id: Optional[int] = None
