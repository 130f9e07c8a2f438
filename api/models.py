"""
API request and response models for AdminGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route
handlers map between the two through the from_* factory methods here.

Separation of concerns: auth/ and audit/ models = domain truth; api/ models =
API contract.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from audit.export import ExportFormat
from audit.models import AuditAction, AuditRecord
from auth.attempts import SourceActivity
from auth.models import Identity, IdentityStatus, Permission, Role, Session
from auth.permissions import effective_permissions
from auth.sessions import state_of
from core.clock import as_utc, to_iso

# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    code: str
    message: str
    request_id: Optional[str] = Field(default=None, serialization_alias="requestId")
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /auth/login and POST /auth/admin/login.

    password is capped at 128 characters: bcrypt ignores bytes past 72, and
    an unbounded field is a cheap CPU exhaustion vector.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    device_id: str = Field(default="unknown", min_length=1, max_length=255)
    mfa_code: Optional[str] = Field(default=None, pattern=r"^\d{6}$")

    @field_validator("email")
    @classmethod
    def email_has_at(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value.lower()


class RefreshRequest(BaseModel):
    """Body for POST /auth/refresh. The refresh cookie is used when omitted."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class StatusPatch(BaseModel):
    status: Literal["active", "suspended", "banned"]
    reason: Optional[str] = Field(default=None, max_length=500)


class PermissionsUpdate(BaseModel):
    overrides: list[Permission] = Field(default_factory=list, max_length=len(Permission))


class AuditExportRequest(BaseModel):
    """Body for POST /admin/audit-logs/export. The span bound is checked by the route."""

    start: datetime
    end: datetime
    format: ExportFormat = ExportFormat.CSV
    actor_id: Optional[int] = None
    action: Optional[AuditAction] = None

    @field_validator("start", "end")
    @classmethod
    def normalize_tz(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def end_after_start(self) -> "AuditExportRequest":
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class IdentityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    display_name: str
    role: Role
    status: IdentityStatus
    permissions: list[Permission]
    permission_overrides: list[Permission]
    mfa_enabled: bool
    failed_attempt_count: int
    locked_until: Optional[str] = None
    created_at: str = ""

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        """Factory Method -- the mapping lives next to the output model."""
        return cls(
            id=identity.id,
            email=identity.email,
            display_name=identity.display_name,
            role=identity.role,
            status=identity.status,
            permissions=sorted(effective_permissions(identity), key=lambda p: p.value),
            permission_overrides=sorted(identity.permission_overrides, key=lambda p: p.value),
            mfa_enabled=identity.mfa_enabled,
            failed_attempt_count=identity.failed_attempt_count,
            locked_until=to_iso(identity.locked_until) if identity.locked_until else None,
            created_at=identity.created_at or "",
        )


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    user_id: int
    device_id: str
    source_address: str
    issued_at: str
    expires_at: str
    last_activity_at: str
    state: str
    is_current: bool = False

    @classmethod
    def from_session(cls, session: Session, now: datetime, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            session_id=session.session_id,
            user_id=session.user_id,
            device_id=session.device_id,
            source_address=session.source_address,
            issued_at=to_iso(session.issued_at),
            expires_at=to_iso(session.expires_at),
            last_activity_at=to_iso(session.last_activity_at),
            state=state_of(session, now).value,
            is_current=session.session_id == current_id,
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int
    session_id: str
    identity: IdentityResponse


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity: IdentityResponse
    session: SessionResponse


class TerminatedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    terminated: int


# ---------------------------------------------------------------------------
# Audit and security reporting
# ---------------------------------------------------------------------------


class AuditRecordResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    timestamp: str
    actor_id: Optional[int]
    actor_email: str
    action: str
    resource_type: str
    resource_id: Optional[str]
    result: str
    status_code: Optional[int]
    source_address: str
    session_id: Optional[str]
    request_id: Optional[str]
    details: dict[str, Any]

    @classmethod
    def from_record(cls, record: AuditRecord) -> "AuditRecordResponse":
        return cls(
            id=record.id,
            timestamp=to_iso(record.timestamp),
            actor_id=record.actor_id,
            actor_email=record.actor_email,
            action=record.action.value,
            resource_type=record.resource_type.value,
            resource_id=record.resource_id,
            result=record.result.value,
            status_code=record.status_code,
            source_address=record.source_address,
            session_id=record.session_id,
            request_id=record.request_id,
            details=record.details,
        )


class AuditPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[AuditRecordResponse]
    next_cursor: Optional[str] = None


class SuspiciousSourceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_address: str
    distinct_accounts: int
    failures: int

    @classmethod
    def from_activity(cls, activity: SourceActivity) -> "SuspiciousSourceResponse":
        return cls(
            source_address=activity.source_address,
            distinct_accounts=activity.distinct_accounts,
            failures=activity.failures,
        )


class RateLimitDenialResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject: str
    denials: int
