"""
auth/models.py -- Domain enums and dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these types only fix the domain shape. Role, Permission and
IdentityStatus are closed enumerations -- call sites never pass free-form
strings, and the stores convert at the SQL boundary.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MODERATOR = "moderator"
    SUPPORT = "support"


class Permission(str, Enum):
    USER_MANAGEMENT = "user_management"
    CONTENT_MODERATION = "content_moderation"
    FINANCIAL_ACCESS = "financial_access"
    SYSTEM_CONFIG = "system_config"
    ANALYTICS_VIEW = "analytics_view"
    AUDIT_LOG_VIEW = "audit_log_view"


class IdentityStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"
    PENDING = "pending"


class SessionState(str, Enum):
    """Session lifecycle: CREATED -> ACTIVE -> (EXPIRED | TERMINATED).

    There is no transition out of EXPIRED or TERMINATED.
    """

    CREATED = "created"
    ACTIVE = "active"
    EXPIRED = "expired"
    TERMINATED = "terminated"


@dataclass
class Identity:
    """An administrative user account.

    permission_overrides are additive grants on top of the role matrix (see
    auth/permissions.py). failed_attempt_count and locked_until are a cache
    for the admin console -- the login-attempt history is authoritative for
    lockout decisions.

    id is None before the record is written to the database.
    """

    email: str
    display_name: str
    role: Role
    status: IdentityStatus = IdentityStatus.ACTIVE
    permission_overrides: frozenset[Permission] = field(default_factory=frozenset)
    mfa_enabled: bool = False
    mfa_secret: str | None = None  # base32 TOTP secret
    failed_attempt_count: int = 0
    locked_until: datetime | None = None
    hashed_password: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class Session:
    """A bounded-lifetime authorization context bound to one device/login.

    expires_at is always later than issued_at. An expired session is never
    valid, whatever is_active says.
    """

    session_id: str
    user_id: int
    device_id: str
    source_address: str
    issued_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    is_active: bool = True
    terminated_at: datetime | None = None
    termination_reason: str | None = None  # "expired" | "session_cap" | "logout" | ...


@dataclass(frozen=True)
class Claims:
    """Verified contents of an access or refresh token."""

    subject: int
    email: str
    role: Role
    permissions: frozenset[Permission]
    device_id: str
    session_id: str
    issued_at: datetime
    expires_at: datetime
    token_type: str  # "access" | "refresh"
    token_id: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int


@dataclass
class LoginAttempt:
    """Append-only record of one authentication attempt.

    Written for every attempt, success or failure. Never updated.
    """

    email: str
    source_address: str
    success: bool
    timestamp: datetime
    failure_reason: str | None = None
    id: int | None = None
