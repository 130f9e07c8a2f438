"""
core/errors.py -- Error taxonomy shared by every AdminGate layer.

Each exception class pins an HTTP status and a stable machine-readable code.
Services raise these; api/main.py owns the single place where they are
rendered into the {"error": {"code", "message", "requestId"}} envelope.

Propagation rules:
  Unauthenticated, Forbidden, AccountLocked and RateLimited are terminal for a
  request -- the pipeline stage that raises them never calls the next stage.
  Audit write failures never surface as one of these (see audit/recorder.py).
  Store failures on the login path surface as Internal so the login fails
  closed rather than skipping the attempt record.

Layer rule: core/ is the kernel. No imports from api/, auth/, or audit/.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class AdminGateError(Exception):
    """Base class for errors that map to an HTTP response."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class AuthFailure(str, Enum):
    """Why a credential was rejected. Logged, never shown to the client."""

    MISSING = "MISSING"
    EXPIRED = "EXPIRED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    SESSION_REVOKED = "SESSION_REVOKED"
    BAD_CREDENTIALS = "BAD_CREDENTIALS"


class Unauthenticated(AdminGateError):
    """Missing, invalid or expired token, revoked session, or bad credentials (401)."""

    status_code = 401
    code = "unauthenticated"

    def __init__(
        self,
        message: str = "Authentication required.",
        *,
        reason: AuthFailure = AuthFailure.MISSING,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.reason = reason


class Forbidden(AdminGateError):
    """Valid identity, insufficient permission (403)."""

    status_code = 403
    code = "forbidden"


class AccountLocked(AdminGateError):
    """Lockout window active for the target account (423)."""

    status_code = 423
    code = "account_locked"


class RateLimited(AdminGateError):
    """Request budget exhausted for this subject and permission class (429)."""

    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "Too many requests.", *, retry_after: int, detail: Optional[dict] = None):
        super().__init__(message, detail=detail)
        self.retry_after = max(1, int(retry_after))


class ValidationError(AdminGateError):
    """Malformed or out-of-policy input (400)."""

    status_code = 400
    code = "validation_error"


class NotFound(AdminGateError):
    status_code = 404
    code = "not_found"


class Conflict(AdminGateError):
    status_code = 409
    code = "conflict"


class Internal(AdminGateError):
    """Store or unexpected failure (500). The message shown to clients is generic."""

    status_code = 500
    code = "internal_error"
