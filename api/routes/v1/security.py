"""
api/routes/v1/security.py -- Detection signals for the security dashboard.

Routes (audit_log_view):
  GET /api/v1/admin/security/suspicious-sources   -- one address, many accounts
  GET /api/v1/admin/security/rate-limit-denials   -- denial tallies per subject

Both are reporting only. Nothing here blocks an address or an identity.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.models import RateLimitDenialResponse, SuspiciousSourceResponse
from api.pipeline import RequestContext, admin_operation, request_context
from audit.models import AuditAction, ResourceType
from auth.models import Permission

router = APIRouter()

_VIEW = [Permission.AUDIT_LOG_VIEW]

_sources = admin_operation(required=_VIEW, action=AuditAction.SECURITY_VIEW, resource_type=ResourceType.SOURCE_ADDRESS)
_denials = admin_operation(required=_VIEW, action=AuditAction.SECURITY_VIEW, resource_type=ResourceType.RATE_LIMIT)


@router.get("/admin/security/suspicious-sources", response_model=list[SuspiciousSourceResponse])
def suspicious_sources(
    window_seconds: Optional[int] = Query(default=None, ge=60, le=7 * 24 * 3600),
    min_accounts: Optional[int] = Query(default=None, ge=2),
    ctx: RequestContext = Depends(request_context),
) -> list[SuspiciousSourceResponse]:
    """Source addresses whose failed logins span at least min_accounts accounts."""

    def handler(ctx: RequestContext) -> list[SuspiciousSourceResponse]:
        settings = ctx.services.settings
        window = timedelta(seconds=window_seconds or settings.suspicious_source_window_seconds)
        threshold = min_accounts or settings.suspicious_source_min_accounts
        found = ctx.services.attempts.suspicious_sources(window, threshold)
        ctx.audit_details = {"window_seconds": int(window.total_seconds()), "min_accounts": threshold, "found": len(found)}
        return [SuspiciousSourceResponse.from_activity(a) for a in found]

    return _sources.run(ctx, handler)


@router.get("/admin/security/rate-limit-denials", response_model=list[RateLimitDenialResponse])
def rate_limit_denials(ctx: RequestContext = Depends(request_context)) -> list[RateLimitDenialResponse]:
    """Rate-limit denials per subject since this process started."""

    def handler(ctx: RequestContext) -> list[RateLimitDenialResponse]:
        counts = ctx.services.rate_limiter.denial_counts()
        return [RateLimitDenialResponse(subject=s, denials=n) for s, n in counts.items()]

    return _denials.run(ctx, handler)
