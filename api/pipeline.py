"""
api/pipeline.py -- Ordered stage chain wrapped around every administrative handler.

Pattern: Chain of Responsibility, composed by folding an explicit list of
Stage objects (not nested decorators), so ordering is visible at the call
site and each stage can be tested on its own.

Canonical order for a privileged endpoint:

    RateLimitStage -> AuthenticateStage -> AuthorizeStage(required)
                   -> AuditStage(action, resource_type) -> handler

Each stage either calls next(ctx) or raises a typed AdminGateError, which
ends the request: no later stage and no handler code runs. Any subset in
this order is a valid pipeline (a read-only endpoint may skip authorize and
audit), which admin_operation() builds from keyword arguments.

RateLimitStage runs before authentication so a flood of requests is shed
without a session lookup per request. It keys on the token's signed claims
(peek: signature and expiry only) when a token is present and falls back to
the source address, at the lowest role tier, when it is not.

AuditStage wraps the handler in try/finally: exactly one record is written
after the handler returns or raises, carrying the outcome and HTTP status.
The write itself never raises on a store failure (audit/recorder.py).

Routes are plain `def` functions, so FastAPI runs each pipeline in its
threadpool and the synchronous SQLAlchemy stores never block the event loop.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from fastapi import Request

from api.services import Services
from audit.models import AuditAction, AuditContext, AuditResult, ResourceType
from auth.dependencies import bearer_token, client_address
from auth.models import Claims, Identity, IdentityStatus, Permission, Role, Session
from auth.permissions import PermissionClass, has_all, missing_permissions, permission_class_for
from auth.ratelimit import RateLimitDecision
from core.errors import AdminGateError, AuthFailure, Forbidden, RateLimited, Unauthenticated

logger = logging.getLogger("admingate.api")

Handler = Callable[["RequestContext"], Any]

# Requests without a usable token are throttled at the lowest tier.
_ANONYMOUS_ROLE = Role.SUPPORT


@dataclass
class RequestContext:
    """Per-request state threaded through the stages.

    Stages fill in claims/identity/session; handlers may set status_code and
    the audit_* fields to shape the audit record.
    """

    request_id: str
    source_address: str
    token: Optional[str]
    services: Services
    claims: Optional[Claims] = None
    identity: Optional[Identity] = None
    session: Optional[Session] = None
    rate_limit: Optional[RateLimitDecision] = None
    status_code: int = 200
    audit_resource_id: Optional[str] = None
    audit_details: dict[str, Any] = field(default_factory=dict)

    def require_identity(self) -> Identity:
        if self.identity is None:
            raise Unauthenticated(reason=AuthFailure.MISSING)
        return self.identity

    def audit_context(self) -> AuditContext:
        return AuditContext(
            source_address=self.source_address,
            session_id=self.session.session_id if self.session else None,
            request_id=self.request_id,
        )


class Stage(Protocol):
    def process(self, ctx: RequestContext, next: Handler) -> Any: ...


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


class RateLimitStage:
    def __init__(self, permission_class: PermissionClass = PermissionClass.GENERAL) -> None:
        self.permission_class = permission_class

    def process(self, ctx: RequestContext, next: Handler) -> Any:
        subject, role = f"addr:{ctx.source_address}", _ANONYMOUS_ROLE
        if ctx.token:
            try:
                claims = ctx.services.tokens.peek(ctx.token)
                subject, role = f"user:{claims.subject}", claims.role
            except Unauthenticated:
                # Authentication rejects the token next; throttle it as anonymous.
                pass
        decision = ctx.services.rate_limiter.check(subject, self.permission_class, role)
        ctx.rate_limit = decision
        if not decision.allowed:
            raise RateLimited(
                f"Rate limit of {decision.limit} requests per minute exceeded.",
                retry_after=decision.retry_after,
            )
        return next(ctx)


class AuthenticateStage:
    """Validate the access token against the live session and load the identity."""

    def process(self, ctx: RequestContext, next: Handler) -> Any:
        if not ctx.token:
            raise Unauthenticated(reason=AuthFailure.MISSING)
        services = ctx.services
        try:
            claims, session = services.tokens.validate_with_session(ctx.token)
        except Unauthenticated as exc:
            logger.info("Authentication failed (%s) from %s", exc.reason.value, ctx.source_address)
            raise
        identity = services.identities.get_by_id(claims.subject)
        if identity is None or identity.status is not IdentityStatus.ACTIVE:
            logger.warning("Token for inactive identity %s rejected", claims.subject)
            raise Unauthenticated(reason=AuthFailure.SESSION_REVOKED)
        touched = services.sessions.touch(session.session_id)
        if touched is not None:
            session.last_activity_at = touched
        ctx.claims, ctx.identity, ctx.session = claims, identity, session
        return next(ctx)


class AuthorizeStage:
    """Fail closed unless the identity holds every required permission."""

    def __init__(self, required: Iterable[Permission]) -> None:
        self.required = frozenset(required)

    def process(self, ctx: RequestContext, next: Handler) -> Any:
        identity = ctx.require_identity()
        if not has_all(identity, self.required):
            missing = [p.value for p in missing_permissions(identity, self.required)]
            logger.warning("Forbidden: identity %s lacks %s", identity.id, ",".join(missing))
            raise Forbidden("Insufficient permissions for this operation.", detail={"missing": missing})
        return next(ctx)


class AuditStage:
    """Write one audit record after the handler, whatever its outcome."""

    def __init__(self, action: AuditAction, resource_type: ResourceType) -> None:
        self.action = action
        self.resource_type = resource_type

    def process(self, ctx: RequestContext, next: Handler) -> Any:
        result, status_code, error_code = AuditResult.FAILURE, 500, "internal_error"
        try:
            response = next(ctx)
            result, status_code, error_code = AuditResult.SUCCESS, ctx.status_code, None
            return response
        except AdminGateError as exc:
            status_code, error_code = exc.status_code, exc.code
            raise
        finally:
            self._write(ctx, result, status_code, error_code)

    def _write(self, ctx: RequestContext, result: AuditResult, status_code: int, error_code: Optional[str]) -> None:
        details = dict(ctx.audit_details)
        if error_code is not None:
            details["error"] = error_code
        identity = ctx.identity
        ctx.services.audit.record(
            actor_id=identity.id if identity else None,
            actor_email=identity.email if identity else "anonymous",
            action=self.action,
            resource_type=self.resource_type,
            resource_id=ctx.audit_resource_id,
            details=details,
            context=ctx.audit_context(),
            result=result,
            status_code=status_code,
        )


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


class _Link:
    """One bound step of a composed pipeline: stage plus whatever follows it."""

    def __init__(self, stage: Stage, next: Handler) -> None:
        self.stage = stage
        self.next = next

    def __call__(self, ctx: RequestContext) -> Any:
        return self.stage.process(ctx, self.next)


class Pipeline:
    def __init__(self, stages: Sequence[Stage]) -> None:
        self.stages = list(stages)

    def run(self, ctx: RequestContext, handler: Handler) -> Any:
        call: Handler = handler
        for stage in reversed(self.stages):
            call = _Link(stage, call)
        return call(ctx)


def admin_operation(
    *,
    required: Iterable[Permission] = (),
    action: Optional[AuditAction] = None,
    resource_type: Optional[ResourceType] = None,
    permission_class: Optional[PermissionClass] = None,
    rate_limit: bool = True,
) -> Pipeline:
    """Build the canonical pipeline for an endpoint.

    permission_class defaults to the bucket of the required permissions
    (GENERAL when there are none). Passing action adds the audit stage.
    """
    required = frozenset(required)
    stages: list[Stage] = []
    if rate_limit:
        stages.append(RateLimitStage(permission_class or permission_class_for(required)))
    stages.append(AuthenticateStage())
    if required:
        stages.append(AuthorizeStage(required))
    if action is not None:
        stages.append(AuditStage(action, resource_type or ResourceType.IDENTITY))
    return Pipeline(stages)


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------


def request_context(request: Request) -> RequestContext:
    """Depends() helper: build the RequestContext for an incoming request."""
    return RequestContext(
        request_id=getattr(request.state, "request_id", None) or uuid.uuid4().hex,
        source_address=client_address(request),
        token=bearer_token(request),
        services=request.app.state.services,
    )
