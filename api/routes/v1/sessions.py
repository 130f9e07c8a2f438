"""
api/routes/v1/sessions.py -- Session listing and remote termination.

Routes:
  GET  /api/v1/admin/sessions                  -- caller's sessions; ?user_id= needs user_management
  POST /api/v1/admin/sessions/{id}/terminate   -- own session, or any with user_management
  POST /api/v1/admin/sessions/terminate-all    -- caller's other sessions; ?user_id= needs user_management

Termination takes effect on the next request: token validation checks the
live session row, so the terminated session's tokens fail immediately.

IDOR guard: a session id the caller may not manage answers 404, exactly as
an unknown id does, so session ids cannot be probed.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from api.models import SessionResponse, TerminatedResponse
from api.pipeline import RequestContext, admin_operation, request_context
from audit.models import AuditAction, ResourceType
from auth.models import Permission
from auth.permissions import has_all
from core.errors import Forbidden, NotFound

router = APIRouter()

_list = admin_operation(action=AuditAction.SESSION_LIST, resource_type=ResourceType.SESSION)
_terminate = admin_operation(action=AuditAction.SESSION_TERMINATE, resource_type=ResourceType.SESSION)
_terminate_all = admin_operation(action=AuditAction.SESSION_TERMINATE_ALL, resource_type=ResourceType.IDENTITY)


def _may_manage(ctx: RequestContext, user_id: int) -> bool:
    identity = ctx.require_identity()
    return user_id == identity.id or has_all(identity, [Permission.USER_MANAGEMENT])


def _require_manage(ctx: RequestContext, user_id: int) -> None:
    if not _may_manage(ctx, user_id):
        raise Forbidden(
            "Managing another identity's sessions requires user_management.",
            detail={"missing": [Permission.USER_MANAGEMENT.value]},
        )


@router.get("/admin/sessions", response_model=list[SessionResponse])
def list_sessions(
    user_id: Optional[int] = None,
    include_inactive: bool = False,
    ctx: RequestContext = Depends(request_context),
) -> list[SessionResponse]:
    """List sessions, newest first. Active sessions only unless include_inactive."""

    def handler(ctx: RequestContext) -> list[SessionResponse]:
        target = ctx.identity.id if user_id is None else user_id
        _require_manage(ctx, target)
        ctx.audit_resource_id = str(target)
        sessions = ctx.services.sessions.list_by_user(target, active_only=not include_inactive)
        now = ctx.services.clock()
        return [SessionResponse.from_session(s, now, ctx.session.session_id) for s in sessions]

    return _list.run(ctx, handler)


@router.post("/admin/sessions/terminate-all", response_model=TerminatedResponse)
def terminate_all_sessions(
    user_id: Optional[int] = None,
    ctx: RequestContext = Depends(request_context),
) -> TerminatedResponse:
    """Terminate every session of the target identity.

    For the caller's own identity the current session is kept, so "sign out
    everywhere else" does not log the caller out.
    """

    def handler(ctx: RequestContext) -> TerminatedResponse:
        target = ctx.identity.id if user_id is None else user_id
        _require_manage(ctx, target)
        if target != ctx.identity.id and ctx.services.identities.get_by_id(target) is None:
            raise NotFound("Identity not found.")
        keep = ctx.session.session_id if target == ctx.identity.id else None
        count = ctx.services.sessions.terminate_all(target, except_session_id=keep, reason="terminated_by_admin")
        ctx.audit_resource_id = str(target)
        ctx.audit_details = {"terminated": count, "kept_current": keep is not None}
        return TerminatedResponse(terminated=count)

    return _terminate_all.run(ctx, handler)


@router.post("/admin/sessions/{session_id}/terminate", response_model=TerminatedResponse)
def terminate_session(session_id: str, ctx: RequestContext = Depends(request_context)) -> TerminatedResponse:
    """Terminate one session. Terminating an already-inactive session reports 0."""

    def handler(ctx: RequestContext) -> TerminatedResponse:
        ctx.audit_resource_id = session_id
        session = ctx.services.sessions.get(session_id)
        if session is None or not _may_manage(ctx, session.user_id):
            raise NotFound("Session not found.")
        terminated = ctx.services.sessions.terminate(session_id, reason="terminated_by_admin")
        ctx.audit_details = {"user_id": session.user_id, "was_active": terminated}
        return TerminatedResponse(terminated=1 if terminated else 0)

    return _terminate.run(ctx, handler)
