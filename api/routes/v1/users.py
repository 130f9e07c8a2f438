"""
api/routes/v1/users.py -- Account administration for administrative identities.

Routes (all require user_management):
  GET   /api/v1/admin/users                    -- list identities (?status=)
  PATCH /api/v1/admin/users/{id}/status        -- activate / suspend / ban
  PUT   /api/v1/admin/users/{id}/permissions   -- replace permission overrides
  POST  /api/v1/admin/users/{id}/unlock        -- clear an active login lockout

Guards:
  An actor cannot change their own status (no self-lockout).
  The last active super_admin cannot be deactivated.
  Nobody may change an identity whose role outranks their own
  (super_admin > admin > moderator > support).
  Suspending or banning terminates every session of the target at once.
  Overrides may only name permissions the target role can hold (never a
  DENIED matrix cell) and only permissions the actor holds themselves.

Identity creation and deletion are out of scope here: the operator CLI
bootstraps identities, and deletion belongs to the external user CRUD.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from api.models import IdentityResponse, PermissionsUpdate, StatusPatch
from api.pipeline import RequestContext, admin_operation, request_context
from audit.models import AuditAction, ResourceType
from auth.models import Identity, IdentityStatus, Permission, Role
from auth.permissions import effective_permissions, outranks, validate_overrides
from core.errors import Conflict, Forbidden, Internal, NotFound, ValidationError

logger = logging.getLogger("admingate.api")

router = APIRouter()

_MANAGE = [Permission.USER_MANAGEMENT]

_list = admin_operation(required=_MANAGE, action=AuditAction.USER_LIST, resource_type=ResourceType.IDENTITY)
_status = admin_operation(required=_MANAGE, action=AuditAction.USER_STATUS_CHANGE, resource_type=ResourceType.IDENTITY)
_permissions = admin_operation(
    required=_MANAGE, action=AuditAction.USER_PERMISSIONS_UPDATE, resource_type=ResourceType.IDENTITY
)
_unlock = admin_operation(required=_MANAGE, action=AuditAction.USER_UNLOCK, resource_type=ResourceType.IDENTITY)


@router.get("/admin/users", response_model=list[IdentityResponse])
def list_users(status: Optional[IdentityStatus] = None, ctx: RequestContext = Depends(request_context)) -> list[IdentityResponse]:
    def handler(ctx: RequestContext) -> list[IdentityResponse]:
        identities = ctx.services.identities.list_identities(status)
        ctx.audit_details = {"status": status.value if status else None, "count": len(identities)}
        return [IdentityResponse.from_identity(i) for i in identities]

    return _list.run(ctx, handler)


@router.patch("/admin/users/{user_id}/status", response_model=IdentityResponse)
def update_status(user_id: int, body: StatusPatch, ctx: RequestContext = Depends(request_context)) -> IdentityResponse:
    """Change an identity's status. Leaving ACTIVE revokes all of its sessions."""

    def handler(ctx: RequestContext) -> IdentityResponse:
        services = ctx.services
        actor = ctx.identity
        ctx.audit_resource_id = str(user_id)
        target = _load_target(ctx, user_id)
        new_status = IdentityStatus(body.status)

        if target.id == actor.id:
            raise ValidationError("You cannot change the status of your own account.")
        if (
            target.role is Role.SUPER_ADMIN
            and target.status is IdentityStatus.ACTIVE
            and new_status is not IdentityStatus.ACTIVE
            and services.identities.count_active(Role.SUPER_ADMIN) <= 1
        ):
            raise Conflict("Cannot deactivate the last active super_admin.")

        services.identities.update_identity(user_id, status=new_status)
        revoked = 0
        if new_status is not IdentityStatus.ACTIVE:
            revoked = services.sessions.terminate_all(user_id, reason=f"status_{new_status.value}")
            logger.warning("Identity %s set to %s by %s; %d session(s) revoked", user_id, new_status.value, actor.id, revoked)
        ctx.audit_details = {
            "before": target.status.value,
            "after": new_status.value,
            "reason": body.reason,
            "sessions_revoked": revoked,
        }
        return IdentityResponse.from_identity(_reload(ctx, user_id))

    return _status.run(ctx, handler)


@router.put("/admin/users/{user_id}/permissions", response_model=IdentityResponse)
def update_permissions(
    user_id: int,
    body: PermissionsUpdate,
    ctx: RequestContext = Depends(request_context),
) -> IdentityResponse:
    """Replace the identity's additive permission overrides."""

    def handler(ctx: RequestContext) -> IdentityResponse:
        ctx.audit_resource_id = str(user_id)
        target = _load_target(ctx, user_id)
        overrides = validate_overrides(target.role, body.overrides)
        not_held = sorted(p.value for p in overrides - effective_permissions(ctx.identity))
        if not_held:
            raise Forbidden("You cannot grant permissions you do not hold.", detail={"missing": not_held})
        ctx.services.identities.set_permission_overrides(user_id, overrides)
        ctx.audit_details = {
            "before": sorted(p.value for p in target.permission_overrides),
            "after": sorted(p.value for p in overrides),
        }
        return IdentityResponse.from_identity(_reload(ctx, user_id))

    return _permissions.run(ctx, handler)


@router.post("/admin/users/{user_id}/unlock", response_model=IdentityResponse)
def unlock_user(user_id: int, ctx: RequestContext = Depends(request_context)) -> IdentityResponse:
    """Clear a login lockout. The reset is itself a row in the attempt history."""

    def handler(ctx: RequestContext) -> IdentityResponse:
        services = ctx.services
        ctx.audit_resource_id = str(user_id)
        target = _load_target(ctx, user_id)
        was_locked = services.attempts.is_locked(target.email)
        services.attempts.reset(target.email, ctx.source_address)
        services.identities.reset_failed_attempts(user_id)
        ctx.audit_details = {"was_locked": was_locked}
        return IdentityResponse.from_identity(_reload(ctx, user_id))

    return _unlock.run(ctx, handler)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_target(ctx: RequestContext, user_id: int) -> Identity:
    """Fetch the target identity and apply the rank guard.

    A user_management override lets a moderator or support identity manage
    peers and juniors, never someone above them.
    """
    target = ctx.services.identities.get_by_id(user_id)
    if target is None:
        raise NotFound("Identity not found.")
    if outranks(target.role, ctx.identity.role):
        raise Forbidden(
            f"A {ctx.identity.role.value} may not modify a {target.role.value}.",
            detail={"actor_role": ctx.identity.role.value, "target_role": target.role.value},
        )
    return target


def _reload(ctx: RequestContext, user_id: int) -> Identity:
    identity = ctx.services.identities.get_by_id(user_id)
    if identity is None:
        raise Internal("Identity not found after write.")
    return identity
