"""
api/routes/v1/audit.py -- Audit log query and bulk export.

Routes (both require audit_log_view):
  GET  /api/v1/admin/audit-logs          -- paginated, newest first, filterable
  POST /api/v1/admin/audit-logs/export   -- bounded date range, csv|json

Export is throttled in the bulk_export permission class (a low, role-
independent ceiling) and bounded to AUDIT_EXPORT_MAX_DAYS per request.
Both operations are themselves audited: reading the audit trail is a
privileged action too.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from api.models import AuditExportRequest, AuditPage, AuditRecordResponse
from api.pipeline import RequestContext, admin_operation, request_context
from audit.export import ExportFormat, check_export_range, render
from audit.models import AuditAction, ResourceType
from auth.models import Permission
from auth.permissions import PermissionClass
from core.clock import as_utc, to_iso
from core.errors import ValidationError

router = APIRouter()

_VIEW = [Permission.AUDIT_LOG_VIEW]

_query = admin_operation(required=_VIEW, action=AuditAction.AUDIT_VIEW, resource_type=ResourceType.AUDIT_LOG)
_export = admin_operation(
    required=_VIEW,
    action=AuditAction.AUDIT_EXPORT,
    resource_type=ResourceType.AUDIT_LOG,
    permission_class=PermissionClass.BULK_EXPORT,
)

_MEDIA_TYPES = {ExportFormat.CSV: "text/csv", ExportFormat.JSON: "application/json"}


@router.get("/admin/audit-logs", response_model=AuditPage)
def list_audit_logs(
    actor_id: Optional[int] = None,
    action: Optional[AuditAction] = None,
    resource_type: Optional[ResourceType] = None,
    resource_id: Optional[str] = Query(default=None, max_length=255),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1),
    cursor: Optional[str] = Query(default=None, max_length=128),
    ctx: RequestContext = Depends(request_context),
) -> AuditPage:
    def handler(ctx: RequestContext) -> AuditPage:
        max_page = ctx.services.settings.audit_page_size_max
        if limit > max_page:
            raise ValidationError(f"limit may not exceed {max_page}.")
        lower = as_utc(start) if start else None
        upper = as_utc(end) if end else None
        if lower is not None and upper is not None and upper <= lower:
            raise ValidationError("end must be after start.")
        records, next_cursor = ctx.services.audit_store.query(
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            start=lower,
            end=upper,
            limit=limit,
            cursor=cursor,
        )
        ctx.audit_details = {
            "filters": {
                "actor_id": actor_id,
                "action": action.value if action else None,
                "resource_type": resource_type.value if resource_type else None,
                "resource_id": resource_id,
            },
            "returned": len(records),
        }
        return AuditPage(items=[AuditRecordResponse.from_record(r) for r in records], next_cursor=next_cursor)

    return _query.run(ctx, handler)


@router.post("/admin/audit-logs/export")
def export_audit_logs(body: AuditExportRequest, ctx: RequestContext = Depends(request_context)) -> Response:
    """Export every record in [start, end) as CSV or JSON, newest first."""

    def handler(ctx: RequestContext) -> Response:
        settings = ctx.services.settings
        ctx.audit_details = {"start": to_iso(body.start), "end": to_iso(body.end), "format": body.format.value}
        check_export_range(body.start, body.end, settings.audit_export_max_days)
        records = ctx.services.audit_store.export_range(body.start, body.end, actor_id=body.actor_id, action=body.action)
        ctx.audit_details["count"] = len(records)
        filename = f"audit-{body.start:%Y%m%d}-{body.end:%Y%m%d}.{body.format.value}"
        return Response(
            content=render(records, body.format),
            media_type=_MEDIA_TYPES[body.format],
            headers={"Content-Disposition": f'attachment; filename="{filename}"', "Cache-Control": "no-store"},
        )

    return _export.run(ctx, handler)
