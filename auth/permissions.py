"""
auth/permissions.py -- Static role -> permission matrix and the permission check.

The matrix is an immutable, versioned lookup table built once at import time.
Nothing mutates it at runtime: per-identity differences live on the Identity
as additive overrides, never as edits to the table.

Matrix cells have three levels:
  GRANTED  -- the role always has the permission.
  PARTIAL  -- the role does not have it by default; a deployment resolves the
              cell per identity by adding an override.
  DENIED   -- the role never has it; overrides naming it are rejected when
              they are written (validate_overrides).

The check itself is a plain set operation: effective = role-granted | overrides.
has_all() fails closed -- one missing permission denies the whole request, and
an empty requirement list is the only case that passes unconditionally.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from auth.models import Identity, Permission, Role
from core.errors import ValidationError

MATRIX_VERSION = "2024.1"


class Grant(str, Enum):
    GRANTED = "granted"
    PARTIAL = "partial"
    DENIED = "denied"


class PermissionClass(str, Enum):
    """Bucket a rate-limit ceiling is keyed on.

    Every Permission has a class of the same name. GENERAL covers endpoints
    that require no specific permission; BULK_EXPORT is the resource-intensive
    bucket with its own role-independent ceiling.
    """

    GENERAL = "general"
    BULK_EXPORT = "bulk_export"
    USER_MANAGEMENT = "user_management"
    CONTENT_MODERATION = "content_moderation"
    FINANCIAL_ACCESS = "financial_access"
    SYSTEM_CONFIG = "system_config"
    ANALYTICS_VIEW = "analytics_view"
    AUDIT_LOG_VIEW = "audit_log_view"


_G, _P, _D = Grant.GRANTED, Grant.PARTIAL, Grant.DENIED

# Column order for the literal rows below.
_COLUMNS = (
    Permission.USER_MANAGEMENT,
    Permission.CONTENT_MODERATION,
    Permission.FINANCIAL_ACCESS,
    Permission.SYSTEM_CONFIG,
    Permission.ANALYTICS_VIEW,
    Permission.AUDIT_LOG_VIEW,
)

_ROWS = {
    Role.SUPER_ADMIN: (_G, _G, _G, _G, _G, _G),
    Role.ADMIN: (_G, _G, _G, _P, _G, _G),
    Role.MODERATOR: (_P, _G, _D, _D, _P, _P),
    Role.SUPPORT: (_P, _P, _D, _D, _P, _P),
}

MATRIX: Mapping[Role, Mapping[Permission, Grant]] = MappingProxyType(
    {role: MappingProxyType(dict(zip(_COLUMNS, row))) for role, row in _ROWS.items()}
)

# Exhaustiveness: every role has a row and every row covers every permission.
if set(MATRIX) != set(Role):
    raise RuntimeError("permission matrix is missing a role")
if any(set(row) != set(Permission) for row in MATRIX.values()):
    raise RuntimeError("permission matrix row is incomplete")

# Higher rank may administer lower or equal rank, never the reverse.
ROLE_RANK: Mapping[Role, int] = MappingProxyType(
    {Role.SUPER_ADMIN: 4, Role.ADMIN: 3, Role.MODERATOR: 2, Role.SUPPORT: 1}
)


def outranks(role: Role, other: Role) -> bool:
    """True if role sits strictly above other in the administrative hierarchy."""
    return ROLE_RANK[role] > ROLE_RANK[other]


def role_permissions(role: Role) -> frozenset[Permission]:
    """Permissions the role holds with no overrides at all."""
    return frozenset(p for p, grant in MATRIX[role].items() if grant is Grant.GRANTED)


def overridable(role: Role) -> frozenset[Permission]:
    """Permissions an override may name for this role (GRANTED or PARTIAL cells)."""
    return frozenset(p for p, grant in MATRIX[role].items() if grant is not Grant.DENIED)


def permissions_for(role: Role, overrides: Iterable[Permission] = ()) -> frozenset[Permission]:
    """Effective permission set: role-granted permissions plus additive overrides.

    Overrides can only add. A missing override never removes a permission the
    role grants.
    """
    return role_permissions(role) | frozenset(overrides)


def effective_permissions(identity: Identity) -> frozenset[Permission]:
    return permissions_for(identity.role, identity.permission_overrides)


def has_all(identity: Identity, required: Iterable[Permission]) -> bool:
    """Return True iff every required permission is in the identity's effective set."""
    needed = frozenset(required)
    return needed <= effective_permissions(identity)


def missing_permissions(identity: Identity, required: Iterable[Permission]) -> list[Permission]:
    held = effective_permissions(identity)
    return sorted((p for p in set(required) if p not in held), key=lambda p: p.value)


def validate_overrides(role: Role, overrides: Iterable[Permission]) -> frozenset[Permission]:
    """Check an override set before it is stored. Raises ValidationError on DENIED cells."""
    requested = frozenset(overrides)
    denied = sorted(p.value for p in requested - overridable(role))
    if denied:
        raise ValidationError(
            f"Role '{role.value}' cannot be granted: {', '.join(denied)}.",
            detail={"denied": denied},
        )
    return requested


def permission_class_for(required: Iterable[Permission]) -> PermissionClass:
    """Default rate-limit bucket for an endpoint's requirement list.

    One requirement -> the bucket of that permission. None -> GENERAL. Several
    -> the lexically first, so the mapping is stable across restarts.
    """
    ordered = sorted(set(required), key=lambda p: p.value)
    if not ordered:
        return PermissionClass.GENERAL
    return PermissionClass(ordered[0].value)
