"""
auth/store.py -- SQLAlchemy Core credential store for administrative identities.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
_row_to_identity is the mapper. Route and service code never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are normalised to lower case on every write and lookup, so the
  UNIQUE index on email is also a case-insensitive uniqueness guarantee.

Concurrency:
  increment_failed_attempts() is a single UPDATE ... SET n = n + 1 statement,
  so concurrent failed logins never lose an increment. The counter is a cache
  for the admin console; lockout decisions read the attempt history.

Identities are never deleted here -- deletion is an external CRUD concern.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from auth.models import Identity, IdentityStatus, Permission, Role
from core.clock import Clock, from_iso, to_iso, utcnow
from core.db import create_store_engine

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'admingate.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("display_name", String(255), nullable=False),
    Column("role", String(30), nullable=False),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("hashed_password", Text),
    Column("permission_overrides", Text, nullable=False, server_default="[]"),  # JSON array
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_secret", Text),  # base32 TOTP secret
    Column("failed_attempt_count", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("created_at", String(32), nullable=False),
)

# Fields update_identity() accepts. Anything else is a programming error.
_MUTABLE_FIELDS = {
    "display_name",
    "role",
    "status",
    "hashed_password",
    "permission_overrides",
    "mfa_enabled",
    "mfa_secret",
    "failed_attempt_count",
    "locked_until",
}


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity entities (the credential store).

    Usage:
        store = IdentityStore("sqlite:///:memory:")
        uid = store.create_identity(Identity(email="a@example.com", display_name="A", role=Role.ADMIN))
        identity = store.get_by_email("A@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, *, clock: Clock = utcnow) -> None:
        self.engine: Engine = create_store_engine(db_url)
        self._clock = clock
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_identities(self) -> bool:
        """Return True if at least one identity exists. Used by the bootstrap CLI."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_identities)).scalar()
        return (result or 0) > 0

    def create_identity(self, identity: Identity) -> int:
        """Insert a new identity and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers translate that into a Conflict.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.insert().values(
                    email=normalize_email(identity.email),
                    display_name=identity.display_name,
                    role=identity.role.value,
                    status=identity.status.value,
                    hashed_password=identity.hashed_password,
                    permission_overrides=_dump_overrides(identity.permission_overrides),
                    mfa_enabled=1 if identity.mfa_enabled else 0,
                    mfa_secret=identity.mfa_secret,
                    failed_attempt_count=identity.failed_attempt_count,
                    locked_until=to_iso(identity.locked_until) if identity.locked_until else None,
                    created_at=to_iso(self._clock()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, identity_id: int) -> Optional[Identity]:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_email(self, email: str) -> Optional[Identity]:
        """Case-insensitive lookup by email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _identities.select().where(_identities.c.email == normalize_email(email))
            ).fetchone()
        return _row_to_identity(row) if row is not None else None

    def list_identities(self, status: Optional[IdentityStatus] = None) -> list[Identity]:
        """Return identities ordered by email, optionally filtered by status."""
        query = _identities.select().order_by(_identities.c.email)
        if status is not None:
            query = query.where(_identities.c.status == status.value)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_identity(r) for r in rows]

    def count_active(self, role: Role) -> int:
        """Number of active identities holding role. Guards the last super_admin."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_identities)
                .where((_identities.c.role == role.value) & (_identities.c.status == IdentityStatus.ACTIVE.value))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_identity(self, identity_id: int, **fields) -> bool:
        """Apply a patch of mutable fields. Returns False if identity_id was not found.

        Enum, set and datetime values are converted to their column form here
        so callers pass domain types.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown identity fields: {sorted(unknown)!r}")
        if not fields:
            return self.get_by_id(identity_id) is not None
        values = dict(fields)
        if "role" in values:
            values["role"] = Role(values["role"]).value
        if "status" in values:
            values["status"] = IdentityStatus(values["status"]).value
        if "permission_overrides" in values:
            values["permission_overrides"] = _dump_overrides(values["permission_overrides"])
        if "mfa_enabled" in values:
            values["mfa_enabled"] = 1 if values["mfa_enabled"] else 0
        if "locked_until" in values:
            locked: Optional[datetime] = values["locked_until"]
            values["locked_until"] = to_iso(locked) if locked else None
        with self.engine.connect() as conn:
            result = conn.execute(_identities.update().where(_identities.c.id == identity_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def increment_failed_attempts(self, identity_id: int) -> int:
        """Atomically add one to failed_attempt_count and return the new value."""
        with self.engine.connect() as conn:
            conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(failed_attempt_count=_identities.c.failed_attempt_count + 1)
            )
            count = conn.execute(
                select(_identities.c.failed_attempt_count).where(_identities.c.id == identity_id)
            ).scalar()
            conn.commit()
        return count or 0

    def reset_failed_attempts(self, identity_id: int) -> None:
        self.update_identity(identity_id, failed_attempt_count=0, locked_until=None)

    def set_permission_overrides(self, identity_id: int, overrides: frozenset[Permission]) -> bool:
        return self.update_identity(identity_id, permission_overrides=overrides)

    def ping(self) -> bool:
        """Cheap connectivity probe for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _dump_overrides(overrides) -> str:
    return json.dumps(sorted(Permission(p).value for p in overrides))


def _row_to_identity(row) -> Identity:
    overrides = frozenset(Permission(p) for p in json.loads(row.permission_overrides or "[]"))
    return Identity(
        id=row.id,
        email=row.email,
        display_name=row.display_name,
        role=Role(row.role),
        status=IdentityStatus(row.status),
        hashed_password=row.hashed_password,
        permission_overrides=overrides,
        mfa_enabled=bool(row.mfa_enabled),
        mfa_secret=row.mfa_secret,
        failed_attempt_count=row.failed_attempt_count,
        locked_until=from_iso(row.locked_until) if row.locked_until else None,
        created_at=row.created_at,
    )
