"""
auth/sessions.py -- SQLAlchemy Core session store.

Pattern: Repository + Data Mapper (same as auth/store.py).

Lifecycle: CREATED -> ACTIVE -> (EXPIRED | TERMINATED). A row is CREATED
between insert and its first validated request, ACTIVE while valid, and
never leaves EXPIRED or TERMINATED: terminate() only updates rows WHERE
is_active = 1, and nothing ever sets is_active back to 1.

Expiry is enforced twice:
  passively  -- get() flips an expired-but-active row to inactive before
                returning it, and is_valid() checks expires_at regardless of
                is_active, so an expired session is never valid.
  eventually -- sweep() marks every expired row inactive and re-applies the
                per-user cap. The API lifespan runs it on a timer.

Concurrency cap:
  create() inserts first and enforces the cap second, inside its own
  transaction. Two racing creations both see each other's rows once
  committed and terminate the same oldest rows (deterministic newest-first
  order), so the user converges to at most max_sessions active sessions.
  sweep() compensates for any interleaving that momentarily exceeds the cap.

touch() is best-effort: a lost last_activity_at update is harmless, and a
store error there is logged rather than failing the request. It never
extends expires_at.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import Identity, Session, SessionState
from core.clock import Clock, from_iso, to_iso, utcnow
from core.db import create_store_engine

logger = logging.getLogger("admingate.sessions")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'admingate.db'}"

# Session ids are random; a primary-key collision is astronomically unlikely
# but create() still treats the insert as a conditional put and retries.
_CREATE_RETRIES = 3

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("session_id", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False),
    Column("device_id", String(255), nullable=False),
    Column("source_address", String(45), nullable=False),  # IPv6 max length
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("last_activity_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("terminated_at", String(32)),
    Column("termination_reason", String(50)),
    Index("ix_sessions_user_active", "user_id", "is_active"),
    Index("ix_sessions_expires", "is_active", "expires_at"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def is_valid(session: Session, now: datetime) -> bool:
    """A session is valid iff it is active AND not past expires_at."""
    return session.is_active and session.expires_at > now


def state_of(session: Session, now: datetime) -> SessionState:
    if not session.is_active:
        # Inactive rows record why: the sweep and passive-expiry paths set "expired".
        if session.termination_reason == "expired":
            return SessionState.EXPIRED
        return SessionState.TERMINATED
    if session.expires_at <= now:
        return SessionState.EXPIRED
    if session.last_activity_at == session.issued_at:
        return SessionState.CREATED
    return SessionState.ACTIVE


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for Session entities.

    max_sessions caps concurrently active sessions per user (0 = unlimited,
    1 = single-session policy). ttl is the fixed session lifetime.
    """

    def __init__(
        self,
        db_url: str = _DEFAULT_DB_URL,
        *,
        ttl: timedelta = timedelta(days=7),
        max_sessions: int = 5,
        clock: Clock = utcnow,
    ) -> None:
        if ttl <= timedelta(0):
            raise ValueError("session ttl must be positive")
        self.engine: Engine = create_store_engine(db_url)
        self.ttl = ttl
        self.max_sessions = max_sessions
        self._clock = clock
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create(self, identity: Identity, device_id: str, source_address: str) -> Session:
        """Create a session for identity, then enforce the concurrency cap.

        Raises IntegrityError only if every retry collided, which would point
        at a broken random source rather than bad luck.
        """
        if identity.id is None:
            raise ValueError("identity must be persisted before a session is created")
        for attempt in range(_CREATE_RETRIES):
            now = self._clock()
            session = Session(
                session_id=new_session_id(),
                user_id=identity.id,
                device_id=device_id,
                source_address=source_address,
                issued_at=now,
                expires_at=now + self.ttl,
                last_activity_at=now,
            )
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        _sessions.insert().values(
                            session_id=session.session_id,
                            user_id=session.user_id,
                            device_id=session.device_id,
                            source_address=session.source_address,
                            issued_at=to_iso(session.issued_at),
                            expires_at=to_iso(session.expires_at),
                            last_activity_at=to_iso(session.last_activity_at),
                            is_active=1,
                        )
                    )
            except IntegrityError:
                if attempt + 1 < _CREATE_RETRIES:
                    continue
                raise
            with self.engine.begin() as conn:
                capped = self._enforce_cap(conn, identity.id, now)
            if capped:
                logger.info("Session cap reached for user %s: terminated %d oldest session(s)", identity.id, capped)
            return session
        raise RuntimeError("session creation made no attempts")

    def get(self, session_id: str) -> Optional[Session]:
        """Return the session record, applying passive expiry. None if unknown."""
        now = self._clock()
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.session_id == session_id)).fetchone()
            if row is None:
                return None
            session = _row_to_session(row)
            if session.is_active and session.expires_at <= now:
                conn.execute(
                    _sessions.update()
                    .where((_sessions.c.session_id == session_id) & (_sessions.c.is_active == 1))
                    .values(is_active=0, termination_reason="expired")
                )
                conn.commit()
                session.is_active = False
                session.termination_reason = "expired"
        return session

    def get_valid(self, session_id: str) -> Optional[Session]:
        """Return the session only if it is currently valid."""
        session = self.get(session_id)
        if session is None or not is_valid(session, self._clock()):
            return None
        return session

    def list_by_user(self, user_id: int, *, active_only: bool = True) -> list[Session]:
        """Sessions for user_id, newest first. active_only hides expired rows too."""
        now = self._clock()
        query = _sessions.select().where(_sessions.c.user_id == user_id)
        if active_only:
            query = query.where((_sessions.c.is_active == 1) & (_sessions.c.expires_at > to_iso(now)))
        query = query.order_by(_sessions.c.issued_at.desc(), _sessions.c.session_id.desc())
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_session(r) for r in rows]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def touch(self, session_id: str) -> Optional[datetime]:
        """Stamp last_activity_at and return the stamp, or None if nothing was updated.

        Best-effort: failures are logged, not raised.
        """
        stamp = self._clock()
        now = to_iso(stamp)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _sessions.update()
                    .where(
                        (_sessions.c.session_id == session_id)
                        & (_sessions.c.is_active == 1)
                        & (_sessions.c.expires_at > now)
                    )
                    .values(last_activity_at=now)
                )
        except SQLAlchemyError:
            logger.warning("Session touch failed for %s", session_id[:8], exc_info=True)
            return None
        return stamp if result.rowcount else None

    def terminate(self, session_id: str, reason: str = "terminated") -> bool:
        """Terminate one session. Returns True only if it was active.

        Conditional on is_active = 1, so terminating twice is a no-op and an
        expired row is never relabelled.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.session_id == session_id) & (_sessions.c.is_active == 1))
                .values(is_active=0, terminated_at=to_iso(self._clock()), termination_reason=reason)
            )
        return result.rowcount > 0

    def terminate_all(self, user_id: int, *, except_session_id: Optional[str] = None, reason: str = "terminated") -> int:
        """Terminate every active session of user_id, optionally keeping one."""
        condition = (_sessions.c.user_id == user_id) & (_sessions.c.is_active == 1)
        if except_session_id is not None:
            condition = condition & (_sessions.c.session_id != except_session_id)
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where(condition)
                .values(is_active=0, terminated_at=to_iso(self._clock()), termination_reason=reason)
            )
        return result.rowcount

    def sweep(self) -> tuple[int, int]:
        """Expire stale rows and re-apply the per-user cap.

        Returns (expired, capped) row counts. Safe to run concurrently with
        request traffic and with another sweep.
        """
        now = self._clock()
        with self.engine.begin() as conn:
            expired = conn.execute(
                _sessions.update()
                .where((_sessions.c.is_active == 1) & (_sessions.c.expires_at <= to_iso(now)))
                .values(is_active=0, termination_reason="expired")
            ).rowcount
        capped = 0
        if self.max_sessions > 0:
            with self.engine.connect() as conn:
                over = conn.execute(
                    select(_sessions.c.user_id)
                    .where(_sessions.c.is_active == 1)
                    .group_by(_sessions.c.user_id)
                    .having(func.count() > self.max_sessions)
                ).fetchall()
            for (user_id,) in over:
                with self.engine.begin() as conn:
                    capped += self._enforce_cap(conn, user_id, now)
        if expired or capped:
            logger.info("Session sweep: %d expired, %d over cap", expired, capped)
        return expired, capped

    def count_active(self, user_id: int) -> int:
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_sessions)
                .where((_sessions.c.user_id == user_id) & (_sessions.c.is_active == 1) & (_sessions.c.expires_at > now))
            ).scalar()
        return result or 0

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _enforce_cap(self, conn: Connection, user_id: int, now: datetime) -> int:
        """Terminate the oldest active sessions of user_id beyond max_sessions."""
        if self.max_sessions <= 0:
            return 0
        # Expired rows are left to the expiry path so they keep the right reason.
        rows = conn.execute(
            select(_sessions.c.session_id)
            .where(
                (_sessions.c.user_id == user_id)
                & (_sessions.c.is_active == 1)
                & (_sessions.c.expires_at > to_iso(now))
            )
            .order_by(_sessions.c.issued_at.desc(), _sessions.c.session_id.desc())
        ).fetchall()
        excess = [r.session_id for r in rows[self.max_sessions :]]
        if not excess:
            return 0
        result = conn.execute(
            _sessions.update()
            .where(_sessions.c.session_id.in_(excess) & (_sessions.c.is_active == 1))
            .values(is_active=0, terminated_at=to_iso(now), termination_reason="session_cap")
        )
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    return Session(
        session_id=row.session_id,
        user_id=row.user_id,
        device_id=row.device_id,
        source_address=row.source_address,
        issued_at=from_iso(row.issued_at),
        expires_at=from_iso(row.expires_at),
        last_activity_at=from_iso(row.last_activity_at),
        is_active=bool(row.is_active),
        terminated_at=from_iso(row.terminated_at) if row.terminated_at else None,
        termination_reason=row.termination_reason,
    )
