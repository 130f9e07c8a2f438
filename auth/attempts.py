"""
auth/attempts.py -- Append-only login-attempt history and the lockout policy.

Every authentication attempt, success or failure, becomes one immutable row.
That history is the sole source of truth for lockout: the failure counter
cached on the Identity is for display only.

Lockout policy (defaults N=5, W=15 min, L=30 min):
  N consecutive failures for an email inside a sliding window W lock the
  email for L, starting at the Nth failure. Any success resets the streak.
  Attempts rejected *because* the account was already locked are recorded
  with reason "account_locked" but do not extend the streak -- the password
  was never checked, so they carry no signal.

The policy works on the email string, not on a resolved identity. Unknown
emails lock exactly like real ones, so lockout cannot be used to enumerate
accounts.

Distributed attacks (one source address, many accounts) are a detection
signal only: suspicious_sources() reports them; nothing here blocks them.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, distinct, func, select
from sqlalchemy.engine import Engine

from auth.models import LoginAttempt
from auth.store import normalize_email
from core.clock import Clock, from_iso, to_iso, utcnow
from core.db import create_store_engine

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'admingate.db'}"

# Failure reasons that are recorded but never count toward a lockout streak.
LOCKED_REASON = "account_locked"
UNLOCK_REASON = "admin_unlock"
_NON_COUNTING = {LOCKED_REASON}

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_attempts = Table(
    "login_attempts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", String(32), nullable=False),
    Column("email", String(255), nullable=False),
    Column("source_address", String(45), nullable=False),
    Column("success", Integer, nullable=False),
    Column("failure_reason", String(50)),
    Index("ix_login_attempts_email_ts", "email", "timestamp"),
    Index("ix_login_attempts_source_ts", "source_address", "timestamp"),
)


@dataclass(frozen=True)
class SourceActivity:
    """Failed-attempt footprint of one source address inside a window."""

    source_address: str
    distinct_accounts: int
    failures: int


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class LoginAttemptTracker:
    """Records attempts and derives lockout decisions from recent history.

    Usage:
        tracker = LoginAttemptTracker("sqlite:///:memory:")
        tracker.record("a@example.com", "10.0.0.1", success=False, reason="bad_password")
        tracker.is_locked("a@example.com")
    """

    def __init__(
        self,
        db_url: str = _DEFAULT_DB_URL,
        *,
        threshold: int = 5,
        window: timedelta = timedelta(minutes=15),
        lockout: timedelta = timedelta(minutes=30),
        clock: Clock = utcnow,
    ) -> None:
        self.engine: Engine = create_store_engine(db_url)
        self.threshold = threshold
        self.window = window
        self.lockout = lockout
        self._clock = clock
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(self, email: str, source_address: str, success: bool, reason: Optional[str] = None) -> LoginAttempt:
        """Append one attempt. Store errors propagate -- the login path fails closed on them."""
        attempt = LoginAttempt(
            email=normalize_email(email),
            source_address=source_address,
            success=success,
            timestamp=self._clock(),
            failure_reason=None if success and reason is None else reason,
        )
        with self.engine.begin() as conn:
            result = conn.execute(
                _attempts.insert().values(
                    timestamp=to_iso(attempt.timestamp),
                    email=attempt.email,
                    source_address=attempt.source_address,
                    success=1 if success else 0,
                    failure_reason=attempt.failure_reason,
                )
            )
        attempt.id = result.inserted_primary_key[0]
        return attempt

    def reset(self, email: str, source_address: str) -> LoginAttempt:
        """Clear an active lockout by appending a success marker.

        History stays append-only: the reset is itself a row, so an auditor
        can see when and from where an account was unlocked.
        """
        return self.record(email, source_address, success=True, reason=UNLOCK_REASON)

    # ------------------------------------------------------------------
    # Lockout decisions
    # ------------------------------------------------------------------

    def locked_until(self, email: str) -> Optional[datetime]:
        """Return when the current lockout ends, or None if the email is not locked."""
        now = self._clock()
        since = now - (self.window + self.lockout)
        streak: deque[datetime] = deque()
        until: Optional[datetime] = None
        for attempt in self._history(email, since):
            if attempt.success:
                streak.clear()
                until = None
                continue
            if attempt.failure_reason in _NON_COUNTING:
                continue
            streak.append(attempt.timestamp)
            while streak and streak[0] <= attempt.timestamp - self.window:
                streak.popleft()
            if len(streak) >= self.threshold:
                until = attempt.timestamp + self.lockout
                streak.clear()
        if until is not None and until > now:
            return until
        return None

    def is_locked(self, email: str) -> bool:
        return self.locked_until(email) is not None

    def recent_failure_count(self, email: str, window: Optional[timedelta] = None) -> int:
        """Counting failures since the last success, limited to the window."""
        since = self._clock() - (window or self.window)
        count = 0
        # Walk in insertion order so a success and a failure stamped in the
        # same microsecond still reset in the order they were written.
        for attempt in self._history(email, since):
            if attempt.success:
                count = 0
            elif attempt.failure_reason not in _NON_COUNTING:
                count += 1
        return count

    # ------------------------------------------------------------------
    # Aggregate-by-source detection
    # ------------------------------------------------------------------

    def source_activity(self, source_address: str, window: Optional[timedelta] = None) -> SourceActivity:
        since = to_iso(self._clock() - (window or self.window))
        with self.engine.connect() as conn:
            row = conn.execute(
                select(func.count(distinct(_attempts.c.email)), func.count()).where(
                    (_attempts.c.source_address == source_address)
                    & (_attempts.c.success == 0)
                    & (_attempts.c.timestamp >= since)
                )
            ).fetchone()
        return SourceActivity(source_address=source_address, distinct_accounts=row[0] or 0, failures=row[1] or 0)

    def suspicious_sources(self, window: timedelta, min_accounts: int) -> list[SourceActivity]:
        """Source addresses whose failures span at least min_accounts emails, busiest first."""
        since = to_iso(self._clock() - window)
        accounts = func.count(distinct(_attempts.c.email)).label("accounts")
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_attempts.c.source_address, accounts, func.count().label("failures"))
                .where((_attempts.c.success == 0) & (_attempts.c.timestamp >= since))
                .group_by(_attempts.c.source_address)
                .having(accounts >= min_accounts)
                .order_by(accounts.desc(), _attempts.c.source_address)
            ).fetchall()
        return [SourceActivity(source_address=r[0], distinct_accounts=r[1], failures=r[2]) for r in rows]

    def list_attempts(self, email: Optional[str] = None, limit: int = 100) -> list[LoginAttempt]:
        """Most recent attempts first, optionally for one email. Admin/export use."""
        query = _attempts.select().order_by(_attempts.c.timestamp.desc(), _attempts.c.id.desc()).limit(limit)
        if email is not None:
            query = query.where(_attempts.c.email == normalize_email(email))
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _history(self, email: str, since: datetime) -> list[LoginAttempt]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _attempts.select()
                .where((_attempts.c.email == normalize_email(email)) & (_attempts.c.timestamp >= to_iso(since)))
                .order_by(_attempts.c.timestamp, _attempts.c.id)
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]


def _row_to_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        id=row.id,
        email=row.email,
        source_address=row.source_address,
        success=bool(row.success),
        timestamp=from_iso(row.timestamp),
        failure_reason=row.failure_reason,
    )
