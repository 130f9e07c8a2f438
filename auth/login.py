"""
auth/login.py -- Pre-authentication stage: lockout, credential check, token issuance.

This runs before any identity exists for the request, so it sits outside the
post-authentication pipeline in api/pipeline.py.

Ordering (every branch records exactly one LoginAttempt):
  1. Lockout query. If the history cannot be read the login fails closed
     with Internal.
  2. Locked -> bcrypt runs against the dummy hash (same cost as a real
     check), the attempt is recorded as "account_locked", AccountLocked is
     raised. The supplied password is never compared, so neither timing nor
     wording reveals whether it was right.
  3. Password check. bcrypt always runs, against the dummy hash when the
     email is unknown or has no password.
  4. Status and MFA checks on the verified identity.
  5. The attempt is recorded. A store failure here raises Internal and no
     session or token is created.
  6. Failure -> cached counters refreshed, source address checked for a
     distributed-attack pattern, Unauthenticated raised with one uniform
     message for every cause.
     Success -> cached counters cleared, session created, tokens issued.

Layer rule: no imports from api/ or audit/. Suspicious-source signals leave
through the on_suspicious_source callback; api/main.py wires it to the
audit recorder.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from auth.attempts import LOCKED_REASON, LoginAttemptTracker, SourceActivity
from auth.models import Identity, IdentityStatus, Session, TokenPair
from auth.sessions import SessionStore
from auth.store import IdentityStore, normalize_email
from auth.tokens import TokenService, burn_password_check, verify_password, verify_totp
from core.clock import Clock, utcnow
from core.errors import AccountLocked, AuthFailure, Internal, Unauthenticated

logger = logging.getLogger("admingate.attempts")

_BAD_LOGIN_MESSAGE = "Invalid email or password."
_LOCKED_MESSAGE = "Account temporarily locked. Try again later."
_UNAVAILABLE_MESSAGE = "Login is temporarily unavailable."

SuspiciousSourceHook = Callable[[SourceActivity, str], None]


@dataclass(frozen=True)
class LoginResult:
    identity: Identity
    session: Session
    tokens: TokenPair


class LoginService:
    """Authenticates email/password (+ TOTP) and opens a session.

    Usage:
        service = LoginService(identities, attempts, sessions, tokens)
        result = service.login("a@example.com", "pw", "10.0.0.1", "laptop")
    """

    def __init__(
        self,
        identities: IdentityStore,
        attempts: LoginAttemptTracker,
        sessions: SessionStore,
        tokens: TokenService,
        *,
        admin_mfa_required: bool = False,
        suspicious_window: timedelta = timedelta(minutes=15),
        suspicious_min_accounts: int = 10,
        on_suspicious_source: Optional[SuspiciousSourceHook] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.identities = identities
        self.attempts = attempts
        self.sessions = sessions
        self.tokens = tokens
        self.admin_mfa_required = admin_mfa_required
        self.suspicious_window = suspicious_window
        self.suspicious_min_accounts = suspicious_min_accounts
        self.on_suspicious_source = on_suspicious_source
        self._clock = clock
        # source address -> when it was last flagged; one signal per window
        self._flagged: dict[str, datetime] = {}
        self._flagged_lock = threading.Lock()

    def login(
        self,
        email: str,
        password: str,
        source_address: str,
        device_id: str,
        *,
        mfa_code: Optional[str] = None,
        admin_console: bool = False,
    ) -> LoginResult:
        email = normalize_email(email)
        try:
            locked_until = self.attempts.locked_until(email)
            identity = self.identities.get_by_email(email)
        except SQLAlchemyError as exc:
            logger.error("Login pre-check failed for source %s", source_address, exc_info=True)
            raise Internal(_UNAVAILABLE_MESSAGE) from exc

        if locked_until is not None:
            burn_password_check(password)
            self._record(email, source_address, False, LOCKED_REASON)
            logger.warning("Login refused for locked account %s from %s", email, source_address)
            raise AccountLocked(_LOCKED_MESSAGE)

        reason = self._check_credentials(identity, password, mfa_code, admin_console)
        self._record(email, source_address, reason is None, reason)

        if reason is not None:
            self._after_failure(email, identity, source_address)
            raise Unauthenticated(_BAD_LOGIN_MESSAGE, reason=AuthFailure.BAD_CREDENTIALS)

        if identity is None or identity.id is None:
            raise Internal(_UNAVAILABLE_MESSAGE)
        try:
            if identity.failed_attempt_count or identity.locked_until:
                self.identities.reset_failed_attempts(identity.id)
            session = self.sessions.create(identity, device_id, source_address)
        except SQLAlchemyError as exc:
            logger.error("Session creation failed for identity %s", identity.id, exc_info=True)
            raise Internal(_UNAVAILABLE_MESSAGE) from exc
        tokens = self.tokens.issue(identity, device_id, session.session_id)
        logger.info("Login succeeded for identity %s from %s (session %s)", identity.id, source_address, session.session_id[:8])
        return LoginResult(identity=identity, session=session, tokens=tokens)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_credentials(
        self,
        identity: Optional[Identity],
        password: str,
        mfa_code: Optional[str],
        admin_console: bool,
    ) -> Optional[str]:
        """Return None if the login may proceed, else the recorded failure reason."""
        if identity is None or not identity.hashed_password:
            burn_password_check(password)
            return "bad_credentials"
        if not verify_password(password, identity.hashed_password):
            return "bad_credentials"
        if identity.status is not IdentityStatus.ACTIVE:
            return f"status_{identity.status.value}"
        if admin_console and self.admin_mfa_required and not identity.mfa_enabled:
            return "mfa_not_enrolled"
        if identity.mfa_enabled:
            if not identity.mfa_secret or not mfa_code:
                return "mfa_required"
            if not verify_totp(identity.mfa_secret, mfa_code, self._clock()):
                return "mfa_invalid"
        return None

    def _record(self, email: str, source_address: str, success: bool, reason: Optional[str]) -> None:
        try:
            self.attempts.record(email, source_address, success, reason)
        except SQLAlchemyError as exc:
            logger.error("Could not record login attempt for source %s", source_address, exc_info=True)
            raise Internal(_UNAVAILABLE_MESSAGE) from exc

    def _after_failure(self, email: str, identity: Optional[Identity], source_address: str) -> None:
        """Refresh cached counters and run the distributed-attack check.

        The attempt row is already durable, so errors here are logged and the
        caller still gets its Unauthenticated.
        """
        try:
            locked_until = self.attempts.locked_until(email)
            if locked_until is not None:
                logger.warning("Account %s locked until %s after repeated failures", email, locked_until.isoformat())
            if identity is not None and identity.id is not None:
                self.identities.increment_failed_attempts(identity.id)
                if locked_until is not None:
                    self.identities.update_identity(identity.id, locked_until=locked_until)
            activity = self.attempts.source_activity(source_address, self.suspicious_window)
        except SQLAlchemyError:
            logger.warning("Post-failure bookkeeping failed for source %s", source_address, exc_info=True)
            return
        if activity.distinct_accounts >= self.suspicious_min_accounts:
            self._flag_source(activity, email)

    def _flag_source(self, activity: SourceActivity, email: str) -> None:
        now = self._clock()
        with self._flagged_lock:
            last = self._flagged.get(activity.source_address)
            if last is not None and now - last < self.suspicious_window:
                return
            # Entries older than one window can never suppress a signal again
            self._flagged = {src: at for src, at in self._flagged.items() if now - at < self.suspicious_window}
            self._flagged[activity.source_address] = now
        logger.warning(
            "Suspicious source %s: %d failures across %d accounts in %ds",
            activity.source_address,
            activity.failures,
            activity.distinct_accounts,
            int(self.suspicious_window.total_seconds()),
        )
        if self.on_suspicious_source is not None:
            self.on_suspicious_source(activity, email)
