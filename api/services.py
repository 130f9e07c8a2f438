"""
api/services.py -- The service container shared by the pipeline, routes and CLI.

build_services() is the single place where stores and services are wired
from Settings. The API lifespan stores the result on app.state.services;
tests build one against shared-memory SQLite and a controllable clock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from audit.models import AuditAction, AuditContext, ResourceType
from audit.recorder import AuditRecorder
from audit.store import AuditStore
from auth.attempts import LoginAttemptTracker, SourceActivity
from auth.login import LoginService
from auth.ratelimit import AdaptiveRateLimiter, make_rate_limiter
from auth.sessions import SessionStore
from auth.store import IdentityStore
from auth.tokens import TokenService, make_token_service
from core.clock import Clock, utcnow
from core.config import Settings

logger = logging.getLogger("admingate.api")


@dataclass
class Services:
    settings: Settings
    identities: IdentityStore
    sessions: SessionStore
    attempts: LoginAttemptTracker
    tokens: TokenService
    rate_limiter: AdaptiveRateLimiter
    audit_store: AuditStore
    audit: AuditRecorder
    login: LoginService
    clock: Clock = utcnow

    def ping(self) -> dict[str, str]:
        """Component health for GET /health. Never raises."""
        try:
            self.identities.ping()
            return {"database": "ok"}
        except SQLAlchemyError:
            logger.warning("Health probe: database unreachable", exc_info=True)
            return {"database": "unavailable"}

    def close(self) -> None:
        self.identities.close()
        self.sessions.close()
        self.attempts.close()
        self.audit_store.close()


def build_services(settings: Settings, *, clock: Clock = utcnow) -> Services:
    db_url = settings.database_url
    identities = IdentityStore(db_url, clock=clock)
    sessions = SessionStore(
        db_url,
        ttl=timedelta(seconds=settings.session_ttl_seconds),
        max_sessions=settings.max_sessions_per_user,
        clock=clock,
    )
    attempts = LoginAttemptTracker(
        db_url,
        threshold=settings.lockout_threshold,
        window=timedelta(seconds=settings.lockout_window_seconds),
        lockout=timedelta(seconds=settings.lockout_duration_seconds),
        clock=clock,
    )
    tokens = make_token_service(settings, sessions, identities, clock=clock)
    audit_store = AuditStore(db_url)
    recorder = AuditRecorder(audit_store, clock=clock)

    def flag_source(activity: SourceActivity, email: str) -> None:
        recorder.record(
            actor_id=None,
            actor_email=email,
            action=AuditAction.SECURITY_SUSPICIOUS_SOURCE,
            resource_type=ResourceType.SOURCE_ADDRESS,
            resource_id=activity.source_address,
            details={"distinct_accounts": activity.distinct_accounts, "failures": activity.failures},
            context=AuditContext(source_address=activity.source_address),
        )

    login = LoginService(
        identities,
        attempts,
        sessions,
        tokens,
        admin_mfa_required=settings.admin_mfa_required,
        suspicious_window=timedelta(seconds=settings.suspicious_source_window_seconds),
        suspicious_min_accounts=settings.suspicious_source_min_accounts,
        on_suspicious_source=flag_source,
        clock=clock,
    )
    return Services(
        settings=settings,
        identities=identities,
        sessions=sessions,
        attempts=attempts,
        tokens=tokens,
        rate_limiter=make_rate_limiter(settings),
        audit_store=audit_store,
        audit=recorder,
        login=login,
        clock=clock,
    )
