"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AdminGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one, and the lockout,
      session and rate-limit numbers are sanity-checked together.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing relies on
  key entropy -- a short key lets an attacker brute-force the HMAC offline
  from a single captured token.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure. A random per-process key would silently invalidate every
  issued token on restart and would differ between workers.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or audit/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("admingate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'admingate.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    # JSON lists in the environment, e.g. ALLOWED_HOSTS='["admin.example.com"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 3600  # 1 hour
    refresh_token_expire_seconds: int = 7 * 24 * 3600  # 7 days
    token_issuer: str = "admingate"
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    # Session lifetime matches the refresh token: a session outliving its
    # refresh token could never mint another access token anyway.
    session_ttl_seconds: int = 7 * 24 * 3600
    # 0 = unlimited, 1 = single-session policy.
    max_sessions_per_user: int = 5
    session_sweep_interval_seconds: int = 300

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_window_seconds: int = 15 * 60
    lockout_duration_seconds: int = 30 * 60

    suspicious_source_window_seconds: int = 15 * 60
    suspicious_source_min_accounts: int = 10

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # "memory://" counts per process. Point this at redis:// when running
    # more than one worker so every worker shares the same counters.
    rate_limit_storage_uri: str = "memory://"
    rate_limit_super_admin: int = 200
    rate_limit_admin: int = 150
    rate_limit_moderator: int = 100
    rate_limit_support: int = 80
    rate_limit_bulk_export: int = 5
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    audit_export_max_days: int = 90
    audit_page_size_max: int = 200

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    admin_mfa_required: bool = False

    # ------------------------------------------------------------------
    # Operator CLI
    # ------------------------------------------------------------------

    # Non-interactive password for `main.py create-admin` (CI, containers).
    bootstrap_password: str = Field(default="", validation_alias="ADMINGATE_BOOTSTRAP_PASSWORD")

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Reject numeric policy values that would disable a control by accident."""
        positive = {
            "lockout_threshold": self.lockout_threshold,
            "lockout_window_seconds": self.lockout_window_seconds,
            "lockout_duration_seconds": self.lockout_duration_seconds,
            "rate_limit_super_admin": self.rate_limit_super_admin,
            "rate_limit_admin": self.rate_limit_admin,
            "rate_limit_moderator": self.rate_limit_moderator,
            "rate_limit_support": self.rate_limit_support,
            "rate_limit_bulk_export": self.rate_limit_bulk_export,
            "audit_export_max_days": self.audit_export_max_days,
            "access_token_expire_seconds": self.access_token_expire_seconds,
        }
        bad = sorted(name for name, value in positive.items() if value <= 0)
        if bad:
            raise ValueError(f"Settings must be positive: {', '.join(bad)}")
        if self.max_sessions_per_user < 0:
            raise ValueError("MAX_SESSIONS_PER_USER must be 0 (unlimited) or greater.")
        if self.session_ttl_seconds <= self.access_token_expire_seconds:
            raise ValueError("SESSION_TTL_SECONDS must exceed ACCESS_TOKEN_EXPIRE_SECONDS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
