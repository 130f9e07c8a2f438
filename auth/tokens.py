"""
auth/tokens.py -- JWT issue/validate, password hashing, and TOTP utilities.

Security design decisions:
  JWT: python-jose with HS256. Access tokens (~1 hour) and refresh tokens
       (~7 days) are both signed with SECRET_KEY and carry identity, role,
       permission snapshot, device id and session id. The "typ" claim pins
       each token to one purpose: a refresh token can only mint a new access
       token and is rejected everywhere else.

       A signature cannot be revoked, so validate() always cross-references
       the embedded session id against the live SessionStore. Terminating a
       session therefore kills every token minted for it, immediately.

       Expiry is checked against the injected clock rather than by jose, so
       the whole service agrees on one notion of "now".

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       lets the login flow burn the same bcrypt cost when an account is
       unknown or locked, so response time does not reveal which case
       applied.

  TOTP: pyotp, RFC 6238 (HMAC-SHA1, 6 digits, 30 s step) so standard
       authenticator apps work. One adjacent step is accepted for clock skew;
       pyotp compares in constant time.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

import bcrypt
import pyotp
from jose import jwt
from jose.exceptions import JWTError

from auth.models import Claims, Identity, IdentityStatus, Permission, Role, Session, TokenPair
from auth.permissions import effective_permissions
from auth.sessions import is_valid
from core.clock import Clock, utcnow
from core.errors import AuthFailure, Unauthenticated

if TYPE_CHECKING:
    from auth.sessions import SessionStore
    from auth.store import IdentityStore

logger = logging.getLogger("admingate.auth")

_ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes; the API layer caps password
    length well below the point where that matters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the store -- treat as a non-match
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("admingate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt verification without a real hash to compare against."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------


def generate_mfa_secret() -> str:
    """Return a new base32 TOTP secret (160 bits)."""
    return pyotp.random_base32()


def totp_code(secret: str, at: datetime, *, step: int = 30, digits: int = 6) -> str:
    return pyotp.TOTP(secret, digits=digits, interval=step).at(at)


def verify_totp(secret: str, code: str, at: datetime, *, step: int = 30) -> bool:
    """Check code against the current step and one step either side."""
    if not code or not code.isdigit():
        return False
    try:
        return pyotp.TOTP(secret, interval=step).verify(code, for_time=at, valid_window=1)
    except (ValueError, TypeError):
        logger.warning("Stored TOTP secret is not valid base32")
        return False


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues and validates access/refresh tokens bound to live sessions."""

    def __init__(
        self,
        secret_key: str,
        sessions: SessionStore,
        identities: IdentityStore,
        *,
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=7),
        issuer: str = "admingate",
        clock: Clock = utcnow,
    ) -> None:
        self._secret = secret_key
        self.sessions = sessions
        self.identities = identities
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.issuer = issuer
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, identity: Identity, device_id: str, session_id: str) -> TokenPair:
        """Mint an access/refresh pair for an authenticated identity and its session."""
        now = self._clock()
        return TokenPair(
            access_token=self._encode(identity, device_id, session_id, ACCESS, now, self.access_ttl),
            refresh_token=self._encode(identity, device_id, session_id, REFRESH, now, self.refresh_ttl),
            access_expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_in=int(self.refresh_ttl.total_seconds()),
        )

    def refresh(self, refresh_token: str) -> tuple[str, Claims]:
        """Exchange a refresh token for a new access token.

        The identity is re-read so the new token carries a fresh permission
        snapshot, and a suspended or banned identity cannot refresh.
        """
        claims = self.validate(refresh_token, expected_type=REFRESH)
        identity = self.identities.get_by_id(claims.subject)
        if identity is None or identity.status is not IdentityStatus.ACTIVE:
            raise Unauthenticated(reason=AuthFailure.SESSION_REVOKED)
        now = self._clock()
        token = self._encode(identity, claims.device_id, claims.session_id, ACCESS, now, self.access_ttl)
        return token, self._decode(token)

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate(self, token: str, *, expected_type: str = ACCESS) -> Claims:
        """Verify signature, purpose, expiry and the live session. Raises Unauthenticated."""
        claims, _ = self.validate_with_session(token, expected_type=expected_type)
        return claims

    def validate_with_session(self, token: str, *, expected_type: str = ACCESS) -> tuple[Claims, Session]:
        """validate(), also returning the session row it was checked against."""
        claims = self.peek(token, expected_type=expected_type)
        session = self.sessions.get(claims.session_id)
        if session is None or session.user_id != claims.subject or not is_valid(session, self._clock()):
            logger.warning("Token presented for revoked or expired session %s", claims.session_id[:8])
            raise Unauthenticated(reason=AuthFailure.SESSION_REVOKED)
        return claims, session

    def peek(self, token: str, *, expected_type: str = ACCESS) -> Claims:
        """Verify signature, purpose and expiry only -- no session lookup.

        Cheap enough to run before authentication (the rate-limit stage keys
        requests on it). Never use the result to authorize anything.
        """
        if not token:
            raise Unauthenticated(reason=AuthFailure.MISSING)
        claims = self._decode(token)
        if claims.token_type != expected_type:
            raise Unauthenticated(reason=AuthFailure.INVALID_SIGNATURE)
        if claims.expires_at <= self._clock():
            raise Unauthenticated(reason=AuthFailure.EXPIRED)
        return claims

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _encode(
        self,
        identity: Identity,
        device_id: str,
        session_id: str,
        token_type: str,
        now: datetime,
        ttl: timedelta,
    ) -> str:
        payload = {
            "iss": self.issuer,
            "sub": str(identity.id),
            "email": identity.email,
            "role": identity.role.value,
            "perms": sorted(p.value for p in effective_permissions(identity)),
            "did": device_id,
            "sid": session_id,
            "typ": token_type,
            "jti": secrets.token_hex(16),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def _decode(self, token: str) -> Claims:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                issuer=self.issuer,
                options={"verify_exp": False, "verify_iat": False},
            )
            return Claims(
                subject=int(payload["sub"]),
                email=payload["email"],
                role=Role(payload["role"]),
                permissions=frozenset(Permission(p) for p in payload["perms"]),
                device_id=payload["did"],
                session_id=payload["sid"],
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
                token_type=payload["typ"],
                token_id=payload["jti"],
            )
        except (JWTError, KeyError, ValueError, TypeError) as exc:
            raise Unauthenticated(reason=AuthFailure.INVALID_SIGNATURE) from exc


def make_token_service(settings, sessions: SessionStore, identities: IdentityStore, *, clock: Optional[Clock] = None) -> TokenService:
    """Build a TokenService from Settings (see core/config.py)."""
    return TokenService(
        settings.secret_key,
        sessions,
        identities,
        access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
        refresh_ttl=timedelta(seconds=settings.refresh_token_expire_seconds),
        issuer=settings.token_issuer,
        clock=clock or utcnow,
    )
