"""
api/routes/v1/auth.py -- Login, token refresh, logout and identity endpoints.

Routes:
  POST /api/v1/auth/login        -- password (+ TOTP) login; sets cookies
  POST /api/v1/auth/admin/login  -- same, admin-console policy (MFA may be required), audited
  POST /api/v1/auth/refresh      -- refresh token -> new access token
  POST /api/v1/auth/logout       -- terminates the current session (requires auth)
  GET  /api/v1/auth/me           -- identity, effective permissions, session (requires auth)

Security:
  Login and refresh are throttled per source address by slowapi
  (LOGIN_RATE_LIMIT) because no identity exists yet; the per-account
  lockout runs inside LoginService.
  Wrong password, unknown email, suspended account and bad TOTP code all
  produce the same 401 body. A locked account produces 423 whatever the
  password.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit
from api.models import IdentityResponse, LoginRequest, LoginResponse, MeResponse, RefreshRequest, RefreshResponse, SessionResponse
from api.pipeline import RequestContext, admin_operation, request_context
from api.services import Services
from audit.models import AuditAction, AuditContext, ResourceType
from auth.dependencies import ACCESS_COOKIE, REFRESH_COOKIE, clear_auth_cookies, client_address, set_auth_cookies
from auth.login import LoginResult
from core.errors import AuthFailure, Unauthenticated

# Auth policy:
# - POST /auth/login, /auth/admin/login, /auth/refresh: public, slowapi per-address limit
# - POST /auth/logout: pipeline (rate limit, authenticate, audit)
# - GET  /auth/me:     pipeline (rate limit, authenticate)
router = APIRouter()

_logout = admin_operation(action=AuditAction.AUTH_LOGOUT, resource_type=ResourceType.SESSION)
_me = admin_operation()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return tokens and set cookies."""
    services: Services = request.app.state.services
    result = services.login.login(
        body.email,
        body.password,
        client_address(request),
        body.device_id,
        mfa_code=body.mfa_code,
    )
    return _login_response(services, result)


@limiter.limit(login_limit)
@router.post("/auth/admin/login", response_model=LoginResponse)
def admin_login(request: Request, body: LoginRequest) -> JSONResponse:
    """Admin-console login. Enforces ADMIN_MFA_REQUIRED and leaves an audit record."""
    services: Services = request.app.state.services
    result = services.login.login(
        body.email,
        body.password,
        client_address(request),
        body.device_id,
        mfa_code=body.mfa_code,
        admin_console=True,
    )
    services.audit.record(
        actor_id=result.identity.id,
        actor_email=result.identity.email,
        action=AuditAction.AUTH_ADMIN_LOGIN,
        resource_type=ResourceType.SESSION,
        resource_id=result.session.session_id,
        details={"device_id": body.device_id},
        context=AuditContext(
            source_address=client_address(request),
            session_id=result.session.session_id,
            request_id=getattr(request.state, "request_id", None),
        ),
    )
    return _login_response(services, result)


@limiter.limit(login_limit)
@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Exchange a refresh token (body or cookie) for a new access token."""
    services: Services = request.app.state.services
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise Unauthenticated(reason=AuthFailure.MISSING)
    access_token, claims = services.tokens.refresh(token)
    expires_in = int((claims.expires_at - claims.issued_at).total_seconds())
    resp = JSONResponse(content=RefreshResponse(access_token=access_token, expires_in=expires_in).model_dump())
    resp.set_cookie(
        key=ACCESS_COOKIE,
        value=access_token,
        max_age=expires_in,
        httponly=True,
        secure=services.settings.secure_cookies,
        samesite="strict",
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout")
def logout(ctx: RequestContext = Depends(request_context)) -> JSONResponse:
    """Terminate the current session. Every token minted for it stops working."""

    def handler(ctx: RequestContext) -> JSONResponse:
        session_id = ctx.session.session_id
        ctx.services.sessions.terminate(session_id, reason="logout")
        ctx.audit_resource_id = session_id
        resp = JSONResponse(content={"message": "Logged out."})
        clear_auth_cookies(resp)
        return resp

    return _logout.run(ctx, handler)


@router.get("/auth/me", response_model=MeResponse)
def me(ctx: RequestContext = Depends(request_context)) -> MeResponse:
    """Return the caller's identity, effective permissions and current session."""

    def handler(ctx: RequestContext) -> MeResponse:
        return MeResponse(
            identity=IdentityResponse.from_identity(ctx.identity),
            session=SessionResponse.from_session(ctx.session, ctx.services.clock(), ctx.session.session_id),
        )

    return _me.run(ctx, handler)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _login_response(services: Services, result: LoginResult) -> JSONResponse:
    tokens = result.tokens
    resp = JSONResponse(
        content=LoginResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.access_expires_in,
            refresh_expires_in=tokens.refresh_expires_in,
            session_id=result.session.session_id,
            identity=IdentityResponse.from_identity(result.identity),
        ).model_dump(mode="json")
    )
    set_auth_cookies(resp, tokens, secure=services.settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp
