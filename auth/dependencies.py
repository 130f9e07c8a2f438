"""
auth/dependencies.py -- FastAPI request helpers for credential extraction.

Two credential carriers are accepted, checked in priority order:
  1. Authorization: Bearer <token> header -- API clients and the admin console.
  2. "access_token" cookie -- set by the login endpoints for browser clients.

These helpers only extract. Validation happens in the authenticate stage of
api/pipeline.py, which has the session store at hand.

Layer rule: auth/dependencies.py may import from fastapi (Request/Response)
because this module is part of the FastAPI dependency injection system. It
does not import from api/ or audit/.
"""

from __future__ import annotations

from fastapi import Request, Response

from auth.models import TokenPair

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def bearer_token(request: Request) -> str | None:
    """Return the access token carried by the request, or None."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get(ACCESS_COOKIE) or None


def client_address(request: Request) -> str:
    """Source address as seen by the ASGI server.

    X-Forwarded-For is deliberately ignored: behind a proxy, run uvicorn with
    --proxy-headers so request.client already reflects the real peer.
    """
    return request.client.host if request.client else "unknown"


def set_auth_cookies(response: Response, tokens: TokenPair, *, secure: bool) -> None:
    """Set httpOnly access/refresh cookies. The refresh cookie is scoped to the refresh path."""
    response.set_cookie(
        key=ACCESS_COOKIE,
        value=tokens.access_token,
        max_age=tokens.access_expires_in,
        httponly=True,
        secure=secure,
        samesite="strict",
    )
    response.set_cookie(
        key=REFRESH_COOKIE,
        value=tokens.refresh_token,
        max_age=tokens.refresh_expires_in,
        httponly=True,
        secure=secure,
        samesite="strict",
        path="/api/v1/auth/refresh",
    )


def clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE, path="/api/v1/auth/refresh")
