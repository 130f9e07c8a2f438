"""
api/main.py -- FastAPI application entry point for AdminGate.

Run with:      uvicorn asgi:app --reload
               (set DEBUG=true for a throwaway signing key in development)

Middleware stack (outermost to innermost):
  1. request id            -- assigns/echoes X-Request-ID
  2. request logging       -- one INFO line per request with latency
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  4. CORSMiddleware        -- adds CORS headers for allowed browser origins
  5. SlowAPIMiddleware     -- per-address limits from api.limiter (login)

Per-identity throttling, authentication, authorization and auditing are not
middleware: they are pipeline stages (api/pipeline.py) composed per route.

Lifespan handles startup (stores, services, session sweep task) and
shutdown (cancel sweep task, dispose engines) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.security import router as security_router
from api.routes.v1.sessions import router as sessions_router
from api.routes.v1.users import router as users_router
from api.services import Services, build_services
from core.config import get_settings
from core.errors import AdminGateError, RateLimited, Unauthenticated

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("admingate.api")

# ---------------------------------------------------------------------------
# Background session sweep
# ---------------------------------------------------------------------------


async def _sweep_loop(services: Services, interval: int) -> None:
    """Expire stale sessions and re-apply the per-user cap on a timer.

    The sweep is synchronous SQLAlchemy work, so it runs in a worker thread.
    A failed sweep is logged and retried next interval; CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(services.sessions.sweep)
        except SQLAlchemyError:
            logger.error("Session sweep failed", exc_info=True)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters: services first (every route reads
    app.state.services), then one synchronous sweep so sessions that expired
    while the server was down are marked before the first request, then the
    periodic sweep task.
    """
    settings = get_settings()
    logger.info("AdminGate API starting up")
    services = build_services(settings)
    app.state.services = services
    expired, capped = services.sessions.sweep()
    logger.info(
        "Services initialized (identities=%s, startup sweep: %d expired, %d capped)",
        services.identities.has_identities(),
        expired,
        capped,
    )
    app.state.sweep_task = asyncio.create_task(_sweep_loop(services, settings.session_sweep_interval_seconds))

    yield

    app.state.sweep_task.cancel()
    services.close()
    logger.info("AdminGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AdminGate API",
    description="Administrative authorization, session management and audit trail.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() and @app.middleware both wrap the existing stack, so the
# LAST registration is the OUTERMOST layer. Registration below therefore runs
# innermost-first: SlowAPI, CORS, TrustedHost, logging, request id.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# Attach the shared limiter to app.state so SlowAPIMiddleware can locate it.
# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor. Every request passes through this coroutine before
# reaching any route handler; wall-clock time around call_next is the latency.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s rid=%s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        getattr(request.state, "request_id", "-"),
    )
    return response


# ---------------------------------------------------------------------------
# Request id middleware (outermost)
#
# A well-formed inbound X-Request-ID is honoured so a proxy's id carries
# through; anything else is replaced. The id is echoed on every response and
# stamped into error envelopes and audit records.
# ---------------------------------------------------------------------------

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{8,64}$")


@app.middleware("http")
async def assign_request_id(request: Request, call_next):
    inbound = request.headers.get("X-Request-ID", "")
    request_id = inbound if _REQUEST_ID_RE.match(inbound) else uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(sessions_router, prefix="/api/v1", tags=["Sessions"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])
app.include_router(security_router, prefix="/api/v1", tags=["Security"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _envelope(request: Request, status_code: int, code: str, message: str, detail=None) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(
            code=code,
            message=message,
            request_id=getattr(request.state, "request_id", None),
            detail=detail,
        )
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True, exclude_none=True))


@app.exception_handler(AdminGateError)
async def admingate_error_handler(request: Request, exc: AdminGateError) -> JSONResponse:
    """Render the domain error taxonomy (core/errors.py).

    Internal errors show a generic message; the cause is already in the log.
    Unauthenticated never reveals its reason -- it is logged where raised.
    """
    message = exc.message if exc.status_code < 500 else "An unexpected error occurred."
    detail: Optional[dict] = exc.detail or None
    if isinstance(exc, RateLimited):
        detail = {**(detail or {}), "retry_after": exc.retry_after}
    response = _envelope(request, exc.status_code, exc.code, message, detail if exc.status_code < 500 else None)
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    if isinstance(exc, Unauthenticated):
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when the per-address login limit is exceeded.

    Retry-After is the full window of the breached limit; slowapi does not
    expose the remaining time on the exception.
    """
    retry_after = int(exc.limit.limit.get_expiry()) if getattr(exc, "limit", None) else 60
    response = _envelope(request, 429, "rate_limited", "Too many requests.", {"retry_after": retry_after})
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return _envelope(request, 422, "validation_error", "Request validation failed.", {"errors": errors})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for FastAPI/Starlette HTTP exceptions (404 on unknown routes, 405...)."""
    return _envelope(request, exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _envelope(request, 500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and component status."""
    services: Services = request.app.state.services
    components = {"app": "ok", **services.ping()}
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
