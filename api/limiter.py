"""
api/limiter.py -- Shared slowapi limiter for the pre-authentication endpoints.

The login endpoints have no identity to key on, so they are throttled per
source address here (LOGIN_RATE_LIMIT, default 10/minute), in front of the
per-account lockout in auth/login.py. Authenticated endpoints are throttled
per identity by auth/ratelimit.py inside the request pipeline instead.

Using a single shared instance ensures all routes share the same counter
store. If this were instantiated in each module separately, each module
would get its own isolated counter and rate limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri=get_settings().rate_limit_storage_uri)


def login_limit() -> str:
    """Limit string for @limiter.limit, read from Settings at request time."""
    return get_settings().login_rate_limit
