"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
(to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same counter
store. Limits are counted per client IP. With CACHE_URL pointing at Redis the
counters are shared between workers; with memory:// each process counts on
its own.

Limit strings are read from settings on each request (callables), so tests
and deployments can change them without re-importing the routes.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_cache_url = get_settings().cache_url

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=_cache_url if _cache_url.startswith(("redis://", "rediss://")) else "memory://",
)


def login_limit() -> str:
    return get_settings().login_rate_limit


def register_limit() -> str:
    return get_settings().register_rate_limit


def recovery_limit() -> str:
    return get_settings().forgot_password_rate_limit
