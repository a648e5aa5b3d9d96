"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Counters live in process memory, so limits are per worker process and reset
on restart. A second Limiter instance would keep its own counters and never
see the hits recorded by this one.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Limit string for POST /auth/login, read from LOGIN_RATE_LIMIT."""
    return get_settings().login_rate_limit
