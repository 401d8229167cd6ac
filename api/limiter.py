"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in route modules that
apply per-route limits with @limiter.limit().

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

The login limit comes from the Settings of the app serving the request
(request.app.state.settings.login_rate_limit). slowapi hands a limit provider
only the rate-limit key, never the request, so login_key() puts the limit
string in front of the client address and login_rate_limit() reads it back.
Apps built with different settings therefore keep separate counters.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

_KEY_SEPARATOR = "|"


def login_key(request: Request) -> str:
    """Rate-limit key for POST /auth/login: "<limit>|<client address>"."""
    return f"{request.app.state.settings.login_rate_limit}{_KEY_SEPARATOR}{get_remote_address(request)}"


def login_rate_limit(key: str) -> str:
    """Limit provider paired with login_key()."""
    return key.split(_KEY_SEPARATOR, 1)[0]
