"""
api/limiter.py -- Shared slowapi rate limiter for the auth endpoints.

api/main.py mounts it (SlowAPIMiddleware reads app.state.limiter) and
api/routes/v1/auth.py applies per-route limits with @limiter.limit() to the
credential-bearing endpoints: login, refresh-token and register.

One shared instance means one in-memory counter store. Limits are per client
IP; behind a reverse proxy run uvicorn with --proxy-headers so the client
address is the real caller rather than the proxy.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://", headers_enabled=False)
