"""
api/limiter.py -- Shared slowapi rate limiter instance.

Brute-force protection for the login and forgot-password routes lives here,
outside the orchestrators, which never retry or back off themselves.

Import this in api/main.py (to mount as middleware) and in the route modules
(to apply per-route limits with @limiter.limit()). A single shared instance
means every route shares the same in-memory counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
