"""
api/limiter.py -- Shared rate limiter and caller identity for the auth routes.

The RateLimiter is built once in the lifespan and stored on app.state, so every
route shares the same counter storage. If each module built its own, each
would get an isolated counter and limits would never trigger.

Caller identity is the client address as slowapi resolves it.
"""

from __future__ import annotations

from fastapi import Request
from slowapi.util import get_remote_address

from auth.rate_limit import RateLimiter
from core.config import Settings


def build_limiter(settings: Settings) -> RateLimiter:
    return RateLimiter(
        settings.route_limits(),
        default_limit=settings.default_rate_limit,
        storage_uri=settings.rate_limit_storage_uri,
    )


def caller_identity(request: Request) -> str:
    return get_remote_address(request) or "unknown"
