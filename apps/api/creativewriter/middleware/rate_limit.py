# apps/api/creativewriter/middleware/rate_limit.py
"""
Rate Limiting - CreativeWriter
Global + per-route rate limiting using slowapi, keyed by authenticated user
when known, otherwise by client IP.

In main.py:
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

Per route:
    @router.post("/create-order")
    @limiter.limit(payments_limit)
    async def create_order(request: Request, ...): ...
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from creativewriter.core.config import get_settings

logger = logging.getLogger(__name__)


def get_user_or_ip_key(request: Request) -> str:
    """Rate limit by authenticated user ID if present, otherwise by IP."""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return f"ip:{get_remote_address(request)}"


_settings = get_settings()

limiter = Limiter(
    key_func=get_user_or_ip_key,
    storage_uri=_settings.RATE_LIMIT_STORAGE_URI,
    default_limits=[_settings.RATE_LIMIT_DEFAULT],
    enabled=_settings.RATE_LIMIT_ENABLED,
)


def payments_limit() -> str:
    return get_settings().RATE_LIMIT_PAYMENTS


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(
        f"Rate limit exceeded on {request.url.path}",
        extra={"key": get_user_or_ip_key(request), "limit": str(exc.detail)},
    )
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please try again later.", "code": "RATE_LIMITED"},
        headers={"Retry-After": "60"},
    )
