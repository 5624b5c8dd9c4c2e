"""Per-client request ceiling applied to every path."""

from __future__ import annotations

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from storefront_auth.config import get_settings
from storefront_auth.core.rate_limit import RateLimiter, get_rate_limiter
from storefront_auth.middleware.client import extract_client_ip

logger = structlog.get_logger(__name__)
_WINDOW_MILLISECONDS = 60_000
_EXEMPT_PATHS = frozenset({"/health/live", "/health/ready", "/metrics"})


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Reject callers exceeding the default requests-per-minute ceiling.

    Counting goes through the shared RateLimiter, which fails open when its
    backend is unreachable.
    """

    def __init__(
        self,
        app,
        rate_limiter: RateLimiter | None = None,
        requests_per_minute: int | None = None,
    ) -> None:
        super().__init__(app)
        self._rate_limiter = rate_limiter
        if requests_per_minute is None:
            requests_per_minute = get_settings().rate_limit.default_requests_per_minute
        self._limit = requests_per_minute

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if path in _EXEMPT_PATHS:
            return await call_next(request)

        client_ip = extract_client_ip(request)
        limiter = self._rate_limiter or get_rate_limiter()
        if await limiter.is_rate_limited(f"request:ip:{client_ip}", self._limit, _WINDOW_MILLISECONDS):
            logger.warning("request_rate_limited", path=path, method=request.method, client_ip=client_ip)
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded.", "code": "rate_limited"},
                headers={"Retry-After": str(_WINDOW_MILLISECONDS // 1000)},
            )
        return await call_next(request)
