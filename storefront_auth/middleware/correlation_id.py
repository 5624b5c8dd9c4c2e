"""Correlation ID middleware."""

from __future__ import annotations

from uuid import uuid4

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

CORRELATION_ID_HEADER = "X-Correlation-ID"
_MAX_INBOUND_LENGTH = 128


def _inbound_correlation_id(request: Request) -> str | None:
    """Accept a caller-supplied id only when it is short and printable."""
    value = request.headers.get(CORRELATION_ID_HEADER, "").strip()
    if not value or len(value) > _MAX_INBOUND_LENGTH or not value.isprintable():
        return None
    return value


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation id visible in logs and the response."""

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = _inbound_correlation_id(request) or str(uuid4())
        request.state.correlation_id = correlation_id
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("correlation_id")

        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response
