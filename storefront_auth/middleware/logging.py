"""Structured request logging with credential and one-time-code redaction."""

from __future__ import annotations

from time import perf_counter
from typing import Any

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from storefront_auth.middleware.client import extract_client_ip

SENSITIVE_KEYS = {
    "authorization",
    "backup_code",
    "challenge",
    "code",
    "cookie",
    "otp",
    "password",
    "secret",
    "set-cookie",
    "totp",
}
REDACTED = "***REDACTED***"

logger = structlog.get_logger(__name__)


def _is_sensitive_key(key: str) -> bool:
    """Return True when key likely carries a credential, token, or one-time code."""
    normalized = key.lower().replace("-", "_")
    if normalized in SENSITIVE_KEYS:
        return True
    return any(marker in normalized for marker in ("token", "password", "secret", "code"))


def redact_mapping(values: dict[str, Any]) -> dict[str, Any]:
    """Return a copy with sensitive values replaced, recursing into nested data."""
    redacted: dict[str, Any] = {}
    for key, value in values.items():
        if _is_sensitive_key(key):
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact_mapping(value)
        elif isinstance(value, list):
            redacted[key] = [redact_mapping(item) if isinstance(item, dict) else item for item in value]
        else:
            redacted[key] = value
    return redacted


class LoggingMiddleware(BaseHTTPMiddleware):
    """Emit one `request_completed` event per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        start = perf_counter()
        fields = {
            "method": request.method,
            "path": request.url.path,
            "query_params": redact_mapping(dict(request.query_params.items())),
            "client_ip": extract_client_ip(request),
            "user_agent": request.headers.get("user-agent", ""),
        }

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_completed",
                status_code=500,
                duration_ms=round((perf_counter() - start) * 1000, 2),
                **fields,
            )
            raise

        event_logger = logger.warning if response.status_code >= 400 else logger.info
        event_logger(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((perf_counter() - start) * 1000, 2),
            **fields,
        )
        return response
