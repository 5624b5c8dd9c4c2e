"""Global exception handlers enforcing the `{"detail", "code"}` error contract."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from storefront_auth.errors import AuthError
from storefront_auth.middleware.client import extract_client_ip

VALID_ERROR_CODES = {
    "invalid_credentials",
    "rate_limited",
    "invalid_challenge",
    "invalid_code",
    "session_not_found",
    "invalid_token",
    "forbidden",
    "two_factor_state",
    "invalid_request",
    "not_found",
    "method_not_allowed",
    "service_unavailable",
    "internal_error",
}

_DEFAULT_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "invalid_request",
    401: "invalid_token",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    422: "invalid_request",
    429: "rate_limited",
    503: "service_unavailable",
}

_AUTH_PATH_PREFIXES = ("/auth", "/account", "/admin")

logger = structlog.get_logger(__name__)


def error_response(
    status_code: int, detail: str, code: str, headers: dict[str, str] | None = None
) -> JSONResponse:
    """Build standardized JSON error payload."""
    return JSONResponse(
        status_code=status_code, content={"detail": detail, "code": code}, headers=headers
    )


def _resolve_error_code(status_code: int, raw_code: str | None) -> str:
    if raw_code in VALID_ERROR_CODES:
        return raw_code
    return _DEFAULT_ERROR_CODE_BY_STATUS.get(status_code, "internal_error")


def _extract_detail_and_code(detail: Any) -> tuple[str, str | None]:
    """Normalize exception detail payload into message and optional code."""
    if isinstance(detail, dict):
        raw_code = detail.get("code")
        return str(detail.get("detail", "Request failed.")), str(raw_code) if raw_code else None
    if isinstance(detail, str):
        return detail, None
    return "Request failed.", None


def _sanitize_detail(detail: str, status_code: int, environment: str) -> str:
    """Hide internal failure details outside development."""
    if environment != "development" and status_code >= 500:
        return "Internal server error." if status_code == 500 else "Service temporarily unavailable."
    return detail


def log_auth_failure(request: Request, status_code: int, detail: str, code: str) -> None:
    """Emit a WARNING for 4xx responses on the authentication surfaces."""
    if status_code < 400 or status_code >= 500:
        return
    if not request.url.path.startswith(_AUTH_PATH_PREFIXES):
        return
    identity = getattr(request.state, "identity", None)
    logger.warning(
        "auth_failure",
        user_id=getattr(identity, "user_id", None),
        ip_address=extract_client_ip(request),
        status_code=status_code,
        code=code,
        detail=detail,
        path=request.url.path,
        method=request.method,
    )


def register_exception_handlers(app: FastAPI, environment: str) -> None:
    """Register global exception handlers enforcing the error shape contract."""

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError) -> JSONResponse:
        """Map typed domain failures straight to their status and code."""
        detail = _sanitize_detail(exc.detail, exc.status_code, environment)
        if exc.status_code >= 500:
            logger.error("backend_unavailable", path=request.url.path, error=exc.__class__.__name__)
        log_auth_failure(request=request, status_code=exc.status_code, detail=detail, code=exc.code)
        return error_response(status_code=exc.status_code, detail=detail, code=exc.code)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Normalize framework HTTP exceptions to contract payload."""
        raw_detail, raw_code = _extract_detail_and_code(exc.detail)
        code = _resolve_error_code(exc.status_code, raw_code)
        detail = _sanitize_detail(raw_detail, exc.status_code, environment)
        log_auth_failure(request=request, status_code=exc.status_code, detail=detail, code=code)
        return error_response(
            status_code=exc.status_code, detail=detail, code=code, headers=exc.headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_exception(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Map request validation errors to standardized payload."""
        detail = "Invalid request payload."
        if environment == "development":
            errors = exc.errors()
            if errors:
                detail = f"Invalid request payload: {errors[0].get('msg', 'validation error')}."
        log_auth_failure(request=request, status_code=422, detail=detail, code="invalid_request")
        return error_response(status_code=422, detail=detail, code="invalid_request")

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
        """Mask internal errors and enforce contract payload."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        detail = _sanitize_detail(str(exc), 500, environment)
        return error_response(status_code=500, detail=detail, code="internal_error")
