"""Integration tests for global exception handlers."""

from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient

from storefront_auth.error_handlers import register_exception_handlers
from storefront_auth.errors import (
    InvalidCodeError,
    SessionNotFoundError,
    StoreUnavailableError,
)


def _build_error_app(environment: str = "production") -> FastAPI:
    """Build minimal app with registered global exception handlers."""
    app = FastAPI()
    register_exception_handlers(app, environment=environment)

    @app.get("/auth/http-exception")
    async def auth_http_exception() -> None:
        raise HTTPException(
            status_code=401, detail={"detail": "Invalid token.", "code": "invalid_token"}
        )

    @app.get("/auth/unhandled")
    async def auth_unhandled() -> None:
        raise RuntimeError("sensitive internal detail")

    @app.get("/auth/validation")
    async def auth_validation(required_value: int) -> dict[str, int]:
        return {"required_value": required_value}

    @app.get("/auth/invalid-code")
    async def invalid_code() -> None:
        raise InvalidCodeError()

    @app.get("/account/sessions/missing")
    async def missing_session() -> None:
        raise SessionNotFoundError()

    @app.get("/account/store-down")
    async def store_down() -> None:
        raise StoreUnavailableError("redis connection refused at 10.0.0.3")

    return app


async def _get(app: FastAPI, path: str):
    async with AsyncClient(
        transport=ASGITransport(app=app, raise_app_exceptions=False),
        base_url="http://testserver",
    ) as client:
        return await client.get(path)


@pytest.mark.asyncio
async def test_http_exception_uses_standard_error_shape() -> None:
    """HTTP exceptions are normalized to detail/code payload."""
    response = await _get(_build_error_app(), "/auth/http-exception")

    assert response.status_code == 401
    assert response.json() == {"detail": "Invalid token.", "code": "invalid_token"}


@pytest.mark.asyncio
async def test_unknown_route_uses_not_found_code() -> None:
    response = await _get(_build_error_app(), "/nowhere")

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_validation_error_uses_standard_error_shape() -> None:
    """Validation failures return standardized payload contract."""
    response = await _get(_build_error_app(), "/auth/validation")

    assert response.status_code == 422
    assert response.json() == {"detail": "Invalid request payload.", "code": "invalid_request"}


@pytest.mark.asyncio
async def test_validation_error_detail_is_verbose_in_development() -> None:
    response = await _get(_build_error_app(environment="development"), "/auth/validation")

    assert response.status_code == 422
    assert response.json()["detail"].startswith("Invalid request payload: ")


@pytest.mark.asyncio
async def test_domain_errors_map_to_their_status_and_code() -> None:
    app = _build_error_app()

    invalid_code = await _get(app, "/auth/invalid-code")
    missing = await _get(app, "/account/sessions/missing")

    assert invalid_code.status_code == 401
    assert invalid_code.json()["code"] == "invalid_code"
    assert missing.status_code == 404
    assert missing.json()["code"] == "session_not_found"


@pytest.mark.asyncio
async def test_store_outage_is_503_with_sanitized_detail() -> None:
    response = await _get(_build_error_app(environment="production"), "/account/store-down")

    assert response.status_code == 503
    assert response.json() == {
        "detail": "Service temporarily unavailable.",
        "code": "service_unavailable",
    }


@pytest.mark.asyncio
async def test_unhandled_error_hides_internal_detail_in_production() -> None:
    """Unhandled errors are sanitized in production mode."""
    response = await _get(_build_error_app(environment="production"), "/auth/unhandled")

    assert response.status_code == 500
    assert response.json() == {"detail": "Internal server error.", "code": "internal_error"}
