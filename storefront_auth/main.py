"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from storefront_auth.config import configure_structlog, get_settings
from storefront_auth.core.sessions import get_redis_client
from storefront_auth.db.session import dispose_engine
from storefront_auth.error_handlers import register_exception_handlers
from storefront_auth.middleware.client import configure_trusted_proxies
from storefront_auth.middleware.correlation_id import CorrelationIdMiddleware
from storefront_auth.middleware.logging import LoggingMiddleware
from storefront_auth.middleware.metrics import MetricsMiddleware, build_metrics_endpoint
from storefront_auth.middleware.rate_limit import RateLimitMiddleware
from storefront_auth.middleware.security_headers import SecurityHeadersMiddleware
from storefront_auth.routers import admin, auth, health, sessions, two_factor
from storefront_auth.services.credentials import HttpCredentialVerifier, get_credential_verifier

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Release pooled connections on shutdown."""
    yield
    settings = get_settings()
    verifier = get_credential_verifier()
    if isinstance(verifier, HttpCredentialVerifier):
        await verifier.aclose()
    if settings.store.backend == "redis":
        await get_redis_client().aclose()
        await dispose_engine()
    logger.info("service_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Run with ``uvicorn --factory storefront_auth.main:create_app``.
    """
    settings = get_settings()
    configure_structlog(settings)
    configure_trusted_proxies(settings.rate_limit.trusted_proxies)

    app = FastAPI(title=settings.app.service, lifespan=lifespan)
    register_exception_handlers(app, environment=settings.app.environment)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    app.add_api_route("/metrics", build_metrics_endpoint(), methods=["GET"], include_in_schema=False)
    app.include_router(auth.router)
    app.include_router(sessions.router)
    app.include_router(two_factor.router)
    app.include_router(admin.router)
    app.include_router(health.router)
    return app
