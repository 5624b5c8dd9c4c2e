"""Integration fixtures: an in-process app on the memory backend, and real Redis/Postgres via testcontainers."""

from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator, Callable, Iterator
from typing import Any

import pytest
from alembic import command
from alembic.config import Config
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from docker.errors import DockerException

SHOPPER_EMAIL = "shopper@example.com"
SHOPPER_PASSWORD = "correct horse battery staple"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-password-1"


def _generate_rsa_keypair() -> tuple[str, str]:
    """Generate PEM-encoded RSA private/public keypair for integration settings."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("utf-8")
    )
    return private_pem, public_pem


def clear_dependency_caches() -> None:
    """Clear every lru-cached singleton so the next call rereads settings."""
    from storefront_auth.config import get_settings
    from storefront_auth.core.pending import get_pending_login_store
    from storefront_auth.core.rate_limit import get_rate_limiter
    from storefront_auth.core.sessions import get_redis_client, get_session_store
    from storefront_auth.core.tokens import get_token_service
    from storefront_auth.core.two_factor import get_two_factor_store
    from storefront_auth.db.session import get_engine, get_session_factory
    from storefront_auth.services.credentials import get_credential_verifier
    from storefront_auth.services.login_service import get_login_service
    from storefront_auth.services.two_factor_service import get_two_factor_service

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
    get_redis_client.cache_clear()
    get_session_store.cache_clear()
    get_pending_login_store.cache_clear()
    get_rate_limiter.cache_clear()
    get_token_service.cache_clear()
    get_two_factor_store.cache_clear()
    get_credential_verifier.cache_clear()
    get_login_service.cache_clear()
    get_two_factor_service.cache_clear()


async def _dispose_async_singletons() -> None:
    """Close loop-bound clients before the event loop changes."""
    from storefront_auth.core.sessions import get_redis_client
    from storefront_auth.db.session import dispose_engine, get_engine

    if get_redis_client.cache_info().currsize:
        await get_redis_client().aclose()
    if get_engine.cache_info().currsize:
        await dispose_engine()


def _static_identities() -> str:
    from storefront_auth.services.credentials import StaticCredentialVerifier

    hasher = StaticCredentialVerifier(identities=[])
    return json.dumps(
        [
            {
                "user_id": "user-shopper",
                "email": SHOPPER_EMAIL,
                "password_hash": hasher.hash_password(SHOPPER_PASSWORD),
                "role": "user",
            },
            {
                "user_id": "user-admin",
                "email": ADMIN_EMAIL,
                "password_hash": hasher.hash_password(ADMIN_PASSWORD),
                "role": "admin",
            },
        ]
    )


@pytest.fixture(scope="session")
def base_env() -> dict[str, str]:
    """Settings shared by every integration app; keys are generated once per run."""
    private_pem, public_pem = _generate_rsa_keypair()
    return {
        "APP__ENVIRONMENT": "development",
        "APP__SERVICE": "storefront-auth",
        "APP__LOG_LEVEL": "INFO",
        "TOKENS__PRIVATE_KEY_PEM": private_pem,
        "TOKENS__PUBLIC_KEY_PEM": public_pem,
        "IDENTITY__PROVIDER": "static",
        "IDENTITY__STATIC_IDENTITIES": _static_identities(),
        "COOKIES__SECURE": "false",
        "RATE_LIMIT__DEFAULT_REQUESTS_PER_MINUTE": "10000",
        "RATE_LIMIT__LOGIN_MAX_ATTEMPTS": "50",
    }


@pytest.fixture
def configure_env(
    monkeypatch: pytest.MonkeyPatch, base_env: dict[str, str]
) -> Iterator[Callable[..., None]]:
    """Apply base settings plus per-test overrides, then reset cached singletons."""

    def _apply(**overrides: str) -> None:
        for key, value in {**base_env, **overrides}.items():
            monkeypatch.setenv(key, value)
        clear_dependency_caches()

    yield _apply
    clear_dependency_caches()


@pytest.fixture
def memory_app(configure_env: Callable[..., None]) -> Callable[..., Any]:
    """Build an app on the in-memory backend, with optional env overrides."""

    def _factory(**overrides: str) -> Any:
        from storefront_auth.main import create_app

        configure_env(STORE__BACKEND="memory", **overrides)
        return create_app()

    return _factory


@pytest.fixture
async def client(memory_app: Callable[..., Any]) -> AsyncIterator[AsyncClient]:
    """HTTP client for a fresh memory-backed app."""
    app = memory_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as http:
        yield http


def _redis_connection_url(redis: RedisContainer) -> str:
    """Return a redis:// URL across testcontainers versions."""
    get_url = getattr(redis, "get_connection_url", None)
    if callable(get_url):
        redis_url = get_url()
    else:
        host = redis.get_container_host_ip()
        port = redis.get_exposed_port(6379)
        redis_url = f"redis://{host}:{port}"
    if not redis_url.endswith("/0"):
        redis_url = f"{redis_url}/0"
    return redis_url


def _postgres_async_url(postgres: PostgresContainer) -> str:
    """Return a postgresql+asyncpg URL across testcontainers versions."""
    try:
        postgres_url = postgres.get_connection_url(driver=None)
    except TypeError:
        postgres_url = postgres.get_connection_url()

    if postgres_url.startswith("postgresql+"):
        postgres_url = "postgresql://" + postgres_url.split("://", 1)[1]

    return postgres_url.replace("postgresql://", "postgresql+asyncpg://", 1)


@pytest.fixture(scope="session")
def container_urls() -> Iterator[dict[str, str]]:
    """Start Postgres/Redis containers once per run; skip when Docker is missing."""
    try:
        postgres = PostgresContainer("postgres:16")
        redis = RedisContainer("redis:7")
        postgres.start()
        redis.start()
    except DockerException as exc:
        if os.environ.get("CI", "").lower() in {"1", "true", "yes"}:
            pytest.fail(f"Docker daemon unavailable in CI for testcontainers-backed tests: {exc}")
        pytest.skip(f"Docker daemon unavailable for testcontainers-backed tests: {exc}")

    database_url = _postgres_async_url(postgres)
    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, "head")

    try:
        yield {"database_url": database_url, "redis_url": _redis_connection_url(redis)}
    finally:
        postgres.stop()
        redis.stop()


@pytest.fixture
async def real_backends(
    configure_env: Callable[..., None], container_urls: dict[str, str]
) -> AsyncIterator[dict[str, str]]:
    """Point settings at the migrated containers and start from empty stores."""
    from storefront_auth.core.sessions import get_redis_client
    from storefront_auth.db.session import get_session_factory
    from storefront_auth.models.two_factor import TwoFactorEnrollmentRecord

    configure_env(
        STORE__BACKEND="redis",
        REDIS__URL=container_urls["redis_url"],
        DATABASE__URL=container_urls["database_url"],
    )
    async with get_session_factory()() as db_session:
        await db_session.execute(delete(TwoFactorEnrollmentRecord))
        await db_session.commit()
    await get_redis_client().flushdb()
    try:
        yield container_urls
    finally:
        await _dispose_async_singletons()
        clear_dependency_caches()
