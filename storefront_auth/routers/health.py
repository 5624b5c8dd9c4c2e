"""Health check router endpoints."""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from storefront_auth.config import Settings, get_settings
from storefront_auth.core.sessions import get_redis_client
from storefront_auth.db.session import get_engine

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


async def check_postgres_ready() -> bool:
    """Return True when Postgres accepts a lightweight query."""
    try:
        async with get_engine().connect() as connection:
            await connection.execute(select(1))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("readiness_check_failed", dependency="postgres", error=exc.__class__.__name__)
        return False
    return True


async def check_redis_ready() -> bool:
    """Return True when Redis responds to PING."""
    try:
        return bool(await get_redis_client().ping())
    except (RedisError, OSError) as exc:
        logger.warning("readiness_check_failed", dependency="redis", error=exc.__class__.__name__)
        return False


async def check_backends_ready(settings: Annotated[Settings, Depends(get_settings)]) -> bool:
    """The memory backend is always ready; the Redis backend needs Redis and Postgres."""
    if settings.store.backend == "memory":
        return True
    return await check_redis_ready() and await check_postgres_ready()


@router.get("/live")
async def live() -> dict[str, str]:
    """Liveness probe endpoint."""
    return {"status": "live"}


@router.get("/ready")
async def ready(backends_ready: Annotated[bool, Depends(check_backends_ready)]) -> dict[str, str]:
    """Readiness probe over the configured backing stores."""
    if not backends_ready:
        raise HTTPException(
            status_code=503,
            detail={"detail": "Service not ready.", "code": "service_unavailable"},
        )
    return {"status": "ready"}
