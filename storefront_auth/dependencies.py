"""Shared FastAPI dependency helpers."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Annotated

from fastapi import Depends, Request

from storefront_auth.config import get_settings
from storefront_auth.errors import ForbiddenError, InvalidTokenError
from storefront_auth.middleware.client import extract_client_ip
from storefront_auth.services.login_service import (
    ClientContext,
    LoginService,
    SessionIdentity,
    get_login_service,
)


def extract_bearer_token(request: Request) -> str | None:
    """Extract bearer token from Authorization header."""
    authorization = request.headers.get("authorization", "").strip()
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def extract_session_token(request: Request) -> str | None:
    """Session cookie first, then an API client's bearer header."""
    cookie_name = get_settings().cookies.session_cookie_name
    return request.cookies.get(cookie_name) or extract_bearer_token(request)


def get_client_context(request: Request) -> ClientContext:
    return ClientContext(
        ip=extract_client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
    )


async def get_current_identity(
    request: Request,
    login_service: Annotated[LoginService, Depends(get_login_service)],
) -> SessionIdentity:
    """Resolve the caller's live session and record activity on it."""
    token = extract_session_token(request)
    if token is None:
        raise InvalidTokenError("Authentication required.")
    identity = await login_service.get_current_identity(token)
    if identity is None:
        raise InvalidTokenError()
    request.state.identity = identity
    return identity


def require_role(role: str) -> Callable[..., Awaitable[SessionIdentity]]:
    """Build a dependency that admits only callers holding role."""

    async def dependency(
        identity: Annotated[SessionIdentity, Depends(get_current_identity)],
    ) -> SessionIdentity:
        if identity.role != role:
            raise ForbiddenError()
        return identity

    return dependency
