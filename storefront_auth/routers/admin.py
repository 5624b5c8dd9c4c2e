"""Administrator view over any user's sessions."""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Response

from storefront_auth.dependencies import require_role
from storefront_auth.schemas.sessions import (
    RevokedSessionsResponse,
    SessionListResponse,
    SessionResponse,
)
from storefront_auth.services.login_service import LoginService, SessionIdentity, get_login_service

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin/users/{user_id}/sessions", tags=["admin"])

AdminIdentity = Annotated[SessionIdentity, Depends(require_role("admin"))]
Service = Annotated[LoginService, Depends(get_login_service)]


@router.get("", response_model=SessionListResponse)
async def list_user_sessions(
    user_id: str, admin: AdminIdentity, login_service: Service
) -> SessionListResponse:
    current = admin.session_id if user_id == admin.user_id else None
    views = await login_service.list_sessions(user_id, current)
    return SessionListResponse(sessions=[SessionResponse.from_view(view) for view in views])


@router.delete("/{session_id}", status_code=204, response_model=None)
async def revoke_user_session(
    user_id: str, session_id: str, admin: AdminIdentity, login_service: Service
) -> Response:
    """Force sign-out of one device belonging to user_id."""
    await login_service.revoke_session(user_id, session_id)
    logger.info("admin_session_revoked", admin_id=admin.user_id, user_id=user_id, session_id=session_id)
    return Response(status_code=204)


@router.delete("", response_model=RevokedSessionsResponse)
async def revoke_all_user_sessions(
    user_id: str, admin: AdminIdentity, login_service: Service
) -> RevokedSessionsResponse:
    keep = admin.session_id if user_id == admin.user_id else None
    revoked = await login_service.revoke_other_sessions(user_id, keep)
    logger.info("admin_sessions_revoked", admin_id=admin.user_id, user_id=user_id, count=revoked)
    return RevokedSessionsResponse(revoked=revoked)
