"""Signed-in devices of the current user."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response

from storefront_auth.dependencies import get_current_identity
from storefront_auth.schemas.sessions import (
    RevokedSessionsResponse,
    SessionListResponse,
    SessionResponse,
)
from storefront_auth.services.login_service import LoginService, SessionIdentity, get_login_service

router = APIRouter(prefix="/account/sessions", tags=["sessions"])

CurrentIdentity = Annotated[SessionIdentity, Depends(get_current_identity)]
Service = Annotated[LoginService, Depends(get_login_service)]


@router.get("", response_model=SessionListResponse)
async def list_sessions(identity: CurrentIdentity, login_service: Service) -> SessionListResponse:
    """List live sessions, most recently active first, flagging the current one."""
    views = await login_service.list_sessions(identity.user_id, identity.session_id)
    return SessionListResponse(sessions=[SessionResponse.from_view(view) for view in views])


@router.delete("/{session_id}", status_code=204, response_model=None)
async def revoke_session(session_id: str, identity: CurrentIdentity, login_service: Service) -> Response:
    """Sign out one of the caller's devices."""
    await login_service.revoke_session(identity.user_id, session_id)
    return Response(status_code=204)


@router.delete("", response_model=RevokedSessionsResponse)
async def revoke_other_sessions(
    identity: CurrentIdentity, login_service: Service
) -> RevokedSessionsResponse:
    """Sign out every device except the one making the request."""
    revoked = await login_service.revoke_other_sessions(identity.user_id, identity.session_id)
    return RevokedSessionsResponse(revoked=revoked)


@router.post("/activity", status_code=204, response_model=None)
async def heartbeat(identity: CurrentIdentity) -> Response:
    # Resolving the identity already bumped last activity.
    return Response(status_code=204)
