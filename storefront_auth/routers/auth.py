"""Login, two-factor verification, and logout routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from storefront_auth.config import CookieSettings, Settings, get_settings
from storefront_auth.dependencies import extract_session_token, get_client_context
from storefront_auth.error_handlers import error_response, log_auth_failure
from storefront_auth.errors import AuthError, InvalidOrExpiredChallengeError
from storefront_auth.schemas.auth import (
    LoginRequest,
    LoginResponse,
    SessionCheckResponse,
    TwoFactorVerifyRequest,
)
from storefront_auth.services.login_service import (
    ClientContext,
    LoginResult,
    LoginService,
    get_login_service,
)

router = APIRouter(prefix="/auth", tags=["auth"])


def set_token_cookie(response: Response, cookies: CookieSettings, name: str, value: str, max_age: int) -> None:
    """Write an HTTP-only cookie carrying a client token."""
    response.set_cookie(
        key=name,
        value=value,
        max_age=max_age,
        path=cookies.path,
        domain=cookies.domain,
        secure=cookies.secure,
        httponly=True,
        samesite=cookies.same_site,
    )


def clear_token_cookie(response: Response, cookies: CookieSettings, name: str) -> None:
    response.delete_cookie(
        key=name,
        path=cookies.path,
        domain=cookies.domain,
        secure=cookies.secure,
        httponly=True,
        samesite=cookies.same_site,
    )


def _auth_error_response(request: Request, exc: AuthError) -> JSONResponse:
    log_auth_failure(request=request, status_code=exc.status_code, detail=exc.detail, code=exc.code)
    return error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)


def _login_response(result: LoginResult, settings: Settings) -> JSONResponse:
    """Serialize the result and move the client onto the matching cookie."""
    cookies = settings.cookies
    response = JSONResponse(
        content=LoginResponse(
            status=result.status, token=result.token, expires_in=result.expires_in_seconds
        ).model_dump()
    )
    if result.status == "active":
        set_token_cookie(
            response, cookies, cookies.session_cookie_name, result.token, result.expires_in_seconds
        )
        clear_token_cookie(response, cookies, cookies.challenge_cookie_name)
    else:
        set_token_cookie(
            response, cookies, cookies.challenge_cookie_name, result.token, result.expires_in_seconds
        )
    return response


@router.post("/login", response_model=LoginResponse)
async def login(
    payload: LoginRequest,
    request: Request,
    client: Annotated[ClientContext, Depends(get_client_context)],
    login_service: Annotated[LoginService, Depends(get_login_service)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> JSONResponse:
    """Check primary credentials; answers `active` or `2fa_required`."""
    try:
        result = await login_service.login(payload.email, payload.password, client)
    except AuthError as exc:
        if exc.status_code >= 500:
            raise
        return _auth_error_response(request, exc)
    return _login_response(result, settings)


@router.post("/2fa/verify", response_model=LoginResponse)
async def verify_two_factor(
    payload: TwoFactorVerifyRequest,
    request: Request,
    client: Annotated[ClientContext, Depends(get_client_context)],
    login_service: Annotated[LoginService, Depends(get_login_service)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> JSONResponse:
    """Complete a pending login with a TOTP or backup code."""
    cookies = settings.cookies
    challenge_token = payload.challenge_token or request.cookies.get(cookies.challenge_cookie_name)
    if not challenge_token:
        return _auth_error_response(request, InvalidOrExpiredChallengeError())
    try:
        result = await login_service.verify_two_factor(challenge_token, payload.code, client)
    except InvalidOrExpiredChallengeError as exc:
        response = _auth_error_response(request, exc)
        clear_token_cookie(response, cookies, cookies.challenge_cookie_name)
        return response
    except AuthError as exc:
        if exc.status_code >= 500:
            raise
        return _auth_error_response(request, exc)
    return _login_response(result, settings)


@router.post("/logout", status_code=204, response_model=None)
async def logout(
    request: Request,
    login_service: Annotated[LoginService, Depends(get_login_service)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> Response:
    """Revoke the caller's session and clear its cookie; always 204."""
    await login_service.logout(extract_session_token(request))
    response = Response(status_code=204)
    clear_token_cookie(response, settings.cookies, settings.cookies.session_cookie_name)
    return response


@router.get("/session", response_model=SessionCheckResponse)
async def check_session(
    request: Request,
    login_service: Annotated[LoginService, Depends(get_login_service)],
) -> SessionCheckResponse:
    """Report whether the caller's session token is valid without touching its activity.

    Missing, malformed, expired, revoked, and challenge tokens all answer
    ``authenticated: false`` with a 200.
    """
    token = extract_session_token(request)
    if token is None:
        return SessionCheckResponse(authenticated=False)
    identity = await login_service.get_current_identity(token, record_activity=False)
    if identity is None:
        return SessionCheckResponse(authenticated=False)
    return SessionCheckResponse(
        authenticated=True,
        user_id=identity.user_id,
        session_id=identity.session_id,
        role=identity.role,
    )
