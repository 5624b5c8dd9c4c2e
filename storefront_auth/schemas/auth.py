"""Login and two-factor challenge schemas."""

from typing import Literal

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    """Password login request payload."""

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=256)


class TwoFactorVerifyRequest(BaseModel):
    """Second-step payload; the challenge token may come from the cookie instead."""

    code: str = Field(min_length=6, max_length=16)
    challenge_token: str | None = Field(default=None, max_length=4096)


class LoginResponse(BaseModel):
    """Login step outcome; the token is also set as an HTTP-only cookie."""

    status: Literal["active", "2fa_required"]
    token: str
    expires_in: int


class SessionCheckResponse(BaseModel):
    """Whether the presented session token maps to a live session."""

    authenticated: bool
    user_id: str | None = None
    session_id: str | None = None
    role: str | None = None
