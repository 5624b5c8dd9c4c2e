"""Typed authentication errors surfaced to routers as detail/code payloads."""

from __future__ import annotations


class AuthError(Exception):
    """Base class for recoverable authentication and session failures."""

    detail = "Request failed."
    code = "invalid_token"
    status_code = 400

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.detail)
        if detail is not None:
            self.detail = detail


class InvalidCredentialsError(AuthError):
    """Primary credentials were rejected. The message never says which part was wrong."""

    detail = "Invalid email or password."
    code = "invalid_credentials"
    status_code = 401


class RateLimitedError(AuthError):
    """Too many attempts for the caller's rate-limit key."""

    detail = "Too many attempts. Try again later."
    code = "rate_limited"
    status_code = 429


class InvalidOrExpiredChallengeError(AuthError):
    """Two-factor challenge is unknown, expired, or already consumed."""

    detail = "Verification session expired. Please sign in again."
    code = "invalid_challenge"
    status_code = 401


class InvalidCodeError(AuthError):
    """Submitted one-time code did not verify."""

    detail = "Invalid verification code."
    code = "invalid_code"
    status_code = 401


class SessionNotFoundError(AuthError):
    """Referenced session does not exist for the user."""

    detail = "Session not found."
    code = "session_not_found"
    status_code = 404


class InvalidTokenError(AuthError):
    """Client token is missing, malformed, expired, or no longer backed by a session."""

    detail = "Invalid token."
    code = "invalid_token"
    status_code = 401


class ForbiddenError(AuthError):
    """Caller is authenticated but lacks the required role."""

    detail = "Insufficient role."
    code = "forbidden"
    status_code = 403


class TwoFactorStateError(AuthError):
    """Enrollment operation is not valid for the user's current 2FA state."""

    detail = "Two-factor authentication is not in the required state."
    code = "two_factor_state"
    status_code = 400


class StoreUnavailableError(AuthError):
    """Backing store could not be reached. Fatal for the current request."""

    detail = "Session backend unavailable."
    code = "service_unavailable"
    status_code = 503


class IdentityProviderUnavailableError(StoreUnavailableError):
    """External credential verifier failed or returned an unusable answer."""

    detail = "Identity provider unavailable."
