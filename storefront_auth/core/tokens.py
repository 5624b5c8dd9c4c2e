"""Signed opaque client tokens for sessions and two-factor challenges."""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any, Literal
from uuid import uuid4

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from storefront_auth.config import get_settings
from storefront_auth.errors import InvalidTokenError

TokenType = Literal["session", "2fa_challenge"]
JWT_ALGORITHM = "RS256"


@dataclass(frozen=True)
class SessionClaims:
    """Verified claims of a full session token."""

    user_id: str
    session_id: str
    expires_at: datetime
    role: str = "user"


@dataclass(frozen=True)
class ChallengeClaims:
    """Verified claims of a narrow two-factor challenge token."""

    user_id: str
    pending_login_id: str
    expires_at: datetime


class TokenService:
    """Issue and verify RS256 client tokens.

    Session tokens bind ``{sub, sid, role}``. Challenge tokens bind ``{sub, pid}``
    and carry a different ``type`` claim, so one can never stand in for the other.
    """

    def __init__(self, private_key_pem: str, public_key_pem: str, issuer: str) -> None:
        self._private_key_pem = private_key_pem
        self._public_key_pem = public_key_pem
        self._issuer = issuer

    def issue_session_token(
        self, user_id: str, session_id: str, expires_in_seconds: int, role: str = "user"
    ) -> str:
        """Issue a full session token."""
        return self._issue(
            subject=user_id,
            token_type="session",
            expires_in_seconds=expires_in_seconds,
            claims={"sid": session_id, "role": role},
        )

    def issue_challenge_token(
        self, user_id: str, pending_login_id: str, expires_in_seconds: int
    ) -> str:
        """Issue a token that only proves primary credentials were accepted."""
        return self._issue(
            subject=user_id,
            token_type="2fa_challenge",
            expires_in_seconds=expires_in_seconds,
            claims={"pid": pending_login_id},
        )

    def verify_session_token(self, token: str) -> SessionClaims:
        """Verify a session token and return its bound identifiers."""
        payload = self._verify(token, expected_type="session")
        session_id = payload.get("sid")
        if not isinstance(session_id, str) or not session_id:
            raise InvalidTokenError()
        return SessionClaims(
            user_id=str(payload["sub"]),
            session_id=session_id,
            expires_at=datetime.fromtimestamp(int(payload["exp"]), UTC),
            role="admin" if payload.get("role") == "admin" else "user",
        )

    def verify_challenge_token(self, token: str) -> ChallengeClaims:
        """Verify a challenge token and return the pending-login reference."""
        payload = self._verify(token, expected_type="2fa_challenge")
        pending_login_id = payload.get("pid")
        if not isinstance(pending_login_id, str) or not pending_login_id:
            raise InvalidTokenError()
        return ChallengeClaims(
            user_id=str(payload["sub"]),
            pending_login_id=pending_login_id,
            expires_at=datetime.fromtimestamp(int(payload["exp"]), UTC),
        )

    def _issue(
        self,
        subject: str,
        token_type: TokenType,
        expires_in_seconds: int,
        claims: dict[str, Any],
    ) -> str:
        """Issue a signed JWT with required claims."""
        issued_at = datetime.now(UTC)
        expires_at = issued_at + timedelta(seconds=expires_in_seconds)
        payload = {
            "jti": str(uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self._issuer,
            "sub": subject,
            "type": token_type,
        }
        for key, value in claims.items():
            payload.setdefault(key, value)
        return jwt.encode(payload, self._private_key_pem, algorithm=JWT_ALGORITHM)

    def _verify(self, token: str, expected_type: TokenType) -> dict[str, Any]:
        """Verify signature, expiry, issuer, and token type."""
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise InvalidTokenError() from exc
        algorithm = str(header.get("alg", ""))
        if not hmac.compare_digest(algorithm, JWT_ALGORITHM):
            raise InvalidTokenError("Invalid token algorithm.")

        try:
            payload = jwt.decode(
                token,
                self._public_key_pem,
                algorithms=[JWT_ALGORITHM],
                issuer=self._issuer,
                options={
                    "verify_aud": False,
                    "require_jti": True,
                    "require_iat": True,
                    "require_exp": True,
                    "require_sub": True,
                },
            )
        except ExpiredSignatureError as exc:
            raise InvalidTokenError("Token has expired.") from exc
        except JWTError as exc:
            raise InvalidTokenError() from exc

        token_type = str(payload.get("type", ""))
        if not hmac.compare_digest(token_type, expected_type):
            raise InvalidTokenError("Invalid token type.")
        return payload


@lru_cache
def get_token_service() -> TokenService:
    """Build and cache the token service from application settings."""
    settings = get_settings()
    return TokenService(
        private_key_pem=settings.tokens.private_key_pem.get_secret_value(),
        public_key_pem=settings.tokens.public_key_pem.get_secret_value(),
        issuer=settings.tokens.issuer,
    )
