"""Primary-credential verification delegated to the external identity system."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

import httpx
import structlog
from passlib.context import CryptContext

from storefront_auth.config import StaticIdentity, get_settings
from storefront_auth.errors import IdentityProviderUnavailableError, InvalidCredentialsError

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(connect=2.0, read=5.0, write=5.0, pool=5.0)


@dataclass(frozen=True)
class UserIdentity:
    """Identity returned by the external system after a password check."""

    user_id: str
    email: str
    role: str = "user"
    credential_proof: str = ""


class CredentialVerifier(Protocol):
    """Contract for the external primary-credential check."""

    async def verify_primary_credentials(self, email: str, password: str) -> UserIdentity:
        """Return the identity or raise InvalidCredentialsError."""


class HttpCredentialVerifier:
    """Verify credentials by POSTing them to the identity service."""

    def __init__(
        self,
        base_url: str,
        verify_path: str = "/credentials/verify",
        timeout: httpx.Timeout | float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._verify_path = verify_path
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout or DEFAULT_TIMEOUT,
        )

    async def verify_primary_credentials(self, email: str, password: str) -> UserIdentity:
        """Map 401/403/404 to invalid credentials and transport failures to 503."""
        try:
            response = await self._client.post(
                self._verify_path, json={"email": email, "password": password}
            )
        except httpx.RequestError as exc:
            logger.warning("identity_provider_unreachable", error=exc.__class__.__name__)
            raise IdentityProviderUnavailableError() from exc

        if response.status_code in {400, 401, 403, 404}:
            raise InvalidCredentialsError()
        if response.status_code >= 400:
            logger.warning("identity_provider_error", status_code=response.status_code)
            raise IdentityProviderUnavailableError()

        payload = self._json_object(response)
        user_id = payload.get("user_id") or payload.get("id")
        if not user_id:
            raise IdentityProviderUnavailableError("Identity provider returned an invalid payload.")
        return UserIdentity(
            user_id=str(user_id),
            email=str(payload.get("email") or email),
            role="admin" if payload.get("role") == "admin" else "user",
            credential_proof=str(payload.get("access_token") or ""),
        )

    async def aclose(self) -> None:
        """Close underlying HTTP client if owned by this instance."""
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _json_object(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise IdentityProviderUnavailableError("Identity provider returned invalid JSON.") from exc
        if not isinstance(payload, dict):
            raise IdentityProviderUnavailableError("Identity provider returned invalid JSON.")
        return payload


class StaticCredentialVerifier:
    """Development verifier backed by password hashes from settings."""

    def __init__(self, identities: list[StaticIdentity]) -> None:
        self._password_context = CryptContext(
            schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto"
        )
        self._by_email = {identity.email.lower(): identity for identity in identities}

    async def verify_primary_credentials(self, email: str, password: str) -> UserIdentity:
        """Check the password; unknown emails still pay for one hash check."""
        identity = self._by_email.get(email.strip().lower())
        if identity is None:
            self._password_context.dummy_verify()
            raise InvalidCredentialsError()
        if not self._password_context.verify(password, identity.password_hash.get_secret_value()):
            raise InvalidCredentialsError()
        return UserIdentity(
            user_id=identity.user_id,
            email=identity.email,
            role=identity.role,
            credential_proof=f"static:{identity.user_id}",
        )

    def hash_password(self, password: str) -> str:
        """Hash a password in the format the verifier accepts."""
        return str(self._password_context.hash(password))


@lru_cache
def get_credential_verifier() -> CredentialVerifier:
    """Build and cache the configured credential verifier."""
    settings = get_settings()
    if settings.identity.provider == "static":
        return StaticCredentialVerifier(identities=settings.identity.static_identities)
    return HttpCredentialVerifier(
        base_url=str(settings.identity.base_url),
        verify_path=settings.identity.verify_path,
        timeout=settings.identity.timeout_seconds,
    )
