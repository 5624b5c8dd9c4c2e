"""Unit tests for the primary-credential verifiers."""

from __future__ import annotations

import json

import httpx
import pytest

from storefront_auth.config import StaticIdentity
from storefront_auth.errors import IdentityProviderUnavailableError, InvalidCredentialsError
from storefront_auth.services.credentials import HttpCredentialVerifier, StaticCredentialVerifier


def _verifier(handler) -> HttpCredentialVerifier:
    client = httpx.AsyncClient(base_url="https://identity.internal", transport=httpx.MockTransport(handler))
    return HttpCredentialVerifier(base_url="https://identity.internal", http_client=client)


@pytest.mark.asyncio
async def test_http_verifier_maps_success_payload() -> None:
    seen: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        assert request.url.path == "/credentials/verify"
        return httpx.Response(
            200,
            json={"user_id": 42, "email": "shopper@example.com", "role": "admin", "access_token": "proof"},
        )

    identity = await _verifier(handler).verify_primary_credentials("shopper@example.com", "pw")

    assert seen == [{"email": "shopper@example.com", "password": "pw"}]
    assert identity.user_id == "42"
    assert identity.role == "admin"
    assert identity.credential_proof == "proof"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [400, 401, 403, 404])
async def test_http_verifier_rejections_are_invalid_credentials(status_code: int) -> None:
    verifier = _verifier(lambda request: httpx.Response(status_code, json={"detail": "nope"}))

    with pytest.raises(InvalidCredentialsError):
        await verifier.verify_primary_credentials("shopper@example.com", "pw")


@pytest.mark.asyncio
async def test_http_verifier_server_error_is_unavailable() -> None:
    verifier = _verifier(lambda request: httpx.Response(502))

    with pytest.raises(IdentityProviderUnavailableError):
        await verifier.verify_primary_credentials("shopper@example.com", "pw")


@pytest.mark.asyncio
async def test_http_verifier_transport_failure_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(IdentityProviderUnavailableError) as exc_info:
        await _verifier(handler).verify_primary_credentials("shopper@example.com", "pw")

    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_http_verifier_payload_without_user_id_is_unavailable() -> None:
    verifier = _verifier(lambda request: httpx.Response(200, json={"email": "x@example.com"}))

    with pytest.raises(IdentityProviderUnavailableError):
        await verifier.verify_primary_credentials("x@example.com", "pw")


@pytest.mark.asyncio
async def test_static_verifier_checks_password_hash() -> None:
    password_hash = StaticCredentialVerifier(identities=[]).hash_password("s3cret-pass")
    verifier = StaticCredentialVerifier(
        identities=[
            StaticIdentity(user_id="user-1", email="Shopper@Example.com", password_hash=password_hash)
        ]
    )

    identity = await verifier.verify_primary_credentials("shopper@example.com", "s3cret-pass")
    assert identity.user_id == "user-1"

    with pytest.raises(InvalidCredentialsError):
        await verifier.verify_primary_credentials("shopper@example.com", "wrong")
    with pytest.raises(InvalidCredentialsError):
        await verifier.verify_primary_credentials("nobody@example.com", "s3cret-pass")
