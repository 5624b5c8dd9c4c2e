"""Unit tests for caller address resolution behind reverse proxies."""

from __future__ import annotations

from starlette.requests import Request

from storefront_auth.middleware.client import configure_trusted_proxies, extract_client_ip


def _request(peer: str | None, forwarded_for: str | None = None) -> Request:
    headers = []
    if forwarded_for is not None:
        headers.append((b"x-forwarded-for", forwarded_for.encode()))
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": headers,
        "client": (peer, 50000) if peer else None,
    }
    return Request(scope)


def test_untrusted_peer_ignores_forwarded_for() -> None:
    request = _request("198.51.100.7", "203.0.113.1")

    assert extract_client_ip(request) == "198.51.100.7"


def test_trusted_proxy_hop_is_replaced_by_forwarded_client() -> None:
    configure_trusted_proxies(["10.0.0.0/8"])

    assert extract_client_ip(_request("10.1.2.3", "203.0.113.9")) == "203.0.113.9"


def test_spoofed_leading_hops_are_skipped_behind_proxy_chain() -> None:
    """Only the rightmost address outside the trusted networks is the caller."""
    configure_trusted_proxies(["10.0.0.0/8"])
    request = _request("10.0.0.2", "1.2.3.4, 198.51.100.20, 10.0.0.1")

    assert extract_client_ip(request) == "198.51.100.20"


def test_trusted_proxy_without_header_falls_back_to_peer() -> None:
    configure_trusted_proxies(["10.0.0.0/8"])

    assert extract_client_ip(_request("10.0.0.2")) == "10.0.0.2"


def test_missing_peer_is_unknown() -> None:
    assert extract_client_ip(_request(None, "203.0.113.1")) == "unknown"
