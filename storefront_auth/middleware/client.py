"""Caller network identity shared by middleware and routers."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable

from fastapi import Request

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network

_TRUSTED_PROXIES: list[IPNetwork] = []


def configure_trusted_proxies(networks: Iterable[str]) -> None:
    """Replace the proxy networks whose X-Forwarded-For hops are believed."""
    _TRUSTED_PROXIES[:] = [ipaddress.ip_network(item, strict=False) for item in networks]


def _is_trusted(address: str) -> bool:
    try:
        parsed = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(parsed in network for network in _TRUSTED_PROXIES)


def extract_client_ip(request: Request) -> str:
    """Resolve the caller address.

    The peer address wins unless the peer is a trusted proxy. In that case
    X-Forwarded-For is walked from the nearest hop outwards and the first
    address outside the trusted networks is the caller.
    """
    client = request.client
    peer = client.host if client else "unknown"
    if not _is_trusted(peer):
        return peer
    forwarded_for = request.headers.get("x-forwarded-for", "").strip()
    hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not _is_trusted(hop):
            return hop
    return hops[0] if hops else peer
