"""Best-effort device and location classification for session metadata."""

from __future__ import annotations

import ipaddress
import re
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from typing import Literal

DeviceType = Literal["desktop", "mobile", "tablet", "bot", "unknown"]

_BOT_PATTERN = re.compile(
    r"bot|crawl|spider|slurp|curl/|wget/|python-requests|httpx|go-http-client|headless",
    re.IGNORECASE,
)
_TABLET_PATTERN = re.compile(r"ipad|tablet|kindle|silk/|playbook", re.IGNORECASE)
_ANDROID_PATTERN = re.compile(r"android", re.IGNORECASE)
_MOBILE_PATTERN = re.compile(r"iphone|ipod|mobile|windows phone|blackberry|opera mini", re.IGNORECASE)

# Order matters: Edge and Opera also advertise Chrome, Chrome also advertises Safari.
_BROWSERS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("Edge", re.compile(r"edg(e|a|ios)?/", re.IGNORECASE)),
    ("Opera", re.compile(r"opr/|opera", re.IGNORECASE)),
    ("Samsung Internet", re.compile(r"samsungbrowser/", re.IGNORECASE)),
    ("Firefox", re.compile(r"firefox/|fxios/", re.IGNORECASE)),
    ("Chrome", re.compile(r"chrome/|crios/", re.IGNORECASE)),
    ("Safari", re.compile(r"safari/", re.IGNORECASE)),
)

_PLATFORMS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("iPhone", re.compile(r"iphone", re.IGNORECASE)),
    ("iPad", re.compile(r"ipad", re.IGNORECASE)),
    ("Android", re.compile(r"android", re.IGNORECASE)),
    ("Windows", re.compile(r"windows", re.IGNORECASE)),
    ("ChromeOS", re.compile(r"\bcros\b", re.IGNORECASE)),
    ("Mac", re.compile(r"macintosh|mac os x", re.IGNORECASE)),
    ("Linux", re.compile(r"linux|x11", re.IGNORECASE)),
)


@dataclass(frozen=True)
class DeviceDescriptor:
    """Coarse device classification derived from a user-agent string."""

    type: DeviceType
    name: str

    def as_dict(self) -> dict[str, str]:
        """Return a JSON-serializable mapping."""
        return {"type": self.type, "name": self.name}


@dataclass(frozen=True)
class LocationDescriptor:
    """Approximate location; every field may be absent."""

    city: str | None = None
    region: str | None = None
    country: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.city is None and self.region is None and self.country is None

    @property
    def label(self) -> str:
        """Human-readable label such as 'Berlin, DE'."""
        parts = [part for part in (self.city, self.region, self.country) if part]
        return ", ".join(parts) if parts else "Unknown Location"

    def as_dict(self) -> dict[str, str]:
        """Return only the populated fields."""
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(frozen=True)
class LocationRangeEntry:
    """Offline IP range mapped to a location."""

    network: ipaddress.IPv4Network | ipaddress.IPv6Network
    location: LocationDescriptor


UNKNOWN_DEVICE = DeviceDescriptor(type="unknown", name="Unknown Device")
EMPTY_LOCATION = LocationDescriptor()


def detect_device(user_agent: str | None) -> DeviceDescriptor:
    """Classify a raw user-agent. Unparseable input yields the unknown device."""
    if not user_agent or not user_agent.strip():
        return UNKNOWN_DEVICE
    ua = user_agent.strip()

    if _BOT_PATTERN.search(ua):
        return DeviceDescriptor(type="bot", name="Automated Client")

    platform = _match_first(_PLATFORMS, ua)
    browser = _match_first(_BROWSERS, ua)

    if _TABLET_PATTERN.search(ua) or (_ANDROID_PATTERN.search(ua) and "mobile" not in ua.lower()):
        device_type: DeviceType = "tablet"
        default_name = "Tablet"
    elif _MOBILE_PATTERN.search(ua):
        device_type = "mobile"
        default_name = "Mobile Device"
    elif platform in {"Windows", "Mac", "Linux", "ChromeOS"}:
        device_type = "desktop"
        default_name = {
            "Windows": "Windows PC",
            "Mac": "Mac",
            "Linux": "Linux PC",
            "ChromeOS": "Chromebook",
        }[platform]
    else:
        return UNKNOWN_DEVICE

    if platform == "Android":
        platform = "Android Tablet" if device_type == "tablet" else "Android Phone"
    device_label = platform if platform and device_type != "desktop" else default_name
    if browser:
        return DeviceDescriptor(type=device_type, name=f"{browser} on {device_label}")
    return DeviceDescriptor(type=device_type, name=device_label)


def parse_location_ranges(
    entries: Iterable[tuple[str, LocationDescriptor]],
) -> tuple[LocationRangeEntry, ...]:
    """Compile (CIDR, location) pairs, skipping malformed networks."""
    compiled: list[LocationRangeEntry] = []
    for network, location in entries:
        try:
            compiled.append(
                LocationRangeEntry(network=ipaddress.ip_network(network, strict=False), location=location)
            )
        except ValueError:
            continue
    # Most specific prefix wins.
    compiled.sort(key=lambda entry: entry.network.prefixlen, reverse=True)
    return tuple(compiled)


def get_location_from_ip(
    ip: str | None,
    ip_ranges: tuple[LocationRangeEntry, ...] = (),
) -> LocationDescriptor:
    """Resolve an approximate location without network I/O."""
    if not ip:
        return EMPTY_LOCATION
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return EMPTY_LOCATION

    if address.is_loopback:
        return LocationDescriptor(city="Localhost")
    if address.is_private or address.is_link_local:
        return LocationDescriptor(region="Local Network")
    for entry in ip_ranges:
        if address.version == entry.network.version and address in entry.network:
            return entry.location
    return EMPTY_LOCATION


def _match_first(patterns: tuple[tuple[str, re.Pattern[str]], ...], value: str) -> str | None:
    for name, pattern in patterns:
        if pattern.search(value):
            return name
    return None
