"""RFC 6238 time-based one-time codes and backup recovery codes."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from datetime import datetime
from urllib.parse import quote, urlencode

TOTP_STEP_SECONDS = 30
TOTP_DIGITS = 6
TOTP_SKEW_STEPS = 1
SECRET_BYTES = 20
BACKUP_CODE_BYTES = 4


def generate_secret() -> str:
    """Return a fresh 160-bit shared secret, base32 encoded without padding."""
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> bytes:
    """Decode a base32 secret, tolerating lowercase, spaces, and missing padding."""
    normalized = secret.replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    return base64.b32decode(padded, casefold=True)


def _timestamp(at: datetime | float | None) -> float:
    if at is None:
        return time.time()
    if isinstance(at, datetime):
        return at.timestamp()
    return float(at)


def _code_for_counter(key: bytes, counter: int) -> str:
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    truncated = int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF
    return str(truncated % (10**TOTP_DIGITS)).zfill(TOTP_DIGITS)


def generate_code(secret: str, at: datetime | float | None = None) -> str:
    """Compute the code for the time step containing ``at`` (defaults to now)."""
    counter = int(_timestamp(at) // TOTP_STEP_SECONDS)
    return _code_for_counter(_decode_secret(secret), counter)


def verify_totp_code(secret: str, code: str, at: datetime | float | None = None) -> bool:
    """Accept the code for the current step or one step either side.

    Malformed codes and undecodable secrets return False. Every candidate is
    compared in constant time and the loop never exits early.
    """
    if not isinstance(code, str):
        return False
    candidate = code.strip().replace(" ", "")
    if len(candidate) != TOTP_DIGITS or not candidate.isascii() or not candidate.isdigit():
        return False
    try:
        key = _decode_secret(secret)
    except (binascii.Error, ValueError):
        return False
    if not key:
        return False

    counter = int(_timestamp(at) // TOTP_STEP_SECONDS)
    matched = False
    for offset in range(-TOTP_SKEW_STEPS, TOTP_SKEW_STEPS + 1):
        expected = _code_for_counter(key, counter + offset)
        matched |= hmac.compare_digest(expected, candidate)
    return matched


def build_provisioning_uri(secret: str, account: str, issuer: str) -> str:
    """Build the otpauth:// URI that authenticator apps scan as a QR code."""
    label = f"{quote(issuer)}:{quote(account)}"
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_STEP_SECONDS,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{params}"


def generate_backup_codes(count: int = 10) -> list[str]:
    """Return single-use recovery codes (8 uppercase hex characters each)."""
    return [secrets.token_hex(BACKUP_CODE_BYTES).upper() for _ in range(count)]


def hash_backup_code(code: str) -> str:
    """Hash a backup code for storage; input is normalized first."""
    normalized = code.strip().replace("-", "").replace(" ", "").upper()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()
