"""Short-lived records bridging password acceptance and 2FA completion."""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from hashlib import sha256
from threading import Lock
from typing import Any, Protocol

from redis.asyncio.client import Redis
from redis.exceptions import RedisError

from storefront_auth.config import get_settings
from storefront_auth.core.sessions import Clock, get_redis_client, utcnow
from storefront_auth.errors import StoreUnavailableError


@dataclass(frozen=True)
class PendingLogin:
    """Primary credentials accepted; a TOTP code is still outstanding."""

    id: str
    user_id: str
    email: str
    role: str
    credential_proof_hash: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_payload(self) -> dict[str, Any]:
        """Serialize for a key-value backend."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "email": self.email,
            "role": self.role,
            "credential_proof_hash": self.credential_proof_hash,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PendingLogin:
        """Rebuild a pending login from its serialized payload."""
        return cls(
            id=str(payload["id"]),
            user_id=str(payload["user_id"]),
            email=str(payload["email"]),
            role=str(payload["role"]),
            credential_proof_hash=str(payload["credential_proof_hash"]),
            issued_at=datetime.fromisoformat(payload["issued_at"]),
            expires_at=datetime.fromisoformat(payload["expires_at"]),
        )


def build_pending_login(
    user_id: str,
    email: str,
    role: str,
    credential_proof: str,
    ttl_seconds: int,
    now: datetime,
) -> PendingLogin:
    """Create a pending login with a fresh id; the proof is kept only as a digest."""
    return PendingLogin(
        id=secrets.token_urlsafe(24),
        user_id=user_id,
        email=email,
        role=role,
        credential_proof_hash=sha256(credential_proof.encode("utf-8")).hexdigest(),
        issued_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )


class PendingLoginStore(Protocol):
    """Storage for pending logins. ``consume`` must be an atomic take."""

    async def save(self, pending: PendingLogin) -> None: ...

    async def get(self, pending_id: str) -> PendingLogin | None: ...

    async def consume(self, pending_id: str) -> PendingLogin | None: ...


class InMemoryPendingLoginStore:
    """Process-local pending-login store."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._records: dict[str, PendingLogin] = {}
        self._lock = Lock()

    async def save(self, pending: PendingLogin) -> None:
        now = self._clock()
        with self._lock:
            for pending_id in [key for key, item in self._records.items() if item.is_expired(now)]:
                del self._records[pending_id]
            self._records[pending.id] = pending

    async def get(self, pending_id: str) -> PendingLogin | None:
        pending = self._records.get(pending_id)
        if pending is None or pending.is_expired(self._clock()):
            return None
        return pending

    async def consume(self, pending_id: str) -> PendingLogin | None:
        """Remove and return the record; only one caller can ever win."""
        with self._lock:
            pending = self._records.pop(pending_id, None)
        if pending is None or pending.is_expired(self._clock()):
            return None
        return pending


class RedisPendingLoginStore:
    """Redis pending-login store; records expire by TTL and are taken with GETDEL."""

    def __init__(self, redis_client: Redis, clock: Clock = utcnow) -> None:
        self._redis = redis_client
        self._clock = clock

    async def save(self, pending: PendingLogin) -> None:
        ttl_ms = int((pending.expires_at - self._clock()).total_seconds() * 1000)
        try:
            await self._redis.set(
                self._key(pending.id), json.dumps(pending.to_payload()), px=max(ttl_ms, 1)
            )
        except RedisError as exc:
            raise StoreUnavailableError() from exc

    async def get(self, pending_id: str) -> PendingLogin | None:
        try:
            raw_payload = await self._redis.get(self._key(pending_id))
        except RedisError as exc:
            raise StoreUnavailableError() from exc
        return self._decode(raw_payload)

    async def consume(self, pending_id: str) -> PendingLogin | None:
        try:
            raw_payload = await self._redis.getdel(self._key(pending_id))
        except RedisError as exc:
            raise StoreUnavailableError() from exc
        return self._decode(raw_payload)

    def _decode(self, raw_payload: str | None) -> PendingLogin | None:
        if raw_payload is None:
            return None
        try:
            pending = PendingLogin.from_payload(json.loads(raw_payload))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None
        if pending.is_expired(self._clock()):
            return None
        return pending

    @staticmethod
    def _key(pending_id: str) -> str:
        """Build Redis key for a pending login."""
        return f"pending_login:{pending_id}"


@lru_cache
def get_pending_login_store() -> PendingLoginStore:
    """Create and cache the configured pending-login store."""
    settings = get_settings()
    if settings.store.backend == "redis":
        return RedisPendingLoginStore(redis_client=get_redis_client())
    return InMemoryPendingLoginStore()
