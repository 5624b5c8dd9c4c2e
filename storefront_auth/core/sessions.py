"""Per-user session registry with read-time expiry."""

from __future__ import annotations

import json
import secrets
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any, Protocol

import structlog
from redis import asyncio as redis_async
from redis.asyncio.client import Redis
from redis.exceptions import RedisError

from storefront_auth.config import get_settings
from storefront_auth.core.devices import DeviceDescriptor, LocationDescriptor
from storefront_auth.core.locks import KeyedLocks
from storefront_auth.errors import StoreUnavailableError

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]
_LOCK_TIMEOUT_SECONDS = 5
_MAX_ID_ATTEMPTS = 5


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(UTC)


def new_session_id() -> str:
    """Generate an opaque, unguessable session identifier."""
    return secrets.token_urlsafe(24)


@dataclass(frozen=True)
class SessionMetadata:
    """Request metadata captured once, when a session is created."""

    device: DeviceDescriptor
    location: LocationDescriptor
    ip: str
    user_agent: str


@dataclass(frozen=True)
class Session:
    """One authenticated device/browser for a user."""

    id: str
    user_id: str
    device: DeviceDescriptor
    location: LocationDescriptor
    ip: str
    user_agent: str
    created_at: datetime
    last_activity_at: datetime

    def is_expired(self, now: datetime, max_idle: timedelta, max_age: timedelta) -> bool:
        """True when either the idle or the absolute lifetime has run out."""
        return now - self.last_activity_at >= max_idle or now - self.created_at >= max_age

    def expires_at(self, max_idle: timedelta, max_age: timedelta) -> datetime:
        """The earlier of the idle and absolute deadlines."""
        return min(self.last_activity_at + max_idle, self.created_at + max_age)

    def to_payload(self) -> dict[str, Any]:
        """Serialize for a key-value backend."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "device": self.device.as_dict(),
            "location": self.location.as_dict(),
            "ip": self.ip,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Session:
        """Rebuild a session from its serialized payload."""
        device = payload.get("device") or {}
        location = payload.get("location") or {}
        return cls(
            id=str(payload["id"]),
            user_id=str(payload["user_id"]),
            device=DeviceDescriptor(
                type=device.get("type", "unknown"), name=device.get("name", "Unknown Device")
            ),
            location=LocationDescriptor(
                city=location.get("city"),
                region=location.get("region"),
                country=location.get("country"),
            ),
            ip=str(payload.get("ip", "")),
            user_agent=str(payload.get("user_agent", "")),
            created_at=datetime.fromisoformat(payload["created_at"]),
            last_activity_at=datetime.fromisoformat(payload["last_activity_at"]),
        )


def sort_by_activity(sessions: list[Session]) -> list[Session]:
    """Most recently active first."""
    return sorted(sessions, key=lambda item: (item.last_activity_at, item.created_at), reverse=True)


def _eviction_candidates(live: list[Session], keep_session_id: str, ceiling: int) -> list[Session]:
    """Least recently active sessions above the ceiling, never the one to keep."""
    excess = len(live) - ceiling
    if excess <= 0:
        return []
    oldest_first = [item for item in reversed(sort_by_activity(live)) if item.id != keep_session_id]
    return oldest_first[:excess]


class SessionStore(Protocol):
    """Authoritative mapping from user id to active sessions."""

    async def create_session(
        self, user_id: str, metadata: SessionMetadata, max_sessions: int | None = None
    ) -> Session: ...

    async def get_user_sessions(self, user_id: str) -> list[Session]: ...

    async def get_session(self, user_id: str, session_id: str) -> Session | None: ...

    async def update_session_activity(self, user_id: str, session_id: str) -> None: ...

    async def revoke_session(self, user_id: str, session_id: str) -> bool: ...

    async def revoke_all_sessions(
        self, user_id: str, except_session_id: str | None = None
    ) -> int: ...

    async def sweep_expired(self) -> int: ...


class InMemorySessionStore:
    """Process-local session store; per-user mutations run under a per-user lock."""

    def __init__(
        self,
        max_age_seconds: int,
        max_idle_seconds: int,
        clock: Clock = utcnow,
    ) -> None:
        self._max_age = timedelta(seconds=max_age_seconds)
        self._max_idle = timedelta(seconds=max_idle_seconds)
        self._clock = clock
        self._sessions: dict[str, dict[str, Session]] = {}
        self._locks = KeyedLocks()

    async def create_session(
        self, user_id: str, metadata: SessionMetadata, max_sessions: int | None = None
    ) -> Session:
        """Allocate a session stamped with the current time.

        With max_sessions set, the user's least recently active sessions
        beyond the ceiling are evicted under the same per-user lock.
        """
        now = self._clock()
        with self._locks.hold(user_id):
            user_sessions = self._sessions.setdefault(user_id, {})
            session_id = new_session_id()
            while session_id in user_sessions:
                session_id = new_session_id()
            session = Session(
                id=session_id,
                user_id=user_id,
                device=metadata.device,
                location=metadata.location,
                ip=metadata.ip,
                user_agent=metadata.user_agent,
                created_at=now,
                last_activity_at=now,
            )
            user_sessions[session_id] = session
            if max_sessions is not None:
                live = [
                    item
                    for item in user_sessions.values()
                    if not item.is_expired(now, self._max_idle, self._max_age)
                ]
                for victim in _eviction_candidates(live, session_id, max_sessions):
                    del user_sessions[victim.id]
                    logger.info("session_evicted", user_id=user_id, session_id=victim.id)
        return session

    async def get_user_sessions(self, user_id: str) -> list[Session]:
        """Return live sessions, most recently active first, purging expired ones."""
        now = self._clock()
        snapshot = list(self._sessions.get(user_id, {}).values())
        live = [item for item in snapshot if not item.is_expired(now, self._max_idle, self._max_age)]
        if len(live) != len(snapshot):
            self._purge_user(user_id, now)
        return sort_by_activity(live)

    async def get_session(self, user_id: str, session_id: str) -> Session | None:
        """Return one live session or None."""
        session = self._sessions.get(user_id, {}).get(session_id)
        if session is None:
            return None
        if session.is_expired(self._clock(), self._max_idle, self._max_age):
            return None
        return session

    async def update_session_activity(self, user_id: str, session_id: str) -> None:
        """Bump last activity; silently ignores absent or expired sessions."""
        now = self._clock()
        with self._locks.hold(user_id):
            user_sessions = self._sessions.get(user_id)
            if not user_sessions or session_id not in user_sessions:
                return
            session = user_sessions[session_id]
            if session.is_expired(now, self._max_idle, self._max_age):
                del user_sessions[session_id]
                return
            user_sessions[session_id] = replace(
                session, last_activity_at=max(now, session.last_activity_at)
            )

    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        """Remove exactly the given session of the given user."""
        with self._locks.hold(user_id):
            user_sessions = self._sessions.get(user_id)
            if not user_sessions or session_id not in user_sessions:
                return False
            del user_sessions[session_id]
            if not user_sessions:
                self._sessions.pop(user_id, None)
            return True

    async def revoke_all_sessions(self, user_id: str, except_session_id: str | None = None) -> int:
        """Remove every session of the user except the optional keeper."""
        with self._locks.hold(user_id):
            user_sessions = self._sessions.get(user_id, {})
            doomed = [sid for sid in user_sessions if sid != except_session_id]
            for sid in doomed:
                del user_sessions[sid]
            if not user_sessions:
                self._sessions.pop(user_id, None)
            return len(doomed)

    async def sweep_expired(self) -> int:
        """Purge expired sessions for every user."""
        now = self._clock()
        return sum(self._purge_user(user_id, now) for user_id in list(self._sessions))

    def _purge_user(self, user_id: str, now: datetime) -> int:
        with self._locks.hold(user_id):
            user_sessions = self._sessions.get(user_id, {})
            expired = [
                sid
                for sid, item in user_sessions.items()
                if item.is_expired(now, self._max_idle, self._max_age)
            ]
            for sid in expired:
                del user_sessions[sid]
            if not user_sessions:
                self._sessions.pop(user_id, None)
            return len(expired)


class RedisSessionStore:
    """Redis session store.

    Each session is a JSON string under ``session:<id>`` with a TTL equal to
    the absolute lifetime; ``user_sessions:<user id>`` is the set of the
    user's ids. Mutations for one user run under a Redis lock on that user.
    """

    def __init__(
        self,
        redis_client: Redis,
        max_age_seconds: int,
        max_idle_seconds: int,
        clock: Clock = utcnow,
    ) -> None:
        self._redis = redis_client
        self._max_age = timedelta(seconds=max_age_seconds)
        self._max_idle = timedelta(seconds=max_idle_seconds)
        self._max_age_seconds = max_age_seconds
        self._clock = clock

    async def create_session(
        self, user_id: str, metadata: SessionMetadata, max_sessions: int | None = None
    ) -> Session:
        """Allocate a session; SET NX guarantees the id is not already taken.

        Ceiling eviction runs while the per-user lock is still held.
        """
        now = self._clock()
        try:
            async with self._user_lock(user_id):
                for _ in range(_MAX_ID_ATTEMPTS):
                    session = Session(
                        id=new_session_id(),
                        user_id=user_id,
                        device=metadata.device,
                        location=metadata.location,
                        ip=metadata.ip,
                        user_agent=metadata.user_agent,
                        created_at=now,
                        last_activity_at=now,
                    )
                    stored = await self._redis.set(
                        self._session_key(session.id),
                        json.dumps(session.to_payload()),
                        ex=self._max_age_seconds,
                        nx=True,
                    )
                    if stored:
                        break
                else:
                    raise StoreUnavailableError("Could not allocate a session id.")
                await self._redis.sadd(self._user_key(user_id), session.id)
                await self._redis.expire(self._user_key(user_id), self._max_age_seconds)
                if max_sessions is not None:
                    live = await self.get_user_sessions(user_id)
                    victims = _eviction_candidates(live, session.id, max_sessions)
                    if victims:
                        await self._discard(user_id, [item.id for item in victims])
                        for victim in victims:
                            logger.info("session_evicted", user_id=user_id, session_id=victim.id)
        except RedisError as exc:
            raise StoreUnavailableError() from exc
        return session

    async def get_user_sessions(self, user_id: str) -> list[Session]:
        """Return live sessions and drop ids whose payload expired or went missing."""
        now = self._clock()
        try:
            session_ids = sorted(await self._redis.smembers(self._user_key(user_id)))
            if not session_ids:
                return []
            raw_payloads = await self._redis.mget([self._session_key(sid) for sid in session_ids])
            live: list[Session] = []
            stale: list[str] = []
            for session_id, raw_payload in zip(session_ids, raw_payloads, strict=True):
                session = self._decode(raw_payload)
                if session is None or session.user_id != user_id:
                    stale.append(session_id)
                elif session.is_expired(now, self._max_idle, self._max_age):
                    stale.append(session_id)
                else:
                    live.append(session)
            if stale:
                await self._discard(user_id, stale)
        except RedisError as exc:
            raise StoreUnavailableError() from exc
        return sort_by_activity(live)

    async def get_session(self, user_id: str, session_id: str) -> Session | None:
        """Return one live session owned by user_id, or None."""
        try:
            raw_payload = await self._redis.get(self._session_key(session_id))
        except RedisError as exc:
            raise StoreUnavailableError() from exc
        session = self._decode(raw_payload)
        if session is None or session.user_id != user_id:
            return None
        if session.is_expired(self._clock(), self._max_idle, self._max_age):
            return None
        return session

    async def update_session_activity(self, user_id: str, session_id: str) -> None:
        """Bump last activity while keeping the absolute TTL."""
        now = self._clock()
        try:
            async with self._user_lock(user_id):
                raw_payload = await self._redis.get(self._session_key(session_id))
                session = self._decode(raw_payload)
                if session is None or session.user_id != user_id:
                    return
                if session.is_expired(now, self._max_idle, self._max_age):
                    await self._discard(user_id, [session_id])
                    return
                updated = replace(session, last_activity_at=max(now, session.last_activity_at))
                await self._redis.set(
                    self._session_key(session_id),
                    json.dumps(updated.to_payload()),
                    keepttl=True,
                    xx=True,
                )
        except RedisError as exc:
            raise StoreUnavailableError() from exc

    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        """Remove the session only if it is a member of this user's set."""
        try:
            async with self._user_lock(user_id):
                removed = await self._redis.srem(self._user_key(user_id), session_id)
                if not removed:
                    return False
                await self._redis.delete(self._session_key(session_id))
        except RedisError as exc:
            raise StoreUnavailableError() from exc
        return True

    async def revoke_all_sessions(self, user_id: str, except_session_id: str | None = None) -> int:
        """Remove all of the user's sessions except the optional keeper."""
        try:
            async with self._user_lock(user_id):
                session_ids = await self._redis.smembers(self._user_key(user_id))
                doomed = [sid for sid in session_ids if sid != except_session_id]
                if doomed:
                    await self._discard(user_id, doomed)
        except RedisError as exc:
            raise StoreUnavailableError() from exc
        return len(doomed)

    async def sweep_expired(self) -> int:
        """Walk every user set and drop expired or orphaned ids."""
        removed = 0
        try:
            async for user_key in self._redis.scan_iter(match="user_sessions:*"):
                user_id = user_key.split(":", 1)[1]
                before = await self._redis.scard(user_key)
                live = await self.get_user_sessions(user_id)
                removed += max(int(before) - len(live), 0)
        except RedisError as exc:
            raise StoreUnavailableError() from exc
        return removed

    async def _discard(self, user_id: str, session_ids: list[str]) -> None:
        await self._redis.srem(self._user_key(user_id), *session_ids)
        await self._redis.delete(*[self._session_key(sid) for sid in session_ids])

    def _user_lock(self, user_id: str):
        return self._redis.lock(
            f"lock:user_sessions:{user_id}",
            timeout=_LOCK_TIMEOUT_SECONDS,
            blocking_timeout=_LOCK_TIMEOUT_SECONDS,
        )

    @staticmethod
    def _decode(raw_payload: str | None) -> Session | None:
        if raw_payload is None:
            return None
        try:
            return Session.from_payload(json.loads(raw_payload))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("session_payload_corrupt")
            return None

    @staticmethod
    def _session_key(session_id: str) -> str:
        """Build Redis key for a session payload."""
        return f"session:{session_id}"

    @staticmethod
    def _user_key(user_id: str) -> str:
        """Build Redis key for a user's session id set."""
        return f"user_sessions:{user_id}"


@lru_cache
def get_redis_client() -> Redis:
    """Create and cache the async Redis client."""
    settings = get_settings()
    return redis_async.from_url(settings.redis.url, decode_responses=True)


@lru_cache
def get_session_store() -> SessionStore:
    """Create and cache the configured session store."""
    settings = get_settings()
    if settings.store.backend == "redis":
        return RedisSessionStore(
            redis_client=get_redis_client(),
            max_age_seconds=settings.sessions.max_age_seconds,
            max_idle_seconds=settings.sessions.max_idle_seconds,
        )
    return InMemorySessionStore(
        max_age_seconds=settings.sessions.max_age_seconds,
        max_idle_seconds=settings.sessions.max_idle_seconds,
    )
