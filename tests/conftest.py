"""Shared fixtures: controllable clock, RSA keys, and an in-memory Redis stub."""

from __future__ import annotations

import fnmatch
from collections.abc import AsyncIterator, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from redis.exceptions import RedisError

from storefront_auth.core.tokens import TokenService
from storefront_auth.middleware.client import configure_trusted_proxies


class FakeClock:
    """Manually advanced timezone-aware clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class _FakeLock:
    """Async context manager standing in for redis-py's Lock."""

    def __init__(self, redis: FakeRedis, name: str) -> None:
        self._redis = redis
        self._name = name

    async def __aenter__(self) -> _FakeLock:
        self._redis.check()
        self._redis.lock_acquisitions.append(self._name)
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class _FakePipeline:
    """Queue-then-execute pipeline supporting the commands the limiter uses."""

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._queued: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    async def __aenter__(self) -> _FakePipeline:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self._queued.clear()

    def set(self, *args: Any, **kwargs: Any) -> _FakePipeline:
        self._queued.append(("set", args, kwargs))
        return self

    def incr(self, *args: Any, **kwargs: Any) -> _FakePipeline:
        self._queued.append(("incr", args, kwargs))
        return self

    async def execute(self) -> list[Any]:
        self._redis.check()
        results: list[Any] = []
        for command, args, kwargs in self._queued:
            if command == "set":
                results.append(self._redis.set_now(*args, **kwargs))
            else:
                results.append(self._redis.incr_now(*args, **kwargs))
        self._queued.clear()
        return results


class FakeRedis:
    """Minimal async Redis stub with string values, sets, and TTL bookkeeping."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}
        self.lock_acquisitions: list[str] = []
        self.fail = False

    def check(self) -> None:
        if self.fail:
            raise RedisError("redis unavailable")

    def set_now(
        self,
        key: str,
        value: Any,
        ex: int | None = None,
        px: int | None = None,
        nx: bool = False,
        xx: bool = False,
        keepttl: bool = False,
    ) -> bool | None:
        exists = key in self.values
        if (nx and exists) or (xx and not exists):
            return None
        self.values[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex * 1000
        elif px is not None:
            self.ttls[key] = px
        elif not keepttl:
            self.ttls.pop(key, None)
        return True

    def incr_now(self, key: str) -> int:
        count = int(self.values.get(key, "0")) + 1
        self.values[key] = str(count)
        return count

    async def set(self, key: str, value: Any, **kwargs: Any) -> bool | None:
        self.check()
        return self.set_now(key, value, **kwargs)

    async def get(self, key: str) -> str | None:
        self.check()
        return self.values.get(key)

    async def getdel(self, key: str) -> str | None:
        self.check()
        self.ttls.pop(key, None)
        return self.values.pop(key, None)

    async def mget(self, keys: list[str]) -> list[str | None]:
        self.check()
        return [self.values.get(key) for key in keys]

    async def incr(self, key: str) -> int:
        self.check()
        return self.incr_now(key)

    async def delete(self, *keys: str) -> int:
        self.check()
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None or self.sets.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def sadd(self, key: str, *members: str) -> int:
        self.check()
        bucket = self.sets.setdefault(key, set())
        added = len(set(members) - bucket)
        bucket.update(members)
        return added

    async def srem(self, key: str, *members: str) -> int:
        self.check()
        bucket = self.sets.get(key, set())
        removed = len(bucket & set(members))
        bucket.difference_update(members)
        if not bucket:
            self.sets.pop(key, None)
        return removed

    async def smembers(self, key: str) -> set[str]:
        self.check()
        return set(self.sets.get(key, set()))

    async def scard(self, key: str) -> int:
        self.check()
        return len(self.sets.get(key, set()))

    async def expire(self, key: str, seconds: int) -> bool:
        self.check()
        self.ttls[key] = seconds * 1000
        return True

    async def scan_iter(self, match: str | None = None) -> AsyncIterator[str]:
        self.check()
        for key in sorted({*self.values, *self.sets}):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self) -> bool:
        self.check()
        return True

    def lock(self, name: str, timeout: float | None = None, blocking_timeout: float | None = None) -> _FakeLock:
        del timeout, blocking_timeout
        return _FakeLock(self, name)

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        del transaction
        return _FakePipeline(self)


def generate_rsa_keypair() -> tuple[str, str]:
    """Generate PEM-encoded RSA private/public keypair."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("utf-8")
    )
    return private_pem, public_pem


@pytest.fixture(scope="session")
def rsa_keypair() -> tuple[str, str]:
    return generate_rsa_keypair()


@pytest.fixture
def token_service(rsa_keypair: tuple[str, str]) -> TokenService:
    private_pem, public_pem = rsa_keypair
    return TokenService(private_key_pem=private_pem, public_key_pem=public_pem, issuer="storefront-auth")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture(autouse=True)
def _reset_trusted_proxies() -> Iterator[None]:
    yield
    configure_trusted_proxies([])
