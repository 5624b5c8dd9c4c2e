"""Unit tests for the in-memory and Redis session stores."""

from __future__ import annotations

import json

import pytest

from storefront_auth.core.devices import DeviceDescriptor, LocationDescriptor
from storefront_auth.core.sessions import (
    InMemorySessionStore,
    RedisSessionStore,
    SessionMetadata,
)
from storefront_auth.errors import StoreUnavailableError

MAX_AGE = 30 * 24 * 3600
MAX_IDLE = 7 * 24 * 3600

_METADATA = SessionMetadata(
    device=DeviceDescriptor(type="desktop", name="Chrome on Windows PC"),
    location=LocationDescriptor(city="Localhost"),
    ip="127.0.0.1",
    user_agent="Mozilla/5.0 (Windows NT 10.0) Chrome/120.0",
)


@pytest.fixture(params=["memory", "redis"])
def store(request, clock, fake_redis):
    """Run each contract test against both backends."""
    if request.param == "memory":
        return InMemorySessionStore(max_age_seconds=MAX_AGE, max_idle_seconds=MAX_IDLE, clock=clock)
    return RedisSessionStore(
        redis_client=fake_redis, max_age_seconds=MAX_AGE, max_idle_seconds=MAX_IDLE, clock=clock
    )


@pytest.mark.asyncio
async def test_create_session_stamps_metadata_and_times(store, clock) -> None:
    session = await store.create_session("user-1", _METADATA)

    assert session.user_id == "user-1"
    assert session.device.name == "Chrome on Windows PC"
    assert session.location.city == "Localhost"
    assert session.created_at == clock.now
    assert session.last_activity_at == clock.now
    assert await store.get_session("user-1", session.id) == session


@pytest.mark.asyncio
async def test_session_ids_are_unique(store) -> None:
    ids = {(await store.create_session("user-1", _METADATA)).id for _ in range(20)}

    assert len(ids) == 20


@pytest.mark.asyncio
async def test_sessions_are_ordered_by_most_recent_activity(store, clock) -> None:
    first = await store.create_session("user-1", _METADATA)
    clock.advance(60)
    second = await store.create_session("user-1", _METADATA)
    clock.advance(60)
    await store.update_session_activity("user-1", first.id)

    sessions = await store.get_user_sessions("user-1")

    assert [item.id for item in sessions] == [first.id, second.id]
    assert sessions[0].last_activity_at == clock.now
    assert sessions[0].created_at < sessions[0].last_activity_at


@pytest.mark.asyncio
async def test_session_is_never_returned_past_idle_age(store, clock) -> None:
    session = await store.create_session("user-1", _METADATA)

    clock.advance(MAX_IDLE - 1)
    assert await store.get_session("user-1", session.id) is not None

    clock.advance(1)
    assert await store.get_session("user-1", session.id) is None
    assert await store.get_user_sessions("user-1") == []


@pytest.mark.asyncio
async def test_activity_does_not_extend_absolute_age(store, clock) -> None:
    session = await store.create_session("user-1", _METADATA)
    for _ in range(5):
        clock.advance(MAX_IDLE - 3600)
        await store.update_session_activity("user-1", session.id)

    assert (clock.now - session.created_at).total_seconds() >= MAX_AGE
    assert await store.get_session("user-1", session.id) is None


@pytest.mark.asyncio
async def test_revoke_removes_exactly_one_session(store) -> None:
    keep = await store.create_session("user-1", _METADATA)
    doomed = await store.create_session("user-1", _METADATA)
    other_user = await store.create_session("user-2", _METADATA)

    assert await store.revoke_session("user-1", doomed.id) is True
    assert await store.revoke_session("user-1", doomed.id) is False

    assert [item.id for item in await store.get_user_sessions("user-1")] == [keep.id]
    assert [item.id for item in await store.get_user_sessions("user-2")] == [other_user.id]


@pytest.mark.asyncio
async def test_revoke_refuses_another_users_session(store) -> None:
    victim = await store.create_session("user-2", _METADATA)

    assert await store.revoke_session("user-1", victim.id) is False
    assert await store.get_session("user-2", victim.id) is not None
    assert await store.get_session("user-1", victim.id) is None


@pytest.mark.asyncio
async def test_revoke_all_keeps_the_current_session(store) -> None:
    current = await store.create_session("user-1", _METADATA)
    for _ in range(3):
        await store.create_session("user-1", _METADATA)

    revoked = await store.revoke_all_sessions("user-1", except_session_id=current.id)

    assert revoked == 3
    assert [item.id for item in await store.get_user_sessions("user-1")] == [current.id]


@pytest.mark.asyncio
async def test_update_activity_on_missing_session_is_silent(store) -> None:
    await store.update_session_activity("user-1", "no-such-session")

    assert await store.get_user_sessions("user-1") == []


@pytest.mark.asyncio
async def test_sweep_expired_purges_only_dead_sessions(store, clock) -> None:
    await store.create_session("user-1", _METADATA)
    clock.advance(MAX_IDLE)
    live = await store.create_session("user-2", _METADATA)

    removed = await store.sweep_expired()

    assert removed == 1
    assert await store.get_user_sessions("user-1") == []
    assert [item.id for item in await store.get_user_sessions("user-2")] == [live.id]


@pytest.mark.asyncio
async def test_redis_store_layout_and_lock(clock, fake_redis) -> None:
    store = RedisSessionStore(
        redis_client=fake_redis, max_age_seconds=MAX_AGE, max_idle_seconds=MAX_IDLE, clock=clock
    )
    session = await store.create_session("user-1", _METADATA)

    payload = json.loads(fake_redis.values[f"session:{session.id}"])
    assert payload["user_id"] == "user-1"
    assert payload["device"] == {"type": "desktop", "name": "Chrome on Windows PC"}
    assert fake_redis.ttls[f"session:{session.id}"] == MAX_AGE * 1000
    assert fake_redis.sets["user_sessions:user-1"] == {session.id}
    assert fake_redis.lock_acquisitions == ["lock:user_sessions:user-1"]

    clock.advance(30)
    await store.update_session_activity("user-1", session.id)
    assert fake_redis.ttls[f"session:{session.id}"] == MAX_AGE * 1000


@pytest.mark.asyncio
async def test_redis_store_drops_ids_whose_payload_vanished(clock, fake_redis) -> None:
    store = RedisSessionStore(
        redis_client=fake_redis, max_age_seconds=MAX_AGE, max_idle_seconds=MAX_IDLE, clock=clock
    )
    session = await store.create_session("user-1", _METADATA)
    del fake_redis.values[f"session:{session.id}"]

    assert await store.get_user_sessions("user-1") == []
    assert "user_sessions:user-1" not in fake_redis.sets


@pytest.mark.asyncio
async def test_redis_store_unavailable_raises_store_error(clock, fake_redis) -> None:
    store = RedisSessionStore(
        redis_client=fake_redis, max_age_seconds=MAX_AGE, max_idle_seconds=MAX_IDLE, clock=clock
    )
    fake_redis.fail = True

    with pytest.raises(StoreUnavailableError):
        await store.create_session("user-1", _METADATA)
    with pytest.raises(StoreUnavailableError):
        await store.get_user_sessions("user-1")


@pytest.mark.asyncio
async def test_create_session_evicts_least_recently_active_above_ceiling(store, clock) -> None:
    oldest = await store.create_session("user-1", _METADATA, max_sessions=2)
    clock.advance(10)
    middle = await store.create_session("user-1", _METADATA, max_sessions=2)
    clock.advance(10)
    newest = await store.create_session("user-1", _METADATA, max_sessions=2)

    remaining = [item.id for item in await store.get_user_sessions("user-1")]

    assert remaining == [newest.id, middle.id]
    assert await store.get_session("user-1", oldest.id) is None


@pytest.mark.asyncio
async def test_ceiling_of_one_keeps_only_the_new_session(store) -> None:
    for _ in range(3):
        latest = await store.create_session("user-1", _METADATA, max_sessions=1)

    assert [item.id for item in await store.get_user_sessions("user-1")] == [latest.id]


@pytest.mark.asyncio
async def test_memory_store_forgets_revoked_sessions(clock) -> None:
    store = InMemorySessionStore(max_age_seconds=MAX_AGE, max_idle_seconds=MAX_IDLE, clock=clock)
    for _ in range(500):
        session = await store.create_session("user-1", _METADATA)
        await store.revoke_session("user-1", session.id)

    assert store._sessions == {}
