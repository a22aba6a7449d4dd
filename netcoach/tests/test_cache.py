"""
test_cache.py — Redis snapshot helpers and pending-job markers (fakeredis).

Tests verify:
1. Key builders follow the <entity>:<scope>:<id> namespace
2. cache_get / cache_set / invalidate behave as a best-effort JSON cache
3. Redis failures degrade to a miss (snapshots) or a skip (markers)
4. Pending markers are exclusive until released or expired
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from netcoach.cache import (
    SUMMARY_PENDING_TTL,
    cache_get,
    cache_set,
    invalidate,
    make_evaluation_key,
    make_pending_key,
    make_review_due_key,
    make_session_key,
    make_sessions_list_key,
    release_pending,
    session_keys,
    try_acquire_pending,
)


def _broken_redis() -> MagicMock:
    client = MagicMock()
    error = RedisConnectionError("redis down")
    for name in ("get", "setex", "set", "delete"):
        setattr(client, name, AsyncMock(side_effect=error))
    return client


def test_key_builders() -> None:
    assert make_session_key("s1") == "session:id:s1"
    assert make_sessions_list_key("maya") == "sessions:owner:maya"
    assert make_evaluation_key("s1") == "evaluation:session:s1"
    assert make_review_due_key("maya") == "review:due:maya"
    assert make_pending_key("summary", "s1") == "pending:summary:s1"


def test_session_keys() -> None:
    assert session_keys("s1") == ["session:id:s1"]
    assert session_keys("s1", "maya", evaluation=True) == [
        "session:id:s1",
        "sessions:owner:maya",
        "evaluation:session:s1",
    ]


@pytest.mark.asyncio
async def test_set_get_roundtrip_with_ttl(redis) -> None:
    await cache_set(redis, "session:id:s1", {"id": "s1", "stage": "ADVICE"}, 45)
    assert await cache_get(redis, "session:id:s1") == {"id": "s1", "stage": "ADVICE"}
    ttl = await redis.ttl("session:id:s1")
    assert 0 < ttl <= 45


@pytest.mark.asyncio
async def test_miss_and_undecodable_value(redis) -> None:
    assert await cache_get(redis, "session:id:missing") is None
    await redis.set("session:id:bad", "{not json")
    assert await cache_get(redis, "session:id:bad") is None


@pytest.mark.asyncio
async def test_invalidate_skips_empty_keys(redis) -> None:
    await redis.set("a", "1")
    await redis.set("b", "1")
    await invalidate(redis, "a", None, "", "b")
    assert await redis.exists("a", "b") == 0
    # Nothing to delete is a no-op
    await invalidate(redis, None)


@pytest.mark.asyncio
async def test_redis_errors_are_misses() -> None:
    client = _broken_redis()
    assert await cache_get(client, "session:id:s1") is None
    await cache_set(client, "session:id:s1", {}, 45)
    await invalidate(client, "session:id:s1")


class TestPendingMarkers:
    @pytest.mark.asyncio
    async def test_marker_is_exclusive(self, redis) -> None:
        assert await try_acquire_pending(redis, "summary", "s1", SUMMARY_PENDING_TTL) is True
        assert await try_acquire_pending(redis, "summary", "s1", SUMMARY_PENDING_TTL) is False
        # Other kinds and other sessions are independent
        assert await try_acquire_pending(redis, "nudges", "s1", 10) is True
        assert await try_acquire_pending(redis, "summary", "s2", SUMMARY_PENDING_TTL) is True

    @pytest.mark.asyncio
    async def test_marker_has_ttl_and_release(self, redis) -> None:
        await try_acquire_pending(redis, "metadata", "s1", 15)
        ttl = await redis.ttl(make_pending_key("metadata", "s1"))
        assert 0 < ttl <= 15
        await release_pending(redis, "metadata", "s1")
        assert await try_acquire_pending(redis, "metadata", "s1", 15) is True

    @pytest.mark.asyncio
    async def test_unreachable_redis_skips_job(self) -> None:
        client = _broken_redis()
        assert await try_acquire_pending(client, "summary", "s1", SUMMARY_PENDING_TTL) is False
        await release_pending(client, "summary", "s1")
