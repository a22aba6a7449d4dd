"""
cache.py — Redis caching layer and pending-job markers for netcoach.

Namespace conventions (<entity>:<scope>:<id>):
  session:id:{session_id}          → Session snapshot            TTL 45s
  sessions:owner:{owner_id}        → list[Session] newest first  TTL 30s
  evaluation:session:{session_id}  → Evaluation snapshot         TTL 120s
  review:due:{owner_id}            → list[ReviewCard] due now    TTL 45s
  pending:{kind}:{session_id}      → "1" while a job is running  TTL 10–25s

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x — do NOT use aioredis separately)
  - Pool created once in lifespan, stored on app.state.redis
  - Helper functions take the client as a param — no module-level global state
  - Cache is eventually consistent: writers delete keys after commit (invalidate()),
    readers repopulate on miss. Values are never updated in place.
  - Snapshot reads/writes/deletes are best-effort: a Redis failure is logged and
    treated as a miss. Marker acquisition is NOT best-effort (see try_acquire_pending).
  - Logs only keys and identifiers — no transcript content in logs
"""
import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from netcoach.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# TTL constants (seconds)
# ---------------------------------------------------------------------------
SESSION_TTL: int = 45
SESSIONS_LIST_TTL: int = 30      # Lists change on every turn append — shorter than entity TTL
EVALUATION_TTL: int = 120
REVIEW_DUE_TTL: int = 45

# Pending-job marker TTLs — safety net for a crashed worker, not a job timeout
SUMMARY_PENDING_TTL: int = 25
NUDGES_PENDING_TTL: int = 10
METADATA_PENDING_TTL: int = 15

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
SESSION_PREFIX = "session:id"
SESSIONS_LIST_PREFIX = "sessions:owner"
EVALUATION_PREFIX = "evaluation:session"
REVIEW_DUE_PREFIX = "review:due"
PENDING_PREFIX = "pending"


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_session_key(session_id: str) -> str:
    """Build Redis key for a single session snapshot: session:id:{session_id}"""
    return f"{SESSION_PREFIX}:{session_id}"


def make_sessions_list_key(owner_id: str) -> str:
    """Build Redis key for an owner's session list: sessions:owner:{owner_id}"""
    return f"{SESSIONS_LIST_PREFIX}:{owner_id}"


def make_evaluation_key(session_id: str) -> str:
    return f"{EVALUATION_PREFIX}:{session_id}"


def make_review_due_key(owner_id: str) -> str:
    return f"{REVIEW_DUE_PREFIX}:{owner_id}"


def make_pending_key(kind: str, session_id: str) -> str:
    """Build Redis key for an in-flight job marker: pending:{kind}:{session_id}"""
    return f"{PENDING_PREFIX}:{kind}:{session_id}"


def session_keys(session_id: str, owner_id: Optional[str] = None, *, evaluation: bool = False) -> list[str]:
    """Every key that can hold a stale view of one session after it is mutated."""
    keys = [make_session_key(session_id)]
    if owner_id:
        keys.append(make_sessions_list_key(owner_id))
    if evaluation:
        keys.append(make_evaluation_key(session_id))
    return keys


# ---------------------------------------------------------------------------
# Pool factory — called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup — stored on app.state.redis.
    Verifies connectivity with PING before returning.
    """
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established at %s", settings.redis_url)
    return client


# ---------------------------------------------------------------------------
# Snapshot helpers
# ---------------------------------------------------------------------------

async def cache_get(client: aioredis.Redis, key: str) -> Optional[Any]:
    """
    Return the decoded JSON value for key, or None on miss.
    Redis failures and undecodable values are treated as a miss.
    """
    try:
        raw = await client.get(key)
    except RedisError as exc:
        logger.warning("Redis cache get failed key=%s error=%s", key, exc)
        return None
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding undecodable cache value key=%s", key)
        return None


async def cache_set(client: aioredis.Redis, key: str, value: Any, ttl: int) -> None:
    """Store a JSON-serializable value with TTL. Overwrites and resets TTL."""
    try:
        await client.setex(key, ttl, json.dumps(value))
    except RedisError as exc:
        logger.warning("Redis cache set failed key=%s error=%s", key, exc)
        return
    logger.debug("Cached key=%s ttl=%ds", key, ttl)


async def invalidate(client: aioredis.Redis, *keys: Optional[str]) -> None:
    """
    Delete every key that may hold a stale view of a just-committed mutation.
    Single call site for coherence: every mutating store operation ends here.
    """
    filtered = [k for k in keys if k]
    if not filtered:
        return
    try:
        await client.delete(*filtered)
    except RedisError as exc:
        logger.warning("Redis invalidation failed keys=%s error=%s", filtered, exc)
        return
    logger.debug("Invalidated keys=%s", filtered)


# ---------------------------------------------------------------------------
# Pending-job markers
# ---------------------------------------------------------------------------

async def try_acquire_pending(client: aioredis.Redis, kind: str, session_id: str, ttl: int) -> bool:
    """
    Atomic SET NX EX: True only for the caller that created the marker.
    If Redis is unreachable the job is skipped (False) rather than run unguarded.
    """
    key = make_pending_key(kind, session_id)
    try:
        created = await client.set(key, "1", ex=ttl, nx=True)
    except RedisError as exc:
        logger.warning("Pending marker acquire failed key=%s error=%s", key, exc)
        return False
    return bool(created)


async def release_pending(client: aioredis.Redis, kind: str, session_id: str) -> None:
    """Unconditional delete; the TTL covers the case where this never runs."""
    key = make_pending_key(kind, session_id)
    try:
        await client.delete(key)
    except RedisError as exc:
        logger.warning("Pending marker release failed key=%s error=%s", key, exc)
