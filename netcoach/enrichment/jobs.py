"""
jobs.py — background job runner and bounded retry helper.

BackgroundJobRunner is the in-process task queue for enrichment work:
  submit()            — SET NX EX the pending marker for (kind, session_id); if this
                        caller created it, schedule the job as an asyncio.Task and
                        release the marker in `finally` whatever the outcome
  submit_unguarded()  — same scheduling without a marker (evaluation: finalize gates it)
  drain()             — await every in-flight task (shutdown and tests)

The request that triggered a job never waits for it. A crashed process leaves the
marker behind; its TTL is what lets a later trigger run again.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

import redis.asyncio as aioredis
from pydantic import BaseModel, ConfigDict

from netcoach.cache import (
    METADATA_PENDING_TTL,
    NUDGES_PENDING_TTL,
    SUMMARY_PENDING_TTL,
    release_pending,
    try_acquire_pending,
)
from netcoach.enrichment.llm_service import EnrichmentError

logger = logging.getLogger(__name__)

T = TypeVar("T")

JOB_SUMMARY = "summary"
JOB_NUDGES = "nudges"
JOB_METADATA = "metadata"
JOB_EVALUATION = "evaluation"

PENDING_TTLS: dict[str, int] = {
    JOB_SUMMARY: SUMMARY_PENDING_TTL,
    JOB_NUDGES: NUDGES_PENDING_TTL,
    JOB_METADATA: METADATA_PENDING_TTL,
}


class RetryPolicy(BaseModel):
    """Attempt limit plus the fixed delay slept after each failed attempt."""
    model_config = ConfigDict(frozen=True)

    attempts: int
    delays: tuple[float, ...] = ()


class EnrichmentExhaustedError(Exception):
    """Every attempt allowed by the retry policy failed."""

    def __init__(self, kind: str, attempts: int) -> None:
        super().__init__(f"{kind} failed after {attempts} attempt(s)")
        self.kind = kind
        self.attempts = attempts


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    delays: Sequence[float],
    timeout: Optional[float] = None,
    *,
    kind: str = "enrichment",
    session_id: Optional[str] = None,
) -> T:
    """
    Run `operation` up to `attempts` times.

    EnrichmentError and per-attempt timeouts count as failed attempts; after a
    failure (except the last) sleep delays[attempt - 1]. Any other exception
    propagates immediately. Exhaustion raises EnrichmentExhaustedError chained
    to the last failure.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            if timeout:
                return await asyncio.wait_for(operation(), timeout)
            return await operation()
        except (EnrichmentError, asyncio.TimeoutError) as exc:
            last_error = exc
            logger.warning(
                "Enrichment attempt failed kind=%s session_id=%s attempt=%d/%d error=%s",
                kind,
                session_id,
                attempt,
                attempts,
                str(exc) or type(exc).__name__,
            )
            if attempt < attempts:
                delay = delays[attempt - 1] if attempt - 1 < len(delays) else 0
                if delay > 0:
                    await asyncio.sleep(delay)
    raise EnrichmentExhaustedError(kind, attempts) from last_error


class BackgroundJobRunner:
    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis
        # Strong references so the event loop cannot garbage-collect running jobs
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def submit(
        self,
        kind: str,
        session_id: str,
        job: Callable[[], Awaitable[None]],
    ) -> bool:
        """Schedule `job` unless one of the same kind is already pending for this session."""
        ttl = PENDING_TTLS[kind]
        if not await try_acquire_pending(self._redis, kind, session_id, ttl):
            logger.info("Job skipped kind=%s session_id=%s reason=pending", kind, session_id)
            return False
        logger.info("Pending marker acquired kind=%s session_id=%s ttl=%ds", kind, session_id, ttl)
        self._spawn(kind, session_id, self._run_guarded(kind, session_id, job))
        return True

    def submit_unguarded(
        self,
        kind: str,
        session_id: str,
        job: Callable[[], Awaitable[None]],
    ) -> None:
        self._spawn(kind, session_id, job())

    async def drain(self) -> None:
        """Wait until no job is running, including jobs scheduled while draining."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_guarded(
        self,
        kind: str,
        session_id: str,
        job: Callable[[], Awaitable[None]],
    ) -> None:
        try:
            await job()
        finally:
            await release_pending(self._redis, kind, session_id)

    def _spawn(self, kind: str, session_id: str, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(self._supervise(kind, session_id, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _supervise(self, kind: str, session_id: str, coro: Awaitable[None]) -> None:
        # Nothing awaits these tasks' results; an escaped error is only visible in the log
        try:
            await coro
        except Exception:
            logger.exception("Background job crashed kind=%s session_id=%s", kind, session_id)
