"""
test_jobs.py — retry helper and background job runner.

Tests verify:
1. call_with_retry: success short-circuits, failures retry up to the attempt limit,
   the fixed delay schedule is honoured, timeouts count as failures, and
   unrelated exceptions propagate immediately
2. BackgroundJobRunner: one in-flight job per (kind, session), marker released
   on success and on failure, drain() waits for everything
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from netcoach.cache import make_pending_key
from netcoach.enrichment.jobs import (
    JOB_EVALUATION,
    JOB_SUMMARY,
    BackgroundJobRunner,
    EnrichmentExhaustedError,
    call_with_retry,
)
from netcoach.enrichment.llm_service import EnrichmentError


# ---------------------------------------------------------------------------
# Test Group 1: call_with_retry
# ---------------------------------------------------------------------------

class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_first_success(self) -> None:
        operation = AsyncMock(return_value="ok")
        assert await call_with_retry(operation, 3, (0, 0, 0)) == "ok"
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_recovers_on_second_attempt(self) -> None:
        operation = AsyncMock(side_effect=[EnrichmentError("flaky"), "ok"])
        assert await call_with_retry(operation, 2, (0,)) == "ok"
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_exhaustion_chains_last_error(self) -> None:
        errors = [EnrichmentError("one"), EnrichmentError("two"), EnrichmentError("three")]
        operation = AsyncMock(side_effect=errors)
        with pytest.raises(EnrichmentExhaustedError) as exc_info:
            await call_with_retry(operation, 3, (), kind="evaluation", session_id="s1")
        assert exc_info.value.attempts == 3
        assert exc_info.value.kind == "evaluation"
        assert exc_info.value.__cause__ is errors[-1]
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_delay_schedule(self) -> None:
        """Sleeps between attempts only: (1.5, 3.0), never after the last one."""
        operation = AsyncMock(side_effect=EnrichmentError("down"))
        with patch("netcoach.enrichment.jobs.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(EnrichmentExhaustedError):
                await call_with_retry(operation, 3, (1.5, 3.0, 6.0))
        assert [c.args[0] for c in sleep.await_args_list] == [1.5, 3.0]

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self) -> None:
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(1)

        with pytest.raises(EnrichmentExhaustedError):
            await call_with_retry(slow, 2, (0,), timeout=0.01)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self) -> None:
        operation = AsyncMock(side_effect=KeyError("bug"))
        with pytest.raises(KeyError):
            await call_with_retry(operation, 3, (0, 0))
        assert operation.await_count == 1


# ---------------------------------------------------------------------------
# Test Group 2: BackgroundJobRunner
# ---------------------------------------------------------------------------

class TestBackgroundJobRunner:
    @pytest.mark.asyncio
    async def test_duplicate_trigger_skipped_while_pending(self, redis) -> None:
        runner = BackgroundJobRunner(redis)
        release = asyncio.Event()
        runs = 0

        async def job():
            nonlocal runs
            runs += 1
            await release.wait()

        assert await runner.submit(JOB_SUMMARY, "s1", job) is True
        assert await runner.submit(JOB_SUMMARY, "s1", job) is False
        assert await redis.exists(make_pending_key(JOB_SUMMARY, "s1")) == 1

        release.set()
        await runner.drain()
        assert runs == 1
        assert runner.in_flight == 0
        assert await redis.exists(make_pending_key(JOB_SUMMARY, "s1")) == 0

        # The next trigger after completion runs again
        assert await runner.submit(JOB_SUMMARY, "s1", job) is True
        await runner.drain()
        assert runs == 2

    @pytest.mark.asyncio
    async def test_marker_released_when_job_fails(self, redis) -> None:
        runner = BackgroundJobRunner(redis)

        async def job():
            raise RuntimeError("remote exploded")

        assert await runner.submit(JOB_SUMMARY, "s1", job) is True
        await runner.drain()
        assert await redis.exists(make_pending_key(JOB_SUMMARY, "s1")) == 0

    @pytest.mark.asyncio
    async def test_unguarded_jobs_take_no_marker(self, redis) -> None:
        runner = BackgroundJobRunner(redis)
        job = AsyncMock()
        runner.submit_unguarded(JOB_EVALUATION, "s1", job)
        runner.submit_unguarded(JOB_EVALUATION, "s1", job)
        await runner.drain()
        assert job.await_count == 2
        assert await redis.exists(make_pending_key(JOB_EVALUATION, "s1")) == 0

    @pytest.mark.asyncio
    async def test_drain_waits_for_jobs_scheduled_while_draining(self, redis) -> None:
        runner = BackgroundJobRunner(redis)
        finished = []

        async def second():
            finished.append("second")

        async def first():
            runner.submit_unguarded(JOB_EVALUATION, "s1", second)
            finished.append("first")

        runner.submit_unguarded(JOB_EVALUATION, "s1", first)
        await runner.drain()
        assert finished == ["first", "second"]
