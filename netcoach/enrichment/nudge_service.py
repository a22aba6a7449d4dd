"""
nudge_service.py — short "what to say next" suggestions.

Triggered by session creation and by assistant turns. Sends the rolling summary plus the most recent
window of turns; stores at most two suggestions. On exhaustion the previous
suggestions stay visible.
"""
import logging
from typing import Optional

from netcoach.config import settings
from netcoach.enrichment.jobs import (
    JOB_NUDGES,
    BackgroundJobRunner,
    EnrichmentExhaustedError,
    RetryPolicy,
    call_with_retry,
)
from netcoach.enrichment.llm_service import EnrichmentClient
from netcoach.store import SessionNotFoundError, SessionStore

logger = logging.getLogger(__name__)

NUDGES_RETRY = RetryPolicy(attempts=2, delays=(0.9, 1.8))
RECENT_TURN_WINDOW = 14


class NudgeService:
    def __init__(
        self,
        store: SessionStore,
        client: EnrichmentClient,
        runner: BackgroundJobRunner,
        retry: RetryPolicy = NUDGES_RETRY,
        timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._client = client
        self._runner = runner
        self._retry = retry
        self._timeout = timeout if timeout is not None else settings.enrichment_timeout_seconds

    async def queue_nudges(self, session_id: str) -> bool:
        return await self._runner.submit(JOB_NUDGES, session_id, lambda: self.refresh_nudges(session_id))

    async def refresh_nudges(self, session_id: str) -> list[str]:
        """Compute and store fresh suggestions; returns [] when nothing was saved."""
        try:
            session = await self._store.get_session(session_id)
        except SessionNotFoundError:
            logger.info("Nudges skipped session_id=%s reason=not_found", session_id)
            return []

        recent_turns = await self._store.list_recent_turns(session_id, RECENT_TURN_WINDOW)
        try:
            payload = await call_with_retry(
                lambda: self._client.suggest_nudges(session, session.conversation_summary, recent_turns),
                self._retry.attempts,
                self._retry.delays,
                self._timeout,
                kind=JOB_NUDGES,
                session_id=session_id,
            )
        except EnrichmentExhaustedError as exc:
            logger.warning("Nudges refresh failed session_id=%s error=%s", session_id, exc)
            return []

        try:
            saved = await self._store.save_talk_nudges(session_id, payload.nudges)
        except SessionNotFoundError:
            logger.info("Nudges dropped session_id=%s reason=deleted", session_id)
            return []
        return saved.talk_nudges
