"""
summary_service.py — rolling conversation summary.

Triggered on every turn append. Only the turns after the summary cursor are
sent (capped), so each run folds a delta into the prior summary. On success
the summary is saved and the cursor moves to the newest folded turn; on
exhaustion the previous summary stays as it was.
"""
import logging
from typing import Optional

from netcoach.config import settings
from netcoach.enrichment.jobs import (
    JOB_SUMMARY,
    BackgroundJobRunner,
    EnrichmentExhaustedError,
    RetryPolicy,
    call_with_retry,
)
from netcoach.enrichment.llm_service import EnrichmentClient
from netcoach.sessions.schemas import Session
from netcoach.store import SessionNotFoundError, SessionStore

logger = logging.getLogger(__name__)

SUMMARY_RETRY = RetryPolicy(attempts=2, delays=(1.2, 2.5))
SUMMARY_TURN_LIMIT = 120         # first summary: most recent turns
INCREMENTAL_TURN_LIMIT = 80      # later summaries: turns after the cursor


class SummaryService:
    def __init__(
        self,
        store: SessionStore,
        client: EnrichmentClient,
        runner: BackgroundJobRunner,
        retry: RetryPolicy = SUMMARY_RETRY,
        timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._client = client
        self._runner = runner
        self._retry = retry
        self._timeout = timeout if timeout is not None else settings.enrichment_timeout_seconds

    async def queue_summary(self, session_id: str) -> bool:
        return await self._runner.submit(JOB_SUMMARY, session_id, lambda: self.refresh_summary(session_id))

    async def refresh_summary(self, session_id: str) -> Optional[Session]:
        try:
            session = await self._store.get_session(session_id)
        except SessionNotFoundError:
            logger.info("Summary skipped session_id=%s reason=not_found", session_id)
            return None

        if session.summary_cursor_at is not None:
            new_turns = await self._store.list_turns_after(
                session_id, session.summary_cursor_at, INCREMENTAL_TURN_LIMIT
            )
        else:
            new_turns = await self._store.list_recent_turns(session_id, SUMMARY_TURN_LIMIT)
        if not new_turns:
            return None

        try:
            payload = await call_with_retry(
                lambda: self._client.summarize(session, session.conversation_summary, new_turns),
                self._retry.attempts,
                self._retry.delays,
                self._timeout,
                kind=JOB_SUMMARY,
                session_id=session_id,
            )
        except EnrichmentExhaustedError as exc:
            logger.warning("Summary update failed session_id=%s error=%s", session_id, exc)
            return None

        try:
            return await self._store.save_conversation_summary(
                session_id, payload.summary, new_turns[-1].created_at
            )
        except SessionNotFoundError:
            logger.info("Summary dropped session_id=%s reason=deleted", session_id)
            return None
