"""
metadata_service.py — sidebar title and one-line goal summary.

Runs once per session-defining edit (create, rename). Blank remote fields are
replaced with text derived from the goal; if every attempt fails the stored
metadata is left untouched.
"""
import logging
from typing import Optional

from netcoach.config import settings
from netcoach.enrichment.jobs import (
    JOB_METADATA,
    BackgroundJobRunner,
    EnrichmentExhaustedError,
    RetryPolicy,
    call_with_retry,
)
from netcoach.enrichment.llm_service import EnrichmentClient
from netcoach.sessions.schemas import Session
from netcoach.store import SessionNotFoundError, SessionStore

logger = logging.getLogger(__name__)

METADATA_RETRY = RetryPolicy(attempts=2, delays=(1.1, 2.2))

TITLE_MAX_CHARS = 56
GOAL_SUMMARY_MAX_CHARS = 90
DEFAULT_TITLE = "Networking Session"
DEFAULT_GOAL_SUMMARY = "Have a clear, natural networking conversation."


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit - 1].strip()}…"


def fallback_title(goal: str) -> str:
    text = (goal or "").strip()
    return _truncate(text, TITLE_MAX_CHARS) if text else DEFAULT_TITLE


def fallback_goal_summary(goal: str) -> str:
    text = (goal or "").strip()
    return _truncate(text, GOAL_SUMMARY_MAX_CHARS) if text else DEFAULT_GOAL_SUMMARY


class MetadataService:
    def __init__(
        self,
        store: SessionStore,
        client: EnrichmentClient,
        runner: BackgroundJobRunner,
        retry: RetryPolicy = METADATA_RETRY,
        timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._client = client
        self._runner = runner
        self._retry = retry
        self._timeout = timeout if timeout is not None else settings.enrichment_timeout_seconds

    async def queue_metadata(self, session_id: str) -> bool:
        return await self._runner.submit(JOB_METADATA, session_id, lambda: self.ensure_metadata(session_id))

    async def ensure_metadata(self, session_id: str) -> Optional[Session]:
        try:
            session = await self._store.get_session(session_id)
        except SessionNotFoundError:
            logger.info("Metadata skipped session_id=%s reason=not_found", session_id)
            return None

        try:
            payload = await call_with_retry(
                lambda: self._client.derive_metadata(
                    session.goal, session.target_profile_context, session.custom_context
                ),
                self._retry.attempts,
                self._retry.delays,
                self._timeout,
                kind=JOB_METADATA,
                session_id=session_id,
            )
        except EnrichmentExhaustedError as exc:
            logger.warning("Session metadata failed session_id=%s error=%s", session_id, exc)
            return None

        try:
            return await self._store.save_session_metadata(
                session_id,
                payload.display_title or fallback_title(session.goal),
                payload.goal_summary or fallback_goal_summary(session.goal),
            )
        except SessionNotFoundError:
            logger.info("Metadata dropped session_id=%s reason=deleted", session_id)
            return None
