"""
evaluation_service.py — end-of-session scoring.

Triggered only by a finalize that changed the session's status, so no pending
marker is used. The session snapshot and full transcript are captured before
the job is scheduled. Three attempts with escalating delays. Exhaustion, or
any error while saving the result, writes EVALUATION_FAILED (the one enrichment
failure users can see) and leaves any earlier evaluation row as it was.
"""
import logging
from typing import Optional

from netcoach.config import settings
from netcoach.enrichment.jobs import (
    JOB_EVALUATION,
    BackgroundJobRunner,
    EnrichmentExhaustedError,
    RetryPolicy,
    call_with_retry,
)
from netcoach.enrichment.llm_service import EnrichmentClient
from netcoach.sessions.schemas import Evaluation, Session
from netcoach.store import SessionNotFoundError, SessionStore

logger = logging.getLogger(__name__)

EVALUATION_RETRY = RetryPolicy(attempts=3, delays=(1.5, 3.0, 6.0))


class EvaluationService:
    def __init__(
        self,
        store: SessionStore,
        client: EnrichmentClient,
        runner: BackgroundJobRunner,
        retry: RetryPolicy = EVALUATION_RETRY,
        timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._client = client
        self._runner = runner
        self._retry = retry
        self._timeout = timeout if timeout is not None else settings.enrichment_timeout_seconds

    async def queue_evaluation(self, session: Session) -> None:
        turns = await self._store.get_turns(session.id)
        self._runner.submit_unguarded(
            JOB_EVALUATION,
            session.id,
            lambda: self.run_evaluation(session, turns),
        )
        logger.info("Evaluation queued session_id=%s turns=%d", session.id, len(turns))

    async def run_evaluation(self, session: Session, turns: list) -> Optional[Evaluation]:
        try:
            payload = await call_with_retry(
                lambda: self._client.evaluate(session, turns),
                self._retry.attempts,
                self._retry.delays,
                self._timeout,
                kind=JOB_EVALUATION,
                session_id=session.id,
            )
            evaluation = await self._store.save_evaluation(
                session.id,
                score=payload.score,
                strengths=payload.strengths,
                improvements=payload.improvements,
                next_actions=payload.next_actions,
                follow_up_email=payload.follow_up_email,
            )
        except SessionNotFoundError:
            logger.info("Evaluation dropped session_id=%s reason=deleted", session.id)
            return None
        except EnrichmentExhaustedError as exc:
            logger.error("Evaluation failed session_id=%s error=%s", session.id, exc)
            await self._mark_failed(session.id)
            return None
        except Exception:
            # Storage errors included: the session must not stay PROCESSING_EVALUATION
            logger.error("Evaluation failed session_id=%s", session.id, exc_info=True)
            await self._mark_failed(session.id)
            return None
        logger.info("Evaluation completed session_id=%s score=%d", session.id, evaluation.score)
        return evaluation

    async def _mark_failed(self, session_id: str) -> None:
        try:
            await self._store.mark_evaluation_failed(session_id)
        except SessionNotFoundError:
            logger.info("Evaluation failure not recorded session_id=%s reason=deleted", session_id)
        except Exception:
            logger.error("Could not record evaluation failure session_id=%s", session_id, exc_info=True)
