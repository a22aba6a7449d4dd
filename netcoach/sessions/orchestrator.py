"""
orchestrator.py — session lifecycle composition root.

Wires the store, the background runner and the enrichment services together
and exposes the operations the HTTP layer calls. Mutations go to the store;
enrichment is triggered after the mutation has committed:

  create                 → metadata, nudges
  rename                 → metadata
  any turn append        → summary
  assistant turn append  → nudges
  finalize (if changed)  → evaluation

Triggers are fire-and-forget; a request never waits for enrichment.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from netcoach.config import settings
from netcoach.database import utcnow
from netcoach.enrichment.evaluation_service import EVALUATION_RETRY, EvaluationService
from netcoach.enrichment.followup_email import FOLLOWUP_RETRY, FollowupEmailService
from netcoach.enrichment.jobs import (
    JOB_EVALUATION,
    JOB_METADATA,
    JOB_NUDGES,
    JOB_SUMMARY,
    BackgroundJobRunner,
    RetryPolicy,
)
from netcoach.enrichment.llm_service import EnrichmentClient
from netcoach.enrichment.metadata_service import METADATA_RETRY, MetadataService
from netcoach.enrichment.nudge_service import NUDGES_RETRY, NudgeService
from netcoach.enrichment.summary_service import SUMMARY_RETRY, SummaryService
from netcoach.sessions.schemas import (
    DeleteResult,
    Evaluation,
    FinalizeResult,
    FollowupEmail,
    Session,
    SessionResume,
    SessionTurn,
    StageReadiness,
    TransitionResult,
    TurnRole,
)
from netcoach.stages.policy import should_advance_stage
from netcoach.stages.stage import get_stage_hint
from netcoach.store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_SUMMARY = "Default networking context"
MAX_RESUME_TURNS = 200


class SessionOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        runner: BackgroundJobRunner,
        summary: SummaryService,
        nudges: NudgeService,
        metadata: MetadataService,
        evaluation: EvaluationService,
        followup: FollowupEmailService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.runner = runner
        self._summary = summary
        self._nudges = nudges
        self._metadata = metadata
        self._evaluation = evaluation
        self._followup = followup
        self._clock = clock

    # ---------------------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------------------

    async def get_session(self, session_id: str) -> Session:
        return await self.store.get_session(session_id)

    async def list_sessions(self, owner_id: str) -> list[Session]:
        return await self.store.list_sessions_for_owner(owner_id)

    async def get_evaluation(self, session_id: str) -> Optional[Evaluation]:
        """None until evaluated. Raises SessionNotFoundError for an unknown session."""
        await self.store.get_session(session_id)
        return await self.store.get_evaluation(session_id)

    async def get_resume(self, session_id: str, recent_turn_limit: Optional[int] = None) -> SessionResume:
        """Everything a client needs to pick a session back up."""
        limit = recent_turn_limit if recent_turn_limit is not None else settings.resume_recent_turns
        limit = max(0, min(limit, MAX_RESUME_TURNS))

        session = await self.store.get_session(session_id)
        recent_turns = await self.store.list_recent_turns(session_id, limit)
        latest_user = await self.store.get_latest_user_turn_content(session_id)

        decision = should_advance_stage(
            session.stage,
            session.stage_entered_at,
            session.stage_user_turns,
            session.stage_signal_flags,
            latest_user_content=latest_user,
            now=self._clock(),
            is_requested=False,
        )
        return SessionResume(
            session=session,
            recent_turns=recent_turns,
            summary=session.conversation_summary,
            talk_nudges=session.talk_nudges,
            draft_followup_email=session.draft_followup_email,
            stage_hint=get_stage_hint(session.stage),
            context_summary=(
                session.custom_context or session.target_profile_context or DEFAULT_CONTEXT_SUMMARY
            ),
            stage_readiness=StageReadiness(
                advance=decision.advance,
                next_stage=decision.next_stage,
                reason=decision.reason,
                gate=decision.gate,
            ),
        )

    # ---------------------------------------------------------------------------
    # Mutations
    # ---------------------------------------------------------------------------

    async def create_session(
        self,
        owner_id: str,
        goal: str,
        target_profile_context: str = "",
        custom_context: str = "",
    ) -> Session:
        session = await self.store.create_session(owner_id, goal, target_profile_context, custom_context)
        await self._metadata.queue_metadata(session.id)
        await self._nudges.queue_nudges(session.id)
        return session

    async def rename_session(self, session_id: str, goal: str) -> Session:
        session = await self.store.rename_session(session_id, goal)
        await self._metadata.queue_metadata(session.id)
        return session

    async def delete_session(self, session_id: str) -> DeleteResult:
        return await self.store.delete_session(session_id)

    async def append_turn(self, session_id: str, role: str, content: str) -> SessionTurn:
        _, turn = await self.store.append_turn(session_id, role, content)
        await self._summary.queue_summary(session_id)
        if turn.role == TurnRole.assistant:
            await self._nudges.queue_nudges(session_id)
        return turn

    async def request_stage_transition(
        self,
        session_id: str,
        target_stage: str,
        requested_by: str = "assistant",
        reason: str = "",
    ) -> TransitionResult:
        return await self.store.request_stage_transition(session_id, target_stage, requested_by, reason)

    async def finalize_session(self, session_id: str) -> FinalizeResult:
        session, changed = await self.store.finalize_session(session_id)
        if not changed:
            return FinalizeResult(
                session=session,
                queued=False,
                message=f"Evaluation not queued: session is {session.status.value}",
            )
        await self._evaluation.queue_evaluation(session)
        return FinalizeResult(session=session, queued=True, message="Evaluation queued")

    async def generate_followup_email(
        self,
        session_id: str,
        tone: str = "professional",
        length: str = "medium",
    ) -> FollowupEmail:
        return await self._followup.generate(session_id, tone, length)

    async def shutdown(self) -> None:
        await self.runner.drain()


def build_orchestrator(
    store: SessionStore,
    client: EnrichmentClient,
    runner: Optional[BackgroundJobRunner] = None,
    retries: Optional[dict[str, RetryPolicy]] = None,
    timeout: Optional[float] = None,
    clock: Callable[[], datetime] = utcnow,
) -> SessionOrchestrator:
    """
    Assemble an orchestrator with its services.
    `retries` overrides the per-kind RetryPolicy (keys: summary, nudges, metadata,
    evaluation, followup_email).
    """
    runner = runner or BackgroundJobRunner(store.redis)
    retries = retries or {}
    return SessionOrchestrator(
        store=store,
        runner=runner,
        summary=SummaryService(store, client, runner, retries.get(JOB_SUMMARY, SUMMARY_RETRY), timeout),
        nudges=NudgeService(store, client, runner, retries.get(JOB_NUDGES, NUDGES_RETRY), timeout),
        metadata=MetadataService(store, client, runner, retries.get(JOB_METADATA, METADATA_RETRY), timeout),
        evaluation=EvaluationService(
            store, client, runner, retries.get(JOB_EVALUATION, EVALUATION_RETRY), timeout
        ),
        followup=FollowupEmailService(store, client, retries.get("followup_email", FOLLOWUP_RETRY), timeout),
        clock=clock,
    )
