"""
store.py — Data access facade for netcoach.

Provides a consistent, high-level API for persisting and retrieving domain objects.
The orchestrator and the background services use this class — nothing else
touches SQLAlchemy directly.

Design principles:
  - Every mutating operation follows one contract:
      lock the session row (SELECT ... FOR UPDATE) → read under lock → compute
      (stage logic delegated to netcoach.stages.policy) → write → commit →
      invalidate every cache key that could be stale → repopulate the snapshot
      (request-path writes only; background writes invalidate and stop there)
  - Reads go through the cache first and fall back to the database on a miss
  - Storage errors roll back (async with db.begin()) and propagate to the caller
  - Logs only session_id / owner_id — never turn content or goals
  - Returns domain Pydantic objects (not ORM instances) so callers are persistence-agnostic
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from netcoach.cache import (
    EVALUATION_TTL,
    REVIEW_DUE_TTL,
    SESSION_TTL,
    SESSIONS_LIST_TTL,
    cache_get,
    cache_set,
    invalidate,
    make_evaluation_key,
    make_review_due_key,
    make_session_key,
    make_sessions_list_key,
    session_keys,
)
from netcoach.database import utcnow
from netcoach.models.evaluation import EvaluationORM
from netcoach.models.flashcard import FlashcardORM, FlashcardScheduleORM
from netcoach.models.session import SessionORM
from netcoach.models.session_turn import SessionTurnORM
from netcoach.review.schemas import Flashcard, FlashcardSchedule, ReviewSaveResult, ReviewUpdate
from netcoach.sessions.schemas import (
    DeleteResult,
    Evaluation,
    Session,
    SessionStatus,
    SessionTurn,
    TransitionResult,
    TurnRole,
    as_utc,
)
from netcoach.stages.policy import evaluate_stage_transition, should_advance_stage
from netcoach.stages.signals import DEFAULT_DETECTOR, SignalDetector, update_stage_signals
from netcoach.stages.stage import STAGE_SEQUENCE

logger = logging.getLogger(__name__)

DEFAULT_TARGET_CONTEXT = (
    "Default networking context: friendly small talk, role exploration, "
    "and actionable recruiting advice."
)
MAX_STORED_NUDGES = 2

_TURN_TICK = timedelta(microseconds=1)


class SessionNotFoundError(LookupError):
    """Raised when a session id does not resolve to a row."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


def _flashcard_snapshot(card: FlashcardORM, schedule: FlashcardScheduleORM) -> Flashcard:
    return Flashcard(
        id=card.id,
        owner_id=card.owner_id,
        text=card.text,
        definition=card.definition,
        example=card.example,
        example_translation=card.example_translation,
        real_life_definition=card.real_life_definition,
        surrounding_text=card.surrounding_text,
        source_title=card.source_title,
        created_at=card.created_at,
        schedule=FlashcardSchedule.model_validate(schedule),
    )


class SessionStore:
    """
    Cache-coherent persistence for sessions, turns, evaluations and flashcards.

    session_factory: async_sessionmaker from netcoach.database (or a test factory)
    redis:           redis.asyncio client held on app.state.redis
    detector:        signal detection strategy fed to update_stage_signals
    clock:           returns the current aware UTC datetime (injectable for dwell tests)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: aioredis.Redis,
        detector: SignalDetector = DEFAULT_DETECTOR,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._redis = redis
        self._detector = detector
        self._clock = clock

    @property
    def redis(self) -> aioredis.Redis:
        return self._redis

    # ---------------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------------

    async def _lock_session(self, db: AsyncSession, session_id: str) -> SessionORM:
        result = await db.execute(
            select(SessionORM).where(SessionORM.id == session_id).with_for_update()
        )
        orm = result.scalar_one_or_none()
        if orm is None:
            raise SessionNotFoundError(session_id)
        return orm

    async def _latest_user_content(self, db: AsyncSession, session_id: str) -> Optional[str]:
        result = await db.execute(
            select(SessionTurnORM.content)
            .where(
                SessionTurnORM.session_id == session_id,
                SessionTurnORM.role == TurnRole.user.value,
            )
            .order_by(SessionTurnORM.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _invalidate_session(self, session: Session, *, evaluation: bool = False) -> None:
        """
        Coherence step for derived-state writes. These run concurrently with turn
        appends, so they only drop cached views and never write a snapshot back.
        """
        await invalidate(self._redis, *session_keys(session.id, session.owner_id, evaluation=evaluation))

    async def _commit_session(self, session: Session, *, evaluation: bool = False) -> None:
        """Post-commit coherence step for request-path mutations."""
        await self._invalidate_session(session, evaluation=evaluation)
        await cache_set(
            self._redis,
            make_session_key(session.id),
            session.model_dump(mode="json"),
            SESSION_TTL,
        )

    # ---------------------------------------------------------------------------
    # Session reads
    # ---------------------------------------------------------------------------

    async def get_session(self, session_id: str) -> Session:
        """Cached single-session read. Raises SessionNotFoundError."""
        key = make_session_key(session_id)
        cached = await cache_get(self._redis, key)
        if cached is not None:
            return Session.model_validate(cached)

        async with self._session_factory() as db:
            result = await db.execute(select(SessionORM).where(SessionORM.id == session_id))
            orm = result.scalar_one_or_none()
            if orm is None:
                raise SessionNotFoundError(session_id)
            session = Session.model_validate(orm)

        await cache_set(self._redis, key, session.model_dump(mode="json"), SESSION_TTL)
        return session

    async def list_sessions_for_owner(self, owner_id: str) -> list[Session]:
        """Owner's sessions, most recently updated first. Cached with the shorter list TTL."""
        key = make_sessions_list_key(owner_id)
        cached = await cache_get(self._redis, key)
        if cached is not None:
            return [Session.model_validate(item) for item in cached]

        async with self._session_factory() as db:
            result = await db.execute(
                select(SessionORM)
                .where(SessionORM.owner_id == owner_id)
                .order_by(SessionORM.updated_at.desc())
            )
            sessions = [Session.model_validate(row) for row in result.scalars().all()]

        await cache_set(
            self._redis,
            key,
            [s.model_dump(mode="json") for s in sessions],
            SESSIONS_LIST_TTL,
        )
        return sessions

    async def get_turns(self, session_id: str) -> list[SessionTurn]:
        """Full transcript in canonical (created_at ascending) order."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(SessionTurnORM)
                .where(SessionTurnORM.session_id == session_id)
                .order_by(SessionTurnORM.created_at.asc())
            )
            return [SessionTurn.model_validate(row) for row in result.scalars().all()]

    async def list_recent_turns(self, session_id: str, limit: int) -> list[SessionTurn]:
        """The newest `limit` turns, returned oldest first."""
        if limit <= 0:
            return []
        async with self._session_factory() as db:
            result = await db.execute(
                select(SessionTurnORM)
                .where(SessionTurnORM.session_id == session_id)
                .order_by(SessionTurnORM.created_at.desc())
                .limit(limit)
            )
            rows = list(result.scalars().all())
        rows.reverse()
        return [SessionTurn.model_validate(row) for row in rows]

    async def list_turns_after(
        self,
        session_id: str,
        cursor: Optional[datetime],
        limit: int,
    ) -> list[SessionTurn]:
        """Turns strictly newer than `cursor` (all turns when cursor is None), oldest first."""
        stmt = select(SessionTurnORM).where(SessionTurnORM.session_id == session_id)
        if cursor is not None:
            stmt = stmt.where(SessionTurnORM.created_at > cursor)
        stmt = stmt.order_by(SessionTurnORM.created_at.asc()).limit(limit)
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [SessionTurn.model_validate(row) for row in result.scalars().all()]

    async def get_latest_user_turn_content(self, session_id: str) -> Optional[str]:
        async with self._session_factory() as db:
            return await self._latest_user_content(db, session_id)

    async def get_evaluation(self, session_id: str) -> Optional[Evaluation]:
        """Cached evaluation read. Returns None until the evaluation job has succeeded."""
        key = make_evaluation_key(session_id)
        cached = await cache_get(self._redis, key)
        if cached is not None:
            return Evaluation.model_validate(cached)

        async with self._session_factory() as db:
            result = await db.execute(
                select(EvaluationORM).where(EvaluationORM.session_id == session_id)
            )
            orm = result.scalar_one_or_none()
            if orm is None:
                return None
            evaluation = Evaluation.model_validate(orm)

        await cache_set(self._redis, key, evaluation.model_dump(mode="json"), EVALUATION_TTL)
        return evaluation

    # ---------------------------------------------------------------------------
    # Session lifecycle mutations
    # ---------------------------------------------------------------------------

    async def create_session(
        self,
        owner_id: str,
        goal: str,
        target_profile_context: str = "",
        custom_context: str = "",
    ) -> Session:
        """
        Insert a new ACTIVE session at the first stage.
        When neither context field is given the default networking context is used.
        """
        owner_id = (owner_id or "").strip()
        goal = (goal or "").strip()
        if not owner_id:
            raise ValueError("owner_id is required")
        if not goal:
            raise ValueError("goal is required")

        target = (target_profile_context or "").strip()
        custom = (custom_context or "").strip()
        if not target and not custom:
            target = DEFAULT_TARGET_CONTEXT

        now = self._clock()
        orm = SessionORM(
            owner_id=owner_id,
            goal=goal,
            status=SessionStatus.ACTIVE.value,
            target_profile_context=target,
            custom_context=custom,
            stage=STAGE_SEQUENCE[0].value,
            stage_entered_at=now,
            stage_user_turns=0,
            stage_signal_flags={},
            conversation_summary="",
            talk_nudges=[],
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as db:
            async with db.begin():
                db.add(orm)
                await db.flush()
            session = Session.model_validate(orm)

        await self._commit_session(session)
        logger.info("Created session session_id=%s owner_id=%s", session.id, owner_id)
        return session

    async def rename_session(self, session_id: str, goal: str) -> Session:
        goal = (goal or "").strip()
        if not goal:
            raise ValueError("goal is required")

        async with self._session_factory() as db:
            async with db.begin():
                orm = await self._lock_session(db, session_id)
                orm.goal = goal
                orm.updated_at = self._clock()
            session = Session.model_validate(orm)

        await self._commit_session(session)
        logger.info("Renamed session session_id=%s", session_id)
        return session

    async def delete_session(self, session_id: str) -> DeleteResult:
        """Delete the session; turns and evaluation go with it (ON DELETE CASCADE)."""
        async with self._session_factory() as db:
            async with db.begin():
                orm = await self._lock_session(db, session_id)
                owner_id = orm.owner_id
                await db.delete(orm)

        await invalidate(self._redis, *session_keys(session_id, owner_id, evaluation=True))
        logger.info("Deleted session session_id=%s owner_id=%s", session_id, owner_id)
        return DeleteResult(session_id=session_id, deleted=True)

    async def append_turn(self, session_id: str, role: str, content: str) -> tuple[Session, SessionTurn]:
        """
        Insert one transcript turn under the session row lock.

        User turns bump the stage user-turn counter and merge newly detected signal
        flags. The stage itself never changes here; only request_stage_transition
        moves it. created_at is strictly increasing per session.
        """
        turn_role = TurnRole(role)
        if not content or not content.strip():
            raise ValueError("content is required")

        async with self._session_factory() as db:
            async with db.begin():
                orm = await self._lock_session(db, session_id)

                last_result = await db.execute(
                    select(SessionTurnORM.created_at)
                    .where(SessionTurnORM.session_id == session_id)
                    .order_by(SessionTurnORM.created_at.desc())
                    .limit(1)
                )
                last_created = as_utc(last_result.scalar_one_or_none())
                created_at = self._clock()
                if last_created is not None and created_at <= last_created:
                    created_at = last_created + _TURN_TICK

                turn = SessionTurnORM(
                    session_id=session_id,
                    role=turn_role.value,
                    content=content,
                    created_at=created_at,
                )
                db.add(turn)

                if turn_role == TurnRole.user:
                    orm.stage_user_turns = (orm.stage_user_turns or 0) + 1
                    orm.stage_signal_flags = update_stage_signals(
                        orm.stage,
                        orm.stage_signal_flags,
                        content,
                        detector=self._detector,
                    )
                orm.updated_at = created_at
                await db.flush()
            session = Session.model_validate(orm)
            saved_turn = SessionTurn.model_validate(turn)

        await invalidate(self._redis, *session_keys(session_id, session.owner_id))
        logger.debug("Appended turn session_id=%s role=%s", session_id, turn_role.value)
        return session, saved_turn

    async def request_stage_transition(
        self,
        session_id: str,
        target_stage: str,
        requested_by: str = "assistant",
        reason: str = "",
    ) -> TransitionResult:
        """
        Two-step check under the row lock: alias + one-step decision, then the
        requested-gate advance policy over persisted dwell/turn/signal state.
        Applies only when both agree; a rejection is returned as data.
        """
        logger.info(
            "Stage transition requested session_id=%s target=%s requested_by=%s",
            session_id,
            target_stage,
            requested_by,
        )
        async with self._session_factory() as db:
            async with db.begin():
                orm = await self._lock_session(db, session_id)
                decision = evaluate_stage_transition(orm.stage, target_stage)

                if not decision.applied:
                    return TransitionResult(
                        applied=False,
                        next_stage=decision.next_stage,
                        reason=decision.reason,
                        session=Session.model_validate(orm),
                    )

                now = self._clock()
                latest = await self._latest_user_content(db, session_id)
                advance = should_advance_stage(
                    orm.stage,
                    as_utc(orm.stage_entered_at),
                    orm.stage_user_turns,
                    orm.stage_signal_flags,
                    latest_user_content=latest,
                    now=now,
                    is_requested=True,
                )
                if not advance.advance:
                    return TransitionResult(
                        applied=False,
                        next_stage=advance.next_stage,
                        reason=advance.reason,
                        session=Session.model_validate(orm),
                    )

                orm.stage = decision.next_stage.value
                orm.stage_entered_at = now
                orm.stage_user_turns = 0
                orm.stage_signal_flags = {}
                orm.updated_at = now
            session = Session.model_validate(orm)

        await self._commit_session(session)
        logger.info(
            "Stage advanced session_id=%s stage=%s gate=%s",
            session_id,
            session.stage.value,
            advance.gate,
        )
        message = decision.reason
        if reason:
            message = f"{message} ({reason})"
        return TransitionResult(applied=True, next_stage=session.stage, reason=message, session=session)

    async def finalize_session(self, session_id: str) -> tuple[Session, bool]:
        """
        Move the session to PROCESSING_EVALUATION and stamp ended_at if unset.

        Returns (session, changed). changed is False when an evaluation is already
        running or done — status stays as it is and nothing new should be queued.
        """
        async with self._session_factory() as db:
            async with db.begin():
                orm = await self._lock_session(db, session_id)
                changed = orm.status in (
                    SessionStatus.ACTIVE.value,
                    SessionStatus.EVALUATION_FAILED.value,
                )
                if changed:
                    now = self._clock()
                    orm.status = SessionStatus.PROCESSING_EVALUATION.value
                    if orm.ended_at is None:
                        orm.ended_at = now
                    orm.updated_at = now
            session = Session.model_validate(orm)

        if changed:
            await self._commit_session(session, evaluation=True)
            logger.info("Finalized session session_id=%s", session_id)
        else:
            logger.info(
                "Finalize ignored session_id=%s status=%s",
                session_id,
                session.status.value,
            )
        return session, changed

    # ---------------------------------------------------------------------------
    # Derived-state writes (background services only)
    # ---------------------------------------------------------------------------

    async def save_conversation_summary(
        self,
        session_id: str,
        summary: str,
        cursor: datetime,
    ) -> Session:
        """Persist a rolling summary. The cursor only moves forward; a stale write is dropped."""
        async with self._session_factory() as db:
            async with db.begin():
                orm = await self._lock_session(db, session_id)
                current_cursor = as_utc(orm.summary_cursor_at)
                if current_cursor is not None and cursor <= current_cursor:
                    logger.info(
                        "Skipping stale summary session_id=%s cursor=%s",
                        session_id,
                        cursor.isoformat(),
                    )
                    return Session.model_validate(orm)
                now = self._clock()
                orm.conversation_summary = summary
                orm.summary_cursor_at = cursor
                orm.summary_updated_at = now
                orm.updated_at = now
            session = Session.model_validate(orm)

        await self._invalidate_session(session)
        logger.info("Saved conversation summary session_id=%s", session_id)
        return session

    async def save_talk_nudges(self, session_id: str, nudges: Iterable[str]) -> Session:
        kept = [n for n in nudges if n][:MAX_STORED_NUDGES]
        async with self._session_factory() as db:
            async with db.begin():
                orm = await self._lock_session(db, session_id)
                now = self._clock()
                orm.talk_nudges = kept
                orm.nudges_updated_at = now
                orm.updated_at = now
            session = Session.model_validate(orm)

        await self._invalidate_session(session)
        logger.info("Saved talk nudges session_id=%s count=%d", session_id, len(kept))
        return session

    async def save_session_metadata(self, session_id: str, display_title: str, goal_summary: str) -> Session:
        async with self._session_factory() as db:
            async with db.begin():
                orm = await self._lock_session(db, session_id)
                now = self._clock()
                orm.display_title = display_title
                orm.goal_summary = goal_summary
                orm.metadata_updated_at = now
                orm.updated_at = now
            session = Session.model_validate(orm)

        await self._invalidate_session(session)
        logger.info("Saved session metadata session_id=%s", session_id)
        return session

    async def save_followup_draft(self, session_id: str, draft: str) -> Session:
        async with self._session_factory() as db:
            async with db.begin():
                orm = await self._lock_session(db, session_id)
                now = self._clock()
                orm.draft_followup_email = draft
                orm.draft_followup_updated_at = now
                orm.updated_at = now
            session = Session.model_validate(orm)

        await self._invalidate_session(session)
        logger.info("Saved follow-up draft session_id=%s", session_id)
        return session

    async def save_evaluation(
        self,
        session_id: str,
        score: int,
        strengths: list[str],
        improvements: list[str],
        next_actions: list[str],
        follow_up_email: str = "",
    ) -> Evaluation:
        """
        Upsert the one evaluation row for this session and mark it EVALUATED.
        A non-empty follow-up email also becomes the session's follow-up draft.
        """
        async with self._session_factory() as db:
            async with db.begin():
                orm = await self._lock_session(db, session_id)
                now = self._clock()

                existing = await db.execute(
                    select(EvaluationORM).where(EvaluationORM.session_id == session_id)
                )
                evaluation_orm = existing.scalar_one_or_none()
                if evaluation_orm is None:
                    evaluation_orm = EvaluationORM(session_id=session_id)
                    db.add(evaluation_orm)
                evaluation_orm.score = score
                evaluation_orm.strengths = list(strengths)
                evaluation_orm.improvements = list(improvements)
                evaluation_orm.next_actions = list(next_actions)
                evaluation_orm.follow_up_email = follow_up_email or ""
                evaluation_orm.created_at = now

                orm.status = SessionStatus.EVALUATED.value
                if follow_up_email:
                    orm.draft_followup_email = follow_up_email
                    orm.draft_followup_updated_at = now
                orm.updated_at = now
                await db.flush()
            session = Session.model_validate(orm)
            evaluation = Evaluation.model_validate(evaluation_orm)

        await self._invalidate_session(session, evaluation=True)
        await cache_set(
            self._redis,
            make_evaluation_key(session_id),
            evaluation.model_dump(mode="json"),
            EVALUATION_TTL,
        )
        logger.info("Saved evaluation session_id=%s score=%d", session_id, score)
        return evaluation

    async def mark_evaluation_failed(self, session_id: str) -> Session:
        """Durable failure state; any existing evaluation row is left as it was."""
        async with self._session_factory() as db:
            async with db.begin():
                orm = await self._lock_session(db, session_id)
                orm.status = SessionStatus.EVALUATION_FAILED.value
                orm.updated_at = self._clock()
            session = Session.model_validate(orm)

        await self._invalidate_session(session)
        logger.info("Marked evaluation failed session_id=%s", session_id)
        return session

    # ---------------------------------------------------------------------------
    # Flashcard operations
    # ---------------------------------------------------------------------------

    async def save_flashcard(
        self,
        owner_id: str,
        text: str,
        definition: str,
        example: str = "",
        example_translation: str = "",
        real_life_definition: str = "",
        surrounding_text: str = "",
        source_title: str = "",
    ) -> Flashcard:
        """Insert a flashcard with a fresh schedule (new card, due immediately)."""
        if not (text or "").strip():
            raise ValueError("text is required")
        if not (definition or "").strip():
            raise ValueError("definition is required")

        now = self._clock()
        card = FlashcardORM(
            owner_id=owner_id,
            text=text.strip(),
            definition=definition.strip(),
            example=example,
            example_translation=example_translation,
            real_life_definition=real_life_definition,
            surrounding_text=surrounding_text,
            source_title=source_title,
            created_at=now,
        )
        async with self._session_factory() as db:
            async with db.begin():
                db.add(card)
                await db.flush()
                schedule = FlashcardScheduleORM(
                    flashcard_id=card.id,
                    difficulty=5.0,
                    stability=1.0,
                    due_at=now,
                    state=0,
                    last_review_at=now,
                    reps=0,
                )
                db.add(schedule)
                await db.flush()
            flashcard = _flashcard_snapshot(card, schedule)

        await invalidate(self._redis, make_review_due_key(owner_id))
        logger.info("Saved flashcard flashcard_id=%s owner_id=%s", flashcard.id, owner_id)
        return flashcard

    async def start_review_session(self, owner_id: str) -> list[Flashcard]:
        """Cards due now for this owner, earliest due first."""
        key = make_review_due_key(owner_id)
        cached = await cache_get(self._redis, key)
        if cached is not None:
            return [Flashcard.model_validate(item) for item in cached]

        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                select(FlashcardORM, FlashcardScheduleORM)
                .join(FlashcardScheduleORM, FlashcardScheduleORM.flashcard_id == FlashcardORM.id)
                .where(FlashcardORM.owner_id == owner_id, FlashcardScheduleORM.due_at <= now)
                .order_by(FlashcardScheduleORM.due_at.asc())
            )
            cards = [_flashcard_snapshot(card, schedule) for card, schedule in result.all()]

        await cache_set(self._redis, key, [c.model_dump(mode="json") for c in cards], REVIEW_DUE_TTL)
        return cards

    async def save_review_session(self, updates: Iterable[ReviewUpdate]) -> ReviewSaveResult:
        """
        Apply partial schedule updates in one transaction.
        Fields left as None keep their stored value; unknown flashcard ids are skipped.
        """
        saved_count = 0
        owners: set[str] = set()
        async with self._session_factory() as db:
            async with db.begin():
                for update in updates:
                    result = await db.execute(
                        select(FlashcardScheduleORM, FlashcardORM.owner_id)
                        .join(FlashcardORM, FlashcardORM.id == FlashcardScheduleORM.flashcard_id)
                        .where(FlashcardScheduleORM.flashcard_id == update.flashcard_id)
                        .with_for_update()
                    )
                    row = result.first()
                    if row is None:
                        continue
                    schedule, owner_id = row
                    for field in ("difficulty", "stability", "due_at", "state", "last_review_at", "reps"):
                        value = getattr(update, field)
                        if value is not None:
                            setattr(schedule, field, value)
                    owners.add(owner_id)
                    saved_count += 1

        await invalidate(self._redis, *(make_review_due_key(owner) for owner in owners))
        logger.info("Saved review session saved_count=%d owners=%d", saved_count, len(owners))
        return ReviewSaveResult(
            success=True,
            saved_count=saved_count,
            message=f"Saved {saved_count} update(s)",
        )
