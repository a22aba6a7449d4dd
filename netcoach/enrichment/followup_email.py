"""
followup_email.py — on-demand follow-up email drafts.

Asks Mistral for a draft once; if that fails the deterministic template below
is used, so the caller always gets an email. The result is cached on the
session as its follow-up draft.
"""
import logging
from typing import Optional

from netcoach.config import settings
from netcoach.enrichment.jobs import EnrichmentExhaustedError, RetryPolicy, call_with_retry
from netcoach.enrichment.llm_service import EnrichmentClient
from netcoach.sessions.schemas import Evaluation, FollowupEmail, Session
from netcoach.store import SessionStore

logger = logging.getLogger(__name__)

FOLLOWUP_RETRY = RetryPolicy(attempts=1)

_TONE_OPENERS = {
    "friendly": "Great chatting today",
    "formal": "Thank you for your time",
}
_DEFAULT_OPENER = "Thanks for the conversation"


def tone_opener(tone: Optional[str]) -> str:
    return _TONE_OPENERS.get((tone or "professional").strip().lower(), _DEFAULT_OPENER)


def build_fallback_email(
    session: Session,
    evaluation: Optional[Evaluation],
    tone: str,
    length: str,
) -> FollowupEmail:
    opener = tone_opener(tone)
    goal = session.goal
    if length == "short":
        body = (
            f"{opener}. I appreciated your insights on {goal}. If you are open to it, I would "
            "value one concrete suggestion on how to improve my networking conversations."
        )
    elif length == "long":
        body = (
            f"{opener}. Thank you again for sharing your time and advice on {goal}. I learned a lot "
            "from your perspective, especially around how to ask clearer questions and connect my "
            "project experience to business outcomes. I am actively practicing and would greatly "
            "appreciate one additional suggestion on what to focus on next. If it is helpful, I can "
            "also share a brief summary of how I apply your advice in my next conversation."
        )
    else:
        body = (
            f"{opener}. I really appreciated your insights on {goal}. I especially found your "
            "perspective on collaboration and career growth helpful. If you have time, I would value "
            "one practical suggestion on how I can improve my networking conversations and follow-ups."
        )

    if evaluation is not None and evaluation.next_actions:
        body = (
            f"{body}\n\nP.S. My latest practice score is {evaluation.score}/10 and I am focusing on: "
            f"{evaluation.next_actions[0]}."
        )

    return FollowupEmail(
        subject=f"Follow-up from our networking chat on {goal}",
        body=f"Hi,\n\n{body}\n\nBest regards,\n{session.owner_id}",
    )


def render_draft(email: FollowupEmail) -> str:
    return f"Subject: {email.subject}\n\n{email.body}"


class FollowupEmailService:
    def __init__(
        self,
        store: SessionStore,
        client: EnrichmentClient,
        retry: RetryPolicy = FOLLOWUP_RETRY,
        timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._client = client
        self._retry = retry
        self._timeout = timeout if timeout is not None else settings.enrichment_timeout_seconds

    async def generate(self, session_id: str, tone: str = "professional", length: str = "medium") -> FollowupEmail:
        """Raises SessionNotFoundError for an unknown session."""
        session = await self._store.get_session(session_id)
        evaluation = await self._store.get_evaluation(session_id)
        turns = await self._store.get_turns(session_id)

        try:
            payload = await call_with_retry(
                lambda: self._client.draft_followup_email(session, evaluation, turns, tone, length),
                self._retry.attempts,
                self._retry.delays,
                self._timeout,
                kind="followup_email",
                session_id=session_id,
            )
            email = FollowupEmail(subject=payload.subject, body=payload.body)
        except EnrichmentExhaustedError:
            logger.info("Follow-up email using template session_id=%s", session_id)
            email = build_fallback_email(session, evaluation, tone, length)

        await self._store.save_followup_draft(session_id, render_draft(email))
        return email
