"""
llm_service.py — Mistral async enrichment layer for netcoach.

Components:
  prompt builders        — one per enrichment kind (transcript formatted as numbered lines)
  EnrichmentError        — any failed remote call: SDK/transport error, empty or
                           non-JSON content, or a payload that fails validation
  EnrichmentClient       — async Mistral calls in JSON mode, wrapped in the
                           asyncio.Semaphore created by the app lifespan

No module-level asyncio.Semaphore — it is created in main.py lifespan and
passed in (avoids RuntimeError: no running event loop at import).
No retries here: netcoach.enrichment.jobs.call_with_retry owns the attempt loop.
"""
import asyncio
import json
import logging
from typing import Iterable, Optional, Type, TypeVar

from mistralai import Mistral
from pydantic import BaseModel, ValidationError

from netcoach.config import settings
from netcoach.enrichment.schemas import (
    EvaluationPayload,
    FollowupEmailPayload,
    MetadataPayload,
    NudgesPayload,
    SummaryPayload,
)
from netcoach.sessions.schemas import Evaluation, Session, SessionTurn

logger = logging.getLogger(__name__)

PayloadT = TypeVar("PayloadT", bound=BaseModel)

JSON_ONLY_SYSTEM = "Return only the requested JSON object. No prose, no markdown fences."
NUDGE_TRANSCRIPT_WINDOW = 10

FOLLOWUP_LENGTH_RULES = {
    "short": "70-110 words",
    "medium": "110-160 words",
    "long": "150-220 words",
}


class EnrichmentError(Exception):
    """A single remote enrichment attempt failed."""


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------

def format_turns(turns: Iterable[SessionTurn], separator: str = "\n") -> str:
    """Render turns as '1. [USER] text' lines; newlines inside a turn are flattened."""
    lines = []
    for index, turn in enumerate(turns, 1):
        content = " ".join(turn.content.split())
        lines.append(f"{index}. [{turn.role.value.upper()}] {content}")
    return separator.join(lines)


def session_context(session: Session) -> str:
    return session.custom_context or session.target_profile_context or "General networking"


def build_evaluation_prompt(session: Session, turns: list[SessionTurn]) -> str:
    return "\n".join([
        "You are a strict networking coach reviewing a finished practice conversation.",
        "Score the user's networking performance from 1 to 10.",
        "List concrete strengths, improvements and next actions (short sentences).",
        "Draft a follow-up email the user could send to the person they spoke with.",
        "",
        f"Goal: {session.goal}",
        f"Context: {session_context(session)}",
        f"Final stage: {session.stage.value}",
        "",
        "Transcript:",
        format_turns(turns) or "(empty)",
        "",
        'Return JSON: {"score": 1-10, "strengths": [...], "improvements": [...], '
        '"next_actions": [...], "follow_up_email": "..."}',
    ])


def build_summary_prompt(session: Session, prior_summary: str, new_turns: list[SessionTurn]) -> str:
    return "\n".join([
        "You maintain a rolling conversation summary for a networking practice app.",
        "Update the summary using ONLY the prior summary and the new transcript lines.",
        "Preserve durable facts, names and open threads so the conversation can resume later.",
        "Write compact bullet points, at most 10 bullets, each at most 18 words.",
        "Do not invent facts.",
        "",
        f"Goal: {session.goal}",
        f"Context: {session_context(session)}",
        f"Current stage: {session.stage.value}",
        "",
        "Prior rolling summary:",
        prior_summary or "(empty)",
        "",
        "New transcript lines:",
        format_turns(new_turns) or "(none)",
        "",
        'Return JSON: {"summary": "..."}',
    ])


def build_nudges_prompt(session: Session, rolling_summary: str, recent_turns: list[SessionTurn]) -> str:
    lines = [
        "You write ultra-short 'what to say next' nudges for a live networking conversation.",
        "Generate 1-3 options the user can say next.",
        "",
        "Rules:",
        "- Each nudge is 5-12 words, in the user's voice (first person).",
        "- At least one nudge is a question.",
        "- Stay grounded in the context below; do not invent facts.",
        "- Never mention AI, practice, scoring, stages or transcripts.",
        "",
        f"Stage (internal): {session.stage.value}",
        f"User goal: {session.goal}",
        f"Persona/background: {session.target_profile_context or '(not provided)'}",
    ]
    if session.custom_context:
        lines.append(f"Additional context: {session.custom_context}")
    if rolling_summary:
        lines.append(f"Rolling summary:\n{rolling_summary}")
    transcript = format_turns(recent_turns[-NUDGE_TRANSCRIPT_WINDOW:])
    lines.append(f"Recent turns:\n{transcript}" if transcript else "Recent turns: (none)")
    lines += ["", 'Return JSON: {"nudges": ["...", "..."]}']
    return "\n".join(lines)


def build_metadata_prompt(goal: str, target_context: str, custom_context: str) -> str:
    lines = [
        "You generate compact UI text for a networking practice session.",
        "- display_title: at most 7 words, no quotes, no trailing period, no emojis.",
        "- goal_summary: at most 14 words, user point of view, no trailing period.",
        "Do not invent facts not supported by the inputs.",
        "",
        f"Goal (raw): {goal or '(empty)'}",
    ]
    if target_context:
        lines.append(f"Target profile context:\n{target_context}")
    if custom_context:
        lines.append(f"Custom context:\n{custom_context}")
    lines += ["", 'Return JSON: {"display_title": "...", "goal_summary": "..."}']
    return "\n".join(lines)


def build_followup_prompt(
    session: Session,
    evaluation: Optional[Evaluation],
    turns: list[SessionTurn],
    tone: str,
    length: str,
) -> str:
    focus = evaluation.next_actions[0] if evaluation and evaluation.next_actions else "N/A"
    return "\n".join([
        "You write follow-up emails for real networking contacts.",
        "The sender is the user; the recipient is the person they spoke with.",
        "Never mention AI, simulation, role-play, transcripts or scores. Do not invent facts.",
        "",
        f"Sender: {session.owner_id}",
        f"Networking goal: {session.goal}",
        f"Target person context: {session.target_profile_context or 'Not provided'}",
        f"Practice intent: {session.custom_context or 'Not provided'}",
        f"Tone: {tone}",
        f"Body length target: {FOLLOWUP_LENGTH_RULES.get(length, FOLLOWUP_LENGTH_RULES['medium'])}",
        f"Coaching focus (do not mention directly): {focus}",
        "",
        "Full transcript:",
        format_turns(turns, separator="\n\n") or "No transcript available",
        "",
        "Rules:",
        "- The subject is specific, not generic.",
        "- Mention at least two concrete details from the conversation.",
        "- Ask for one concrete next step and end with a sign-off and the sender name.",
        "",
        'Return JSON: {"subject": "...", "body": "..."}',
    ])


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class EnrichmentClient:
    """
    Thin typed wrapper over Mistral chat completions.

    One instance per process, created in the lifespan with the shared Mistral
    client and semaphore. Each public method makes exactly one remote call.
    """

    def __init__(self, client: Mistral, semaphore: asyncio.Semaphore) -> None:
        self._client = client
        self._semaphore = semaphore

    async def _complete_json(
        self,
        kind: str,
        model: str,
        prompt: str,
        payload_type: Type[PayloadT],
        temperature: float = 0.2,
        max_tokens: int = 700,
    ) -> PayloadT:
        logger.info("Calling Mistral API kind=%s model=%s", kind, model)
        try:
            async with self._semaphore:
                response = await self._client.chat.complete_async(
                    model=model,
                    messages=[
                        {"role": "system", "content": JSON_ONLY_SYSTEM},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=temperature,
                    max_tokens=max_tokens,
                    response_format={"type": "json_object"},
                )
        except Exception as exc:
            raise EnrichmentError(f"{kind} request failed: {exc}") from exc

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as exc:
            raise EnrichmentError(f"{kind} response has no message content") from exc
        if not isinstance(content, str) or not content.strip():
            raise EnrichmentError(f"{kind} response content is empty")

        try:
            data = json.loads(content)
        except ValueError as exc:
            raise EnrichmentError(f"{kind} response is not valid JSON") from exc
        try:
            payload = payload_type.model_validate(data)
        except ValidationError as exc:
            raise EnrichmentError(f"{kind} response failed validation: {exc.error_count()} error(s)") from exc

        logger.info("Mistral response received kind=%s len=%d", kind, len(content))
        return payload

    async def evaluate(self, session: Session, turns: list[SessionTurn]) -> EvaluationPayload:
        return await self._complete_json(
            "evaluation",
            settings.evaluation_model,
            build_evaluation_prompt(session, turns),
            EvaluationPayload,
            temperature=0.1,
            max_tokens=1200,
        )

    async def summarize(
        self,
        session: Session,
        prior_summary: str,
        new_turns: list[SessionTurn],
    ) -> SummaryPayload:
        return await self._complete_json(
            "summary",
            settings.summary_model,
            build_summary_prompt(session, prior_summary, new_turns),
            SummaryPayload,
        )

    async def suggest_nudges(
        self,
        session: Session,
        rolling_summary: str,
        recent_turns: list[SessionTurn],
    ) -> NudgesPayload:
        return await self._complete_json(
            "nudges",
            settings.nudge_model,
            build_nudges_prompt(session, rolling_summary, recent_turns),
            NudgesPayload,
            temperature=0.3,
            max_tokens=300,
        )

    async def derive_metadata(
        self,
        goal: str,
        target_context: str,
        custom_context: str,
    ) -> MetadataPayload:
        return await self._complete_json(
            "metadata",
            settings.metadata_model,
            build_metadata_prompt(goal, target_context, custom_context),
            MetadataPayload,
            max_tokens=200,
        )

    async def draft_followup_email(
        self,
        session: Session,
        evaluation: Optional[Evaluation],
        turns: list[SessionTurn],
        tone: str,
        length: str,
    ) -> FollowupEmailPayload:
        return await self._complete_json(
            "followup_email",
            settings.followup_model,
            build_followup_prompt(session, evaluation, turns, tone, length),
            FollowupEmailPayload,
            temperature=0.4,
        )
