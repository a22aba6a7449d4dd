"""
test_llm_service.py — EnrichmentClient and prompt builders with a mocked Mistral client.

No network: the Mistral SDK is replaced by a MagicMock whose
chat.complete_async returns canned JSON content.
"""
import asyncio
import json

import pytest

from netcoach.enrichment.llm_service import (
    EnrichmentClient,
    EnrichmentError,
    build_followup_prompt,
    build_nudges_prompt,
    format_turns,
    session_context,
)
from netcoach.sessions.schemas import Evaluation
from tests.factories import START, make_mistral, make_session, make_turns


def _client(*contents) -> tuple[EnrichmentClient, object]:
    mistral = make_mistral(*contents)
    return EnrichmentClient(mistral, asyncio.Semaphore(1)), mistral


# ---------------------------------------------------------------------------
# Test Group 1: Response parsing
# ---------------------------------------------------------------------------

class TestCompleteJson:
    @pytest.mark.asyncio
    async def test_evaluation_accepts_camel_case_aliases(self) -> None:
        content = json.dumps({
            "score": 7,
            "strengths": ["  Clear intro ", ""],
            "improvements": ["Ask follow-up questions"],
            "nextActions": ["Send a thank-you note"],
            "followUpEmailDraft": "  Hi Dana  ",
        })
        client, mistral = _client(content)
        payload = await client.evaluate(make_session(), make_turns(("user", "hi")))

        assert payload.score == 7
        assert payload.strengths == ["Clear intro"]
        assert payload.next_actions == ["Send a thank-you note"]
        assert payload.follow_up_email == "Hi Dana"

        kwargs = mistral.chat.complete_async.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "[USER] hi" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content",
        [
            "",
            "   ",
            None,
            "not json at all",
            json.dumps({"score": 11}),
            json.dumps({"strengths": ["no score"]}),
        ],
    )
    async def test_bad_content_is_enrichment_error(self, content) -> None:
        client, _ = _client(content)
        with pytest.raises(EnrichmentError):
            await client.evaluate(make_session(), [])

    @pytest.mark.asyncio
    async def test_sdk_failure_is_wrapped(self) -> None:
        cause = ConnectionError("connection reset")
        client, _ = _client(cause)
        with pytest.raises(EnrichmentError) as exc_info:
            await client.summarize(make_session(), "", [])
        assert exc_info.value.__cause__ is cause

    @pytest.mark.asyncio
    async def test_blank_summary_rejected(self) -> None:
        client, _ = _client(json.dumps({"summary": "   "}))
        with pytest.raises(EnrichmentError):
            await client.summarize(make_session(), "", [])

    @pytest.mark.asyncio
    async def test_nudges_trimmed_and_capped(self) -> None:
        client, _ = _client(json.dumps({"nudges": [" ", "What's on-call like?", "I built X", "Third", "Fourth"]}))
        payload = await client.suggest_nudges(make_session(), "", [])
        assert payload.nudges == ["What's on-call like?", "I built X", "Third"]

    @pytest.mark.asyncio
    async def test_all_blank_nudges_rejected(self) -> None:
        client, _ = _client(json.dumps({"nudges": ["", "  "]}))
        with pytest.raises(EnrichmentError):
            await client.suggest_nudges(make_session(), "", [])

    @pytest.mark.asyncio
    async def test_metadata_allows_blank_and_collapses_whitespace(self) -> None:
        client, _ = _client(json.dumps({"displayTitle": "  Platform   chat ", "goalSummary": ""}))
        payload = await client.derive_metadata("goal", "", "")
        assert payload.display_title == "Platform chat"
        assert payload.goal_summary == ""

    @pytest.mark.asyncio
    async def test_followup_requires_subject_and_body(self) -> None:
        client, _ = _client(json.dumps({"subject": "Thanks", "body": "  "}))
        with pytest.raises(EnrichmentError):
            await client.draft_followup_email(make_session(), None, [], "friendly", "short")


# ---------------------------------------------------------------------------
# Test Group 2: Prompt builders
# ---------------------------------------------------------------------------

class TestPrompts:
    def test_format_turns_numbers_and_flattens(self) -> None:
        turns = make_turns(("user", "hello\nthere"), ("assistant", "hi!"))
        assert format_turns(turns) == "1. [USER] hello there\n2. [ASSISTANT] hi!"

    def test_session_context_precedence(self) -> None:
        assert session_context(make_session(custom_context="Coffee chat")) == "Coffee chat"
        assert session_context(make_session()) == "Staff engineer on the payments platform"
        assert session_context(make_session(target_profile_context="")) == "General networking"

    def test_nudges_prompt_uses_last_ten_turns(self) -> None:
        turns = make_turns(*[("user", f"line {i}") for i in range(14)])
        prompt = build_nudges_prompt(make_session(), "- prior summary", turns)
        assert "line 3" not in prompt
        assert "line 4" in prompt and "line 13" in prompt
        assert "- prior summary" in prompt

    def test_followup_prompt_mentions_focus_and_length(self) -> None:
        evaluation = Evaluation(
            session_id="sess-1",
            score=6,
            next_actions=["Ask one sharper question"],
            created_at=START,
        )
        prompt = build_followup_prompt(make_session(), evaluation, [], "formal", "long")
        assert "Ask one sharper question" in prompt
        assert "150-220 words" in prompt
        assert "No transcript available" in prompt
