"""
test_store.py — SessionStore against aiosqlite + fakeredis.

Tests verify:
1. Session creation defaults and input validation
2. Turn append: monotonic timestamps, user-turn counter, sticky signal flags
3. Stage transitions: one step forward, gated by the requested policy,
   bookkeeping reset on every stage change
4. Finalize is idempotent and never re-stamps ended_at
5. Every mutation invalidates the cached views it can make stale; background
   writes never put a snapshot back
6. Delete cascades to turns and evaluation
7. Derived-state writes (summary cursor, nudges, evaluation upsert)
"""
from datetime import timedelta

import pytest

from netcoach.cache import make_evaluation_key, make_session_key, make_sessions_list_key
from netcoach.sessions.schemas import SessionStatus, TurnRole
from netcoach.stages.policy import REASON_MULTI_STAGE_JUMP, REASON_UNKNOWN_TARGET, STAGE_POLICY
from netcoach.stages.signals import HAS_INTRO_OR_CONTEXT, HAS_SPECIFICITY
from netcoach.stages.stage import Stage
from netcoach.store import DEFAULT_TARGET_CONTEXT, SessionNotFoundError

GOAL = "Learn how the platform team works"


async def _session_with_turns(store, *contents, role="user"):
    session = await store.create_session("maya", GOAL)
    for content in contents:
        session, _ = await store.append_turn(session.id, role, content)
    return session


# ---------------------------------------------------------------------------
# Test Group 1: Creation
# ---------------------------------------------------------------------------

class TestCreateSession:
    @pytest.mark.asyncio
    async def test_defaults(self, store, clock) -> None:
        session = await store.create_session("maya", f"  {GOAL}  ")
        assert session.goal == GOAL
        assert session.status == SessionStatus.ACTIVE
        assert session.stage == Stage.SMALL_TALK
        assert session.stage_user_turns == 0
        assert session.stage_signal_flags == {}
        assert session.stage_entered_at == clock.now
        assert session.target_profile_context == DEFAULT_TARGET_CONTEXT
        assert session.custom_context == ""
        assert session.ended_at is None

    @pytest.mark.asyncio
    async def test_custom_context_suppresses_default(self, store) -> None:
        session = await store.create_session("maya", GOAL, custom_context="Coffee chat with a PM")
        assert session.target_profile_context == ""
        assert session.custom_context == "Coffee chat with a PM"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner, goal", [("", GOAL), ("maya", "   ")])
    async def test_blank_owner_or_goal_rejected(self, store, owner, goal) -> None:
        with pytest.raises(ValueError):
            await store.create_session(owner, goal)

    @pytest.mark.asyncio
    async def test_unknown_session(self, store) -> None:
        with pytest.raises(SessionNotFoundError) as exc_info:
            await store.get_session("nope")
        assert exc_info.value.session_id == "nope"


# ---------------------------------------------------------------------------
# Test Group 2: Turn append
# ---------------------------------------------------------------------------

class TestAppendTurn:
    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase_with_frozen_clock(self, store) -> None:
        session = await _session_with_turns(store, "hi", "hello again", "third")
        turns = await store.get_turns(session.id)
        stamps = [t.created_at for t in turns]
        assert [t.content for t in turns] == ["hi", "hello again", "third"]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))
        assert session.updated_at == stamps[-1]

    @pytest.mark.asyncio
    async def test_user_turns_count_and_raise_flags(self, store) -> None:
        session = await store.create_session("maya", GOAL)
        session, _ = await store.append_turn(session.id, "user", "I'm a backend engineer")
        session, _ = await store.append_turn(session.id, "assistant", "Nice to meet you!")
        session, _ = await store.append_turn(session.id, "user", "ok")
        assert session.stage_user_turns == 2
        assert session.stage_signal_flags == {HAS_INTRO_OR_CONTEXT: True}
        assert session.stage == Stage.SMALL_TALK

    @pytest.mark.asyncio
    async def test_stage_never_changes_on_append(self, store) -> None:
        session = await _session_with_turns(store, *["let's move on to the next stage"] * 8)
        assert session.stage == Stage.SMALL_TALK
        assert session.stage_user_turns == 8

    @pytest.mark.asyncio
    async def test_invalid_role_and_blank_content(self, store) -> None:
        session = await store.create_session("maya", GOAL)
        with pytest.raises(ValueError):
            await store.append_turn(session.id, "narrator", "hi")
        with pytest.raises(ValueError):
            await store.append_turn(session.id, "user", "   ")
        assert await store.get_turns(session.id) == []

    @pytest.mark.asyncio
    async def test_append_to_missing_session(self, store) -> None:
        with pytest.raises(SessionNotFoundError):
            await store.append_turn("missing", "user", "hi")

    @pytest.mark.asyncio
    async def test_recent_turns_and_cursor_reads(self, store) -> None:
        session = await _session_with_turns(store, "one", "two", "three", "four")
        recent = await store.list_recent_turns(session.id, 2)
        assert [t.content for t in recent] == ["three", "four"]
        assert await store.list_recent_turns(session.id, 0) == []

        all_turns = await store.get_turns(session.id)
        after = await store.list_turns_after(session.id, all_turns[1].created_at, 10)
        assert [t.content for t in after] == ["three", "four"]
        assert len(await store.list_turns_after(session.id, None, 3)) == 3

    @pytest.mark.asyncio
    async def test_latest_user_turn_content(self, store) -> None:
        session = await store.create_session("maya", GOAL)
        await store.append_turn(session.id, "user", "first")
        await store.append_turn(session.id, "assistant", "reply")
        assert await store.get_latest_user_turn_content(session.id) == "first"


# ---------------------------------------------------------------------------
# Test Group 3: Stage transitions
# ---------------------------------------------------------------------------

class TestStageTransition:
    @pytest.mark.asyncio
    async def test_ready_small_talk_advances_and_resets(self, store, clock) -> None:
        session = await _session_with_turns(
            store, "hi there", "I'm a data engineer at a logistics company", "what about you?"
        )
        clock.advance(61)
        result = await store.request_stage_transition(session.id, "experience", reason="user ready")

        assert result.applied is True
        assert result.next_stage == Stage.EXPERIENCE
        assert result.reason == "Transition approved: SMALL_TALK -> EXPERIENCE (user ready)"
        assert result.session.stage == Stage.EXPERIENCE
        assert result.session.stage_user_turns == 0
        assert result.session.stage_signal_flags == {}
        assert result.session.stage_entered_at == clock.now

        # Counters restart in the new stage
        session, _ = await store.append_turn(session.id, "user", "I reduced costs by 30%")
        assert session.stage_user_turns == 1
        assert session.stage_signal_flags == {HAS_SPECIFICITY: True}

    @pytest.mark.asyncio
    async def test_not_ready_is_rejected_as_data(self, store) -> None:
        session = await _session_with_turns(store, "hi")
        result = await store.request_stage_transition(session.id, "EXPERIENCE")
        assert result.applied is False
        assert result.next_stage == Stage.SMALL_TALK
        assert result.reason == STAGE_POLICY[Stage.SMALL_TALK].not_ready_reason
        assert (await store.get_session(session.id)).stage == Stage.SMALL_TALK

    @pytest.mark.asyncio
    async def test_multi_stage_jump_rejected(self, store, clock) -> None:
        session = await _session_with_turns(store, "hi", "I'm a student", "cool")
        clock.advance(600)
        result = await store.request_stage_transition(session.id, "ADVICE")
        assert result.applied is False
        assert result.reason == REASON_MULTI_STAGE_JUMP
        assert result.session.stage == Stage.SMALL_TALK

    @pytest.mark.asyncio
    async def test_unknown_alias_rejected(self, store) -> None:
        session = await store.create_session("maya", GOAL)
        result = await store.request_stage_transition(session.id, "lunch")
        assert result.applied is False
        assert result.reason == REASON_UNKNOWN_TARGET

    @pytest.mark.asyncio
    async def test_walk_to_done(self, store, clock) -> None:
        """Turn fallback in every stage reaches DONE, then nothing moves."""
        session = await store.create_session("maya", GOAL)
        for target in ("EXPERIENCE", "ADVICE", "WRAP_UP", "DONE"):
            current = (await store.get_session(session.id)).stage
            for _ in range(STAGE_POLICY[current].max_user_turns_fallback):
                await store.append_turn(session.id, "user", "mm")
            result = await store.request_stage_transition(session.id, target)
            assert result.applied is True, f"{current} -> {target}: {result.reason}"
        clock.advance(3600)
        result = await store.request_stage_transition(session.id, "DONE")
        assert result.applied is False
        assert result.session.stage == Stage.DONE


# ---------------------------------------------------------------------------
# Test Group 4: Finalize
# ---------------------------------------------------------------------------

class TestFinalize:
    @pytest.mark.asyncio
    async def test_finalize_is_idempotent(self, store, clock) -> None:
        session = await store.create_session("maya", GOAL)
        clock.advance(300)
        first, changed = await store.finalize_session(session.id)
        assert changed is True
        assert first.status == SessionStatus.PROCESSING_EVALUATION
        assert first.ended_at == clock.now
        ended_at = first.ended_at

        clock.advance(60)
        second, changed = await store.finalize_session(session.id)
        assert changed is False
        assert second.status == SessionStatus.PROCESSING_EVALUATION
        assert second.ended_at == ended_at

    @pytest.mark.asyncio
    async def test_retry_after_failure_keeps_ended_at(self, store, clock) -> None:
        session = await store.create_session("maya", GOAL)
        first, _ = await store.finalize_session(session.id)
        await store.mark_evaluation_failed(session.id)
        clock.advance(120)
        again, changed = await store.finalize_session(session.id)
        assert changed is True
        assert again.status == SessionStatus.PROCESSING_EVALUATION
        assert again.ended_at == first.ended_at

    @pytest.mark.asyncio
    async def test_evaluated_session_not_requeued(self, store) -> None:
        session = await store.create_session("maya", GOAL)
        await store.finalize_session(session.id)
        await store.save_evaluation(session.id, 7, ["a"], ["b"], ["c"])
        after, changed = await store.finalize_session(session.id)
        assert changed is False
        assert after.status == SessionStatus.EVALUATED


# ---------------------------------------------------------------------------
# Test Group 5: Cache coherence
# ---------------------------------------------------------------------------

class TestCacheCoherence:
    @pytest.mark.asyncio
    async def test_append_invalidates_snapshot(self, store, redis) -> None:
        session = await store.create_session("maya", GOAL)
        await store.get_session(session.id)
        assert await redis.exists(make_session_key(session.id)) == 1

        await store.append_turn(session.id, "user", "hello")
        assert await redis.exists(make_session_key(session.id)) == 0
        assert (await store.get_session(session.id)).stage_user_turns == 1

    @pytest.mark.asyncio
    async def test_background_write_leaves_cache_empty(self, store, redis) -> None:
        session = await store.create_session("maya", GOAL)
        await store.get_session(session.id)

        await store.save_talk_nudges(session.id, ["Ask about on-call"])
        assert await redis.exists(make_session_key(session.id)) == 0
        assert (await store.get_session(session.id)).talk_nudges == ["Ask about on-call"]

    @pytest.mark.asyncio
    async def test_append_between_background_commit_and_invalidate(self, store, redis, monkeypatch) -> None:
        """An append landing right after a nudge write's invalidation stays visible."""
        session = await store.create_session("maya", GOAL)
        original_delete = redis.delete
        appended = []

        async def delete_then_append(*keys):
            result = await original_delete(*keys)
            if not appended:
                appended.append(True)
                await store.append_turn(session.id, "user", "I'm a backend engineer")
            return result

        monkeypatch.setattr(redis, "delete", delete_then_append)
        await store.save_talk_nudges(session.id, ["Ask about on-call"])
        monkeypatch.undo()

        current = await store.get_session(session.id)
        assert current.stage_user_turns == 1
        assert current.stage_signal_flags == {HAS_INTRO_OR_CONTEXT: True}
        assert current.talk_nudges == ["Ask about on-call"]

    @pytest.mark.asyncio
    async def test_rename_refreshes_owner_list(self, store, redis) -> None:
        session = await store.create_session("maya", GOAL)
        assert [s.goal for s in await store.list_sessions_for_owner("maya")] == [GOAL]
        assert await redis.exists(make_sessions_list_key("maya")) == 1

        await store.rename_session(session.id, "Coffee chat with Dana")
        assert [s.goal for s in await store.list_sessions_for_owner("maya")] == ["Coffee chat with Dana"]

    @pytest.mark.asyncio
    async def test_list_is_most_recently_updated_first(self, store, clock) -> None:
        older = await store.create_session("maya", "first goal")
        clock.advance(10)
        newer = await store.create_session("maya", "second goal")
        assert [s.id for s in await store.list_sessions_for_owner("maya")] == [newer.id, older.id]

        clock.advance(10)
        await store.append_turn(older.id, "user", "back to this one")
        assert [s.id for s in await store.list_sessions_for_owner("maya")] == [older.id, newer.id]
        assert await store.list_sessions_for_owner("someone-else") == []

    @pytest.mark.asyncio
    async def test_finalize_clears_evaluation_key(self, store, redis) -> None:
        session = await store.create_session("maya", GOAL)
        await redis.set(make_evaluation_key(session.id), '{"stale": true}')
        await store.finalize_session(session.id)
        assert await redis.exists(make_evaluation_key(session.id)) == 0


# ---------------------------------------------------------------------------
# Test Group 6: Delete
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_delete_cascades(store, redis) -> None:
    session = await _session_with_turns(store, "one", "two")
    await store.finalize_session(session.id)
    await store.save_evaluation(session.id, 6, ["clear intro"], [], [])
    await store.get_session(session.id)

    result = await store.delete_session(session.id)
    assert result.deleted is True
    assert result.session_id == session.id

    with pytest.raises(SessionNotFoundError):
        await store.get_session(session.id)
    assert await store.get_turns(session.id) == []
    assert await store.get_evaluation(session.id) is None
    assert await redis.exists(make_session_key(session.id), make_evaluation_key(session.id)) == 0

    with pytest.raises(SessionNotFoundError):
        await store.delete_session(session.id)


# ---------------------------------------------------------------------------
# Test Group 7: Derived-state writes
# ---------------------------------------------------------------------------

class TestDerivedState:
    @pytest.mark.asyncio
    async def test_summary_cursor_only_moves_forward(self, store, clock) -> None:
        session = await store.create_session("maya", GOAL)
        later = clock.now + timedelta(seconds=30)
        saved = await store.save_conversation_summary(session.id, "- newer", later)
        assert saved.summary_cursor_at == later

        stale = await store.save_conversation_summary(session.id, "- older", later - timedelta(seconds=5))
        assert stale.conversation_summary == "- newer"
        assert stale.summary_cursor_at == later

    @pytest.mark.asyncio
    async def test_nudges_capped_at_two(self, store) -> None:
        session = await store.create_session("maya", GOAL)
        saved = await store.save_talk_nudges(session.id, ["", "Ask about on-call", "Mention Kafka", "Third"])
        assert saved.talk_nudges == ["Ask about on-call", "Mention Kafka"]
        assert saved.nudges_updated_at is not None

    @pytest.mark.asyncio
    async def test_metadata_and_draft(self, store) -> None:
        session = await store.create_session("maya", GOAL)
        saved = await store.save_session_metadata(session.id, "Platform chat", "Understand platform work")
        assert (saved.display_title, saved.goal_summary) == ("Platform chat", "Understand platform work")
        drafted = await store.save_followup_draft(session.id, "Subject: hi\n\nbody")
        assert drafted.draft_followup_email == "Subject: hi\n\nbody"

    @pytest.mark.asyncio
    async def test_evaluation_upsert(self, store) -> None:
        session = await store.create_session("maya", GOAL)
        await store.finalize_session(session.id)
        first = await store.save_evaluation(
            session.id, 6, ["warm"], ["ask more"], ["send note"], follow_up_email="Hi Dana"
        )
        assert first.score == 6
        current = await store.get_session(session.id)
        assert current.status == SessionStatus.EVALUATED
        assert current.draft_followup_email == "Hi Dana"

        await store.save_evaluation(session.id, 9, [], [], [])
        evaluation = await store.get_evaluation(session.id)
        assert evaluation.score == 9
        # An empty email leaves the earlier draft alone
        assert (await store.get_session(session.id)).draft_followup_email == "Hi Dana"

    @pytest.mark.asyncio
    async def test_failed_evaluation_keeps_previous_row(self, store) -> None:
        session = await store.create_session("maya", GOAL)
        await store.save_evaluation(session.id, 5, [], [], [])
        failed = await store.mark_evaluation_failed(session.id)
        assert failed.status == SessionStatus.EVALUATION_FAILED
        assert (await store.get_evaluation(session.id)).score == 5

    @pytest.mark.asyncio
    async def test_writes_to_deleted_session_raise(self, store, clock) -> None:
        session = await store.create_session("maya", GOAL)
        await store.delete_session(session.id)
        with pytest.raises(SessionNotFoundError):
            await store.save_talk_nudges(session.id, ["x"])
        with pytest.raises(SessionNotFoundError):
            await store.save_conversation_summary(session.id, "s", clock.now)


def test_turn_role_values() -> None:
    assert {r.value for r in TurnRole} == {"user", "assistant", "system"}
