"""
policy.py — deterministic stage-advance policy.

Stateless and side-effect free: every function takes the persisted stage
bookkeeping (entered-at, user-turn counter, signal flags) as arguments and
returns a decision. The store applies decisions; nothing here mutates.

Advance decision = OR of three independent gates:
  (a) completion    — user turns >= min AND stage signal raised AND dwell >= min dwell
  (b) time fallback — >= 1 user turn AND dwell >= stage fallback seconds
  (c) turn fallback — user turns >= stage turn ceiling

An explicit request (the live agent asking to move on) uses its own, usually
stricter, parameter set for (a) and (b). The turn ceiling is shared.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict

from netcoach.stages.signals import (
    ASKED_ADVICE,
    HAS_INTRO_OR_CONTEXT,
    HAS_PROJECT_OR_ROLE,
    HAS_SPECIFICITY,
    HAS_THANKS_FOLLOWUP,
    find_forced_target_stage,
)
from netcoach.stages.stage import (
    TERMINAL_STAGE,
    Stage,
    next_stage,
    normalize_requested_stage,
    normalize_stage,
    stage_index,
)

# ---------------------------------------------------------------------------
# Reasons (stable strings — clients and tests match on them)
# ---------------------------------------------------------------------------
REASON_UNKNOWN_TARGET = "Unknown target stage"
REASON_NOT_AHEAD = "Target stage is not ahead of current stage"
REASON_MULTI_STAGE_JUMP = "Only one-stage forward transition is allowed"
REASON_ALREADY_DONE = "Already done"
REASON_FORCED_TARGET = "Forced target stage"
REASON_POLICY_SATISFIED = "Policy satisfied"


class StageRule(BaseModel):
    """Gate parameters for one non-terminal stage."""
    model_config = ConfigDict(frozen=True)

    min_user_turns: int
    min_seconds_before_advance: int
    time_fallback_seconds: int
    max_user_turns_fallback: int
    request_min_user_turns: int
    request_min_seconds_before_advance: int
    request_time_fallback_seconds: int
    # Any one of these flags satisfies the completion gate's signal requirement
    signal_flags: tuple[str, ...]
    # Coaching line returned when the stage is not ready to advance
    not_ready_reason: str


STAGE_POLICY: dict[Stage, StageRule] = {
    Stage.SMALL_TALK: StageRule(
        min_user_turns=2,
        min_seconds_before_advance=60,
        time_fallback_seconds=120,
        max_user_turns_fallback=5,
        request_min_user_turns=2,
        request_min_seconds_before_advance=60,
        request_time_fallback_seconds=90,
        signal_flags=(HAS_INTRO_OR_CONTEXT, HAS_PROJECT_OR_ROLE),
        not_ready_reason="Keep it brief: share your quick background or ask about their team/project.",
    ),
    Stage.EXPERIENCE: StageRule(
        min_user_turns=4,
        min_seconds_before_advance=240,
        time_fallback_seconds=7 * 60,
        max_user_turns_fallback=12,
        request_min_user_turns=3,
        request_min_seconds_before_advance=180,
        request_time_fallback_seconds=5 * 60,
        signal_flags=(HAS_SPECIFICITY,),
        not_ready_reason="Add one concrete detail: metric, tradeoff, or what you owned.",
    ),
    Stage.ADVICE: StageRule(
        min_user_turns=2,
        min_seconds_before_advance=150,
        time_fallback_seconds=3 * 60,
        max_user_turns_fallback=6,
        request_min_user_turns=2,
        request_min_seconds_before_advance=120,
        request_time_fallback_seconds=2 * 60,
        signal_flags=(ASKED_ADVICE,),
        not_ready_reason="Ask one specific advice question.",
    ),
    Stage.WRAP_UP: StageRule(
        min_user_turns=1,
        min_seconds_before_advance=90,
        time_fallback_seconds=2 * 60,
        max_user_turns_fallback=3,
        request_min_user_turns=1,
        request_min_seconds_before_advance=60,
        request_time_fallback_seconds=60,
        signal_flags=(HAS_THANKS_FOLLOWUP,),
        not_ready_reason="Thank them and propose a simple follow-up next step.",
    ),
}


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------
class TransitionDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    applied: bool
    next_stage: Stage
    reason: str


class AdvanceDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    advance: bool
    next_stage: Stage
    reason: str
    # Which gate allowed the advance: "completion" | "time_fallback" | "turn_fallback"
    gate: Optional[str] = None


def elapsed_seconds(since: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Whole seconds since `since`; 0 for a missing or future timestamp."""
    if since is None:
        return 0
    now = now or datetime.now(timezone.utc)
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    diff = (now - since).total_seconds()
    return int(diff) if diff > 0 else 0


def evaluate_stage_transition(current: Optional[str], requested: Optional[str]) -> TransitionDecision:
    """
    Alias + one-step check for an explicit transition request.
    Pure decision: never mutates, never consults dwell/turn state.
    """
    current_stage = normalize_stage(current)
    requested_stage = normalize_requested_stage(requested)

    if requested_stage is None:
        return TransitionDecision(applied=False, next_stage=current_stage, reason=REASON_UNKNOWN_TARGET)

    current_idx = stage_index(current_stage)
    target_idx = stage_index(requested_stage)

    if target_idx <= current_idx:
        return TransitionDecision(applied=False, next_stage=current_stage, reason=REASON_NOT_AHEAD)

    if target_idx > current_idx + 1:
        return TransitionDecision(applied=False, next_stage=current_stage, reason=REASON_MULTI_STAGE_JUMP)

    return TransitionDecision(
        applied=True,
        next_stage=requested_stage,
        reason=f"Transition approved: {current_stage.value} -> {requested_stage.value}",
    )


def should_advance_stage(
    current: Optional[str],
    stage_entered_at: Optional[datetime],
    stage_user_turns: int,
    flags: Optional[Mapping[str, bool]],
    latest_user_content: Optional[str] = None,
    now: Optional[datetime] = None,
    is_requested: bool = False,
) -> AdvanceDecision:
    stage = normalize_stage(current)
    if stage == TERMINAL_STAGE:
        return AdvanceDecision(advance=False, next_stage=TERMINAL_STAGE, reason=REASON_ALREADY_DONE)

    rule = STAGE_POLICY[stage]
    turns = max(int(stage_user_turns or 0), 0)
    seconds = elapsed_seconds(stage_entered_at, now)
    flags = flags or {}

    if is_requested:
        min_turns = rule.request_min_user_turns
        min_dwell = rule.request_min_seconds_before_advance
        time_fallback = rule.request_time_fallback_seconds
    else:
        min_turns = rule.min_user_turns
        min_dwell = rule.min_seconds_before_advance
        time_fallback = rule.time_fallback_seconds

    signal_ok = any(flags.get(name) for name in rule.signal_flags)
    completion_ok = turns >= max(min_turns, 1) and signal_ok and seconds >= min_dwell
    time_ok = time_fallback > 0 and turns >= 1 and seconds >= time_fallback
    turns_ok = rule.max_user_turns_fallback > 0 and turns >= rule.max_user_turns_fallback

    if completion_ok:
        gate = "completion"
    elif time_ok:
        gate = "time_fallback"
    elif turns_ok:
        gate = "turn_fallback"
    else:
        return AdvanceDecision(advance=False, next_stage=stage, reason=rule.not_ready_reason)

    # Content that tries to jump more than one stage never changes the target
    forced = find_forced_target_stage(latest_user_content)
    if forced is not None and stage_index(forced) == stage_index(stage) + 1:
        return AdvanceDecision(advance=True, next_stage=forced, reason=REASON_FORCED_TARGET, gate=gate)

    return AdvanceDecision(advance=True, next_stage=next_stage(stage), reason=REASON_POLICY_SATISFIED, gate=gate)
