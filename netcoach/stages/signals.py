"""
signals.py — per-stage signal detection for the stage policy.

A signal flag is a sticky boolean that records a qualitative condition seen at
least once since the session entered its current stage (e.g. the user gave some
background during small talk, or asked for advice).

Detection is a pluggable strategy: anything implementing SignalDetector.detect()
can replace the default keyword/pattern tables without touching the gating logic
in policy.py.
"""
from __future__ import annotations

import re
from typing import Iterable, Mapping, Optional, Pattern, Protocol

from netcoach.stages.stage import Stage, normalize_stage

# ---------------------------------------------------------------------------
# Flag names
# ---------------------------------------------------------------------------
HAS_INTRO_OR_CONTEXT = "has_intro_or_context"
HAS_PROJECT_OR_ROLE = "has_project_or_role"
HAS_SPECIFICITY = "has_specificity"
ASKED_ADVICE = "asked_advice"
HAS_THANKS_FOLLOWUP = "has_thanks_followup"

StageSignalFlags = dict[str, bool]


def _compile(*patterns: str, ignore_case: bool = True) -> tuple[Pattern[str], ...]:
    flags = re.IGNORECASE if ignore_case else 0
    return tuple(re.compile(p, flags) for p in patterns)


# ---------------------------------------------------------------------------
# Pattern tables (English + Chinese, as spoken by users of the coach)
# ---------------------------------------------------------------------------
INTRO_OR_CONTEXT_PATTERNS = _compile(
    r"\b(i am|i'm)\s+(a|an|the)\b",
    r"\b(i am|i'm)\s+(currently|recently)\b",
    r"\b(currently|recently)\b",
    r"\b(study|student|intern|engineer|manager)\b",
    r"\bmy background\b",
    r"我(是|现在|目前|最近)",
    r"最近在",
)

PROJECT_OR_ROLE_PATTERNS = _compile(
    r"\b(project|team|role|company|collaborat|scope)\b",
    r"项目|团队|岗位|公司|工作内容",
)

EXPERIENCE_SPECIFICITY_PATTERNS = _compile(
    r"\b\d+(\.\d+)?(%|ms|s|sec|minutes|min|hrs|hours|k|m)?\b",
    r"\b(metric|impact|improv|increase|reduce|latency|throughput|cost|scale|scalability)\b",
    r"\b(trade-?off|constraint|decision|risk)\b",
    r"\bi (owned|led|built|implemented|designed|shipped)\b",
    r"指标|提升|优化|降低|权衡|取舍|限制|决定|我(负责|主导|实现|设计|上线)",
)

ADVICE_REQUEST_PATTERNS = _compile(
    r"\b(advice|recommend|suggest|tips?)\b",
    r"\b(recruit|recruiting|interview|job search)\b",
    r"你建议|有什么建议|怎么(做|准备|提升)|可以推荐",
    # Any question counts as asking for advice in the advice stage
    r"[?？]",
)

WRAPUP_PATTERNS = _compile(
    r"\b(thank|thanks|appreciate)\b",
    r"\b(follow[- ]?up|email|connect|stay in touch|next step)\b",
    r"谢谢|感谢|保持联系",
    r"回头.*(邮件|email)",
)

DEFAULT_STAGE_PATTERNS: dict[Stage, dict[str, tuple[Pattern[str], ...]]] = {
    Stage.SMALL_TALK: {
        HAS_INTRO_OR_CONTEXT: INTRO_OR_CONTEXT_PATTERNS,
        HAS_PROJECT_OR_ROLE: PROJECT_OR_ROLE_PATTERNS,
    },
    Stage.EXPERIENCE: {HAS_SPECIFICITY: EXPERIENCE_SPECIFICITY_PATTERNS},
    Stage.ADVICE: {ASKED_ADVICE: ADVICE_REQUEST_PATTERNS},
    Stage.WRAP_UP: {HAS_THANKS_FOLLOWUP: WRAPUP_PATTERNS},
    Stage.DONE: {},
}

# Utterances that explicitly name the stage the speaker wants to jump to
FORCE_TARGET_STAGE_PATTERNS: tuple[tuple[Stage, tuple[Pattern[str], ...]], ...] = (
    (Stage.EXPERIENCE, _compile(r"\bexperience\b", r"\bproject experience\b", r"\bwork experience\b")),
    (Stage.ADVICE, _compile(r"\badvice\b", r"\brecruit(ing)?\b", r"\binterview\b", r"\bcareer guidance\b")),
    (Stage.WRAP_UP, _compile(r"\bwrap ?up\b", r"\bclosing\b", r"\bfinal part\b")),
    (Stage.DONE, _compile(r"\bdone\b", r"\bfinish(ed)?\b", r"\bend this\b")),
)


def any_pattern_matches(patterns: Iterable[Pattern[str]], content: Optional[str]) -> bool:
    if not content:
        return False
    return any(p.search(content) for p in patterns)


# ---------------------------------------------------------------------------
# Detector strategy
# ---------------------------------------------------------------------------
class SignalDetector(Protocol):
    def detect(self, stage: Stage, content: str) -> StageSignalFlags:
        """Return the flags (only True ones) that `content` raises in `stage`."""
        ...


class PatternSignalDetector:
    """Regex-table detector; one pattern list per (stage, flag)."""

    def __init__(
        self,
        stage_patterns: Optional[Mapping[Stage, Mapping[str, Iterable[Pattern[str]]]]] = None,
    ) -> None:
        self._stage_patterns = stage_patterns or DEFAULT_STAGE_PATTERNS

    def detect(self, stage: Stage, content: str) -> StageSignalFlags:
        table = self._stage_patterns.get(stage, {})
        return {
            flag: True
            for flag, patterns in table.items()
            if any_pattern_matches(patterns, content)
        }


DEFAULT_DETECTOR: SignalDetector = PatternSignalDetector()


def update_stage_signals(
    stage: Optional[str],
    prior_flags: Optional[Mapping[str, bool]],
    latest_user_content: Optional[str],
    detector: SignalDetector = DEFAULT_DETECTOR,
) -> StageSignalFlags:
    """
    Merge newly detected flags into the prior flags.
    Flags are sticky: once True they stay True until the stage changes
    (the caller resets them to {} on stage change).
    """
    merged: StageSignalFlags = dict(prior_flags or {})
    content = str(latest_user_content or "")
    delta = detector.detect(normalize_stage(stage), content)
    for flag, raised in delta.items():
        if raised and not merged.get(flag):
            merged[flag] = True
    return merged


# ---------------------------------------------------------------------------
# Forced-jump parsing
# ---------------------------------------------------------------------------
def find_forced_target_stage(content: Optional[str]) -> Optional[Stage]:
    """First stage explicitly named in the utterance, in sequence order."""
    if not content:
        return None
    for stage, patterns in FORCE_TARGET_STAGE_PATTERNS:
        if any_pattern_matches(patterns, content):
            return stage
    return None
