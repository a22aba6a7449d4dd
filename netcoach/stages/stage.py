"""
stage.py — the fixed five-stage conversation sequence.

SMALL_TALK → EXPERIENCE → ADVICE → WRAP_UP → DONE (terminal)

Pure lookups only: normalization, alias resolution, ordering and coaching hints.
Nothing here touches persistence.
"""
from enum import Enum
from typing import Optional


class Stage(str, Enum):
    SMALL_TALK = "SMALL_TALK"
    EXPERIENCE = "EXPERIENCE"
    ADVICE = "ADVICE"
    WRAP_UP = "WRAP_UP"
    DONE = "DONE"


STAGE_SEQUENCE: tuple[Stage, ...] = (
    Stage.SMALL_TALK,
    Stage.EXPERIENCE,
    Stage.ADVICE,
    Stage.WRAP_UP,
    Stage.DONE,
)

TERMINAL_STAGE = STAGE_SEQUENCE[-1]

# Upper-cased spellings a caller (usually the live agent) may use for a stage
STAGE_ALIASES: dict[Stage, tuple[str, ...]] = {
    Stage.SMALL_TALK: ("SMALL_TALK", "SMALL TALK", "SMALLTALK", "INTRO", "WARMUP"),
    Stage.EXPERIENCE: ("EXPERIENCE", "PROJECTS", "PROJECT", "ROLE"),
    Stage.ADVICE: ("ADVICE", "RECRUITING", "INTERVIEW", "CAREER"),
    Stage.WRAP_UP: ("WRAP_UP", "WRAP UP", "CLOSE", "CLOSING", "OUTRO"),
    Stage.DONE: ("DONE", "END", "FINISH"),
}

STAGE_HINTS: dict[Stage, str] = {
    Stage.SMALL_TALK: "Start with warm opening, light context, and one tailored question.",
    Stage.EXPERIENCE: "Explore role scope, projects, cross-team work, and industry insights.",
    Stage.ADVICE: "Ask for recruiting advice, skill gaps, and interview preparation strategies.",
    Stage.WRAP_UP: "Close gracefully, confirm one next action, and prepare follow-up note.",
    Stage.DONE: "Session reached closing stage. Finalize when ready for evaluation.",
}


def normalize_stage(raw: Optional[str]) -> Stage:
    """Unknown or missing stage values collapse to the first stage."""
    if not raw:
        return STAGE_SEQUENCE[0]
    try:
        return Stage(raw)
    except ValueError:
        return STAGE_SEQUENCE[0]


def normalize_requested_stage(raw: Optional[str]) -> Optional[Stage]:
    """
    Resolve a requested stage name or alias, case-insensitively.
    Returns None when the value is empty or not a recognised alias.
    """
    normalized = str(raw or "").strip().upper()
    if not normalized:
        return None
    for stage in STAGE_SEQUENCE:
        if normalized in STAGE_ALIASES[stage]:
            return stage
    return None


def stage_index(stage: Optional[str]) -> int:
    return STAGE_SEQUENCE.index(normalize_stage(stage))


def next_stage(stage: Optional[str]) -> Stage:
    """The stage one position ahead; the terminal stage maps to itself."""
    idx = stage_index(stage)
    if idx >= len(STAGE_SEQUENCE) - 1:
        return TERMINAL_STAGE
    return STAGE_SEQUENCE[idx + 1]


def get_stage_hint(stage: Optional[str]) -> str:
    return STAGE_HINTS[normalize_stage(stage)]


def get_stage_sequence() -> list[Stage]:
    return list(STAGE_SEQUENCE)
