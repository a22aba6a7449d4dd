"""
schemas.py — Pydantic v2 payloads for remote enrichment responses.

Every Mistral response is parsed as JSON and validated against one of these
models. A ValidationError counts as a failed attempt (the caller raises
EnrichmentError), so malformed output feeds the retry loop like a transport error.

Keys are snake_case in the prompts; camelCase aliases are accepted too.
"""
from typing import List

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

MAX_REMOTE_NUDGES = 3


def _clean_lines(values: List[str]) -> List[str]:
    return [str(v).strip() for v in values if str(v or "").strip()]


class EvaluationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    score: int = Field(..., ge=1, le=10)
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    next_actions: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("next_actions", "nextActions"),
    )
    follow_up_email: str = Field(
        "",
        validation_alias=AliasChoices("follow_up_email", "followUpEmail", "followUpEmailDraft"),
    )

    @field_validator("strengths", "improvements", "next_actions")
    @classmethod
    def strip_items(cls, value: List[str]) -> List[str]:
        return _clean_lines(value)

    @field_validator("follow_up_email")
    @classmethod
    def strip_email(cls, value: str) -> str:
        return value.strip()


class SummaryPayload(BaseModel):
    summary: str

    @field_validator("summary")
    @classmethod
    def summary_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("summary must not be empty")
        return value


class NudgesPayload(BaseModel):
    """1–3 short suggestions after stripping; blank entries are dropped first."""
    nudges: List[str]

    @field_validator("nudges")
    @classmethod
    def normalize(cls, value: List[str]) -> List[str]:
        cleaned = _clean_lines(value)[:MAX_REMOTE_NUDGES]
        if not cleaned:
            raise ValueError("at least one nudge is required")
        return cleaned


class MetadataPayload(BaseModel):
    # Blank values are allowed here; the metadata service substitutes goal-derived fallbacks
    model_config = ConfigDict(populate_by_name=True)

    display_title: str = Field(
        "",
        validation_alias=AliasChoices("display_title", "displayTitle"),
    )
    goal_summary: str = Field(
        "",
        validation_alias=AliasChoices("goal_summary", "goalSummary"),
    )

    @field_validator("display_title", "goal_summary")
    @classmethod
    def collapse_whitespace(cls, value: str) -> str:
        return " ".join(value.split())


class FollowupEmailPayload(BaseModel):
    subject: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)

    @field_validator("subject", "body", mode="before")
    @classmethod
    def strip(cls, value):
        return value.strip() if isinstance(value, str) else value
