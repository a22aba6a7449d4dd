"""
schemas.py — session lifecycle Pydantic v2 data contracts.

Defines:
  - SessionStatus, TurnRole enums
  - Session, SessionTurn, Evaluation  (domain snapshots returned by the store and cached in Redis)
  - TransitionResult, FinalizeResult, DeleteResult, StageReadiness, SessionResume
  - Request bodies for the HTTP layer (extra='forbid')
  - ErrorDetail, ErrorBody, ErrorResponse  (cross-cutting error envelope)

Store functions return these objects (never ORM instances) so callers stay
persistence-agnostic and cache snapshots round-trip through model_dump(mode="json").
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from netcoach.stages.stage import Stage, normalize_stage


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PROCESSING_EVALUATION = "PROCESSING_EVALUATION"
    EVALUATED = "EVALUATED"
    EVALUATION_FAILED = "EVALUATION_FAILED"


class TurnRole(str, Enum):
    user = "user"
    assistant = "assistant"
    system = "system"


# ---------------------------------------------------------------------------
# Domain snapshots
# ---------------------------------------------------------------------------

class Session(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    goal: str
    status: SessionStatus
    target_profile_context: str = ""
    custom_context: str = ""

    stage: Stage
    stage_entered_at: datetime
    stage_user_turns: int = 0
    stage_signal_flags: dict[str, bool] = Field(default_factory=dict)

    display_title: Optional[str] = None
    goal_summary: Optional[str] = None
    metadata_updated_at: Optional[datetime] = None
    conversation_summary: str = ""
    summary_cursor_at: Optional[datetime] = None
    summary_updated_at: Optional[datetime] = None
    talk_nudges: List[str] = Field(default_factory=list)
    nudges_updated_at: Optional[datetime] = None
    draft_followup_email: Optional[str] = None
    draft_followup_updated_at: Optional[datetime] = None

    created_at: datetime
    updated_at: datetime
    ended_at: Optional[datetime] = None

    @field_validator("stage", mode="before")
    @classmethod
    def known_stage(cls, value):
        return normalize_stage(value)

    @field_validator(
        "stage_entered_at",
        "metadata_updated_at",
        "summary_cursor_at",
        "summary_updated_at",
        "nudges_updated_at",
        "draft_followup_updated_at",
        "created_at",
        "updated_at",
        "ended_at",
    )
    @classmethod
    def utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class SessionTurn(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    role: TurnRole
    content: str
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class Evaluation(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_id: str
    score: int = Field(..., ge=1, le=10)
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    next_actions: List[str] = Field(default_factory=list)
    follow_up_email: str = ""
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def utc(cls, value: datetime) -> datetime:
        return as_utc(value)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

class TransitionResult(BaseModel):
    """Outcome of an explicit stage-transition request — rejection is data, not an error."""
    applied: bool
    next_stage: Stage
    reason: str
    session: Optional[Session] = None


class FinalizeResult(BaseModel):
    session: Session
    queued: bool
    message: str


class DeleteResult(BaseModel):
    session_id: str
    deleted: bool


class StageReadiness(BaseModel):
    """Organic (not requested) advance decision for the current stage."""
    advance: bool
    next_stage: Stage
    reason: str
    gate: Optional[str] = None


class SessionResume(BaseModel):
    session: Session
    recent_turns: List[SessionTurn]
    summary: str
    talk_nudges: List[str]
    draft_followup_email: Optional[str] = None
    stage_hint: str
    context_summary: str
    stage_readiness: StageReadiness


class FollowupEmail(BaseModel):
    subject: str
    body: str


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    owner_id: str = Field(..., min_length=1, max_length=128)
    goal: str = Field(..., min_length=1, max_length=2000)
    target_profile_context: str = ""
    custom_context: str = ""

    @field_validator("goal")
    @classmethod
    def goal_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("goal is required")
        return value.strip()


class RenameSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    goal: str = Field(..., min_length=1, max_length=180)

    @field_validator("goal")
    @classmethod
    def goal_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("goal is required")
        return value.strip()


class AppendTurnRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: TurnRole
    content: str = Field(..., min_length=1)


class StageTransitionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_stage: str = Field(..., min_length=1)
    requested_by: str = "assistant"
    reason: str = ""


class FollowupEmailRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tone: str = "professional"
    length: Literal["short", "medium", "long"] = "medium"


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field: Optional[str] = None
    issue: str


class ErrorBody(BaseModel):
    code: str
    message: str
    details: List[ErrorDetail] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: ErrorBody
