"""
schemas.py — flashcard review Pydantic v2 data contracts.

A Flashcard is a phrase the user saved while practising, joined with its
numeric spaced-repetition schedule. Review updates are partial: any field
left as None keeps its stored value.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from netcoach.sessions.schemas import as_utc


class FlashcardSchedule(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    difficulty: float = 5.0
    stability: float = 1.0
    due_at: datetime
    state: int = 0
    last_review_at: datetime
    reps: int = 0

    @field_validator("due_at", "last_review_at")
    @classmethod
    def utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class Flashcard(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    text: str
    definition: str
    example: str = ""
    example_translation: str = ""
    real_life_definition: str = ""
    surrounding_text: str = ""
    source_title: str = ""
    created_at: datetime
    schedule: FlashcardSchedule

    @field_validator("created_at")
    @classmethod
    def utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class SaveFlashcardRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    owner_id: str = Field(..., min_length=1, max_length=128)
    text: str = Field(..., min_length=1, max_length=500)
    definition: str = Field(..., min_length=1)
    example: str = ""
    example_translation: str = ""
    real_life_definition: str = ""
    surrounding_text: str = ""
    source_title: str = ""


class ReviewUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    flashcard_id: str = Field(..., min_length=1)
    difficulty: Optional[float] = None
    stability: Optional[float] = None
    due_at: Optional[datetime] = None
    state: Optional[int] = Field(None, ge=0, le=3)
    last_review_at: Optional[datetime] = None
    reps: Optional[int] = Field(None, ge=0)


class SaveReviewRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    updates: List[ReviewUpdate] = Field(default_factory=list)


class ReviewSaveResult(BaseModel):
    success: bool = True
    saved_count: int
    message: str
