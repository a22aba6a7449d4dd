"""
models/flashcard.py — SQLAlchemy ORM models for vocabulary review flashcards.

Tables:
  flashcards            — the phrase the user saved while practising
  flashcard_schedules   — one numeric spaced-repetition record per card

Same cache discipline as sessions: every write deletes the owner's
'review:due:{owner_id}' list key after commit.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from netcoach.database import Base


class FlashcardORM(Base):
    __tablename__ = "flashcards"
    __table_args__ = (
        Index("ix_flashcards_owner_created", "owner_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    definition: Mapped[str] = mapped_column(Text, nullable=False)
    example: Mapped[str] = mapped_column(Text, nullable=False, default="")
    example_translation: Mapped[str] = mapped_column(Text, nullable=False, default="")
    real_life_definition: Mapped[str] = mapped_column(Text, nullable=False, default="")
    surrounding_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    source_title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


class FlashcardScheduleORM(Base):
    """
    Spaced-repetition state for one flashcard.

    state: 0 = new, 1 = learning, 2 = review, 3 = relearning.
    A card is due when due_at <= now.
    """
    __tablename__ = "flashcard_schedules"

    flashcard_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("flashcards.id", ondelete="CASCADE"),
        primary_key=True,
    )
    difficulty: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    stability: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    state: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_review_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
