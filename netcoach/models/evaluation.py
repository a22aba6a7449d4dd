"""
models/evaluation.py — SQLAlchemy ORM model for end-of-session evaluations.

Table: session_evaluations
One-to-one with sessions (session_id is the primary key). Written only by the
evaluation job; a re-evaluation overwrites the row instead of appending.
"""
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from netcoach.database import Base, JSONType


class EvaluationORM(Base):
    """
    ORM model for a coach's evaluation of a finished session.

    strengths / improvements / next_actions: JSON string lists.
    follow_up_email: draft follow-up produced alongside the score.
    """
    __tablename__ = "session_evaluations"

    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        primary_key=True,
        comment="References sessions.id — one evaluation per session",
    )
    score: Mapped[int] = mapped_column(Integer, nullable=False, comment="1–10")
    strengths: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    improvements: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    next_actions: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    follow_up_email: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
