"""
models/session_turn.py — SQLAlchemy ORM model for the append-only transcript.

Table: session_turns
One row per utterance. Rows are never updated or reordered; canonical order is
created_at ascending, and created_at is strictly increasing per session because
turns are only inserted while the owning session row is locked.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from netcoach.database import Base


class SessionTurnORM(Base):
    """
    ORM model for a single transcript turn.

    role: "user" | "assistant" | "system" — String(16) covers all TurnRole values.
    Deleted together with the owning session (ON DELETE CASCADE).
    """
    __tablename__ = "session_turns"
    __table_args__ = (
        Index("ix_session_turns_session_created", "session_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="UUID row identifier",
    )
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
