"""
models/session.py — SQLAlchemy ORM model for coached conversation sessions.

Table: sessions

Dual-store pattern:
  - PostgreSQL (here):  authoritative state, mutated only under SELECT ... FOR UPDATE
  - Redis (cache.py):   short-TTL snapshots, deleted after every committed mutation

Stage bookkeeping (stage_entered_at, stage_user_turns, stage_signal_flags) resets
exactly when `stage` changes. Derived fields (summary, nudges, metadata, follow-up
draft) are written only by background enrichment jobs, each with its own cursor.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from netcoach.database import Base, JSONType


class SessionORM(Base):
    """
    ORM model for one coached networking-practice session.

    status: ACTIVE | PROCESSING_EVALUATION | EVALUATED | EVALUATION_FAILED
    stage:  SMALL_TALK | EXPERIENCE | ADVICE | WRAP_UP | DONE
    """
    __tablename__ = "sessions"
    __table_args__ = (
        Index("ix_sessions_owner_updated", "owner_id", "updated_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Session UUID — matches the Redis key 'session:id:{id}'",
    )
    owner_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Owning user identifier",
    )
    goal: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="ACTIVE",
        comment="Mirrors SessionStatus enum",
    )
    target_profile_context: Mapped[str] = mapped_column(Text, nullable=False, default="")
    custom_context: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # --- Stage bookkeeping ---
    stage: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="SMALL_TALK",
        comment="Mirrors Stage enum — exactly one authoritative stage per session",
    )
    stage_entered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    stage_user_turns: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="User turns appended since stage entry",
    )
    stage_signal_flags: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Sticky per-stage signal booleans, reset on stage change",
    )

    # --- Derived / cached text ---
    display_title: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    goal_summary: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    metadata_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    conversation_summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    summary_cursor_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="created_at of the last turn folded into conversation_summary",
    )
    summary_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    talk_nudges: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="At most two short 'what to say next' suggestions",
    )
    nudges_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    draft_followup_email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    draft_followup_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
