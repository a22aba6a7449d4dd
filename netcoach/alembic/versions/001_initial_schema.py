"""initial_schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000 UTC

Creates the session lifecycle and review tables:
  - sessions              (stage bookkeeping + derived enrichment fields)
  - session_turns         (append-only transcript, cascade-deleted with the session)
  - session_evaluations   (one row per session, upserted by the evaluation job)
  - flashcards            (saved phrases)
  - flashcard_schedules   (one spaced-repetition record per flashcard)
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- sessions table ---
    op.create_table(
        "sessions",
        sa.Column("id", sa.String(length=36), nullable=False, comment="Session UUID — matches the Redis key 'session:id:{id}'"),
        sa.Column("owner_id", sa.String(length=128), nullable=False, comment="Owning user identifier"),
        sa.Column("goal", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, comment="Mirrors SessionStatus enum"),
        sa.Column("target_profile_context", sa.Text(), nullable=False),
        sa.Column("custom_context", sa.Text(), nullable=False),
        sa.Column("stage", sa.String(length=16), nullable=False, comment="Mirrors Stage enum — exactly one authoritative stage per session"),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stage_user_turns", sa.Integer(), nullable=False, comment="User turns appended since stage entry"),
        sa.Column("stage_signal_flags", postgresql.JSONB(astext_type=sa.Text()), nullable=False, comment="Sticky per-stage signal booleans, reset on stage change"),
        sa.Column("display_title", sa.String(length=120), nullable=True),
        sa.Column("goal_summary", sa.String(length=200), nullable=True),
        sa.Column("metadata_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("conversation_summary", sa.Text(), nullable=False),
        sa.Column("summary_cursor_at", sa.DateTime(timezone=True), nullable=True, comment="created_at of the last turn folded into conversation_summary"),
        sa.Column("summary_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("talk_nudges", postgresql.JSONB(astext_type=sa.Text()), nullable=False, comment="At most two short 'what to say next' suggestions"),
        sa.Column("nudges_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("draft_followup_email", sa.Text(), nullable=True),
        sa.Column("draft_followup_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sessions_owner_updated", "sessions", ["owner_id", "updated_at"], unique=False)

    # --- session_turns table ---
    op.create_table(
        "session_turns",
        sa.Column("id", sa.String(length=36), nullable=False, comment="UUID row identifier"),
        sa.Column("session_id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["sessions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_session_turns_session_created",
        "session_turns",
        ["session_id", "created_at"],
        unique=False,
    )

    # --- session_evaluations table ---
    op.create_table(
        "session_evaluations",
        sa.Column("session_id", sa.String(length=36), nullable=False, comment="References sessions.id — one evaluation per session"),
        sa.Column("score", sa.Integer(), nullable=False, comment="1–10"),
        sa.Column("strengths", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("improvements", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("next_actions", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("follow_up_email", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["sessions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("session_id"),
    )

    # --- flashcards table ---
    op.create_table(
        "flashcards",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("definition", sa.Text(), nullable=False),
        sa.Column("example", sa.Text(), nullable=False),
        sa.Column("example_translation", sa.Text(), nullable=False),
        sa.Column("real_life_definition", sa.Text(), nullable=False),
        sa.Column("surrounding_text", sa.Text(), nullable=False),
        sa.Column("source_title", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_flashcards_owner_created", "flashcards", ["owner_id", "created_at"], unique=False)

    # --- flashcard_schedules table ---
    op.create_table(
        "flashcard_schedules",
        sa.Column("flashcard_id", sa.String(length=36), nullable=False),
        sa.Column("difficulty", sa.Float(), nullable=False),
        sa.Column("stability", sa.Float(), nullable=False),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("state", sa.Integer(), nullable=False),
        sa.Column("last_review_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reps", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["flashcard_id"], ["flashcards.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("flashcard_id"),
    )


def downgrade() -> None:
    op.drop_table("flashcard_schedules")
    op.drop_index("ix_flashcards_owner_created", table_name="flashcards")
    op.drop_table("flashcards")
    op.drop_table("session_evaluations")
    op.drop_index("ix_session_turns_session_created", table_name="session_turns")
    op.drop_table("session_turns")
    op.drop_index("ix_sessions_owner_updated", table_name="sessions")
    op.drop_table("sessions")
