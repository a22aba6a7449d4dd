"""
models/__init__.py — imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.

Import order matters for FK dependencies: sessions before turns/evaluations,
flashcards before their schedules.
"""
from netcoach.models.session import SessionORM
from netcoach.models.session_turn import SessionTurnORM
from netcoach.models.evaluation import EvaluationORM
from netcoach.models.flashcard import FlashcardORM, FlashcardScheduleORM

__all__ = [
    "SessionORM",
    "SessionTurnORM",
    "EvaluationORM",
    "FlashcardORM",
    "FlashcardScheduleORM",
]
