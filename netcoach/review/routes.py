"""
Flashcard review HTTP routes — POST /api/flashcards,
                                GET  /api/flashcards/review?owner_id=,
                                POST /api/flashcards/review

Reads and writes go straight to the SessionStore on app.state.store; there is
no background work for flashcards.
"""
from fastapi import APIRouter, Query, Request

from netcoach.review.schemas import Flashcard, ReviewSaveResult, SaveFlashcardRequest, SaveReviewRequest

router = APIRouter(prefix="/api", tags=["review"])


@router.post("/flashcards", response_model=Flashcard, status_code=201)
async def save_flashcard(body: SaveFlashcardRequest, request: Request) -> Flashcard:
    return await request.app.state.store.save_flashcard(**body.model_dump())


@router.get("/flashcards/review", response_model=list[Flashcard])
async def start_review_session(
    request: Request,
    owner_id: str = Query(..., min_length=1, max_length=128),
) -> list[Flashcard]:
    return await request.app.state.store.start_review_session(owner_id)


@router.post("/flashcards/review", response_model=ReviewSaveResult)
async def save_review_session(body: SaveReviewRequest, request: Request) -> ReviewSaveResult:
    return await request.app.state.store.save_review_session(body.updates)
