"""
Session HTTP routes — thin adapter over SessionOrchestrator.

  POST   /api/sessions                          create
  GET    /api/sessions?owner_id=                list (newest first)
  GET    /api/sessions/{id}                     fetch
  PATCH  /api/sessions/{id}                     rename goal
  DELETE /api/sessions/{id}                     delete with turns + evaluation
  POST   /api/sessions/{id}/turns               append transcript turn
  POST   /api/sessions/{id}/stage-transitions   request next stage
  POST   /api/sessions/{id}/finalize            end + queue evaluation
  GET    /api/sessions/{id}/resume              resume bundle
  GET    /api/sessions/{id}/evaluation          evaluation (404 until ready)
  POST   /api/sessions/{id}/followup-email      draft follow-up email
  GET    /api/stages                            stage sequence + hints

No business logic here: SessionNotFoundError and ValueError propagate to the
global handlers in main.py (404 / 422).
"""
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from netcoach.sessions.orchestrator import SessionOrchestrator
from netcoach.sessions.schemas import (
    AppendTurnRequest,
    CreateSessionRequest,
    DeleteResult,
    Evaluation,
    FinalizeResult,
    FollowupEmail,
    FollowupEmailRequest,
    RenameSessionRequest,
    Session,
    SessionResume,
    SessionTurn,
    StageTransitionRequest,
    TransitionResult,
)
from netcoach.stages.stage import get_stage_hint, get_stage_sequence

router = APIRouter(prefix="/api", tags=["sessions"])


def _orchestrator(request: Request) -> SessionOrchestrator:
    return request.app.state.orchestrator


@router.post("/sessions", response_model=Session, status_code=201)
async def create_session(body: CreateSessionRequest, request: Request) -> Session:
    return await _orchestrator(request).create_session(
        body.owner_id,
        body.goal,
        body.target_profile_context,
        body.custom_context,
    )


@router.get("/sessions", response_model=list[Session])
async def list_sessions(
    request: Request,
    owner_id: str = Query(..., min_length=1, max_length=128),
) -> list[Session]:
    return await _orchestrator(request).list_sessions(owner_id)


@router.get("/sessions/{session_id}", response_model=Session)
async def get_session(session_id: str, request: Request) -> Session:
    return await _orchestrator(request).get_session(session_id)


@router.patch("/sessions/{session_id}", response_model=Session)
async def rename_session(session_id: str, body: RenameSessionRequest, request: Request) -> Session:
    return await _orchestrator(request).rename_session(session_id, body.goal)


@router.delete("/sessions/{session_id}", response_model=DeleteResult)
async def delete_session(session_id: str, request: Request) -> DeleteResult:
    return await _orchestrator(request).delete_session(session_id)


@router.post("/sessions/{session_id}/turns", response_model=SessionTurn, status_code=201)
async def append_turn(session_id: str, body: AppendTurnRequest, request: Request) -> SessionTurn:
    return await _orchestrator(request).append_turn(session_id, body.role.value, body.content)


@router.post("/sessions/{session_id}/stage-transitions", response_model=TransitionResult)
async def request_stage_transition(
    session_id: str,
    body: StageTransitionRequest,
    request: Request,
) -> TransitionResult:
    """A rejected transition is still a 200: `applied=false` with a reason."""
    return await _orchestrator(request).request_stage_transition(
        session_id,
        body.target_stage,
        body.requested_by,
        body.reason,
    )


@router.post("/sessions/{session_id}/finalize", response_model=FinalizeResult)
async def finalize_session(session_id: str, request: Request) -> FinalizeResult:
    return await _orchestrator(request).finalize_session(session_id)


@router.get("/sessions/{session_id}/resume", response_model=SessionResume)
async def get_resume(
    session_id: str,
    request: Request,
    recent_turns: Optional[int] = Query(None, ge=0, le=200),
) -> SessionResume:
    return await _orchestrator(request).get_resume(session_id, recent_turns)


@router.get("/sessions/{session_id}/evaluation", response_model=Evaluation)
async def get_evaluation(session_id: str, request: Request) -> Evaluation:
    evaluation = await _orchestrator(request).get_evaluation(session_id)
    if evaluation is None:
        raise HTTPException(status_code=404, detail=f"Evaluation not available for session {session_id}")
    return evaluation


@router.post("/sessions/{session_id}/followup-email", response_model=FollowupEmail)
async def generate_followup_email(
    session_id: str,
    body: FollowupEmailRequest,
    request: Request,
) -> FollowupEmail:
    return await _orchestrator(request).generate_followup_email(session_id, body.tone, body.length)


@router.get("/stages")
async def list_stages() -> list[dict]:
    return [
        {"stage": stage.value, "hint": get_stage_hint(stage)}
        for stage in get_stage_sequence()
    ]
