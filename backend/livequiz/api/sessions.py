"""
Instructor session routes: create, inspect and drive a live quiz.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from livequiz.api.deps import get_broadcaster, http_error
from livequiz.database import get_db
from livequiz.exceptions import LiveQuizError
from livequiz.middleware.identity import CurrentUser, get_current_user, require_instructor
from livequiz.models.session import QuizSession, SessionEvent
from livequiz.schemas.session import (
    SessionCreate,
    SessionResponse,
    SessionStatsResponse,
    SessionTransitionResponse,
)
from livequiz.services import connection_registry
from livequiz.services.broadcaster import EventBroadcaster
from livequiz.services.session_state import (
    advance_session,
    build_snapshot,
    create_session,
    get_session_by_id,
    pause_session,
    resume_session,
    start_session,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sessions", tags=["Sessions"])

TRANSITIONS = {
    "start": start_session,
    "pause": pause_session,
    "resume": resume_session,
    "advance": advance_session,
}


def assert_owner(session: QuizSession, current_user: CurrentUser) -> None:
    if session.instructor_id is not None and session.instructor_id != current_user.id:
        raise HTTPException(status_code=403, detail="Access denied")


async def run_transition(
    db: AsyncSession,
    broadcaster: EventBroadcaster,
    session_id: int,
    operation: str,
    current_user: CurrentUser,
) -> List[SessionEvent]:
    """Apply an instructor transition, commit it, then publish its events."""
    session = await get_session_by_id(db, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    assert_owner(session, current_user)

    try:
        events = await TRANSITIONS[operation](db, session_id)
    except LiveQuizError as exc:
        await db.rollback()
        raise http_error(exc)
    await db.commit()
    await broadcaster.publish(events)
    return events


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_new_session(
    data: SessionCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_instructor),
):
    """Create a pending session with its ordered questions."""
    try:
        session = await create_session(
            db,
            instructor_id=current_user.id,
            title=data.title,
            questions=[question.model_dump() for question in data.questions],
            time_limit_seconds=data.time_limit_seconds,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    session = await get_session_by_id(db, session.id)
    return SessionResponse.model_validate(session)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    session = await get_session_by_id(db, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    if current_user.is_instructor:
        assert_owner(session, current_user)
    return SessionResponse.model_validate(session)


@router.post("/{session_id}/{operation}", response_model=SessionTransitionResponse)
async def transition_session(
    session_id: int,
    operation: str,
    db: AsyncSession = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
    current_user: CurrentUser = Depends(require_instructor),
):
    """start | pause | resume | advance."""
    if operation not in TRANSITIONS:
        raise HTTPException(status_code=404, detail=f"Unknown operation: {operation}")
    events = await run_transition(db, broadcaster, session_id, operation, current_user)
    snapshot = await build_snapshot(db, session_id)
    return SessionTransitionResponse(events=len(events), snapshot=snapshot)


@router.get("/{session_id}/stats", response_model=SessionStatsResponse)
async def get_session_stats(
    session_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_instructor),
):
    """Live aggregate for the instructor dashboard."""
    session = await get_session_by_id(db, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    assert_owner(session, current_user)

    counts = await connection_registry.stats(db, session_id)
    return SessionStatsResponse(
        session_id=session_id,
        status=session.status,
        students=await connection_registry.list_connected_students(db, session_id),
        connections=await connection_registry.connection_stats(db, session_id),
        **counts,
    )
