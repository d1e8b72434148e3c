"""Session state machine: lifecycle, current-question pointer and timer bookkeeping.

Every mutation is a short unit of work on one ``live_sessions`` row, taken
``FOR UPDATE`` so that two instructor actions on the same session serialize
while different sessions proceed independently. Each mutation records the
broadcastable event(s) it produced and returns them; publishing them is left
to the caller, after commit, so that the state machine never depends on a
transport.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from livequiz.config import settings
from livequiz.exceptions import InvalidTransition, SessionClosed, SessionNotFound
from livequiz.models.connection import SessionConnection
from livequiz.models.response import QuizResponse
from livequiz.models.session import (
    QuestionType,
    QuizSession,
    SessionEvent,
    SessionQuestion,
    SessionStatus,
)
from livequiz.services.event_log import EventType, append_event
from livequiz.services.timekeeping import seconds_between, to_epoch, to_utc, utcnow

logger = logging.getLogger(__name__)

# operation -> statuses it may start from
_ALLOWED_FROM = {
    "start": {SessionStatus.PENDING.value},
    "pause": {SessionStatus.ACTIVE.value},
    "resume": {SessionStatus.PAUSED.value},
    "advance": {SessionStatus.ACTIVE.value},
}


def _normalize_time_limit(time_limit_seconds: Optional[int]) -> int:
    try:
        limit = int(time_limit_seconds or settings.DEFAULT_TIME_LIMIT_SECONDS)
    except (TypeError, ValueError) as exc:
        raise ValueError("Time limit must be an integer number of seconds") from exc
    if limit < settings.MIN_TIME_LIMIT_SECONDS or limit > settings.MAX_TIME_LIMIT_SECONDS:
        raise ValueError(
            f"Time limit must be between {settings.MIN_TIME_LIMIT_SECONDS} "
            f"and {settings.MAX_TIME_LIMIT_SECONDS} seconds"
        )
    return limit


def _normalize_question(position: int, raw: Dict[str, Any]) -> SessionQuestion:
    question_type = str(raw.get("question_type") or "").strip().lower()
    try:
        QuestionType(question_type)
    except ValueError as exc:
        raise ValueError(f"Unknown question type: {question_type or '<empty>'}") from exc

    text = str(raw.get("question_text") or "").strip()
    if not text:
        raise ValueError(f"Question {position + 1} has no text")
    correct_answer = str(raw.get("correct_answer") or "").strip()
    if not correct_answer:
        raise ValueError(f"Question {position + 1} has no correct answer")

    options = raw.get("options") or None
    if question_type == QuestionType.MULTICHOICE.value:
        options = {str(key).strip().upper(): str(value) for key, value in (options or {}).items()}
        if len(options) < 2:
            raise ValueError(f"Question {position + 1} needs at least two options")
        if correct_answer.upper() not in options:
            raise ValueError(f"Question {position + 1} correct answer is not one of its options")
        correct_answer = correct_answer.upper()

    return SessionQuestion(
        position=position,
        question_type=question_type,
        question_text=text,
        options=options,
        correct_answer=correct_answer,
    )


def compute_remaining(session: QuizSession, now: datetime) -> Optional[float]:
    """Seconds left on the current question, or None when no timer is running.

    While active: ``limit - (now - question_started_at - accumulated_pause)``,
    clamped at zero. While paused: the value frozen at pause time.
    """
    if session.status == SessionStatus.PAUSED.value:
        frozen = session.timer_remaining_at_pause
        return round(float(frozen), 3) if frozen is not None else None
    if session.status != SessionStatus.ACTIVE.value or session.question_started_at is None:
        return None
    elapsed = seconds_between(now, session.question_started_at) - float(session.accumulated_pause_seconds or 0.0)
    return round(max(0.0, float(session.time_limit_seconds) - elapsed), 3)


def question_deadline_passed(session: QuizSession, at: datetime) -> bool:
    if session.question_started_at is None:
        return False
    elapsed = seconds_between(at, session.question_started_at) - float(session.accumulated_pause_seconds or 0.0)
    return elapsed > float(session.time_limit_seconds)


def question_payload(question: Optional[SessionQuestion]) -> Optional[Dict[str, Any]]:
    """Client view of a question; never includes the answer key."""
    if question is None:
        return None
    return {
        "id": question.id,
        "position": question.position,
        "question_type": question.question_type,
        "text": question.question_text,
        "options": [
            {"key": key, "text": text}
            for key, text in sorted((question.options or {}).items())
        ],
    }


def public_snapshot(
    session: QuizSession,
    question: Optional[SessionQuestion],
    now: datetime,
) -> Dict[str, Any]:
    return {
        "session_id": session.id,
        "status": session.status,
        "current_question_index": int(session.current_question_index or 0),
        "num_questions": int(session.num_questions or 0),
        "time_limit_seconds": int(session.time_limit_seconds),
        "question": question_payload(question),
        "remaining_seconds": compute_remaining(session, now),
        "sequence_id": int(session.last_event_seq or 0),
        "server_timestamp": to_epoch(now),
    }


async def create_session(
    db: AsyncSession,
    *,
    instructor_id: Optional[int],
    title: str,
    questions: List[Dict[str, Any]],
    time_limit_seconds: Optional[int] = None,
) -> QuizSession:
    if not questions:
        raise ValueError("A session needs at least one question")
    session = QuizSession(
        instructor_id=instructor_id,
        title=title.strip(),
        status=SessionStatus.PENDING.value,
        current_question_index=0,
        num_questions=len(questions),
        time_limit_seconds=_normalize_time_limit(time_limit_seconds),
        accumulated_pause_seconds=0.0,
        last_event_seq=0,
    )
    session.questions = [_normalize_question(index, raw) for index, raw in enumerate(questions)]
    db.add(session)
    await db.flush()
    logger.info("Session %s created with %s questions", session.id, session.num_questions)
    return session


async def get_session_by_id(db: AsyncSession, session_id: int) -> Optional[QuizSession]:
    result = await db.execute(
        select(QuizSession)
        .options(selectinload(QuizSession.questions))
        .where(QuizSession.id == session_id)
    )
    return result.scalar_one_or_none()


async def get_question_at(db: AsyncSession, session_id: int, position: int) -> Optional[SessionQuestion]:
    result = await db.execute(
        select(SessionQuestion).where(
            SessionQuestion.session_id == session_id,
            SessionQuestion.position == position,
        )
    )
    return result.scalar_one_or_none()


async def _lock_session(db: AsyncSession, session_id: int, operation: str) -> QuizSession:
    result = await db.execute(
        select(QuizSession).where(QuizSession.id == session_id).with_for_update()
        .execution_options(populate_existing=True)
    )
    session = result.scalar_one_or_none()
    if session is None:
        raise SessionNotFound()
    if session.status == SessionStatus.COMPLETED.value:
        raise SessionClosed(f"Cannot {operation} session {session_id}: it is completed")
    if session.status not in _ALLOWED_FROM[operation]:
        raise InvalidTransition(operation, session.status)
    return session


async def _reset_answered_flags(db: AsyncSession, session_id: int) -> None:
    await db.execute(
        update(SessionConnection)
        .where(SessionConnection.session_id == session_id)
        .values(current_question_answered=False)
        .execution_options(synchronize_session=False)
    )


async def _complete(db: AsyncSession, session: QuizSession, now: datetime, latency_ms: Optional[int] = None) -> SessionEvent:
    session.status = SessionStatus.COMPLETED.value
    session.completed_at = now
    session.paused_at = None
    session.timer_remaining_at_pause = None
    session.updated_at = now
    return await append_event(
        db,
        session,
        EventType.SESSION_COMPLETED,
        public_snapshot(session, None, now),
        latency_ms=latency_ms,
        now=now,
    )


async def start_session(db: AsyncSession, session_id: int, *, now: Optional[datetime] = None) -> List[SessionEvent]:
    """pending -> active on question 0.

    Any other active or paused session of the same instructor is completed
    first; an instructor runs one live quiz at a time.
    """
    started = time.perf_counter()
    now = now or utcnow()
    session = await _lock_session(db, session_id, "start")
    events: List[SessionEvent] = []

    if session.instructor_id is not None:
        others = await db.execute(
            select(QuizSession)
            .where(
                QuizSession.instructor_id == session.instructor_id,
                QuizSession.id != session.id,
                QuizSession.status.in_([SessionStatus.ACTIVE.value, SessionStatus.PAUSED.value]),
            )
            .with_for_update()
        )
        for other in others.scalars().all():
            logger.info("Completing session %s: instructor started session %s", other.id, session.id)
            events.append(await _complete(db, other, now))

    session.status = SessionStatus.ACTIVE.value
    session.current_question_index = 0
    session.started_at = now
    session.question_started_at = now
    session.paused_at = None
    session.timer_remaining_at_pause = None
    session.accumulated_pause_seconds = 0.0
    session.updated_at = now
    await _reset_answered_flags(db, session.id)

    question = await get_question_at(db, session.id, 0)
    events.append(
        await append_event(
            db,
            session,
            EventType.SESSION_STARTED,
            public_snapshot(session, question, now),
            latency_ms=int((time.perf_counter() - started) * 1000),
            now=now,
        )
    )
    logger.info("Session %s started", session.id)
    return events


async def pause_session(db: AsyncSession, session_id: int, *, now: Optional[datetime] = None) -> List[SessionEvent]:
    """active -> paused, freezing the remaining time."""
    now = now or utcnow()
    session = await _lock_session(db, session_id, "pause")

    session.timer_remaining_at_pause = compute_remaining(session, now)
    session.status = SessionStatus.PAUSED.value
    session.paused_at = now
    session.updated_at = now

    question = await get_question_at(db, session.id, session.current_question_index)
    event = await append_event(
        db,
        session,
        EventType.SESSION_PAUSED,
        public_snapshot(session, question, now),
        now=now,
    )
    logger.info(
        "Session %s paused on question %s with %.1fs remaining",
        session.id,
        session.current_question_index,
        session.timer_remaining_at_pause or 0.0,
    )
    return [event]


async def resume_session(db: AsyncSession, session_id: int, *, now: Optional[datetime] = None) -> List[SessionEvent]:
    """paused -> active, restoring exactly the remaining time frozen at pause."""
    now = now or utcnow()
    session = await _lock_session(db, session_id, "resume")

    frozen = float(session.timer_remaining_at_pause or 0.0)
    pause_duration = max(0.0, seconds_between(now, session.paused_at)) if session.paused_at else 0.0
    accumulated = float(session.accumulated_pause_seconds or 0.0) + pause_duration
    elapsed_before_pause = float(session.time_limit_seconds) - frozen

    session.accumulated_pause_seconds = accumulated
    # Chosen so that limit - (now - start - accumulated) == frozen.
    session.question_started_at = _shift(now, -(accumulated + elapsed_before_pause))
    session.status = SessionStatus.ACTIVE.value
    session.paused_at = None
    session.timer_remaining_at_pause = None
    session.updated_at = now

    question = await get_question_at(db, session.id, session.current_question_index)
    event = await append_event(
        db,
        session,
        EventType.SESSION_RESUMED,
        public_snapshot(session, question, now),
        now=now,
    )
    logger.info("Session %s resumed after %.1fs pause", session.id, pause_duration)
    return [event]


async def advance_session(db: AsyncSession, session_id: int, *, now: Optional[datetime] = None) -> List[SessionEvent]:
    """Move to the next question, or complete the session after the last one."""
    started = time.perf_counter()
    now = now or utcnow()
    session = await _lock_session(db, session_id, "advance")

    await _reset_answered_flags(db, session.id)
    next_index = int(session.current_question_index or 0) + 1
    if next_index >= int(session.num_questions or 0):
        event = await _complete(db, session, now, latency_ms=int((time.perf_counter() - started) * 1000))
        logger.info("Session %s completed", session.id)
        return [event]

    session.current_question_index = next_index
    session.question_started_at = now
    session.accumulated_pause_seconds = 0.0
    session.paused_at = None
    session.timer_remaining_at_pause = None
    session.updated_at = now

    question = await get_question_at(db, session.id, next_index)
    event = await append_event(
        db,
        session,
        EventType.QUESTION_BROADCAST,
        public_snapshot(session, question, now),
        latency_ms=int((time.perf_counter() - started) * 1000),
        now=now,
    )
    logger.info("Session %s advanced to question %s", session.id, next_index)
    return [event]


async def build_snapshot(
    db: AsyncSession,
    session_id: int,
    user_id: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Complete, self-sufficient description of the session for one user.

    Built only from persisted rows, so it is safe to serve after any number of
    missed broadcasts and calling it twice has no effect.
    """
    now = now or utcnow()
    result = await db.execute(select(QuizSession).where(QuizSession.id == session_id))
    session = result.scalar_one_or_none()
    if session is None:
        raise SessionNotFound()

    question = None
    if session.status in (SessionStatus.ACTIVE.value, SessionStatus.PAUSED.value):
        question = await get_question_at(db, session.id, session.current_question_index)

    snapshot = public_snapshot(session, question, now)
    if user_id is not None:
        has_answered = False
        user_answer = None
        if question is not None:
            response = await db.execute(
                select(QuizResponse.answer).where(
                    QuizResponse.session_id == session.id,
                    QuizResponse.question_id == question.id,
                    QuizResponse.user_id == user_id,
                )
            )
            user_answer = response.scalar_one_or_none()
            has_answered = user_answer is not None
        snapshot["has_answered"] = has_answered
        snapshot["user_answer"] = user_answer
    return snapshot


def _shift(moment: datetime, seconds: float) -> datetime:
    return to_utc(moment) + timedelta(seconds=seconds)
