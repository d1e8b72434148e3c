"""Per-session event log: sequenced broadcast events plus audit-only entries."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from livequiz.models.session import QuizSession, SessionEvent
from livequiz.services.timekeeping import utcnow


class EventType:
    SESSION_STARTED = "session_started"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    QUESTION_BROADCAST = "question_broadcast"
    SESSION_COMPLETED = "session_completed"

    # Audit-only, never broadcast
    CONNECTION_REGISTER = "connection_register"
    CONNECTION_DISCONNECT = "connection_disconnect"
    HEARTBEAT_RECONNECT = "heartbeat_reconnect"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    RESPONSE_BATCH = "response_batch"


async def append_event(
    db: AsyncSession,
    session: QuizSession,
    event_type: str,
    payload: Dict[str, Any],
    *,
    latency_ms: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SessionEvent:
    """Assign the next sequence number of ``session`` and store the event.

    The caller must hold the session row for update so that two mutations of
    the same session never hand out the same number.
    """
    session.last_event_seq = int(session.last_event_seq or 0) + 1
    event = SessionEvent(
        session_id=session.id,
        seq=session.last_event_seq,
        event_type=event_type,
        payload=payload,
        latency_ms=latency_ms,
        created_at=now or utcnow(),
    )
    db.add(event)
    await db.flush()
    return event


async def log_audit_event(
    db: AsyncSession,
    session_id: int,
    event_type: str,
    *,
    user_id: Optional[int] = None,
    data: Optional[Dict[str, Any]] = None,
    latency_ms: Optional[int] = None,
    now: Optional[datetime] = None,
) -> None:
    db.add(
        SessionEvent(
            session_id=session_id,
            seq=None,
            event_type=event_type,
            user_id=user_id,
            payload=data or {},
            latency_ms=latency_ms,
            created_at=now or utcnow(),
        )
    )
    await db.flush()


async def list_events_since(
    db: AsyncSession,
    session_id: int,
    after_seq: int,
    *,
    limit: int = 200,
) -> List[SessionEvent]:
    result = await db.execute(
        select(SessionEvent)
        .where(
            SessionEvent.session_id == session_id,
            SessionEvent.seq.is_not(None),
            SessionEvent.seq > after_seq,
        )
        .order_by(SessionEvent.seq.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def average_latency_ms(
    db: AsyncSession,
    session_id: int,
    *,
    window_seconds: int = 300,
    now: Optional[datetime] = None,
) -> float:
    cutoff = (now or utcnow()) - timedelta(seconds=window_seconds)
    result = await db.execute(
        select(func.avg(SessionEvent.latency_ms)).where(
            SessionEvent.session_id == session_id,
            SessionEvent.latency_ms.is_not(None),
            SessionEvent.created_at >= cutoff,
        )
    )
    value = result.scalar()
    return round(float(value), 2) if value is not None else 0.0


async def purge_events_older_than(
    db: AsyncSession,
    *,
    retention_days: int,
    now: Optional[datetime] = None,
) -> int:
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    result = await db.execute(
        delete(SessionEvent).where(SessionEvent.created_at < cutoff).execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def event_message(event: SessionEvent) -> Dict[str, Any]:
    """Wire shape of a broadcast event."""
    return {
        "type": event.event_type,
        "seq": event.seq,
        "session_id": event.session_id,
        "data": event.payload or {},
    }
