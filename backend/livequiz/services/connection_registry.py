"""Connection registry: who is attached to a session, over which transport,
and whether they answered the current question."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from livequiz.config import settings
from livequiz.models.connection import ConnectionStatus, SessionConnection, TransportKind
from livequiz.services.event_log import EventType, average_latency_ms, log_audit_event
from livequiz.services.timekeeping import seconds_between, to_epoch, utcnow

logger = logging.getLogger(__name__)


@dataclass
class HeartbeatResult:
    success: bool
    server_timestamp: float
    status: str


@dataclass
class SweepReport:
    timed_out: int = 0
    purged: int = 0
    session_ids: List[int] = field(default_factory=list)


def _validate_transport(transport: str) -> str:
    try:
        return TransportKind(str(transport).lower()).value
    except ValueError as exc:
        raise ValueError(f"Unknown transport: {transport}") from exc


async def get_connection(db: AsyncSession, connection_id: str) -> Optional[SessionConnection]:
    result = await db.execute(
        select(SessionConnection).where(SessionConnection.connection_id == connection_id)
    )
    return result.scalar_one_or_none()


async def attach(
    db: AsyncSession,
    *,
    session_id: int,
    user_id: int,
    connection_id: str,
    transport: str,
    now: Optional[datetime] = None,
) -> SessionConnection:
    """Register (or re-register) a client attachment.

    Attaching under an existing ``connection_id`` refreshes that row. A new
    ``connection_id`` supersedes the user's other live rows for the session and
    inherits the answered flag of the user's most recent row, so a reconnect
    never forgets that the current question was already answered.
    """
    now = now or utcnow()
    transport = _validate_transport(transport)
    connection = await get_connection(db, connection_id)

    if connection is not None:
        if connection.session_id != session_id or connection.user_id != user_id:
            raise ValueError("Connection id belongs to another session or user")
        connection.transport = transport
        connection.status = ConnectionStatus.CONNECTED.value
        connection.last_heartbeat_at = now
        connection.updated_at = now
        await db.flush()
        return connection

    latest = await db.execute(
        select(SessionConnection.current_question_answered)
        .where(
            SessionConnection.session_id == session_id,
            SessionConnection.user_id == user_id,
        )
        .order_by(SessionConnection.updated_at.desc(), SessionConnection.id.desc())
        .limit(1)
    )
    answered = bool(latest.scalar_one_or_none() or False)

    await db.execute(
        update(SessionConnection)
        .where(
            SessionConnection.session_id == session_id,
            SessionConnection.user_id == user_id,
            SessionConnection.status == ConnectionStatus.CONNECTED.value,
        )
        .values(status=ConnectionStatus.DISCONNECTED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )

    connection = SessionConnection(
        session_id=session_id,
        user_id=user_id,
        connection_id=connection_id,
        transport=transport,
        status=ConnectionStatus.CONNECTED.value,
        current_question_answered=answered,
        last_heartbeat_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(connection)
    await db.flush()
    await log_audit_event(
        db,
        session_id,
        EventType.CONNECTION_REGISTER,
        user_id=user_id,
        data={"connection_id": connection_id, "transport": transport},
        now=now,
    )
    logger.info("User %s attached to session %s via %s (%s)", user_id, session_id, transport, connection_id)
    return connection


async def heartbeat(
    db: AsyncSession,
    connection_id: str,
    *,
    now: Optional[datetime] = None,
) -> HeartbeatResult:
    """Refresh the liveness timestamp. Unknown ids report failure, never raise."""
    now = now or utcnow()
    connection = await get_connection(db, connection_id)
    if connection is None:
        return HeartbeatResult(success=False, server_timestamp=to_epoch(now), status="unknown")

    stale = seconds_between(now, connection.last_heartbeat_at) > settings.HEARTBEAT_TIMEOUT_SECONDS
    revived = connection.status != ConnectionStatus.CONNECTED.value or stale
    connection.last_heartbeat_at = now
    connection.updated_at = now
    connection.status = ConnectionStatus.CONNECTED.value
    await db.flush()

    if revived:
        await log_audit_event(
            db,
            connection.session_id,
            EventType.HEARTBEAT_RECONNECT,
            user_id=connection.user_id,
            data={"connection_id": connection_id},
            now=now,
        )
        logger.info("Connection %s revived by heartbeat", connection_id)
    return HeartbeatResult(
        success=True,
        server_timestamp=to_epoch(now),
        status="reconnected" if revived else "alive",
    )


async def detach(db: AsyncSession, connection_id: str, *, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    connection = await get_connection(db, connection_id)
    if connection is None:
        return False
    if connection.status != ConnectionStatus.DISCONNECTED.value:
        connection.status = ConnectionStatus.DISCONNECTED.value
        connection.updated_at = now
        await db.flush()
        await log_audit_event(
            db,
            connection.session_id,
            EventType.CONNECTION_DISCONNECT,
            user_id=connection.user_id,
            data={"connection_id": connection_id},
            now=now,
        )
        logger.info("Connection %s detached from session %s", connection_id, connection.session_id)
    return True


async def mark_answered(
    db: AsyncSession,
    session_id: int,
    user_id: int,
    *,
    now: Optional[datetime] = None,
) -> None:
    """Flag the user's current connection as having answered.

    A user who submits without ever attaching gets an ``api`` connection row so
    that they show up in the answered count.
    """
    now = now or utcnow()
    result = await db.execute(
        select(SessionConnection)
        .where(
            SessionConnection.session_id == session_id,
            SessionConnection.user_id == user_id,
        )
        .order_by(SessionConnection.updated_at.desc(), SessionConnection.id.desc())
    )
    rows = list(result.scalars().all())
    if not rows:
        db.add(
            SessionConnection(
                session_id=session_id,
                user_id=user_id,
                connection_id=f"api-{session_id}-{user_id}",
                transport=TransportKind.API.value,
                status=ConnectionStatus.CONNECTED.value,
                current_question_answered=True,
                last_heartbeat_at=now,
                created_at=now,
                updated_at=now,
            )
        )
    else:
        for row in rows:
            row.current_question_answered = True
    await db.flush()


async def stats(db: AsyncSession, session_id: int) -> Dict[str, int]:
    """Distinct connected users, how many of them answered, how many have not."""
    result = await db.execute(
        select(SessionConnection.user_id, SessionConnection.current_question_answered)
        .where(
            SessionConnection.session_id == session_id,
            SessionConnection.status == ConnectionStatus.CONNECTED.value,
        )
    )
    users: Dict[int, bool] = {}
    for user_id, flag in result.all():
        users[user_id] = users.get(user_id, False) or bool(flag)
    connected = len(users)
    answered = sum(1 for flag in users.values() if flag)
    return {"connected": connected, "answered": answered, "pending": connected - answered}


async def list_connected_students(
    db: AsyncSession,
    session_id: int,
    *,
    grace_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """One entry per user: connected users plus users who dropped within the grace window.

    The newest row of a user wins, connected rows before disconnected ones.
    """
    now = now or utcnow()
    grace = settings.CONNECTED_STUDENTS_GRACE_SECONDS if grace_seconds is None else grace_seconds
    cutoff = now - timedelta(seconds=grace)
    result = await db.execute(
        select(SessionConnection)
        .where(
            SessionConnection.session_id == session_id,
            or_(
                SessionConnection.status == ConnectionStatus.CONNECTED.value,
                SessionConnection.updated_at >= cutoff,
            ),
        )
        .order_by(SessionConnection.updated_at.desc(), SessionConnection.id.desc())
    )
    rows = sorted(
        result.scalars().all(),
        key=lambda row: row.status != ConnectionStatus.CONNECTED.value,
    )
    students: Dict[int, Dict[str, Any]] = {}
    for row in rows:
        if row.user_id in students:
            continue
        students[row.user_id] = {
            "user_id": row.user_id,
            "connection_id": row.connection_id,
            "transport": row.transport,
            "status": row.status,
            "answered": bool(row.current_question_answered),
            "last_heartbeat_at": to_epoch(row.last_heartbeat_at),
        }
    return list(students.values())


async def connection_stats(
    db: AsyncSession,
    session_id: int,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    stale_cutoff = now - timedelta(seconds=settings.HEARTBEAT_TIMEOUT_SECONDS)
    result = await db.execute(
        select(SessionConnection.status, SessionConnection.last_heartbeat_at)
        .where(SessionConnection.session_id == session_id)
    )
    total = active = disconnected = stale = 0
    for status, last_heartbeat_at in result.all():
        total += 1
        if status != ConnectionStatus.CONNECTED.value:
            disconnected += 1
        elif last_heartbeat_at is not None and seconds_between(stale_cutoff, last_heartbeat_at) > 0:
            stale += 1
        else:
            active += 1
    return {
        "total": total,
        "active": active,
        "disconnected": disconnected,
        "stale": stale,
        "average_latency_ms": await average_latency_ms(db, session_id, now=now),
    }


async def sweep_stale(
    db: AsyncSession,
    *,
    timeout_seconds: Optional[int] = None,
    purge_after_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SweepReport:
    """Disconnect rows whose heartbeat expired; delete long-disconnected rows."""
    now = now or utcnow()
    timeout = settings.HEARTBEAT_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
    purge_after = settings.CONNECTION_PURGE_AFTER_SECONDS if purge_after_seconds is None else purge_after_seconds
    report = SweepReport()

    result = await db.execute(
        select(SessionConnection).where(
            SessionConnection.status == ConnectionStatus.CONNECTED.value,
            SessionConnection.last_heartbeat_at < now - timedelta(seconds=timeout),
        )
    )
    for connection in result.scalars().all():
        connection.status = ConnectionStatus.DISCONNECTED.value
        connection.updated_at = now
        report.timed_out += 1
        if connection.session_id not in report.session_ids:
            report.session_ids.append(connection.session_id)
        await log_audit_event(
            db,
            connection.session_id,
            EventType.HEARTBEAT_TIMEOUT,
            user_id=connection.user_id,
            data={"connection_id": connection.connection_id},
            now=now,
        )

    await db.flush()
    purged = await db.execute(
        delete(SessionConnection).where(
            SessionConnection.status == ConnectionStatus.DISCONNECTED.value,
            SessionConnection.updated_at < now - timedelta(seconds=purge_after),
        ).execution_options(synchronize_session=False)
    )
    report.purged = int(purged.rowcount or 0)
    await db.flush()

    if report.timed_out or report.purged:
        logger.info("Connection sweep: %s timed out, %s purged", report.timed_out, report.purged)
    return report

