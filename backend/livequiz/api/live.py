"""
Student-facing live routes: the unified write endpoint, the poll transport and
the push (WebSocket) transport.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from livequiz.api.deps import get_broadcaster, get_rate_limiter
from livequiz.api.sessions import TRANSITIONS
from livequiz.config import settings
from livequiz.database import get_db
from livequiz.exceptions import LiveQuizError, SessionNotFound
from livequiz.middleware.identity import CurrentUser, get_current_user, resolve_token
from livequiz.models.connection import TransportKind
from livequiz.models.session import SessionStatus
from livequiz.schemas.live import (
    AnswerPayload,
    BatchPayload,
    LiveAction,
    LiveActionResponse,
    PollResponse,
    ReconnectPayload,
)
from livequiz.services import connection_registry
from livequiz.services.broadcaster import EventBroadcaster, Subscriber
from livequiz.services.event_log import event_message, list_events_since
from livequiz.services.rate_limiter import RateLimiter
from livequiz.services.response_capture import enqueue_submission, submit_answer, submit_batch
from livequiz.services.session_state import build_snapshot, get_session_by_id
from livequiz.services.timekeeping import to_epoch, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/live", tags=["Live"])

# Actions that count against the per-user write quota.
RATE_LIMITED_ACTIONS = {"submit_answer", "submit_batch", "queue_answer"}
INSTRUCTOR_ACTIONS = set(TRANSITIONS)


class _ActionContext:
    def __init__(
        self,
        db: AsyncSession,
        session_id: int,
        user: CurrentUser,
        connection_id: Optional[str],
        payload: Dict[str, Any],
        broadcaster: EventBroadcaster,
    ):
        self.db = db
        self.session_id = session_id
        self.user = user
        self.connection_id = connection_id
        self.payload = payload
        self.broadcaster = broadcaster


def _ok(data: Optional[Dict[str, Any]] = None) -> LiveActionResponse:
    return LiveActionResponse(success=True, data=data or {})


def _fail(error: str, error_code: str, data: Optional[Dict[str, Any]] = None) -> LiveActionResponse:
    return LiveActionResponse(success=False, error=error, error_code=error_code, data=data)


async def _submit_answer(ctx: _ActionContext) -> LiveActionResponse:
    payload = AnswerPayload.model_validate(ctx.payload)
    result = await submit_answer(
        ctx.db,
        session_id=ctx.session_id,
        question_id=payload.question_id,
        user_id=ctx.user.id,
        answer=payload.answer,
        client_timestamp=payload.client_timestamp,
    )
    if result.success:
        await connection_registry.mark_answered(ctx.db, ctx.session_id, ctx.user.id)
    await ctx.db.commit()
    data = result.to_dict()
    if result.success:
        return _ok(data)
    return _fail(result.error or "Submission rejected", result.outcome.value, data)


async def _submit_batch(ctx: _ActionContext) -> LiveActionResponse:
    payload = BatchPayload.model_validate(ctx.payload)
    items = []
    for raw in payload.responses:
        item = dict(raw)
        item.setdefault("session_id", ctx.session_id)
        # Instructors may relay answers collected for others; students only submit their own.
        if not ctx.user.is_instructor or "user_id" not in item:
            item["user_id"] = ctx.user.id
        items.append(item)

    report = await submit_batch(ctx.db, items)
    answered_users = {
        int(item["user_id"])
        for item, result in zip(items, report.results)
        if result.success and int(item["session_id"]) == ctx.session_id
    }
    for user_id in answered_users:
        await connection_registry.mark_answered(ctx.db, ctx.session_id, user_id)
    await ctx.db.commit()
    return _ok(report.to_dict())


async def _queue_answer(ctx: _ActionContext) -> LiveActionResponse:
    payload = AnswerPayload.model_validate(ctx.payload)
    entry = await enqueue_submission(
        ctx.db,
        session_id=ctx.session_id,
        question_id=payload.question_id,
        user_id=ctx.user.id,
        answer=payload.answer,
        client_timestamp=payload.client_timestamp,
    )
    await ctx.db.commit()
    return _ok({"queued": True, "queue_id": entry.id})


async def _heartbeat(ctx: _ActionContext) -> LiveActionResponse:
    if not ctx.connection_id:
        return _fail("connection_id is required", "connection_required")
    result = await connection_registry.heartbeat(ctx.db, ctx.connection_id)
    await ctx.db.commit()
    data = {"server_timestamp": result.server_timestamp, "status": result.status}
    if not result.success:
        return _fail("Unknown connection", "connection_not_found", data)
    return _ok(data)


async def _snapshot(ctx: _ActionContext) -> LiveActionResponse:
    return _ok(await build_snapshot(ctx.db, ctx.session_id, ctx.user.id))


async def _reconnect(ctx: _ActionContext) -> LiveActionResponse:
    payload = ReconnectPayload.model_validate(ctx.payload)
    connection_id = ctx.connection_id or uuid.uuid4().hex
    await connection_registry.attach(
        ctx.db,
        session_id=ctx.session_id,
        user_id=ctx.user.id,
        connection_id=connection_id,
        transport=payload.transport,
    )
    await ctx.db.commit()
    snapshot = await build_snapshot(ctx.db, ctx.session_id, ctx.user.id)
    return _ok({"connection_id": connection_id, "snapshot": snapshot})


async def _disconnect(ctx: _ActionContext) -> LiveActionResponse:
    if not ctx.connection_id:
        return _fail("connection_id is required", "connection_required")
    found = await connection_registry.detach(ctx.db, ctx.connection_id)
    await ctx.db.commit()
    return _ok({"disconnected": found})


def _instructor_action(operation: str) -> Callable[[_ActionContext], Awaitable[LiveActionResponse]]:
    async def handler(ctx: _ActionContext) -> LiveActionResponse:
        if not ctx.user.is_instructor:
            return _fail("Instructor role required", "forbidden")
        session = await get_session_by_id(ctx.db, ctx.session_id)
        if not session:
            raise SessionNotFound()
        if session.instructor_id is not None and session.instructor_id != ctx.user.id:
            return _fail("Access denied", "forbidden")
        events = await TRANSITIONS[operation](ctx.db, ctx.session_id)
        await ctx.db.commit()
        await ctx.broadcaster.publish(events)
        return _ok({"events": len(events), "snapshot": await build_snapshot(ctx.db, ctx.session_id)})

    return handler


_ACTIONS: Dict[str, Callable[[_ActionContext], Awaitable[LiveActionResponse]]] = {
    "submit_answer": _submit_answer,
    "submit_batch": _submit_batch,
    "queue_answer": _queue_answer,
    "heartbeat": _heartbeat,
    "snapshot": _snapshot,
    "reconnect": _reconnect,
    "disconnect": _disconnect,
}
_ACTIONS.update({operation: _instructor_action(operation) for operation in INSTRUCTOR_ACTIONS})


@router.post("/{session_id}/actions", response_model=LiveActionResponse)
async def perform_action(
    session_id: int,
    data: LiveAction,
    db: AsyncSession = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Unified write endpoint: ``{action, connection_id, payload}`` -> ``{success, data | error}``."""
    action = data.action.strip().lower()
    handler = _ACTIONS.get(action)
    if handler is None:
        return _fail(f"Unknown action: {data.action}", "unknown_action")

    ctx = _ActionContext(db, session_id, current_user, data.connection_id, data.payload, broadcaster)
    try:
        if action in RATE_LIMITED_ACTIONS:
            await rate_limiter.hit(current_user.id, action)
        return await handler(ctx)
    except ValidationError as exc:
        await db.rollback()
        return _fail(f"Invalid payload: {exc.errors()[0].get('msg', 'invalid')}", "invalid_payload")
    except LiveQuizError as exc:
        await db.rollback()
        extra = {"retry_after": exc.retry_after} if hasattr(exc, "retry_after") else None
        return _fail(exc.message, exc.code, extra)
    except ValueError as exc:
        await db.rollback()
        return _fail(str(exc), "bad_request")


@router.get("/{session_id}/poll", response_model=PollResponse)
async def poll(
    session_id: int,
    connection_id: Optional[str] = Query(None, max_length=100),
    last_sequence_id: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Poll transport: refresh the poll connection and return the current snapshot.

    Missed events are never replayed here; the snapshot supersedes them.
    """
    session = await get_session_by_id(db, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")

    connection_id = connection_id or uuid.uuid4().hex
    try:
        await connection_registry.attach(
            db,
            session_id=session_id,
            user_id=current_user.id,
            connection_id=connection_id,
            transport=TransportKind.POLL.value,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await db.commit()

    snapshot = await build_snapshot(db, session_id, current_user.id)
    return PollResponse(
        connection_id=connection_id,
        caught_up=last_sequence_id >= snapshot["sequence_id"],
        snapshot=snapshot,
    )


async def _send_catch_up(
    websocket: WebSocket,
    db: AsyncSession,
    session_id: int,
    user_id: int,
    last_sequence_id: Optional[int],
) -> Dict[str, Any]:
    """Replay missed events when the gap is small and intact, else send a snapshot."""
    snapshot = await build_snapshot(db, session_id, user_id)
    current_seq = snapshot["sequence_id"]
    if last_sequence_id is not None and 0 <= current_seq - last_sequence_id <= settings.EVENT_REPLAY_LIMIT:
        gap = current_seq - last_sequence_id
        events = await list_events_since(db, session_id, last_sequence_id, limit=settings.EVENT_REPLAY_LIMIT)
        contiguous = len(events) == gap and all(
            event.seq == last_sequence_id + offset + 1 for offset, event in enumerate(events)
        )
        if contiguous:
            for event in events:
                await websocket.send_json(event_message(event))
            return snapshot
    await websocket.send_json({"type": "snapshot", "seq": current_seq, "session_id": session_id, "data": snapshot})
    return snapshot


@router.websocket("/{session_id}/ws")
async def push_socket(websocket: WebSocket, session_id: int):
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401, reason="Authentication required")
        return

    try:
        current_user = resolve_token(token)
    except HTTPException as exc:
        await websocket.close(code=4401, reason=str(exc.detail))
        return

    try:
        last_sequence_id = int(websocket.query_params["last_sequence_id"])
    except (KeyError, ValueError):
        last_sequence_id = None
    connection_id = websocket.query_params.get("connection_id") or uuid.uuid4().hex

    session_factory = websocket.app.state.session_factory
    broadcaster: EventBroadcaster = websocket.app.state.broadcaster

    async with session_factory() as db:
        session = await get_session_by_id(db, session_id)
        if not session:
            await websocket.close(code=4404, reason="Session not found")
            return

    await websocket.accept()
    subscriber = Subscriber(connection_id, current_user.id, send=websocket.send_json, close=_closer(websocket))
    # Subscribe before reading the catch-up so nothing published in between is lost.
    await broadcaster.add(session_id, subscriber)

    try:
        async with session_factory() as db:
            await connection_registry.attach(
                db,
                session_id=session_id,
                user_id=current_user.id,
                connection_id=connection_id,
                transport=TransportKind.PUSH.value,
            )
            await db.commit()
            await websocket.send_json(
                {
                    "type": "connected",
                    "session_id": session_id,
                    "connection_id": connection_id,
                    "server_timestamp": to_epoch(utcnow()),
                }
            )
            snapshot = await _send_catch_up(websocket, db, session_id, current_user.id, last_sequence_id)

        if snapshot["status"] == SessionStatus.COMPLETED.value:
            await websocket.close(code=1000, reason="Session completed")
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.PUSH_MAX_LIFETIME_SECONDS
        while True:
            try:
                payload = await asyncio.wait_for(websocket.receive_json(), timeout=max(0.0, deadline - loop.time()))
            except asyncio.TimeoutError:
                # Rotate long-lived sockets; the client re-attaches and catches up.
                await websocket.send_json({"type": "reconnect", "session_id": session_id, "data": {"reason": "rotation"}})
                await websocket.close(code=1012, reason="Channel rotation")
                break
            except ValueError:
                await websocket.send_json({"type": "error", "detail": "Invalid JSON payload"})
                continue

            message_type = str(payload.get("type") or "").strip().lower()

            if message_type == "ping":
                await websocket.send_json({"type": "pong", "server_timestamp": to_epoch(utcnow())})
                continue

            if message_type == "heartbeat":
                async with session_factory() as db:
                    result = await connection_registry.heartbeat(db, connection_id)
                    await db.commit()
                await websocket.send_json(
                    {
                        "type": "heartbeat_ack",
                        "data": {
                            "success": result.success,
                            "server_timestamp": result.server_timestamp,
                            "status": result.status,
                        },
                    }
                )
                continue

            if message_type == "snapshot":
                async with session_factory() as db:
                    snapshot = await build_snapshot(db, session_id, current_user.id)
                await websocket.send_json(
                    {"type": "snapshot", "seq": snapshot["sequence_id"], "session_id": session_id, "data": snapshot}
                )
                continue

            await websocket.send_json({"type": "error", "detail": "Unsupported message type"})
    except WebSocketDisconnect:
        pass
    except RuntimeError as exc:
        # Raised when the socket was closed from the broadcaster side first.
        logger.debug("Push socket %s already closed: %s", connection_id, exc)
    finally:
        await broadcaster.remove(session_id, subscriber)
        async with session_factory() as db:
            await connection_registry.detach(db, connection_id)
            await db.commit()


def _closer(websocket: WebSocket) -> Callable[[int, str], Awaitable[None]]:
    async def close(code: int, reason: str) -> None:
        await websocket.close(code=code, reason=reason)

    return close
