"""In-process fan-out of session events to push subscribers.

Poll clients never register here: they discover state changes through the
snapshot on their next poll, so the broadcaster only ever has to reach
sockets held by this process.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from fastapi.encoders import jsonable_encoder

from livequiz.models.session import SessionEvent
from livequiz.services.event_log import EventType, event_message

logger = logging.getLogger(__name__)


class Subscriber:
    """One push connection. ``send`` and ``close`` are injected so the
    broadcaster does not depend on a concrete socket type."""

    def __init__(
        self,
        connection_id: str,
        user_id: int,
        send: Callable[[Dict[str, Any]], Awaitable[None]],
        close: Optional[Callable[[int, str], Awaitable[None]]] = None,
    ):
        self.connection_id = connection_id
        self.user_id = user_id
        self._send = send
        self._close = close
        self.last_seq = 0

    async def send(self, message: Dict[str, Any]) -> None:
        await self._send(jsonable_encoder(message))
        seq = message.get("seq")
        if seq:
            self.last_seq = max(self.last_seq, int(seq))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._close is None:
            return
        try:
            await self._close(code, reason)
        except Exception:
            logger.debug("Closing subscriber %s failed", self.connection_id, exc_info=True)


class EventBroadcaster:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._subscribers: Dict[int, List[Subscriber]] = {}

    async def add(self, session_id: int, subscriber: Subscriber) -> None:
        async with self._lock:
            current = self._subscribers.setdefault(session_id, [])
            # A connection id re-subscribing replaces its previous socket.
            current[:] = [item for item in current if item.connection_id != subscriber.connection_id]
            current.append(subscriber)

    async def remove(self, session_id: int, subscriber: Subscriber) -> None:
        async with self._lock:
            current = self._subscribers.get(session_id, [])
            self._subscribers[session_id] = [item for item in current if item is not subscriber]
            if not self._subscribers[session_id]:
                self._subscribers.pop(session_id, None)

    async def list(self, session_id: int) -> List[Subscriber]:
        async with self._lock:
            return list(self._subscribers.get(session_id, []))

    async def count(self, session_id: Optional[int] = None) -> int:
        async with self._lock:
            if session_id is not None:
                return len(self._subscribers.get(session_id, []))
            return sum(len(items) for items in self._subscribers.values())

    async def _deliver(self, session_id: int, message: Dict[str, Any]) -> int:
        delivered = 0
        for subscriber in await self.list(session_id):
            try:
                await subscriber.send(message)
                delivered += 1
            except Exception as exc:
                logger.warning(
                    "Dropping subscriber %s of session %s: %s",
                    subscriber.connection_id,
                    session_id,
                    exc,
                )
                await self.remove(session_id, subscriber)
        return delivered

    async def publish(self, events: Iterable[SessionEvent]) -> int:
        """Send committed events to their session's subscribers, in seq order.

        A ``session_completed`` event is delivered, then every subscriber of
        that session is closed and forgotten.
        """
        delivered = 0
        for event in sorted(events, key=lambda item: (item.session_id, item.seq or 0)):
            delivered += await self._deliver(event.session_id, event_message(event))
            if event.event_type == EventType.SESSION_COMPLETED:
                await self.close_session(event.session_id, reason="Session completed")
        return delivered

    async def send_to(self, session_id: int, message: Dict[str, Any]) -> int:
        return await self._deliver(session_id, message)

    async def request_reconnect(self, session_id: int, reason: str = "maintenance") -> int:
        """Ask every subscriber of a session to drop and re-attach."""
        subscribers = await self.list(session_id)
        for subscriber in subscribers:
            try:
                await subscriber.send({"type": "reconnect", "session_id": session_id, "data": {"reason": reason}})
            except Exception:
                logger.debug("Reconnect notice to %s failed", subscriber.connection_id, exc_info=True)
            await subscriber.close(1012, reason)
            await self.remove(session_id, subscriber)
        if subscribers:
            logger.info("Asked %s subscribers of session %s to reconnect (%s)", len(subscribers), session_id, reason)
        return len(subscribers)

    async def close_session(self, session_id: int, reason: str = "") -> None:
        async with self._lock:
            subscribers = self._subscribers.pop(session_id, [])
        for subscriber in subscribers:
            await subscriber.close(1000, reason)
        if subscribers:
            logger.info("Closed %s subscribers of session %s", len(subscribers), session_id)

    async def shutdown(self) -> None:
        async with self._lock:
            session_ids = list(self._subscribers)
        for session_id in session_ids:
            await self.close_session(session_id, reason="Server shutting down")
