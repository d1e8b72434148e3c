"""Client transport manager: attach, stay attached, deliver each event once."""

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from livequiz.client.api import LiveQuizApi
from livequiz.client.channels import Channel, ChannelFactory, policy_for
from livequiz.client.events import EventEmitter
from livequiz.client.options import ClientOptions
from livequiz.exceptions import ConnectivityError, LiveQuizError, SessionNotFound, TransientNetworkFailure

logger = logging.getLogger(__name__)

SESSION_COMPLETED = "session_completed"


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class TransportManager:
    """Owns the one live channel of a client.

    * Every (re)attach is followed by a snapshot request, whatever was missed.
    * Sequenced events are delivered once: anything at or below the last seen
      sequence number is dropped.
    * A failed channel is replaced with exponential backoff; heartbeat failures
      are reported but never force a reconnect.
    * A server ``reconnect`` message triggers an immediate re-attach with the
      backoff reset; ``session_completed`` closes the transport for good.

    Emitted events: ``statuschange``, ``connected``, ``reconnected``,
    ``disconnected``, ``snapshot``, ``event`` (every sequenced event) and the
    event's own type, ``heartbeat``, ``heartbeat_failed``, ``connection_error``.
    """

    def __init__(
        self,
        api: LiveQuizApi,
        session_id: int,
        options: Optional[ClientOptions] = None,
        *,
        policy=None,
        channel_factory=None,
        events: Optional[EventEmitter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api = api
        self.session_id = session_id
        self.options = options or ClientOptions()
        self.policy = policy or policy_for(self.options.transport_policy)
        self.channel_factory = channel_factory or ChannelFactory(
            api, session_id, self.options, lambda: self.last_sequence_id
        )
        self.events = events or EventEmitter()
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.channel: Optional[Channel] = None
        self.last_sequence_id: Optional[int] = None
        self.last_latency_ms: Optional[float] = None
        self._reconnect_delay = self.options.reconnect_delay
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._closing = False
        self._attach_lock = asyncio.Lock()

    @property
    def connection_id(self) -> Optional[str]:
        return self.channel.connection_id if self.channel else None

    @property
    def transport(self) -> Optional[str]:
        return self.channel.transport if self.channel else None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    async def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.state = state
        await self.events.emit("statuschange", {"status": state.value, "transport": self.transport})

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Transport task failed", exc_info=task.exception())

    async def connect(self) -> None:
        """Attach for the first time. Raises ConnectivityError if the policy gives up."""
        self._closing = False
        await self._set_state(ConnectionState.CONNECTING)
        try:
            await self._attach()
        except (ConnectivityError, SessionNotFound) as exc:
            await self._set_state(ConnectionState.DISCONNECTED)
            await self.events.emit("connection_error", {"message": exc.message, "reason": exc.code})
            raise
        await self.events.emit("connected", {"transport": self.transport, "connection_id": self.connection_id})

    async def _attach(self) -> None:
        async with self._attach_lock:
            # The old stream must be gone before a new one can deliver anything.
            await self._teardown()
            channel = await self.policy.acquire_channel(self.channel_factory, self.options)
            if self._closing:
                await channel.close()
                return
            self.channel = channel
            self._reconnect_delay = self.options.reconnect_delay
            self._reader_task = self._spawn(self._read(channel))
            self._heartbeat_task = self._spawn(self._heartbeat_loop(channel))
            await self._set_state(ConnectionState.CONNECTED)
            logger.info("Attached to session %s via %s (%s)", self.session_id, channel.transport, channel.connection_id)
        await self.request_snapshot()

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        for task in (self._reader_task, self._heartbeat_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader_task = None
        self._heartbeat_task = None
        if self.channel is not None:
            await self.channel.close()
            self.channel = None

    async def _read(self, channel: Channel) -> None:
        failure = None
        try:
            async for message in channel.messages():
                if channel is not self.channel:
                    return
                await self.dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failure = exc
        if channel is self.channel and not self._closing and not channel.closed:
            logger.warning("Channel %s lost: %s", channel.connection_id, failure or "stream ended")
            await self.events.emit("disconnected", {"reason": "connection_error"})
            self.schedule_reconnect()

    async def dispatch(self, message: Dict[str, Any]) -> bool:
        """Apply one server message. Returns False when it was a duplicate or ignored."""
        message_type = str(message.get("type") or "")
        seq = message.get("seq")

        if message_type == "snapshot":
            if seq is not None:
                self.last_sequence_id = max(self.last_sequence_id or 0, int(seq))
            await self.events.emit("snapshot", message.get("data") or {})
            if (message.get("data") or {}).get("status") == "completed" and not self._closing:
                # Poll clients never see the completion event itself.
                self._closing = True
                self._spawn(self.disconnect(notify_server=False))
            return True

        if message_type == "reconnect":
            logger.info("Server asked for a reconnect: %s", (message.get("data") or {}).get("reason"))
            self.schedule_reconnect(immediate=True)
            return True

        if message_type in ("connected", "pong", "heartbeat_ack"):
            return False
        if message_type == "error":
            logger.warning("Server reported: %s", message.get("detail"))
            return False

        if seq is None:
            await self.events.emit(message_type, message.get("data") or {})
            return True
        if self.last_sequence_id is not None and int(seq) <= self.last_sequence_id:
            return False
        self.last_sequence_id = int(seq)
        await self.events.emit("event", message)
        await self.events.emit(message_type, message.get("data") or {})

        if message_type == SESSION_COMPLETED:
            self._closing = True
            self._spawn(self.disconnect(notify_server=False))
        return True

    async def request_snapshot(self) -> Optional[Dict[str, Any]]:
        try:
            body = await self.send("snapshot")
        except TransientNetworkFailure as exc:
            logger.warning("Snapshot request failed: %s", exc)
            return None
        if not body.get("success"):
            logger.warning("Snapshot request rejected: %s", body.get("error"))
            return None
        snapshot = body.get("data") or {}
        await self.dispatch({"type": "snapshot", "seq": snapshot.get("sequence_id"), "data": snapshot})
        return snapshot

    async def send(self, action: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Write primitive. Raises TransientNetworkFailure when the request never completed."""
        try:
            return await asyncio.wait_for(
                self.api.send(self.session_id, action, payload, connection_id=self.connection_id),
                timeout=self.options.request_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransientNetworkFailure(
                f"{action} timed out after {self.options.request_timeout}s"
            ) from exc

    async def heartbeat(self) -> Optional[float]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        body = await self.send("heartbeat")
        self.last_latency_ms = round((loop.time() - started) * 1000, 2)
        await self.events.emit(
            "heartbeat",
            {"latency_ms": self.last_latency_ms, "status": (body.get("data") or {}).get("status")},
        )
        return self.last_latency_ms

    async def _heartbeat_loop(self, channel: Channel) -> None:
        while channel is self.channel and not channel.closed:
            await self._sleep(self.options.heartbeat_interval)
            if channel is not self.channel or channel.closed:
                return
            try:
                await self.heartbeat()
            except (LiveQuizError, asyncio.TimeoutError) as exc:
                logger.info("Heartbeat failed: %s", exc)
                await self.events.emit("heartbeat_failed", {"error": str(exc)})

    def schedule_reconnect(self, immediate: bool = False) -> Optional[asyncio.Task]:
        if self._closing:
            return None
        if immediate:
            self._reconnect_delay = self.options.reconnect_delay
            if self._reconnect_task is not None and not self._reconnect_task.done():
                self._reconnect_task.cancel()
        elif self._reconnect_task is not None and not self._reconnect_task.done():
            return self._reconnect_task
        self._reconnect_task = self._spawn(self._reconnect_loop(immediate))
        return self._reconnect_task

    def next_delay(self) -> float:
        delay = self._reconnect_delay
        self._reconnect_delay = min(self._reconnect_delay * 2, self.options.max_reconnect_delay)
        return delay

    async def _reconnect_loop(self, immediate: bool) -> None:
        await self._set_state(ConnectionState.RECONNECTING)
        first = True
        while not self._closing:
            if not (first and immediate):
                await self._sleep(self.next_delay())
            first = False
            if self._closing:
                return
            try:
                await self._attach()
            except (ConnectivityError, SessionNotFound) as exc:
                logger.warning("Reconnect failed: %s", exc)
                await self.events.emit("connection_error", {"message": exc.message, "reason": exc.code})
                if isinstance(exc, SessionNotFound):
                    await self._set_state(ConnectionState.DISCONNECTED)
                    return
                continue
            await self.events.emit("reconnected", {"transport": self.transport, "connection_id": self.connection_id})
            return

    async def reconnect(self) -> None:
        """Force a fresh attach now, with the backoff reset."""
        task = self.schedule_reconnect(immediate=True)
        if task is not None:
            await task

    async def disconnect(self, notify_server: bool = True) -> None:
        if self._closing and self.state == ConnectionState.DISCONNECTED:
            return
        self._closing = True
        if self._reconnect_task is not None and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        connection_id = self.connection_id
        await self._teardown()
        if notify_server and connection_id:
            try:
                await asyncio.wait_for(
                    self.api.send(self.session_id, "disconnect", connection_id=connection_id),
                    timeout=self.options.request_timeout,
                )
            except (LiveQuizError, asyncio.TimeoutError) as exc:
                logger.info("Disconnect notice failed: %s", exc)
        await self._set_state(ConnectionState.DISCONNECTED)
        await self.events.emit("disconnected", {"reason": "closed"})

    async def aclose(self) -> None:
        await self.disconnect()
        for task in list(self._background):
            if task is not asyncio.current_task():
                task.cancel()
