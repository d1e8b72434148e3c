"""Transport channels and the policies that pick one.

A channel is opened once, yields server messages until it fails or is closed,
and is never reused; reconnecting always means a new channel.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from livequiz.client.api import LiveQuizApi
from livequiz.client.options import ClientOptions
from livequiz.exceptions import ConnectivityError, LiveQuizError, SessionNotFound

logger = logging.getLogger(__name__)

PUSH = "push"
POLL = "poll"


class Channel:
    transport = ""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.closed = False

    async def open(self) -> None:
        raise NotImplementedError

    def messages(self) -> AsyncIterator[Dict[str, Any]]:
        raise NotImplementedError

    async def close(self) -> None:
        self.closed = True


class PushChannel(Channel):
    """WebSocket stream. The server replays missed events or sends a snapshot."""

    transport = PUSH

    def __init__(
        self,
        api: LiveQuizApi,
        session_id: int,
        connection_id: str,
        last_sequence_id: Optional[int],
        options: ClientOptions,
        connect: Callable[..., Awaitable[Any]] = websockets.connect,
    ):
        super().__init__(connection_id)
        self.url = api.push_url(session_id, connection_id, last_sequence_id)
        self.options = options
        self._connect = connect
        self._ws = None
        self._first: Optional[Dict[str, Any]] = None

    async def open(self) -> None:
        try:
            self._ws = await asyncio.wait_for(self._connect(self.url), timeout=self.options.connect_timeout)
            # The handshake only counts once the server confirms the attachment.
            raw = await asyncio.wait_for(self._ws.recv(), timeout=self.options.connect_timeout)
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI, ConnectionClosed) as exc:
            await self.close()
            raise ConnectivityError(f"Push channel failed to open: {exc}") from exc
        try:
            message = json.loads(raw)
        except ValueError as exc:
            await self.close()
            raise ConnectivityError("Malformed first push message") from exc
        if not isinstance(message, dict) or message.get("type") != "connected":
            await self.close()
            kind = message.get("type") if isinstance(message, dict) else type(message).__name__
            raise ConnectivityError(f"Unexpected first push message: {kind}")
        self._first = message

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        if self._first is not None:
            first, self._first = self._first, None
            yield first
        try:
            async for raw in self._ws:
                try:
                    yield json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring malformed push message on %s", self.connection_id)
        except ConnectionClosed as exc:
            logger.info("Push channel %s closed: %s", self.connection_id, exc)

    async def send(self, message: Dict[str, Any]) -> None:
        await self._ws.send(json.dumps(message))

    async def close(self) -> None:
        await super().close()
        if self._ws is not None:
            try:
                await self._ws.close()
            except (OSError, ConnectionClosed) as exc:
                logger.debug("Closing push channel %s: %s", self.connection_id, exc)


class PollChannel(Channel):
    """Repeated snapshot requests. Missed events are superseded, never replayed."""

    transport = POLL

    def __init__(
        self,
        api: LiveQuizApi,
        session_id: int,
        connection_id: str,
        last_sequence_id: Callable[[], int],
        options: ClientOptions,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(connection_id)
        self.api = api
        self.session_id = session_id
        self.options = options
        self._last_sequence_id = last_sequence_id
        self._sleep = sleep
        self._pending: Optional[Dict[str, Any]] = None

    async def _poll_once(self) -> Dict[str, Any]:
        body = await asyncio.wait_for(
            self.api.poll(self.session_id, self.connection_id, self._last_sequence_id() or 0),
            timeout=self.options.request_timeout,
        )
        snapshot = body["snapshot"]
        return {
            "type": "snapshot",
            "seq": snapshot.get("sequence_id"),
            "session_id": self.session_id,
            "data": snapshot,
        }

    async def open(self) -> None:
        try:
            self._pending = await self._poll_once()
        except SessionNotFound:
            raise
        except (LiveQuizError, asyncio.TimeoutError) as exc:
            raise ConnectivityError(f"Poll channel failed to open: {exc}") from exc

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        while not self.closed:
            if self._pending is not None:
                message, self._pending = self._pending, None
                yield message
                continue
            await self._sleep(self.options.poll_interval)
            if self.closed:
                return
            yield await self._poll_once()


class ChannelFactory:
    """Builds unopened channels; replaced by fakes in tests."""

    def __init__(
        self,
        api: LiveQuizApi,
        session_id: int,
        options: ClientOptions,
        last_sequence_id: Callable[[], Optional[int]],
    ):
        self.api = api
        self.session_id = session_id
        self.options = options
        self.last_sequence_id = last_sequence_id

    def new_connection_id(self) -> str:
        return uuid.uuid4().hex

    def push(self, connection_id: str) -> Channel:
        return PushChannel(self.api, self.session_id, connection_id, self.last_sequence_id(), self.options)

    def poll(self, connection_id: str) -> Channel:
        return PollChannel(
            self.api, self.session_id, connection_id, lambda: self.last_sequence_id() or 0, self.options
        )


async def _open_push(factory, options: ClientOptions, sleep) -> Optional[Channel]:
    attempts = max(1, options.push_retry_attempts)
    for attempt in range(1, attempts + 1):
        channel = factory.push(factory.new_connection_id())
        try:
            await channel.open()
            return channel
        except ConnectivityError as exc:
            logger.warning("Push attempt %s/%s failed: %s", attempt, attempts, exc)
            if attempt < attempts:
                await sleep(options.push_retry_delay)
    return None


class FallbackPolicy:
    """Prefer push; after the push attempts are exhausted, fall back to polling."""

    name = "fallback"

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self._sleep = sleep

    async def acquire_channel(self, factory, options: ClientOptions) -> Channel:
        channel = await _open_push(factory, options, self._sleep)
        if channel is not None:
            return channel
        logger.info("Falling back to the poll transport")
        channel = factory.poll(factory.new_connection_id())
        await channel.open()
        return channel


class PushOnlyPolicy:
    """Push or nothing: exhausting the push attempts is a hard connectivity error."""

    name = "push_only"

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self._sleep = sleep

    async def acquire_channel(self, factory, options: ClientOptions) -> Channel:
        channel = await _open_push(factory, options, self._sleep)
        if channel is None:
            raise ConnectivityError(
                f"Push transport required and unavailable after {options.push_retry_attempts} attempts"
            )
        return channel


def policy_for(name: str):
    if name == PushOnlyPolicy.name:
        return PushOnlyPolicy()
    if name == FallbackPolicy.name:
        return FallbackPolicy()
    raise ValueError(f"Unknown transport policy: {name}")
