"""Publish/subscribe for client components."""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Union

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class EventEmitter:
    """Named events with sync or async handlers.

    A handler that raises is logged and skipped; the remaining handlers still
    receive the event.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, event: str, handler: Handler) -> Handler:
        self._handlers.setdefault(event, []).append(handler)
        return handler

    def off(self, event: str, handler: Handler = None) -> None:
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers(self, event: str) -> List[Handler]:
        return list(self._handlers.get(event, []))

    async def emit(self, event: str, data: Dict[str, Any] = None) -> int:
        """Deliver ``data`` to every handler of ``event``; returns how many succeeded."""
        delivered = 0
        for handler in self.handlers(event):
            try:
                result = handler(data or {})
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Handler for %r failed", event)
        return delivered
