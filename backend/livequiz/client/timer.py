"""Local question countdown, reconciled against the server's remaining time."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from livequiz.client.events import EventEmitter
from livequiz.client.options import ClientOptions

logger = logging.getLogger(__name__)


class TimerCorrector:
    """Runs its own countdown so the server is not asked every second.

    The countdown is seeded from a server value and the local clock at that
    moment. ``sync`` reseeds only when the local projection has drifted more
    than ``drift_threshold`` seconds from the server value.

    Emits ``tick`` ({remaining, paused}) and ``expired``.
    """

    def __init__(
        self,
        options: Optional[ClientOptions] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        events: Optional[EventEmitter] = None,
    ):
        self.options = options or ClientOptions()
        self._clock = clock
        self._sleep = sleep
        self.events = events or EventEmitter()

        self.seed_remaining = 0.0
        self.seeded_at = 0.0
        self.running = False
        self.paused = False
        self.last_sync: Optional[float] = None
        self.corrections = 0
        self._task: Optional[asyncio.Task] = None

    def remaining(self) -> float:
        if not self.running:
            return 0.0
        if self.paused:
            return self.seed_remaining
        return max(0.0, self.seed_remaining - (self._clock() - self.seeded_at))

    def _seed(self, seconds: float) -> None:
        self.seed_remaining = max(0.0, float(seconds))
        self.seeded_at = self._clock()

    def start(self, seconds: float, *, run_ticks: bool = True) -> None:
        self._seed(seconds)
        self.running = True
        self.paused = False
        self.last_sync = self._clock()
        if run_ticks:
            self._ensure_ticking()

    def stop(self) -> None:
        self.running = False
        self.paused = False
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None

    def pause(self, frozen: Optional[float] = None) -> None:
        """Freeze the countdown at the server value if given, else at the local projection."""
        remaining = self.remaining() if frozen is None else frozen
        self._seed(remaining)
        self.running = True
        self.paused = True

    def resume(self, seconds: Optional[float] = None) -> None:
        self._seed(self.seed_remaining if seconds is None else seconds)
        self.running = True
        self.paused = False
        self._ensure_ticking()

    def sync(self, server_remaining: float) -> bool:
        """Reconcile with the server. Returns True when the countdown was reseeded."""
        self.last_sync = self._clock()
        if not self.running:
            if server_remaining > 0:
                self.start(server_remaining)
                return True
            return False
        if self.paused:
            return False
        drift = abs(float(server_remaining) - self.remaining())
        if drift <= self.options.drift_threshold:
            return False
        logger.info("Timer drift of %.1fs corrected", drift)
        self._seed(server_remaining)
        self.corrections += 1
        return True

    def needs_sync(self) -> bool:
        if self.last_sync is None:
            return True
        return self._clock() - self.last_sync >= self.options.timer_sync_interval

    def apply_snapshot(self, snapshot: Dict[str, Any], *, new_question: bool = False) -> None:
        """Bring the countdown in line with an authoritative session snapshot.

        A new question always restarts the countdown; otherwise the server
        value only wins when the drift exceeds the threshold.
        """
        status = snapshot.get("status")
        remaining = snapshot.get("remaining_seconds")
        self.last_sync = self._clock()
        if status == "active" and remaining is not None:
            if self.paused:
                self.resume(remaining)
            elif new_question:
                self.start(remaining)
            else:
                self.sync(remaining)
        elif status == "paused":
            self.pause(remaining)
        else:
            self.stop()

    def _ensure_ticking(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._tick())

    async def _tick(self) -> None:
        while self.running:
            remaining = self.remaining()
            await self.events.emit("tick", {"remaining": remaining, "paused": self.paused})
            if remaining <= 0 and not self.paused:
                self.running = False
                await self.events.emit("expired", {})
                return
            await self._sleep(self.options.timer_tick)
