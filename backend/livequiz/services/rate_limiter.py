"""Fixed-window rate limiting of write actions, per user and action."""

import asyncio
import time
from typing import Callable, Dict, Optional, Tuple

from livequiz.config import settings
from livequiz.exceptions import RateLimitExceeded


class RateLimiter:
    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests or settings.RATE_LIMIT_REQUESTS
        self.window_seconds = window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS
        self._clock = clock
        self._lock = asyncio.Lock()
        # (user_id, action) -> (window start, count)
        self._windows: Dict[Tuple[int, str], Tuple[float, int]] = {}

    async def hit(self, user_id: int, action: str) -> int:
        """Count one request; returns how many remain in the window."""
        now = self._clock()
        key = (user_id, action)
        async with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            if count >= self.max_requests:
                retry_after = max(1, int(self.window_seconds - (now - started) + 0.999))
                raise RateLimitExceeded(retry_after)
            self._windows[key] = (started, count + 1)
            if len(self._windows) > 10000:
                self._evict(now)
            return self.max_requests - count - 1

    def _evict(self, now: float) -> None:
        expired = [key for key, (started, _) in self._windows.items() if now - started >= self.window_seconds]
        for key in expired:
            del self._windows[key]

    async def reset(self) -> None:
        async with self._lock:
            self._windows.clear()
