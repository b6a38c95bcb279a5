"""Outbound request throttling for the Jira connector."""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional

log = logging.getLogger(__name__)


class RateLimiter:
    """
    Request gate enforcing a requests-per-second ceiling.

    Before every request the limiter waits out the remainder of the minimum
    inter-request interval and keeps at most ``requests_per_second`` requests
    inside any rolling one-second window. Every ``pause_every`` requests an
    extra ``pause_seconds`` is added to stay well under the provider's
    per-minute budget.

    All state lives on the instance; share one instance between coroutines
    that must respect the same budget.
    """

    WINDOW_SECONDS = 1.0

    def __init__(
        self,
        requests_per_second: float = 10.0,
        pause_every: int = 10,
        pause_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second
        self.pause_every = pause_every
        self.pause_seconds = pause_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._window: Deque[float] = deque()
        self._window_size = max(1, int(requests_per_second))
        self._last_request_at: Optional[float] = None
        self.request_count = 0
        self.total_delay = 0.0

    async def _wait(self, seconds: float):
        if seconds > 0:
            self.total_delay += seconds
            await self._sleep(seconds)

    def _evict(self, now: float) -> float:
        while self._window and self._window[0] + self.WINDOW_SECONDS <= now:
            self._window.popleft()
        return now

    async def acquire(self):
        """Blocks until the next request may be sent, then records it."""
        async with self._lock:
            if self.pause_every and self.request_count and self.request_count % self.pause_every == 0:
                log.debug(f"Rate limiter: conservative pause of {self.pause_seconds}s after {self.request_count} requests")
                await self._wait(self.pause_seconds)

            if self._last_request_at is not None:
                elapsed = self._clock() - self._last_request_at
                await self._wait(self.min_interval - elapsed)

            now = self._evict(self._clock())
            if len(self._window) >= self._window_size:
                await self._wait(self._window[0] + self.WINDOW_SECONDS - now)
                now = self._evict(self._clock())

            self._window.append(now)
            self._last_request_at = now
            self.request_count += 1
            log.trace(f"Rate limiter: request #{self.request_count} released at {now:.3f}")

    def stats(self) -> Dict[str, float]:
        return {
            "request_count": self.request_count,
            "requests_per_second": self.requests_per_second,
            "total_delay_seconds": round(self.total_delay, 3),
        }

    def reset(self):
        self._window.clear()
        self._last_request_at = None
        self.request_count = 0
        self.total_delay = 0.0
