import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, TypeVar

import logging
LOGGER = logging.getLogger(__name__)

from errors import RateLimitError, TransientUpstreamError, RetriesExhaustedError

T = TypeVar("T")


class RateLimiter:
    """
    Client-side throttle for every Spotify call.

    At most `max_per_minute` requests are issued in any rolling `window` seconds,
    and consecutive requests are at least `min_interval` apart. Throttled or
    transient failures are retried with exponential backoff (or the server's
    Retry-After hint) by `run_with_retry`.
    """

    def __init__(self,
                 max_per_minute: int = 60,
                 min_interval: float = 0.1,
                 backoff_base: float = 2.0,
                 max_backoff: float = 60.0,
                 window: float = 60.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable] = asyncio.sleep):
        if max_per_minute < 1:
            raise ValueError("max_per_minute must be at least 1.")

        self.max_per_minute = max_per_minute
        self.min_interval = min_interval
        self.backoff_base = backoff_base
        self.max_backoff = max_backoff
        self.window = window

        self._clock = clock
        self._sleep = sleep
        self._issued: deque[float] = deque()
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                while self._issued and now - self._issued[0] >= self.window:
                    self._issued.popleft()

                if len(self._issued) < self.max_per_minute:
                    break

                wait = self.window - (now - self._issued[0])
                LOGGER.debug(f"Request budget used up, waiting {wait:.1f}s.")
                await self._sleep(wait)

            if self._last is not None:
                gap = self.min_interval - (self._clock() - self._last)
                if gap > 0:
                    await self._sleep(gap)

            self._last = self._clock()
            self._issued.append(self._last)

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        if retry_after is not None:
            return retry_after
        return min(self.backoff_base ** attempt, self.max_backoff)

    async def run_with_retry(self, op: Callable[[], Awaitable[T]], max_retries: int, what: str = "") -> T:
        """
        Run `op` (a zero-argument coroutine factory) at most `max_retries + 1` times.
        Only throttling and transient upstream errors are retried, anything else propagates.
        """
        what = what or "request"
        last_error = None

        for attempt in range(1, max_retries + 2):
            await self.acquire()

            try:
                return await op()
            except RateLimitError as e:
                last_error = e
                LOGGER.info(f"Throttled on {what} (attempt {attempt}/{max_retries + 1}).")
            except TransientUpstreamError as e:
                last_error = e
                LOGGER.error(f"Transient failure on {what} (attempt {attempt}/{max_retries + 1}): {e}")

            if attempt > max_retries:
                break

            delay = self.backoff_delay(attempt, getattr(last_error, "retry_after", None))
            LOGGER.debug(f"Backing off {delay:.1f}s before retrying {what}.")
            await self._sleep(delay)

        LOGGER.warning(f"Giving up on {what} after {max_retries + 1} attempts.")
        raise RetriesExhaustedError(max_retries + 1, last_error)
