"""Per-resource rate limiting: sliding request window plus concurrency cap.

Respect engine limits. Hammering an API wastes money and gets you blocked.

Each named resource (an engine family such as "fal" or "vision") gets a
ResourceLimiter that enforces:
    - at most max_requests_per_minute starts in any trailing 60s window
    - at most max_concurrent operations in flight
    - FIFO waiting for callers over either limit, with a queue timeout

Waiting callers park on futures and are handed a slot on release, so no
caller spins. The window wait sleeps until the oldest timestamp expires.

Usage:
    limiters = RateLimiterRegistry.from_settings()
    result = await limiters.execute("fal", lambda: engine.invoke(request))

    limiter = ResourceLimiter("vision", max_requests_per_minute=60, max_concurrent=3)
    result = await limiter.execute(call_vision)
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Optional, TypeVar
from threading import Lock
import structlog

from mediajobs.config import settings
from mediajobs.services.errors import LimiterCancelledError, QueueTimeoutError

logger = structlog.get_logger()

T = TypeVar("T")

# Slack added to window waits so the oldest timestamp has definitely expired
WINDOW_BUFFER_SECONDS = 0.1


@dataclass
class RateLimitStats:
    """Statistics for a sliding window."""

    current_usage: int
    max_allowed: int
    window_seconds: float
    time_until_available: float
    total_acquired: int


class SlidingWindowRateLimiter:
    """
    Sliding window rate limiter.

    Tracks request timestamps and allows only N requests per window.

    Attributes:
        max_requests: Maximum requests per window
        window_seconds: Size of sliding window in seconds
    """

    def __init__(
        self,
        max_per_minute: Optional[int] = None,
        max_requests: Optional[int] = None,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rate limiter.

        Args:
            max_per_minute: Maximum requests per minute
            max_requests: Maximum requests per custom window
            window_seconds: Window size in seconds (with max_requests)
            clock: Monotonic time source
        """
        if max_per_minute is not None:
            self.max_requests = max_per_minute
            self.window_seconds = 60.0
        elif max_requests is not None:
            self.max_requests = max_requests
            self.window_seconds = window_seconds
        else:
            raise ValueError("Must specify max_per_minute or max_requests")

        self._clock = clock
        self._timestamps: Deque[float] = deque()
        self._lock = Lock()
        self._total_acquired = 0

    def _cleanup_expired(self, now: float):
        """Remove timestamps outside the window."""
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def _time_until_available_locked(self, now: float) -> float:
        self._cleanup_expired(now)
        if len(self._timestamps) < self.max_requests:
            return 0.0
        oldest = self._timestamps[0]
        return max(0.0, (oldest + self.window_seconds) - now)

    def current_usage(self) -> int:
        """Get current number of requests in window."""
        with self._lock:
            self._cleanup_expired(self._clock())
            return len(self._timestamps)

    def time_until_available(self) -> float:
        """Get seconds until a request slot is available."""
        with self._lock:
            return self._time_until_available_locked(self._clock())

    def try_acquire(self) -> bool:
        """
        Try to record a request without waiting.

        Returns:
            True if acquired, False if at limit
        """
        with self._lock:
            now = self._clock()
            self._cleanup_expired(now)
            if len(self._timestamps) >= self.max_requests:
                return False
            self._timestamps.append(now)
            self._total_acquired += 1
            return True

    def get_stats(self) -> RateLimitStats:
        """Get current rate limiter statistics."""
        with self._lock:
            now = self._clock()
            wait = self._time_until_available_locked(now)
            return RateLimitStats(
                current_usage=len(self._timestamps),
                max_allowed=self.max_requests,
                window_seconds=self.window_seconds,
                time_until_available=wait,
                total_acquired=self._total_acquired,
            )


def _was_handed_slot(waiter: asyncio.Future) -> bool:
    return waiter.done() and not waiter.cancelled() and waiter.exception() is None


class ResourceLimiter:
    """
    Concurrency cap plus sliding window for one named resource.

    Attributes:
        name: Resource name, used in logs
        max_concurrent: Operations allowed in flight at once
        queue_timeout: Seconds a caller may wait before QueueTimeoutError
    """

    def __init__(
        self,
        name: str,
        max_requests_per_minute: int,
        max_concurrent: int,
        queue_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.name = name
        self.max_concurrent = max_concurrent
        self.queue_timeout = queue_timeout
        self.window = SlidingWindowRateLimiter(max_per_minute=max_requests_per_minute, clock=clock)
        self._clock = clock
        self._sleep = sleep
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def queue_length(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run operation once both limits admit it.

        Raises:
            QueueTimeoutError: waited longer than queue_timeout
            LimiterCancelledError: cancel_all() was called while waiting
        """
        await self.acquire()
        try:
            return await operation()
        finally:
            self.release()

    async def acquire(self):
        """Take a concurrency slot and a window slot, waiting FIFO for both."""
        started = self._clock()
        await self._acquire_slot()
        try:
            await self._acquire_window(started)
        except BaseException:
            self.release()
            raise

    async def _acquire_slot(self):
        if not self.queue_length and self._active < self.max_concurrent:
            self._active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug(
            "Waiting for concurrency slot",
            resource=self.name,
            active=self._active,
            queue_length=self.queue_length,
        )
        try:
            await asyncio.wait_for(waiter, timeout=self.queue_timeout)
        except asyncio.CancelledError:
            if _was_handed_slot(waiter):
                self.release()
            raise
        except asyncio.TimeoutError:
            # A slot may have been handed over as the timeout fired
            if _was_handed_slot(waiter):
                self.release()
            logger.warning("Rate limiter queue timeout", resource=self.name, timeout=self.queue_timeout)
            raise QueueTimeoutError(
                f"Request timed out in rate limiter queue for '{self.name}' after {self.queue_timeout:g}s"
            )
        # Slot ownership was transferred by release(); _active is unchanged

    async def _acquire_window(self, started: float):
        while not self.window.try_acquire():
            wait = self.window.time_until_available() + WINDOW_BUFFER_SECONDS
            remaining = self.queue_timeout - (self._clock() - started)
            if wait > remaining:
                logger.warning("Rate limiter window wait exceeds timeout", resource=self.name, wait=round(wait, 2))
                raise QueueTimeoutError(
                    f"Request timed out in rate limiter queue for '{self.name}' after {self.queue_timeout:g}s"
                )
            logger.debug("Rate limit reached, waiting", resource=self.name, wait_seconds=round(wait, 2))
            await self._sleep(wait)

    def release(self):
        """Free a slot, handing it to the oldest live waiter if any."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._active = max(0, self._active - 1)

    def cancel_all(self) -> int:
        """Reject every queued caller with LimiterCancelledError."""
        cancelled = 0
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(LimiterCancelledError(f"Rate limiter '{self.name}' cancelled"))
                cancelled += 1
        if cancelled:
            logger.info("Rate limiter cancelled waiters", resource=self.name, cancelled=cancelled)
        return cancelled

    def get_status(self) -> dict:
        """Current concurrency, window usage and queue length."""
        return {
            "name": self.name,
            "active": self._active,
            "max_concurrent": self.max_concurrent,
            "requests_last_minute": self.window.current_usage(),
            "max_requests_per_minute": self.window.max_requests,
            "queue_length": self.queue_length,
        }


class RateLimiterRegistry:
    """Named ResourceLimiters, created on first use."""

    def __init__(
        self,
        limits: Optional[Dict[str, tuple]] = None,
        default_limits: tuple = (60, 5),
        queue_timeout: float = 300.0,
    ):
        """
        Args:
            limits: resource name -> (max_requests_per_minute, max_concurrent)
            default_limits: limits for names not in `limits`
            queue_timeout: queue ceiling for every limiter
        """
        self._limits = dict(limits or {})
        self._default_limits = default_limits
        self._queue_timeout = queue_timeout
        self._limiters: Dict[str, ResourceLimiter] = {}

    @classmethod
    def from_settings(cls) -> "RateLimiterRegistry":
        limits = {
            "fal": (settings.fal_max_requests_per_minute, settings.fal_max_concurrent),
            "vision": (settings.vision_max_requests_per_minute, settings.vision_max_concurrent),
            "local": (settings.local_max_requests_per_minute, settings.local_max_concurrent),
        }
        poll_limits = (settings.poll_max_requests_per_minute, settings.poll_max_concurrent)
        for name in list(limits):
            limits[f"{name}:poll"] = poll_limits
        return cls(limits=limits, queue_timeout=settings.limiter_queue_timeout_seconds)

    def get_or_create(self, name: str) -> ResourceLimiter:
        limiter = self._limiters.get(name)
        if limiter is None:
            rpm, concurrent = self._limits.get(name, self._default_limits)
            limiter = ResourceLimiter(
                name,
                max_requests_per_minute=rpm,
                max_concurrent=concurrent,
                queue_timeout=self._queue_timeout,
            )
            self._limiters[name] = limiter
            logger.debug("Rate limiter created", resource=name, rpm=rpm, max_concurrent=concurrent)
        return limiter

    def register(self, limiter: ResourceLimiter):
        self._limiters[limiter.name] = limiter

    async def execute(self, resource_name: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation under the named resource's limits."""
        return await self.get_or_create(resource_name).execute(operation)

    def cancel_all(self) -> int:
        return sum(limiter.cancel_all() for limiter in self._limiters.values())

    def get_status(self) -> Dict[str, dict]:
        return {name: limiter.get_status() for name, limiter in self._limiters.items()}
