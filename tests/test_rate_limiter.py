"""Tests for the sliding window and resource rate limiters."""

import asyncio

import pytest

from mediajobs.services.errors import LimiterCancelledError, QueueTimeoutError
from mediajobs.services.rate_limiter import (
    RateLimiterRegistry,
    ResourceLimiter,
    SlidingWindowRateLimiter,
)


class ManualClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestSlidingWindowRateLimiter:
    """Tests for SlidingWindowRateLimiter."""

    def test_try_acquire_within_limit(self):
        """Test acquiring within rate limit."""
        limiter = SlidingWindowRateLimiter(max_per_minute=10)
        assert limiter.try_acquire()

    def test_try_acquire_exceeds_limit(self):
        """Test acquiring when rate limit exceeded."""
        limiter = SlidingWindowRateLimiter(max_per_minute=2)
        assert limiter.try_acquire()
        assert limiter.try_acquire()
        assert not limiter.try_acquire()

    def test_window_slides(self):
        """Slots free up once the oldest request leaves the window."""
        clock = ManualClock()
        limiter = SlidingWindowRateLimiter(max_per_minute=2, clock=clock)
        limiter.try_acquire()
        clock.now += 30
        limiter.try_acquire()

        assert not limiter.try_acquire()
        assert limiter.time_until_available() == pytest.approx(30.0)

        clock.now += 30.5
        assert limiter.try_acquire()

    def test_current_usage(self):
        """Test current usage tracking."""
        limiter = SlidingWindowRateLimiter(max_per_minute=10)
        assert limiter.current_usage() == 0
        limiter.try_acquire()
        limiter.try_acquire()
        assert limiter.current_usage() == 2

    def test_get_stats(self):
        """get_stats reports usage and wait without deadlocking."""
        clock = ManualClock()
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=10, clock=clock)
        limiter.try_acquire()

        stats = limiter.get_stats()

        assert stats.current_usage == 1
        assert stats.max_allowed == 1
        assert stats.total_acquired == 1
        assert stats.time_until_available == pytest.approx(10.0)

    def test_requires_a_limit(self):
        """A limiter without a limit is a configuration error."""
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter()


class TestResourceLimiter:
    """Tests for ResourceLimiter."""

    @pytest.mark.asyncio
    async def test_max_concurrent_one_never_overlaps(self):
        """With max_concurrent=1 operations run strictly one at a time."""
        limiter = ResourceLimiter("local", max_requests_per_minute=1000, max_concurrent=1)
        running = 0
        peak = 0
        order = []

        async def operation(i):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            order.append(i)
            running -= 1
            return i

        results = await asyncio.gather(*(limiter.execute(lambda i=i: operation(i)) for i in range(5)))

        assert peak == 1
        assert results == [0, 1, 2, 3, 4]
        assert order == [0, 1, 2, 3, 4]
        assert limiter.active == 0

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        """No more than max_concurrent operations are in flight."""
        limiter = ResourceLimiter("fal", max_requests_per_minute=1000, max_concurrent=3)
        running = 0
        peak = 0

        async def operation():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        await asyncio.gather(*(limiter.execute(operation) for _ in range(10)))

        assert peak == 3

    @pytest.mark.asyncio
    async def test_window_wait_uses_buffer(self):
        """A full window waits until a slot frees plus a small buffer."""
        clock = ManualClock()
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            clock.now += seconds

        limiter = ResourceLimiter(
            "vision", max_requests_per_minute=1, max_concurrent=5, clock=clock, sleep=fake_sleep
        )

        async def noop():
            return None

        await limiter.execute(noop)
        await limiter.execute(noop)

        assert sleeps == [pytest.approx(60.1)]

    @pytest.mark.asyncio
    async def test_queue_timeout(self):
        """Waiting longer than queue_timeout raises QueueTimeoutError."""
        limiter = ResourceLimiter("fal", max_requests_per_minute=100, max_concurrent=1, queue_timeout=0.05)
        release = asyncio.Event()

        async def hold():
            await release.wait()

        holder = asyncio.create_task(limiter.execute(hold))
        await asyncio.sleep(0)

        with pytest.raises(QueueTimeoutError):
            await limiter.execute(hold)

        release.set()
        await holder
        assert limiter.active == 0

    @pytest.mark.asyncio
    async def test_window_wait_beyond_timeout(self):
        """A window wait longer than the queue timeout fails fast."""
        limiter = ResourceLimiter("fal", max_requests_per_minute=1, max_concurrent=5, queue_timeout=5)

        async def noop():
            return None

        await limiter.execute(noop)
        with pytest.raises(QueueTimeoutError):
            await limiter.execute(noop)
        assert limiter.active == 0

    @pytest.mark.asyncio
    async def test_cancel_all_rejects_waiters(self):
        """cancel_all fails queued callers with LimiterCancelledError."""
        limiter = ResourceLimiter("fal", max_requests_per_minute=100, max_concurrent=1)
        release = asyncio.Event()

        async def hold():
            await release.wait()
            return "held"

        holder = asyncio.create_task(limiter.execute(hold))
        await asyncio.sleep(0)
        waiters = [asyncio.create_task(limiter.execute(hold)) for _ in range(2)]
        await asyncio.sleep(0)
        assert limiter.queue_length == 2

        assert limiter.cancel_all() == 2
        for waiter in waiters:
            with pytest.raises(LimiterCancelledError):
                await waiter

        release.set()
        assert await holder == "held"

    @pytest.mark.asyncio
    async def test_slot_released_on_error(self):
        """A failing operation frees its slot."""
        limiter = ResourceLimiter("fal", max_requests_per_minute=100, max_concurrent=1)

        async def boom():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await limiter.execute(boom)
        assert limiter.active == 0

    @pytest.mark.asyncio
    async def test_get_status(self):
        """Status reports concurrency and window usage."""
        limiter = ResourceLimiter("fal", max_requests_per_minute=30, max_concurrent=5)

        async def noop():
            return None

        await limiter.execute(noop)
        status = limiter.get_status()

        assert status["name"] == "fal"
        assert status["active"] == 0
        assert status["requests_last_minute"] == 1
        assert status["max_requests_per_minute"] == 30


class TestRateLimiterRegistry:
    """Tests for RateLimiterRegistry."""

    def test_from_settings_limits(self):
        """Known resources get their configured limits."""
        registry = RateLimiterRegistry.from_settings()

        assert registry.get_or_create("local").max_concurrent == 1
        assert registry.get_or_create("fal").max_concurrent == 5

    def test_unknown_resource_uses_defaults(self):
        """Unknown resources are created with the default limits."""
        registry = RateLimiterRegistry(default_limits=(10, 2))
        limiter = registry.get_or_create("other")

        assert limiter.max_concurrent == 2
        assert registry.get_or_create("other") is limiter
        assert "other" in registry.get_status()

    def test_poll_resources_have_their_own_limits(self):
        """Status checks draw from '<resource>:poll', not the submit limiter."""
        registry = RateLimiterRegistry.from_settings()

        poll = registry.get_or_create("fal:poll")

        assert poll is not registry.get_or_create("fal")
        assert poll.max_concurrent == 20
        assert poll.window.max_requests == 600
