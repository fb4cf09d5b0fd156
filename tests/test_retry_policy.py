"""Tests for RetryPolicy."""

import random

import pytest

from mediajobs.services.errors import (
    FatalEngineError,
    InvalidStateError,
    LimiterCancelledError,
    QueueTimeoutError,
    StageTimeoutError,
    TransientEngineError,
)
from mediajobs.services.retry_policy import RetryConfig, RetryPolicy, retry, with_retry


class RecordingSleep:
    """Sleep replacement that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def make_policy(**config):
    sleep = RecordingSleep()
    policy = RetryPolicy(RetryConfig(**config), sleep=sleep, rng=random.Random(7))
    return policy, sleep


class FlakyOperation:
    """Fails with the given errors in order, then returns value."""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class TestRetryPolicy:
    """Tests for retry execution."""

    @pytest.mark.asyncio
    async def test_succeeds_after_two_retries(self):
        """Two matching failures then success: two callbacks, non-decreasing delays."""
        policy, sleep = make_policy(max_retries=5, initial_delay=1.0, max_delay=60.0, jitter=0.0)
        operation = FlakyOperation([Exception("429 Too Many Requests"), Exception("socket hang up")])
        callbacks = []

        result = await policy.execute(operation, on_retry=lambda a, e, d: callbacks.append((a, d)))

        assert result == "ok"
        assert operation.calls == 3
        assert [a for a, _ in callbacks] == [1, 2]
        delays = [d for _, d in callbacks]
        assert delays == sleep.delays
        assert delays[0] <= delays[1]

    @pytest.mark.asyncio
    async def test_delays_grow_exponentially(self):
        """Without jitter delays double until capped."""
        policy, sleep = make_policy(max_retries=4, initial_delay=2.0, max_delay=10.0, jitter=0.0)
        operation = FlakyOperation([TransientEngineError("busy")] * 4)

        await policy.execute(operation)

        assert sleep.delays == [2.0, 4.0, 8.0, 10.0]

    @pytest.mark.asyncio
    async def test_jitter_stays_within_bounds(self):
        """Jittered delays stay within +/-15% of the base delay."""
        policy, sleep = make_policy(max_retries=1, initial_delay=10.0, max_delay=120.0)
        await policy.execute(FlakyOperation([TransientEngineError("busy")]))

        assert 8.5 <= sleep.delays[0] <= 11.5

    @pytest.mark.asyncio
    async def test_unmatched_error_not_retried(self):
        """An error matching no pattern propagates immediately."""
        policy, sleep = make_policy()
        operation = FlakyOperation([ValueError("Invalid image dimensions")])
        callbacks = []

        with pytest.raises(ValueError):
            await policy.execute(operation, on_retry=lambda *args: callbacks.append(args))

        assert operation.calls == 1
        assert callbacks == []
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_raises_last_error_when_exhausted(self):
        """After max_retries the last error propagates."""
        policy, sleep = make_policy(max_retries=2, initial_delay=0.1)
        operation = FlakyOperation([
            Exception("rate limit 1"),
            Exception("rate limit 2"),
            Exception("rate limit 3"),
        ])

        with pytest.raises(Exception, match="rate limit 3"):
            await policy.execute(operation)

        assert operation.calls == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        FatalEngineError("429 but rejected by safety checker"),
        QueueTimeoutError("Request timed out in rate limiter queue for 'fal' after 300s"),
        LimiterCancelledError("Rate limiter 'fal' cancelled"),
        StageTimeoutError("swap", 60),
        InvalidStateError("job-1", "failed", "continue"),
    ])
    async def test_never_retries_typed_fatal_errors(self, error):
        """Fatal, timeout, state and limiter errors bypass message matching."""
        policy, sleep = make_policy()
        operation = FlakyOperation([error])

        with pytest.raises(type(error)):
            await policy.execute(operation)

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_transient_error_always_retried(self):
        """TransientEngineError retries even without a matching message."""
        policy, _ = make_policy(initial_delay=0.1)
        operation = FlakyOperation([TransientEngineError("upstream said no")])

        assert await policy.execute(operation) == "ok"
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_retry_after_is_honoured(self):
        """A provider Retry-After longer than the backoff wins."""
        policy, sleep = make_policy(initial_delay=1.0, max_delay=60.0, jitter=0.0)
        operation = FlakyOperation([TransientEngineError("slow down", status_code=429, retry_after=7.0)])

        await policy.execute(operation)

        assert sleep.delays == [7.0]

    @pytest.mark.asyncio
    async def test_custom_patterns(self):
        """Configured patterns replace the defaults."""
        policy, _ = make_policy(retryable_patterns=["gpu busy"], initial_delay=0.1)

        assert policy.is_retryable(Exception("GPU BUSY, try later"))
        assert not policy.is_retryable(Exception("429 Too Many Requests"))


class TestRetryHelpers:
    """Tests for with_retry and the decorator."""

    @pytest.mark.asyncio
    async def test_with_retry(self):
        """with_retry runs a one-off policy."""
        sleep = RecordingSleep()
        operation = FlakyOperation([Exception("ETIMEDOUT")], value=42)

        result = await with_retry(operation, RetryConfig(initial_delay=0.5, jitter=0.0), sleep=sleep)

        assert result == 42
        assert sleep.delays == [0.5]

    @pytest.mark.asyncio
    async def test_decorator_gives_up_on_fatal(self):
        """The decorator applies the same classification."""
        calls = []

        @retry(max_retries=3, initial_delay=0.01)
        async def submit():
            calls.append(1)
            raise FatalEngineError("bad input")

        with pytest.raises(FatalEngineError):
            await submit()
        assert len(calls) == 1
