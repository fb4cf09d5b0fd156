"""Retry with exponential backoff and jitter.

Failed engine calls are retried with increasing delays, up to a maximum.
Transient failures are common; immediate retries usually fail again.

Formula: sleep = min(delay * uniform(1 - jitter, 1 + jitter), max_delay),
then delay *= backoff_multiplier.

Classification:
    - FatalEngineError, StageTimeoutError, InvalidStateError and the rate
      limiter wait failures: never retried
    - TransientEngineError: always retryable
    - anything else: retryable iff its message contains one of the
      configured patterns (case-insensitive)

Usage:
    result = await with_retry(
        lambda: engine.invoke(request),
        RetryConfig(max_retries=3),
        on_retry=lambda attempt, error, delay: logger.info("retrying", attempt=attempt),
    )

    @retry(max_retries=3)
    async def fetch_data():
        return await client.get("/data")
"""

import asyncio
import random
import functools
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, TypeVar
import structlog

from mediajobs.config import settings
from mediajobs.services.errors import (
    FatalEngineError,
    InvalidStateError,
    LimiterCancelledError,
    QueueTimeoutError,
    StageTimeoutError,
    TransientEngineError,
)

logger = structlog.get_logger()

T = TypeVar("T")

OnRetry = Callable[[int, Exception, float], None]

DEFAULT_RETRYABLE_PATTERNS = [
    "429",
    "resource_exhausted",
    "rate limit",
    "too many requests",
    "quota exceeded",
    "overloaded",
    "temporarily unavailable",
    "econnreset",
    "etimedout",
    "connection reset",
    "socket hang up",
    "timeout",
]

NEVER_RETRY = (
    FatalEngineError,
    StageTimeoutError,
    InvalidStateError,
    QueueTimeoutError,
    LimiterCancelledError,
)


@dataclass
class RetryConfig:
    """Configuration for retry behavior. Delays are in seconds."""
    max_retries: int = field(default_factory=lambda: settings.retry_max_retries)
    initial_delay: float = field(default_factory=lambda: settings.retry_initial_delay)
    max_delay: float = field(default_factory=lambda: settings.retry_max_delay)
    backoff_multiplier: float = field(default_factory=lambda: settings.retry_backoff_multiplier)
    jitter: float = 0.15
    retryable_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_RETRYABLE_PATTERNS))


class RetryPolicy:
    """
    Retry executor with error classification and exponential backoff.

    Attributes:
        config: Retry configuration
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize retry policy.

        Args:
            config: Retry configuration (defaults from settings)
            sleep: Awaitable sleep function, injectable for tests
            rng: Random source for jitter
        """
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def is_retryable(self, error: Exception) -> bool:
        """Decide whether an error should be retried."""
        if isinstance(error, NEVER_RETRY):
            return False
        if isinstance(error, TransientEngineError):
            return True
        text = str(error).lower()
        return any(pattern.lower() in text for pattern in self.config.retryable_patterns)

    def jittered(self, delay: float) -> float:
        """Apply jitter and cap at max_delay."""
        factor = self._rng.uniform(1 - self.config.jitter, 1 + self.config.jitter)
        return max(0.0, min(delay * factor, self.config.max_delay))

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        on_retry: Optional[OnRetry] = None,
        context: Optional[dict] = None,
    ) -> T:
        """
        Execute an async operation, retrying retryable failures.

        Args:
            operation: Zero-argument async callable
            on_retry: Called with (attempt, error, delay) before each sleep
            context: Extra log fields (job_id, engine, ...)

        Returns:
            The operation's result

        Raises:
            The last error once retries are exhausted or the error is not retryable
        """
        config = self.config
        context = context or {}
        delay = config.initial_delay
        attempt = 0

        while True:
            try:
                return await operation()
            except Exception as e:
                if not self.is_retryable(e):
                    logger.debug("Error not retryable", error=str(e)[:200], **context)
                    raise
                if attempt >= config.max_retries:
                    logger.warning(
                        "Max retries exhausted",
                        attempts=attempt + 1,
                        error=str(e)[:200],
                        **context,
                    )
                    raise

                attempt += 1
                sleep_for = self.jittered(delay)
                retry_after = getattr(e, "retry_after", None)
                if retry_after:
                    sleep_for = min(max(sleep_for, retry_after), config.max_delay)

                logger.info(
                    "Retrying after delay",
                    attempt=attempt,
                    max_retries=config.max_retries,
                    delay_seconds=round(sleep_for, 2),
                    error=str(e)[:200],
                    **context,
                )
                if on_retry is not None:
                    on_retry(attempt, e, sleep_for)

                await self._sleep(sleep_for)
                delay *= config.backoff_multiplier


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[OnRetry] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    context: Optional[dict] = None,
) -> T:
    """Run operation under a one-off RetryPolicy."""
    return await RetryPolicy(config, sleep=sleep).execute(operation, on_retry=on_retry, context=context)


def retry(
    max_retries: Optional[int] = None,
    initial_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    retryable_patterns: Optional[List[str]] = None,
):
    """
    Decorator for automatic retry of async functions.

    Usage:
        @retry(max_retries=3)
        async def fetch_data():
            return await client.get("/data")
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            config = RetryConfig()
            if max_retries is not None:
                config.max_retries = max_retries
            if initial_delay is not None:
                config.initial_delay = initial_delay
            if max_delay is not None:
                config.max_delay = max_delay
            if retryable_patterns is not None:
                config.retryable_patterns = list(retryable_patterns)
            return await RetryPolicy(config).execute(
                lambda: func(*args, **kwargs),
                context={"function": func.__name__},
            )

        return wrapper

    return decorator
