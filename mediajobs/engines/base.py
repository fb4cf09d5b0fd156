"""Engine client interface.

An engine is one external AI capability (face swap, video face
replacement, vision analysis, LoRA training, ...). Pipelines only see
EngineClient.invoke(); adapters hide whether the provider is synchronous
or submit-then-poll, and convert provider failures into the typed errors
in mediajobs.services.errors.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional
import structlog

from mediajobs.services.errors import FatalEngineError

logger = structlog.get_logger()


@dataclass
class ProgressUpdate:
    """Progress reported by an engine while a request runs."""

    status: str
    percent: Optional[float] = None
    request_id: Optional[str] = None
    message: Optional[str] = None


ProgressCallback = Callable[[ProgressUpdate], None]


@dataclass
class PollResult:
    """One status check of a submitted request."""

    status: str  # pending | running | completed | failed
    percent: Optional[float] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    raw_status: Optional[str] = None
    logs: list = field(default_factory=list)


class EngineClient(ABC):
    """
    Interface every engine adapter implements.

    Attributes:
        name: Registry key
        resource: Rate limiter resource the engine draws from
    """

    name: str = "engine"
    resource: str = "default"

    @property
    def poll_resource(self) -> str:
        """Limiter resource for status checks, kept apart from submissions."""
        return f"{self.resource}:poll"

    @abstractmethod
    async def invoke(
        self,
        request: Dict[str, Any],
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """Run one request to completion and return the engine's result."""


class PollingEngineClient(EngineClient):
    """
    Engine with a submit-then-poll protocol.

    invoke() submits, reports the request handle, then wait()s: polls until
    the request completes or fails, or max_polls is reached. Callers that
    retry must retry submit() and poll() separately so a failed status
    check never submits a second request.
    """

    poll_interval: float = 5.0
    max_polls: Optional[int] = None

    # Coarse progress for providers that only report a status string
    STATUS_PROGRESS = {
        "IN_QUEUE": 10,
        "IN_PROGRESS": 50,
        "COMPLETED": 100,
    }

    def __init__(self, sleep: Callable[[float], Any] = asyncio.sleep):
        self._sleep = sleep

    @abstractmethod
    async def submit(self, request: Dict[str, Any]) -> str:
        """Submit a request and return its handle."""

    @abstractmethod
    async def poll(self, handle: str) -> PollResult:
        """Check a submitted request."""

    async def invoke(
        self,
        request: Dict[str, Any],
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        handle = await self.submit(request)
        self.report_submitted(handle, on_progress)
        return await self.wait(handle, on_progress)

    def report_submitted(self, handle: str, on_progress: Optional[ProgressCallback] = None):
        logger.info("Engine request submitted", engine=self.name, request_id=handle)
        if on_progress:
            on_progress(ProgressUpdate(status="SUBMITTED", request_id=handle))

    async def wait(
        self,
        handle: str,
        on_progress: Optional[ProgressCallback] = None,
        poll: Optional[Callable[[str], Awaitable[PollResult]]] = None,
    ) -> Dict[str, Any]:
        """
        Poll a submitted request until it completes.

        Args:
            handle: Request handle returned by submit()
            on_progress: Progress callback
            poll: Replacement for self.poll, e.g. one wrapped in retry and
                rate limiting. Errors it raises end the wait; nothing here
                resubmits the request.
        """
        poll = poll or self.poll
        polls = 0
        last_status = None
        while self.max_polls is None or polls < self.max_polls:
            polls += 1
            status = await poll(handle)

            if status.status == "completed":
                logger.info("Engine request completed", engine=self.name, request_id=handle, polls=polls)
                return status.result or {}

            if status.status == "failed":
                raise FatalEngineError(
                    f"{self.name} request {handle} failed: {status.error or 'unknown error'}",
                    engine=self.name,
                )

            if on_progress and (status.raw_status != last_status or status.percent is not None):
                on_progress(
                    ProgressUpdate(
                        status=status.raw_status or status.status,
                        percent=status.percent,
                        request_id=handle,
                        message=status.logs[-1] if status.logs else None,
                    )
                )
            last_status = status.raw_status

            await self._sleep(self.poll_interval)

        raise FatalEngineError(
            f"{self.name} request {handle} did not finish after {polls} polls",
            engine=self.name,
        )
