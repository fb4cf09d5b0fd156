"""Per-job progress event channel.

Stages and batch sub-operations publish progress, log lines and external
request ids without touching the job store. One consumer task per job
applies them in order through the lifecycle manager, so concurrent
publishers never race on the job row. flush() waits until everything
published so far is persisted; the executor calls it at stage boundaries.

Usage:
    async with ProgressChannel(job_id, lifecycle) as channel:
        channel.progress(40)
        channel.log("Swapping frames 40%")
        await channel.flush()
"""

import asyncio
from dataclasses import dataclass
from typing import Optional
import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProgressEvent:
    kind: str  # progress | log | external
    percent: Optional[float] = None
    message: Optional[str] = None
    request_id: Optional[str] = None
    external_status: Optional[str] = None


_CLOSE = object()


class ProgressChannel:
    """Ordered, single-consumer event channel for one job."""

    def __init__(self, job_id: str, lifecycle, flow=None):
        """
        Args:
            job_id: Job the events belong to
            lifecycle: JobLifecycleManager used to persist events
            flow: Optional JobFlowLogger mirroring events to the flow trace
        """
        self.job_id = job_id
        self.lifecycle = lifecycle
        self.flow = flow
        self._queue: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self.last_percent = 0.0

    async def __aenter__(self) -> "ProgressChannel":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
        return False

    def start(self):
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume())

    def progress(self, percent: float):
        percent = max(0.0, min(100.0, percent))
        if percent > self.last_percent:
            self.last_percent = percent
            self._queue.put_nowait(ProgressEvent(kind="progress", percent=percent))

    def log(self, message: str):
        self._queue.put_nowait(ProgressEvent(kind="log", message=message))

    def external(self, request_id: str, external_status: Optional[str] = None):
        self._queue.put_nowait(
            ProgressEvent(kind="external", request_id=request_id, external_status=external_status)
        )

    async def flush(self):
        """Wait until every event published so far has been applied."""
        if self._consumer is not None:
            await self._queue.join()

    async def close(self):
        if self._consumer is None:
            return
        self._queue.put_nowait(_CLOSE)
        await self._consumer
        self._consumer = None

    async def _apply(self, event: ProgressEvent):
        if event.kind == "progress":
            await self.lifecycle.update_progress(self.job_id, event.percent)
            if self.flow:
                self.flow.log_progress(event.percent)
        elif event.kind == "log":
            await self.lifecycle.append_log(self.job_id, event.message)
        elif event.kind == "external":
            await self.lifecycle.set_external_request(self.job_id, event.request_id, event.external_status)
            if self.flow:
                self.flow.log_step("external_request", "submitted", request_id=event.request_id)

    async def _consume(self):
        while True:
            event = await self._queue.get()
            try:
                if event is _CLOSE:
                    return
                await self._apply(event)
            except Exception as e:
                # Progress is advisory; a failed write must not fail the job
                logger.warning("Failed to persist progress event", job_id=self.job_id, kind=event.kind, error=str(e))
            finally:
                self._queue.task_done()
