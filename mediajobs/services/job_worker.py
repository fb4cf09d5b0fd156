"""Queue workers and the stuck-job reaper.

A JobWorker consumes one queue partition and hands each job id to the
pipeline executor. Several workers may consume the same partition; the
job store's compare-and-set transitions make sure only one of them runs a
given job at a time.

Outcome -> queue action:
    pipeline completed                       ack
    job already terminal (InvalidStateError) ack, nothing left to do
    job id unknown (JobNotFoundError)        ack, nothing to run
    any other error                          nack, transport retries

Usage:
    workers = start_workers(executor, queue)
    reaper = asyncio.create_task(run_reaper(lifecycle, stop=stop_event))
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
import structlog

from mediajobs.config import settings
from mediajobs.models import JobType
from mediajobs.services.errors import InvalidStateError, JobNotFoundError
from mediajobs.services.job_queue import JobQueue, QueueMessage

logger = structlog.get_logger()


@dataclass
class WorkerStats:
    """Statistics for a worker."""

    worker_id: str
    partition: str
    jobs_received: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_skipped: int = 0
    current_job: Optional[str] = None
    started_at: Optional[str] = None
    last_activity: Optional[str] = None


class JobWorker:
    """
    Consumes one partition and runs each job through the executor.

    Attributes:
        worker_id: Unique identifier for this worker
        partition: Queue partition this worker reads
        stats: WorkerStats tracking
    """

    def __init__(
        self,
        partition: str,
        executor,
        queue: JobQueue,
        worker_id: Optional[str] = None,
        poll_timeout: float = 1.0,
    ):
        """
        Args:
            partition: Queue partition to consume
            executor: PipelineExecutor that runs jobs
            queue: Queue transport
            worker_id: Unique ID for this worker (generates one if not provided)
            poll_timeout: Seconds per dequeue wait before re-checking for stop
        """
        self.partition = partition
        self.executor = executor
        self.queue = queue
        self.worker_id = worker_id or f"{partition}-{uuid.uuid4().hex[:8]}"
        self.poll_timeout = poll_timeout

        self.task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._running = False

        self.stats = WorkerStats(
            worker_id=self.worker_id,
            partition=partition,
            started_at=datetime.now(timezone.utc).isoformat(),
        )

    async def handle(self, message: QueueMessage) -> None:
        """
        Run one job. Returning acks the message; raising nacks it.
        """
        self.stats.jobs_received += 1
        self.stats.current_job = message.job_id
        self.stats.last_activity = datetime.now(timezone.utc).isoformat()
        log = logger.bind(worker_id=self.worker_id, job_id=message.job_id, job_type=message.job_type)

        try:
            result = await self.executor.execute(message.job_id)
            self.stats.jobs_completed += 1
            log.info("Job finished", cost_cents=result.cost_cents, degraded=result.degraded)
        except InvalidStateError as e:
            # Terminal already: a duplicate delivery, a cancel or the reaper won
            self.stats.jobs_skipped += 1
            log.info("Job not runnable, dropping message", status=e.status)
        except JobNotFoundError:
            self.stats.jobs_skipped += 1
            log.warning("Job not found, dropping message")
        except Exception as e:
            self.stats.jobs_failed += 1
            log.error("Job failed", error=str(e)[:300], error_type=type(e).__name__)
            raise
        finally:
            self.stats.current_job = None

    async def run_forever(self):
        """Consume the partition until stop() is called."""
        self._running = True
        logger.info("Worker starting", worker_id=self.worker_id, partition=self.partition)
        try:
            await self.queue.consume(
                self.partition,
                self.handle,
                stop=self._stop,
                poll_timeout=self.poll_timeout,
            )
        finally:
            self._running = False
            logger.info("Worker stopped", worker_id=self.worker_id)

    def stop(self):
        """Signal the worker to stop after its current job."""
        self._stop.set()
        logger.info("Worker stop requested", worker_id=self.worker_id)

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics."""
        return {
            "worker_id": self.stats.worker_id,
            "partition": self.stats.partition,
            "jobs_received": self.stats.jobs_received,
            "jobs_completed": self.stats.jobs_completed,
            "jobs_failed": self.stats.jobs_failed,
            "jobs_skipped": self.stats.jobs_skipped,
            "current_job": self.stats.current_job,
            "started_at": self.stats.started_at,
            "last_activity": self.stats.last_activity,
            "running": self._running,
        }


def start_workers(
    executor,
    queue: JobQueue,
    partitions: Optional[Iterable[str]] = None,
    per_partition: Optional[int] = None,
) -> List[JobWorker]:
    """
    Start background workers, per_partition of them for every partition.

    Usage:
        workers = start_workers(executor, queue)
        ...
        for worker in workers:
            worker.stop()

    Returns:
        The started JobWorker instances; each holds its task in `task`
    """
    partitions = [job_type.partition for job_type in JobType] if partitions is None else list(partitions)
    if per_partition is None:
        per_partition = settings.workers_per_partition

    workers = []
    for partition in partitions:
        for _ in range(per_partition):
            worker = JobWorker(partition, executor, queue)
            worker.task = asyncio.create_task(worker.run_forever())
            workers.append(worker)

    logger.info("Workers started", partitions=partitions, per_partition=per_partition)
    return workers


async def run_reaper(
    lifecycle,
    interval_seconds: Optional[float] = None,
    max_age_minutes: Optional[int] = None,
    stop: Optional[asyncio.Event] = None,
):
    """
    Periodically fail jobs stuck past max_age_minutes.

    Errors in one sweep are logged and the loop carries on.
    """
    if interval_seconds is None:
        interval_seconds = settings.reaper_interval_seconds
    stop = stop or asyncio.Event()
    logger.info("Reaper starting", interval_seconds=interval_seconds, max_age_minutes=max_age_minutes)

    while not stop.is_set():
        try:
            await lifecycle.reap_stuck_jobs(max_age_minutes)
        except Exception as e:
            logger.error("Reaper sweep failed", error=str(e))
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass

    logger.info("Reaper stopped")
