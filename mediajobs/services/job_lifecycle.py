"""Job lifecycle: the only code allowed to mutate job rows.

Status machine:

    pending -> queued -> processing -> completed
        \\         \\           \\
         +---------+-----------+----> failed

Every transition is a compare-and-set in the store, so racing writers
(workers, the reaper, cancel requests) cannot double-apply one. Terminal
statuses never revert.

Usage:
    manager = JobLifecycleManager(store=SqlJobStore(), queue=InMemoryJobQueue())
    job = await manager.create_job(JobType.TRAINING, {"images_zip_url": ...})

    await manager.mark_processing(job.id)
    await manager.update_progress(job.id, 40)
    await manager.append_log(job.id, "Training 40%")
    await manager.mark_completed(job.id, {"lora_url": ...}, cost_cents=200)

    reaped = await manager.reap_stuck_jobs(max_age_minutes=60)
"""

import asyncio
import re
import weakref
from datetime import datetime, timedelta
from typing import Callable, List, Optional
import structlog

from mediajobs.config import settings
from mediajobs.models import (
    ACTIVE_STATUSES,
    CostLedgerEntry,
    Job,
    JobStatus,
    JobType,
    utcnow,
)
from mediajobs.schemas import validate_job_input
from mediajobs.services.errors import InvalidStateError, JobNotFoundError
from mediajobs.services.job_queue import JobQueue, QueueMessage
from mediajobs.services.job_store import SqlJobStore

logger = structlog.get_logger()

CANCELLED_MESSAGE = "cancelled"

_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")


def _split_percent(message: str):
    """Return (message with percentages masked, last percentage or None)."""
    found = _PERCENT_RE.findall(message)
    masked = _PERCENT_RE.sub("#%", message).strip()
    return masked, (float(found[-1]) if found else None)


def consolidate_log(entries: List[dict], message: str, ts: str, limit: int) -> List[dict]:
    """
    Append a message to a progress log, consolidating polling repeats.

    A message that matches the previous entry except for its percentage,
    and whose percentage has not advanced, replaces the previous entry.
    An advanced percentage appends, so the log keeps one line per step.
    Only the newest `limit` entries are kept.
    """
    entries = list(entries)
    entry = {"ts": ts, "message": message}
    if entries:
        prev_masked, prev_pct = _split_percent(entries[-1]["message"])
        masked, pct = _split_percent(message)
        if masked == prev_masked and (pct is None or prev_pct is None or pct <= prev_pct):
            entries[-1] = entry
            return entries[-limit:]
    entries.append(entry)
    return entries[-limit:]


class JobLifecycleManager:
    """
    Creates jobs and applies every status, progress and log change.

    Attributes:
        store: Job record store
        queue: Transport used to hand jobs to workers
    """

    def __init__(
        self,
        store: SqlJobStore,
        queue: JobQueue,
        clock: Callable[[], datetime] = utcnow,
        log_limit: Optional[int] = None,
    ):
        self.store = store
        self.queue = queue
        self._clock = clock
        self.log_limit = settings.progress_log_limit if log_limit is None else log_limit
        # Entries vanish once no append_log call holds the lock
        self._log_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _require(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # ---------------------------------------------------------------- create

    async def create_job(
        self,
        job_type,
        input_payload: dict,
        reference_id: Optional[str] = None,
    ) -> Job:
        """
        Validate, persist and enqueue a new job.

        The row is inserted as pending, the message enqueued, and the row
        moved to queued. If the enqueue fails the job stays pending for the
        reaper and the enqueue error propagates.

        Args:
            job_type: JobType or its string value
            input_payload: Type-specific input
            reference_id: Caller's entity id (character, model, project)

        Returns:
            The job as stored after enqueueing
        """
        job_type = JobType(job_type)
        payload = validate_job_input(job_type, input_payload)

        job = self.store.insert(job_type, payload, reference_id=reference_id)
        logger.info("Job created", job_id=job.id, job_type=job_type.value, reference_id=reference_id)

        try:
            await self.queue.enqueue(job_type.partition, QueueMessage(job_id=job.id, job_type=job_type.value))
        except Exception as e:
            logger.error("Failed to enqueue job, leaving it pending", job_id=job.id, error=str(e))
            raise

        if not self.store.transition(job.id, [JobStatus.PENDING], status=JobStatus.QUEUED):
            # A worker may already have claimed it
            logger.debug("Job left pending before queued write", job_id=job.id)
        return self._require(job.id)

    # ----------------------------------------------------------------- reads

    async def get_job(self, job_id: str) -> Job:
        return self._require(job_id)

    async def list_jobs(
        self,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Job]:
        return self.store.list_jobs(job_type=job_type, status=status, limit=limit, offset=offset)

    async def is_cancelled(self, job_id: str) -> bool:
        """True if the job has been cancelled by a caller."""
        job = self._require(job_id)
        return job.status == JobStatus.FAILED.value and job.error_message == CANCELLED_MESSAGE

    async def ensure_active(self, job_id: str, action: str = "continue") -> Job:
        """Raise InvalidStateError if the job reached a terminal status."""
        job = self._require(job_id)
        if job.job_status.is_terminal:
            raise InvalidStateError(job_id, job.status, action)
        return job

    # ------------------------------------------------------------ transitions

    async def mark_processing(self, job_id: str) -> Job:
        """
        Move a job to processing and stamp started_at exactly once.

        A job still pending (its creator has not yet written queued) is
        first moved to queued. A job already processing is a redelivery and
        is resumed as-is.

        Raises:
            InvalidStateError: the job is terminal
        """
        job = self._require(job_id)
        if job.status == JobStatus.PENDING.value:
            self.store.transition(job_id, [JobStatus.PENDING], status=JobStatus.QUEUED)

        if self.store.transition(
            job_id,
            [JobStatus.QUEUED],
            status=JobStatus.PROCESSING,
            started_at=self._clock(),
        ):
            logger.info("Job processing", job_id=job_id)
            return self._require(job_id)

        job = self._require(job_id)
        if job.status == JobStatus.PROCESSING.value:
            logger.info("Resuming redelivered job", job_id=job_id)
            return job
        raise InvalidStateError(job_id, job.status, "start")

    async def mark_completed(self, job_id: str, output_payload: dict, cost_cents: int = 0) -> Job:
        """
        Finish a processing job; write a ledger entry when it cost anything.

        Raises:
            InvalidStateError: the job was not processing (e.g. cancelled or reaped)
        """
        job = self._require(job_id)
        cost_entry = None
        if cost_cents > 0:
            cost_entry = CostLedgerEntry(
                job_id=job_id,
                job_type=job.type,
                cost_cents=cost_cents,
                created_at=self._clock(),
            )

        won = self.store.transition(
            job_id,
            [JobStatus.PROCESSING],
            cost_entry=cost_entry,
            status=JobStatus.COMPLETED,
            progress=100,
            output_payload=output_payload,
            cost_cents=cost_cents,
            completed_at=self._clock(),
        )
        if not won:
            current = self._require(job_id)
            raise InvalidStateError(job_id, current.status, "complete")

        logger.info("Job completed", job_id=job_id, cost_cents=cost_cents)
        return self._require(job_id)

    async def mark_failed(self, job_id: str, error_message: str) -> Optional[Job]:
        """
        Fail a non-terminal job. Returns None if it was already terminal.
        """
        won = self.store.transition(
            job_id,
            ACTIVE_STATUSES,
            status=JobStatus.FAILED,
            error_message=error_message,
            completed_at=self._clock(),
        )
        if not won:
            job = self._require(job_id)
            logger.info("Job already terminal, failure not recorded", job_id=job_id, status=job.status)
            return None
        logger.warning("Job failed", job_id=job_id, error=error_message[:200])
        return self._require(job_id)

    async def cancel_job(self, job_id: str) -> Job:
        """
        Cancel a pending, queued or processing job.

        Running pipelines notice at their next stage boundary.

        Raises:
            JobNotFoundError: unknown id
            InvalidStateError: the job is already terminal
        """
        job = self._require(job_id)
        won = self.store.transition(
            job_id,
            ACTIVE_STATUSES,
            status=JobStatus.FAILED,
            error_message=CANCELLED_MESSAGE,
            completed_at=self._clock(),
        )
        if not won:
            job = self._require(job_id)
            raise InvalidStateError(job_id, job.status, "cancel")
        logger.info("Job cancelled", job_id=job_id)
        return self._require(job_id)

    # ------------------------------------------------------ progress and logs

    async def update_progress(self, job_id: str, percent: float) -> None:
        """Raise progress (clamped to 0..100); lower values are ignored."""
        percent = int(max(0, min(100, percent)))
        self.store.raise_progress(job_id, percent)

    async def append_log(self, job_id: str, message: str) -> None:
        """Append to the bounded progress log, serialized per job."""
        lock = self._log_locks.get(job_id)
        if lock is None:
            lock = self._log_locks[job_id] = asyncio.Lock()
        async with lock:
            job = self.store.get(job_id)
            if job is None:
                return
            entries = consolidate_log(
                job.get_progress_log(),
                message,
                self._clock().isoformat(),
                self.log_limit,
            )
            self.store.update(job_id, progress_log=entries)

    async def set_external_request(
        self,
        job_id: str,
        request_id: str,
        external_status: Optional[str] = None,
    ) -> None:
        """Record the engine-side request id so a job can be traced upstream."""
        values = {"external_request_id": request_id}
        if external_status is not None:
            values["external_status"] = external_status
        self.store.update(job_id, **values)
        logger.debug("External request recorded", job_id=job_id, request_id=request_id)

    # ------------------------------------------------------------------ reaper

    async def reap_stuck_jobs(self, max_age_minutes: Optional[int] = None) -> int:
        """
        Fail jobs stuck past max_age_minutes.

        Covers queued/processing jobs whose started_at is older than the
        cutoff and pending/queued jobs never started whose created_at is.
        Safe to run concurrently with itself and with workers.

        Returns:
            Number of jobs this call failed
        """
        if max_age_minutes is None:
            max_age_minutes = settings.reaper_max_age_minutes
        cutoff = self._clock() - timedelta(minutes=max_age_minutes)
        message = f"Job timed out after {max_age_minutes} minutes"

        stuck = self.store.list_by_status(
            [JobStatus.QUEUED, JobStatus.PROCESSING], started_before=cutoff
        )
        stuck += self.store.list_by_status(
            [JobStatus.PENDING, JobStatus.QUEUED], created_before=cutoff, never_started=True
        )

        reaped = 0
        for job in stuck:
            if self.store.transition(
                job.id,
                [JobStatus(job.status)],
                status=JobStatus.FAILED,
                error_message=message,
                completed_at=self._clock(),
            ):
                reaped += 1
                logger.warning("Reaped stuck job", job_id=job.id, status=job.status, max_age_minutes=max_age_minutes)

        if reaped:
            logger.info("Stuck jobs reaped", count=reaped)
        return reaped
