"""Tests for queue workers and the reaper loop."""

import asyncio

import pytest

from mediajobs.models import JobStatus, JobType
from mediajobs.services.errors import FatalEngineError, InvalidStateError, JobNotFoundError
from mediajobs.services.job_queue import QueueMessage
from mediajobs.services.job_worker import JobWorker, run_reaper, start_workers


class FakeResult:
    cost_cents = 0
    degraded = False


class ScriptedExecutor:
    """Executor double that raises the scripted error per job id."""

    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.executed = []

    async def execute(self, job_id):
        self.executed.append(job_id)
        outcome = self.outcomes.get(job_id)
        if isinstance(outcome, BaseException):
            raise outcome
        return FakeResult()


def message(job_id):
    return QueueMessage(job_id=job_id, job_type="training")


class TestJobWorker:
    """Tests for JobWorker.handle and run_forever."""

    @pytest.mark.asyncio
    async def test_success_counts_completed(self, queue):
        worker = JobWorker("training", ScriptedExecutor(), queue)

        await worker.handle(message("job-1"))

        stats = worker.get_stats()
        assert stats["jobs_received"] == 1
        assert stats["jobs_completed"] == 1
        assert stats["current_job"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        InvalidStateError("job-1", "completed", "start"),
        JobNotFoundError("job-1"),
    ])
    async def test_unrunnable_jobs_are_skipped(self, queue, error):
        """Terminal or unknown jobs return normally so the message is acked."""
        worker = JobWorker("training", ScriptedExecutor({"job-1": error}), queue)

        await worker.handle(message("job-1"))

        assert worker.get_stats()["jobs_skipped"] == 1

    @pytest.mark.asyncio
    async def test_failures_propagate(self, queue):
        """Pipeline failures are re-raised so the transport nacks."""
        worker = JobWorker("training", ScriptedExecutor({"job-1": FatalEngineError("boom")}), queue)

        with pytest.raises(FatalEngineError):
            await worker.handle(message("job-1"))

        assert worker.get_stats()["jobs_failed"] == 1

    @pytest.mark.asyncio
    async def test_run_forever_drains_partition(self, queue):
        """A running worker processes queued messages and stops on request."""
        executor = ScriptedExecutor()
        worker = JobWorker("training", executor, queue, worker_id="w-1", poll_timeout=0.02)
        await queue.enqueue("training", message("a"))
        await queue.enqueue("training", message("b"))

        task = asyncio.create_task(worker.run_forever())
        for _ in range(100):
            if len(executor.executed) == 2:
                break
            await asyncio.sleep(0.01)
        worker.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert executor.executed == ["a", "b"]
        assert queue.in_flight_count() == 0
        assert worker.get_stats()["running"] is False

    @pytest.mark.asyncio
    async def test_start_workers(self, queue):
        workers = start_workers(ScriptedExecutor(), queue, partitions=["training", "frame-swap"], per_partition=2)

        assert len(workers) == 4
        assert {w.partition for w in workers} == {"training", "frame-swap"}

        for worker in workers:
            worker.stop()
        await asyncio.wait_for(asyncio.gather(*(w.task for w in workers)), timeout=3.0)

    @pytest.mark.asyncio
    async def test_start_workers_explicit_empty(self, queue):
        """An explicit empty partition list or zero per_partition starts nothing."""
        assert start_workers(ScriptedExecutor(), queue, partitions=[]) == []
        assert start_workers(ScriptedExecutor(), queue, partitions=["training"], per_partition=0) == []


class TestReaperLoop:
    """Tests for run_reaper."""

    @pytest.mark.asyncio
    async def test_reaps_then_stops(self, lifecycle, clock, transform_input):
        job = await lifecycle.create_job(JobType.MEDIA_TRANSFORM, transform_input)
        clock.advance(minutes=61)
        stop = asyncio.Event()

        task = asyncio.create_task(run_reaper(lifecycle, interval_seconds=0.01, max_age_minutes=60, stop=stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        job = await lifecycle.get_job(job.id)
        assert job.status == JobStatus.FAILED.value
        assert job.error_message == "Job timed out after 60 minutes"

    @pytest.mark.asyncio
    async def test_sweep_errors_do_not_stop_loop(self):
        """A failing sweep is logged and retried on the next interval."""
        calls = []
        stop = asyncio.Event()

        class BrokenLifecycle:
            async def reap_stuck_jobs(self, max_age_minutes=None):
                calls.append(max_age_minutes)
                if len(calls) >= 3:
                    stop.set()
                raise RuntimeError("database is locked")

        await asyncio.wait_for(run_reaper(BrokenLifecycle(), interval_seconds=0.01, stop=stop), timeout=1.0)

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_zero_interval_is_honoured(self):
        """interval_seconds=0 sweeps back to back instead of using the default."""
        calls = []
        stop = asyncio.Event()

        class CountingLifecycle:
            async def reap_stuck_jobs(self, max_age_minutes=None):
                calls.append(max_age_minutes)
                if len(calls) >= 3:
                    stop.set()
                return 0

        await asyncio.wait_for(
            run_reaper(CountingLifecycle(), interval_seconds=0, max_age_minutes=0, stop=stop),
            timeout=1.0,
        )

        assert calls == [0, 0, 0]
