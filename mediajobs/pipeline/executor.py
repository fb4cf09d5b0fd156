"""Pipeline executor: runs one job's stages from processing to terminal.

Run order for a job:
    1. mark_processing (stamps started_at once; resumes a redelivery)
    2. for each stage: flush progress, check cancellation, run the stage,
       fold its result into the immutable context, advance progress to
       the stage's upper bound
    3. compute cost from the strategies actually used, mark_completed
    4. on any unrecovered error: mark_failed and re-raise

Every engine call goes timeout -> Retry Policy -> Rate Limiter -> Engine,
with submit and each status poll of a polling engine retried separately.
The job's scratch directory is released before execute() returns.

Usage:
    executor = PipelineExecutor(lifecycle, engines, limiters, PIPELINES, storage)
    result = await executor.execute(job_id)
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional
import structlog

from mediajobs.config import settings
from mediajobs.engines.base import PollingEngineClient, ProgressUpdate
from mediajobs.engines.registry import EngineRegistry
from mediajobs.pipeline.context import FallbackRecord, PipelineContext, PipelineResult
from mediajobs.pipeline.definitions import PipelineDefinition
from mediajobs.services.blob_storage import BlobStorage
from mediajobs.services.cost_calculator import CostCalculator, cost_calculator
from mediajobs.services.errors import InvalidStateError, StageTimeoutError
from mediajobs.services.flow_logger import JobFlowLogger
from mediajobs.services.job_lifecycle import JobLifecycleManager
from mediajobs.services.progress import ProgressChannel
from mediajobs.services.rate_limiter import RateLimiterRegistry
from mediajobs.services.retry_policy import RetryConfig, RetryPolicy
from mediajobs.services.scratch import job_scratch

logger = structlog.get_logger()


class StageRuntime:
    """What a running stage may do: call engines, report progress, log."""

    def __init__(self, executor: "PipelineExecutor", ctx: PipelineContext, stage, channel: ProgressChannel, flow):
        self._executor = executor
        self.ctx = ctx
        self.stage = stage
        self.channel = channel
        self.flow = flow
        self.storage = executor.storage

    @property
    def job_id(self) -> str:
        return self.ctx.job_id

    def report(self, fraction: float):
        """Report progress as a fraction of this stage's band."""
        fraction = max(0.0, min(1.0, fraction))
        self.channel.progress(self.stage.lo_pct + (self.stage.hi_pct - self.stage.lo_pct) * fraction)

    def log(self, message: str):
        self.channel.log(message)

    def record_fallback(self, record: FallbackRecord):
        if self.flow:
            self.flow.log_fallback(record.stage, record.from_strategy, record.to_strategy, record.reason)

    def _on_progress(self, engine_name: str) -> Callable[[ProgressUpdate], None]:
        def handle(update: ProgressUpdate):
            if update.request_id and update.status == "SUBMITTED":
                self.channel.external(update.request_id, update.status)
            if update.percent is not None:
                self.report(update.percent / 100)
            if update.message:
                self.channel.log(f"{engine_name}: {update.message}")

        return handle

    async def with_timeout(self, awaitable: Awaitable[Any], timeout_seconds: Optional[float]) -> Any:
        if not timeout_seconds:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
        except asyncio.TimeoutError as e:
            raise StageTimeoutError(self.stage.name, timeout_seconds) from e

    async def call_engine(
        self,
        engine_name: str,
        request: Dict[str, Any],
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Invoke an engine under the stage timeout, retry and its rate limiter.

        Polling engines are driven step by step: submit() is retried on its
        own, and once a handle exists only the status checks are retried,
        so a failed poll never pays for a second request. Each attempt
        holds a limiter slot only for its own HTTP call; backoff and poll
        sleeps run with the slot released.
        """
        engine = self._executor.engines.get(engine_name)
        on_progress = self._on_progress(engine_name)
        context = {"job_id": self.job_id, "stage": self.stage.name, "engine": engine_name}

        def on_retry(attempt: int, error: Exception, delay: float):
            self.channel.log(f"Retrying {engine_name} (attempt {attempt}) in {delay:.0f}s")
            if self.flow:
                self.flow.log_retry(attempt, delay, error=str(error)[:200], stage=self.stage.name, engine=engine_name)

        def attempt(resource: str, operation: Callable[[], Awaitable[Any]], **extra) -> Awaitable[Any]:
            return self._executor.retry_policy.execute(
                lambda: self._executor.limiters.execute(resource, operation),
                on_retry=on_retry,
                context={**context, **extra},
            )

        async def run():
            if not isinstance(engine, PollingEngineClient):
                return await attempt(engine.resource, lambda: engine.invoke(request, on_progress))

            handle = await attempt(engine.resource, lambda: engine.submit(request), step="submit")
            engine.report_submitted(handle, on_progress)
            return await engine.wait(
                handle,
                on_progress,
                poll=lambda h: attempt(engine.poll_resource, lambda: engine.poll(h), step="poll", request_id=h),
            )

        return await self.with_timeout(run(), timeout_seconds)


class PipelineExecutor:
    """
    Executes jobs against their pipeline definitions.

    Attributes:
        lifecycle: The only writer of job state
        engines: Engine clients by name
        limiters: Per-resource rate limiters
        pipelines: Pipeline definition by job type value
        storage: Blob storage for stage outputs
    """

    def __init__(
        self,
        lifecycle: JobLifecycleManager,
        engines: EngineRegistry,
        limiters: RateLimiterRegistry,
        pipelines: Dict[str, PipelineDefinition],
        storage: BlobStorage,
        retry_policy: Optional[RetryPolicy] = None,
        costs: Optional[CostCalculator] = None,
        flow_logging: Optional[bool] = None,
        scratch_base: Optional[str] = None,
    ):
        self.lifecycle = lifecycle
        self.engines = engines
        self.limiters = limiters
        self.pipelines = pipelines
        self.storage = storage
        self.retry_policy = retry_policy or RetryPolicy(RetryConfig())
        self.costs = costs or cost_calculator
        self.flow_logging = settings.flow_logging_enabled if flow_logging is None else flow_logging
        self.scratch_base = scratch_base

    async def execute(self, job_id: str) -> PipelineResult:
        """
        Run a job to a terminal status.

        Raises:
            InvalidStateError: the job is terminal, or was cancelled/reaped mid-run
            Exception: the error that failed the job, after mark_failed
        """
        job = await self.lifecycle.mark_processing(job_id)
        definition = self.pipelines.get(job.type)
        if definition is None:
            message = f"No pipeline for job type '{job.type}'"
            await self.lifecycle.mark_failed(job_id, message)
            raise ValueError(message)

        flow = JobFlowLogger(job_id, job_type=job.type) if self.flow_logging else None
        if flow:
            flow.start()

        log = logger.bind(job_id=job_id, job_type=job.type)
        log.info("Pipeline started", stages=[stage.name for stage in definition.stages])

        try:
            with job_scratch(job_id, base_dir=self.scratch_base) as scratch_dir:
                async with ProgressChannel(job_id, self.lifecycle, flow) as channel:
                    result = await self._run(job, definition, channel, flow, scratch_dir, log)
        except BaseException as e:
            if flow:
                flow.log_error(e)
                flow.end("failed")
            raise

        if flow:
            flow.log_complete(result.cost_cents, degraded=result.degraded)
            flow.end("completed")
        return result

    async def _run(self, job, definition: PipelineDefinition, channel: ProgressChannel, flow, scratch_dir, log) -> PipelineResult:
        ctx = PipelineContext(
            job_id=job.id,
            job_type=job.type,
            input=job.get_input_payload(),
            scratch_dir=scratch_dir,
        )

        try:
            for stage in definition.stages:
                await channel.flush()
                await self.lifecycle.ensure_active(job.id, action=f"run stage '{stage.name}' of")

                log.info("Stage started", stage=stage.name)
                if flow:
                    flow.log_stage_start(stage.name, stage.lo_pct, stage.hi_pct)
                channel.progress(stage.lo_pct)

                runtime = StageRuntime(self, ctx, stage, channel, flow)
                stage_result = await stage.run(ctx, runtime)
                ctx = ctx.with_stage_result(stage.name, stage_result)

                channel.progress(stage.hi_pct)
                if flow:
                    flow.log_stage_complete(stage.name, strategy=stage_result.strategy)
                log.info("Stage completed", stage=stage.name, strategy=stage_result.strategy)

            await channel.flush()

            cost_cents = self.costs.total_cents(ctx.usage)
            output = dict(definition.build_output(ctx))
            output["strategies"] = dict(ctx.strategies)
            output["degraded"] = ctx.degraded
            output["fallbacks"] = [record.to_dict() for record in ctx.fallbacks]
            if ctx.details:
                output["stage_details"] = {name: dict(d) for name, d in ctx.details.items()}

            await self.lifecycle.mark_completed(job.id, output, cost_cents=cost_cents)
            log.info("Pipeline completed", cost_cents=cost_cents, degraded=ctx.degraded)

            return PipelineResult(
                job_id=job.id,
                output=output,
                cost_cents=cost_cents,
                strategies=dict(ctx.strategies),
                fallbacks=ctx.fallbacks,
                degraded=ctx.degraded,
            )

        except InvalidStateError:
            # Cancelled or reaped while running; the terminal status stands
            log.info("Pipeline stopped, job no longer active")
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            log.error("Pipeline failed", error=message[:300], error_type=type(e).__name__)
            await channel.flush()
            await self.lifecycle.mark_failed(job.id, message)
            raise
