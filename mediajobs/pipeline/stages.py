"""Pipeline stage kinds.

A stage owns a progress band [lo_pct, hi_pct) and optionally a per-call
timeout. Stages never touch the job store; they report through the
StageRuntime the executor hands them.

    EngineCallStage     one engine call
    FallbackChainStage  ordered strategies, advance on fatal failure
    BatchStage          many calls in bounded concurrent groups
    LocalStage          in-process step (download, upload, assemble)
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
import structlog

from mediajobs.config import settings
from mediajobs.pipeline.context import FallbackRecord, PipelineContext, StageResult
from mediajobs.services.errors import (
    FatalEngineError,
    InvalidStateError,
    LimiterCancelledError,
)

logger = structlog.get_logger()

RequestBuilder = Callable[[PipelineContext], Dict[str, Any]]
ResultParser = Callable[[PipelineContext, Dict[str, Any]], Any]
UsageFn = Callable[[PipelineContext, Any], List[dict]]

# Errors that stop a job outright instead of triggering fallback
ABORTING_ERRORS = (InvalidStateError, LimiterCancelledError)


def describe_error(error: BaseException) -> str:
    """Short single-line reason for logs and fallback records."""
    text = str(error).strip().splitlines()[0] if str(error).strip() else ""
    return f"{type(error).__name__}: {text[:160]}" if text else type(error).__name__


def _identity(ctx: PipelineContext, raw: Dict[str, Any]) -> Any:
    return raw


def require_url(raw: Dict[str, Any], *path: str) -> str:
    """Dig a URL out of an engine result, failing the call if it is missing."""
    node: Any = raw
    for key in path:
        if isinstance(node, list):
            node = node[0] if node else None
        if not isinstance(node, dict):
            node = None
            break
        node = node.get(key)
    if isinstance(node, list):
        node = node[0] if node else None
    if not isinstance(node, str) or not node:
        raise FatalEngineError(f"Engine returned no {'.'.join(path)}")
    return node


class Stage(ABC):
    """Base stage: name, progress band and per-call timeout."""

    def __init__(self, name: str, lo_pct: float, hi_pct: float, timeout_seconds: Optional[float] = None):
        if not 0 <= lo_pct <= hi_pct <= 100:
            raise ValueError(f"Invalid progress band for stage {name}: {lo_pct}-{hi_pct}")
        self.name = name
        self.lo_pct = lo_pct
        self.hi_pct = hi_pct
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    async def run(self, ctx: PipelineContext, runtime) -> StageResult:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__}({self.name}, {self.lo_pct}-{self.hi_pct})>"


class EngineCallStage(Stage):
    """
    One engine call.

    A soft stage records a failure and lets the pipeline continue with a
    None artifact instead of failing the job.
    """

    def __init__(
        self,
        name: str,
        engine: str,
        build_request: RequestBuilder,
        lo_pct: float,
        hi_pct: float,
        parse_result: ResultParser = _identity,
        timeout_seconds: Optional[float] = None,
        usage: Optional[UsageFn] = None,
        soft: bool = False,
    ):
        super().__init__(name, lo_pct, hi_pct, timeout_seconds)
        self.engine = engine
        self.build_request = build_request
        self.parse_result = parse_result
        self.usage = usage or (lambda ctx, output: [{"engine": engine}])
        self.soft = soft

    async def run(self, ctx: PipelineContext, runtime) -> StageResult:
        try:
            raw = await runtime.call_engine(self.engine, self.build_request(ctx), self.timeout_seconds)
            output = self.parse_result(ctx, raw)
        except ABORTING_ERRORS:
            raise
        except Exception as e:
            if not self.soft:
                raise
            reason = describe_error(e)
            logger.warning("Optional stage failed, continuing", job_id=ctx.job_id, stage=self.name, error=reason)
            runtime.log(f"{self.name} skipped ({reason})")
            return StageResult(output=None, strategy=self.engine, degraded=True, details={"error": reason})
        return StageResult(output=output, strategy=self.engine, usage=tuple(self.usage(ctx, output)))


@dataclass
class Strategy:
    """One link of a fallback chain."""

    name: str
    engine: str
    build_request: RequestBuilder
    parse_result: ResultParser = _identity
    usage: Optional[UsageFn] = None
    # Links whose inputs the job does not provide are skipped, not failed
    applies: Callable[[PipelineContext], bool] = lambda ctx: True

    @property
    def is_passthrough(self) -> bool:
        return self.engine == "passthrough"

    def usage_for(self, ctx: PipelineContext, output: Any) -> List[dict]:
        if self.usage is not None:
            return self.usage(ctx, output)
        return [{"engine": self.engine}]


class FallbackChainStage(Stage):
    """
    Try strategies in order; advance on fatal failure.

    A failure is fatal for a link once the retry policy gives up on it
    (non-retryable error, retries exhausted or stage timeout). A
    hard_required stage never accepts a pass-through link, so exhausting
    its real strategies fails the job.
    """

    def __init__(
        self,
        name: str,
        strategies: Sequence[Strategy],
        lo_pct: float,
        hi_pct: float,
        timeout_seconds: Optional[float] = None,
        hard_required: bool = False,
    ):
        super().__init__(name, lo_pct, hi_pct, timeout_seconds)
        self.hard_required = hard_required
        self.strategies = [s for s in strategies if not (hard_required and s.is_passthrough)]
        if not self.strategies:
            raise ValueError(f"Fallback chain {name} has no usable strategies")

    async def run(self, ctx: PipelineContext, runtime) -> StageResult:
        records: List[FallbackRecord] = []
        last_error: Optional[BaseException] = None
        strategies = [s for s in self.strategies if s.applies(ctx)]
        if not strategies:
            raise FatalEngineError(f"Stage '{self.name}' has no strategy for this job's input")

        for index, strategy in enumerate(strategies):
            try:
                raw = await runtime.call_engine(strategy.engine, strategy.build_request(ctx), self.timeout_seconds)
                output = strategy.parse_result(ctx, raw)
            except ABORTING_ERRORS:
                raise
            except Exception as e:
                last_error = e
                reason = describe_error(e)
                following = strategies[index + 1] if index + 1 < len(strategies) else None
                if following is not None:
                    runtime.log(f"Fallback: {strategy.name} failed ({reason}), trying {following.name}")
                    logger.warning(
                        "Strategy failed, falling back",
                        job_id=ctx.job_id,
                        stage=self.name,
                        strategy=strategy.name,
                        next_strategy=following.name,
                        error=reason,
                    )
                else:
                    logger.error(
                        "All strategies failed",
                        job_id=ctx.job_id,
                        stage=self.name,
                        hard_required=self.hard_required,
                        error=reason,
                    )
                record = FallbackRecord(
                    stage=self.name,
                    from_strategy=strategy.name,
                    to_strategy=following.name if following else None,
                    reason=reason,
                )
                records.append(record)
                runtime.record_fallback(record)
                continue

            return StageResult(
                output=output,
                strategy=strategy.name,
                fallbacks=tuple(records),
                usage=tuple(strategy.usage_for(ctx, output)),
            )

        tried = ", ".join(s.name for s in strategies)
        raise FatalEngineError(
            f"Stage '{self.name}' failed: all strategies failed ({tried}); last error: {describe_error(last_error)}"
        ) from last_error


class BatchStage(Stage):
    """
    Run one engine over many items in bounded concurrent groups.

    Items are processed group_size at a time with asyncio.gather. A failed
    item gets the stage's fallback value; results land at the item's
    original index regardless of completion order.
    """

    def __init__(
        self,
        name: str,
        engine: str,
        items: Callable[[PipelineContext], Sequence[Any]],
        build_request: Callable[[PipelineContext, Any], Dict[str, Any]],
        lo_pct: float,
        hi_pct: float,
        parse_result: Callable[[PipelineContext, Dict[str, Any], Any], Any] = lambda ctx, raw, item: raw,
        fallback: Callable[[PipelineContext, Any], Any] = lambda ctx, item: None,
        group_size: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        label: Optional[str] = None,
    ):
        super().__init__(name, lo_pct, hi_pct, timeout_seconds)
        self.engine = engine
        self.items = items
        self.build_request = build_request
        self.parse_result = parse_result
        self.fallback = fallback
        self.group_size = settings.batch_group_size if group_size is None else group_size
        self.label = label or name

    async def _one(self, ctx: PipelineContext, runtime, item: Any) -> Any:
        raw = await runtime.call_engine(self.engine, self.build_request(ctx, item), self.timeout_seconds)
        return self.parse_result(ctx, raw, item)

    async def run(self, ctx: PipelineContext, runtime) -> StageResult:
        items = list(self.items(ctx))
        total = len(items)
        results: List[Any] = [None] * total
        fallback_indices: List[int] = []

        for start in range(0, total, self.group_size):
            group = list(range(start, min(start + self.group_size, total)))
            outcomes = await asyncio.gather(
                *(self._one(ctx, runtime, items[i]) for i in group),
                return_exceptions=True,
            )
            for index, outcome in zip(group, outcomes):
                if isinstance(outcome, ABORTING_ERRORS):
                    raise outcome
                if isinstance(outcome, BaseException):
                    logger.warning(
                        "Batch item failed, using fallback",
                        job_id=ctx.job_id,
                        stage=self.name,
                        index=index,
                        error=describe_error(outcome),
                    )
                    results[index] = self.fallback(ctx, items[index])
                    fallback_indices.append(index)
                else:
                    results[index] = outcome

            done = group[-1] + 1
            runtime.report(done / total)
            runtime.log(f"{self.label} {done}/{total} ({round(done * 100 / total)}%)")

        succeeded = total - len(fallback_indices)
        return StageResult(
            output=results,
            strategy=self.engine,
            usage=({"engine": self.engine, "units": succeeded},) if succeeded else (),
            degraded=bool(fallback_indices),
            details={"total": total, "succeeded": succeeded, "fallback_indices": fallback_indices},
        )


class LocalStage(Stage):
    """
    In-process step.

    fn returns the stage artifact, or a full StageResult when it calls
    engines itself and must report their usage.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[PipelineContext, Any], Awaitable[Any]],
        lo_pct: float,
        hi_pct: float,
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__(name, lo_pct, hi_pct, timeout_seconds)
        self.fn = fn

    async def run(self, ctx: PipelineContext, runtime) -> StageResult:
        if self.timeout_seconds:
            output = await runtime.with_timeout(self.fn(ctx, runtime), self.timeout_seconds)
        else:
            output = await self.fn(ctx, runtime)
        if isinstance(output, StageResult):
            return output
        return StageResult(output=output)
