"""Stage-based pipelines and the executor that runs them."""

from mediajobs.pipeline.context import FallbackRecord, PipelineContext, PipelineResult, StageResult
from mediajobs.pipeline.definitions import PipelineDefinition, default_pipelines
from mediajobs.pipeline.executor import PipelineExecutor, StageRuntime
from mediajobs.pipeline.stages import (
    BatchStage,
    EngineCallStage,
    FallbackChainStage,
    LocalStage,
    Stage,
    Strategy,
)

__all__ = [
    "BatchStage",
    "EngineCallStage",
    "FallbackChainStage",
    "FallbackRecord",
    "LocalStage",
    "PipelineContext",
    "PipelineDefinition",
    "PipelineExecutor",
    "PipelineResult",
    "Stage",
    "StageResult",
    "StageRuntime",
    "Strategy",
    "default_pipelines",
]
