"""Immutable state passed from stage to stage.

Each stage receives the PipelineContext built so far and returns a
StageResult; the executor folds the result into a new context with
dataclasses.replace. Nothing mutates a context after it is built, so a
stage can never see a half-written artifact from an earlier stage.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


def _frozen(mapping: Optional[Mapping]) -> Mapping:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class FallbackRecord:
    """One step down a fallback chain."""

    stage: str
    from_strategy: str
    to_strategy: Optional[str]
    reason: str

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "from": self.from_strategy,
            "to": self.to_strategy,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class StageResult:
    """What one stage produced.

    usage entries feed the cost calculator: {"engine": name, "units": n, ...}.
    """

    output: Any
    strategy: Optional[str] = None
    fallbacks: Tuple[FallbackRecord, ...] = ()
    usage: Tuple[dict, ...] = ()
    degraded: bool = False
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PipelineContext:
    job_id: str
    job_type: str
    input: Mapping[str, Any]
    artifacts: Mapping[str, Any] = field(default_factory=dict)
    strategies: Mapping[str, str] = field(default_factory=dict)
    fallbacks: Tuple[FallbackRecord, ...] = ()
    usage: Tuple[dict, ...] = ()
    degraded_stages: Tuple[str, ...] = ()
    details: Mapping[str, Any] = field(default_factory=dict)
    scratch_dir: Optional[Path] = None

    def __post_init__(self):
        object.__setattr__(self, "input", _frozen(self.input))
        object.__setattr__(self, "artifacts", _frozen(self.artifacts))
        object.__setattr__(self, "strategies", _frozen(self.strategies))
        object.__setattr__(self, "details", _frozen(self.details))

    def artifact(self, stage: str, default: Any = None) -> Any:
        return self.artifacts.get(stage, default)

    @property
    def degraded(self) -> bool:
        return bool(self.fallbacks or self.degraded_stages)

    def with_stage_result(self, stage: str, result: StageResult) -> "PipelineContext":
        strategies = dict(self.strategies)
        if result.strategy:
            strategies[stage] = result.strategy
        details = dict(self.details)
        if result.details:
            details[stage] = dict(result.details)
        return replace(
            self,
            artifacts={**self.artifacts, stage: result.output},
            strategies=strategies,
            fallbacks=self.fallbacks + tuple(result.fallbacks),
            usage=self.usage + tuple(result.usage),
            degraded_stages=self.degraded_stages + ((stage,) if result.degraded else ()),
            details=details,
        )


@dataclass(frozen=True)
class PipelineResult:
    """Final, frozen outcome of a successful run."""

    job_id: str
    output: Dict[str, Any]
    cost_cents: int
    strategies: Mapping[str, str]
    fallbacks: Tuple[FallbackRecord, ...]
    degraded: bool
