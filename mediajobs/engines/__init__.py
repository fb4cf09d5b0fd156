"""External AI engine adapters."""

from mediajobs.engines.base import (
    EngineClient,
    PollingEngineClient,
    PollResult,
    ProgressCallback,
    ProgressUpdate,
)
from mediajobs.engines.fal import FAL_ENDPOINTS, FalQueueEngine, build_fal_engines
from mediajobs.engines.local import HttpEngine, PassthroughEngine
from mediajobs.engines.registry import EngineRegistry

__all__ = [
    "EngineClient",
    "PollingEngineClient",
    "PollResult",
    "ProgressCallback",
    "ProgressUpdate",
    "FAL_ENDPOINTS",
    "FalQueueEngine",
    "build_fal_engines",
    "HttpEngine",
    "PassthroughEngine",
    "EngineRegistry",
]
