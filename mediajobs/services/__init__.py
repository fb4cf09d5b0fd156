"""Job orchestration services.

Components:
    1. Job Store - SqlJobStore (compare-and-set status writes)
    2. Job Lifecycle - JobLifecycleManager, the only writer of job state
    3. Queue - JobQueue, InMemoryJobQueue (partitions, leases, dead letters)
    4. Error Taxonomy - EngineError hierarchy, ErrorClassifier
    5. Retry - RetryPolicy, RetryConfig
    6. Rate Limiting - ResourceLimiter, RateLimiterRegistry
    7. Progress - ProgressChannel
    8. Flow Logging - FlowLogger, JobFlowLogger
    9. Workers - JobWorker, run_reaper
    10. Video Assembly - build_variant_command, run_ffmpeg
"""

# Error taxonomy
from mediajobs.services.errors import (
    ClassifiedError,
    EngineError,
    ErrorClassifier,
    ErrorType,
    FatalEngineError,
    InvalidStateError,
    JobNotFoundError,
    LimiterCancelledError,
    QueueTimeoutError,
    ResourceCleanupError,
    StageTimeoutError,
    TransientEngineError,
    error_classifier,
)

# Retry
from mediajobs.services.retry_policy import (
    RetryConfig,
    RetryPolicy,
    retry,
    with_retry,
)

# Rate limiting
from mediajobs.services.rate_limiter import (
    RateLimiterRegistry,
    ResourceLimiter,
    SlidingWindowRateLimiter,
)

# Job state and transport
from mediajobs.services.job_store import SqlJobStore
from mediajobs.services.job_queue import (
    Delivery,
    InMemoryJobQueue,
    JobQueue,
    QueueMessage,
)
from mediajobs.services.job_lifecycle import JobLifecycleManager, consolidate_log
from mediajobs.services.progress import ProgressChannel

# Supporting services
from mediajobs.services.cost_calculator import CostCalculator, cost_calculator
from mediajobs.services.blob_storage import (
    BlobStorage,
    LocalBlobStorage,
    R2BlobStorage,
    build_blob_storage,
)
from mediajobs.services.flow_logger import FlowLogger, JobFlowLogger, read_flow_log
from mediajobs.services.scratch import job_scratch
from mediajobs.services.video_assembly import build_variant_command, run_ffmpeg

# Workers
from mediajobs.services.job_worker import (
    JobWorker,
    WorkerStats,
    run_reaper,
    start_workers,
)

__all__ = [
    # Errors
    "ClassifiedError",
    "EngineError",
    "ErrorClassifier",
    "ErrorType",
    "FatalEngineError",
    "InvalidStateError",
    "JobNotFoundError",
    "LimiterCancelledError",
    "QueueTimeoutError",
    "ResourceCleanupError",
    "StageTimeoutError",
    "TransientEngineError",
    "error_classifier",
    # Retry
    "RetryConfig",
    "RetryPolicy",
    "retry",
    "with_retry",
    # Rate limiting
    "RateLimiterRegistry",
    "ResourceLimiter",
    "SlidingWindowRateLimiter",
    # Job state
    "SqlJobStore",
    "Delivery",
    "InMemoryJobQueue",
    "JobQueue",
    "QueueMessage",
    "JobLifecycleManager",
    "consolidate_log",
    "ProgressChannel",
    # Supporting
    "CostCalculator",
    "cost_calculator",
    "BlobStorage",
    "LocalBlobStorage",
    "R2BlobStorage",
    "build_blob_storage",
    "FlowLogger",
    "JobFlowLogger",
    "read_flow_log",
    "job_scratch",
    "build_variant_command",
    "run_ffmpeg",
    # Workers
    "JobWorker",
    "WorkerStats",
    "run_reaper",
    "start_workers",
]
