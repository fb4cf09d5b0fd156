from contextlib import asynccontextmanager
import asyncio
import structlog

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from mediajobs.config import settings
from mediajobs.database import SessionLocal, init_db
from mediajobs.engines.registry import EngineRegistry
from mediajobs.logging_config import configure_logging
from mediajobs.models import JobType
from mediajobs.pipeline.definitions import default_pipelines
from mediajobs.pipeline.executor import PipelineExecutor
from mediajobs.routers.jobs import router as jobs_router
from mediajobs.schemas import HealthResponse
from mediajobs.services.blob_storage import build_blob_storage
from mediajobs.services.job_lifecycle import JobLifecycleManager
from mediajobs.services.job_queue import InMemoryJobQueue
from mediajobs.services.job_store import SqlJobStore
from mediajobs.services.job_worker import run_reaper, start_workers
from mediajobs.services.rate_limiter import RateLimiterRegistry

VERSION = "0.1.0"

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    configure_logging()
    logger.info(
        "Starting mediajobs service",
        database=settings.sqlalchemy_url,
        workers_per_partition=settings.workers_per_partition,
    )
    init_db()

    queue = InMemoryJobQueue()
    lifecycle = JobLifecycleManager(store=SqlJobStore(SessionLocal), queue=queue)
    limiters = RateLimiterRegistry.from_settings()
    executor = PipelineExecutor(
        lifecycle=lifecycle,
        engines=EngineRegistry.default(),
        limiters=limiters,
        pipelines=default_pipelines(),
        storage=build_blob_storage(),
    )

    app.state.queue = queue
    app.state.lifecycle = lifecycle
    app.state.limiters = limiters

    # Jobs left pending/queued by a previous process are reaped rather than re-enqueued
    stop = asyncio.Event()
    workers = start_workers(executor, queue)
    reaper = asyncio.create_task(run_reaper(lifecycle, stop=stop))
    app.state.workers = workers

    yield

    # Shutdown
    logger.info("Shutting down mediajobs service")
    stop.set()
    for worker in workers:
        worker.stop()
    cancelled = limiters.cancel_all()
    if cancelled:
        logger.info("Cancelled rate limiter waiters", count=cancelled)
    await asyncio.gather(reaper, *(w.task for w in workers), return_exceptions=True)


app = FastAPI(
    title="mediajobs - Media Generation Job Service",
    description="Asynchronous jobs for face swap, identity generation and LoRA training over fal.ai engines with fallback chains.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With"],
)

app.include_router(jobs_router, prefix="/api")


@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint with queue depth per partition."""
    queue = getattr(request.app.state, "queue", None)
    depths = {}
    if queue is not None:
        depths = {job_type.partition: queue.depth(job_type.partition) for job_type in JobType}
    return HealthResponse(status="ok", version=VERSION, queue_depths=depths)


@app.get("/api/status")
async def get_api_status(request: Request):
    """Worker and rate limiter status."""
    workers = getattr(request.app.state, "workers", [])
    limiters = getattr(request.app.state, "limiters", None)
    return {
        "status": "ok",
        "workers": [worker.get_stats() for worker in workers],
        "rate_limiters": limiters.get_status() if limiters else {},
    }
