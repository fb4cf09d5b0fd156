"""Job API endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import ValidationError
import structlog

from mediajobs.models import JobStatus, JobType
from mediajobs.schemas import JobCreate, JobListResponse, JobResponse
from mediajobs.services.errors import InvalidStateError, JobNotFoundError
from mediajobs.services.job_lifecycle import JobLifecycleManager

logger = structlog.get_logger()

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_lifecycle(request: Request) -> JobLifecycleManager:
    """Dependency that provides the app's lifecycle manager."""
    return request.app.state.lifecycle


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(
    job_data: JobCreate,
    lifecycle: JobLifecycleManager = Depends(get_lifecycle),
):
    """Create a job and queue it for processing."""
    try:
        job = await lifecycle.create_job(
            job_data.type,
            job_data.input_payload,
            reference_id=job_data.reference_id,
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False),
        )
    return JobResponse.from_job(job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    job_type: Optional[JobType] = Query(None, alias="type", description="Filter by job type"),
    status_filter: Optional[JobStatus] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    lifecycle: JobLifecycleManager = Depends(get_lifecycle),
):
    """List jobs, newest first."""
    jobs = await lifecycle.list_jobs(
        job_type=job_type.value if job_type else None,
        status=status_filter.value if status_filter else None,
        limit=limit,
        offset=offset,
    )
    return JobListResponse(jobs=[JobResponse.from_job(job) for job in jobs], count=len(jobs))


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    lifecycle: JobLifecycleManager = Depends(get_lifecycle),
):
    """Get a job with its progress log and output."""
    try:
        job = await lifecycle.get_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse.from_job(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: str,
    lifecycle: JobLifecycleManager = Depends(get_lifecycle),
):
    """Cancel a job that has not yet finished."""
    try:
        job = await lifecycle.cancel_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return JobResponse.from_job(job)
