"""
Jobs router for cron job management API.

Endpoints:
- GET /jobs - List jobs
- POST /jobs - Create and schedule a job
- GET /jobs/{job_id} - Get job details
- PATCH /jobs/{job_id} - Update job fields (reschedules if expression changed)
- DELETE /jobs/{job_id} - Unschedule and delete a job with its runs
- POST /jobs/{job_id}/pause - Suspend firing
- POST /jobs/{job_id}/resume - Continue firing
- POST /jobs/{job_id}/trigger - Run now (admission still applies)
- GET /jobs/{job_id}/runs - Run history, newest first
- GET /jobs/{job_id}/logs - Log text of a run (latest by default)
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse

from ..dependencies import get_scheduler_service
from ..schemas.jobs import (
    JobCreateRequest,
    JobUpdateRequest,
    JobResponse,
    JobListResponse,
    RunResponse,
    RunListResponse,
    MessageResponse,
)
from ...scheduler.errors import (
    AlreadyRunningError,
    InvalidScheduleError,
    JobNotFoundError,
    RunNotFoundError,
    ValidationError,
)
from ...scheduler.service import SchedulerService


router = APIRouter()


def _job_to_response(service: SchedulerService, job) -> JobResponse:
    """Convert a Job entity plus its schedule state to an API response."""
    return JobResponse(**service.describe_job(job))


def _run_to_response(run) -> RunResponse:
    """Convert a Run entity to an API response."""
    return RunResponse(**run.to_dict())


@router.get("", response_model=JobListResponse)
async def list_jobs(service: SchedulerService = Depends(get_scheduler_service)):
    """
    List all registered jobs in id order.

    Each entry includes next fire time, last run and run count.
    """
    jobs = service.list_jobs()
    return JobListResponse(
        jobs=[_job_to_response(service, job) for job in jobs],
        total=len(jobs),
    )


@router.post("", response_model=JobResponse, status_code=201)
async def create_job(
    request: JobCreateRequest,
    service: SchedulerService = Depends(get_scheduler_service),
):
    """
    Create a job and bind it to its cron expression.

    The expression is validated before anything is stored. Omitted fields
    take their defaults (model sonnet, 10 minute timeout, threshold 90%).
    """
    try:
        job = service.create_job(request.model_dump(exclude_none=True))
        return _job_to_response(service, job)

    except (ValidationError, InvalidScheduleError) as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: int, service: SchedulerService = Depends(get_scheduler_service)):
    """Get a job with its schedule state."""
    try:
        job = service.get_job(job_id)
        return _job_to_response(service, job)

    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.patch("/{job_id}", response_model=JobResponse)
async def update_job(
    job_id: int,
    request: JobUpdateRequest,
    service: SchedulerService = Depends(get_scheduler_service),
):
    """
    Update a job.

    Only fields present in the body change. A new expression replaces the
    trigger; an invalid one leaves the job untouched.
    """
    changes = request.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No update fields provided")

    try:
        job = service.update_job(job_id, changes)
        return _job_to_response(service, job)

    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (ValidationError, InvalidScheduleError) as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{job_id}", response_model=MessageResponse)
async def delete_job(job_id: int, service: SchedulerService = Depends(get_scheduler_service)):
    """Unschedule a job and delete it together with its run history."""
    try:
        job = service.delete_job(job_id)
        return MessageResponse(job_id=job_id, message=f"Job deleted: {job.name}")

    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{job_id}/pause", response_model=JobResponse)
async def pause_job(job_id: int, service: SchedulerService = Depends(get_scheduler_service)):
    """Suspend firing. A run already in progress is not affected."""
    try:
        job = service.pause(job_id)
        return _job_to_response(service, job)

    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{job_id}/resume", response_model=JobResponse)
async def resume_job(job_id: int, service: SchedulerService = Depends(get_scheduler_service)):
    """Continue firing a paused job."""
    try:
        job = service.resume(job_id)
        return _job_to_response(service, job)

    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{job_id}/trigger", response_model=MessageResponse, status_code=202)
async def trigger_job(job_id: int, service: SchedulerService = Depends(get_scheduler_service)):
    """
    Run a job now, outside its schedule.

    Returns immediately. The parallel cap and usage guards still apply, so
    the resulting run may be recorded as skipped.
    """
    try:
        service.trigger(job_id)
        return MessageResponse(job_id=job_id, message="Job triggered")

    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/{job_id}/runs", response_model=RunListResponse)
async def list_job_runs(
    job_id: int,
    limit: int = Query(default=20, ge=1, le=200, description="Maximum runs to return"),
    offset: int = Query(default=0, ge=0, description="Runs to skip"),
    status: Optional[str] = Query(default=None, description="Filter by run status"),
    service: SchedulerService = Depends(get_scheduler_service),
):
    """Run history for a job, newest first."""
    try:
        runs, total = service.list_runs(job_id, limit=limit, offset=offset, status=status)
        return RunListResponse(
            runs=[_run_to_response(run) for run in runs],
            total=total,
            limit=limit,
            offset=offset,
        )

    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{job_id}/logs", response_class=PlainTextResponse)
async def get_job_log(
    job_id: int,
    run: Optional[int] = Query(default=None, description="Run ID (default: latest run)"),
    service: SchedulerService = Depends(get_scheduler_service),
):
    """Log text of a run: header, tagged stderr lines and the result section."""
    try:
        return PlainTextResponse(service.get_log(job_id, run_id=run))

    except (JobNotFoundError, RunNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
