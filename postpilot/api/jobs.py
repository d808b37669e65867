"""Job registry and execution history endpoints."""

from fastapi import APIRouter, HTTPException, Query, status

from postpilot.core.errors import JobNotFoundError
from postpilot.dependencies import SchedulerDep
from postpilot.models.job_run import JobRunStatus
from postpilot.schemas.scheduler import (
    ExecutionOutcomeResponse,
    JobEnabledUpdate,
    JobResponse,
    JobRunResponse,
    JobStatsResponse,
    SchedulerStatusResponse,
)

router = APIRouter()


@router.get("/jobs", response_model=SchedulerStatusResponse)
async def get_scheduler_status(scheduler: SchedulerDep) -> SchedulerStatusResponse:
    """
    Get the job registry snapshot.

    Includes schedule, enabled flag, last/next run and whether each job is
    currently running.
    """
    return SchedulerStatusResponse.model_validate(scheduler.status())


@router.get("/jobs/runs", response_model=list[JobRunResponse])
async def list_job_runs(
    scheduler: SchedulerDep,
    job_id: str | None = Query(default=None, description="Filter by job ID"),
    run_status: JobRunStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[JobRunResponse]:
    """List execution history, most recent first."""
    runs = await scheduler.history(job_id=job_id, status=run_status, limit=limit, offset=offset)
    return [JobRunResponse.model_validate(run) for run in runs]


@router.get("/jobs/stats", response_model=JobStatsResponse)
async def get_job_stats(
    scheduler: SchedulerDep,
    job_id: str | None = Query(default=None, description="Filter by job ID"),
) -> JobStatsResponse:
    """Success rate, average duration and last run, for one job or all jobs."""
    stats = await scheduler.stats(job_id)
    return JobStatsResponse.model_validate(stats)


@router.post("/jobs/{job_id}/run", response_model=ExecutionOutcomeResponse)
async def run_job(job_id: str, scheduler: SchedulerDep) -> ExecutionOutcomeResponse:
    """
    Run a job now and return its outcome.

    If the job is already running, nothing is started and the outcome has
    status `skipped`.
    """
    try:
        outcome = await scheduler.run_manually(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    return ExecutionOutcomeResponse.model_validate(outcome)


@router.put("/jobs/{job_id}/enabled", response_model=JobResponse)
async def set_job_enabled(
    job_id: str,
    request: JobEnabledUpdate,
    scheduler: SchedulerDep,
) -> JobResponse:
    """Enable or disable future scheduling of a job."""
    try:
        snapshot = await scheduler.set_enabled(job_id, request.enabled)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    return JobResponse.model_validate(snapshot)
