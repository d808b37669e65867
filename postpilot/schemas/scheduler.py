from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from postpilot.models.job_run import JobRunStatus


class JobResponse(BaseModel):
    """One entry of the job registry."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    schedule: str
    enabled: bool
    last_run_at: datetime | None
    next_run_at: datetime | None
    running: bool


class SchedulerStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    running: bool
    job_count: int
    jobs: list[JobResponse]


class JobEnabledUpdate(BaseModel):
    """Request body for enabling/disabling a job."""

    enabled: bool


class ExecutionOutcomeResponse(BaseModel):
    """Result of a manual run."""

    model_config = ConfigDict(from_attributes=True)

    job_id: str
    status: JobRunStatus
    run_id: str | None
    duration_ms: int | None
    items_processed: int
    items_successful: int
    items_failed: int
    error_message: str | None
    result_summary: str | None


class JobRunResponse(BaseModel):
    """One execution record."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    job_name: str
    status: JobRunStatus
    started_at: datetime
    finished_at: datetime | None
    duration_ms: int | None
    items_processed: int
    items_successful: int
    items_failed: int
    error_message: str | None
    result_summary: str | None


class JobStatsResponse(BaseModel):
    """Aggregated execution statistics."""

    model_config = ConfigDict(from_attributes=True)

    job_id: str | None
    total_runs: int
    successful_runs: int
    failed_runs: int
    success_rate: float = Field(description="Percent of runs that succeeded")
    avg_duration_ms: float
    last_run_at: datetime | None
    last_status: JobRunStatus | None
