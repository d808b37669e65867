"""
Job scheduler with single-flight execution and an APScheduler timer.

The registry of named jobs lives in memory; each job has a crontab schedule,
an enabled flag and a `running` flag. A periodic APScheduler interval
schedule calls `JobScheduler.tick`, which starts every enabled job that is
due and not already running.

Single-flight: `_claim` checks and sets `job.running` with no `await` in
between, so on the event loop a tick and a manual trigger can never both
claim the same job. The flag is cleared in a `finally` block on every exit
path of a run (success, failure, timeout, cancellation).

Every run is recorded in the execution ledger: opened as RUNNING before the
body starts, finalized with SUCCESS / FAILURE / SKIPPED when it ends.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

from apscheduler import AsyncScheduler, ConflictPolicy
from apscheduler.datastores.memory import MemoryDataStore
from apscheduler.triggers.interval import IntervalTrigger

from postpilot.config import get_settings
from postpilot.core.cron import next_fire_time
from postpilot.core.datetime_utils import elapsed_ms, to_naive_utc, utc_now
from postpilot.core.errors import (
    DuplicateJobError,
    JobExecutionError,
    JobNotFoundError,
    PersistenceError,
)
from postpilot.core.logging import get_logger
from postpilot.models.job_run import JobRun, JobRunStatus
from postpilot.services.job_ledger import ExecutionLedger, JobStats
from postpilot.services.job_state_store import JobStateStore

logger = get_logger(__name__)


@dataclass
class JobResult:
    """What a job body reports back about its run."""

    items_processed: int = 0
    items_successful: int = 0
    items_failed: int = 0
    result_summary: str | None = None
    skipped: bool = False  # body decided there was nothing to do


JobBody = Callable[[], Awaitable[JobResult | None]]


@dataclass
class ScheduledJob:
    id: str
    name: str
    schedule: str
    body: JobBody = field(repr=False)
    enabled: bool = True
    timeout_seconds: float | None = None
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    running: bool = False


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only view of one registry entry."""

    id: str
    name: str
    schedule: str
    enabled: bool
    last_run_at: datetime | None
    next_run_at: datetime | None
    running: bool


@dataclass(frozen=True)
class SchedulerStatus:
    running: bool  # whether the periodic timer is active
    job_count: int
    jobs: list[JobSnapshot]


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of one job run, as returned to manual triggers."""

    job_id: str
    status: JobRunStatus
    run_id: str | None = None
    duration_ms: int | None = None
    items_processed: int = 0
    items_successful: int = 0
    items_failed: int = 0
    error_message: str | None = None
    result_summary: str | None = None

    @classmethod
    def already_running(cls, job_id: str) -> "ExecutionOutcome":
        return cls(
            job_id=job_id,
            status=JobRunStatus.SKIPPED,
            result_summary="Job is already running",
        )


class JobScheduler:
    """Registry of named jobs and the single-flight execution protocol."""

    def __init__(
        self,
        ledger: ExecutionLedger,
        job_states: JobStateStore | None = None,
        default_timeout: float | None = None,
    ) -> None:
        self._ledger = ledger
        self._job_states = job_states
        self._default_timeout = default_timeout
        self._jobs: dict[str, ScheduledJob] = {}
        self._tasks: set[asyncio.Task[ExecutionOutcome]] = set()
        self.loop_active = False

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(
        self,
        job_id: str,
        name: str,
        schedule: str,
        body: JobBody,
        enabled: bool = True,
        timeout_seconds: float | None = None,
        now: datetime | None = None,
    ) -> ScheduledJob:
        """
        Add a job to the registry.

        Raises:
            DuplicateJobError: If `job_id` is already registered
            ValueError: If `schedule` is not a valid crontab expression
        """
        if job_id in self._jobs:
            raise DuplicateJobError(job_id)

        reference = to_naive_utc(now) if now else utc_now()
        job = ScheduledJob(
            id=job_id,
            name=name,
            schedule=schedule,
            body=body,
            enabled=enabled,
            timeout_seconds=timeout_seconds,
            next_run_at=next_fire_time(schedule, reference),
        )
        self._jobs[job_id] = job

        logger.bind(job_id=job_id, schedule=schedule, enabled=enabled).debug("job_registered")
        return job

    async def load_state(self) -> None:
        """
        Apply persisted registry state (enabled flag, last/next run) and
        write back entries for jobs seen for the first time.

        A persisted next run is kept only if the schedule did not change, so a
        run missed while the process was down fires once at the first tick.
        """
        if self._job_states is None:
            return

        for job in self._jobs.values():
            state = await self._job_states.get_job(job.id)
            if state is not None:
                job.enabled = state.enabled
                job.last_run_at = state.last_run_at
                if state.schedule == job.schedule and state.next_run_at is not None:
                    job.next_run_at = state.next_run_at
            await self._persist(job)

        logger.bind(jobs=len(self._jobs)).info("job_state_loaded")

    def get(self, job_id: str) -> ScheduledJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def snapshot(self, job_id: str) -> JobSnapshot:
        return self._snapshot(self.get(job_id))

    @staticmethod
    def _snapshot(job: ScheduledJob) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            name=job.name,
            schedule=job.schedule,
            enabled=job.enabled,
            last_run_at=job.last_run_at,
            next_run_at=job.next_run_at,
            running=job.running,
        )

    def status(self) -> SchedulerStatus:
        """Snapshot of the whole registry, taken without yielding to the loop."""
        return SchedulerStatus(
            running=self.loop_active,
            job_count=len(self._jobs),
            jobs=[self._snapshot(job) for job in self._jobs.values()],
        )

    async def set_enabled(self, job_id: str, enabled: bool) -> JobSnapshot:
        """
        Enable or disable future scheduling of a job.

        Disabling does not interrupt an in-flight run. Setting the current
        value again is a no-op.
        """
        job = self.get(job_id)
        if job.enabled == enabled:
            return self._snapshot(job)

        job.enabled = enabled
        if enabled:
            # No catch-up for fire times that passed while disabled
            job.next_run_at = self._compute_next_run(job, utc_now())

        logger.bind(job_id=job_id, enabled=enabled).info("job_enabled_changed")
        await self._persist(job)
        return self._snapshot(job)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def tick(self, now: datetime | None = None) -> list[asyncio.Task[ExecutionOutcome]]:
        """
        Start every enabled job that is due and not already running.

        Returns:
            The tasks of the runs started by this tick
        """
        now = to_naive_utc(now) if now else utc_now()
        launched: list[asyncio.Task[ExecutionOutcome]] = []

        for job in self._jobs.values():
            if not job.enabled or job.next_run_at is None or job.next_run_at > now:
                continue
            if not self._claim(job):
                logger.bind(job_id=job.id).debug("job_tick_skipped_running")
                continue
            launched.append(self._spawn(job))

        return launched

    async def run_manually(self, job_id: str) -> ExecutionOutcome:
        """
        Run a job now and wait for its outcome.

        If the job is already running, nothing is started and a SKIPPED
        outcome is returned; no ledger record is written for it. Cancelling
        the caller does not cancel the run.
        """
        job = self.get(job_id)
        if not self._claim(job):
            logger.bind(job_id=job_id).info("job_run_skipped_already_running")
            return ExecutionOutcome.already_running(job_id)

        logger.bind(job_id=job_id).info("job_run_triggered_manually")
        return await asyncio.shield(self._spawn(job))

    def _claim(self, job: ScheduledJob) -> bool:
        if job.running:
            return False
        job.running = True
        return True

    def _spawn(self, job: ScheduledJob) -> asyncio.Task[ExecutionOutcome]:
        task = asyncio.create_task(self._execute(job), name=f"job:{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, job: ScheduledJob) -> ExecutionOutcome:
        """Run a claimed job: open the record, run the body, finalize, release."""
        started_at = utc_now()
        try:
            try:
                run = await self._ledger.open(job.id, job.name, started_at)
            except PersistenceError as e:
                logger.bind(job_id=job.id, error=str(e)).error("job_run_open_failed")
                return ExecutionOutcome(
                    job_id=job.id,
                    status=JobRunStatus.FAILURE,
                    error_message=str(e),
                )

            with logger.contextualize(job_id=job.id, run_id=run.id):
                logger.info("job_run_started")
                return await self._run_body(job, run, started_at)
        finally:
            job.running = False
            job.next_run_at = self._compute_next_run(job, utc_now())
            await self._persist(job)

    async def _run_body(
        self, job: ScheduledJob, run: JobRun, started_at: datetime
    ) -> ExecutionOutcome:
        result = JobResult()
        status = JobRunStatus.FAILURE
        error_message: str | None = "Job run interrupted"

        try:
            result = await self._invoke(job)
            status = JobRunStatus.SKIPPED if result.skipped else JobRunStatus.SUCCESS
            error_message = None
        except Exception as e:
            error_message = str(e) or type(e).__name__
            logger.bind(job_id=job.id, run_id=run.id, error=error_message).error("job_run_failed")
        finally:
            finished_at = utc_now()
            duration_ms = elapsed_ms(started_at, finished_at)
            job.last_run_at = started_at
            try:
                await self._ledger.finalize(
                    run.id,
                    status=status,
                    finished_at=finished_at,
                    duration_ms=duration_ms,
                    items_processed=result.items_processed,
                    items_successful=result.items_successful,
                    items_failed=result.items_failed,
                    error_message=error_message,
                    result_summary=result.result_summary,
                )
            except PersistenceError as e:
                logger.bind(job_id=job.id, run_id=run.id, error=str(e)).error(
                    "job_run_finalize_failed"
                )

        logger.bind(
            job_id=job.id,
            run_id=run.id,
            status=status.value,
            duration_ms=duration_ms,
            items_processed=result.items_processed,
            items_failed=result.items_failed,
        ).info("job_run_finished")

        return ExecutionOutcome(
            job_id=job.id,
            status=status,
            run_id=run.id,
            duration_ms=duration_ms,
            items_processed=max(
                result.items_processed, result.items_successful + result.items_failed
            ),
            items_successful=result.items_successful,
            items_failed=result.items_failed,
            error_message=error_message,
            result_summary=result.result_summary,
        )

    async def _invoke(self, job: ScheduledJob) -> JobResult:
        """Await the job body within its time budget."""
        timeout = job.timeout_seconds or self._default_timeout
        budget = asyncio.timeout(timeout)
        try:
            async with budget:
                result = await job.body()
        except TimeoutError:
            if budget.expired():
                raise JobExecutionError(
                    job.id, f"Job exceeded its time budget of {timeout:g}s"
                ) from None
            raise
        return result or JobResult()

    def _compute_next_run(self, job: ScheduledJob, after: datetime) -> datetime | None:
        try:
            return next_fire_time(job.schedule, after)
        except ValueError:
            logger.bind(job_id=job.id, schedule=job.schedule).warning("job_schedule_exhausted")
            return None

    async def _persist(self, job: ScheduledJob) -> None:
        if self._job_states is None:
            return
        try:
            await self._job_states.upsert_job_state(
                job.id,
                name=job.name,
                schedule=job.schedule,
                enabled=job.enabled,
                last_run_at=job.last_run_at,
                next_run_at=job.next_run_at,
            )
        except PersistenceError as e:
            logger.bind(job_id=job.id, error=str(e)).error("job_state_persist_failed")

    # ------------------------------------------------------------------
    # Ledger queries
    # ------------------------------------------------------------------

    async def history(
        self,
        job_id: str | None = None,
        status: JobRunStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[JobRun]:
        return await self._ledger.query(job_id=job_id, status=status, limit=limit, offset=offset)

    async def stats(self, job_id: str | None = None) -> JobStats:
        return await self._ledger.stats(job_id)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def wait_idle(self, timeout: float | None = None) -> None:
        """
        Wait for in-flight runs to finish; cancel those still running after
        `timeout` seconds. Cancelled runs are finalized as failures.
        """
        if not self._tasks:
            return

        pending = set(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.bind(cancelled=len(still_running)).warning("job_runs_cancelled_on_shutdown")
            await asyncio.gather(*still_running, return_exceptions=True)


# ----------------------------------------------------------------------
# Periodic timer (APScheduler)
# ----------------------------------------------------------------------

# Global scheduler instances
scheduler: AsyncScheduler | None = None
_job_scheduler: JobScheduler | None = None

TICK_SCHEDULE_ID = "scheduler_tick"
SHUTDOWN_GRACE_SECONDS = 10.0


async def _tick_job() -> None:
    """Interval job: start whatever is due."""
    if _job_scheduler is None:
        return
    launched = _job_scheduler.tick(utc_now())
    if launched:
        logger.bind(jobs=[task.get_name() for task in launched]).debug("scheduler_tick")


def get_job_scheduler() -> JobScheduler:
    """Get the process-wide job scheduler set up by `start_scheduler`."""
    if _job_scheduler is None:
        raise RuntimeError("Job scheduler is not initialized")
    return _job_scheduler


async def start_scheduler(job_scheduler: JobScheduler) -> AsyncScheduler | None:
    """
    Install the job scheduler and start the periodic tick.

    The job scheduler is always installed so manual runs work; the timer only
    starts when `scheduler_enabled` is set.
    """
    global scheduler, _job_scheduler

    _job_scheduler = job_scheduler
    await job_scheduler.load_state()

    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("scheduler_disabled_by_config")
        return None

    scheduler = AsyncScheduler(data_store=MemoryDataStore())

    # Required before calling other methods in APScheduler 4.x
    await scheduler.__aenter__()

    await scheduler.add_schedule(
        _tick_job,
        IntervalTrigger(seconds=settings.scheduler_tick_seconds),
        id=TICK_SCHEDULE_ID,
        conflict_policy=ConflictPolicy.replace,
    )

    await scheduler.start_in_background()
    job_scheduler.loop_active = True

    status = job_scheduler.status()
    logger.bind(
        tick_seconds=settings.scheduler_tick_seconds,
        jobs=[job.id for job in status.jobs],
    ).info("scheduler_started")

    return scheduler


async def stop_scheduler() -> None:
    """Stop the timer, then let in-flight runs finish (or cancel them)."""
    global scheduler, _job_scheduler

    if scheduler:
        await scheduler.__aexit__(None, None, None)
        scheduler = None
        logger.info("scheduler_stopped")

    if _job_scheduler is not None:
        _job_scheduler.loop_active = False
        await _job_scheduler.wait_idle(timeout=SHUTDOWN_GRACE_SECONDS)
        _job_scheduler = None
