"""
Execution ledger: append-only history of scheduled job runs.

Each run is opened as RUNNING and finalized exactly once. Finalization is a
conditional update on `status = 'running'`, so a terminal record is never
rewritten, and the ledger can be written concurrently by different jobs.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, delete, func, select, update

from postpilot.core.database import SessionFactory, session_scope
from postpilot.core.logging import get_logger
from postpilot.models.job_run import JobRun, JobRunStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class JobStats:
    """Aggregated execution statistics for one job (or all jobs)."""

    job_id: str | None
    total_runs: int
    successful_runs: int
    failed_runs: int
    success_rate: float  # percent, 0 when there are no runs
    avg_duration_ms: float  # over finalized runs, 0 when there are none
    last_run_at: datetime | None
    last_status: JobRunStatus | None


class ExecutionLedger:
    """Persistence operations over the `job_runs` table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def open(self, job_id: str, job_name: str, started_at: datetime) -> JobRun:
        """Append a RUNNING record for a job run that is starting."""
        run = JobRun(
            job_id=job_id,
            job_name=job_name,
            status=JobRunStatus.RUNNING,
            started_at=started_at,
            items_processed=0,
            items_successful=0,
            items_failed=0,
        )
        async with session_scope(self._session_factory) as db:
            db.add(run)
        return run

    async def finalize(
        self,
        run_id: str,
        status: JobRunStatus,
        finished_at: datetime,
        duration_ms: int,
        items_processed: int = 0,
        items_successful: int = 0,
        items_failed: int = 0,
        error_message: str | None = None,
        result_summary: str | None = None,
    ) -> bool:
        """
        Close a RUNNING record with its outcome.

        Returns:
            True if the record was finalized, False if it was already terminal
        """
        if not status.is_terminal:
            raise ValueError("A run can only be finalized with a terminal status")

        items_successful = max(items_successful, 0)
        items_failed = max(items_failed, 0)
        # Keep successful + failed <= processed
        items_processed = max(items_processed, items_successful + items_failed)

        stmt = (
            update(JobRun)
            .where(JobRun.id == run_id, JobRun.status == JobRunStatus.RUNNING)
            .values(
                status=status,
                finished_at=finished_at,
                duration_ms=duration_ms,
                items_processed=items_processed,
                items_successful=items_successful,
                items_failed=items_failed,
                error_message=error_message,
                result_summary=result_summary,
            )
        )
        async with session_scope(self._session_factory) as db:
            result = await db.execute(stmt)

        if result.rowcount != 1:
            logger.bind(run_id=run_id, status=status.value).warning("job_run_already_finalized")
            return False
        return True

    async def get(self, run_id: str) -> JobRun | None:
        async with session_scope(self._session_factory) as db:
            return await db.get(JobRun, run_id)

    async def query(
        self,
        job_id: str | None = None,
        status: JobRunStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[JobRun]:
        """List runs, most recent first, with optional job/status filters."""
        query = select(JobRun).order_by(JobRun.started_at.desc(), JobRun.id.desc())

        if job_id:
            query = query.where(JobRun.job_id == job_id)
        if status:
            query = query.where(JobRun.status == status)

        query = query.offset(offset).limit(limit)
        async with session_scope(self._session_factory) as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def job_ids(self) -> list[str]:
        """Distinct job ids present in the ledger."""
        async with session_scope(self._session_factory) as db:
            result = await db.execute(select(JobRun.job_id).distinct().order_by(JobRun.job_id))
            return list(result.scalars().all())

    async def stats(self, job_id: str | None = None) -> JobStats:
        """
        Aggregate run statistics.

        Success rate is a percentage of all recorded runs. Average duration
        only counts finalized runs (running records have no duration yet).
        """
        aggregate = select(
            func.count(JobRun.id),
            func.sum(case((JobRun.status == JobRunStatus.SUCCESS, 1), else_=0)),
            func.sum(case((JobRun.status == JobRunStatus.FAILURE, 1), else_=0)),
            func.avg(JobRun.duration_ms),
        )
        last_run = select(JobRun).order_by(JobRun.started_at.desc(), JobRun.id.desc()).limit(1)

        if job_id:
            aggregate = aggregate.where(JobRun.job_id == job_id)
            last_run = last_run.where(JobRun.job_id == job_id)

        async with session_scope(self._session_factory) as db:
            total, successful, failed, avg_duration = (await db.execute(aggregate)).one()
            last = (await db.execute(last_run)).scalar_one_or_none()

        total = total or 0
        successful = successful or 0

        return JobStats(
            job_id=job_id,
            total_runs=total,
            successful_runs=successful,
            failed_runs=failed or 0,
            success_rate=round(successful / total * 100, 2) if total > 0 else 0.0,
            avg_duration_ms=round(float(avg_duration), 2) if avg_duration is not None else 0.0,
            last_run_at=last.started_at if last else None,
            last_status=last.status if last else None,
        )

    async def prune(self, job_id: str, keep: int) -> int:
        """
        Delete finalized runs of `job_id` beyond the newest `keep`.

        Running records are never pruned.

        Returns:
            Number of deleted records
        """
        stale_ids = (
            select(JobRun.id)
            .where(JobRun.job_id == job_id, JobRun.status != JobRunStatus.RUNNING)
            .order_by(JobRun.started_at.desc(), JobRun.id.desc())
            .offset(keep)
        )
        async with session_scope(self._session_factory) as db:
            ids = list((await db.execute(stale_ids)).scalars().all())
            if not ids:
                return 0
            await db.execute(delete(JobRun).where(JobRun.id.in_(ids)))

        logger.bind(job_id=job_id, deleted=len(ids), keep=keep).info("job_runs_pruned")
        return len(ids)
