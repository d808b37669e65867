"""Retention job: trim the execution ledger to the newest records per job."""

from postpilot.core.errors import PersistenceError
from postpilot.core.logging import get_logger
from postpilot.core.scheduler import JobResult
from postpilot.services.job_ledger import ExecutionLedger

logger = get_logger(__name__)


async def prune_job_runs(ledger: ExecutionLedger, keep: int) -> JobResult:
    """Keep the newest `keep` finalized runs of every job; 0 or less disables pruning."""
    if keep <= 0:
        return JobResult(skipped=True, result_summary="Retention disabled")

    job_ids = await ledger.job_ids()
    deleted = 0
    failed = 0

    for job_id in job_ids:
        try:
            deleted += await ledger.prune(job_id, keep)
        except PersistenceError as e:
            failed += 1
            logger.bind(job_id=job_id, error=str(e)).error("job_runs_prune_failed")

    return JobResult(
        items_processed=len(job_ids),
        items_successful=len(job_ids) - failed,
        items_failed=failed,
        result_summary=f"{deleted} runs deleted across {len(job_ids)} jobs (keep {keep})",
    )
