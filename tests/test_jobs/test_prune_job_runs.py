"""Tests for the execution ledger retention job."""

from datetime import timedelta

import pytest

from postpilot.core.datetime_utils import utc_now
from postpilot.jobs.prune_job_runs import prune_job_runs
from postpilot.models.job_run import JobRunStatus

pytestmark = pytest.mark.asyncio


async def _finished_run(ledger, job_id: str, minutes_ago: int) -> None:
    started_at = utc_now() - timedelta(minutes=minutes_ago)
    run = await ledger.open(job_id, job_id, started_at)
    await ledger.finalize(run.id, JobRunStatus.SUCCESS, started_at + timedelta(seconds=1), 1000)


async def test_prunes_every_job(ledger):
    for minutes in range(4):
        await _finished_run(ledger, "a", minutes)
        await _finished_run(ledger, "b", minutes)

    result = await prune_job_runs(ledger, keep=1)

    assert result.items_processed == 2
    assert result.items_failed == 0
    assert result.result_summary == "6 runs deleted across 2 jobs (keep 1)"
    assert len(await ledger.query(job_id="a")) == 1
    assert len(await ledger.query(job_id="b")) == 1


async def test_retention_disabled(ledger):
    await _finished_run(ledger, "a", 1)

    result = await prune_job_runs(ledger, keep=0)

    assert result.skipped is True
    assert len(await ledger.query()) == 1
