"""Tests for the job scheduler's single-flight execution protocol."""

import asyncio
from datetime import timedelta

import pytest

from postpilot.core import scheduler as scheduler_module
from postpilot.core.datetime_utils import utc_now
from postpilot.core.errors import DuplicateJobError, JobNotFoundError
from postpilot.core.scheduler import (
    JobResult,
    JobScheduler,
    get_job_scheduler,
    start_scheduler,
    stop_scheduler,
)
from postpilot.models.job_run import JobRunStatus

pytestmark = pytest.mark.asyncio


class CountingBody:
    """Job body that counts calls and can be held open with an event."""

    def __init__(self, result: JobResult | None = None, gate: asyncio.Event | None = None):
        self.calls = 0
        self.result = result
        self.gate = gate

    async def __call__(self) -> JobResult | None:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return self.result


async def _wait_started(body: CountingBody) -> None:
    while body.calls == 0:
        await asyncio.sleep(0.001)


def _register_due(scheduler: JobScheduler, job_id: str, body, **kwargs):
    """Register an hourly job whose next run is already in the past."""
    return scheduler.register(
        job_id,
        name=job_id.replace("_", " ").title(),
        schedule="0 * * * *",
        body=body,
        now=utc_now() - timedelta(hours=2),
        **kwargs,
    )


class TestRegister:
    """Tests for JobScheduler.register."""

    async def test_computes_next_run(self, job_scheduler):
        reference = utc_now().replace(minute=15, second=0, microsecond=0)
        job = job_scheduler.register(
            "hourly", name="Hourly", schedule="0 * * * *", body=CountingBody(), now=reference
        )

        assert job.next_run_at == reference.replace(minute=0) + timedelta(hours=1)
        assert job.running is False

    async def test_duplicate_id_rejected(self, job_scheduler):
        job_scheduler.register("dup", name="Dup", schedule="0 * * * *", body=CountingBody())

        with pytest.raises(DuplicateJobError):
            job_scheduler.register("dup", name="Other", schedule="5 * * * *", body=CountingBody())

    async def test_invalid_schedule_rejected(self, job_scheduler):
        with pytest.raises(ValueError):
            job_scheduler.register("bad", name="Bad", schedule="not a cron", body=CountingBody())

        assert job_scheduler.status().job_count == 0

    async def test_unknown_job(self, job_scheduler):
        with pytest.raises(JobNotFoundError):
            await job_scheduler.run_manually("missing")


class TestTick:
    """Tests for JobScheduler.tick."""

    async def test_starts_due_jobs(self, job_scheduler, ledger):
        body = CountingBody(JobResult(items_processed=2, items_successful=2, result_summary="ok"))
        _register_due(job_scheduler, "due_job", body)

        tasks = job_scheduler.tick(utc_now())
        outcomes = await asyncio.gather(*tasks)

        assert body.calls == 1
        assert outcomes[0].status is JobRunStatus.SUCCESS
        runs = await ledger.query(job_id="due_job")
        assert len(runs) == 1
        assert runs[0].status is JobRunStatus.SUCCESS
        assert runs[0].items_processed == 2
        assert runs[0].result_summary == "ok"
        assert runs[0].duration_ms is not None

    async def test_skips_jobs_not_due(self, job_scheduler):
        body = CountingBody()
        job_scheduler.register("later", name="Later", schedule="0 * * * *", body=body)

        assert job_scheduler.tick(utc_now()) == []
        assert body.calls == 0

    async def test_skips_disabled_jobs(self, job_scheduler):
        body = CountingBody()
        _register_due(job_scheduler, "off", body, enabled=False)

        assert job_scheduler.tick(utc_now()) == []
        assert body.calls == 0

    async def test_reschedules_after_run(self, job_scheduler):
        job = _register_due(job_scheduler, "hourly", CountingBody())
        before = utc_now()

        await asyncio.gather(*job_scheduler.tick(before))

        assert job.last_run_at is not None
        assert job.next_run_at > before
        # Not due again on the same tick time
        assert job_scheduler.tick(before) == []

    async def test_running_job_is_not_started_twice(self, job_scheduler, ledger):
        gate = asyncio.Event()
        body = CountingBody(gate=gate)
        _register_due(job_scheduler, "slow", body)

        first = job_scheduler.tick(utc_now())
        await asyncio.sleep(0)
        second = job_scheduler.tick(utc_now())

        assert len(first) == 1
        assert second == []

        gate.set()
        await asyncio.gather(*first)
        assert body.calls == 1
        assert len(await ledger.query(job_id="slow")) == 1


class TestSingleFlight:
    """A tick and a manual trigger racing for the same job start one run."""

    async def test_manual_trigger_while_tick_run_in_flight(self, job_scheduler, ledger):
        gate = asyncio.Event()
        body = CountingBody(gate=gate)
        _register_due(job_scheduler, "race", body)

        tasks = job_scheduler.tick(utc_now())
        manual = await job_scheduler.run_manually("race")

        assert manual.status is JobRunStatus.SKIPPED
        assert manual.run_id is None

        gate.set()
        await asyncio.gather(*tasks)
        runs = await ledger.query(job_id="race")
        assert len(runs) == 1
        assert runs[0].status is JobRunStatus.SUCCESS
        assert body.calls == 1

    async def test_tick_while_manual_run_in_flight(self, job_scheduler, ledger):
        gate = asyncio.Event()
        body = CountingBody(gate=gate)
        _register_due(job_scheduler, "race", body)

        manual = asyncio.create_task(job_scheduler.run_manually("race"))
        await asyncio.sleep(0)

        assert job_scheduler.tick(utc_now()) == []
        assert job_scheduler.snapshot("race").running is True

        gate.set()
        outcome = await manual
        assert outcome.status is JobRunStatus.SUCCESS
        assert body.calls == 1

    async def test_concurrent_manual_triggers(self, job_scheduler, ledger):
        async def body() -> JobResult:
            await asyncio.sleep(0.05)
            return JobResult(items_processed=1, items_successful=1)

        _register_due(job_scheduler, "burst", body)

        outcomes = await asyncio.gather(*(job_scheduler.run_manually("burst") for _ in range(5)))

        statuses = [o.status for o in outcomes]
        assert statuses.count(JobRunStatus.SUCCESS) == 1
        assert statuses.count(JobRunStatus.SKIPPED) == 4
        runs = await ledger.query(job_id="burst")
        assert len(runs) == 1

    async def test_never_more_than_one_running_record(self, job_scheduler, ledger):
        gate = asyncio.Event()
        body = CountingBody(gate=gate)
        _register_due(job_scheduler, "race", body)

        tasks = job_scheduler.tick(utc_now())
        await asyncio.gather(*(job_scheduler.run_manually("race") for _ in range(3)))
        await _wait_started(body)

        running = await ledger.query(job_id="race", status=JobRunStatus.RUNNING)
        assert len(running) == 1

        gate.set()
        await asyncio.gather(*tasks)
        assert await ledger.query(job_id="race", status=JobRunStatus.RUNNING) == []


class TestFailureHandling:
    """Tests for failure isolation and finalization on every exit path."""

    async def test_failure_is_recorded_and_isolated(self, job_scheduler, ledger):
        async def broken() -> JobResult:
            raise RuntimeError("boom")

        healthy = CountingBody(JobResult(items_processed=1, items_successful=1))
        _register_due(job_scheduler, "broken", broken)
        _register_due(job_scheduler, "healthy", healthy)

        outcomes = await asyncio.gather(*job_scheduler.tick(utc_now()))

        by_job = {o.job_id: o for o in outcomes}
        assert by_job["broken"].status is JobRunStatus.FAILURE
        assert by_job["broken"].error_message == "boom"
        assert by_job["healthy"].status is JobRunStatus.SUCCESS

        failed_runs = await ledger.query(job_id="broken")
        assert failed_runs[0].status is JobRunStatus.FAILURE
        assert failed_runs[0].error_message == "boom"
        assert failed_runs[0].duration_ms is not None

    async def test_running_flag_cleared_after_failure(self, job_scheduler):
        async def broken() -> JobResult:
            raise ValueError("bad record")

        _register_due(job_scheduler, "broken", broken)

        first = await job_scheduler.run_manually("broken")
        second = await job_scheduler.run_manually("broken")

        assert first.status is JobRunStatus.FAILURE
        assert second.status is JobRunStatus.FAILURE
        assert job_scheduler.snapshot("broken").running is False

    async def test_items_failed_does_not_force_failure(self, job_scheduler):
        body = CountingBody(JobResult(items_processed=3, items_successful=2, items_failed=1))
        _register_due(job_scheduler, "partial", body)

        outcome = await job_scheduler.run_manually("partial")

        assert outcome.status is JobRunStatus.SUCCESS
        assert outcome.items_failed == 1

    async def test_item_counts_are_clamped(self, job_scheduler, ledger):
        body = CountingBody(JobResult(items_processed=1, items_successful=2, items_failed=1))
        _register_due(job_scheduler, "clamped", body)

        await job_scheduler.run_manually("clamped")

        run = (await ledger.query(job_id="clamped"))[0]
        assert run.items_successful + run.items_failed <= run.items_processed

    async def test_timeout_records_failure(self, ledger, job_states):
        scheduler = JobScheduler(ledger, job_states=job_states, default_timeout=0.05)

        async def hangs() -> JobResult:
            await asyncio.sleep(5)
            return JobResult()

        _register_due(scheduler, "hangs", hangs)

        outcome = await scheduler.run_manually("hangs")

        assert outcome.status is JobRunStatus.FAILURE
        assert "time budget" in outcome.error_message
        assert scheduler.snapshot("hangs").running is False

    async def test_body_timeout_error_is_not_a_budget_timeout(self, job_scheduler):
        async def raises_timeout() -> JobResult:
            raise TimeoutError("upstream timed out")

        _register_due(job_scheduler, "upstream", raises_timeout)

        outcome = await job_scheduler.run_manually("upstream")

        assert outcome.error_message == "upstream timed out"

    async def test_cancelled_run_is_finalized(self, ledger, job_states):
        scheduler = JobScheduler(ledger, job_states=job_states)
        body = CountingBody(gate=asyncio.Event())
        _register_due(scheduler, "stuck", body)

        tasks = scheduler.tick(utc_now())
        await _wait_started(body)
        await scheduler.wait_idle(timeout=0.01)

        assert all(task.done() for task in tasks)
        run = (await ledger.query(job_id="stuck"))[0]
        assert run.status is JobRunStatus.FAILURE
        assert run.error_message == "Job run interrupted"
        assert scheduler.snapshot("stuck").running is False


class TestResults:
    async def test_skipped_result(self, job_scheduler, ledger):
        _register_due(job_scheduler, "noop", CountingBody(JobResult(skipped=True)))

        outcome = await job_scheduler.run_manually("noop")

        assert outcome.status is JobRunStatus.SKIPPED
        assert (await ledger.query(job_id="noop"))[0].status is JobRunStatus.SKIPPED

    async def test_none_result_is_empty_success(self, job_scheduler):
        _register_due(job_scheduler, "quiet", CountingBody(None))

        outcome = await job_scheduler.run_manually("quiet")

        assert outcome.status is JobRunStatus.SUCCESS
        assert outcome.items_processed == 0


class TestEnableDisable:
    """Tests for JobScheduler.set_enabled."""

    async def test_disable_is_persisted_and_idempotent(self, job_scheduler, job_states):
        _register_due(job_scheduler, "toggle", CountingBody())

        await job_scheduler.set_enabled("toggle", False)
        snapshot = await job_scheduler.set_enabled("toggle", False)

        assert snapshot.enabled is False
        state = await job_states.get_job("toggle")
        assert state.enabled is False

    async def test_reenable_does_not_catch_up(self, job_scheduler):
        _register_due(job_scheduler, "toggle", CountingBody())

        await job_scheduler.set_enabled("toggle", False)
        snapshot = await job_scheduler.set_enabled("toggle", True)

        assert snapshot.next_run_at > utc_now()
        assert job_scheduler.tick(utc_now()) == []

    async def test_disable_does_not_interrupt_running_job(self, job_scheduler):
        gate = asyncio.Event()
        _register_due(job_scheduler, "busy", CountingBody(gate=gate))

        manual = asyncio.create_task(job_scheduler.run_manually("busy"))
        await asyncio.sleep(0)
        await job_scheduler.set_enabled("busy", False)
        gate.set()

        outcome = await manual
        assert outcome.status is JobRunStatus.SUCCESS
        assert job_scheduler.snapshot("busy").enabled is False

    async def test_manual_run_allowed_while_disabled(self, job_scheduler):
        body = CountingBody()
        _register_due(job_scheduler, "off", body, enabled=False)

        outcome = await job_scheduler.run_manually("off")

        assert outcome.status is JobRunStatus.SUCCESS
        assert body.calls == 1


class TestStatusAndState:
    async def test_status_snapshot(self, job_scheduler):
        gate = asyncio.Event()
        _register_due(job_scheduler, "a", CountingBody(gate=gate))
        job_scheduler.register("b", name="B", schedule="30 3 * * *", body=CountingBody())

        tasks = job_scheduler.tick(utc_now())
        status = job_scheduler.status()

        assert status.running is False
        assert status.job_count == 2
        by_id = {job.id: job for job in status.jobs}
        assert by_id["a"].running is True
        assert by_id["b"].running is False
        assert by_id["b"].schedule == "30 3 * * *"

        gate.set()
        await asyncio.gather(*tasks)

    async def test_load_state_applies_persisted_flags(self, ledger, job_states):
        first = JobScheduler(ledger, job_states=job_states)
        first.register("persisted", name="Persisted", schedule="0 * * * *", body=CountingBody())
        await first.load_state()
        await first.set_enabled("persisted", False)

        second = JobScheduler(ledger, job_states=job_states)
        second.register("persisted", name="Persisted", schedule="0 * * * *", body=CountingBody())
        await second.load_state()

        assert second.snapshot("persisted").enabled is False

    async def test_run_updates_persisted_state(self, job_scheduler, job_states):
        _register_due(job_scheduler, "tracked", CountingBody())

        await job_scheduler.run_manually("tracked")

        state = await job_states.get_job("tracked")
        assert state.last_run_at is not None
        assert state.next_run_at > state.last_run_at

    async def test_history_and_stats(self, job_scheduler):
        _register_due(job_scheduler, "counted", CountingBody())

        await job_scheduler.run_manually("counted")
        await job_scheduler.run_manually("counted")

        assert len(await job_scheduler.history(job_id="counted")) == 2
        stats = await job_scheduler.stats("counted")
        assert stats.total_runs == 2
        assert stats.success_rate == 100.0


class TestLifecycle:
    """Tests for start_scheduler / stop_scheduler."""

    async def test_disabled_timer_still_installs_scheduler(
        self, job_scheduler, test_settings, monkeypatch
    ):
        monkeypatch.setattr(scheduler_module, "get_settings", lambda: test_settings)
        job_scheduler.register("listed", name="Listed", schedule="0 * * * *", body=CountingBody())

        timer = await start_scheduler(job_scheduler)

        assert timer is None
        assert get_job_scheduler() is job_scheduler
        assert job_scheduler.status().running is False

        await stop_scheduler()

        with pytest.raises(RuntimeError):
            get_job_scheduler()
