"""
Static job registry.

Built-in jobs and their default schedules (UTC crontab); config.yml can
override `schedule` and `enabled` per job id under `scheduler.jobs`.
"""

from dataclasses import dataclass
from functools import partial

from postpilot.config import AppConfig, get_config
from postpilot.core.database import AsyncSessionLocal, SessionFactory
from postpilot.core.scheduler import ExecutionOutcome, JobBody, JobScheduler, ScheduledJob
from postpilot.jobs.experiment_evaluation import evaluate_running_experiments
from postpilot.jobs.prune_job_runs import prune_job_runs
from postpilot.services.experiment_store import ExperimentStore
from postpilot.services.job_ledger import ExecutionLedger
from postpilot.services.job_state_store import JobStateStore
from postpilot.services.notification_service import send_winner_notification


@dataclass(frozen=True)
class JobDefinition:
    id: str
    name: str
    schedule: str
    enabled: bool = True


EXPERIMENT_EVALUATION = JobDefinition(
    id="experiment_evaluation",
    name="Subject Line Test Auto-Complete",
    schedule="0 * * * *",  # top of every hour
)

PRUNE_JOB_RUNS = JobDefinition(
    id="prune_job_runs",
    name="Prune Job History",
    schedule="30 3 * * *",  # 03:30 UTC daily
)


def _register(
    scheduler: JobScheduler, config: AppConfig, definition: JobDefinition, body: JobBody
) -> ScheduledJob:
    override = config.scheduler.jobs.get(definition.id)
    schedule = definition.schedule
    enabled = definition.enabled
    if override is not None:
        if override.schedule:
            schedule = override.schedule
        if override.enabled is not None:
            enabled = override.enabled

    return scheduler.register(
        definition.id,
        name=definition.name,
        schedule=schedule,
        body=body,
        enabled=enabled,
    )


def build_job_scheduler(
    session_factory: SessionFactory = AsyncSessionLocal,
    config: AppConfig | None = None,
) -> JobScheduler:
    """Create the job scheduler with every built-in job registered."""
    config = config or get_config()
    settings = config.settings

    ledger = ExecutionLedger(session_factory)
    store = ExperimentStore(session_factory)
    scheduler = JobScheduler(
        ledger,
        job_states=JobStateStore(session_factory),
        default_timeout=settings.job_timeout_seconds,
    )

    notifier = send_winner_notification if config.experiments.notify_on_completion else None
    _register(
        scheduler,
        config,
        EXPERIMENT_EVALUATION,
        partial(evaluate_running_experiments, store, notifier=notifier),
    )
    _register(
        scheduler,
        config,
        PRUNE_JOB_RUNS,
        partial(prune_job_runs, ledger, keep=settings.job_run_retention),
    )

    return scheduler


async def run_job_once(
    job_id: str,
    session_factory: SessionFactory = AsyncSessionLocal,
    config: AppConfig | None = None,
) -> ExecutionOutcome:
    """
    Run one registered job outside the timer loop (CLI).

    Goes through the scheduler like a manual trigger from the API, so the
    run gets a single-flight claim and an execution record.

    Raises:
        JobNotFoundError: If `job_id` is not registered
    """
    scheduler = build_job_scheduler(session_factory, config)
    await scheduler.load_state()
    return await scheduler.run_manually(job_id)
