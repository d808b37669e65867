"""
PostPilot CLI - Command line interface for jobs and experiments.

Usage:
    postpilot --help              Show all commands
    postpilot jobs                Show the job registry
    postpilot run <job_id>        Run a job now and print its outcome
    postpilot evaluate            Run the experiment evaluation job once
    postpilot stats [--job-id]    Show execution statistics
"""

import asyncio

import typer

app = typer.Typer(
    name="postpilot",
    help="PostPilot CLI - Scheduled jobs and subject line experiments",
    no_args_is_help=True,
)


# --- Printer helpers ---


def _print_success(message: str) -> None:
    """Print a success message."""
    typer.echo(f"  ✅ {message}")


def _print_warning(message: str) -> None:
    """Print a warning message."""
    typer.echo(f"  ⚠️ {message}")


def _print_skipped(message: str) -> None:
    """Print a skipped step message."""
    typer.echo(f"  ⏭️ {message}")


def _print_error(message: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"❌ {message}", err=True)


def _fmt(value: object) -> str:
    return "-" if value is None else str(value)


def _print_outcome(job_id: str, outcome) -> None:
    from postpilot.models.job_run import JobRunStatus

    typer.echo(f"\n▶️ {job_id}")
    if outcome.status is JobRunStatus.SUCCESS and outcome.items_failed:
        _print_warning(outcome.result_summary or "Completed with errors")
    elif outcome.status is JobRunStatus.SUCCESS:
        _print_success(outcome.result_summary or "Completed")
    elif outcome.status is JobRunStatus.SKIPPED:
        _print_skipped(outcome.result_summary or "Skipped")
    else:
        _print_error(outcome.error_message or "Failed")
    typer.echo(
        f"  items: {outcome.items_processed} processed, "
        f"{outcome.items_successful} ok, {outcome.items_failed} failed "
        f"({_fmt(outcome.duration_ms)} ms)\n"
    )

    if outcome.status is JobRunStatus.FAILURE:
        raise typer.Exit(1)


@app.command()
def jobs():
    """Show registered jobs with their schedules and persisted state."""
    from postpilot.core.logging import setup_logging
    from postpilot.jobs.registry import build_job_scheduler

    setup_logging()

    async def run() -> None:
        scheduler = build_job_scheduler()
        await scheduler.load_state()
        status = scheduler.status()

        typer.echo(f"\n{status.job_count} jobs registered\n")
        for job in status.jobs:
            state = "enabled" if job.enabled else "disabled"
            typer.echo(f"  {job.id:<24} {job.schedule:<14} {state:<9} {job.name}")
            typer.echo(
                f"  {'':<24} last: {_fmt(job.last_run_at)}  next: {_fmt(job.next_run_at)}"
            )
        typer.echo("")

    asyncio.run(run())


@app.command()
def run(job_id: str = typer.Argument(..., help="Job ID, e.g. experiment_evaluation")):
    """Run a job now, record it in the execution ledger and print the outcome."""
    from postpilot.core.errors import JobNotFoundError
    from postpilot.core.logging import setup_logging
    from postpilot.jobs.registry import run_job_once

    setup_logging()

    try:
        outcome = asyncio.run(run_job_once(job_id))
    except JobNotFoundError as e:
        _print_error(str(e))
        raise typer.Exit(1) from e

    _print_outcome(job_id, outcome)


@app.command()
def evaluate(
    no_notify: bool = typer.Option(
        False, "--no-notify", help="Skip Discord notifications even if enabled in config.yml"
    ),
):
    """Evaluate running experiments once, recorded as an experiment_evaluation run."""
    from postpilot.config import AppConfig
    from postpilot.core.logging import setup_logging
    from postpilot.jobs.registry import EXPERIMENT_EVALUATION, run_job_once

    setup_logging()

    config = AppConfig()
    if no_notify:
        config.experiments.notify_on_completion = False

    outcome = asyncio.run(run_job_once(EXPERIMENT_EVALUATION.id, config=config))
    _print_outcome(EXPERIMENT_EVALUATION.id, outcome)


@app.command()
def stats(
    job_id: str | None = typer.Option(None, "--job-id", "-j", help="Only this job"),
):
    """Show execution statistics from the ledger."""
    from postpilot.core.database import AsyncSessionLocal
    from postpilot.core.logging import setup_logging
    from postpilot.services.job_ledger import ExecutionLedger

    setup_logging()

    result = asyncio.run(ExecutionLedger(AsyncSessionLocal).stats(job_id))

    typer.echo(f"\n📊 {job_id or 'All jobs'}")
    typer.echo(f"  runs:         {result.total_runs}")
    typer.echo(f"  successful:   {result.successful_runs}")
    typer.echo(f"  failed:       {result.failed_runs}")
    typer.echo(f"  success rate: {result.success_rate:.1f}%")
    typer.echo(f"  avg duration: {result.avg_duration_ms:.0f} ms")
    typer.echo(
        f"  last run:     {_fmt(result.last_run_at)} "
        f"({result.last_status.value if result.last_status else '-'})\n"
    )


@app.command()
def migrate():
    """Run database migrations (alembic upgrade head)."""
    import subprocess

    result = subprocess.run(["alembic", "upgrade", "head"], check=False)
    raise typer.Exit(result.returncode)


@app.command()
def serve(
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable hot reload"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to run on"),
):
    """Start the API server."""
    import subprocess

    cmd = ["uvicorn", "postpilot.main:app", "--host", "0.0.0.0", "--port", str(port)]
    if reload:
        cmd.append("--reload")

    subprocess.run(cmd, check=False)


if __name__ == "__main__":
    app()
