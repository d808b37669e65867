"""
Batch evaluation of running subject line experiments.

Registered with the scheduler as `experiment_evaluation`. For each running
experiment the decision engine is called on a single consistent read of its
variant counters. A winner verdict completes the experiment through the
store's compare-and-set; if a cancel got there first, the completion is
discarded. One experiment failing never aborts the batch.
"""

from collections.abc import Awaitable, Callable

from postpilot.core.logging import get_logger
from postpilot.core.scheduler import JobResult
from postpilot.services.experiment_store import ExperimentStore
from postpilot.services.notification_service import (
    WinnerNotification,
    send_winner_notification,
)
from postpilot.stats.significance import evaluate_experiment

logger = get_logger(__name__)

Notifier = Callable[[WinnerNotification], Awaitable[bool]]


async def evaluate_running_experiments(
    store: ExperimentStore,
    notifier: Notifier | None = send_winner_notification,
) -> JobResult:
    """
    Evaluate every running experiment and auto-complete those with a winner.

    Args:
        store: Experiment store
        notifier: Called once per completed experiment; None disables
            notifications. Delivery failures are logged and ignored.

    Returns:
        JobResult with one item per experiment attempted
    """
    experiments = await store.list_running_experiments()
    logger.bind(running=len(experiments)).info("experiment_evaluation_started")

    processed = 0
    successful = 0
    failed = 0
    completed = 0
    pending: list[WinnerNotification] = []

    for experiment in experiments:
        processed += 1
        try:
            verdict = evaluate_experiment(experiment)

            if verdict.is_winner and verdict.variant_id is not None:
                applied = await store.complete_experiment(experiment.id, verdict.variant_id)
                if applied:
                    completed += 1
                    winner = next(v for v in experiment.variants if v.id == verdict.variant_id)
                    logger.bind(
                        experiment_id=experiment.id,
                        variant_id=winner.id,
                        rate_difference=verdict.rate_difference,
                        z_score=round(verdict.z_score or 0.0, 3),
                    ).info("experiment_completed")
                    pending.append(
                        WinnerNotification(
                            experiment_id=experiment.id,
                            experiment_name=experiment.name,
                            winner_label=winner.label,
                            confidence_level=experiment.confidence_level,
                            rate_difference=verdict.rate_difference or 0.0,
                        )
                    )
                else:
                    logger.bind(experiment_id=experiment.id).info(
                        "experiment_completion_discarded"
                    )
            else:
                logger.bind(
                    experiment_id=experiment.id,
                    reason=verdict.reason,
                ).debug("experiment_continues")

            successful += 1
        except Exception as e:
            failed += 1
            logger.bind(experiment_id=experiment.id, error=str(e)).error(
                "experiment_evaluation_failed"
            )

    if notifier is not None:
        for notification in pending:
            try:
                await notifier(notification)
            except Exception as e:
                logger.bind(experiment_id=notification.experiment_id, error=str(e)).error(
                    "experiment_notification_failed"
                )

    summary = f"{processed} evaluated, {completed} completed, {failed} errors"
    logger.bind(
        processed=processed,
        completed=completed,
        failed=failed,
    ).info("experiment_evaluation_completed")

    return JobResult(
        items_processed=processed,
        items_successful=successful,
        items_failed=failed,
        result_summary=summary,
    )
