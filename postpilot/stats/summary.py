"""Read-only experiment statistics for the admin dashboard."""

from dataclasses import dataclass

from postpilot.models.experiment import Experiment
from postpilot.stats.significance import (
    Verdict,
    evaluate_experiment,
    open_rate,
    rank_variants,
    required_sample_size,
    two_proportion_z,
    two_tailed_p_value,
)

# Baseline used for the sample size estimate before any opens are recorded
DEFAULT_BASELINE_RATE = 0.1


@dataclass(frozen=True)
class VariantSummary:
    variant_id: int
    label: str
    sent: int
    opened: int
    clicked: int
    open_rate: float  # percent
    click_rate: float  # percent
    is_leader: bool
    z_score: float | None  # versus the leader
    p_value: float | None
    relative_improvement: float | None  # leader over this variant, percent


@dataclass(frozen=True)
class ExperimentSummary:
    experiment_id: int
    status: str
    confidence_level: int
    min_sample_size: int
    total_sent: int
    leader_id: int | None
    required_sample_size: int
    progress: float  # 0..1 toward min_sample_size on the smallest variant
    verdict: Verdict | None
    variants: list[VariantSummary]


def summarize_experiment(experiment: Experiment) -> ExperimentSummary:
    """Compute per-variant rates and the current verdict for an experiment."""
    variants = list(experiment.variants)
    ranked = rank_variants(variants) if variants else []
    leader = ranked[0] if len(ranked) >= 2 and ranked[0].sent_count > 0 else None

    summaries: list[VariantSummary] = []
    for variant in variants:
        rate = open_rate(variant.opened_count, variant.sent_count)
        z_score: float | None = None
        p_value: float | None = None
        improvement: float | None = None

        if leader is not None and variant.id != leader.id:
            z_score = two_proportion_z(
                leader.opened_count, leader.sent_count, variant.opened_count, variant.sent_count
            )
            p_value = two_tailed_p_value(z_score)
            if rate > 0:
                leader_rate = open_rate(leader.opened_count, leader.sent_count)
                improvement = round((leader_rate - rate) / rate * 100, 2)

        summaries.append(
            VariantSummary(
                variant_id=variant.id,
                label=variant.label,
                sent=variant.sent_count,
                opened=variant.opened_count,
                clicked=variant.clicked_count,
                open_rate=round(rate * 100, 2),
                click_rate=round(variant.click_rate * 100, 2),
                is_leader=leader is not None and variant.id == leader.id,
                z_score=z_score,
                p_value=p_value,
                relative_improvement=improvement,
            )
        )

    baseline = max(
        (open_rate(v.opened_count, v.sent_count) for v in variants), default=0.0
    ) or DEFAULT_BASELINE_RATE
    smallest_sample = min((v.sent_count for v in variants), default=0)
    if experiment.min_sample_size > 0:
        progress = min(smallest_sample / experiment.min_sample_size, 1.0)
    else:
        progress = 1.0

    try:
        needed = required_sample_size(
            min(baseline, 0.95), confidence_level=experiment.confidence_level
        )
    except ValueError:
        needed = experiment.min_sample_size

    verdict: Verdict | None
    try:
        verdict = evaluate_experiment(experiment)
    except ValueError:
        verdict = None

    return ExperimentSummary(
        experiment_id=experiment.id,
        status=experiment.status.value,
        confidence_level=experiment.confidence_level,
        min_sample_size=experiment.min_sample_size,
        total_sent=experiment.total_sent,
        leader_id=leader.id if leader is not None else None,
        required_sample_size=needed,
        progress=round(progress, 4),
        verdict=verdict,
        variants=summaries,
    )
