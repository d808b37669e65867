"""
Statistical decision engine for subject line experiments.

Pure functions: given an experiment's thresholds and a consistent snapshot of
its variant counters, decide whether to keep the test running or declare a
winner. Open rates are compared with a pooled two-proportion z-test.

Decision procedure:
1. Every variant must have sent at least `min_sample_size` emails.
2. The leader is the variant with the highest open rate (earliest wins ties).
3. The leader is compared with each challenger; it wins only if every
   comparison clears the two-tailed critical z for the confidence level.
4. The reported rate difference (percentage points) and z are against the
   runner-up, the closest challenger.
"""

import enum
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from scipy.stats import norm

from postpilot.core.errors import InsufficientDataError
from postpilot.models.experiment import Experiment

MIN_CONFIDENCE_LEVEL = 80
MAX_CONFIDENCE_LEVEL = 99


class VariantCounters(Protocol):
    """Anything exposing a variant's id and open counters (ORM Variant included)."""

    id: int
    sent_count: int
    opened_count: int


class Decision(str, enum.Enum):
    CONTINUE = "continue"
    WINNER = "winner"


@dataclass(frozen=True)
class Verdict:
    """Outcome of evaluating one experiment."""

    decision: Decision
    reason: str
    variant_id: int | None = None
    rate_difference: float | None = None  # percentage points
    z_score: float | None = None
    p_value: float | None = None

    @property
    def is_winner(self) -> bool:
        return self.decision is Decision.WINNER

    @classmethod
    def keep_running(
        cls, reason: str, z_score: float | None = None, p_value: float | None = None
    ) -> "Verdict":
        return cls(decision=Decision.CONTINUE, reason=reason, z_score=z_score, p_value=p_value)

    @classmethod
    def winner(
        cls, variant_id: int, rate_difference: float, z_score: float, p_value: float
    ) -> "Verdict":
        return cls(
            decision=Decision.WINNER,
            reason="significant",
            variant_id=variant_id,
            rate_difference=rate_difference,
            z_score=z_score,
            p_value=p_value,
        )


def open_rate(opened: int, sent: int) -> float:
    """Open rate as a proportion, 0 when nothing was sent."""
    return opened / sent if sent > 0 else 0.0


def two_proportion_z(opened_a: int, sent_a: int, opened_b: int, sent_b: int) -> float:
    """
    Pooled two-proportion z-statistic for rate(a) - rate(b).

    Returns 0 when either sample is empty or the pooled rate is degenerate
    (0% or 100%), where the standard error vanishes.
    """
    if sent_a == 0 or sent_b == 0:
        return 0.0

    p_a = opened_a / sent_a
    p_b = opened_b / sent_b
    pooled = (opened_a + opened_b) / (sent_a + sent_b)

    if pooled <= 0.0 or pooled >= 1.0:
        return 0.0

    standard_error = math.sqrt(pooled * (1 - pooled) * (1 / sent_a + 1 / sent_b))
    if standard_error == 0:
        return 0.0

    return (p_a - p_b) / standard_error


def critical_z(confidence_level: float) -> float:
    """
    Two-tailed critical z for a confidence level given in percent.

    95 -> 1.96, 90 -> 1.645, 99 -> 2.576.
    """
    if not 0 < confidence_level < 100:
        raise ValueError(f"Confidence level must be between 0 and 100, got {confidence_level}")
    alpha = 1 - confidence_level / 100
    return float(norm.ppf(1 - alpha / 2))


def two_tailed_p_value(z_score: float) -> float:
    return float(2 * norm.sf(abs(z_score)))


def validate_confidence_level(confidence_level: int) -> int:
    if not MIN_CONFIDENCE_LEVEL <= confidence_level <= MAX_CONFIDENCE_LEVEL:
        raise ValueError(
            f"Confidence level must be between {MIN_CONFIDENCE_LEVEL} and "
            f"{MAX_CONFIDENCE_LEVEL}, got {confidence_level}"
        )
    return confidence_level


def required_sample_size(
    baseline_rate: float,
    minimum_detectable_effect: float = 0.05,
    confidence_level: float = 95,
    power: float = 0.8,
) -> int:
    """
    Sends per variant needed to detect `minimum_detectable_effect` over
    `baseline_rate` with the given confidence and power.
    """
    p1 = min(max(baseline_rate, 0.0), 1.0)
    p2 = min(p1 + minimum_detectable_effect, 1.0)
    if p2 <= p1:
        raise ValueError("Minimum detectable effect leaves no room above the baseline rate")

    z_alpha = critical_z(confidence_level)
    z_beta = float(norm.ppf(power))
    p_bar = (p1 + p2) / 2

    numerator = (
        z_alpha * math.sqrt(2 * p_bar * (1 - p_bar))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return math.ceil(numerator / (p2 - p1) ** 2)


def _check_counters(variant: VariantCounters) -> None:
    if variant.sent_count < 0 or variant.opened_count < 0:
        raise ValueError(f"Variant {variant.id} has negative counters")
    if variant.opened_count > variant.sent_count:
        raise ValueError(
            f"Variant {variant.id} has more opens ({variant.opened_count}) "
            f"than sends ({variant.sent_count})"
        )


def _require_samples(variants: Sequence[VariantCounters], min_sample_size: int) -> None:
    # A zero-send variant is always insufficient, even with min_sample_size 0
    gate = max(min_sample_size, 1)
    short = [v.id for v in variants if v.sent_count < gate]
    if short:
        raise InsufficientDataError(f"Variants below sample size {gate}: {short}")


def rank_variants(variants: Sequence[VariantCounters]) -> list[VariantCounters]:
    """Order variants by open rate, best first; earlier variants win ties."""
    indexed = list(enumerate(variants))
    indexed.sort(key=lambda pair: (-open_rate(pair[1].opened_count, pair[1].sent_count), pair[0]))
    return [variant for _, variant in indexed]


def evaluate_variants(
    variants: Sequence[VariantCounters],
    confidence_level: int,
    min_sample_size: int,
) -> Verdict:
    """
    Decide continue/winner for one experiment's variants.

    Raises:
        ValueError: If counters are malformed (opens above sends, negatives)
    """
    if len(variants) < 2:
        return Verdict.keep_running("not_enough_variants")

    for variant in variants:
        _check_counters(variant)

    try:
        _require_samples(variants, min_sample_size)
    except InsufficientDataError:
        return Verdict.keep_running("insufficient_data")

    threshold = critical_z(confidence_level)
    leader, *challengers = rank_variants(variants)
    leader_rate = open_rate(leader.opened_count, leader.sent_count)

    comparisons = [
        (
            two_proportion_z(
                leader.opened_count, leader.sent_count, challenger.opened_count, challenger.sent_count
            ),
            challenger,
        )
        for challenger in challengers
    ]
    weakest_z, runner_up = min(comparisons, key=lambda pair: pair[0])
    p_value = two_tailed_p_value(weakest_z)
    runner_up_rate = open_rate(runner_up.opened_count, runner_up.sent_count)

    # Equal rates give z = 0, so a tie can never pass the threshold
    if leader_rate <= runner_up_rate or abs(weakest_z) < threshold:
        return Verdict.keep_running("not_significant", z_score=weakest_z, p_value=p_value)

    return Verdict.winner(
        variant_id=leader.id,
        rate_difference=round(abs(leader_rate - runner_up_rate) * 100, 2),
        z_score=weakest_z,
        p_value=p_value,
    )


def evaluate_experiment(experiment: Experiment) -> Verdict:
    """Evaluate an Experiment (with loaded variants) against its own thresholds."""
    return evaluate_variants(
        experiment.variants,
        confidence_level=experiment.confidence_level,
        min_sample_size=experiment.min_sample_size,
    )
