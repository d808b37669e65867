"""Tests for experiment statistics used by the admin dashboard."""

import pytest

from postpilot.models.experiment import Experiment, ExperimentStatus, Variant
from postpilot.stats.summary import summarize_experiment


def _experiment(*counts: tuple[int, int, int], min_sample_size: int = 100) -> Experiment:
    return Experiment(
        id=1,
        name="Subject test",
        template_type="digest",
        status=ExperimentStatus.RUNNING,
        confidence_level=95,
        min_sample_size=min_sample_size,
        variants=[
            Variant(
                id=index,
                experiment_id=1,
                label=f"Subject {index}",
                weight=1.0,
                sent_count=sent,
                opened_count=opened,
                clicked_count=clicked,
            )
            for index, (sent, opened, clicked) in enumerate(counts, start=1)
        ],
    )


class TestSummarizeExperiment:
    """Tests for summarize_experiment."""

    def test_rates_and_leader(self):
        summary = summarize_experiment(_experiment((1000, 300, 60), (1000, 220, 30)))

        assert summary.leader_id == 1
        assert summary.total_sent == 2000
        leader, challenger = summary.variants
        assert leader.is_leader
        assert leader.open_rate == 30.0
        assert leader.click_rate == 6.0
        assert leader.z_score is None
        assert challenger.open_rate == 22.0
        assert challenger.z_score == pytest.approx(4.078, abs=0.01)
        assert challenger.p_value < 0.001
        assert challenger.relative_improvement == pytest.approx(36.36, abs=0.01)

    def test_includes_current_verdict(self):
        summary = summarize_experiment(_experiment((1000, 300, 0), (1000, 220, 0)))

        assert summary.verdict is not None
        assert summary.verdict.is_winner
        assert summary.verdict.variant_id == 1

    def test_progress_uses_smallest_variant(self):
        summary = summarize_experiment(_experiment((80, 10, 0), (40, 5, 0)))

        assert summary.progress == 0.4
        assert summary.verdict.reason == "insufficient_data"

    def test_progress_caps_at_one(self):
        summary = summarize_experiment(_experiment((500, 10, 0), (400, 5, 0)))
        assert summary.progress == 1.0

    def test_no_sends_has_no_leader(self):
        summary = summarize_experiment(_experiment((0, 0, 0), (0, 0, 0)))

        assert summary.leader_id is None
        assert summary.progress == 0.0
        assert summary.required_sample_size > 0
        assert all(v.relative_improvement is None for v in summary.variants)

    def test_no_variants(self):
        summary = summarize_experiment(_experiment())

        assert summary.variants == []
        assert summary.leader_id is None
        assert summary.verdict.reason == "not_enough_variants"
