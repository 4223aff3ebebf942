"""
Unit tests for analysis/statistics.py
"""

import math

import pytest

from experimentation_engine.analysis.statistics import (
    DEFAULT_DAYS_TO_COMPLETION,
    DEFAULT_REQUIRED_PER_VARIATION,
    StatisticsEngine,
    Z_TABLE,
)
from experimentation_engine.config.settings import StatisticsSettings
from experimentation_engine.core.data_types import Variation


def arm(vid: str, visitors: int, conversions: int, is_control: bool = False) -> Variation:
    return Variation(
        id=vid,
        traffic_allocation=50,
        visitors=visitors,
        conversions=conversions,
        is_control=is_control,
    )


@pytest.fixture
def engine():
    return StatisticsEngine()


class TestZScore:
    """Tests for critical value lookup."""

    def test_table_values(self, engine):
        """Test that common confidence levels use the fixed table."""
        assert engine.z_score(0.95) == 1.96
        assert engine.z_score(0.99) == 2.576
        assert engine.z_score(0.90) == 1.645
        assert engine.z_score(0.80) == 1.28

    def test_other_levels_use_normal_quantile(self, engine):
        """Test that levels outside the table use the inverse normal CDF."""
        assert engine.z_score(0.975) == pytest.approx(2.2414, abs=1e-3)

    def test_table_is_two_sided(self):
        """Test the table is ordered by confidence."""
        assert Z_TABLE[0.99] > Z_TABLE[0.95] > Z_TABLE[0.90] > Z_TABLE[0.80]


class TestConfidenceInterval:
    """Tests for Wald confidence intervals."""

    def test_interval_brackets_rate(self, engine):
        """Test interval is centered on the observed rate."""
        low, high = engine.confidence_interval(0.1, 500, 0.95)
        margin = 1.96 * math.sqrt(0.1 * 0.9 / 500)
        assert low == pytest.approx(0.1 - margin)
        assert high == pytest.approx(0.1 + margin)

    def test_interval_clamped(self, engine):
        """Test interval never leaves [0, 1]."""
        low, high = engine.confidence_interval(0.01, 10, 0.95)
        assert low == 0.0
        assert high <= 1.0

    def test_no_visitors(self, engine):
        """Test an empty variation gets a degenerate interval."""
        assert engine.confidence_interval(0.0, 0, 0.95) == (0.0, 0.0)


class TestProbabilityToBeatControl:
    """Tests for probability to beat control."""

    def test_better_variation(self, engine):
        """Test a clearly better variation is very likely to win."""
        prob = engine.probability_to_beat_control(0.16, 500, 0.10, 500)
        assert prob == pytest.approx(0.9977, abs=1e-3)

    def test_equal_rates(self, engine):
        """Test identical rates give a coin flip."""
        assert engine.probability_to_beat_control(0.1, 500, 0.1, 500) == pytest.approx(0.5)

    def test_no_visitors(self, engine):
        """Test missing traffic on either side gives 0.5."""
        assert engine.probability_to_beat_control(0.1, 0, 0.1, 100) == 0.5
        assert engine.probability_to_beat_control(0.1, 100, 0.1, 0) == 0.5

    def test_zero_variance(self, engine):
        """Test degenerate rates resolve by comparison."""
        assert engine.probability_to_beat_control(1.0, 10, 0.0, 10) == 1.0
        assert engine.probability_to_beat_control(0.0, 10, 1.0, 10) == 0.0
        assert engine.probability_to_beat_control(0.0, 10, 0.0, 10) == 0.5


class TestExpectedLoss:
    """Tests for expected loss."""

    def test_losing_variation(self, engine):
        """Test loss scales with visitors."""
        assert engine.expected_loss(0.10, 0.15, 1000) == pytest.approx(50.0)

    def test_winning_variation_has_no_loss(self, engine):
        """Test loss is never negative."""
        assert engine.expected_loss(0.16, 0.10, 500) == 0.0


class TestTwoProportionZTest:
    """Tests for the pooled z-test."""

    def test_significant_difference(self, engine):
        """Test the reference 10% vs 16% comparison."""
        z, p = engine.two_proportion_z_test(50, 500, 80, 500)
        assert z == pytest.approx(2.82, abs=0.01)
        assert p == pytest.approx(0.0048, abs=2e-4)

    def test_degenerate_input(self, engine):
        """Test empty samples or zero variance give (0, 1)."""
        assert engine.two_proportion_z_test(0, 0, 5, 10) == (0.0, 1.0)
        assert engine.two_proportion_z_test(0, 10, 0, 10) == (0.0, 1.0)


class TestSignificance:
    """Tests for best-versus-control significance."""

    def test_clear_winner(self, engine):
        """Test a significant non-control winner is reported."""
        result = engine.significance([arm("control", 500, 50, True), arm("variant", 500, 80)], 0.95)
        assert result.is_significant
        assert result.winning_variation_id == "variant"
        assert result.effect == pytest.approx(0.06)
        assert result.p_value < 0.05

    def test_control_best_is_never_significant(self, engine):
        """Test that control leading never yields a winner."""
        result = engine.significance([arm("control", 1000, 150, True), arm("variant", 1000, 100)], 0.95)
        assert not result.is_significant
        assert result.winning_variation_id is None
        assert result.p_value == 1.0

    def test_not_significant_at_stricter_level(self, engine):
        """Test p-value is compared against 1 - confidence level."""
        variations = [arm("control", 1000, 100, True), arm("variant", 1000, 121)]
        assert engine.significance(variations, 0.80).is_significant
        assert not engine.significance(variations, 0.95).is_significant

    def test_control_defaults_to_first_variation(self, engine):
        """Test the first variation is control when none is flagged."""
        result = engine.significance([arm("a", 500, 50), arm("b", 500, 80)], 0.95)
        assert result.winning_variation_id == "b"

    def test_empty_variations(self, engine):
        """Test no variations gives a neutral result."""
        result = engine.significance([], 0.95)
        assert not result.is_significant
        assert result.p_value == 1.0


class TestPowerAnalysis:
    """Tests for power and sample size analysis."""

    def test_adequately_powered(self, engine):
        """Test the reference experiment reaches target power."""
        power = engine.power_analysis([arm("control", 500, 50, True), arm("variant", 500, 80)], 0.95)
        assert power.current_power == pytest.approx(0.805, abs=0.01)
        assert not power.is_underpowered

    def test_required_sample_size(self, engine):
        """Test required sample size for a 10% baseline and 5% relative lift."""
        power = engine.power_analysis([arm("control", 500, 50, True), arm("variant", 500, 80)], 0.95)
        assert power.required_sample_size_per_variation == pytest.approx(57766, rel=1e-3)
        assert power.required_sample_size == power.required_sample_size_per_variation * 2

    def test_small_sample_is_underpowered(self, engine):
        """Test ten visitors per arm are nowhere near enough."""
        power = engine.power_analysis([arm("control", 10, 1, True), arm("variant", 10, 2)], 0.95)
        assert power.is_underpowered
        assert power.current_power < 0.2
        assert power.days_to_completion > 0

    def test_no_control_conversions(self, engine):
        """Test a zero baseline falls back to defaults."""
        power = engine.power_analysis([arm("control", 100, 0, True), arm("variant", 100, 5)], 0.95)
        assert power.is_underpowered
        assert power.current_power == 0.0
        assert power.required_sample_size_per_variation == DEFAULT_REQUIRED_PER_VARIATION
        assert power.required_sample_size == DEFAULT_REQUIRED_PER_VARIATION * 2
        assert power.days_to_completion == DEFAULT_DAYS_TO_COMPLETION

    def test_observed_enrollment_rate(self, engine):
        """Test days to completion uses the supplied enrollment rate."""
        variations = [arm("control", 500, 50, True), arm("variant", 500, 80)]
        power = engine.power_analysis(variations, 0.95, samples_per_day=1000)
        remaining = power.required_sample_size - 1000
        assert power.days_to_completion == math.ceil(remaining / 1000)


class TestVariationMetrics:
    """Tests for per-variation statistics."""

    def test_control_metrics(self, engine):
        """Test control has neutral probability and no loss."""
        control = arm("control", 500, 50, True)
        metrics = engine.variation_metrics(control, control, 0.95)
        assert metrics.is_control
        assert metrics.probability_to_beat_control == 0.5
        assert metrics.expected_loss == 0.0
        assert metrics.conversion_rate == pytest.approx(0.1)

    def test_variant_metrics(self, engine):
        """Test a variant is compared against control."""
        control = arm("control", 1000, 150, True)
        variant = arm("variant", 1000, 100)
        metrics = engine.variation_metrics(variant, control, 0.95)
        assert not metrics.is_control
        assert metrics.probability_to_beat_control < 0.01
        assert metrics.expected_loss == pytest.approx(50.0)


class TestConstruction:
    """Tests for engine construction."""

    def test_from_settings(self):
        """Test settings are applied."""
        engine = StatisticsEngine.from_settings(
            StatisticsSettings(minimum_detectable_effect=0.1, target_power=0.9, default_samples_days=14)
        )
        assert engine.minimum_detectable_effect == 0.1
        assert engine.target_power == 0.9
        assert engine.default_samples_days == 14

    def test_invalid_parameters(self):
        """Test invalid parameters are rejected."""
        with pytest.raises(ValueError):
            StatisticsEngine(minimum_detectable_effect=0)
        with pytest.raises(ValueError):
            StatisticsEngine(target_power=1.0)
