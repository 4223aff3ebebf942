"""
Statistical analysis for conversion-rate experiments.

Pure functions over visitor and conversion counts:
- Wald confidence intervals for a conversion rate
- Probability that a variation beats control (normal approximation)
- Expected loss of shipping a variation instead of control
- Pooled two-proportion z-test
- Power and sample size analysis against a relative minimum detectable effect

Nothing here raises on degenerate input (no visitors, zero variance);
every function returns a neutral value instead so the monitoring cycle can
keep going.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence

import numpy as np
from scipy import stats

from experimentation_engine.core.data_types import (
    PowerAnalysis,
    StatisticalSignificance,
    Variation,
    VariationMetrics,
)
from experimentation_engine.core.utils import clamp, safe_divide

logger = logging.getLogger(__name__)


# Two-sided critical values for the confidence levels experiments actually use
Z_TABLE: dict[float, float] = {
    0.99: 2.576,
    0.95: 1.96,
    0.90: 1.645,
    0.80: 1.28,
}

# Returned when there is no control traffic or no baseline conversions
DEFAULT_REQUIRED_PER_VARIATION = 1000
DEFAULT_DAYS_TO_COMPLETION = 7


class StatisticsEngine:
    """Stateless statistics over raw experiment counters.

    Args:
        minimum_detectable_effect: Relative lift over control the test must detect.
        target_power: Power an adequately sized test reaches.
        default_samples_days: Days of enrollment assumed when no observed
            enrollment rate is available.
    """

    def __init__(
        self,
        minimum_detectable_effect: float = 0.05,
        target_power: float = 0.8,
        default_samples_days: int = 7,
    ) -> None:
        if minimum_detectable_effect <= 0:
            raise ValueError("minimum_detectable_effect must be positive")
        if not 0 < target_power < 1:
            raise ValueError("target_power must be between 0 and 1")
        self.minimum_detectable_effect = minimum_detectable_effect
        self.target_power = target_power
        self.default_samples_days = default_samples_days

    @classmethod
    def from_settings(cls, settings) -> "StatisticsEngine":
        """Build from a StatisticsSettings model."""
        return cls(
            minimum_detectable_effect=settings.minimum_detectable_effect,
            target_power=settings.target_power,
            default_samples_days=settings.default_samples_days,
        )

    # -------------------------------------------------------------------------
    # Distribution helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def z_score(confidence_level: float) -> float:
        """Two-sided critical value for a confidence level."""
        for level, z in Z_TABLE.items():
            if math.isclose(confidence_level, level, abs_tol=1e-9):
                return z
        return float(stats.norm.ppf(1 - (1 - confidence_level) / 2))

    @staticmethod
    def normal_cdf(x: float) -> float:
        return float(stats.norm.cdf(x))

    # -------------------------------------------------------------------------
    # Per-variation statistics
    # -------------------------------------------------------------------------

    def confidence_interval(
        self,
        rate: float,
        n: int,
        confidence_level: float,
    ) -> tuple[float, float]:
        """Wald interval for a conversion rate, clamped to [0, 1]."""
        if n <= 0:
            return (0.0, 0.0)
        z = self.z_score(confidence_level)
        margin = z * math.sqrt(rate * (1 - rate) / n)
        return (clamp(rate - margin, 0.0, 1.0), clamp(rate + margin, 0.0, 1.0))

    def probability_to_beat_control(
        self,
        rate_b: float,
        n_b: int,
        rate_a: float,
        n_a: int,
    ) -> float:
        """P(variation B outperforms control A) under the normal approximation.

        Uses the unpooled standard error of the difference.
        """
        if n_a <= 0 or n_b <= 0:
            return 0.5
        se = math.sqrt(rate_b * (1 - rate_b) / n_b + rate_a * (1 - rate_a) / n_a)
        if se == 0:
            if rate_b > rate_a:
                return 1.0
            if rate_b < rate_a:
                return 0.0
            return 0.5
        return self.normal_cdf((rate_b - rate_a) / se)

    @staticmethod
    def expected_loss(rate_b: float, rate_a: float, n: int) -> float:
        """Conversions lost by shipping B instead of A over n visitors."""
        return max(0.0, (rate_a - rate_b) * n)

    def variation_metrics(
        self,
        variation: Variation,
        control: Variation,
        confidence_level: float,
    ) -> VariationMetrics:
        """Derive the cycle statistics of one variation against control."""
        rate = variation.conversion_rate
        if variation.id == control.id:
            probability, loss = 0.5, 0.0
        else:
            probability = self.probability_to_beat_control(
                rate, variation.visitors, control.conversion_rate, control.visitors
            )
            loss = self.expected_loss(rate, control.conversion_rate, variation.visitors)

        return VariationMetrics(
            variation_id=variation.id,
            is_control=variation.id == control.id,
            visitors=variation.visitors,
            conversions=variation.conversions,
            conversion_rate=rate,
            revenue=variation.revenue or 0.0,
            revenue_per_visitor=variation.revenue_per_visitor,
            confidence_interval=self.confidence_interval(rate, variation.visitors, confidence_level),
            probability_to_beat_control=probability,
            expected_loss=loss,
        )

    # -------------------------------------------------------------------------
    # Hypothesis testing
    # -------------------------------------------------------------------------

    def two_proportion_z_test(
        self,
        x1: int,
        n1: int,
        x2: int,
        n2: int,
    ) -> tuple[float, float]:
        """Pooled two-proportion z-test of sample 2 against sample 1.

        Returns:
            (z, two-tailed p-value); (0, 1) for degenerate input.
        """
        if n1 <= 0 or n2 <= 0:
            return (0.0, 1.0)
        p1, p2 = x1 / n1, x2 / n2
        pooled = (x1 + x2) / (n1 + n2)
        se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
        if se == 0:
            return (0.0, 1.0)
        z = (p2 - p1) / se
        p_value = 2 * (1 - self.normal_cdf(abs(z)))
        return (z, clamp(p_value, 0.0, 1.0))

    def significance(
        self,
        variations: Sequence[Variation],
        confidence_level: float,
        samples_per_day: float | None = None,
    ) -> StatisticalSignificance:
        """Test the best-converting variation against control.

        Control is the first variation flagged as control, else the first
        one. The result is significant when p < 1 - confidence_level; only a
        non-control winner is ever reported.
        """
        power = self.power_analysis(variations, confidence_level, samples_per_day)
        control = _find_control(variations)
        if control is None:
            return StatisticalSignificance(
                is_significant=False,
                confidence_level=confidence_level,
                p_value=1.0,
                effect=0.0,
                power_analysis=power,
            )

        best = variations[int(np.argmax([v.conversion_rate for v in variations]))]
        if best.id == control.id:
            return StatisticalSignificance(
                is_significant=False,
                confidence_level=confidence_level,
                p_value=1.0,
                effect=0.0,
                power_analysis=power,
            )

        z, p_value = self.two_proportion_z_test(
            control.conversions, control.visitors, best.conversions, best.visitors
        )
        is_significant = p_value < (1 - confidence_level)
        return StatisticalSignificance(
            is_significant=is_significant,
            confidence_level=confidence_level,
            p_value=p_value,
            effect=best.conversion_rate - control.conversion_rate,
            z_score=z,
            winning_variation_id=best.id if is_significant else None,
            power_analysis=power,
        )

    def power_analysis(
        self,
        variations: Sequence[Variation],
        confidence_level: float,
        samples_per_day: float | None = None,
    ) -> PowerAnalysis:
        """Sample size requirement and achieved power of an experiment.

        The requirement targets ``target_power`` against a lift of
        ``minimum_detectable_effect`` relative to the control rate; achieved
        power is measured against the observed effect of the best
        non-control variation.

        Args:
            variations: Experiment arms with cumulative counters.
            confidence_level: Experiment confidence level.
            samples_per_day: Observed enrollment rate; defaults to the total
                sample spread over ``default_samples_days``.
        """
        k = max(1, len(variations))
        total = sum(v.visitors for v in variations)
        control = _find_control(variations)

        if control is None or control.visitors == 0 or control.conversion_rate == 0:
            return PowerAnalysis(
                current_power=0.0,
                required_sample_size_per_variation=DEFAULT_REQUIRED_PER_VARIATION,
                required_sample_size=DEFAULT_REQUIRED_PER_VARIATION * k,
                days_to_completion=DEFAULT_DAYS_TO_COMPLETION,
                is_underpowered=True,
            )

        z_alpha = self.z_score(confidence_level)
        z_beta = float(stats.norm.ppf(self.target_power))

        p1 = control.conversion_rate
        p2 = min(1.0, p1 * (1 + self.minimum_detectable_effect))
        p_avg = (p1 + p2) / 2
        delta = p2 - p1
        if delta <= 0 or p_avg >= 1:
            # Control already converts at 100%; there is no lift left to detect
            per_variation = DEFAULT_REQUIRED_PER_VARIATION
        else:
            per_variation = math.ceil((z_alpha + z_beta) ** 2 * 2 * p_avg * (1 - p_avg) / delta**2)
        required = per_variation * k

        current_power = self._achieved_power(variations, control, z_alpha)

        if samples_per_day is None or samples_per_day <= 0:
            samples_per_day = max(1.0, total / self.default_samples_days)
        remaining = max(0, required - total)
        days = math.ceil(remaining / samples_per_day) if remaining else 0

        return PowerAnalysis(
            current_power=current_power,
            required_sample_size_per_variation=per_variation,
            required_sample_size=required,
            days_to_completion=days,
            is_underpowered=current_power < self.target_power,
        )

    def _achieved_power(
        self,
        variations: Sequence[Variation],
        control: Variation,
        z_alpha: float,
    ) -> float:
        challengers = [v for v in variations if v.id != control.id and v.visitors > 0]
        if not challengers:
            return 0.0
        best = max(challengers, key=lambda v: v.conversion_rate)
        pooled = safe_divide(
            control.conversions + best.conversions,
            control.visitors + best.visitors,
        )
        spread = math.sqrt(pooled * (1 - pooled))
        if spread == 0:
            return 0.0
        effect_size = abs(best.conversion_rate - control.conversion_rate) / spread
        n = min(control.visitors, best.visitors)
        return clamp(self.normal_cdf(effect_size * math.sqrt(n / 2) - z_alpha), 0.0, 1.0)


def _find_control(variations: Sequence[Variation]) -> Variation | None:
    for variation in variations:
        if variation.is_control:
            return variation
    return variations[0] if variations else None
