"""
Pydantic models and type definitions for the experimentation engine.

Defines the contracts for everything persisted to the key-value store or
handed to callers: experiments and their variations, the per-cycle
performance snapshot, alerts, recommendations, optimization suggestions and
the cycle report itself.

Experiment models are intentionally permissive about business rules
(allocation sums, control count); those are checked by
``Experiment.validation_errors()`` so every problem can be reported at once.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from experimentation_engine.core.utils import generate_id, percentages_sum_to


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ExperimentStatus(str, Enum):
    """Experiment lifecycle status."""

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"


TERMINAL_STATUSES = frozenset({ExperimentStatus.COMPLETED, ExperimentStatus.STOPPED})


class AlertType(str, Enum):
    """Monitoring alert types."""

    PERFORMANCE_DROP = "performance_drop"
    SIGNIFICANCE_ACHIEVED = "significance_achieved"
    SAMPLE_SIZE_WARNING = "sample_size_warning"


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class RecommendationType(str, Enum):
    """Corrective actions the engine can recommend."""

    STOP_EARLY = "stop_early"
    EXTEND_TEST = "extend_test"
    ADJUST_TRAFFIC = "adjust_traffic"


class RecommendationPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SuggestionType(str, Enum):
    """Optimization suggestion types."""

    TRAFFIC_REALLOCATION = "traffic_reallocation"
    DURATION_EXTENSION = "duration_extension"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AutoActionType(str, Enum):
    """Actions the monitoring cycle may execute on its own."""

    THROTTLE_VARIATION = "throttle_variation"
    STOP_EARLY = "stop_early"


# =============================================================================
# Experiment Definition
# =============================================================================


class Variation(BaseModel):
    """One arm of an experiment with its cumulative counters."""

    id: str = Field(..., min_length=1, description="Variation identifier")
    name: str = Field(default="", description="Display name")
    description: str = Field(default="", description="What this variation changes")
    traffic_allocation: float = Field(
        ..., description="Percentage of the experiment's traffic (all variations sum to 100)"
    )
    visitors: int = Field(default=0, ge=0, description="Cumulative visitors")
    conversions: int = Field(default=0, ge=0, description="Cumulative conversions")
    revenue: float | None = Field(default=None, ge=0, description="Cumulative revenue")
    is_control: bool = Field(default=False, description="Baseline variation flag")
    elements: list[str] = Field(default_factory=list, description="UI selectors this variation touches")

    @property
    def conversion_rate(self) -> float:
        """Conversions per visitor (0 with no visitors)."""
        if self.visitors == 0:
            return 0.0
        return self.conversions / self.visitors

    @property
    def revenue_per_visitor(self) -> float:
        if not self.visitors or self.revenue is None:
            return 0.0
        return self.revenue / self.visitors


class Experiment(BaseModel):
    """A/B experiment definition and state."""

    id: str = Field(default_factory=lambda: generate_id("exp", 12), description="Experiment identifier")
    name: str = Field(..., min_length=1, description="Experiment name")
    description: str = Field(default="", description="Hypothesis or notes")
    status: ExperimentStatus = Field(default=ExperimentStatus.DRAFT, description="Lifecycle status")
    start_date: datetime | None = Field(default=None, description="When the experiment started running")
    end_date: datetime | None = Field(default=None, description="When the experiment reached a terminal state")
    variations: list[Variation] = Field(default_factory=list, description="Experiment arms")
    target_metric: str = Field(default="conversion_rate", description="Primary success metric")
    traffic_allocation: float = Field(
        default=4.0, description="Percentage of site traffic the experiment claims (0-100)"
    )
    minimum_sample_size: int = Field(default=1000, ge=0, description="Total visitors required before auto-stop")
    confidence_level: float = Field(default=0.95, description="Confidence level, e.g. 0.95")
    is_early_stopping_enabled: bool = Field(default=False, description="Allow stop_early recommendations")
    target_segments: list[str] = Field(
        default_factory=lambda: ["general"], description="Audience segments the experiment runs on"
    )
    significance_model: str = Field(default="two_proportion_z", description="Significance test to apply")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")
    winning_variation_id: str | None = Field(default=None, description="Declared winner once completed")
    completion_reason: str | None = Field(default=None, description="Why the experiment ended")
    created_at: datetime = Field(default_factory=_now, description="Creation time")
    updated_at: datetime = Field(default_factory=_now, description="Last modification time")

    @field_validator("target_segments")
    @classmethod
    def validate_segments(cls, v: list[str]) -> list[str]:
        """Normalize segments and fall back to the general audience."""
        cleaned = [s.strip() for s in v if s and s.strip()]
        return cleaned or ["general"]

    @property
    def control(self) -> Variation | None:
        """The baseline variation: first one flagged as control, else index 0."""
        for variation in self.variations:
            if variation.is_control:
                return variation
        return self.variations[0] if self.variations else None

    @property
    def current_sample_size(self) -> int:
        return sum(v.visitors for v in self.variations)

    @property
    def elements(self) -> list[str]:
        """Union of UI selectors touched by any variation, in first-seen order."""
        seen: dict[str, None] = {}
        for variation in self.variations:
            for element in variation.elements:
                seen.setdefault(element, None)
        return list(seen)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def auto_optimization_enabled(self) -> bool:
        return bool(self.metadata.get("auto_optimization_enabled", False))

    def get_variation(self, variation_id: str) -> Variation | None:
        for variation in self.variations:
            if variation.id == variation_id:
                return variation
        return None

    def validation_errors(self) -> list[str]:
        """Collect every business-rule violation of this definition.

        Returns:
            Human-readable problems; empty when the experiment is valid.
        """
        errors: list[str] = []

        if len(self.variations) < 2:
            errors.append("Experiment needs at least two variations")

        ids = [v.id for v in self.variations]
        if len(ids) != len(set(ids)):
            errors.append("Variation ids must be unique")

        controls = [v for v in self.variations if v.is_control]
        if len(controls) != 1:
            errors.append(f"Exactly one control variation is required, found {len(controls)}")

        if self.variations and not percentages_sum_to(v.traffic_allocation for v in self.variations):
            total = sum(v.traffic_allocation for v in self.variations)
            errors.append(f"Variation traffic allocations must sum to 100, got {total}")

        for variation in self.variations:
            if variation.traffic_allocation < 0 or variation.traffic_allocation > 100:
                errors.append(f"Variation {variation.id} traffic allocation must be within 0-100")
            if variation.conversions > variation.visitors:
                errors.append(f"Variation {variation.id} has more conversions than visitors")

        if not 0 < self.confidence_level < 1:
            errors.append("Confidence level must be between 0 and 1 (exclusive)")

        if not 0 <= self.traffic_allocation <= 100:
            errors.append("Traffic allocation must be within 0-100")

        return errors

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary with JSON-serializable types."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Experiment":
        return cls.model_validate(data)


# =============================================================================
# Per-Cycle Metrics
# =============================================================================


class VariationMetrics(BaseModel):
    """Statistics derived for one variation in one cycle."""

    variation_id: str
    is_control: bool = False
    visitors: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0
    revenue: float = 0.0
    revenue_per_visitor: float = 0.0
    confidence_interval: tuple[float, float] = (0.0, 0.0)
    probability_to_beat_control: float = 0.5
    expected_loss: float = 0.0

    model_config = ConfigDict(frozen=True)


class PowerAnalysis(BaseModel):
    """Achieved power and sample size requirements."""

    current_power: float = Field(..., ge=0.0, le=1.0)
    required_sample_size_per_variation: int = Field(..., ge=0)
    required_sample_size: int = Field(..., ge=0, description="Across all variations")
    days_to_completion: int = Field(..., ge=0)
    is_underpowered: bool

    model_config = ConfigDict(frozen=True)


class StatisticalSignificance(BaseModel):
    """Outcome of the best-versus-control significance test."""

    is_significant: bool
    confidence_level: float
    p_value: float
    effect: float = Field(..., description="Best conversion rate minus control conversion rate")
    z_score: float = 0.0
    winning_variation_id: str | None = None
    power_analysis: PowerAnalysis

    model_config = ConfigDict(frozen=True)


class OverallMetrics(BaseModel):
    total_visitors: int = 0
    total_conversions: int = 0
    average_conversion_rate: float = 0.0
    total_revenue: float = 0.0
    test_duration_seconds: float = 0.0
    samples_per_day: float = 0.0
    projected_end_date: datetime | None = None

    model_config = ConfigDict(frozen=True)


class TestRecommendation(BaseModel):
    """A corrective action proposed for one experiment."""

    __test__ = False

    type: RecommendationType
    priority: RecommendationPriority
    title: str
    description: str
    impact: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    action_items: list[str] = Field(default_factory=list)
    estimated_lift: float | None = Field(default=None, description="Relative lift in percent")
    variation_ids: list[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class RiskAssessment(BaseModel):
    risk_level: RiskLevel = RiskLevel.LOW
    risk_factors: list[str] = Field(default_factory=list)
    mitigation_strategies: list[str] = Field(default_factory=list)
    false_positive_risk: float = 0.0
    opportunity_cost: float = 0.0

    model_config = ConfigDict(frozen=True)


class TestPerformanceMetrics(BaseModel):
    """Full performance snapshot of an experiment for one cycle."""

    __test__ = False

    experiment_id: str
    timestamp: datetime
    variations: list[VariationMetrics]
    overall_metrics: OverallMetrics
    statistical_significance: StatisticalSignificance
    recommendations: list[TestRecommendation] = Field(default_factory=list)
    risk_assessment: RiskAssessment = Field(default_factory=RiskAssessment)

    model_config = ConfigDict(frozen=True)

    @property
    def control(self) -> VariationMetrics | None:
        for variation in self.variations:
            if variation.is_control:
                return variation
        return self.variations[0] if self.variations else None

    def best_variation(self) -> VariationMetrics | None:
        """Non-control variation most likely to beat control."""
        candidates = [v for v in self.variations if not v.is_control]
        if not candidates:
            return None
        return max(candidates, key=lambda v: v.probability_to_beat_control)

    def has_recommendation(self, rec_type: RecommendationType) -> bool:
        return any(r.type == rec_type for r in self.recommendations)


# =============================================================================
# Alerts, Suggestions, Actions
# =============================================================================


class MonitoringAlert(BaseModel):
    """Immutable alert attached to one experiment."""

    id: str = Field(default_factory=lambda: generate_id("alert", 12))
    experiment_id: str
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)

    model_config = ConfigDict(frozen=True)


class OptimizationSuggestion(BaseModel):
    """Immutable optimization suggestion attached to one experiment."""

    id: str = Field(default_factory=lambda: generate_id("suggestion", 12))
    experiment_id: str
    type: SuggestionType
    title: str
    description: str
    expected_impact: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    implementation: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)

    model_config = ConfigDict(frozen=True)


class AutomaticAction(BaseModel):
    """Record of an action the monitoring cycle executed without a human."""

    experiment_id: str
    action: AutoActionType
    variation_id: str | None = None
    previous_allocation: float | None = None
    new_allocation: float | None = None
    reason: str = ""
    timestamp: datetime = Field(default_factory=_now)

    model_config = ConfigDict(frozen=True)


# =============================================================================
# Cycle Report
# =============================================================================


class ExperimentCycleResult(BaseModel):
    """Outcome of one experiment inside one monitoring cycle."""

    experiment_id: str
    success: bool
    metrics: TestPerformanceMetrics | None = None
    alerts: list[MonitoringAlert] = Field(default_factory=list)
    suggestions: list[OptimizationSuggestion] = Field(default_factory=list)
    actions: list[AutomaticAction] = Field(default_factory=list)
    error: str | None = None
    timed_out: bool = False
    duration_ms: float = 0.0


class CycleReport(BaseModel):
    """Aggregated outcome of a monitoring cycle."""

    cycle_id: str = Field(default_factory=lambda: generate_id("cycle", 12))
    started_at: datetime
    completed_at: datetime | None = None
    results: list[ExperimentCycleResult] = Field(default_factory=list)
    fetch_errors: dict[str, str] = Field(default_factory=dict)

    @property
    def processed(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success) + len(self.fetch_errors)

    def result_for(self, experiment_id: str) -> ExperimentCycleResult | None:
        for result in self.results:
            if result.experiment_id == experiment_id:
                return result
        return None

    def summary(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "processed": self.processed,
            "failed": self.failed,
            "alerts": sum(len(r.alerts) for r in self.results),
            "suggestions": sum(len(r.suggestions) for r in self.results),
            "actions": sum(len(r.actions) for r in self.results),
        }
