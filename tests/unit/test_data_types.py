"""
Unit tests for core/data_types.py
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from experimentation_engine.core.data_types import (
    AlertSeverity,
    AlertType,
    CycleReport,
    Experiment,
    ExperimentCycleResult,
    ExperimentStatus,
    MonitoringAlert,
    Variation,
    VariationMetrics,
)


def two_arms(**overrides) -> list[Variation]:
    control = {"id": "control", "traffic_allocation": 50, "is_control": True}
    variant = {"id": "variant", "traffic_allocation": 50}
    control.update(overrides.get("control", {}))
    variant.update(overrides.get("variant", {}))
    return [Variation(**control), Variation(**variant)]


class TestVariation:
    """Tests for Variation model."""

    def test_conversion_rate(self):
        """Test rate is conversions per visitor."""
        variation = Variation(id="a", traffic_allocation=50, visitors=200, conversions=30)
        assert variation.conversion_rate == pytest.approx(0.15)

    def test_conversion_rate_without_visitors(self):
        """Test empty variations convert at 0."""
        assert Variation(id="a", traffic_allocation=50).conversion_rate == 0.0

    def test_revenue_per_visitor(self):
        """Test revenue per visitor handles missing revenue."""
        assert Variation(id="a", traffic_allocation=50, visitors=10, revenue=25.0).revenue_per_visitor == 2.5
        assert Variation(id="a", traffic_allocation=50, visitors=10).revenue_per_visitor == 0.0

    def test_negative_counters_rejected(self):
        """Test counters cannot be negative."""
        with pytest.raises(ValidationError):
            Variation(id="a", traffic_allocation=50, visitors=-1)


class TestExperiment:
    """Tests for Experiment model."""

    def test_defaults(self):
        """Test a new experiment starts as a draft with sensible defaults."""
        experiment = Experiment(name="Test", variations=two_arms())
        assert experiment.status == ExperimentStatus.DRAFT
        assert experiment.id.startswith("exp_")
        assert experiment.traffic_allocation == 4.0
        assert experiment.confidence_level == 0.95
        assert experiment.target_segments == ["general"]
        assert experiment.validation_errors() == []

    def test_segments_normalized(self):
        """Test blank segments fall back to the general audience."""
        assert Experiment(name="Test", target_segments=[" ", ""]).target_segments == ["general"]
        assert Experiment(name="Test", target_segments=[" mobile "]).target_segments == ["mobile"]

    def test_control_lookup(self):
        """Test control is the flagged variation, else the first one."""
        experiment = Experiment(name="Test", variations=two_arms())
        assert experiment.control.id == "control"

        unflagged = Experiment(
            name="Test",
            variations=[Variation(id="a", traffic_allocation=50), Variation(id="b", traffic_allocation=50)],
        )
        assert unflagged.control.id == "a"
        assert Experiment(name="Test").control is None

    def test_sample_size_and_elements(self):
        """Test derived totals."""
        experiment = Experiment(
            name="Test",
            variations=two_arms(
                control={"visitors": 100, "elements": ["#buy", "h1"]},
                variant={"visitors": 120, "elements": ["h1", ".price"]},
            ),
        )
        assert experiment.current_sample_size == 220
        assert experiment.elements == ["#buy", "h1", ".price"]

    def test_auto_optimization_flag(self):
        """Test the flag is read from metadata."""
        assert not Experiment(name="Test").auto_optimization_enabled
        assert Experiment(name="Test", metadata={"auto_optimization_enabled": True}).auto_optimization_enabled

    def test_allocations_must_sum_to_100(self):
        """Test allocation sums are validated with a tight tolerance."""
        experiment = Experiment(
            name="Test",
            variations=two_arms(variant={"traffic_allocation": 49.9}),
        )
        errors = experiment.validation_errors()
        assert any("sum to 100" in e for e in errors)

    def test_thirds_are_within_tolerance(self):
        """Test float splits like 100/3 are accepted."""
        variations = [
            Variation(id=f"v{i}", traffic_allocation=100 / 3, is_control=i == 0) for i in range(3)
        ]
        assert Experiment(name="Test", variations=variations).validation_errors() == []

    def test_reports_every_problem(self):
        """Test all violations are collected together."""
        experiment = Experiment(
            name="Test",
            confidence_level=1.5,
            variations=[
                Variation(id="a", traffic_allocation=30, visitors=5, conversions=6),
                Variation(id="a", traffic_allocation=30),
            ],
        )
        errors = experiment.validation_errors()
        assert len(errors) == 5
        assert "Variation ids must be unique" in errors
        assert any("Exactly one control" in e for e in errors)
        assert any("more conversions than visitors" in e for e in errors)
        assert any("Confidence level" in e for e in errors)

    def test_single_variation_invalid(self):
        """Test an experiment needs two arms."""
        experiment = Experiment(
            name="Test",
            variations=[Variation(id="a", traffic_allocation=100, is_control=True)],
        )
        assert "Experiment needs at least two variations" in experiment.validation_errors()

    def test_round_trip_dict(self):
        """Test serialization to the stored JSON form."""
        experiment = Experiment(name="Test", variations=two_arms(), status=ExperimentStatus.RUNNING)
        data = experiment.to_dict()
        assert data["status"] == "running"
        assert isinstance(data["created_at"], str)
        assert Experiment.from_dict(data) == experiment


class TestMonitoringModels:
    """Tests for alerts and cycle reports."""

    def test_alert_is_immutable(self):
        """Test alerts cannot be modified after creation."""
        alert = MonitoringAlert(
            experiment_id="exp_1",
            type=AlertType.SAMPLE_SIZE_WARNING,
            severity=AlertSeverity.WARNING,
            title="Sample Size Warning",
            message="Test is underpowered",
        )
        with pytest.raises(ValidationError):
            alert.title = "changed"

    def test_variation_metrics_frozen(self):
        """Test snapshot metrics are frozen."""
        metrics = VariationMetrics(variation_id="a")
        with pytest.raises(ValidationError):
            metrics.visitors = 5

    def test_cycle_report_counts(self):
        """Test processed/failed counts include fetch errors."""
        report = CycleReport(
            started_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            results=[
                ExperimentCycleResult(experiment_id="a", success=True),
                ExperimentCycleResult(experiment_id="b", success=False, error="boom"),
            ],
            fetch_errors={"c": "not found"},
        )
        assert report.processed == 1
        assert report.failed == 2
        assert report.result_for("b").error == "boom"
        assert report.result_for("missing") is None

        summary = report.summary()
        assert summary["processed"] == 1
        assert summary["failed"] == 2
        assert summary["completed_at"] is None
        assert summary["alerts"] == 0
