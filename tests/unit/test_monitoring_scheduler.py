"""
Unit tests for monitoring/scheduler.py
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import make_experiment
from experimentation_engine.config.settings import MonitoringSettings, Settings
from experimentation_engine.core.data_types import (
    AlertSeverity,
    AlertType,
    AutoActionType,
    ExperimentStatus,
    MonitoringAlert,
    OptimizationSuggestion,
    RecommendationType,
    RiskLevel,
    SuggestionType,
    Variation,
    VariationMetrics,
)
from experimentation_engine.core.events import EventType
from experimentation_engine.monitoring.scheduler import (
    MonitoringScheduler,
    estimated_lift,
    throttle_allocations,
)


def variations(*allocations: tuple[str, float]) -> list[Variation]:
    return [
        Variation(id=vid, traffic_allocation=allocation, is_control=index == 0)
        for index, (vid, allocation) in enumerate(allocations)
    ]


class TestThrottleAllocations:
    """Tests for throttle_allocations."""

    def test_two_arms(self):
        """Test the freed share goes to the remaining arm."""
        changes = throttle_allocations(variations(("control", 50), ("variant", 50)), ["variant"])
        assert changes == {"variant": 25.0, "control": 75.0}

    def test_proportional_redistribution(self):
        """Test freed traffic is split by current allocation."""
        changes = throttle_allocations(
            variations(("control", 40), ("winner", 30), ("loser", 30)),
            ["loser"],
        )
        assert changes["loser"] == pytest.approx(15.0)
        assert changes["control"] == pytest.approx(40 + 15 * 40 / 70)
        assert changes["winner"] == pytest.approx(30 + 15 * 30 / 70)
        assert sum(changes.values()) == pytest.approx(100.0)

    def test_floor(self):
        """Test allocations never drop below the floor."""
        changes = throttle_allocations(variations(("control", 92), ("variant", 8)), ["variant"], floor=5.0)
        assert changes == {"variant": 5.0, "control": 95.0}

    def test_at_floor_unchanged(self):
        """Test a variation already at the floor is left alone."""
        assert throttle_allocations(variations(("control", 95), ("variant", 5)), ["variant"]) == {}

    def test_zero_weight_receivers_split_evenly(self):
        """Test receivers at zero share the freed traffic evenly."""
        changes = throttle_allocations(
            variations(("control", 0), ("other", 0), ("loser", 100)),
            ["loser"],
        )
        assert changes == {"loser": 50.0, "control": 25.0, "other": 25.0}

    def test_no_receivers(self):
        """Test throttling every variation changes nothing."""
        assert throttle_allocations(variations(("control", 50), ("variant", 50)), ["control", "variant"]) == {}


class TestEstimatedLift:
    """Tests for estimated_lift."""

    def test_lift_over_control(self):
        """Test relative lift in percent."""
        control = VariationMetrics(variation_id="control", is_control=True, conversion_rate=0.10)
        winner = VariationMetrics(variation_id="variant", conversion_rate=0.16)
        assert estimated_lift([control, winner], winner) == pytest.approx(60.0)

    def test_zero_control_rate(self):
        """Test a zero baseline gives no lift."""
        control = VariationMetrics(variation_id="control", is_control=True)
        winner = VariationMetrics(variation_id="variant", conversion_rate=0.2)
        assert estimated_lift([control, winner], winner) == 0.0


class TestMetrics:
    """Tests for snapshot computation and storage."""

    @pytest.mark.asyncio
    async def test_calculate_test_metrics(self, scheduler, clock, launch):
        """Test a snapshot of a running experiment."""
        experiment = await launch(make_experiment(control=(500, 50), variants={"variant": (500, 80)}))
        clock.advance(days=1)

        metrics = await scheduler.calculate_test_metrics(experiment)

        assert metrics.experiment_id == experiment.id
        assert metrics.overall_metrics.total_visitors == 1000
        assert metrics.overall_metrics.total_conversions == 130
        assert metrics.overall_metrics.average_conversion_rate == pytest.approx(0.13)
        assert metrics.overall_metrics.samples_per_day == pytest.approx(1000)
        assert metrics.overall_metrics.projected_end_date is None
        assert metrics.statistical_significance.is_significant
        assert metrics.statistical_significance.winning_variation_id == "variant"
        assert metrics.best_variation().probability_to_beat_control == pytest.approx(0.9977, abs=1e-3)

    @pytest.mark.asyncio
    async def test_projected_end_date(self, scheduler, clock, launch):
        """Test the end date projects the minimum sample size at the current rate."""
        experiment = await launch(make_experiment(control=(100, 10), variants={"variant": (100, 12)}))
        clock.advance(days=1)

        metrics = await scheduler.calculate_test_metrics(experiment)

        # 800 visitors to go at 200 per day
        assert metrics.overall_metrics.projected_end_date == clock.now() + timedelta(days=4)

    @pytest.mark.asyncio
    async def test_get_test_metrics_unknown(self, scheduler):
        """Test unknown experiments give None."""
        assert await scheduler.get_test_metrics("exp_missing") is None

    @pytest.mark.asyncio
    async def test_store_metrics_monotonic(self, scheduler, launch):
        """Test snapshots at the same instant get strictly increasing timestamps."""
        experiment = await launch(make_experiment(control=(10, 1), variants={"variant": (10, 2)}))
        first = await scheduler.store_metrics(await scheduler.calculate_test_metrics(experiment))
        second = await scheduler.store_metrics(await scheduler.calculate_test_metrics(experiment))

        assert second.timestamp == first.timestamp + timedelta(milliseconds=1)
        history = await scheduler.get_historical_metrics(experiment.id, days=1)
        assert [m.timestamp for m in history] == [first.timestamp, second.timestamp]

    @pytest.mark.asyncio
    async def test_historical_window(self, scheduler, clock, launch):
        """Test only snapshots inside the window are returned, oldest first."""
        experiment = await launch(make_experiment(control=(10, 1), variants={"variant": (10, 2)}))
        await scheduler.store_metrics(await scheduler.calculate_test_metrics(experiment))
        clock.advance(days=3)
        latest = await scheduler.store_metrics(await scheduler.calculate_test_metrics(experiment))

        assert len(await scheduler.get_historical_metrics(experiment.id, days=7)) == 2
        recent = await scheduler.get_historical_metrics(experiment.id, days=1)
        assert [m.timestamp for m in recent] == [latest.timestamp]


class TestRecommendations:
    """Tests for recommendations and risk assessment."""

    @pytest.mark.asyncio
    async def test_stop_early(self, scheduler):
        """Test a clear winner with early stopping enabled."""
        experiment = make_experiment(
            control=(500, 50), variants={"variant": (500, 80)}, is_early_stopping_enabled=True
        )
        metrics = await scheduler.calculate_test_metrics(experiment)

        stop = [r for r in metrics.recommendations if r.type == RecommendationType.STOP_EARLY]
        assert len(stop) == 1
        assert stop[0].variation_ids == ["variant"]
        assert stop[0].estimated_lift == pytest.approx(60.0)
        assert not metrics.has_recommendation(RecommendationType.EXTEND_TEST)

    @pytest.mark.asyncio
    async def test_stop_early_needs_opt_in(self, scheduler):
        """Test no stop recommendation without early stopping."""
        experiment = make_experiment(control=(500, 50), variants={"variant": (500, 80)})
        metrics = await scheduler.calculate_test_metrics(experiment)
        assert not metrics.has_recommendation(RecommendationType.STOP_EARLY)

    @pytest.mark.asyncio
    async def test_stop_early_needs_high_probability(self, scheduler):
        """Test a significant result below the probability threshold is not stopped."""
        experiment = make_experiment(
            control=(1000, 100),
            variants={"variant": (1000, 121)},
            confidence_level=0.80,
            is_early_stopping_enabled=True,
        )
        metrics = await scheduler.calculate_test_metrics(experiment)
        assert metrics.statistical_significance.is_significant
        assert not metrics.has_recommendation(RecommendationType.STOP_EARLY)

    @pytest.mark.asyncio
    async def test_extend_test(self, scheduler):
        """Test underpowered experiments are told to run longer."""
        metrics = await scheduler.calculate_test_metrics(
            make_experiment(control=(10, 1), variants={"variant": (10, 2)})
        )
        assert metrics.has_recommendation(RecommendationType.EXTEND_TEST)
        assert metrics.risk_assessment.risk_level == RiskLevel.MEDIUM
        assert "Insufficient statistical power" in metrics.risk_assessment.risk_factors

    @pytest.mark.asyncio
    async def test_adjust_traffic(self, scheduler):
        """Test poor performers with high expected loss are flagged."""
        metrics = await scheduler.calculate_test_metrics(
            make_experiment(control=(1000, 150), variants={"variant": (1000, 100)})
        )
        adjust = [r for r in metrics.recommendations if r.type == RecommendationType.ADJUST_TRAFFIC]
        assert adjust[0].variation_ids == ["variant"]
        assert metrics.variations[1].expected_loss == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_many_variations_high_risk(self, scheduler):
        """Test many comparisons raise the risk level and false-positive risk."""
        experiment = make_experiment(
            control=(100, 10),
            variants={f"v{n}": (100, 10) for n in range(4)},
        )
        metrics = await scheduler.calculate_test_metrics(experiment)
        risk = metrics.risk_assessment
        assert risk.risk_level == RiskLevel.HIGH
        assert risk.false_positive_risk == pytest.approx(1 - 0.95**4)

    @pytest.mark.asyncio
    async def test_opportunity_cost(self, scheduler):
        """Test opportunity cost of keeping control."""
        metrics = await scheduler.calculate_test_metrics(
            make_experiment(control=(500, 50), variants={"variant": (500, 80)})
        )
        assert metrics.risk_assessment.opportunity_cost == pytest.approx(30.0)


class TestAlerts:
    """Tests for alert creation and deduplication."""

    @staticmethod
    def alert(experiment_id: str = "exp_1") -> MonitoringAlert:
        return MonitoringAlert(
            experiment_id=experiment_id,
            type=AlertType.SAMPLE_SIZE_WARNING,
            severity=AlertSeverity.WARNING,
            title="Sample Size Warning",
            message="Test is underpowered",
        )

    @pytest.mark.asyncio
    async def test_create_and_read(self, scheduler, dashboard, event_bus):
        """Test alerts are stored, published and sent."""
        assert await scheduler.create_alert(self.alert()) is True
        await scheduler.flush_notifications()

        stored = await scheduler.get_test_alerts("exp_1")
        assert len(stored) == 1
        assert stored[0].type == AlertType.SAMPLE_SIZE_WARNING
        assert len(dashboard.alerts) == 1
        assert len(event_bus.get_event_history(EventType.ALERT_CREATED)) == 1

    @pytest.mark.asyncio
    async def test_duplicates_suppressed(self, scheduler, clock):
        """Test a repeat of the same type inside the window is dropped."""
        assert await scheduler.create_alert(self.alert()) is True
        assert await scheduler.create_alert(self.alert()) is False
        assert await scheduler.create_alert(self.alert("exp_2")) is True

        clock.advance(minutes=361)
        assert await scheduler.create_alert(self.alert()) is True
        assert len(await scheduler.get_test_alerts("exp_1")) == 2

    @pytest.mark.asyncio
    async def test_dedup_disabled(self, store, lifecycle, event_bus, dispatcher, clock):
        """Test a zero window re-raises every time."""
        scheduler = MonitoringScheduler(
            store,
            lifecycle,
            event_bus=event_bus,
            dispatcher=dispatcher,
            clock=clock,
            settings=Settings(monitoring=MonitoringSettings(alert_dedup_window_minutes=0)),
        )
        assert await scheduler.create_alert(self.alert()) is True
        assert await scheduler.create_alert(self.alert()) is True

    @pytest.mark.asyncio
    async def test_check_for_alerts(self, scheduler, launch):
        """Test significance and sample size alerts from one snapshot."""
        experiment = await launch(make_experiment(control=(10, 1), variants={"variant": (10, 2)}))
        metrics = await scheduler.calculate_test_metrics(experiment)

        alerts = await scheduler.check_for_alerts(experiment, metrics)

        assert [a.type for a in alerts] == [AlertType.SAMPLE_SIZE_WARNING]
        assert alerts[0].data["current_power"] < 0.8


class TestSuggestions:
    """Tests for optimization suggestions."""

    @pytest.mark.asyncio
    async def test_traffic_reallocation(self, scheduler):
        """Test a promising variation gets a reallocation suggestion."""
        experiment = make_experiment(control=(500, 50), variants={"variant": (500, 80)})
        metrics = await scheduler.calculate_test_metrics(experiment)

        suggestions = scheduler.generate_optimization_suggestions(experiment, metrics)

        assert [s.type for s in suggestions] == [SuggestionType.TRAFFIC_REALLOCATION]
        assert suggestions[0].implementation["variation_id"] == "variant"

    @pytest.mark.asyncio
    async def test_duration_extension(self, scheduler):
        """Test underpowered experiments get a duration suggestion only."""
        experiment = make_experiment(control=(10, 1), variants={"variant": (10, 2)})
        metrics = await scheduler.calculate_test_metrics(experiment)

        suggestions = scheduler.generate_optimization_suggestions(experiment, metrics)

        assert [s.type for s in suggestions] == [SuggestionType.DURATION_EXTENSION]
        assert suggestions[0].confidence == 0.9

    @pytest.mark.asyncio
    async def test_stored_sorted_by_confidence(self, scheduler, event_bus):
        """Test stored suggestions come back most confident first."""
        low = OptimizationSuggestion(
            experiment_id="exp_1",
            type=SuggestionType.DURATION_EXTENSION,
            title="Extend",
            description="Run longer",
            confidence=0.5,
        )
        high = OptimizationSuggestion(
            experiment_id="exp_1",
            type=SuggestionType.TRAFFIC_REALLOCATION,
            title="Reallocate",
            description="Shift traffic",
            confidence=0.95,
        )
        await scheduler.store_optimization_suggestions("exp_1", [low, high])

        stored = await scheduler.get_optimization_suggestions("exp_1")
        assert [s.id for s in stored] == [high.id, low.id]
        assert len(event_bus.get_event_history(EventType.SUGGESTIONS_STORED)) == 1

    @pytest.mark.asyncio
    async def test_nothing_to_store(self, scheduler, event_bus):
        """Test empty suggestion lists are not published."""
        await scheduler.store_optimization_suggestions("exp_1", [])
        assert await scheduler.get_optimization_suggestions("exp_1") == []
        assert event_bus.get_event_history(EventType.SUGGESTIONS_STORED) == []


class TestAutomaticOptimizations:
    """Tests for automatic actions."""

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, scheduler, launch):
        """Test nothing happens without opt-in."""
        experiment = await launch(make_experiment(control=(500, 50), variants={"variant": (500, 80)}))
        metrics = await scheduler.calculate_test_metrics(experiment)
        assert await scheduler.execute_automatic_optimizations(experiment, metrics) == []

    @pytest.mark.asyncio
    async def test_auto_stop(self, scheduler, lifecycle, allocator, launch, event_bus):
        """Test a clear winner stops the experiment."""
        experiment = await launch(
            make_experiment(
                control=(500, 50),
                variants={"variant": (500, 80)},
                metadata={"auto_optimization_enabled": True},
            )
        )
        metrics = await scheduler.calculate_test_metrics(experiment)

        actions = await scheduler.execute_automatic_optimizations(experiment, metrics)

        assert [a.action for a in actions] == [AutoActionType.STOP_EARLY]
        stopped = await lifecycle.get_experiment(experiment.id)
        assert stopped.status == ExperimentStatus.COMPLETED
        assert stopped.winning_variation_id == "variant"
        assert allocator.deployed_slot(experiment.id) is None
        assert len(event_bus.get_event_history(EventType.AUTO_ACTION_EXECUTED)) == 1

    @pytest.mark.asyncio
    async def test_auto_stop_needs_minimum_sample(self, scheduler, lifecycle, launch):
        """Test no auto-stop before the minimum sample size."""
        experiment = await launch(
            make_experiment(
                control=(500, 50),
                variants={"variant": (500, 80)},
                minimum_sample_size=5000,
                metadata={"auto_optimization_enabled": True},
            )
        )
        metrics = await scheduler.calculate_test_metrics(experiment)

        assert await scheduler.execute_automatic_optimizations(experiment, metrics) == []
        assert (await lifecycle.get_experiment(experiment.id)).status == ExperimentStatus.RUNNING

    @pytest.mark.asyncio
    async def test_auto_throttle(self, scheduler, lifecycle, launch):
        """Test a clear loser is throttled and its share handed to control."""
        experiment = await launch(
            make_experiment(
                control=(1000, 150),
                variants={"variant": (1000, 100)},
                metadata={"auto_optimization_enabled": True},
            )
        )
        metrics = await scheduler.calculate_test_metrics(experiment)

        actions = await scheduler.execute_automatic_optimizations(experiment, metrics)

        assert len(actions) == 1
        assert actions[0].action == AutoActionType.THROTTLE_VARIATION
        assert actions[0].previous_allocation == 50.0
        assert actions[0].new_allocation == 25.0
        updated = await lifecycle.get_experiment(experiment.id)
        assert updated.get_variation("variant").traffic_allocation == 25.0
        assert updated.get_variation("control").traffic_allocation == 75.0
        assert updated.status == ExperimentStatus.RUNNING

    @pytest.mark.asyncio
    async def test_failed_action_published(self, scheduler, lifecycle, launch, event_bus):
        """Test an action failing against the lifecycle becomes an engine error."""
        experiment = await launch(
            make_experiment(
                control=(500, 50),
                variants={"variant": (500, 80)},
                metadata={"auto_optimization_enabled": True},
            )
        )
        metrics = await scheduler.calculate_test_metrics(experiment)
        await lifecycle.stop_experiment(experiment.id)

        assert await scheduler.execute_automatic_optimizations(experiment, metrics) == []
        assert len(event_bus.get_event_history(EventType.ENGINE_ERROR)) == 1


class TestSchedulerLoop:
    """Tests for start/stop and status."""

    @pytest.mark.asyncio
    async def test_run_cycle_records_summary(self, scheduler, launch):
        """Test the cycle summary lands in the monitoring status."""
        await launch(make_experiment(control=(10, 1), variants={"variant": (10, 2)}))

        report = await scheduler.run_cycle()
        status = await scheduler.get_monitoring_status()

        assert report.processed == 1
        assert scheduler.last_report is report
        assert status["active_tests_count"] == 1
        assert status["cycles_run"] == 1
        assert status["last_cycle"]["cycle_id"] == report.cycle_id
        assert status["last_cycle_time"] == report.completed_at.isoformat()
        assert status["total_alerts_count"] == 1
        assert status["is_running"] is False

    @pytest.mark.asyncio
    async def test_start_stop(self, store, lifecycle, event_bus, dispatcher, clock):
        """Test the loop runs cycles until stopped."""
        scheduler = MonitoringScheduler(
            store,
            lifecycle,
            event_bus=event_bus,
            dispatcher=dispatcher,
            clock=clock,
            settings=Settings(monitoring=MonitoringSettings(interval_minutes=0.001)),
        )

        await scheduler.start()
        assert scheduler.is_running
        await scheduler.start()
        await asyncio.sleep(0.3)
        await scheduler.stop()

        assert not scheduler.is_running
        status = await scheduler.get_monitoring_status()
        assert status["cycles_run"] >= 2
        assert len(event_bus.get_event_history(EventType.MONITORING_STARTED)) == 1
        assert len(event_bus.get_event_history(EventType.MONITORING_STOPPED)) == 1

    @pytest.mark.asyncio
    async def test_stop_right_after_start_runs_one_cycle(self, scheduler, event_bus):
        """Test the first cycle runs even when stop follows immediately."""
        await scheduler.start()
        await scheduler.stop()

        assert len(event_bus.get_event_history(EventType.CYCLE_COMPLETED)) == 1

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self, scheduler, event_bus):
        """Test stop is a no-op before start."""
        await scheduler.stop()
        assert event_bus.get_event_history(EventType.MONITORING_STOPPED) == []
