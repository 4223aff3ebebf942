"""
Recurring decision cycle over running experiments.

Each cycle:
1. Reads the active-experiment index and loads every running experiment
2. Computes a performance snapshot per experiment (concurrently, each
   bounded by a timeout)
3. Persists the snapshot to the metrics history
4. Raises deduplicated alerts, stores optimization suggestions and, for
   experiments that opted in, executes automatic optimizations
5. Publishes events and records the cycle summary

A failure in one experiment is recorded in the CycleReport and never
stops the others.
"""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta
from typing import Any, Sequence

from experimentation_engine.analysis.statistics import StatisticsEngine
from experimentation_engine.config.settings import Settings, get_settings
from experimentation_engine.core.data_types import (
    AlertSeverity,
    AlertType,
    AutoActionType,
    AutomaticAction,
    CycleReport,
    Experiment,
    ExperimentCycleResult,
    ExperimentStatus,
    MonitoringAlert,
    OptimizationSuggestion,
    OverallMetrics,
    RecommendationPriority,
    RecommendationType,
    RiskAssessment,
    RiskLevel,
    StatisticalSignificance,
    SuggestionType,
    TestPerformanceMetrics,
    TestRecommendation,
    Variation,
    VariationMetrics,
)
from experimentation_engine.core.events import (
    EventBus,
    EventType,
    create_error_event,
    create_monitoring_event,
)
from experimentation_engine.core.exceptions import ExperimentationError, ExperimentNotFoundError, StoreError
from experimentation_engine.core.store import (
    ACTIVE_TESTS_KEY,
    LAST_CYCLE_KEY,
    KeyValueStore,
    alert_dedup_key,
    alert_index_key,
    alert_key,
    experiment_key,
    metrics_key,
    metrics_prefix,
    suggestion_index_key,
    suggestion_key,
)
from experimentation_engine.core.utils import (
    Clock,
    SystemClock,
    from_epoch_ms,
    safe_divide,
    timer,
    to_epoch_ms,
)
from experimentation_engine.experiments.lifecycle import ExperimentLifecycle

from .alerting import NotificationDispatcher
from .logger import LogCategory, get_logger, log_alert

logger = get_logger("monitoring_scheduler", LogCategory.MONITORING)

SECONDS_PER_DAY = 24 * 60 * 60


def estimated_lift(variations: Sequence[VariationMetrics], winner: VariationMetrics) -> float:
    """Relative lift of a variation over control, in percent."""
    control = next((v for v in variations if v.is_control), variations[0] if variations else None)
    if control is None or control.conversion_rate == 0:
        return 0.0
    return (winner.conversion_rate / control.conversion_rate - 1) * 100


def throttle_allocations(
    variations: Sequence[Variation],
    throttled_ids: Sequence[str],
    factor: float = 0.5,
    floor: float = 5.0,
) -> dict[str, float]:
    """Cut traffic of some variations and hand the freed share to the rest.

    Each throttled variation drops to ``max(floor, factor * current)``; a
    variation already at or below that level keeps its allocation. The freed
    share goes to the remaining variations in proportion to their current
    allocation (evenly when they all sit at zero), so the total is unchanged.

    Returns:
        New allocation for every variation whose allocation changes.
    """
    throttled = set(throttled_ids)
    changes: dict[str, float] = {}
    freed = 0.0
    for variation in variations:
        if variation.id not in throttled:
            continue
        target = max(floor, variation.traffic_allocation * factor)
        if target < variation.traffic_allocation:
            changes[variation.id] = target
            freed += variation.traffic_allocation - target

    receivers = [v for v in variations if v.id not in throttled]
    if not changes or not receivers:
        return {}

    weight_total = sum(v.traffic_allocation for v in receivers)
    for variation in receivers:
        if weight_total > 0:
            share = freed * variation.traffic_allocation / weight_total
        else:
            share = freed / len(receivers)
        changes[variation.id] = variation.traffic_allocation + share
    return changes


class MonitoringScheduler:
    """Runs the monitoring cycle once or on a fixed interval.

    Args:
        store: Key-value store holding experiments, history, alerts and suggestions.
        lifecycle: Lifecycle collaborator used to read and mutate experiments.
        statistics: Statistics engine; built from settings when omitted.
        event_bus: Bus receiving monitoring events.
        dispatcher: Outbound alert notifications; built from settings when omitted.
        clock: Time source.
        settings: Application settings; the cached global settings when omitted.
    """

    def __init__(
        self,
        store: KeyValueStore,
        lifecycle: ExperimentLifecycle,
        statistics: StatisticsEngine | None = None,
        event_bus: EventBus | None = None,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.lifecycle = lifecycle
        self.statistics = statistics or StatisticsEngine.from_settings(self.settings.statistics)
        self.event_bus = event_bus or lifecycle.event_bus
        self.dispatcher = dispatcher or NotificationDispatcher.from_settings(self.settings.notifications)
        self.clock = clock or SystemClock()

        self.monitoring = self.settings.monitoring
        self.thresholds = self.settings.thresholds

        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._cycle_lock = asyncio.Lock()
        self._last_metrics_ms: dict[str, int] = {}
        self._last_report: CycleReport | None = None
        self._cycles_run = 0

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval_seconds(self) -> float:
        return self.monitoring.interval_minutes * 60

    async def start(self) -> None:
        """Start the recurring loop; the first cycle runs immediately."""
        if self.is_running:
            logger.warning("Monitoring scheduler already running")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._monitoring_loop())
        await self.event_bus.publish_async(
            create_monitoring_event(
                EventType.MONITORING_STARTED,
                {"interval_minutes": self.monitoring.interval_minutes},
            )
        )
        logger.info(f"Monitoring started (every {self.monitoring.interval_minutes} minutes)")

    async def stop(self) -> None:
        """Stop the loop after any in-flight cycle and drain notifications."""
        if self._task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        await self._task
        self._task = None

        await self.dispatcher.flush()
        await self.event_bus.publish_async(
            create_monitoring_event(EventType.MONITORING_STOPPED, {"cycles_run": self._cycles_run})
        )
        logger.info("Monitoring stopped")

    async def _monitoring_loop(self) -> None:
        assert self._stop_event is not None
        while True:
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error(f"Error in monitoring cycle: {e}")
                await self.event_bus.publish_async(
                    create_error_event(f"Monitoring cycle failed: {e}", source="monitoring_scheduler")
                )

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
            break

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Run one monitoring cycle over every running experiment.

        Raises:
            StoreError: The active-experiment index itself cannot be read.
        """
        async with self._cycle_lock:
            report = CycleReport(started_at=self.clock.now())
            cycle_logger = logger.with_context(correlation_id=report.cycle_id)

            experiments = await self._fetch_running(report)
            cycle_logger.info(f"Monitoring cycle started for {len(experiments)} experiments")

            with timer("Monitoring cycle") as elapsed:
                results = await asyncio.gather(
                    *(self._run_experiment(experiment, report.cycle_id) for experiment in experiments)
                )
            report.results = list(results)
            report.completed_at = self.clock.now()

            summary = report.summary()
            await self.store.set(LAST_CYCLE_KEY, summary)
            await self.event_bus.publish_async(create_monitoring_event(EventType.CYCLE_COMPLETED, summary))

            self._last_report = report
            self._cycles_run += 1
            cycle_logger.info(
                f"Monitoring cycle complete: {report.processed} processed, {report.failed} failed "
                f"in {elapsed['elapsed']:.3f}s"
            )
            return report

    async def _load_experiment(self, experiment_id: str) -> Experiment:
        timeout = self.monitoring.experiment_timeout_seconds
        try:
            return await asyncio.wait_for(self.lifecycle.get_experiment(experiment_id), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise StoreError(
                f"Loading experiment {experiment_id} timed out after {timeout}s",
                key=experiment_key(experiment_id),
                operation="get",
            ) from e

    async def _fetch_running(self, report: CycleReport) -> list[Experiment]:
        ids = sorted(await self.store.smembers(ACTIVE_TESTS_KEY))
        fetched = await asyncio.gather(
            *(self._load_experiment(experiment_id) for experiment_id in ids),
            return_exceptions=True,
        )

        experiments: list[Experiment] = []
        for experiment_id, item in zip(ids, fetched):
            if isinstance(item, Exception):
                # Only this experiment is skipped; the cycle carries on
                report.fetch_errors[experiment_id] = str(item) or type(item).__name__
                logger.with_context(experiment_id=experiment_id).error(f"Could not load experiment: {item}")
                if isinstance(item, ExperimentationError):
                    details = item.to_dict()
                else:
                    details = {"error_type": type(item).__name__, "message": str(item)}
                await self.event_bus.publish_async(
                    create_error_event(
                        f"Could not load experiment {experiment_id}: {item}",
                        {"experiment_id": experiment_id, **details},
                        source="monitoring_scheduler",
                    )
                )
                continue
            if isinstance(item, BaseException):
                raise item
            if item.status != ExperimentStatus.RUNNING:
                logger.with_context(experiment_id=experiment_id).debug(
                    f"Skipping experiment in status {item.status.value}"
                )
                continue
            experiments.append(item)
        return experiments

    async def _run_experiment(self, experiment: Experiment, cycle_id: str) -> ExperimentCycleResult:
        exp_logger = logger.with_context(experiment_id=experiment.id, correlation_id=cycle_id)
        timeout = self.monitoring.experiment_timeout_seconds

        with timer(f"Experiment {experiment.id}") as elapsed:
            try:
                result = await asyncio.wait_for(self.process_experiment(experiment), timeout=timeout)
            except asyncio.TimeoutError:
                exp_logger.error(f"Monitoring timed out after {timeout}s")
                result = ExperimentCycleResult(
                    experiment_id=experiment.id,
                    success=False,
                    timed_out=True,
                    error=f"Timed out after {timeout}s",
                )
            except Exception as e:
                # Isolated to this experiment; the rest of the cycle carries on
                exp_logger.error(f"Monitoring failed: {e}")
                details = e.to_dict() if isinstance(e, ExperimentationError) else {"error_type": type(e).__name__}
                await self.event_bus.publish_async(
                    create_error_event(
                        f"Monitoring failed for {experiment.id}: {e}",
                        {"experiment_id": experiment.id, **details},
                        source="monitoring_scheduler",
                    )
                )
                result = ExperimentCycleResult(experiment_id=experiment.id, success=False, error=str(e))

        result.duration_ms = elapsed["elapsed"] * 1000
        return result

    async def process_experiment(self, experiment: Experiment) -> ExperimentCycleResult:
        """Run every cycle step for one experiment from a single snapshot."""
        metrics = await self.calculate_test_metrics(experiment)
        metrics = await self.store_metrics(metrics)

        alerts = await self.check_for_alerts(experiment, metrics)

        suggestions = self.generate_optimization_suggestions(experiment, metrics)
        await self.store_optimization_suggestions(experiment.id, suggestions)

        actions: list[AutomaticAction] = []
        if experiment.auto_optimization_enabled:
            actions = await self.execute_automatic_optimizations(experiment, metrics)

        return ExperimentCycleResult(
            experiment_id=experiment.id,
            success=True,
            metrics=metrics,
            alerts=alerts,
            suggestions=suggestions,
            actions=actions,
        )

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    async def calculate_test_metrics(self, experiment: Experiment) -> TestPerformanceMetrics:
        """Build the full performance snapshot of an experiment."""
        now = self.clock.now()
        control = experiment.control
        if control is None:
            raise ExperimentationError(
                f"Experiment {experiment.id} has no variations",
                details={"experiment_id": experiment.id},
            )

        variation_metrics = [
            self.statistics.variation_metrics(v, control, experiment.confidence_level)
            for v in experiment.variations
        ]
        overall = self._overall_metrics(experiment, variation_metrics, now)
        significance = self.statistics.significance(
            experiment.variations,
            experiment.confidence_level,
            samples_per_day=overall.samples_per_day or None,
        )

        return TestPerformanceMetrics(
            experiment_id=experiment.id,
            timestamp=now,
            variations=variation_metrics,
            overall_metrics=overall,
            statistical_significance=significance,
            recommendations=self.generate_recommendations(experiment, variation_metrics, significance),
            risk_assessment=self.assess_test_risks(experiment, variation_metrics, significance),
        )

    def _overall_metrics(
        self,
        experiment: Experiment,
        variations: Sequence[VariationMetrics],
        now: datetime,
    ) -> OverallMetrics:
        total_visitors = sum(v.visitors for v in variations)
        total_conversions = sum(v.conversions for v in variations)

        duration = (now - experiment.start_date).total_seconds() if experiment.start_date else 0.0
        duration = max(0.0, duration)
        samples_per_day = safe_divide(total_visitors, duration / SECONDS_PER_DAY)

        projected_end = None
        if samples_per_day > 0 and experiment.minimum_sample_size > total_visitors:
            days_remaining = (experiment.minimum_sample_size - total_visitors) / samples_per_day
            projected_end = now + timedelta(days=days_remaining)

        return OverallMetrics(
            total_visitors=total_visitors,
            total_conversions=total_conversions,
            average_conversion_rate=safe_divide(total_conversions, total_visitors),
            total_revenue=sum(v.revenue for v in variations),
            test_duration_seconds=duration,
            samples_per_day=samples_per_day,
            projected_end_date=projected_end,
        )

    async def store_metrics(self, metrics: TestPerformanceMetrics) -> TestPerformanceMetrics:
        """Append a snapshot to the history.

        Snapshot timestamps are strictly increasing per experiment; a
        snapshot that would collide with or precede the previous one is
        moved 1ms past it.

        Returns:
            The snapshot as stored.
        """
        timestamp_ms = to_epoch_ms(metrics.timestamp)
        previous = self._last_metrics_ms.get(metrics.experiment_id)
        if previous is not None and timestamp_ms <= previous:
            timestamp_ms = previous + 1
            metrics = metrics.model_copy(update={"timestamp": from_epoch_ms(timestamp_ms)})

        await self.store.set(
            metrics_key(metrics.experiment_id, timestamp_ms),
            metrics.model_dump(mode="json"),
            ttl_seconds=self.monitoring.history_retention_days * SECONDS_PER_DAY,
        )
        self._last_metrics_ms[metrics.experiment_id] = timestamp_ms
        return metrics

    async def get_historical_metrics(self, experiment_id: str, days: float) -> list[TestPerformanceMetrics]:
        """Stored snapshots from the last ``days`` days, oldest first."""
        since_ms = to_epoch_ms(self.clock.now() - timedelta(days=days))
        prefix = metrics_prefix(experiment_id)
        records = await self.store.scan_prefix(prefix)

        history: list[tuple[int, TestPerformanceMetrics]] = []
        for key, data in records.items():
            timestamp_ms = int(key[len(prefix):])
            if timestamp_ms >= since_ms:
                history.append((timestamp_ms, TestPerformanceMetrics.model_validate(data)))
        history.sort(key=lambda item: item[0])
        return [metrics for _, metrics in history]

    async def get_test_metrics(self, experiment_id: str) -> TestPerformanceMetrics | None:
        """Fresh snapshot for an experiment, or None when it does not exist."""
        try:
            experiment = await self.lifecycle.get_experiment(experiment_id)
        except ExperimentNotFoundError:
            return None
        return await self.calculate_test_metrics(experiment)

    # -------------------------------------------------------------------------
    # Recommendations & Risk
    # -------------------------------------------------------------------------

    def generate_recommendations(
        self,
        experiment: Experiment,
        variations: Sequence[VariationMetrics],
        significance: StatisticalSignificance,
    ) -> list[TestRecommendation]:
        """Derive corrective actions from one snapshot."""
        recommendations: list[TestRecommendation] = []
        power = significance.power_analysis

        if experiment.is_early_stopping_enabled and significance.is_significant:
            winner = next((v for v in variations if v.variation_id == significance.winning_variation_id), None)
            if winner is not None and winner.probability_to_beat_control > self.thresholds.stop_early_probability:
                recommendations.append(
                    TestRecommendation(
                        type=RecommendationType.STOP_EARLY,
                        priority=RecommendationPriority.HIGH,
                        title="Stop Test Early - Clear Winner Identified",
                        description=(
                            f"Variation {winner.variation_id} shows a statistically significant improvement "
                            f"with {winner.probability_to_beat_control:.1%} probability to beat control."
                        ),
                        impact=f"Conversion rate {winner.conversion_rate:.2%}",
                        confidence=winner.probability_to_beat_control,
                        action_items=[
                            "Review test results",
                            "Roll out the winning variation",
                            "Document learnings",
                        ],
                        estimated_lift=estimated_lift(variations, winner),
                        variation_ids=[winner.variation_id],
                    )
                )

        if power.is_underpowered:
            missing = max(0, power.required_sample_size - experiment.current_sample_size)
            recommendations.append(
                TestRecommendation(
                    type=RecommendationType.EXTEND_TEST,
                    priority=RecommendationPriority.MEDIUM,
                    title="Extend Test Duration - Insufficient Sample Size",
                    description=f"Test needs {missing} more samples to reach statistical power.",
                    impact=f"Current power {power.current_power:.1%}",
                    confidence=0.9,
                    action_items=[
                        f"Run test for {power.days_to_completion} more days",
                        "Consider increasing traffic allocation",
                        "Monitor daily sample rate",
                    ],
                )
            )

        poor = [
            v
            for v in variations
            if not v.is_control
            and v.probability_to_beat_control < self.thresholds.adjust_traffic_probability
            and v.expected_loss > self.thresholds.adjust_traffic_expected_loss
        ]
        if poor:
            recommendations.append(
                TestRecommendation(
                    type=RecommendationType.ADJUST_TRAFFIC,
                    priority=RecommendationPriority.MEDIUM,
                    title="Reallocate Traffic from Poor Performers",
                    description="Some variations show consistently poor performance and high expected loss.",
                    impact=f"{len(poor)} variation(s) losing conversions",
                    confidence=0.8,
                    action_items=[
                        "Reduce traffic to underperforming variations",
                        "Increase traffic to promising variations",
                        "Consider stopping poor performers entirely",
                    ],
                    variation_ids=[v.variation_id for v in poor],
                )
            )

        return recommendations

    def assess_test_risks(
        self,
        experiment: Experiment,
        variations: Sequence[VariationMetrics],
        significance: StatisticalSignificance,
    ) -> RiskAssessment:
        """Risk level, contributing factors, false-positive risk and opportunity cost."""
        risk_factors: list[str] = []
        risk_level = RiskLevel.LOW

        if any(v.expected_loss > self.thresholds.risk_expected_loss for v in variations):
            risk_factors.append("High expected loss from some variations")
            risk_level = RiskLevel.MEDIUM

        if significance.power_analysis.is_underpowered:
            risk_factors.append("Insufficient statistical power")
            if risk_level == RiskLevel.LOW:
                risk_level = RiskLevel.MEDIUM

        if len(experiment.variations) > self.thresholds.risk_max_variations:
            risk_factors.append("Multiple comparisons increase false positive risk")
            risk_level = RiskLevel.HIGH

        comparisons = max(0, len(experiment.variations) - 1)
        false_positive_risk = 1 - experiment.confidence_level**comparisons

        opportunity_cost = 0.0
        control = next((v for v in variations if v.is_control), None)
        if control is not None and variations:
            best = max(variations, key=lambda v: v.conversion_rate)
            opportunity_cost = (best.conversion_rate - control.conversion_rate) * control.visitors

        return RiskAssessment(
            risk_level=risk_level,
            risk_factors=risk_factors,
            mitigation_strategies=[
                "Confirm results against the minimum sample size before acting",
                "Keep early stopping rules enabled",
                "Monitor test performance continuously",
            ],
            false_positive_risk=false_positive_risk,
            opportunity_cost=opportunity_cost,
        )

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    async def check_for_alerts(
        self,
        experiment: Experiment,
        metrics: TestPerformanceMetrics,
    ) -> list[MonitoringAlert]:
        """Raise the alerts a snapshot warrants.

        Returns:
            Alerts actually created; repeats suppressed by deduplication are left out.
        """
        significance = metrics.statistical_significance
        power = significance.power_analysis
        candidates: list[MonitoringAlert] = []

        history = [
            m
            for m in await self.get_historical_metrics(experiment.id, self.monitoring.trend_window_days)
            if m.timestamp < metrics.timestamp
        ]
        if history:
            current_rate = metrics.overall_metrics.average_conversion_rate
            trailing_rate = sum(m.overall_metrics.average_conversion_rate for m in history) / len(history)
            if trailing_rate > 0 and current_rate < trailing_rate * self.thresholds.performance_drop_ratio:
                drop = 1 - current_rate / trailing_rate
                candidates.append(
                    MonitoringAlert(
                        experiment_id=experiment.id,
                        type=AlertType.PERFORMANCE_DROP,
                        severity=AlertSeverity.WARNING,
                        title="Performance Drop",
                        message=f"Conversion rate dropped {drop:.1%} compared to the recent average",
                        data={
                            "current_rate": current_rate,
                            "trailing_rate": trailing_rate,
                            "snapshots": len(history),
                        },
                        timestamp=metrics.timestamp,
                    )
                )

        if significance.is_significant:
            candidates.append(
                MonitoringAlert(
                    experiment_id=experiment.id,
                    type=AlertType.SIGNIFICANCE_ACHIEVED,
                    severity=AlertSeverity.INFO,
                    title="Statistical Significance Achieved",
                    message=f"Test achieved statistical significance (p={significance.p_value:.4f})",
                    data={
                        "p_value": significance.p_value,
                        "winning_variation_id": significance.winning_variation_id,
                    },
                    timestamp=metrics.timestamp,
                )
            )

        if power.is_underpowered:
            candidates.append(
                MonitoringAlert(
                    experiment_id=experiment.id,
                    type=AlertType.SAMPLE_SIZE_WARNING,
                    severity=AlertSeverity.WARNING,
                    title="Sample Size Warning",
                    message=f"Test is underpowered (current power: {power.current_power:.1%})",
                    data={
                        "current_power": power.current_power,
                        "required_sample_size": power.required_sample_size,
                    },
                    timestamp=metrics.timestamp,
                )
            )

        created = []
        for alert in candidates:
            if await self.create_alert(alert):
                created.append(alert)
        return created

    async def create_alert(self, alert: MonitoringAlert) -> bool:
        """Persist, publish and notify an alert unless a recent one of its type exists.

        Returns:
            False when the alert was suppressed as a duplicate.
        """
        window_seconds = int(math.ceil(self.monitoring.alert_dedup_window_minutes * 60))
        if window_seconds > 0:
            dedup = alert_dedup_key(alert.experiment_id, alert.type.value)
            if await self.store.get(dedup) is not None:
                logger.with_context(experiment_id=alert.experiment_id).debug(
                    f"Suppressed duplicate {alert.type.value} alert"
                )
                return False
            await self.store.set(dedup, alert.id, ttl_seconds=window_seconds)

        retention = self.monitoring.alert_retention_days * SECONDS_PER_DAY
        await self.store.set(alert_key(alert.id), alert.model_dump(mode="json"), ttl_seconds=retention)
        await self.store.sadd(alert_index_key(alert.experiment_id), alert.id, ttl_seconds=retention)

        level = "INFO" if alert.severity == AlertSeverity.INFO else "WARNING"
        log_alert(alert.message, experiment_id=alert.experiment_id, level=level, alert_type=alert.type.value)
        await self.event_bus.publish_async(
            create_monitoring_event(EventType.ALERT_CREATED, alert.model_dump(mode="json"))
        )
        self.dispatcher.dispatch(alert)
        return True

    async def get_test_alerts(self, experiment_id: str) -> list[MonitoringAlert]:
        """Stored alerts of an experiment, newest first."""
        alert_ids = await self.store.smembers(alert_index_key(experiment_id))
        alerts = []
        for alert_id in alert_ids:
            data = await self.store.get(alert_key(alert_id))
            if data is not None:
                alerts.append(MonitoringAlert.model_validate(data))
        return sorted(alerts, key=lambda a: a.timestamp, reverse=True)

    # -------------------------------------------------------------------------
    # Suggestions
    # -------------------------------------------------------------------------

    def generate_optimization_suggestions(
        self,
        experiment: Experiment,
        metrics: TestPerformanceMetrics,
    ) -> list[OptimizationSuggestion]:
        suggestions: list[OptimizationSuggestion] = []
        best = metrics.best_variation()

        if best is not None and best.probability_to_beat_control > self.thresholds.reallocation_suggestion_probability:
            lift = estimated_lift(metrics.variations, best)
            suggestions.append(
                OptimizationSuggestion(
                    experiment_id=experiment.id,
                    type=SuggestionType.TRAFFIC_REALLOCATION,
                    title="Increase Traffic to Best Performing Variation",
                    description=(
                        f"Variation {best.variation_id} shows strong performance with "
                        f"{best.probability_to_beat_control:.1%} probability to beat control"
                    ),
                    expected_impact=f"Estimated lift {lift:.1f}%",
                    confidence=best.probability_to_beat_control,
                    implementation={
                        "variation_id": best.variation_id,
                        "estimated_lift": lift,
                        "steps": [
                            "Increase traffic allocation to the best variation",
                            "Reduce traffic to underperforming variations",
                            "Monitor for 3-5 days to confirm improvement",
                        ],
                    },
                    timestamp=metrics.timestamp,
                )
            )

        power = metrics.statistical_significance.power_analysis
        if power.is_underpowered:
            suggestions.append(
                OptimizationSuggestion(
                    experiment_id=experiment.id,
                    type=SuggestionType.DURATION_EXTENSION,
                    title="Extend Test Duration for Statistical Power",
                    description=(
                        f"Test needs {power.days_to_completion} more days to reach adequate statistical power"
                    ),
                    expected_impact=f"Power from {power.current_power:.1%} to {self.statistics.target_power:.0%}",
                    confidence=0.9,
                    implementation={
                        "additional_days": power.days_to_completion,
                        "required_sample_size": power.required_sample_size,
                        "steps": [
                            f"Extend test runtime by {power.days_to_completion} days",
                            "Monitor daily sample acquisition rate",
                            "Alert when the minimum sample size is reached",
                        ],
                    },
                    timestamp=metrics.timestamp,
                )
            )

        return suggestions

    async def store_optimization_suggestions(
        self,
        experiment_id: str,
        suggestions: Sequence[OptimizationSuggestion],
    ) -> None:
        if not suggestions:
            return
        retention = self.monitoring.suggestion_retention_days * SECONDS_PER_DAY
        for suggestion in suggestions:
            await self.store.set(
                suggestion_key(suggestion.id),
                suggestion.model_dump(mode="json"),
                ttl_seconds=retention,
            )
        await self.store.sadd(
            suggestion_index_key(experiment_id),
            *(s.id for s in suggestions),
            ttl_seconds=retention,
        )
        await self.event_bus.publish_async(
            create_monitoring_event(
                EventType.SUGGESTIONS_STORED,
                {
                    "experiment_id": experiment_id,
                    "suggestion_ids": [s.id for s in suggestions],
                    "types": [s.type.value for s in suggestions],
                },
            )
        )

    async def get_optimization_suggestions(self, experiment_id: str) -> list[OptimizationSuggestion]:
        """Stored suggestions of an experiment, most confident first."""
        suggestion_ids = await self.store.smembers(suggestion_index_key(experiment_id))
        suggestions = []
        for suggestion_id in suggestion_ids:
            data = await self.store.get(suggestion_key(suggestion_id))
            if data is not None:
                suggestions.append(OptimizationSuggestion.model_validate(data))
        return sorted(suggestions, key=lambda s: (s.confidence, s.timestamp), reverse=True)

    # -------------------------------------------------------------------------
    # Automatic Optimizations
    # -------------------------------------------------------------------------

    async def execute_automatic_optimizations(
        self,
        experiment: Experiment,
        metrics: TestPerformanceMetrics,
    ) -> list[AutomaticAction]:
        """Throttle clear losers, then stop early on a clear winner.

        Both actions may fire in the same cycle. A failing action is logged
        and published as an engine error; the other still runs.
        """
        if not experiment.auto_optimization_enabled:
            return []

        exp_logger = logger.with_context(experiment_id=experiment.id)
        actions: list[AutomaticAction] = []

        poor = [
            v.variation_id
            for v in metrics.variations
            if not v.is_control
            and v.probability_to_beat_control < self.thresholds.auto_throttle_probability
            and v.expected_loss > self.thresholds.auto_throttle_expected_loss
        ]
        changes = throttle_allocations(
            experiment.variations,
            poor,
            factor=self.thresholds.throttle_factor,
            floor=self.thresholds.throttle_floor_percent,
        )
        if changes:
            try:
                await self.lifecycle.reallocate_traffic(experiment.id, changes)
            except ExperimentationError as e:
                await self._action_failed(experiment.id, AutoActionType.THROTTLE_VARIATION, e)
            else:
                for variation_id in poor:
                    if variation_id not in changes:
                        continue
                    variation = experiment.get_variation(variation_id)
                    actions.append(
                        AutomaticAction(
                            experiment_id=experiment.id,
                            action=AutoActionType.THROTTLE_VARIATION,
                            variation_id=variation_id,
                            previous_allocation=variation.traffic_allocation if variation else None,
                            new_allocation=changes[variation_id],
                            reason="Low probability to beat control with high expected loss",
                            timestamp=metrics.timestamp,
                        )
                    )

        best = metrics.best_variation()
        if (
            best is not None
            and best.probability_to_beat_control > self.thresholds.auto_stop_probability
            and metrics.statistical_significance.is_significant
            and experiment.current_sample_size >= experiment.minimum_sample_size
        ):
            reason = (
                f"Clear winner identified with {best.probability_to_beat_control:.1%} "
                f"probability to beat control"
            )
            try:
                await self.lifecycle.stop_experiment(experiment.id, winner_id=best.variation_id, reason=reason)
            except ExperimentationError as e:
                await self._action_failed(experiment.id, AutoActionType.STOP_EARLY, e)
            else:
                actions.append(
                    AutomaticAction(
                        experiment_id=experiment.id,
                        action=AutoActionType.STOP_EARLY,
                        variation_id=best.variation_id,
                        reason=reason,
                        timestamp=metrics.timestamp,
                    )
                )

        for action in actions:
            exp_logger.with_context(variation_id=action.variation_id).warning(
                f"Automatic action executed: {action.action.value} ({action.reason})"
            )
            await self.event_bus.publish_async(
                create_monitoring_event(EventType.AUTO_ACTION_EXECUTED, action.model_dump(mode="json"))
            )
        return actions

    async def _action_failed(self, experiment_id: str, action: AutoActionType, error: ExperimentationError) -> None:
        logger.with_context(experiment_id=experiment_id).error(f"Automatic {action.value} failed: {error}")
        await self.event_bus.publish_async(
            create_error_event(
                f"Automatic {action.value} failed for {experiment_id}: {error}",
                {"experiment_id": experiment_id, **error.to_dict()},
                source="monitoring_scheduler",
            )
        )

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def flush_notifications(self) -> None:
        await self.dispatcher.flush()

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    async def get_monitoring_status(self) -> dict[str, Any]:
        """Scheduler state plus store-side counters."""
        active_ids = await self.store.smembers(ACTIVE_TESTS_KEY)
        total_alerts = 0
        for experiment_id in active_ids:
            total_alerts += await self.store.scard(alert_index_key(experiment_id))
        last_cycle = await self.store.get(LAST_CYCLE_KEY)

        return {
            "is_running": self.is_running,
            "interval_minutes": self.monitoring.interval_minutes,
            "active_tests_count": len(active_ids),
            "last_cycle_time": last_cycle.get("completed_at") if last_cycle else None,
            "last_cycle": last_cycle,
            "total_alerts_count": total_alerts,
            "cycles_run": self._cycles_run,
            "notifications": self.dispatcher.get_stats(),
        }
