"""
Test slot allocation for concurrently running experiments.

Manages a fixed pool of test slots and the shared site-traffic budget:
- Slot selection by compatibility, then priority, then least recent use
- Traffic budget that never exceeds 100% across active experiments
- Cross-experiment contamination analysis (element and segment overlap)
- Per-segment traffic allocation with overlap mitigation strategies
- Deferred deployment schedule
- Administrative reserve/block/release overrides

Every read-then-write on the slot pool happens under one RLock, so deploys
and removals issued from worker threads or event-loop tasks never
interleave a capacity check with another allocation.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from experimentation_engine.config.settings import SlotSettings
from experimentation_engine.core.data_types import Experiment, RiskLevel
from experimentation_engine.core.events import (
    Event,
    EventBus,
    EventType,
    create_allocation_event,
)
from experimentation_engine.core.exceptions import ValidationError
from experimentation_engine.core.utils import Clock, SystemClock, jaccard_similarity, to_utc
from experimentation_engine.monitoring.logger import LogCategory, get_logger, log_allocation

logger = get_logger("slot_allocator", LogCategory.ALLOCATION)


NO_SLOT_CONFLICT = "All slots occupied or blocked by constraints"


# =============================================================================
# ENUMS
# =============================================================================


class SlotStatus(str, Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    RESERVED = "reserved"
    BLOCKED = "blocked"


class ExclusionRuleType(str, Enum):
    ELEMENT = "element"
    SEGMENT = "segment"
    TRAFFIC = "traffic"
    TIMING = "timing"


class MitigationStrategy(str, Enum):
    """How to treat traffic shared between two experiments."""

    ISOLATE = "isolate"
    STRATIFY = "stratify"
    EXCLUDE = "exclude"
    ADJUST = "adjust"


def slot_priority(index: int) -> int:
    """Priority of the index-th slot (1-based): 1 for the first 5, 2 up to 15, 3 beyond."""
    if index <= 5:
        return 1
    if index <= 15:
        return 2
    return 3


def mitigation_for(overlap: float) -> MitigationStrategy:
    if overlap > 0.5:
        return MitigationStrategy.EXCLUDE
    if overlap > 0.3:
        return MitigationStrategy.ISOLATE
    if overlap > 0.1:
        return MitigationStrategy.STRATIFY
    return MitigationStrategy.ADJUST


# =============================================================================
# DATA STRUCTURES
# =============================================================================


@dataclass
class ExclusionRule:
    """Slot-level rule that keeps certain experiments out of a slot.

    element/segment rules match when the experiment touches ``value``;
    traffic rules match when the experiment needs more than ``value``
    percent; timing rules match when deployment happens before
    (condition ``"before"``) or after (condition ``"after"``) the ISO
    timestamp in ``value``.
    """

    type: ExclusionRuleType
    value: Any
    reason: str = ""
    condition: str = ""

    def __post_init__(self):
        self.type = ExclusionRuleType(self.type)
        if self.type == ExclusionRuleType.TIMING and self.condition not in ("before", "after"):
            raise ValueError("Timing rules need condition 'before' or 'after'")

    def is_violated_by(self, experiment: Experiment, required_traffic: float, now: datetime) -> bool:
        if self.type == ExclusionRuleType.ELEMENT:
            return self.value in experiment.elements
        if self.type == ExclusionRuleType.SEGMENT:
            return self.value in experiment.target_segments
        if self.type == ExclusionRuleType.TRAFFIC:
            return required_traffic > float(self.value)
        boundary = self.value if isinstance(self.value, datetime) else datetime.fromisoformat(str(self.value))
        boundary = to_utc(boundary)
        if self.condition == "before":
            return now < boundary
        return now > boundary


@dataclass
class SlotConstraints:
    max_duration: timedelta = timedelta(days=30)
    min_traffic_percent: float = 2.0
    max_traffic_percent: float = 10.0
    allowed_segments: list[str] = field(default_factory=lambda: ["all"])
    blocked_elements: list[str] = field(default_factory=list)
    exclusion_rules: list[ExclusionRule] = field(default_factory=list)


@dataclass
class TestSlot:
    """A unit of concurrency capacity holding at most one experiment."""

    __test__ = False

    id: str
    name: str
    priority: int
    constraints: SlotConstraints
    created_at: datetime
    status: SlotStatus = SlotStatus.AVAILABLE
    allocated_traffic: float = 0.0
    active_experiment: Experiment | None = None
    last_used: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "status": self.status.value,
            "allocated_traffic": self.allocated_traffic,
            "active_experiment": self.active_experiment.id if self.active_experiment else None,
            "created_at": self.created_at.isoformat(),
            "last_used": self.last_used.isoformat() if self.last_used else None,
        }


@dataclass
class SegmentOverlap:
    with_slot: str
    with_experiment: str
    overlap_percentage: float
    mitigation_strategy: MitigationStrategy


@dataclass
class TrafficAllocation:
    """Traffic an experiment holds, split by audience segment."""

    experiment_id: str
    slot_id: str
    segment: str
    percentage: float
    segment_allocations: dict[str, float]
    overlaps: list[SegmentOverlap] = field(default_factory=list)

    @property
    def test_slots(self) -> list[str]:
        return [self.slot_id]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["overlaps"] = [
            {**o, "mitigation_strategy": o["mitigation_strategy"].value} for o in data["overlaps"]
        ]
        return data


@dataclass
class TestSchedule:
    """A deferred deployment request."""

    __test__ = False

    experiment_id: str
    start_time: datetime
    end_time: datetime | None = None
    slot_id: str | None = None
    priority: int = 2
    dependencies: list[str] = field(default_factory=list)
    auto_start: bool = True


@dataclass
class ContaminationReport:
    risk_level: RiskLevel = RiskLevel.LOW
    warnings: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)


@dataclass
class DeploymentResult:
    success: bool
    slot_id: str | None = None
    traffic_allocation: TrafficAllocation | None = None
    warnings: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    contamination_risk: RiskLevel = RiskLevel.LOW

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "slot_id": self.slot_id,
            "traffic_allocation": self.traffic_allocation.to_dict() if self.traffic_allocation else None,
            "warnings": list(self.warnings),
            "conflicts": list(self.conflicts),
            "contamination_risk": self.contamination_risk.value,
        }


@dataclass
class RemovalResult:
    success: bool
    released_slot: str | None = None
    reallocated_traffic: float = 0.0


@dataclass
class CrossTestEffect:
    primary_experiment: str
    affected_experiment: str
    effect_magnitude: float
    mitigation_strategy: MitigationStrategy
    mitigation_applied: bool


@dataclass
class AllocationAnalytics:
    total_slots: int
    active_tests: int
    traffic_utilization: float
    segment_coverage: dict[str, float]
    cross_test_effects: list[CrossTestEffect]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["cross_test_effects"] = [
            {**e, "mitigation_strategy": e["mitigation_strategy"].value} for e in data["cross_test_effects"]
        ]
        return data


# =============================================================================
# SLOT ALLOCATOR
# =============================================================================


class SlotAllocator:
    """Allocates test slots and traffic to experiments.

    Args:
        settings: Pool size, default traffic and contamination thresholds.
        event_bus: Bus receiving allocation events.
        clock: Time source for LRU ordering, schedules and timing rules.
    """

    def __init__(
        self,
        settings: SlotSettings | None = None,
        event_bus: EventBus | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings or SlotSettings()
        self.event_bus = event_bus or EventBus()
        self.clock = clock or SystemClock()

        self._lock = threading.RLock()
        self._slots: dict[str, TestSlot] = {}
        self._allocations: dict[str, TrafficAllocation] = {}
        self._deployed: dict[str, str] = {}  # experiment_id -> slot_id
        self._schedule: list[TestSchedule] = []
        self._is_active = True

        self._add_slots(self.settings.max_simultaneous_tests)
        self._publish(
            create_allocation_event(
                EventType.FRAMEWORK_INITIALIZED,
                {
                    "total_slots": len(self._slots),
                    "configuration": self.settings.model_dump(),
                },
            )
        )
        logger.info(f"Slot allocator initialized with {len(self._slots)} slots")

    def _default_constraints(self) -> SlotConstraints:
        return SlotConstraints(
            max_duration=timedelta(days=self.settings.slot_max_duration_days),
            min_traffic_percent=self.settings.slot_min_traffic_percent,
            max_traffic_percent=self.settings.slot_max_traffic_percent,
        )

    def _add_slots(self, target: int) -> None:
        now = self.clock.now()
        for i in range(len(self._slots) + 1, target + 1):
            slot_id = f"slot_{i:02d}"
            self._slots[slot_id] = TestSlot(
                id=slot_id,
                name=f"Test Slot {i}",
                priority=slot_priority(i),
                constraints=self._default_constraints(),
                created_at=now,
            )

    def _publish(self, event: Event) -> None:
        self.event_bus.publish(event)

    # -------------------------------------------------------------------------
    # Deployment
    # -------------------------------------------------------------------------

    def required_traffic(self, experiment: Experiment) -> float:
        return experiment.traffic_allocation

    def deploy(self, experiment: Experiment, preferred_slot: str | None = None) -> DeploymentResult:
        """Place an experiment into a compatible slot and claim its traffic.

        Returns:
            DeploymentResult; success is False only when the experiment is
            already deployed or no compatible slot exists.
        """
        with self._lock:
            result = self._deploy_locked(experiment, preferred_slot)

        if result.success:
            self._publish(
                create_allocation_event(
                    EventType.TEST_DEPLOYED,
                    {
                        "experiment_id": experiment.id,
                        "slot_id": result.slot_id,
                        "traffic_allocation": result.traffic_allocation.to_dict(),
                        "contamination_risk": result.contamination_risk.value,
                    },
                )
            )
            log_allocation(
                f"Deployed experiment {experiment.id} to {result.slot_id}",
                experiment_id=experiment.id,
                slot_id=result.slot_id,
                traffic=result.traffic_allocation.percentage,
                warnings=len(result.warnings),
                conflicts=len(result.conflicts),
            )
        else:
            self._publish(
                create_allocation_event(
                    EventType.DEPLOYMENT_FAILED,
                    {"experiment_id": experiment.id, "conflicts": result.conflicts},
                )
            )
            log_allocation(
                f"Deployment of {experiment.id} failed: {'; '.join(result.conflicts)}",
                experiment_id=experiment.id,
                level="WARNING",
            )
        return result

    def _deploy_locked(self, experiment: Experiment, preferred_slot: str | None) -> DeploymentResult:
        if not self._is_active:
            return DeploymentResult(success=False, conflicts=["Slot allocator is shut down"])

        if experiment.id in self._deployed:
            return DeploymentResult(
                success=False,
                slot_id=self._deployed[experiment.id],
                conflicts=[f"Experiment {experiment.id} is already deployed in {self._deployed[experiment.id]}"],
            )

        required = self.required_traffic(experiment)
        if required <= 0:
            return DeploymentResult(
                success=False,
                conflicts=[f"Experiment {experiment.id} requests no traffic ({required}%)"],
            )

        warnings: list[str] = []
        slot = None

        if preferred_slot is not None:
            candidate = self._slots.get(preferred_slot)
            if (
                candidate is not None
                and candidate.status in (SlotStatus.AVAILABLE, SlotStatus.RESERVED)
                and self._is_compatible(candidate, experiment, required)
            ):
                slot = candidate
            else:
                warnings.append(f"Preferred slot {preferred_slot} is unavailable or incompatible")

        if slot is None:
            slot = self._find_optimal_slot(experiment, required)

        if slot is None:
            return DeploymentResult(
                success=False,
                warnings=warnings + ["No available slots found for test deployment"],
                conflicts=[NO_SLOT_CONFLICT],
            )

        contamination = self._analyze_contamination(experiment)
        allocation = self._allocate_traffic(experiment, slot.id, required)

        slot.status = SlotStatus.OCCUPIED
        slot.active_experiment = experiment
        slot.allocated_traffic = allocation.percentage
        slot.last_used = self.clock.now()
        self._allocations[experiment.id] = allocation
        self._deployed[experiment.id] = slot.id

        return DeploymentResult(
            success=True,
            slot_id=slot.id,
            traffic_allocation=allocation,
            warnings=warnings + contamination.warnings,
            conflicts=contamination.conflicts,
            contamination_risk=contamination.risk_level,
        )

    def _find_optimal_slot(self, experiment: Experiment, required: float) -> TestSlot | None:
        candidates = [
            slot
            for slot in self._slots.values()
            if slot.status == SlotStatus.AVAILABLE and self._is_compatible(slot, experiment, required)
        ]
        if not candidates:
            return None
        never_used = datetime.min.replace(tzinfo=self.clock.now().tzinfo)
        candidates.sort(key=lambda s: (s.priority, s.last_used or never_used, s.id))
        return candidates[0]

    def _is_compatible(self, slot: TestSlot, experiment: Experiment, required: float) -> bool:
        constraints = slot.constraints

        if required < constraints.min_traffic_percent or required > constraints.max_traffic_percent:
            return False
        if required > self._available_traffic():
            return False

        if "all" not in constraints.allowed_segments and not any(
            segment in constraints.allowed_segments for segment in experiment.target_segments
        ):
            return False

        if any(element in constraints.blocked_elements for element in experiment.elements):
            return False

        now = self.clock.now()
        return not any(rule.is_violated_by(experiment, required, now) for rule in constraints.exclusion_rules)

    def _available_traffic(self) -> float:
        return max(0.0, 100.0 - self._total_allocated())

    def _total_allocated(self) -> float:
        return sum(a.percentage for a in self._allocations.values())

    def _analyze_contamination(self, experiment: Experiment) -> ContaminationReport:
        report = ContaminationReport()
        s = self.settings

        for slot in self._slots.values():
            other = slot.active_experiment
            if slot.status != SlotStatus.OCCUPIED or other is None or other.id == experiment.id:
                continue

            element_overlap = jaccard_similarity(experiment.elements, other.elements)
            if element_overlap > s.element_conflict_threshold:
                report.conflicts.append(
                    f"High element overlap ({round(element_overlap * 100)}%) with test {other.id}"
                )
                report.risk_level = RiskLevel.HIGH
            elif element_overlap > s.element_warning_threshold:
                report.warnings.append(
                    f"Moderate element overlap ({round(element_overlap * 100)}%) with test {other.id}"
                )
                if report.risk_level == RiskLevel.LOW:
                    report.risk_level = RiskLevel.MEDIUM

            segment_overlap = jaccard_similarity(experiment.target_segments, other.target_segments)
            if segment_overlap > s.segment_conflict_threshold:
                report.conflicts.append(
                    f"High segment overlap ({round(segment_overlap * 100)}%) with test {other.id}"
                )
                report.risk_level = RiskLevel.HIGH
            elif segment_overlap > s.segment_warning_threshold:
                report.warnings.append(
                    f"Moderate segment overlap ({round(segment_overlap * 100)}%) with test {other.id}"
                )
                if report.risk_level == RiskLevel.LOW:
                    report.risk_level = RiskLevel.MEDIUM

        return report

    def _allocate_traffic(self, experiment: Experiment, slot_id: str, required: float) -> TrafficAllocation:
        segments = experiment.target_segments
        per_segment = min(required / len(segments), self.settings.max_traffic_per_segment)
        segment_allocations = {segment: per_segment for segment in segments}

        overlaps: list[SegmentOverlap] = []
        for other_id, other in self._allocations.items():
            overlap = _traffic_overlap(segment_allocations, other.segment_allocations)
            if overlap > 0:
                overlaps.append(
                    SegmentOverlap(
                        with_slot=other.slot_id,
                        with_experiment=other_id,
                        overlap_percentage=overlap,
                        mitigation_strategy=mitigation_for(overlap),
                    )
                )

        return TrafficAllocation(
            experiment_id=experiment.id,
            slot_id=slot_id,
            segment=segments[0],
            percentage=sum(segment_allocations.values()),
            segment_allocations=segment_allocations,
            overlaps=overlaps,
        )

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    def remove(self, experiment_id: str) -> RemovalResult:
        """Release an experiment's slot and traffic."""
        with self._lock:
            slot_id = self._deployed.pop(experiment_id, None)
            if slot_id is None:
                return RemovalResult(success=False)
            slot = self._slots.get(slot_id)
            if slot is not None:
                slot.status = SlotStatus.AVAILABLE
                slot.active_experiment = None
                slot.allocated_traffic = 0.0
            allocation = self._allocations.pop(experiment_id, None)
            released = allocation.percentage if allocation else 0.0

        self._publish(
            create_allocation_event(
                EventType.TEST_REMOVED,
                {"experiment_id": experiment_id, "released_slot": slot_id, "released_traffic": released},
            )
        )
        log_allocation(
            f"Removed experiment {experiment_id} from {slot_id}",
            experiment_id=experiment_id,
            slot_id=slot_id,
            released_traffic=released,
        )
        return RemovalResult(success=True, released_slot=slot_id, reallocated_traffic=released)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def schedule_test(self, schedule: TestSchedule) -> None:
        """Queue a deployment for later; replaces an existing entry for the experiment."""
        if schedule.end_time is not None and schedule.end_time <= schedule.start_time:
            raise ValidationError(
                "Schedule end_time must be after start_time",
                field_name="end_time",
                invalid_value=schedule.end_time,
            )
        with self._lock:
            self._schedule = [s for s in self._schedule if s.experiment_id != schedule.experiment_id]
            self._schedule.append(schedule)
            self._schedule.sort(key=lambda s: (to_utc(s.start_time), s.priority))

        self._publish(
            create_allocation_event(
                EventType.TEST_SCHEDULED,
                {
                    "experiment_id": schedule.experiment_id,
                    "start_time": schedule.start_time.isoformat(),
                    "slot_id": schedule.slot_id,
                },
            )
        )

    def process_scheduled_tests(self, now: datetime | None = None) -> list[TestSchedule]:
        """Release schedule entries whose start time has arrived.

        An entry waits while any of its dependencies is still deployed or
        still scheduled. Released entries raise SCHEDULED_TEST_READY; the
        allocator never deploys them itself.

        Returns:
            Entries released by this call.
        """
        now = to_utc(now or self.clock.now())
        with self._lock:
            pending_ids = {s.experiment_id for s in self._schedule}
            ready = [
                s
                for s in self._schedule
                if s.auto_start
                and to_utc(s.start_time) <= now
                and not any(d in self._deployed or d in pending_ids for d in s.dependencies)
            ]
            ready_ids = {s.experiment_id for s in ready}
            self._schedule = [s for s in self._schedule if s.experiment_id not in ready_ids]

        for schedule in ready:
            self._publish(
                create_allocation_event(
                    EventType.SCHEDULED_TEST_READY,
                    {"experiment_id": schedule.experiment_id, "slot_id": schedule.slot_id},
                )
            )
        return ready

    def get_schedule(self) -> list[TestSchedule]:
        with self._lock:
            return list(self._schedule)

    # -------------------------------------------------------------------------
    # Administrative Overrides
    # -------------------------------------------------------------------------

    def reserve_slot(self, slot_id: str) -> TestSlot:
        """Hold a free slot out of automatic selection; deploy can still target it by name."""
        return self._set_slot_status(slot_id, SlotStatus.RESERVED)

    def block_slot(self, slot_id: str) -> TestSlot:
        return self._set_slot_status(slot_id, SlotStatus.BLOCKED)

    def release_slot(self, slot_id: str) -> TestSlot:
        """Return a reserved or blocked slot to the available pool."""
        return self._set_slot_status(slot_id, SlotStatus.AVAILABLE)

    def _set_slot_status(self, slot_id: str, status: SlotStatus) -> TestSlot:
        with self._lock:
            slot = self._slots.get(slot_id)
            if slot is None:
                raise ValidationError(f"Unknown slot: {slot_id}", field_name="slot_id", invalid_value=slot_id)
            if slot.status == SlotStatus.OCCUPIED:
                raise ValidationError(
                    f"Slot {slot_id} is occupied by {slot.active_experiment.id}; remove the experiment first",
                    field_name="slot_id",
                    invalid_value=slot_id,
                )
            previous = slot.status
            slot.status = status
            snapshot = replace(slot)

        self._publish(
            create_allocation_event(
                EventType.SLOT_STATUS_CHANGED,
                {"slot_id": slot_id, "previous": previous.value, "status": status.value},
            )
        )
        return snapshot

    def set_slot_constraints(self, slot_id: str, constraints: SlotConstraints) -> None:
        with self._lock:
            slot = self._slots.get(slot_id)
            if slot is None:
                raise ValidationError(f"Unknown slot: {slot_id}", field_name="slot_id", invalid_value=slot_id)
            slot.constraints = constraints

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_slot(self, slot_id: str) -> TestSlot | None:
        with self._lock:
            slot = self._slots.get(slot_id)
            return replace(slot) if slot else None

    def get_slots(self) -> list[TestSlot]:
        with self._lock:
            return [replace(slot) for slot in self._slots.values()]

    def get_allocation(self, experiment_id: str) -> TrafficAllocation | None:
        with self._lock:
            allocation = self._allocations.get(experiment_id)
            return replace(allocation) if allocation else None

    def deployed_slot(self, experiment_id: str) -> str | None:
        with self._lock:
            return self._deployed.get(experiment_id)

    def total_allocated_traffic(self) -> float:
        with self._lock:
            return self._total_allocated()

    def get_framework_status(self) -> dict[str, Any]:
        with self._lock:
            counts = {status: 0 for status in SlotStatus}
            for slot in self._slots.values():
                counts[slot.status] += 1
            total_allocated = self._total_allocated()
            return {
                "is_active": self._is_active,
                "total_slots": len(self._slots),
                "available_slots": counts[SlotStatus.AVAILABLE],
                "occupied_slots": counts[SlotStatus.OCCUPIED],
                "reserved_slots": counts[SlotStatus.RESERVED],
                "blocked_slots": counts[SlotStatus.BLOCKED],
                "total_traffic_allocated": total_allocated,
                "available_traffic": max(0.0, 100.0 - total_allocated),
                "active_experiments": sorted(self._deployed),
                "scheduled_tests": len(self._schedule),
            }

    def get_detailed_analytics(self) -> AllocationAnalytics:
        """Utilization, per-segment coverage and cross-experiment effects."""
        with self._lock:
            coverage: dict[str, float] = {}
            for allocation in self._allocations.values():
                for segment, share in allocation.segment_allocations.items():
                    coverage[segment] = coverage.get(segment, 0.0) + share

            effects = [
                CrossTestEffect(
                    primary_experiment=allocation.experiment_id,
                    affected_experiment=overlap.with_experiment,
                    effect_magnitude=overlap.overlap_percentage,
                    mitigation_strategy=overlap.mitigation_strategy,
                    mitigation_applied=overlap.mitigation_strategy != MitigationStrategy.ADJUST,
                )
                for allocation in self._allocations.values()
                for overlap in allocation.overlaps
                if overlap.with_experiment in self._allocations
            ]

            return AllocationAnalytics(
                total_slots=len(self._slots),
                active_tests=len(self._deployed),
                traffic_utilization=self._total_allocated(),
                segment_coverage=coverage,
                cross_test_effects=effects,
            )

    # -------------------------------------------------------------------------
    # Configuration & Shutdown
    # -------------------------------------------------------------------------

    def update_configuration(self, **changes: Any) -> SlotSettings:
        """Apply setting changes; growing max_simultaneous_tests adds slots.

        The pool never shrinks while the allocator is running.
        """
        unknown = set(changes) - set(SlotSettings.model_fields)
        if unknown:
            raise ValidationError(
                f"Unknown slot settings: {sorted(unknown)}",
                field_name="configuration",
                invalid_value=sorted(unknown),
            )
        new_settings = SlotSettings.model_validate({**self.settings.model_dump(), **changes})

        with self._lock:
            target = new_settings.max_simultaneous_tests
            if target < len(self._slots):
                raise ValidationError(
                    f"Cannot shrink slot pool from {len(self._slots)} to {target}",
                    field_name="max_simultaneous_tests",
                    invalid_value=target,
                )
            self.settings = new_settings
            self._add_slots(target)
            total = len(self._slots)

        self._publish(
            create_allocation_event(
                EventType.CONFIGURATION_UPDATED,
                {"changes": changes, "total_slots": total},
            )
        )
        logger.info(f"Slot configuration updated: {changes}")
        return new_settings

    def shutdown(self) -> None:
        """Clear all slots, allocations and schedule entries."""
        with self._lock:
            self._slots.clear()
            self._allocations.clear()
            self._deployed.clear()
            self._schedule.clear()
            self._is_active = False
        self._publish(create_allocation_event(EventType.FRAMEWORK_SHUTDOWN, {}))
        logger.info("Slot allocator shut down")


def _traffic_overlap(a: dict[str, float], b: dict[str, float]) -> float:
    """Share of traffic two segment allocations have in common (0-1)."""
    largest = max(sum(a.values()), sum(b.values()))
    if largest <= 0:
        return 0.0
    shared = sum(min(a[s], b[s]) for s in a.keys() & b.keys())
    return shared / largest
