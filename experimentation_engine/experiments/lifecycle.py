"""
Experiment lifecycle management.

Owns the experiment state machine and is the only writer of experiment
records in the store:

    draft --start--> running --pause--> paused --resume--> running
    running|paused --stop--> completed
    draft|running|paused --abort--> stopped

Starting an experiment claims a test slot through the SlotAllocator when
one is attached; completing or aborting it releases the slot again.
Completed and stopped experiments are terminal and reject further edits
and counter updates.
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable

import pydantic

from experimentation_engine.allocation.slot_allocator import DeploymentResult, SlotAllocator
from experimentation_engine.core.data_types import Experiment, ExperimentStatus
from experimentation_engine.core.events import (
    Event,
    EventBus,
    EventType,
    create_error_event,
    create_experiment_event,
)
from experimentation_engine.core.exceptions import (
    ExperimentationError,
    ExperimentClosedError,
    ExperimentNotFoundError,
    ExperimentValidationError,
    InvalidStateTransitionError,
    InvalidWinnerError,
    StoreError,
    UnsupportedModelError,
    ValidationError,
)
from experimentation_engine.core.store import ACTIVE_TESTS_KEY, KeyValueStore, experiment_key
from experimentation_engine.core.utils import Clock, SystemClock
from experimentation_engine.monitoring.logger import LogCategory, get_logger, log_lifecycle

logger = get_logger("lifecycle", LogCategory.LIFECYCLE)


# Statuses each action may start from
_ALLOWED_FROM: dict[str, frozenset[ExperimentStatus]] = {
    "start": frozenset({ExperimentStatus.DRAFT}),
    "pause": frozenset({ExperimentStatus.RUNNING}),
    "resume": frozenset({ExperimentStatus.PAUSED}),
    "stop": frozenset({ExperimentStatus.RUNNING, ExperimentStatus.PAUSED}),
    "abort": frozenset({ExperimentStatus.DRAFT, ExperimentStatus.RUNNING, ExperimentStatus.PAUSED}),
}

# Fields update_experiment() refuses to touch
_IMMUTABLE_FIELDS = frozenset({"id", "status", "created_at", "start_date", "end_date", "winning_variation_id"})


def validate_experiment(
    experiment: Experiment,
    supported_models: Iterable[str] = ("two_proportion_z",),
) -> None:
    """Raise if an experiment definition cannot be run.

    Raises:
        UnsupportedModelError: Unknown significance model.
        ExperimentValidationError: Any business-rule violation, listing all of them.
    """
    supported = list(supported_models)
    if experiment.significance_model not in supported:
        raise UnsupportedModelError(experiment.significance_model, supported)

    errors = experiment.validation_errors()
    if errors:
        raise ExperimentValidationError(
            f"Experiment {experiment.id} is invalid: {errors[0]}",
            errors=errors,
            experiment_id=experiment.id,
        )


class ExperimentLifecycle:
    """Creates, transitions and updates experiments.

    Args:
        store: Persistence for experiment records and the active index.
        allocator: Optional slot allocator claimed on start and released on finish.
        event_bus: Bus receiving lifecycle events.
        clock: Time source for timestamps.
        supported_models: Significance models experiments may request.
    """

    def __init__(
        self,
        store: KeyValueStore,
        allocator: SlotAllocator | None = None,
        event_bus: EventBus | None = None,
        clock: Clock | None = None,
        supported_models: Iterable[str] = ("two_proportion_z",),
    ) -> None:
        self.store = store
        self.allocator = allocator
        self.event_bus = event_bus or EventBus()
        self.clock = clock or SystemClock()
        self.supported_models = tuple(supported_models)
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_experiment(self, experiment_id: str) -> Experiment:
        data = await self.store.get(experiment_key(experiment_id))
        if data is None:
            raise ExperimentNotFoundError(experiment_id)
        try:
            return Experiment.from_dict(data)
        except pydantic.ValidationError as e:
            raise StoreError(
                f"Stored record of experiment {experiment_id} is corrupt: {e.error_count()} invalid field(s)",
                key=experiment_key(experiment_id),
                operation="get",
            ) from e

    async def list_experiments(self, status: ExperimentStatus | None = None) -> list[Experiment]:
        records = await self.store.scan_prefix("ab_test:")
        experiments = [Experiment.from_dict(data) for data in records.values()]
        if status is not None:
            experiments = [e for e in experiments if e.status == status]
        return sorted(experiments, key=lambda e: e.created_at)

    async def get_running_experiment_ids(self) -> list[str]:
        return sorted(await self.store.smembers(ACTIVE_TESTS_KEY))

    # -------------------------------------------------------------------------
    # Creation & Updates
    # -------------------------------------------------------------------------

    def validate_experiment(self, experiment: Experiment) -> None:
        validate_experiment(experiment, self.supported_models)

    async def create_experiment(self, experiment: Experiment) -> Experiment:
        """Validate and persist a new experiment in draft status."""
        self.validate_experiment(experiment)
        async with self._lock:
            if await self.store.get(experiment_key(experiment.id)) is not None:
                raise ValidationError(
                    f"Experiment {experiment.id} already exists",
                    field_name="id",
                    invalid_value=experiment.id,
                )
            now = self.clock.now()
            created = experiment.model_copy(
                update={
                    "status": ExperimentStatus.DRAFT,
                    "created_at": now,
                    "updated_at": now,
                    "start_date": None,
                    "end_date": None,
                }
            )
            await self._save(created)

        await self._emit(EventType.EXPERIMENT_CREATED, created, {"name": created.name})
        log_lifecycle(f"Created experiment {created.name}", experiment_id=created.id)
        return created

    async def update_experiment(self, experiment_id: str, changes: dict[str, Any]) -> Experiment:
        """Apply a partial update and revalidate the result.

        Raises:
            ValidationError: Attempt to change an immutable field.
            ExperimentClosedError: Experiment already completed or stopped.
            ExperimentValidationError: Result breaks a business rule.
        """
        forbidden = _IMMUTABLE_FIELDS & set(changes)
        if forbidden:
            raise ValidationError(
                f"Fields cannot be updated directly: {sorted(forbidden)}",
                field_name=sorted(forbidden)[0],
            )

        async with self._lock:
            current = await self.get_experiment(experiment_id)
            if current.is_terminal:
                raise ExperimentClosedError(experiment_id, current.status.value)
            try:
                updated = Experiment.model_validate({**current.to_dict(), **changes})
            except pydantic.ValidationError as e:
                raise ExperimentValidationError(
                    f"Experiment {experiment_id} update is invalid",
                    errors=[err["msg"] for err in e.errors()],
                    experiment_id=experiment_id,
                ) from e
            self.validate_experiment(updated)
            await self._save(updated)

        await self._emit(EventType.EXPERIMENT_UPDATED, updated, {"fields": sorted(changes)})
        return updated

    async def record_observations(
        self,
        experiment_id: str,
        variation_id: str,
        visitors: int = 0,
        conversions: int = 0,
        revenue: float = 0.0,
    ) -> Experiment:
        """Add visitor, conversion and revenue increments to a variation."""
        if visitors < 0 or conversions < 0 or revenue < 0:
            raise ValidationError(
                "Observation increments must be non-negative",
                field_name="visitors" if visitors < 0 else "conversions" if conversions < 0 else "revenue",
                invalid_value=min(visitors, conversions, revenue),
            )

        async with self._lock:
            experiment = await self.get_experiment(experiment_id)
            if experiment.is_terminal:
                raise ExperimentClosedError(experiment_id, experiment.status.value)
            if experiment.status == ExperimentStatus.DRAFT:
                raise InvalidStateTransitionError(experiment_id, experiment.status.value, "record observations for")

            variation = experiment.get_variation(variation_id)
            if variation is None:
                raise ValidationError(
                    f"Variation {variation_id} is not part of experiment {experiment_id}",
                    field_name="variation_id",
                    invalid_value=variation_id,
                )
            new_visitors = variation.visitors + visitors
            new_conversions = variation.conversions + conversions
            if new_conversions > new_visitors:
                raise ValidationError(
                    "Conversions cannot exceed visitors",
                    field_name="conversions",
                    invalid_value=new_conversions,
                )

            new_revenue = variation.revenue
            if revenue:
                new_revenue = (variation.revenue or 0.0) + revenue

            updated_variation = variation.model_copy(
                update={
                    "visitors": new_visitors,
                    "conversions": new_conversions,
                    "revenue": new_revenue,
                }
            )
            experiment = experiment.model_copy(
                update={
                    "variations": [
                        updated_variation if v.id == variation_id else v for v in experiment.variations
                    ]
                }
            )
            await self._save(experiment)
        return experiment

    async def reallocate_traffic(self, experiment_id: str, allocations: dict[str, float]) -> Experiment:
        """Set new traffic splits for some variations of a running or paused experiment.

        Only ``traffic_allocation`` is touched, so counters recorded since the
        caller last read the experiment are preserved.

        Raises:
            ValidationError: Unknown variation id.
            ExperimentValidationError: New splits do not sum to 100.
        """
        async with self._lock:
            experiment = await self.get_experiment(experiment_id)
            if experiment.is_terminal:
                raise ExperimentClosedError(experiment_id, experiment.status.value)
            unknown = [vid for vid in allocations if experiment.get_variation(vid) is None]
            if unknown:
                raise ValidationError(
                    f"Variations {unknown} are not part of experiment {experiment_id}",
                    field_name="variation_id",
                    invalid_value=unknown[0],
                )
            updated = experiment.model_copy(
                update={
                    "variations": [
                        v.model_copy(update={"traffic_allocation": allocations[v.id]}) if v.id in allocations else v
                        for v in experiment.variations
                    ]
                }
            )
            self.validate_experiment(updated)
            await self._save(updated)

        await self._emit(EventType.EXPERIMENT_UPDATED, updated, {"traffic_allocations": allocations})
        return updated

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def start_experiment(self, experiment_id: str, preferred_slot: str | None = None) -> DeploymentResult:
        """Deploy and start a draft experiment.

        When no slot can be claimed the experiment stays in draft and the
        failed DeploymentResult is returned.
        """
        async with self._lock:
            experiment = await self._get_for(experiment_id, "start")
            self.validate_experiment(experiment)

            if self.allocator is not None:
                result = self.allocator.deploy(experiment, preferred_slot)
                if not result.success:
                    logger.with_context(experiment_id=experiment_id).warning(
                        f"Experiment {experiment_id} stays in draft: {'; '.join(result.conflicts)}"
                    )
                    return result
            else:
                result = DeploymentResult(success=True)

            started = experiment.model_copy(
                update={"status": ExperimentStatus.RUNNING, "start_date": self.clock.now()}
            )
            # Index before record; monitoring skips draft ids in the active set
            persisted = False
            try:
                await self.store.sadd(ACTIVE_TESTS_KEY, experiment_id)
                await self._save(started)
                persisted = True
            finally:
                if not persisted and self.allocator is not None:
                    self.allocator.remove(experiment_id)
                    logger.with_context(experiment_id=experiment_id).error(
                        f"Released slot of {experiment_id} after its start could not be saved"
                    )

        await self._emit(EventType.EXPERIMENT_STARTED, started, {"slot_id": result.slot_id})
        log_lifecycle(f"Started experiment {experiment_id}", experiment_id=experiment_id, slot_id=result.slot_id)
        return result

    async def pause_experiment(self, experiment_id: str) -> Experiment:
        """Pause a running experiment; it keeps its slot but leaves the monitoring set."""
        async with self._lock:
            experiment = await self._get_for(experiment_id, "pause")
            paused = experiment.model_copy(update={"status": ExperimentStatus.PAUSED})
            await self._save(paused)
            await self.store.srem(ACTIVE_TESTS_KEY, experiment_id)

        await self._emit(EventType.EXPERIMENT_PAUSED, paused)
        log_lifecycle(f"Paused experiment {experiment_id}", experiment_id=experiment_id)
        return paused

    async def resume_experiment(self, experiment_id: str) -> Experiment:
        async with self._lock:
            experiment = await self._get_for(experiment_id, "resume")
            resumed = experiment.model_copy(update={"status": ExperimentStatus.RUNNING})
            await self._save(resumed)
            await self.store.sadd(ACTIVE_TESTS_KEY, experiment_id)

        await self._emit(EventType.EXPERIMENT_RESUMED, resumed)
        log_lifecycle(f"Resumed experiment {experiment_id}", experiment_id=experiment_id)
        return resumed

    async def stop_experiment(
        self,
        experiment_id: str,
        winner_id: str | None = None,
        reason: str = "manual",
    ) -> Experiment:
        """Complete an experiment, optionally declaring a winner, and free its slot.

        Raises:
            InvalidWinnerError: winner_id is not one of the experiment's variations.
        """
        async with self._lock:
            experiment = await self._get_for(experiment_id, "stop")
            if winner_id is not None and experiment.get_variation(winner_id) is None:
                raise InvalidWinnerError(experiment_id, winner_id)
            completed = experiment.model_copy(
                update={
                    "status": ExperimentStatus.COMPLETED,
                    "end_date": self.clock.now(),
                    "winning_variation_id": winner_id,
                    "completion_reason": reason,
                }
            )
            await self._finish(completed)

        await self._emit(
            EventType.EXPERIMENT_COMPLETED,
            completed,
            {"winner_id": winner_id, "reason": reason},
        )
        log_lifecycle(
            f"Completed experiment {experiment_id}",
            experiment_id=experiment_id,
            winner_id=winner_id,
            reason=reason,
        )
        return completed

    async def abort_experiment(self, experiment_id: str, reason: str = "aborted") -> Experiment:
        """Stop an experiment without declaring a winner."""
        async with self._lock:
            experiment = await self._get_for(experiment_id, "abort")
            stopped = experiment.model_copy(
                update={
                    "status": ExperimentStatus.STOPPED,
                    "end_date": self.clock.now(),
                    "completion_reason": reason,
                }
            )
            await self._finish(stopped)

        await self._emit(EventType.EXPERIMENT_STOPPED, stopped, {"reason": reason})
        log_lifecycle(f"Aborted experiment {experiment_id}", experiment_id=experiment_id, reason=reason)
        return stopped

    # -------------------------------------------------------------------------
    # Scheduled Starts
    # -------------------------------------------------------------------------

    def attach_schedule_handler(self) -> None:
        """Start experiments when the allocator releases them from its schedule."""
        self.event_bus.subscribe(
            EventType.SCHEDULED_TEST_READY,
            self.handle_scheduled_test_ready,
            handler_name="lifecycle_scheduled_start",
        )

    async def handle_scheduled_test_ready(self, event: Event) -> None:
        experiment_id = event.data["experiment_id"]
        try:
            result = await self.start_experiment(experiment_id, preferred_slot=event.data.get("slot_id"))
        except ExperimentationError as e:
            logger.with_context(experiment_id=experiment_id).error(f"Scheduled start failed: {e}")
            await self.event_bus.publish_async(
                create_error_event(str(e), e.to_dict(), source="experiment_lifecycle")
            )
            return
        if not result.success:
            await self.event_bus.publish_async(
                create_error_event(
                    f"Scheduled start of {experiment_id} found no slot",
                    {"experiment_id": experiment_id, "conflicts": result.conflicts},
                    source="experiment_lifecycle",
                )
            )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _get_for(self, experiment_id: str, action: str) -> Experiment:
        experiment = await self.get_experiment(experiment_id)
        if experiment.status not in _ALLOWED_FROM[action]:
            raise InvalidStateTransitionError(experiment_id, experiment.status.value, action)
        return experiment

    async def _save(self, experiment: Experiment) -> None:
        experiment.updated_at = self.clock.now()
        await self.store.set(experiment_key(experiment.id), experiment.to_dict())

    async def _finish(self, experiment: Experiment) -> None:
        await self._save(experiment)
        # Once the terminal record is written the slot goes back, even if
        # the caller is cancelled or the index update fails
        try:
            await self.store.srem(ACTIVE_TESTS_KEY, experiment.id)
        finally:
            if self.allocator is not None:
                self.allocator.remove(experiment.id)

    async def _emit(
        self,
        event_type: EventType,
        experiment: Experiment,
        details: dict[str, Any] | None = None,
    ) -> None:
        await self.event_bus.publish_async(
            create_experiment_event(
                event_type,
                experiment.id,
                {"status": experiment.status.value, **(details or {})},
                source="experiment_lifecycle",
            )
        )
