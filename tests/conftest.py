"""
Pytest fixtures for the Experimentation Engine tests.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from experimentation_engine.allocation.slot_allocator import SlotAllocator  # noqa: E402
from experimentation_engine.analysis.statistics import StatisticsEngine  # noqa: E402
from experimentation_engine.config.settings import Settings, SlotSettings  # noqa: E402
from experimentation_engine.core.data_types import Experiment, Variation  # noqa: E402
from experimentation_engine.core.events import EventBus  # noqa: E402
from experimentation_engine.core.store import InMemoryStore  # noqa: E402
from experimentation_engine.core.utils import ManualClock  # noqa: E402
from experimentation_engine.experiments.lifecycle import ExperimentLifecycle  # noqa: E402
from experimentation_engine.monitoring.alerting import DashboardNotifier, NotificationDispatcher  # noqa: E402
from experimentation_engine.monitoring.scheduler import MonitoringScheduler  # noqa: E402


def make_experiment(
    name: str = "Checkout button",
    control: tuple[int, int] = (0, 0),
    variants: dict[str, tuple[int, int]] | None = None,
    allocations: list[float] | None = None,
    **kwargs,
) -> Experiment:
    """Build an experiment with a control and named variants.

    Counters are (visitors, conversions). Allocations default to an even
    split across all variations.
    """
    variants = variants if variants is not None else {"variant": (0, 0)}
    arms = [("control", control, True)] + [(vid, counts, False) for vid, counts in variants.items()]
    if allocations is None:
        allocations = [100.0 / len(arms)] * len(arms)

    variations = [
        Variation(
            id=vid,
            name=vid.title(),
            traffic_allocation=allocation,
            visitors=counts[0],
            conversions=counts[1],
            is_control=is_control,
        )
        for (vid, counts, is_control), allocation in zip(arms, allocations)
    ]
    return Experiment(name=name, variations=variations, **kwargs)


@pytest.fixture
def clock():
    """Deterministic clock starting at 2024-01-01 UTC."""
    return ManualClock()


@pytest.fixture
def event_bus():
    """Create a fresh EventBus instance for testing."""
    return EventBus()


@pytest.fixture
def store(clock):
    """In-memory store expiring keys on the test clock."""
    return InMemoryStore(clock)


@pytest.fixture
def settings():
    """Default settings, independent of the cached global instance."""
    return Settings()


@pytest.fixture
def allocator(event_bus, clock):
    """Slot allocator with the default 25-slot pool."""
    return SlotAllocator(SlotSettings(), event_bus, clock)


@pytest.fixture
def lifecycle(store, allocator, event_bus, clock):
    return ExperimentLifecycle(store, allocator=allocator, event_bus=event_bus, clock=clock)


@pytest.fixture
def dashboard():
    return DashboardNotifier()


@pytest.fixture
def dispatcher(dashboard):
    return NotificationDispatcher([dashboard], timeout_seconds=1.0)


@pytest.fixture
def scheduler(store, lifecycle, event_bus, dispatcher, clock, settings):
    """Monitoring scheduler wired to in-memory collaborators."""
    return MonitoringScheduler(
        store,
        lifecycle,
        statistics=StatisticsEngine.from_settings(settings.statistics),
        event_bus=event_bus,
        dispatcher=dispatcher,
        clock=clock,
        settings=settings,
    )


@pytest.fixture
def launch(lifecycle):
    """Create, start and record observations for an experiment.

    Counters already set on the experiment's variations are recorded as
    observations after the start, since drafts cannot carry traffic.
    """

    async def _launch(experiment: Experiment) -> Experiment:
        counts = {v.id: (v.visitors, v.conversions) for v in experiment.variations}
        draft = experiment.model_copy(
            update={
                "variations": [
                    v.model_copy(update={"visitors": 0, "conversions": 0}) for v in experiment.variations
                ]
            }
        )
        created = await lifecycle.create_experiment(draft)
        result = await lifecycle.start_experiment(created.id)
        assert result.success, result.conflicts
        for variation_id, (visitors, conversions) in counts.items():
            if visitors:
                await lifecycle.record_observations(created.id, variation_id, visitors, conversions)
        return await lifecycle.get_experiment(created.id)

    return _launch


@pytest.fixture
def experiment_factory():
    """The make_experiment builder, for tests that need several experiments."""
    return make_experiment
