"""
Core infrastructure layer for the experimentation engine.

Contains type definitions, exceptions, the event system, key-value storage
and shared utilities used across all modules.
"""

from .data_types import (
    AlertSeverity,
    AlertType,
    CycleReport,
    Experiment,
    ExperimentCycleResult,
    ExperimentStatus,
    MonitoringAlert,
    OptimizationSuggestion,
    PowerAnalysis,
    RecommendationType,
    StatisticalSignificance,
    TestPerformanceMetrics,
    TestRecommendation,
    Variation,
    VariationMetrics,
)
from .events import Event, EventBus, EventType, get_event_bus
from .exceptions import (
    ConfigurationError,
    ExperimentClosedError,
    ExperimentError,
    ExperimentNotFoundError,
    ExperimentValidationError,
    ExperimentationError,
    InvalidConfigError,
    InvalidStateTransitionError,
    InvalidWinnerError,
    MissingConfigError,
    NotificationError,
    StoreError,
    UnsupportedModelError,
    ValidationError,
)
from .store import InMemoryStore, KeyValueStore, RedisStore
from .utils import Clock, ManualClock, SystemClock

__all__ = [
    # Data types
    "AlertSeverity",
    "AlertType",
    "CycleReport",
    "Experiment",
    "ExperimentCycleResult",
    "ExperimentStatus",
    "MonitoringAlert",
    "OptimizationSuggestion",
    "PowerAnalysis",
    "RecommendationType",
    "StatisticalSignificance",
    "TestPerformanceMetrics",
    "TestRecommendation",
    "Variation",
    "VariationMetrics",
    # Events
    "Event",
    "EventBus",
    "EventType",
    "get_event_bus",
    # Exceptions
    "ConfigurationError",
    "ExperimentClosedError",
    "ExperimentError",
    "ExperimentNotFoundError",
    "ExperimentValidationError",
    "ExperimentationError",
    "InvalidConfigError",
    "InvalidStateTransitionError",
    "InvalidWinnerError",
    "MissingConfigError",
    "NotificationError",
    "StoreError",
    "UnsupportedModelError",
    "ValidationError",
    # Storage
    "InMemoryStore",
    "KeyValueStore",
    "RedisStore",
    # Clocks
    "Clock",
    "ManualClock",
    "SystemClock",
]
