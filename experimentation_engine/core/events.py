"""
Event system for outbound side effects of the experimentation engine.

Every state change the engine makes (slot deployed, alert raised, experiment
auto-stopped) is announced as a typed Event so dashboards, notifiers and
tests can observe it without the engine knowing who listens.

Implements:
- Typed event definitions
- Sync and async handler dispatch
- Dead letter queue for failed handlers
- Bounded event history for inspection
- Metrics on event processing latency
- THREAD-SAFE operations (the slot allocator publishes from worker threads)
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Event type enumeration for all engine events."""

    # Experiment Lifecycle Events
    EXPERIMENT_CREATED = "experiment.created"
    EXPERIMENT_UPDATED = "experiment.updated"
    EXPERIMENT_STARTED = "experiment.started"
    EXPERIMENT_PAUSED = "experiment.paused"
    EXPERIMENT_RESUMED = "experiment.resumed"
    EXPERIMENT_COMPLETED = "experiment.completed"
    EXPERIMENT_STOPPED = "experiment.stopped"

    # Slot Allocation Events
    FRAMEWORK_INITIALIZED = "allocation.framework_initialized"
    TEST_DEPLOYED = "allocation.test_deployed"
    DEPLOYMENT_FAILED = "allocation.deployment_failed"
    TEST_REMOVED = "allocation.test_removed"
    TEST_SCHEDULED = "allocation.test_scheduled"
    SCHEDULED_TEST_READY = "allocation.scheduled_test_ready"
    SLOT_STATUS_CHANGED = "allocation.slot_status_changed"
    CONFIGURATION_UPDATED = "allocation.configuration_updated"
    FRAMEWORK_SHUTDOWN = "allocation.framework_shutdown"

    # Monitoring Events
    MONITORING_STARTED = "monitoring.started"
    MONITORING_STOPPED = "monitoring.stopped"
    ALERT_CREATED = "monitoring.alert_created"
    SUGGESTIONS_STORED = "monitoring.suggestions_stored"
    AUTO_ACTION_EXECUTED = "monitoring.auto_action_executed"
    CYCLE_COMPLETED = "monitoring.cycle_completed"

    # System Events
    ENGINE_ERROR = "system.engine_error"


class EventPriority(int, Enum):
    """Event priority levels."""

    CRITICAL = 0  # Automatic stops, engine errors
    HIGH = 1  # Alerts, deployment failures
    NORMAL = 2  # Lifecycle and allocation changes
    LOW = 3  # Cycle summaries


@dataclass
class Event:
    """Base event class for all engine events.

    Attributes:
        event_id: Unique identifier for the event.
        event_type: Type of the event from EventType enum.
        timestamp: When the event was created.
        data: Event payload data.
        source: Component that generated the event.
        priority: Event priority.
        metadata: Additional event metadata.
    """

    event_type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    event_id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = ""
    priority: EventPriority = EventPriority.NORMAL
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
            "source": self.source,
            "priority": self.priority.name,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        """Create event from dictionary."""
        return cls(
            event_id=UUID(data["event_id"]),
            event_type=EventType(data["event_type"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            data=data.get("data", {}),
            source=data.get("source", ""),
            priority=EventPriority[data.get("priority", "NORMAL")],
            metadata=data.get("metadata", {}),
        )


# Type alias for event handlers
EventHandler = Callable[[Event], Awaitable[None] | None]


@dataclass
class DeadLetterEntry:
    """Entry in the dead letter queue for failed event handling."""

    event: Event
    handler_name: str
    error: Exception
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    """Event bus for the engine's outbound side effects.

    Components receive the bus they publish on; get_event_bus() hands out a
    shared default for applications that want a single one.

    Supports:
    - Synchronous and asynchronous event handlers
    - Dead letter queue for failed handlers
    - Event metrics tracking
    - Event filtering by type
    - THREAD-SAFE operations with RLock
    """

    def __init__(self, max_history_size: int = 1000) -> None:
        """Initialize the event bus.

        Args:
            max_history_size: Number of events kept for get_event_history().
        """
        self._lock = threading.RLock()

        self._handlers: dict[EventType, list[tuple[str, EventHandler, int]]] = defaultdict(list)
        self._global_handlers: list[tuple[str, EventHandler, int]] = []
        self._dead_letter_queue: list[DeadLetterEntry] = []
        self._metrics: dict[str, Any] = {
            "events_published": 0,
            "events_processed": 0,
            "events_failed": 0,
            "total_latency_ms": 0.0,
            "handler_errors": defaultdict(int),
        }
        self._event_history: list[Event] = []
        self._max_history_size = max_history_size
        self._pending_tasks: set[asyncio.Task] = set()

    def subscribe(
        self,
        event_type: EventType,
        handler: EventHandler,
        handler_name: str | None = None,
        priority: int = 0,
    ) -> None:
        """Subscribe a handler to an event type.

        Args:
            event_type: Type of event to subscribe to.
            handler: Callback function to handle the event.
            handler_name: Optional name for the handler (for logging).
            priority: Handler priority (lower = called first).
        """
        name = handler_name or getattr(handler, "__name__", repr(handler))
        with self._lock:
            self._handlers[event_type].append((name, handler, priority))
            self._handlers[event_type].sort(key=lambda x: x[2])
        logger.debug(f"Handler '{name}' subscribed to {event_type.value}")

    def subscribe_all(
        self,
        handler: EventHandler,
        handler_name: str | None = None,
        priority: int = 0,
    ) -> None:
        """Subscribe a handler to all event types."""
        name = handler_name or getattr(handler, "__name__", repr(handler))
        with self._lock:
            self._global_handlers.append((name, handler, priority))
            self._global_handlers.sort(key=lambda x: x[2])
        logger.debug(f"Global handler '{name}' subscribed to all events")

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> bool:
        """Unsubscribe a handler from an event type.

        Returns:
            True if handler was found and removed, False otherwise.
        """
        with self._lock:
            handlers = self._handlers[event_type]
            for i, (name, h, _) in enumerate(handlers):
                if h == handler:
                    handlers.pop(i)
                    logger.debug(f"Handler '{name}' unsubscribed from {event_type.value}")
                    return True
        return False

    def publish(self, event: Event) -> None:
        """Publish an event to the bus (synchronous).

        Coroutine handlers are scheduled on the running loop when there is
        one, otherwise run to completion before returning.

        Args:
            event: Event to publish.
        """
        handlers = self._record(event)

        for handler_name, handler, _ in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        asyncio.run(result)
                    else:
                        task = loop.create_task(self._await_handler(handler_name, result, event))
                        self._pending_tasks.add(task)
                        task.add_done_callback(self._pending_tasks.discard)
                        continue
                with self._lock:
                    self._metrics["events_processed"] += 1
            except Exception as e:
                self._handle_error(event, handler_name, e)

    async def publish_async(self, event: Event) -> None:
        """Publish an event to the bus, awaiting coroutine handlers in order.

        Args:
            event: Event to publish.
        """
        handlers = self._record(event)

        for handler_name, handler, _ in handlers:
            start_time = time.time()
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
                latency_ms = (time.time() - start_time) * 1000
                with self._lock:
                    self._metrics["total_latency_ms"] += latency_ms
                    self._metrics["events_processed"] += 1
            except Exception as e:
                self._handle_error(event, handler_name, e)

    async def drain(self) -> None:
        """Wait for coroutine handlers scheduled by publish() to finish."""
        while self._pending_tasks:
            await asyncio.gather(*list(self._pending_tasks), return_exceptions=True)

    def _record(self, event: Event) -> list[tuple[str, EventHandler, int]]:
        """Count and remember an event, returning a snapshot of its handlers."""
        with self._lock:
            self._metrics["events_published"] += 1
            self._event_history.append(event)
            if len(self._event_history) > self._max_history_size:
                self._event_history = self._event_history[-self._max_history_size :]
            return list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

    async def _await_handler(self, handler_name: str, coro: Awaitable[None], event: Event) -> None:
        start_time = time.time()
        try:
            await coro
            latency_ms = (time.time() - start_time) * 1000
            with self._lock:
                self._metrics["total_latency_ms"] += latency_ms
                self._metrics["events_processed"] += 1
        except Exception as e:
            self._handle_error(event, handler_name, e)

    def _handle_error(self, event: Event, handler_name: str, error: Exception) -> None:
        """Handle a handler error by logging and adding to dead letter queue."""
        with self._lock:
            self._metrics["events_failed"] += 1
            self._metrics["handler_errors"][handler_name] += 1
            self._dead_letter_queue.append(
                DeadLetterEntry(event=event, handler_name=handler_name, error=error)
            )

        logger.error(
            f"Handler '{handler_name}' failed for event {event.event_type.value}: {error}",
            exc_info=True,
        )

    def get_metrics(self) -> dict[str, Any]:
        """Get event bus metrics."""
        with self._lock:
            processed = self._metrics["events_processed"]
            avg_latency = self._metrics["total_latency_ms"] / processed if processed else 0.0
            return {
                "events_published": self._metrics["events_published"],
                "events_processed": processed,
                "events_failed": self._metrics["events_failed"],
                "avg_latency_ms": avg_latency,
                "dead_letter_count": len(self._dead_letter_queue),
                "handler_errors": dict(self._metrics["handler_errors"]),
            }

    def get_dead_letter_queue(self) -> list[DeadLetterEntry]:
        """Get the dead letter queue entries."""
        with self._lock:
            return self._dead_letter_queue.copy()

    def clear_dead_letter_queue(self) -> int:
        """Clear the dead letter queue.

        Returns:
            Number of entries cleared.
        """
        with self._lock:
            count = len(self._dead_letter_queue)
            self._dead_letter_queue.clear()
            return count

    def get_event_history(
        self,
        event_type: EventType | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """Get event history, optionally filtered by type.

        Args:
            event_type: Optional type to filter by.
            limit: Maximum number of events to return.

        Returns:
            List of events from history, oldest first.
        """
        with self._lock:
            events = list(self._event_history)
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        if limit:
            events = events[-limit:]
        return events

    def clear_history(self) -> None:
        with self._lock:
            self._event_history.clear()

    def get_handler_count(self, event_type: EventType | None = None) -> int:
        """Get the number of registered handlers."""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, [])) + len(self._global_handlers)
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


# Factory functions for common events
def create_experiment_event(
    event_type: EventType,
    experiment_id: str,
    details: dict[str, Any] | None = None,
    source: str = "",
) -> Event:
    """Create an experiment lifecycle event."""
    return Event(
        event_type=event_type,
        data={"experiment_id": experiment_id, **(details or {})},
        source=source,
        priority=EventPriority.NORMAL,
    )


def create_allocation_event(
    event_type: EventType,
    data: dict[str, Any],
    source: str = "slot_allocator",
) -> Event:
    """Create a slot allocation event."""
    priority = EventPriority.HIGH if event_type == EventType.DEPLOYMENT_FAILED else EventPriority.NORMAL
    return Event(
        event_type=event_type,
        data=data,
        source=source,
        priority=priority,
    )


def create_monitoring_event(
    event_type: EventType,
    data: dict[str, Any],
    source: str = "monitoring_scheduler",
) -> Event:
    """Create a monitoring event."""
    if event_type == EventType.AUTO_ACTION_EXECUTED:
        priority = EventPriority.CRITICAL
    elif event_type == EventType.ALERT_CREATED:
        priority = EventPriority.HIGH
    elif event_type == EventType.CYCLE_COMPLETED:
        priority = EventPriority.LOW
    else:
        priority = EventPriority.NORMAL
    return Event(
        event_type=event_type,
        data=data,
        source=source,
        priority=priority,
    )


def create_error_event(
    message: str,
    details: dict[str, Any] | None = None,
    source: str = "",
) -> Event:
    """Create an engine error event."""
    return Event(
        event_type=EventType.ENGINE_ERROR,
        data={"message": message, "details": details or {}},
        source=source,
        priority=EventPriority.CRITICAL,
    )


_default_bus: EventBus | None = None
_default_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the shared default EventBus.

    Example:
        >>> from experimentation_engine.core.events import get_event_bus, EventType
        >>> bus = get_event_bus()
        >>> bus.subscribe(EventType.ALERT_CREATED, my_handler)
    """
    global _default_bus
    if _default_bus is None:
        with _default_bus_lock:
            if _default_bus is None:
                _default_bus = EventBus()
    return _default_bus


def reset_event_bus() -> None:
    """Drop the shared default EventBus (for tests)."""
    global _default_bus
    with _default_bus_lock:
        _default_bus = None
