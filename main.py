#!/usr/bin/env python3
"""
Main entry point for the Experimentation Engine.

Provides a unified entry point for running the engine in two modes:
the continuous monitoring loop, or a self-contained demo that seeds sample
experiments, runs one monitoring cycle and prints the report.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

from experimentation_engine.allocation.slot_allocator import SlotAllocator
from experimentation_engine.analysis.statistics import StatisticsEngine
from experimentation_engine.config.settings import Settings, get_settings
from experimentation_engine.core.data_types import Experiment, Variation
from experimentation_engine.core.events import Event, EventBus, EventType
from experimentation_engine.core.exceptions import ExperimentationError
from experimentation_engine.core.store import InMemoryStore, KeyValueStore, RedisStore
from experimentation_engine.core.utils import SystemClock
from experimentation_engine.experiments.lifecycle import ExperimentLifecycle
from experimentation_engine.monitoring.alerting import NotificationDispatcher
from experimentation_engine.monitoring.logger import LogCategory, LogFormat, get_logger, setup_logging
from experimentation_engine.monitoring.scheduler import MonitoringScheduler

logger = get_logger("main", LogCategory.SYSTEM)

# How often the app releases due entries from the allocator schedule
SCHEDULE_POLL_SECONDS = 60


class ExperimentationApp:
    """Wires the engine components together and manages their lifecycle."""

    def __init__(self, settings: Settings, store: KeyValueStore) -> None:
        """Initialize the application.

        Args:
            settings: Application settings.
            store: Key-value store for experiments and monitoring output.
        """
        self.settings = settings
        self.store = store
        self.clock = SystemClock()
        self.event_bus = EventBus()
        self.allocator = SlotAllocator(settings.slots, self.event_bus, self.clock)
        self.lifecycle = ExperimentLifecycle(
            store,
            allocator=self.allocator,
            event_bus=self.event_bus,
            clock=self.clock,
            supported_models=settings.statistics.supported_models,
        )
        self.scheduler = MonitoringScheduler(
            store,
            self.lifecycle,
            statistics=StatisticsEngine.from_settings(settings.statistics),
            event_bus=self.event_bus,
            dispatcher=NotificationDispatcher.from_settings(settings.notifications),
            clock=self.clock,
            settings=settings,
        )
        self.lifecycle.attach_schedule_handler()
        self.event_bus.subscribe(EventType.ENGINE_ERROR, self._log_engine_error, handler_name="main_engine_error")
        self._stop_event = asyncio.Event()

    @staticmethod
    def _log_engine_error(event: Event) -> None:
        logger.error(f"Engine error: {event.data.get('message')}", extra={"extra_data": event.data.get("details", {})})

    def request_stop(self) -> None:
        logger.info("Shutdown signal received")
        self._stop_event.set()

    async def run(self) -> None:
        """Run monitoring until a stop is requested."""
        await self.scheduler.start()
        try:
            while not self._stop_event.is_set():
                self.allocator.process_scheduled_tests()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=SCHEDULE_POLL_SECONDS)
                except asyncio.TimeoutError:
                    continue
        finally:
            await self.stop()

    async def stop(self) -> None:
        logger.info("Stopping experimentation engine")
        await self.scheduler.stop()
        await self.event_bus.drain()
        self.allocator.shutdown()
        await self.store.close()
        logger.info("Experimentation engine stopped")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Experimentation Engine",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    monitor_parser = subparsers.add_parser("monitor", help="Run the monitoring loop")
    monitor_parser.add_argument(
        "--memory",
        action="store_true",
        help="Use the in-process store instead of Redis",
    )

    subparsers.add_parser("demo", help="Seed sample experiments, run one cycle and print the report")

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a YAML configuration file",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        default="json",
        help="Log format",
    )

    return parser.parse_args(argv)


def demo_experiments() -> list[tuple[Experiment, dict[str, tuple[int, int]]]]:
    """Sample experiments with the visitors/conversions to record per variation."""
    return [
        (
            Experiment(
                name="Checkout button color",
                target_segments=["checkout"],
                is_early_stopping_enabled=True,
                minimum_sample_size=1000,
                variations=[
                    Variation(id="control", name="Blue", traffic_allocation=50, is_control=True,
                              elements=["#checkout-button"]),
                    Variation(id="green", name="Green", traffic_allocation=50, elements=["#checkout-button"]),
                ],
            ),
            {"control": (500, 50), "green": (500, 80)},
        ),
        (
            Experiment(
                name="Pricing page headline",
                target_segments=["pricing"],
                variations=[
                    Variation(id="control", traffic_allocation=50, is_control=True, elements=["h1.pricing"]),
                    Variation(id="benefit", traffic_allocation=50, elements=["h1.pricing"]),
                ],
            ),
            {"control": (10, 1), "benefit": (10, 2)},
        ),
    ]


async def run_demo(settings: Settings) -> int:
    """Run one monitoring cycle over in-memory sample experiments."""
    app = ExperimentationApp(settings, InMemoryStore())
    try:
        for experiment, observations in demo_experiments():
            created = await app.lifecycle.create_experiment(experiment)
            result = await app.lifecycle.start_experiment(created.id)
            if not result.success:
                logger.warning(f"Demo experiment {created.name} could not start: {result.conflicts}")
                continue
            for variation_id, (visitors, conversions) in observations.items():
                await app.lifecycle.record_observations(created.id, variation_id, visitors, conversions)

        report = await app.scheduler.run_cycle()
        await app.scheduler.flush_notifications()
        print(report.model_dump_json(indent=2))
        return 0 if report.failed == 0 else 1
    finally:
        await app.stop()


async def run_monitor(args: argparse.Namespace, settings: Settings) -> None:
    """Run the monitoring loop until SIGINT/SIGTERM."""
    if args.memory:
        store: KeyValueStore = InMemoryStore()
    else:
        redis_store = RedisStore.from_settings(settings.redis)
        await redis_store.ping()
        store = redis_store

    app = ExperimentationApp(settings, store)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.request_stop)
        except NotImplementedError:
            pass  # Windows

    await app.run()


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)

    settings = Settings.from_yaml(args.config) if args.config else get_settings()

    log_format = LogFormat.JSON if args.log_format == "json" else LogFormat.TEXT
    setup_logging(level=args.log_level, log_format=log_format, log_file=settings.logging.file_path)

    logger.info(
        f"{settings.app_name} v{settings.app_version}",
        extra={"extra_data": {"command": args.command, "environment": settings.environment}},
    )

    try:
        if args.command == "monitor":
            asyncio.run(run_monitor(args, settings))
        elif args.command == "demo":
            sys.exit(asyncio.run(run_demo(settings)))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except ExperimentationError as e:
        logger.error(f"Application error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
