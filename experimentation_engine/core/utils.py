"""
Shared utilities for the experimentation engine.

Provides common functions for:
- Time handling and injectable clocks
- Numeric operations and validation
- ID generation
- Set similarity
- Retry logic
- Performance timing
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Generator, Iterable, TypeVar
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Time and Date Utilities
# =============================================================================

UTC = ZoneInfo("UTC")


def utc_now() -> datetime:
    """Get current UTC datetime with timezone info."""
    return datetime.now(UTC)


def to_utc(dt: datetime) -> datetime:
    """Convert datetime to UTC.

    Naive datetimes are assumed to already be UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def to_epoch_ms(dt: datetime) -> int:
    """Convert datetime to integer milliseconds since the epoch."""
    return (to_utc(dt) - EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(ms: int) -> datetime:
    """Inverse of to_epoch_ms, exact to the millisecond."""
    return EPOCH + timedelta(milliseconds=ms)


# =============================================================================
# Clocks
# =============================================================================


class Clock(ABC):
    """Source of the current time.

    Components take a clock instead of calling utc_now() directly so tests
    can drive monitoring cycles, TTL expiry and slot LRU ordering with a
    deterministic time source.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> datetime:
        return utc_now()


class ManualClock(Clock):
    """Clock that only moves when told to.

    Thread-safe so allocator tests running in worker threads can share it.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = to_utc(start) if start else datetime(2024, 1, 1, tzinfo=UTC)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(
        self,
        delta: timedelta | None = None,
        **kwargs: float,
    ) -> datetime:
        """Move the clock forward.

        Args:
            delta: Amount to advance by.
            **kwargs: timedelta keyword arguments, used when delta is omitted.

        Returns:
            The new current time.
        """
        step = delta if delta is not None else timedelta(**kwargs)
        if step < timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        with self._lock:
            self._now = self._now + step
            return self._now

    def set(self, dt: datetime) -> None:
        with self._lock:
            self._now = to_utc(dt)


# =============================================================================
# Numeric Utilities
# =============================================================================


def clamp(value: float, min_val: float, max_val: float) -> float:
    """Clamp value to specified range.

    Args:
        value: Value to clamp.
        min_val: Minimum allowed value.
        max_val: Maximum allowed value.

    Returns:
        Clamped value.
    """
    return max(min_val, min(max_val, value))


def safe_divide(
    numerator: float,
    denominator: float,
    default: float = 0.0,
) -> float:
    """Safely divide two numbers.

    Args:
        numerator: Numerator.
        denominator: Denominator.
        default: Value to return if denominator is zero.

    Returns:
        Division result or default.
    """
    if denominator == 0:
        return default
    return numerator / denominator


def percentages_sum_to(
    values: Iterable[float],
    target: float = 100.0,
    tolerance: float = 1e-6,
) -> bool:
    """Check that percentages add up to target within a tight tolerance."""
    return abs(sum(values) - target) <= tolerance


def jaccard_similarity(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard index |A ∩ B| / |A ∪ B|; two empty sets have similarity 0."""
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


# =============================================================================
# String Utilities
# =============================================================================


def generate_id(prefix: str = "", length: int = 8) -> str:
    """Generate a unique ID string.

    Args:
        prefix: Optional prefix for the ID.
        length: Length of random portion.

    Returns:
        Generated ID string.
    """
    random_part = uuid.uuid4().hex[:length]
    if prefix:
        return f"{prefix}_{random_part}"
    return random_part


# =============================================================================
# Retry Logic
# =============================================================================


async def retry_async(
    func: Callable[..., Awaitable[T]],
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> T:
    """Async retry with exponential backoff.

    Args:
        func: Async function to retry.
        max_attempts: Maximum number of attempts.
        delay: Initial delay between retries.
        backoff: Multiplier for delay.
        exceptions: Exceptions to catch.

    Returns:
        Function result.
    """
    current_delay = delay
    last_exception: Exception | None = None

    for attempt in range(max_attempts):
        try:
            return await func()
        except exceptions as e:
            last_exception = e
            if attempt < max_attempts - 1:
                logger.warning(
                    f"Async attempt {attempt + 1}/{max_attempts} failed: {e}. "
                    f"Retrying in {current_delay:.1f}s"
                )
                await asyncio.sleep(current_delay)
                current_delay *= backoff
            else:
                logger.error(f"All {max_attempts} async attempts failed")

    if last_exception:
        raise last_exception
    raise RuntimeError("Async retry logic failed unexpectedly")


# =============================================================================
# Performance Timing
# =============================================================================


@contextmanager
def timer(name: str = "Operation") -> Generator[dict[str, float], None, None]:
    """Context manager for timing operations.

    Args:
        name: Name of the operation being timed.

    Yields:
        Dictionary that will contain 'elapsed' time after context exits.

    Example:
        with timer("Monitoring cycle") as t:
            await scheduler.run_cycle()
        print(f"Took {t['elapsed']:.2f}s")
    """
    result: dict[str, Any] = {}
    start = time.perf_counter()
    try:
        yield result
    finally:
        elapsed = time.perf_counter() - start
        result["elapsed"] = elapsed
        logger.debug(f"{name} took {elapsed:.4f}s")
