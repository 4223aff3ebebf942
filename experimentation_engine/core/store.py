"""
Key-value storage for experiments, metrics history, alerts and suggestions.

The engine only needs a small surface: JSON records by key with optional
expiry, prefix scans for history, and string sets for indexes such as the
active-experiment set. Two implementations:

- InMemoryStore: process-local, TTL driven by an injectable clock
- RedisStore: redis.asyncio backed, for shared deployments
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from experimentation_engine.core.exceptions import StoreError
from experimentation_engine.core.utils import Clock, SystemClock

logger = logging.getLogger(__name__)


# =============================================================================
# Key Layout
# =============================================================================

ACTIVE_TESTS_KEY = "active_ab_tests"
LAST_CYCLE_KEY = "last_monitoring_cycle"


def experiment_key(experiment_id: str) -> str:
    return f"ab_test:{experiment_id}"


def metrics_key(experiment_id: str, timestamp_ms: int) -> str:
    return f"ab_test_metrics:{experiment_id}:{timestamp_ms}"


def metrics_prefix(experiment_id: str) -> str:
    return f"ab_test_metrics:{experiment_id}:"


def alert_key(alert_id: str) -> str:
    return f"ab_test_alert:{alert_id}"


def alert_index_key(experiment_id: str) -> str:
    return f"ab_test_alerts:{experiment_id}"


def alert_dedup_key(experiment_id: str, alert_type: str) -> str:
    return f"ab_test_alert_dedup:{experiment_id}:{alert_type}"


def suggestion_key(suggestion_id: str) -> str:
    return f"ab_test_suggestion:{suggestion_id}"


def suggestion_index_key(experiment_id: str) -> str:
    return f"ab_test_suggestions:{experiment_id}"


# =============================================================================
# Store Interface
# =============================================================================


class KeyValueStore(ABC):
    """Async key-value store holding JSON-serializable values."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the stored value or None when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key (value or set). Returns True if something was removed."""

    @abstractmethod
    async def scan_prefix(self, prefix: str) -> dict[str, Any]:
        """Return every live value whose key starts with prefix, keyed and sorted by key."""

    @abstractmethod
    async def sadd(self, key: str, *members: str, ttl_seconds: int | None = None) -> int:
        """Add members to a set. Returns the number newly added."""

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int:
        """Remove members from a set. Returns the number removed."""

    @abstractmethod
    async def smembers(self, key: str) -> set[str]:
        """Return the members of a set (empty when absent)."""

    async def scard(self, key: str) -> int:
        return len(await self.smembers(key))

    async def close(self) -> None:
        """Release connections held by the store."""


# =============================================================================
# In-Memory Store
# =============================================================================


class InMemoryStore(KeyValueStore):
    """Process-local store used by tests and the demo.

    Values round-trip through JSON so callers see the same shapes they
    would get from Redis, and expiry follows the injected clock.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._values: dict[str, tuple[str, datetime | None]] = {}
        self._sets: dict[str, tuple[set[str], datetime | None]] = {}
        self._lock = threading.Lock()

    def _expiry(self, ttl_seconds: int | None) -> datetime | None:
        if ttl_seconds is None:
            return None
        if ttl_seconds <= 0:
            raise StoreError("TTL must be positive", operation="set", details={"ttl": ttl_seconds})
        return self._clock.now() + timedelta(seconds=ttl_seconds)

    def _alive(self, expires_at: datetime | None) -> bool:
        return expires_at is None or expires_at > self._clock.now()

    async def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            raw, expires_at = entry
            if not self._alive(expires_at):
                del self._values[key]
                return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Value for {key} is not JSON serializable: {e}", key=key, operation="set") from e
        expires_at = self._expiry(ttl_seconds)
        with self._lock:
            self._values[key] = (raw, expires_at)

    async def delete(self, key: str) -> bool:
        with self._lock:
            removed_value = self._values.pop(key, None) is not None
            removed_set = self._sets.pop(key, None) is not None
        return removed_value or removed_set

    async def scan_prefix(self, prefix: str) -> dict[str, Any]:
        with self._lock:
            expired = [k for k, (_, exp) in self._values.items() if not self._alive(exp)]
            for k in expired:
                del self._values[k]
            matches = sorted((k, raw) for k, (raw, _) in self._values.items() if k.startswith(prefix))
        return {k: json.loads(raw) for k, raw in matches}

    async def sadd(self, key: str, *members: str, ttl_seconds: int | None = None) -> int:
        expires_at = self._expiry(ttl_seconds)
        with self._lock:
            current, current_exp = self._sets.get(key, (set(), None))
            if not self._alive(current_exp):
                current = set()
            before = len(current)
            current.update(members)
            self._sets[key] = (current, expires_at if ttl_seconds is not None else current_exp)
            return len(current) - before

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            entry = self._sets.get(key)
            if entry is None:
                return 0
            current, _ = entry
            before = len(current)
            current.difference_update(members)
            return before - len(current)

    async def smembers(self, key: str) -> set[str]:
        with self._lock:
            entry = self._sets.get(key)
            if entry is None:
                return set()
            members, expires_at = entry
            if not self._alive(expires_at):
                del self._sets[key]
                return set()
            return set(members)

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for _, exp in self._values.values() if self._alive(exp))


# =============================================================================
# Redis Store
# =============================================================================


class RedisStore(KeyValueStore):
    """Store backed by redis.asyncio.

    Every Redis failure surfaces as StoreError so the monitoring cycle can
    isolate it to the experiment being processed.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: str | None = None,
        socket_timeout: float = 5.0,
        client: redis.Redis | None = None,
    ) -> None:
        self._client = client or redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            socket_timeout=socket_timeout,
            decode_responses=True,
        )

    @classmethod
    def from_settings(cls, settings: Any) -> "RedisStore":
        """Build from a RedisSettings model."""
        return cls(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            password=settings.password,
            socket_timeout=settings.socket_timeout,
        )

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            raise StoreError(f"Redis ping failed: {e}", operation="ping") from e

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._client.get(key)
        except RedisError as e:
            raise StoreError(f"Redis GET failed: {e}", key=key, operation="get") from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreError(f"Value at {key} is not valid JSON: {e}", key=key, operation="get") from e

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Value for {key} is not JSON serializable: {e}", key=key, operation="set") from e
        try:
            await self._client.set(key, raw, ex=ttl_seconds)
        except RedisError as e:
            raise StoreError(f"Redis SET failed: {e}", key=key, operation="set") from e

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(key))
        except RedisError as e:
            raise StoreError(f"Redis DEL failed: {e}", key=key, operation="delete") from e

    async def scan_prefix(self, prefix: str) -> dict[str, Any]:
        try:
            keys = sorted([k async for k in self._client.scan_iter(match=f"{prefix}*", count=500)])
            if not keys:
                return {}
            values = await self._client.mget(keys)
        except RedisError as e:
            raise StoreError(f"Redis SCAN failed: {e}", key=prefix, operation="scan_prefix") from e
        # Keys can expire between SCAN and MGET
        try:
            return {k: json.loads(v) for k, v in zip(keys, values) if v is not None}
        except json.JSONDecodeError as e:
            raise StoreError(f"Invalid JSON under {prefix}: {e}", key=prefix, operation="scan_prefix") from e

    async def sadd(self, key: str, *members: str, ttl_seconds: int | None = None) -> int:
        if not members:
            return 0
        try:
            added = await self._client.sadd(key, *members)
            if ttl_seconds is not None:
                await self._client.expire(key, ttl_seconds)
            return int(added)
        except RedisError as e:
            raise StoreError(f"Redis SADD failed: {e}", key=key, operation="sadd") from e

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        try:
            return int(await self._client.srem(key, *members))
        except RedisError as e:
            raise StoreError(f"Redis SREM failed: {e}", key=key, operation="srem") from e

    async def smembers(self, key: str) -> set[str]:
        try:
            return set(await self._client.smembers(key))
        except RedisError as e:
            raise StoreError(f"Redis SMEMBERS failed: {e}", key=key, operation="smembers") from e

    async def scard(self, key: str) -> int:
        try:
            return int(await self._client.scard(key))
        except RedisError as e:
            raise StoreError(f"Redis SCARD failed: {e}", key=key, operation="scard") from e

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis store connection closed")
