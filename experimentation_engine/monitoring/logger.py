"""
Structured logging for the experimentation engine.

Provides:
- JSON and human-readable log formats
- Contextual metadata (experiment, slot, variation) and correlation IDs
- Log categories for different components
- Rotating file handlers
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class LogCategory(str, Enum):
    """Log categories for different components."""

    SYSTEM = "SYSTEM"
    STATISTICS = "STATISTICS"
    ALLOCATION = "ALLOCATION"
    MONITORING = "MONITORING"
    LIFECYCLE = "LIFECYCLE"
    ALERT = "ALERT"
    STORE = "STORE"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    TEXT = "text"


# Record attributes copied into formatted output when present
_CONTEXT_FIELDS = ("correlation_id", "experiment_id", "slot_id", "variation_id")


class StructuredLogRecord(BaseModel):
    """Structured log record with metadata."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    level: str
    category: LogCategory
    message: str
    correlation_id: str | None = None
    experiment_id: str | None = None
    slot_id: str | None = None
    variation_id: str | None = None
    extra_data: dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """Convert to JSON string."""
        data: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "category": self.category.value,
            "message": self.message,
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(self, name)
            if value:
                data[name] = value
        if self.extra_data:
            data["extra_data"] = self.extra_data
        return json.dumps(data, default=str)

    def to_text(self) -> str:
        """Convert to human-readable text."""
        parts = [
            self.timestamp.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3],
            f"[{self.level:8s}]",
            f"[{self.category.value:10s}]",
        ]
        if self.correlation_id:
            parts.append(f"[{self.correlation_id[:8]}]")
        if self.experiment_id:
            parts.append(f"[{self.experiment_id}]")
        parts.append(self.message)
        if self.extra_data:
            parts.append(f"| {self.extra_data}")
        return " ".join(parts)


def _record_to_structured(record: logging.LogRecord, default: LogCategory) -> StructuredLogRecord:
    category = getattr(record, "category", default.value)
    return StructuredLogRecord(
        timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc),
        level=record.levelname,
        category=LogCategory(category) if category in LogCategory._value2member_map_ else default,
        message=record.getMessage(),
        extra_data=getattr(record, "extra_data", None) or {},
        **{name: getattr(record, name, None) for name in _CONTEXT_FIELDS},
    )


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, category: LogCategory = LogCategory.SYSTEM) -> None:
        super().__init__()
        self.category = category

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_data = json.loads(_record_to_structured(record, self.category).to_json())
        log_data.update(
            {
                "logger": record.name,
                "module": record.module,
                "function": record.funcName,
                "line": record.lineno,
            }
        )
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter for development."""

    def __init__(self, category: LogCategory = LogCategory.SYSTEM) -> None:
        super().__init__()
        self.category = category

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as human-readable text."""
        message = _record_to_structured(record, self.category).to_text()
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that stamps category, correlation id and context on records."""

    def __init__(
        self,
        logger: logging.Logger,
        category: LogCategory = LogCategory.SYSTEM,
        correlation_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the context logger.

        Args:
            logger: Base logger instance.
            category: Log category.
            correlation_id: Optional correlation ID (e.g. a monitoring cycle id).
            context: Fields added to every record (experiment_id, slot_id, ...).
        """
        super().__init__(logger, {})
        self.category = category
        self.correlation_id = correlation_id or str(uuid4())
        self.context = dict(context or {})

    def process(
        self,
        msg: str,
        kwargs: dict[str, Any],
    ) -> tuple[str, dict[str, Any]]:
        extra = dict(kwargs.get("extra", {}))
        extra["category"] = self.category.value
        extra["correlation_id"] = self.correlation_id
        extra_data = dict(extra.get("extra_data") or {})
        for key, value in self.context.items():
            if key in _CONTEXT_FIELDS:
                extra.setdefault(key, value)
            else:
                extra_data.setdefault(key, value)
        if extra_data:
            extra["extra_data"] = extra_data
        kwargs["extra"] = extra
        return msg, kwargs

    def with_context(
        self,
        experiment_id: str | None = None,
        slot_id: str | None = None,
        variation_id: str | None = None,
        correlation_id: str | None = None,
        **extra_data: Any,
    ) -> "ContextLogger":
        """Create a new logger with additional context.

        Returns:
            New ContextLogger sharing the base logger and category.
        """
        context = dict(self.context)
        for key, value in (
            ("experiment_id", experiment_id),
            ("slot_id", slot_id),
            ("variation_id", variation_id),
        ):
            if value:
                context[key] = value
        context.update(extra_data)
        return ContextLogger(
            self.logger,
            self.category,
            correlation_id or self.correlation_id,
            context,
        )


def setup_logging(
    level: str = "INFO",
    log_format: LogFormat = LogFormat.JSON,
    log_file: Path | None = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 30,
) -> None:
    """Set up logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json or text).
        log_file: Optional log file path.
        max_bytes: Rotate the log file after this many bytes.
        backup_count: Rotated files to keep.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    formatter: logging.Formatter
    if LogFormat(log_format) == LogFormat.JSON:
        formatter = JsonFormatter()
    else:
        formatter = TextFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            file_handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
        except OSError as e:
            root_logger.warning(f"Failed to set up file logging: {e}")
        else:
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)


@lru_cache(maxsize=32)
def get_logger(
    name: str,
    category: LogCategory = LogCategory.SYSTEM,
    correlation_id: str | None = None,
) -> ContextLogger:
    """Get a context logger for a component.

    Args:
        name: Logger name.
        category: Log category.
        correlation_id: Optional correlation ID.

    Returns:
        ContextLogger instance.
    """
    base_logger = logging.getLogger(name)
    return ContextLogger(base_logger, category, correlation_id)


# Convenience functions for quick logging
def log_system(message: str, level: str = "INFO", **kwargs: Any) -> None:
    """Log a system message."""
    logger = get_logger("system", LogCategory.SYSTEM)
    getattr(logger, level.lower())(message, extra={"extra_data": kwargs})


def log_allocation(
    message: str,
    experiment_id: str | None = None,
    slot_id: str | None = None,
    level: str = "INFO",
    **kwargs: Any,
) -> None:
    """Log a slot allocation message."""
    logger = get_logger("allocation", LogCategory.ALLOCATION)
    extra: dict[str, Any] = {"extra_data": kwargs}
    if experiment_id:
        extra["experiment_id"] = experiment_id
    if slot_id:
        extra["slot_id"] = slot_id
    getattr(logger, level.lower())(message, extra=extra)


def log_lifecycle(message: str, experiment_id: str, level: str = "INFO", **kwargs: Any) -> None:
    """Log an experiment lifecycle message."""
    logger = get_logger("lifecycle", LogCategory.LIFECYCLE)
    getattr(logger, level.lower())(
        message,
        extra={"experiment_id": experiment_id, "extra_data": kwargs},
    )


def log_alert(message: str, experiment_id: str | None = None, level: str = "WARNING", **kwargs: Any) -> None:
    """Log an alert message."""
    logger = get_logger("alert", LogCategory.ALERT)
    extra: dict[str, Any] = {"extra_data": kwargs}
    if experiment_id:
        extra["experiment_id"] = experiment_id
    getattr(logger, level.lower())(message, extra=extra)
