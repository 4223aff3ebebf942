"""
Monitoring module.

Provides structured logging and alert notification. The recurring
monitoring cycle is imported from ``monitoring.scheduler``.
"""

from .alerting import (
    AlertChannel,
    AlertNotifier,
    DashboardNotifier,
    NotificationDispatcher,
    SlackNotifier,
    WebhookNotifier,
)
from .logger import (
    ContextLogger,
    JsonFormatter,
    LogCategory,
    LogFormat,
    StructuredLogRecord,
    TextFormatter,
    get_logger,
    log_alert,
    log_allocation,
    log_lifecycle,
    log_system,
    setup_logging,
)

__all__ = [
    # Alerting
    "AlertChannel",
    "AlertNotifier",
    "DashboardNotifier",
    "NotificationDispatcher",
    "SlackNotifier",
    "WebhookNotifier",
    # Logging
    "ContextLogger",
    "JsonFormatter",
    "LogCategory",
    "LogFormat",
    "StructuredLogRecord",
    "TextFormatter",
    "get_logger",
    "log_alert",
    "log_allocation",
    "log_lifecycle",
    "log_system",
    "setup_logging",
]
