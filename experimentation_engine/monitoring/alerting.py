"""
Outbound alert notification for the monitoring cycle.

Provides:
- Notifier channels (generic webhook, Slack, in-memory dashboard)
- A dispatcher that fans alerts out as background tasks, each bounded
  by a timeout, so a slow receiver never delays a monitoring cycle
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

import aiohttp

from experimentation_engine.config.settings import NotificationSettings
from experimentation_engine.core.data_types import AlertSeverity, AlertType, MonitoringAlert
from experimentation_engine.core.utils import retry_async

from .logger import LogCategory, get_logger

logger = get_logger("alerting", LogCategory.ALERT)


class AlertChannel(str, Enum):
    """Notification channels."""

    WEBHOOK = "webhook"
    SLACK = "slack"
    DASHBOARD = "dashboard"


class AlertNotifier(ABC):
    """Abstract base class for alert notifiers."""

    @abstractmethod
    async def send(self, alert: MonitoringAlert) -> bool:
        """Send an alert notification.

        Args:
            alert: Alert to send.

        Returns:
            True if sent successfully.
        """

    @abstractmethod
    def get_channel(self) -> AlertChannel:
        """Get the notification channel type."""


class WebhookNotifier(AlertNotifier):
    """Generic webhook notifier posting the alert as JSON."""

    def __init__(
        self,
        webhook_url: str,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 30.0,
        max_attempts: int = 2,
        retry_delay: float = 1.0,
    ) -> None:
        """Initialize webhook notifier.

        Args:
            webhook_url: Webhook URL.
            headers: Optional HTTP headers.
            timeout_seconds: Total request timeout.
            max_attempts: Attempts on connection errors.
            retry_delay: Initial delay between attempts.
        """
        self.webhook_url = webhook_url
        self.headers = headers or {}
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    async def _post(self, payload: dict[str, Any]) -> int:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.webhook_url, json=payload, headers=self.headers) as response:
                return response.status

    async def send(self, alert: MonitoringAlert) -> bool:
        """Send webhook notification."""
        payload = {"type": "ab_test_alert", "alert": alert.model_dump(mode="json")}
        try:
            status = await retry_async(
                lambda: self._post(payload),
                max_attempts=self.max_attempts,
                delay=self.retry_delay,
                exceptions=(aiohttp.ClientConnectionError,),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to send webhook alert: {e}")
            return False
        return status in (200, 201, 202)

    def get_channel(self) -> AlertChannel:
        return AlertChannel.WEBHOOK


class SlackNotifier(AlertNotifier):
    """Slack incoming-webhook notifier."""

    SEVERITY_EMOJI = {
        AlertSeverity.CRITICAL: ":rotating_light:",
        AlertSeverity.WARNING: ":warning:",
        AlertSeverity.INFO: ":information_source:",
    }
    SEVERITY_COLOR = {
        AlertSeverity.CRITICAL: "#FF0000",
        AlertSeverity.WARNING: "#FFA500",
        AlertSeverity.INFO: "#0000FF",
    }

    def __init__(
        self,
        webhook_url: str,
        channel: str | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.webhook_url = webhook_url
        self.channel = channel
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def build_payload(self, alert: MonitoringAlert) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "attachments": [
                {
                    "color": self.SEVERITY_COLOR.get(alert.severity, "#808080"),
                    "title": f"{self.SEVERITY_EMOJI.get(alert.severity, '')} {alert.title}",
                    "text": alert.message,
                    "fields": [
                        {"title": "Experiment", "value": alert.experiment_id, "short": True},
                        {"title": "Type", "value": alert.type.value, "short": True},
                        {"title": "Severity", "value": alert.severity.value, "short": True},
                        {"title": "Time", "value": alert.timestamp.isoformat(), "short": True},
                    ],
                    "footer": "Experimentation Engine",
                    "ts": int(alert.timestamp.timestamp()),
                }
            ],
        }
        if self.channel:
            payload["channel"] = self.channel
        return payload

    async def send(self, alert: MonitoringAlert) -> bool:
        """Send Slack notification."""
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.webhook_url, json=self.build_payload(alert)) as response:
                    return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to send Slack alert: {e}")
            return False

    def get_channel(self) -> AlertChannel:
        return AlertChannel.SLACK


class DashboardNotifier(AlertNotifier):
    """Dashboard notifier - keeps recent alerts in memory for display."""

    def __init__(self, max_alerts: int = 1000) -> None:
        self.max_alerts = max_alerts
        self.alerts: list[MonitoringAlert] = []

    async def send(self, alert: MonitoringAlert) -> bool:
        """Store alert for dashboard display."""
        self.alerts.append(alert)
        if len(self.alerts) > self.max_alerts:
            self.alerts = self.alerts[-self.max_alerts :]
        return True

    def get_channel(self) -> AlertChannel:
        return AlertChannel.DASHBOARD

    def get_alerts(
        self,
        experiment_id: str | None = None,
        alert_type: AlertType | None = None,
        limit: int = 100,
    ) -> list[MonitoringAlert]:
        """Get stored alerts, newest last."""
        alerts = self.alerts
        if experiment_id:
            alerts = [a for a in alerts if a.experiment_id == experiment_id]
        if alert_type:
            alerts = [a for a in alerts if a.type == alert_type]
        return alerts[-limit:]


class NotificationDispatcher:
    """Fans alerts out to notifiers without blocking the caller.

    Each delivery runs as its own task bounded by ``timeout_seconds``;
    ``flush()`` waits for everything still in flight.
    """

    def __init__(
        self,
        notifiers: list[AlertNotifier] | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.notifiers = list(notifiers or [])
        self.timeout_seconds = timeout_seconds
        self._tasks: set[asyncio.Task] = set()
        self._stats: dict[str, int] = {"dispatched": 0, "sent": 0, "failed": 0, "timed_out": 0}

    @classmethod
    def from_settings(cls, settings: NotificationSettings) -> "NotificationDispatcher":
        """Build notifiers for every configured channel plus the dashboard."""
        notifiers: list[AlertNotifier] = [DashboardNotifier()]
        if settings.webhook_url:
            notifiers.append(
                WebhookNotifier(settings.webhook_url, settings.headers, settings.timeout_seconds)
            )
        if settings.slack_webhook_url:
            notifiers.append(
                SlackNotifier(settings.slack_webhook_url, settings.slack_channel, settings.timeout_seconds)
            )
        return cls(notifiers, settings.timeout_seconds)

    def register_notifier(self, notifier: AlertNotifier) -> None:
        self.notifiers.append(notifier)
        logger.info(f"Registered notifier for channel: {notifier.get_channel().value}")

    def get_notifier(self, channel: AlertChannel) -> AlertNotifier | None:
        for notifier in self.notifiers:
            if notifier.get_channel() == channel:
                return notifier
        return None

    def dispatch(self, alert: MonitoringAlert) -> list[asyncio.Task]:
        """Schedule delivery of an alert to every notifier.

        Must be called from a running event loop.
        """
        tasks = []
        for notifier in self.notifiers:
            task = asyncio.get_running_loop().create_task(self._deliver(notifier, alert))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        self._stats["dispatched"] += len(tasks)
        return tasks

    async def _deliver(self, notifier: AlertNotifier, alert: MonitoringAlert) -> bool:
        channel = notifier.get_channel().value
        try:
            success = await asyncio.wait_for(notifier.send(alert), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            self._stats["timed_out"] += 1
            logger.warning(f"Notification to {channel} timed out after {self.timeout_seconds}s")
            return False
        except Exception as e:
            # A broken notifier must not take the dispatcher down with it
            self._stats["failed"] += 1
            logger.error(f"Error sending alert to {channel}: {e}")
            return False

        if success:
            self._stats["sent"] += 1
        else:
            self._stats["failed"] += 1
            logger.warning(f"Failed to send alert to {channel}")
        return success

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def flush(self) -> None:
        """Wait for all in-flight deliveries."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_stats(self) -> dict[str, Any]:
        return {**self._stats, "pending": self.pending, "notifiers": [n.get_channel().value for n in self.notifiers]}
