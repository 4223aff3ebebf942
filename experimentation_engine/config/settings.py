"""
Central configuration management using Pydantic settings.

Provides type-safe configuration with validation, environment variable
support, and YAML configuration file loading. Decision thresholds live in
``decision_thresholds.yaml`` beside this module so they can be tuned
without code changes.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from experimentation_engine.core.exceptions import ConfigurationError, MissingConfigError


# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = Path(__file__).resolve().parent


class StatisticsSettings(BaseModel):
    """Statistical test configuration."""

    minimum_detectable_effect: float = Field(
        default=0.05, gt=0, description="Relative lift over control the test must be able to detect"
    )
    target_power: float = Field(default=0.8, gt=0, lt=1, description="Desired statistical power")
    default_samples_days: int = Field(
        default=7, ge=1, description="Days assumed for enrollment rate when no duration is known"
    )
    supported_models: list[str] = Field(
        default_factory=lambda: ["two_proportion_z"], description="Significance models the engine runs"
    )


class SlotSettings(BaseModel):
    """Test slot pool and contamination configuration."""

    max_simultaneous_tests: int = Field(default=25, ge=1, description="Number of test slots")
    max_traffic_per_segment: float = Field(default=10.0, gt=0, le=100, description="Cap per segment %")
    slot_min_traffic_percent: float = Field(default=2.0, ge=0, le=100, description="Slot minimum traffic %")
    slot_max_traffic_percent: float = Field(default=10.0, gt=0, le=100, description="Slot maximum traffic %")
    slot_max_duration_days: int = Field(default=30, ge=1, description="Slot maximum test duration")
    element_conflict_threshold: float = Field(default=0.3, ge=0, le=1)
    element_warning_threshold: float = Field(default=0.1, ge=0, le=1)
    segment_conflict_threshold: float = Field(default=0.7, ge=0, le=1)
    segment_warning_threshold: float = Field(default=0.4, ge=0, le=1)

    @model_validator(mode="after")
    def validate_thresholds(self) -> "SlotSettings":
        """Warning thresholds must sit below conflict thresholds."""
        if self.element_warning_threshold > self.element_conflict_threshold:
            raise ValueError("element_warning_threshold must be <= element_conflict_threshold")
        if self.segment_warning_threshold > self.segment_conflict_threshold:
            raise ValueError("segment_warning_threshold must be <= segment_conflict_threshold")
        if self.slot_min_traffic_percent > self.slot_max_traffic_percent:
            raise ValueError("slot_min_traffic_percent must be <= slot_max_traffic_percent")
        return self


class MonitoringSettings(BaseModel):
    """Monitoring cycle configuration."""

    interval_minutes: float = Field(default=30.0, gt=0, description="Minutes between cycles")
    experiment_timeout_seconds: float = Field(default=60.0, gt=0, description="Per-experiment cycle budget")
    history_retention_days: int = Field(default=30, ge=1, description="TTL of stored metrics snapshots")
    alert_retention_days: int = Field(default=7, ge=1, description="TTL of stored alerts")
    suggestion_retention_days: int = Field(default=1, ge=1, description="TTL of stored suggestions")
    trend_window_days: int = Field(default=7, ge=1, description="Trailing window for performance-drop checks")
    alert_dedup_window_minutes: float = Field(
        default=360.0, ge=0, description="Suppress repeat alerts of one type; 0 re-raises every cycle"
    )


class DecisionThresholdSettings(BaseModel):
    """Thresholds behind recommendations, alerts and automatic actions."""

    stop_early_probability: float = Field(default=0.95, ge=0, le=1)
    auto_stop_probability: float = Field(default=0.99, ge=0, le=1)
    adjust_traffic_probability: float = Field(default=0.10, ge=0, le=1)
    adjust_traffic_expected_loss: float = Field(default=0.02, ge=0)
    auto_throttle_probability: float = Field(default=0.05, ge=0, le=1)
    auto_throttle_expected_loss: float = Field(default=0.03, ge=0)
    throttle_factor: float = Field(default=0.5, gt=0, lt=1)
    throttle_floor_percent: float = Field(default=5.0, ge=0, le=100)
    performance_drop_ratio: float = Field(default=0.9, gt=0, le=1)
    reallocation_suggestion_probability: float = Field(default=0.8, ge=0, le=1)
    risk_expected_loss: float = Field(default=0.05, ge=0)
    risk_max_variations: int = Field(default=4, ge=2)

    @model_validator(mode="after")
    def validate_ordering(self) -> "DecisionThresholdSettings":
        """Automatic stop must demand at least as much as a recommendation."""
        if self.auto_stop_probability < self.stop_early_probability:
            raise ValueError("auto_stop_probability must be >= stop_early_probability")
        return self


class NotificationSettings(BaseModel):
    """Outbound notification configuration."""

    webhook_url: str | None = Field(default=None, description="Webhook receiving alert payloads")
    slack_webhook_url: str | None = Field(default=None, description="Slack incoming webhook")
    slack_channel: str | None = Field(default=None, description="Slack channel override")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-notification timeout")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra webhook headers")


class RedisSettings(BaseModel):
    """Redis configuration settings."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: str | None = None
    socket_timeout: float = 5.0

    @property
    def url(self) -> str:
        """Get the Redis connection URL."""
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class LoggingSettings(BaseModel):
    """Logging configuration settings."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json or text)")
    file_path: Path | None = Field(default=None, description="Log file path")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="EXPERIMENTS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = "Experimentation Engine"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", description="Environment (development, staging, production)")

    statistics: StatisticsSettings = Field(default_factory=StatisticsSettings)
    slots: SlotSettings = Field(default_factory=SlotSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    thresholds: DecisionThresholdSettings = Field(default_factory=DecisionThresholdSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def load_yaml_config(cls, config_path: Path) -> dict[str, Any]:
        """Load configuration from a YAML file."""
        if config_path.exists():
            with open(config_path, "r") as f:
                try:
                    loaded = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigurationError(
                        f"Could not parse {config_path.name}: {e}",
                        details={"config_file": str(config_path)},
                    ) from e
            if not isinstance(loaded, dict):
                raise ConfigurationError(
                    f"{config_path.name} must contain a mapping",
                    details={"config_file": str(config_path)},
                )
            return loaded
        return {}

    def load_thresholds_config(self, config_path: Path | None = None) -> DecisionThresholdSettings:
        """Load decision thresholds from YAML, falling back to current values."""
        config = self.load_yaml_config(config_path or CONFIG_DIR / "decision_thresholds.yaml")
        thresholds = config.get("thresholds")
        if thresholds:
            return self.thresholds.model_copy(update=thresholds)
        return self.thresholds

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Settings":
        """Build settings from a full YAML file (used by the CLI --config flag)."""
        if not config_path.exists():
            raise MissingConfigError(
                f"Configuration file not found: {config_path}",
                config_file=str(config_path),
            )
        return cls(**cls.load_yaml_config(config_path))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Loads configurations in order:
    1. Base settings from environment and .env file
    2. Decision thresholds from decision_thresholds.yaml
    """
    settings = Settings()
    settings.thresholds = settings.load_thresholds_config()
    return settings
