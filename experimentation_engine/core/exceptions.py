"""
Custom exception hierarchy for the experimentation engine.

Provides a structured exception hierarchy for different error categories:
- Validation errors (bad parameters)
- Configuration errors (invalid experiment definitions, settings files)
- Experiment errors (unknown ids, illegal state transitions)
- Collaborator errors (store access, notification delivery)

Slot exhaustion is deliberately absent: a deployment that finds no slot is
reported through a DeploymentResult rather than raised.
"""

from __future__ import annotations

from typing import Any


class ExperimentationError(Exception):
    """Base exception for all experimentation engine errors.

    All custom exceptions in the engine inherit from this class.
    Provides structured error information including error code, message,
    and additional context.
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
            error_code: Optional error code for programmatic handling.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}

    def __str__(self) -> str:
        """Return formatted error string."""
        if self.details:
            return f"[{self.error_code}] {self.message} - Details: {self.details}"
        return f"[{self.error_code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(ExperimentationError):
    """Raised when parameter or input validation fails.

    Examples:
        - Negative visitor or conversion increments
        - Conversions exceeding visitors
        - Confidence level outside (0, 1)
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        invalid_value: Any = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the validation error.

        Args:
            message: Human-readable error message.
            field_name: Name of the field that failed validation.
            invalid_value: The value that failed validation.
            **kwargs: Additional context passed to parent.
        """
        details = kwargs.pop("details", {})
        if field_name:
            details["field_name"] = field_name
        if invalid_value is not None:
            details["invalid_value"] = str(invalid_value)
        super().__init__(message, details=details, **kwargs)
        self.field_name = field_name
        self.invalid_value = invalid_value


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(ExperimentationError):
    """Base exception for configuration-related errors."""

    pass


class InvalidConfigError(ConfigurationError):
    """Raised when configuration is invalid.

    Examples:
        - Variation traffic allocations not summing to 100
        - Missing or duplicated control variation
        - Traffic allocation outside 0-100
    """

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        value: Any = None,
        expected: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if value is not None:
            details["value"] = str(value)
        if expected:
            details["expected"] = expected
        super().__init__(message, details=details, **kwargs)
        self.config_key = config_key
        self.value = value
        self.expected = expected


class ExperimentValidationError(InvalidConfigError):
    """Raised when an experiment definition fails validation.

    Carries every problem found, not only the first one.
    """

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        experiment_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        self.errors = list(errors or [])
        if self.errors:
            details["errors"] = self.errors
        if experiment_id:
            details["experiment_id"] = experiment_id
        super().__init__(message, details=details, **kwargs)
        self.experiment_id = experiment_id


class UnsupportedModelError(InvalidConfigError):
    """Raised when an experiment asks for a significance model we don't run."""

    def __init__(self, model: str, supported: list[str], **kwargs: Any) -> None:
        super().__init__(
            f"Unsupported significance model: {model}",
            config_key="significance_model",
            value=model,
            expected=", ".join(supported),
            **kwargs,
        )
        self.model = model


class InvalidWinnerError(InvalidConfigError):
    """Raised when a stop request names a variation the experiment lacks."""

    def __init__(self, experiment_id: str, variation_id: str, **kwargs: Any) -> None:
        super().__init__(
            f"Variation {variation_id} is not part of experiment {experiment_id}",
            config_key="winner_id",
            value=variation_id,
            **kwargs,
        )
        self.experiment_id = experiment_id
        self.variation_id = variation_id


class MissingConfigError(ConfigurationError):
    """Raised when required configuration is missing.

    Examples:
        - Configuration file not found
        - Required key missing from config
    """

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        config_file: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if config_file:
            details["config_file"] = config_file
        super().__init__(message, details=details, **kwargs)
        self.config_key = config_key
        self.config_file = config_file


# =============================================================================
# Experiment Errors
# =============================================================================


class ExperimentError(ExperimentationError):
    """Base exception for experiment lifecycle errors."""

    def __init__(
        self,
        message: str,
        experiment_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if experiment_id:
            details["experiment_id"] = experiment_id
        super().__init__(message, details=details, **kwargs)
        self.experiment_id = experiment_id


class ExperimentNotFoundError(ExperimentError):
    """Raised when an experiment id is unknown to the store."""

    def __init__(self, experiment_id: str, **kwargs: Any) -> None:
        super().__init__(
            f"Experiment not found: {experiment_id}",
            experiment_id=experiment_id,
            **kwargs,
        )


class InvalidStateTransitionError(ExperimentError):
    """Raised when a lifecycle action is not allowed from the current status.

    Examples:
        - Pausing a draft experiment
        - Resuming a running experiment
        - Starting a completed experiment
    """

    def __init__(
        self,
        experiment_id: str,
        current_status: str,
        action: str,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        details["current_status"] = current_status
        details["action"] = action
        super().__init__(
            f"Cannot {action} experiment {experiment_id} in status {current_status}",
            experiment_id=experiment_id,
            details=details,
            **kwargs,
        )
        self.current_status = current_status
        self.action = action


class ExperimentClosedError(ExperimentError):
    """Raised when counters or definitions of a finished experiment change."""

    def __init__(self, experiment_id: str, status: str, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details["status"] = status
        super().__init__(
            f"Experiment {experiment_id} is {status} and no longer accepts changes",
            experiment_id=experiment_id,
            details=details,
            **kwargs,
        )
        self.status = status


# =============================================================================
# Collaborator Errors
# =============================================================================


class StoreError(ExperimentationError):
    """Raised when the key-value store cannot be read or written."""

    def __init__(
        self,
        message: str,
        key: str | None = None,
        operation: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if key:
            details["key"] = key
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details, **kwargs)
        self.key = key
        self.operation = operation


class NotificationError(ExperimentationError):
    """Raised when an outbound notification cannot be delivered."""

    def __init__(
        self,
        message: str,
        channel: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if channel:
            details["channel"] = channel
        super().__init__(message, details=details, **kwargs)
        self.channel = channel
