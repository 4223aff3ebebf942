"""
Unit tests for core/exceptions.py
"""

import pytest

from experimentation_engine.core.exceptions import (
    ConfigurationError,
    ExperimentationError,
    ExperimentClosedError,
    ExperimentError,
    ExperimentNotFoundError,
    ExperimentValidationError,
    InvalidConfigError,
    InvalidStateTransitionError,
    InvalidWinnerError,
    MissingConfigError,
    NotificationError,
    StoreError,
    UnsupportedModelError,
    ValidationError,
)


class TestExperimentationError:
    """Tests for the base exception."""

    def test_defaults(self):
        """Test error code defaults to the class name."""
        error = ExperimentationError("Something failed")
        assert error.error_code == "ExperimentationError"
        assert error.details == {}
        assert str(error) == "[ExperimentationError] Something failed"

    def test_details_in_str(self):
        """Test details are rendered."""
        error = ExperimentationError("Failed", error_code="E42", details={"key": "value"})
        assert str(error) == "[E42] Failed - Details: {'key': 'value'}"

    def test_to_dict(self):
        """Test serialization for logs and events."""
        data = StoreError("Redis GET failed", key="ab_test:1", operation="get").to_dict()
        assert data == {
            "error_type": "StoreError",
            "error_code": "StoreError",
            "message": "Redis GET failed",
            "details": {"key": "ab_test:1", "operation": "get"},
        }


class TestHierarchy:
    """Tests for the exception hierarchy."""

    @pytest.mark.parametrize(
        "error_class, parent",
        [
            (ValidationError, ExperimentationError),
            (ConfigurationError, ExperimentationError),
            (InvalidConfigError, ConfigurationError),
            (ExperimentValidationError, InvalidConfigError),
            (UnsupportedModelError, InvalidConfigError),
            (InvalidWinnerError, InvalidConfigError),
            (MissingConfigError, ConfigurationError),
            (ExperimentNotFoundError, ExperimentError),
            (InvalidStateTransitionError, ExperimentError),
            (ExperimentClosedError, ExperimentError),
            (StoreError, ExperimentationError),
            (NotificationError, ExperimentationError),
        ],
    )
    def test_inheritance(self, error_class, parent):
        """Test every error derives from its category."""
        assert issubclass(error_class, parent)


class TestSpecificErrors:
    """Tests for error-specific context."""

    def test_validation_error(self):
        """Test field context is recorded."""
        error = ValidationError("Bad increment", field_name="visitors", invalid_value=-1)
        assert error.details == {"field_name": "visitors", "invalid_value": "-1"}

    def test_experiment_validation_error_lists_all(self):
        """Test every problem is carried."""
        error = ExperimentValidationError("Invalid", errors=["a", "b"], experiment_id="exp_1")
        assert error.errors == ["a", "b"]
        assert error.details["errors"] == ["a", "b"]
        assert error.details["experiment_id"] == "exp_1"

    def test_unsupported_model(self):
        """Test the supported models are listed."""
        error = UnsupportedModelError("bayesian", ["two_proportion_z"])
        assert error.model == "bayesian"
        assert error.details["expected"] == "two_proportion_z"

    def test_not_found(self):
        """Test the id is in the message and details."""
        error = ExperimentNotFoundError("exp_1")
        assert "exp_1" in error.message
        assert error.experiment_id == "exp_1"

    def test_invalid_transition(self):
        """Test status and action context."""
        error = InvalidStateTransitionError("exp_1", "draft", "pause")
        assert error.message == "Cannot pause experiment exp_1 in status draft"
        assert error.details == {"current_status": "draft", "action": "pause", "experiment_id": "exp_1"}

    def test_closed(self):
        """Test closed experiment context."""
        error = ExperimentClosedError("exp_1", "completed")
        assert error.status == "completed"
        assert "no longer accepts changes" in error.message

    def test_invalid_winner(self):
        """Test winner context."""
        error = InvalidWinnerError("exp_1", "nope")
        assert error.variation_id == "nope"
        assert error.details["config_key"] == "winner_id"

    def test_notification_error(self):
        """Test channel context."""
        assert NotificationError("Timed out", channel="slack").details == {"channel": "slack"}
