"""
Experiment lifecycle: creation, validation and state transitions.
"""

from .lifecycle import ExperimentLifecycle, validate_experiment

__all__ = ["ExperimentLifecycle", "validate_experiment"]
