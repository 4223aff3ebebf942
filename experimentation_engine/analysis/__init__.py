"""
Statistical analysis for conversion-rate experiments.
"""

from .statistics import Z_TABLE, StatisticsEngine

__all__ = ["StatisticsEngine", "Z_TABLE"]
