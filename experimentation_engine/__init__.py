"""
Experimentation Engine - Autonomous A/B Test Decision Platform

Decides when running experiments reach statistical significance, allocates
a shared pool of test slots and traffic budget between competing
experiments, and runs the recurring monitoring cycle that turns metrics
into alerts, recommendations and bounded automatic actions.
"""

__version__ = "1.0.0"
__author__ = "Experimentation Platform Team"
