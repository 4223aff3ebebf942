"""
Test slot and traffic allocation.
"""

from .slot_allocator import (
    NO_SLOT_CONFLICT,
    AllocationAnalytics,
    DeploymentResult,
    ExclusionRule,
    ExclusionRuleType,
    MitigationStrategy,
    RemovalResult,
    SlotAllocator,
    SlotConstraints,
    SlotStatus,
    TestSchedule,
    TestSlot,
    TrafficAllocation,
)

__all__ = [
    "NO_SLOT_CONFLICT",
    "AllocationAnalytics",
    "DeploymentResult",
    "ExclusionRule",
    "ExclusionRuleType",
    "MitigationStrategy",
    "RemovalResult",
    "SlotAllocator",
    "SlotConstraints",
    "SlotStatus",
    "TestSchedule",
    "TestSlot",
    "TrafficAllocation",
]
