# src/agenttrace/observability/__init__.py
"""
Cost and token accounting for agenttrace.
"""

from .cost_tracker import CostCalculator, RankedCostCalculation, normalize_model_name
from .token_tracker import TokenTracker, TrackedUsage, UsageSource

__all__ = [
    "CostCalculator",
    "RankedCostCalculation",
    "TokenTracker",
    "TrackedUsage",
    "UsageSource",
    "normalize_model_name",
]
