"""
Usage and budget accounting.

- Usage: monotonic consumed snapshot of a run
- ExecutionBudget: per-run ceilings with a check() that returns a BudgetDecision
- aggregate_usage / require_within_budget: helpers for the execution engine
"""

from .types import (
    Usage,
    ExecutionBudget,
    BudgetDecision,
    MONOTONIC_FIELDS,
)
from .accounting import (
    aggregate_usage,
    require_within_budget,
    TOOL_STEP_TYPES,
)

__all__ = [
    "Usage",
    "ExecutionBudget",
    "BudgetDecision",
    "MONOTONIC_FIELDS",
    "aggregate_usage",
    "require_within_budget",
    "TOOL_STEP_TYPES",
]
