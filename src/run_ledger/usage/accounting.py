"""
Usage aggregation and the hard-stop budget check.

The execution engine recomputes a run's consumed snapshot from its steps
after every completion and feeds it to ``RunLedger.update_consumed``.
"""

from __future__ import annotations

from collections.abc import Iterable

from ..errors import BudgetExceededError
from ..steps.types import StepRecord, StepStatus, StepType
from .types import BudgetDecision, ExecutionBudget, Usage

# Step types counted as tool calls
TOOL_STEP_TYPES = frozenset({StepType.TOOL_CALL, StepType.TOOL_SEARCH})


def aggregate_usage(
    steps: Iterable[StepRecord],
    model_used: str,
    downgrades: int = 0,
    overhead: Usage | None = None,
) -> Usage:
    """Sum the completed steps of a run into one Usage snapshot.

    Args:
        steps: All steps of the run; non-completed ones are ignored
        model_used: Model currently attributed to the run
        downgrades: Number of model downgrades so far
        overhead: Extra usage not attributable to any step (e.g. planning)
    """
    usage = Usage.zero(model_used)
    usage.downgrades = downgrades

    for step in steps:
        if step.status != StepStatus.COMPLETED:
            continue
        usage.input_tokens += step.input_tokens
        usage.output_tokens += step.output_tokens
        usage.thinking_tokens += step.thinking_tokens
        usage.total_tokens += step.total_tokens
        usage.cost_usd += step.cost_usd
        usage.duration_ms += step.duration_ms
        usage.steps += 1
        if step.type in TOOL_STEP_TYPES:
            usage.tool_calls += 1

    if overhead is not None:
        usage = usage.merged_with(overhead)
    return usage


def require_within_budget(
    budget: ExecutionBudget,
    consumed: Usage,
    *,
    pending_cost: float = 0.0,
    pending_tokens: int = 0,
    pending_steps: int = 1,
    run_id: str | None = None,
) -> BudgetDecision:
    """Raise BudgetExceededError if the next step would breach a ceiling.

    Meant for the execution engine before it starts a step; WARN is
    returned rather than raised.
    """
    decision, reason = budget.check(
        consumed,
        pending_cost=pending_cost,
        pending_tokens=pending_tokens,
        pending_steps=pending_steps,
    )
    if decision == BudgetDecision.DENY:
        raise BudgetExceededError(reason or "limit reached", run_id=run_id)
    return decision


__all__ = [
    "aggregate_usage",
    "require_within_budget",
    "TOOL_STEP_TYPES",
]
