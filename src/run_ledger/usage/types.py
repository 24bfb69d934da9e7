"""
Usage and budget types.

A run's ``consumed`` Usage is a snapshot that only ever grows; the
ExecutionBudget next to it holds the ceilings the execution engine checks
before starting each step.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

# Float sums recomputed in a different order may differ in the last bits.
COST_EPSILON = 1e-9

# Counters that must never decrease between two snapshots of the same run.
MONOTONIC_FIELDS: tuple[str, ...] = (
    "input_tokens",
    "output_tokens",
    "total_tokens",
    "thinking_tokens",
    "cost_usd",
    "duration_ms",
    "downgrades",
    "steps",
    "tool_calls",
)


@dataclass
class Usage:
    """Accumulated cost, token, duration and count metrics for a run."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    thinking_tokens: int = 0
    cost_usd: float = 0.0
    duration_ms: float = 0.0
    model_used: str = ""
    downgrades: int = 0
    steps: int = 0
    tool_calls: int = 0

    @classmethod
    def zero(cls, model: str) -> Usage:
        """Empty snapshot attributed to ``model``."""
        return cls(model_used=model)

    def regressed_fields(self, previous: Usage) -> list[str]:
        """Names of counters that are lower here than in ``previous``."""
        regressed = []
        for name in MONOTONIC_FIELDS:
            current = getattr(self, name)
            before = getattr(previous, name)
            tolerance = COST_EPSILON if name in ("cost_usd", "duration_ms") else 0
            if current < before - tolerance:
                regressed.append(name)
        return regressed

    def is_regression_of(self, previous: Usage) -> bool:
        return bool(self.regressed_fields(previous))

    def merged_with(self, other: Usage) -> Usage:
        """Add ``other``'s counters to this snapshot (model is kept)."""
        return replace(
            self,
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            thinking_tokens=self.thinking_tokens + other.thinking_tokens,
            cost_usd=self.cost_usd + other.cost_usd,
            duration_ms=self.duration_ms + other.duration_ms,
            downgrades=self.downgrades + other.downgrades,
            steps=self.steps + other.steps,
            tool_calls=self.tool_calls + other.tool_calls,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "thinking_tokens": self.thinking_tokens,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "model_used": self.model_used,
            "downgrades": self.downgrades,
            "steps": self.steps,
            "tool_calls": self.tool_calls,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Usage:
        return cls(
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            total_tokens=int(data.get("total_tokens", 0)),
            thinking_tokens=int(data.get("thinking_tokens", 0)),
            cost_usd=float(data.get("cost_usd", 0.0)),
            duration_ms=float(data.get("duration_ms", 0.0)),
            model_used=data.get("model_used", ""),
            downgrades=int(data.get("downgrades", 0)),
            steps=int(data.get("steps", 0)),
            tool_calls=int(data.get("tool_calls", 0)),
        )


class BudgetDecision(str, Enum):
    """Result of a budget check."""
    ALLOW = "allow"  # Within budget
    WARN = "warn"    # Near a ceiling
    DENY = "deny"    # A ceiling would be breached


@dataclass
class ExecutionBudget:
    """Ceilings for a single run.

    Every limit is optional; ``None`` means unbounded. The ledger stores the
    budget and hands it back, it never enforces it on its own.
    """
    max_tokens: int | None = None
    max_cost_usd: float | None = None
    max_duration_ms: float | None = None
    max_steps: int | None = None
    max_tool_calls: int | None = None

    allow_model_downgrade: bool = False
    minimum_model: str | None = None
    effort_level: str | None = None
    max_thinking_tokens: int | None = None

    # Fraction (0.0 - 1.0) of a ceiling past which check() warns
    warning_threshold: float = 0.8

    def remaining_cost(self, consumed: Usage) -> float | None:
        """Dollars left, never negative. None when cost is unbounded."""
        if self.max_cost_usd is None:
            return None
        return max(0.0, self.max_cost_usd - consumed.cost_usd)

    def check(
        self,
        consumed: Usage,
        pending_cost: float = 0.0,
        pending_tokens: int = 0,
        pending_steps: int = 0,
        pending_tool_calls: int = 0,
    ) -> tuple[BudgetDecision, str | None]:
        """Check whether a pending operation fits within the budget.

        A breach on any dimension wins over a warning on another.

        Returns:
            Tuple of (decision, reason)
        """
        limits: list[tuple[str, float | None, float]] = [
            ("token", self.max_tokens, consumed.total_tokens + pending_tokens),
            ("cost", self.max_cost_usd, consumed.cost_usd + pending_cost),
            ("duration", self.max_duration_ms, consumed.duration_ms),
            ("step", self.max_steps, consumed.steps + pending_steps),
            ("tool call", self.max_tool_calls, consumed.tool_calls + pending_tool_calls),
        ]
        if self.max_thinking_tokens is not None:
            limits.append(("thinking token", self.max_thinking_tokens, consumed.thinking_tokens))

        warning: str | None = None
        for label, limit, total in limits:
            if limit is None:
                continue
            if total > limit:
                return BudgetDecision.DENY, f"{label.capitalize()} limit exceeded ({total} > {limit})"
            if warning is None and total > limit * self.warning_threshold:
                warning = f"Approaching {label} limit ({total} of {limit})"

        if warning:
            return BudgetDecision.WARN, warning
        return BudgetDecision.ALLOW, None

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_tokens": self.max_tokens,
            "max_cost_usd": self.max_cost_usd,
            "max_duration_ms": self.max_duration_ms,
            "max_steps": self.max_steps,
            "max_tool_calls": self.max_tool_calls,
            "allow_model_downgrade": self.allow_model_downgrade,
            "minimum_model": self.minimum_model,
            "effort_level": self.effort_level,
            "max_thinking_tokens": self.max_thinking_tokens,
            "warning_threshold": self.warning_threshold,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionBudget:
        return cls(
            max_tokens=data.get("max_tokens"),
            max_cost_usd=data.get("max_cost_usd"),
            max_duration_ms=data.get("max_duration_ms"),
            max_steps=data.get("max_steps"),
            max_tool_calls=data.get("max_tool_calls"),
            allow_model_downgrade=bool(data.get("allow_model_downgrade", False)),
            minimum_model=data.get("minimum_model"),
            effort_level=data.get("effort_level"),
            max_thinking_tokens=data.get("max_thinking_tokens"),
            warning_threshold=data.get("warning_threshold", 0.8),
        )


__all__ = [
    "Usage",
    "ExecutionBudget",
    "BudgetDecision",
    "MONOTONIC_FIELDS",
]
