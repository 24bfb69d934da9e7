"""
Step types.

A step is one discrete, individually costed operation inside a run. Its
idempotency key is derived from the run, the step index and a hash of the
input, so a retried operation with the same input maps onto the same record.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class StepType(str, Enum):
    """Kinds of operations a step can record."""
    LLM_CALL = "llm_call"
    TOOL_CALL = "tool_call"
    TOOL_SEARCH = "tool_search"
    APPROVAL_WAIT = "approval_wait"


class StepStatus(str, Enum):
    """Step lifecycle states.

    A step starts RUNNING and moves exactly once to one of the
    terminal states.
    """
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self is not StepStatus.RUNNING


def generate_idempotency_key(run_id: str, index: int, input_hash: str) -> str:
    return f"{run_id}:step:{index}:{input_hash}"


@dataclass
class StepRecord:
    """Persistent record of one step."""
    # Identity
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str = ""
    index: int = 0
    idempotency_key: str = ""

    type: StepType = StepType.LLM_CALL
    model: str | None = None
    tool_name: str | None = None

    # Payloads (full bodies only when opted in)
    input_hash: str = ""
    input: Any = None
    output_hash: str | None = None
    output: Any = None

    status: StepStatus = StepStatus.RUNNING

    # Metrics
    cost_usd: float = 0.0
    duration_ms: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    thinking_tokens: int = 0
    side_effect_committed: bool | None = None

    # Timestamps
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.thinking_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "index": self.index,
            "idempotency_key": self.idempotency_key,
            "type": self.type.value,
            "model": self.model,
            "tool_name": self.tool_name,
            "input_hash": self.input_hash,
            "input": self.input,
            "output_hash": self.output_hash,
            "output": self.output,
            "status": self.status.value,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "thinking_tokens": self.thinking_tokens,
            "side_effect_committed": self.side_effect_committed,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepRecord:
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            run_id=data.get("run_id", ""),
            index=int(data.get("index", 0)),
            idempotency_key=data.get("idempotency_key", ""),
            type=StepType(data.get("type", "llm_call")),
            model=data.get("model"),
            tool_name=data.get("tool_name"),
            input_hash=data.get("input_hash", ""),
            input=data.get("input"),
            output_hash=data.get("output_hash"),
            output=data.get("output"),
            status=StepStatus(data.get("status", "running")),
            cost_usd=float(data.get("cost_usd", 0.0)),
            duration_ms=float(data.get("duration_ms", 0.0)),
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            thinking_tokens=int(data.get("thinking_tokens", 0)),
            side_effect_committed=data.get("side_effect_committed"),
            started_at=data.get("started_at", time.time()),
            completed_at=data.get("completed_at"),
        )


__all__ = [
    "StepType",
    "StepStatus",
    "StepRecord",
    "generate_idempotency_key",
]
