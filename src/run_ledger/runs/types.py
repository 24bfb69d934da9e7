"""
Run types.

This module defines the RunStatus enum, the run state machine and the
RunRecord dataclass.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..usage import ExecutionBudget, Usage

DEFAULT_MODEL = "claude-sonnet-4-5"


class RunStatus(str, Enum):
    """Run lifecycle states.

    State transitions:
    - RUNNING -> AWAITING_APPROVAL (a gated step needs a human decision)
    - AWAITING_APPROVAL -> RUNNING (approved)
    - AWAITING_APPROVAL -> FAILED (declined or expired)
    - RUNNING -> COMPLETED | PARTIAL | FAILED | CANCELLED
    """
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in {
            RunStatus.COMPLETED,
            RunStatus.PARTIAL,
            RunStatus.FAILED,
            RunStatus.CANCELLED,
        }


# Valid state transitions
VALID_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.RUNNING: {
        RunStatus.AWAITING_APPROVAL,
        RunStatus.COMPLETED,
        RunStatus.PARTIAL,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
    },
    RunStatus.AWAITING_APPROVAL: {
        RunStatus.RUNNING,
        RunStatus.FAILED,
    },
    # Terminal states have no valid transitions
    RunStatus.COMPLETED: set(),
    RunStatus.PARTIAL: set(),
    RunStatus.FAILED: set(),
    RunStatus.CANCELLED: set(),
}


@dataclass
class RunError:
    """Structured error stored on a failed run."""
    message: str
    code: str
    retryable: bool = False
    step: int | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }
        if self.step is not None:
            d["step"] = self.step
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunError:
        return cls(
            message=data.get("message", ""),
            code=data.get("code", "INTERNAL_ERROR"),
            retryable=bool(data.get("retryable", False)),
            step=data.get("step"),
        )


@dataclass
class RunRecord:
    """Persistent record of one run.

    ``version`` increases on every write and lets stores reject a write
    based on a stale read.
    """
    # Identity
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    idempotency_key: str = ""
    agent_id: str = ""

    # Payloads
    input: Any = None
    output: Any = None

    status: RunStatus = RunStatus.RUNNING

    # Accounting
    budget: ExecutionBudget = field(default_factory=ExecutionBudget)
    consumed: Usage = field(default_factory=lambda: Usage.zero(DEFAULT_MODEL))
    current_model: str = DEFAULT_MODEL
    effort_level: str = "medium"

    # Correlation / scope
    trace_id: str = ""
    tenant_id: str | None = None
    user_id: str | None = None

    error: RunError | None = None

    # Timestamps
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    version: int = 0

    def can_transition_to(self, new_status: RunStatus) -> bool:
        """Check if transition to new_status is valid."""
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "idempotency_key": self.idempotency_key,
            "agent_id": self.agent_id,
            "input": self.input,
            "output": self.output,
            "status": self.status.value,
            "budget": self.budget.to_dict(),
            "consumed": self.consumed.to_dict(),
            "current_model": self.current_model,
            "effort_level": self.effort_level,
            "trace_id": self.trace_id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "error": self.error.to_dict() if self.error else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunRecord:
        """Deserialize from dictionary."""
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            idempotency_key=data.get("idempotency_key", ""),
            agent_id=data.get("agent_id", ""),
            input=data.get("input"),
            output=data.get("output"),
            status=RunStatus(data.get("status", "running")),
            budget=ExecutionBudget.from_dict(data.get("budget") or {}),
            consumed=Usage.from_dict(data.get("consumed") or {}),
            current_model=data.get("current_model", DEFAULT_MODEL),
            effort_level=data.get("effort_level", "medium"),
            trace_id=data.get("trace_id", ""),
            tenant_id=data.get("tenant_id"),
            user_id=data.get("user_id"),
            error=RunError.from_dict(data["error"]) if data.get("error") else None,
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
            completed_at=data.get("completed_at"),
            version=int(data.get("version", 0)),
        )


__all__ = [
    "DEFAULT_MODEL",
    "RunStatus",
    "RunError",
    "RunRecord",
    "VALID_TRANSITIONS",
]
