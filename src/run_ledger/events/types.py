"""
Ledger event types.

Managers publish one LedgerEvent per lifecycle change so dashboards and
paused workers can follow a run without polling the stores.

Event Categories:
- run.*: Run lifecycle (created, status_changed, completed, failed, ...)
- step.*: Step lifecycle (created, completed, failed, skipped)
- approval.*: Approval gate (requested, approved, declined, expired)
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class LedgerEventType(str, Enum):
    """Event type categories for ledger events."""

    # Run lifecycle events
    RUN_CREATED = "run.created"
    RUN_STATUS_CHANGED = "run.status_changed"
    RUN_USAGE_UPDATED = "run.usage_updated"
    RUN_COMPLETED = "run.completed"
    RUN_FAILED = "run.failed"
    RUN_CANCELLED = "run.cancelled"

    # Step events
    STEP_CREATED = "step.created"
    STEP_COMPLETED = "step.completed"
    STEP_FAILED = "step.failed"
    STEP_SKIPPED = "step.skipped"

    # Approval events (human-in-the-loop)
    APPROVAL_REQUESTED = "approval.requested"
    APPROVAL_APPROVED = "approval.approved"
    APPROVAL_DECLINED = "approval.declined"
    APPROVAL_EXPIRED = "approval.expired"


@dataclass
class LedgerEvent:
    """Unified ledger event.

    Every event carries the run it belongs to and, when known, the
    trace id of that run.
    """
    # Event identity
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    type: LedgerEventType = LedgerEventType.RUN_STATUS_CHANGED
    timestamp: float = field(default_factory=time.time)

    # Correlation
    run_id: str | None = None
    trace_id: str | None = None
    step_index: int | None = None
    approval_id: str | None = None

    # Scope (for multi-tenancy)
    tenant_id: str | None = None
    agent_id: str | None = None

    # Event payload
    data: dict[str, Any] = field(default_factory=dict)

    # Schema version for forward compatibility
    schema_version: int = 1

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "event_id": self.event_id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "run_id": self.run_id,
            "trace_id": self.trace_id,
            "step_index": self.step_index,
            "approval_id": self.approval_id,
            "tenant_id": self.tenant_id,
            "agent_id": self.agent_id,
            "data": self.data,
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEvent:
        """Deserialize from dictionary."""
        return cls(
            event_id=data.get("event_id", str(uuid.uuid4())),
            type=LedgerEventType(data["type"]),
            timestamp=data.get("timestamp", time.time()),
            run_id=data.get("run_id"),
            trace_id=data.get("trace_id"),
            step_index=data.get("step_index"),
            approval_id=data.get("approval_id"),
            tenant_id=data.get("tenant_id"),
            agent_id=data.get("agent_id"),
            data=dict(data.get("data", {})),
            schema_version=data.get("schema_version", 1),
        )


__all__ = [
    "LedgerEventType",
    "LedgerEvent",
]
