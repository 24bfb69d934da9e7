"""
Approval types for the human-in-the-loop gate.

This module defines the trigger vocabulary (conditions and risk levels),
the context a trigger is evaluated against, and the ApprovalRequest record
that pauses a run until a human decides.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import orjson


class RiskLevel(str, Enum):
    """Four-point severity ranking, ordered low < medium < high < critical."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    @classmethod
    def highest(cls, levels: list[RiskLevel]) -> RiskLevel:
        """Maximum of ``levels``; LOW when empty."""
        return max(levels, key=lambda level: level.rank, default=cls.LOW)


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class ApprovalCondition(str, Enum):
    """Closed set of trigger conditions."""
    COST_EXCEEDS_USD = "cost_exceeds_usd"
    COST_EXCEEDS_PERCENT_OF_BUDGET = "cost_exceeds_percent_of_budget"
    SCOPE_INCLUDES = "scope_includes"
    SCOPE_MATCHES_PATTERN = "scope_matches_pattern"
    DOMAIN_NOT_IN_ALLOWLIST = "domain_not_in_allowlist"
    OPERATION_IRREVERSIBLE = "operation_irreversible"
    # Reserved; always evaluate false
    AFFECTS_USERS_EXCEEDS = "affects_users_exceeds"
    DATA_SENSITIVITY_LEVEL = "data_sensitivity_level"
    ENVIRONMENT_IS_PRODUCTION = "environment_is_production"


class ApprovalStatus(str, Enum):
    """Approval lifecycle states.

    Status moves only PENDING -> APPROVED | DECLINED | EXPIRED.
    """
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not ApprovalStatus.PENDING


@dataclass
class ApprovalTrigger:
    """A configured rule that forces a human decision when it matches."""
    id: str
    condition: ApprovalCondition
    threshold: Any
    risk_level: RiskLevel
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "condition": self.condition.value,
            "threshold": self.threshold,
            "risk_level": self.risk_level.value,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApprovalTrigger:
        return cls(
            id=data["id"],
            condition=ApprovalCondition(data["condition"]),
            threshold=data.get("threshold"),
            risk_level=RiskLevel(data["risk_level"]),
            description=data.get("description", ""),
        )


@dataclass
class ToolDescriptor:
    """Read-only tool metadata the approval check needs."""
    name: str
    description: str = ""
    scopes: list[str] = field(default_factory=list)
    allowlisted_domains: list[str] = field(default_factory=list)
    side_effectful: bool = False
    has_rollback: bool = False
    version: str | None = None


@dataclass
class ApprovalContext:
    """Everything a trigger may look at for one pending step."""
    run_id: str
    step_index: int
    tool: ToolDescriptor
    input: Any = None
    estimated_cost: float = 0.0
    budget_remaining: float = 0.0
    budget_total: float = 0.0
    environment: str = "development"


@dataclass
class ApprovalCheck:
    """Result of evaluating every trigger against a context."""
    required: bool
    triggers: list[ApprovalTrigger] = field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW

    @property
    def trigger_ids(self) -> list[str]:
        return [t.id for t in self.triggers]


@dataclass
class ApprovalDecision:
    """A human's answer to an approval request."""
    approved: bool
    approved_by: str
    reason: str | None = None
    modified_input: Any = None
    approved_at: float | None = None


@dataclass
class ApprovalAction:
    """What the run wants to do, as shown to the reviewer."""
    tool_name: str
    description: str
    input: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "description": self.description,
            "input": self.input,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApprovalAction:
        return cls(
            tool_name=data.get("tool_name", ""),
            description=data.get("description", ""),
            input=data.get("input"),
        )


@dataclass
class ApprovalResolution:
    """Persisted outcome of a resolved request."""
    decision: str  # "approve" or "decline"
    reason: str | None = None
    modified_input: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision,
            "reason": self.reason,
            "modified_input": self.modified_input,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApprovalResolution:
        return cls(
            decision=data.get("decision", "decline"),
            reason=data.get("reason"),
            modified_input=data.get("modified_input"),
        )


@dataclass
class ApprovalRequest:
    """Persistent record of one approval request.

    Once the status leaves PENDING the record is never modified again.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str = ""
    step_index: int = 0
    action: ApprovalAction = field(default_factory=lambda: ApprovalAction(tool_name="", description=""))

    risk_level: RiskLevel = RiskLevel.LOW
    risk_factors: list[str] = field(default_factory=list)
    requested_by: str = ""

    # Timestamps
    requested_at: float = field(default_factory=time.time)
    expires_at: float = 0.0

    status: ApprovalStatus = ApprovalStatus.PENDING
    resolved_by: str | None = None
    resolved_at: float | None = None
    resolution: ApprovalResolution | None = None

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "step_index": self.step_index,
            "action": self.action.to_dict(),
            "risk_level": self.risk_level.value,
            "risk_factors": list(self.risk_factors),
            "requested_by": self.requested_by,
            "requested_at": self.requested_at,
            "expires_at": self.expires_at,
            "status": self.status.value,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at,
            "resolution": self.resolution.to_dict() if self.resolution else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApprovalRequest:
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            run_id=data.get("run_id", ""),
            step_index=int(data.get("step_index", 0)),
            action=ApprovalAction.from_dict(data.get("action") or {}),
            risk_level=RiskLevel(data.get("risk_level", "low")),
            risk_factors=list(data.get("risk_factors") or []),
            requested_by=data.get("requested_by", ""),
            requested_at=data.get("requested_at", time.time()),
            expires_at=data.get("expires_at", 0.0),
            status=ApprovalStatus(data.get("status", "pending")),
            resolved_by=data.get("resolved_by"),
            resolved_at=data.get("resolved_at"),
            resolution=ApprovalResolution.from_dict(data["resolution"]) if data.get("resolution") else None,
        )


@dataclass
class ApprovalSignal:
    """Wake-up message published when an approval leaves PENDING."""
    approval_id: str
    run_id: str
    status: str  # approved, declined, expired
    resolution: dict[str, Any] | None = None
    timestamp: float = 0.0

    def __post_init__(self):
        if self.timestamp == 0.0:
            self.timestamp = time.time()

    def to_json(self) -> str:
        return orjson.dumps({
            "approval_id": self.approval_id,
            "run_id": self.run_id,
            "status": self.status,
            "resolution": self.resolution,
            "timestamp": self.timestamp,
        }).decode("utf-8")

    @classmethod
    def from_json(cls, data: str | bytes) -> ApprovalSignal:
        parsed = orjson.loads(data)
        return cls(
            approval_id=parsed["approval_id"],
            run_id=parsed["run_id"],
            status=parsed["status"],
            resolution=parsed.get("resolution"),
            timestamp=parsed.get("timestamp", time.time()),
        )


__all__ = [
    "RiskLevel",
    "ApprovalCondition",
    "ApprovalStatus",
    "ApprovalTrigger",
    "ToolDescriptor",
    "ApprovalContext",
    "ApprovalCheck",
    "ApprovalDecision",
    "ApprovalAction",
    "ApprovalResolution",
    "ApprovalRequest",
    "ApprovalSignal",
]
