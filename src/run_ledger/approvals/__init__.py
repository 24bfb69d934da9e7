"""
Approval gate (human-in-the-loop).

- ApprovalTrigger / ApprovalCondition: codified risk rules
- ApprovalManager: check, request, resolve, expire
- ApprovalStore: persistence interface with an in-memory implementation
"""

from .types import (
    RiskLevel,
    ApprovalCondition,
    ApprovalStatus,
    ApprovalTrigger,
    ToolDescriptor,
    ApprovalContext,
    ApprovalCheck,
    ApprovalDecision,
    ApprovalAction,
    ApprovalResolution,
    ApprovalRequest,
    ApprovalSignal,
)
from .triggers import (
    EVALUATORS,
    DEFAULT_TRIGGERS,
    TRIGGERS_SCHEMA,
    evaluate_trigger,
    check_triggers,
    parse_triggers,
    load_triggers,
)
from .store import (
    ApprovalStore,
    InMemoryApprovalStore,
)
from .manager import ApprovalManager

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
    "EVALUATORS",
    "DEFAULT_TRIGGERS",
    "TRIGGERS_SCHEMA",
    "evaluate_trigger",
    "check_triggers",
    "parse_triggers",
    "load_triggers",
    "ApprovalStore",
    "InMemoryApprovalStore",
    "ApprovalManager",
]
