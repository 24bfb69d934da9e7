"""
Run Ledger - durable execution records for AI agents.

This package records what an agent run did, what it cost, and whether a
human let it continue:
- Run ledger: idempotent run creation, a validated status state machine,
  monotonic usage snapshots and terminal outcomes
- Step ledger: step-level idempotency keyed on (run_id, index, hash(input))
- Usage accounting: consumed usage and budget checks
- Approval gate: risk triggers, pause/resume, decline and expiry

Example:
    ```python
    from run_ledger import ExecutionLedger, ExecutionBudget, StepType, ToolDescriptor

    ledger = ExecutionLedger.create()
    run = await ledger.runs.create(
        idempotency_key="req-1",
        agent_id="researcher",
        input={"query": "..."},
        budget=ExecutionBudget(max_cost_usd=2.0),
        trace_id="trace-1",
        current_model="claude-sonnet-4-5",
    )

    tool = ToolDescriptor(name="delete_file", scopes=["delete:files"], side_effectful=True)
    context = ledger.approvals.build_context(run, step_index=3, tool=tool, input={"path": "/tmp/x"})
    check = ledger.approvals.check_approval_required(context)
    if check.required:
        request = await ledger.approvals.request_approval(context, check.triggers, check.risk_level)
    ```
"""

from .errors import (
    ErrorCode,
    ErrorContext,
    LedgerError,
    NotFoundError,
    RunNotFoundError,
    StepNotFoundError,
    ApprovalNotFoundError,
    ApprovalAlreadyResolvedError,
    ApprovalExpiredError,
    InvalidTransitionError,
    DuplicateRecordError,
    StepIndexConflictError,
    UsageRegressionError,
    BudgetExceededError,
    ConfigError,
)
from .config import (
    Settings,
    DatabaseConfig,
    RedisConfig,
    RunConfig,
    StepConfig,
    ApprovalConfig,
    LoggingConfig,
    get_settings,
    configure,
    load_env,
)
from .hashing import hash_data, stable_json_dumps, compute_hash
from .logging import StructuredLogger, get_logger, generate_trace_id
from .events import (
    LedgerEventType,
    LedgerEvent,
    EventBus,
    InMemoryEventBus,
    EventSubscription,
)
from .usage import (
    Usage,
    ExecutionBudget,
    BudgetDecision,
    aggregate_usage,
    require_within_budget,
)
from .runs import (
    DEFAULT_MODEL,
    RunStatus,
    RunError,
    RunRecord,
    RunFilter,
    RunStore,
    InMemoryRunStore,
    RunLedger,
)
from .steps import (
    StepType,
    StepStatus,
    StepRecord,
    StepStore,
    InMemoryStepStore,
    StepLedger,
)
from .approvals import (
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
    DEFAULT_TRIGGERS,
    load_triggers,
    ApprovalStore,
    InMemoryApprovalStore,
    ApprovalManager,
)
from .storage import (
    create_pool,
    PostgresRunStore,
    PostgresStepStore,
    PostgresApprovalStore,
    RedisApprovalSignalChannel,
)
from .ledger import ExecutionLedger

__version__ = "0.1.0"

__all__ = [
    # Errors
    "ErrorCode",
    "ErrorContext",
    "LedgerError",
    "NotFoundError",
    "RunNotFoundError",
    "StepNotFoundError",
    "ApprovalNotFoundError",
    "ApprovalAlreadyResolvedError",
    "ApprovalExpiredError",
    "InvalidTransitionError",
    "DuplicateRecordError",
    "StepIndexConflictError",
    "UsageRegressionError",
    "BudgetExceededError",
    "ConfigError",
    # Config
    "Settings",
    "DatabaseConfig",
    "RedisConfig",
    "RunConfig",
    "StepConfig",
    "ApprovalConfig",
    "LoggingConfig",
    "get_settings",
    "configure",
    "load_env",
    # Hashing / logging
    "hash_data",
    "stable_json_dumps",
    "compute_hash",
    "StructuredLogger",
    "get_logger",
    "generate_trace_id",
    # Events
    "LedgerEventType",
    "LedgerEvent",
    "EventBus",
    "InMemoryEventBus",
    "EventSubscription",
    # Usage
    "Usage",
    "ExecutionBudget",
    "BudgetDecision",
    "aggregate_usage",
    "require_within_budget",
    # Runs
    "DEFAULT_MODEL",
    "RunStatus",
    "RunError",
    "RunRecord",
    "RunFilter",
    "RunStore",
    "InMemoryRunStore",
    "RunLedger",
    # Steps
    "StepType",
    "StepStatus",
    "StepRecord",
    "StepStore",
    "InMemoryStepStore",
    "StepLedger",
    # Approvals
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
    "DEFAULT_TRIGGERS",
    "load_triggers",
    "ApprovalStore",
    "InMemoryApprovalStore",
    "ApprovalManager",
    # Storage
    "create_pool",
    "PostgresRunStore",
    "PostgresStepStore",
    "PostgresApprovalStore",
    "RedisApprovalSignalChannel",
    # Wiring
    "ExecutionLedger",
]
