"""
Error taxonomy for run-ledger.

This module provides a small exception hierarchy with:
- Error codes for programmatic handling
- Retryable vs non-retryable classification
- Structured context for debugging

All ledger errors are raised synchronously from the call that detected
them; the ledger never retries internally.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standardized error codes for the ledger."""

    # Lookup errors
    NOT_FOUND = "NOT_FOUND"

    # Approval errors
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    APPROVAL_EXPIRED = "APPROVAL_EXPIRED"
    APPROVAL_DECLINED = "APPROVAL_DECLINED"

    # State errors
    INVALID_TRANSITION = "INVALID_TRANSITION"
    DUPLICATE_RECORD = "DUPLICATE_RECORD"
    STEP_INDEX_CONFLICT = "STEP_INDEX_CONFLICT"
    USAGE_REGRESSION = "USAGE_REGRESSION"

    # Policy errors (raised by the execution engine)
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"

    # Configuration errors
    CONFIG_ERROR = "CONFIG_ERROR"

    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class ErrorContext:
    """Structured context for error debugging."""

    run_id: str | None = None
    step_index: int | None = None
    approval_id: str | None = None
    trace_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d = {
            "run_id": self.run_id,
            "step_index": self.step_index,
            "approval_id": self.approval_id,
            "trace_id": self.trace_id,
        }
        d = {k: v for k, v in d.items() if v is not None}
        d.update(self.extra)
        return d


class LedgerError(Exception):
    """
    Base exception for all ledger errors.

    Attributes:
        code: Standardized error code for programmatic handling
        message: Human-readable error message
        retryable: Whether the operation can be retried
        context: Structured debugging context
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.context = context or ErrorContext()

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context.to_dict(),
        }


# =============================================================================
# Lookup Errors
# =============================================================================


class NotFoundError(LedgerError):
    """A run, step, or approval request does not exist."""

    code = ErrorCode.NOT_FOUND


class RunNotFoundError(NotFoundError):
    def __init__(self, run_id: str):
        super().__init__(f"Run not found: {run_id}", context=ErrorContext(run_id=run_id))


class StepNotFoundError(NotFoundError):
    def __init__(self, step_id: str):
        super().__init__(f"Step not found: {step_id}", context=ErrorContext(extra={"step_id": step_id}))


class ApprovalNotFoundError(NotFoundError):
    def __init__(self, approval_id: str):
        super().__init__(
            f"Approval request not found: {approval_id}",
            context=ErrorContext(approval_id=approval_id),
        )


# =============================================================================
# Approval Errors
# =============================================================================


class ApprovalAlreadyResolvedError(LedgerError):
    """Caller attempted to resolve a non-pending approval."""

    code = ErrorCode.ALREADY_RESOLVED

    def __init__(self, approval_id: str, status: str):
        super().__init__(
            f"Approval already resolved: {status}",
            context=ErrorContext(approval_id=approval_id, extra={"status": status}),
        )
        self.status = status


class ApprovalExpiredError(LedgerError):
    """Resolution was attempted after the approval's expiry."""

    code = ErrorCode.APPROVAL_EXPIRED

    def __init__(self, approval_id: str):
        super().__init__(
            "Approval request has expired",
            context=ErrorContext(approval_id=approval_id),
        )


# =============================================================================
# State Errors
# =============================================================================


class InvalidTransitionError(LedgerError):
    """A status change is not allowed by the state machine."""

    code = ErrorCode.INVALID_TRANSITION

    def __init__(self, current: str, target: str, *, context: ErrorContext | None = None):
        super().__init__(f"Invalid transition: {current} -> {target}", context=context)
        self.current = current
        self.target = target


class DuplicateRecordError(LedgerError):
    """A store rejected an insert because a unique key already exists."""

    code = ErrorCode.DUPLICATE_RECORD

    def __init__(self, message: str, *, key: str | None = None):
        super().__init__(message, context=ErrorContext(extra={"key": key} if key else {}))
        self.key = key


class StepIndexConflictError(DuplicateRecordError):
    """A different input was submitted for an index that already holds a live step."""

    code = ErrorCode.STEP_INDEX_CONFLICT

    def __init__(self, run_id: str, index: int):
        super().__init__(f"Step {index} of run {run_id} already exists with a different input")
        self.context = ErrorContext(run_id=run_id, step_index=index)


class UsageRegressionError(LedgerError):
    """A consumed snapshot reports less work than the one already stored."""

    code = ErrorCode.USAGE_REGRESSION

    def __init__(self, run_id: str, fields: list[str]):
        super().__init__(
            f"Usage snapshot for run {run_id} regresses: {', '.join(fields)}",
            context=ErrorContext(run_id=run_id, extra={"fields": fields}),
        )
        self.fields = fields


# =============================================================================
# Policy / Config Errors
# =============================================================================


class BudgetExceededError(LedgerError):
    """A hard budget ceiling was breached."""

    code = ErrorCode.BUDGET_EXCEEDED

    def __init__(self, reason: str, *, run_id: str | None = None):
        super().__init__(f"Budget exceeded: {reason}", context=ErrorContext(run_id=run_id))
        self.reason = reason


class ConfigError(LedgerError):
    """Invalid configuration (settings or trigger definitions)."""

    code = ErrorCode.CONFIG_ERROR


__all__ = [
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
]
