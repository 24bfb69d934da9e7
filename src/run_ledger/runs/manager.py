"""
Run ledger for lifecycle operations.

This module provides the RunLedger that owns the run state machine:
creation with idempotency, validated status transitions, monotonic usage
snapshots and terminal outcomes.
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Any, Callable

from ..config import RunConfig
from ..errors import (
    DuplicateRecordError,
    ErrorCode,
    ErrorContext,
    InvalidTransitionError,
    LedgerError,
    RunNotFoundError,
    UsageRegressionError,
)
from ..events import EventBus, LedgerEvent, LedgerEventType
from ..logging import StructuredLogger, get_logger
from ..usage import ExecutionBudget, Usage
from .store import RunFilter, RunStore
from .types import RunError, RunRecord, RunStatus

# Attempts at a compare-and-set write before giving up on a hot run
MAX_WRITE_ATTEMPTS = 5


class RunLedger:
    """Manages run lifecycle operations.

    The RunLedger is responsible for:
    - Creating runs with idempotency-key deduplication
    - State transitions with validation
    - Monotonic consumed-usage updates
    - Event emission for observability
    """

    def __init__(
        self,
        store: RunStore,
        *,
        config: RunConfig | None = None,
        event_bus: EventBus | None = None,
        logger: StructuredLogger | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._config = config or RunConfig()
        self._event_bus = event_bus
        self._logger = logger or get_logger("run_ledger.runs")
        self._clock = clock

    async def create(
        self,
        idempotency_key: str,
        agent_id: str,
        input: Any,
        budget: ExecutionBudget,
        trace_id: str,
        current_model: str,
        effort_level: str = "medium",
        tenant_id: str | None = None,
        user_id: str | None = None,
    ) -> RunRecord:
        """Insert a new running run.

        If another caller already inserted a run with the same idempotency
        key, that run is returned instead.
        """
        run, _ = await self._insert(
            idempotency_key,
            agent_id,
            input,
            budget,
            trace_id,
            current_model,
            effort_level,
            tenant_id,
            user_id,
        )
        return run

    async def get_or_create(
        self,
        idempotency_key: str,
        agent_id: str,
        input: Any,
        budget: ExecutionBudget,
        trace_id: str,
        current_model: str,
        effort_level: str = "medium",
        tenant_id: str | None = None,
        user_id: str | None = None,
    ) -> tuple[RunRecord, bool]:
        """Get an existing run by idempotency key or create a new one.

        Returns:
            Tuple of (run, created) where created is True if this call inserted it.
        """
        existing = await self._store.get_by_idempotency_key(idempotency_key)
        if existing:
            return existing, False

        return await self._insert(
            idempotency_key,
            agent_id,
            input,
            budget,
            trace_id,
            current_model,
            effort_level,
            tenant_id,
            user_id,
        )

    async def _insert(
        self,
        idempotency_key: str,
        agent_id: str,
        input: Any,
        budget: ExecutionBudget,
        trace_id: str,
        current_model: str,
        effort_level: str,
        tenant_id: str | None,
        user_id: str | None,
    ) -> tuple[RunRecord, bool]:
        now = self._clock()
        run = RunRecord(
            idempotency_key=idempotency_key,
            agent_id=agent_id,
            input=input,
            status=RunStatus.RUNNING,
            budget=budget,
            consumed=Usage.zero(current_model),
            current_model=current_model,
            effort_level=effort_level,
            trace_id=trace_id,
            tenant_id=tenant_id,
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )

        try:
            run = await self._store.insert(run)
        except DuplicateRecordError:
            # Lost the race: the key is taken, hand back the winner's run
            existing = await self._store.get_by_idempotency_key(idempotency_key)
            if existing is None:
                raise
            self._logger.info(
                "run_idempotency_hit",
                run_id=existing.id,
                idempotency_key=idempotency_key,
            )
            return existing, False

        with self._logger.trace_context(trace_id=trace_id, run_id=run.id, agent_id=agent_id):
            self._logger.info("run_created", idempotency_key=idempotency_key, model=current_model)
        await self._emit(run, LedgerEventType.RUN_CREATED)
        return run, True

    async def update_status(self, run_id: str, status: RunStatus | str) -> RunRecord:
        """Move a run to ``status``.

        A same-status call on a non-terminal run only refreshes ``updated_at``;
        terminal runs reject every status change, including their own status.

        Raises:
            RunNotFoundError: Unknown run
            InvalidTransitionError: Transition not allowed from the current status
        """
        status = RunStatus(status)

        def apply(run: RunRecord) -> RunRecord:
            if run.status == status and not run.status.is_terminal:
                return run
            self._require_transition(run, status)
            return replace(run, status=status)

        previous, run = await self._write(run_id, apply)
        if previous.status != run.status:
            await self._status_changed(previous, run)
        return run

    async def update_consumed(self, run_id: str, usage: Usage) -> RunRecord:
        """Store a new consumed snapshot.

        Raises:
            UsageRegressionError: Some counter is lower than in the stored snapshot
        """
        def apply(run: RunRecord) -> RunRecord:
            self._require_monotonic(run, usage)
            return replace(run, consumed=usage)

        _, run = await self._write(run_id, apply)
        await self._emit(run, LedgerEventType.RUN_USAGE_UPDATED, {"consumed": usage.to_dict()})
        return run

    async def update_model(self, run_id: str, model: str) -> RunRecord:
        _, run = await self._write(run_id, lambda r: replace(r, current_model=model))
        return run

    async def record_downgrade(self, run_id: str, model: str) -> RunRecord:
        """Switch to a cheaper model and count the downgrade."""
        def apply(run: RunRecord) -> RunRecord:
            consumed = replace(
                run.consumed,
                model_used=model,
                downgrades=run.consumed.downgrades + 1,
            )
            return replace(run, current_model=model, consumed=consumed)

        previous, run = await self._write(run_id, apply)
        self._logger.info(
            "run_model_downgraded",
            run_id=run_id,
            from_model=previous.current_model,
            to_model=model,
            downgrades=run.consumed.downgrades,
        )
        return run

    async def complete(self, run_id: str, output: Any) -> RunRecord:
        return await self._finish_with_output(run_id, RunStatus.COMPLETED, output)

    async def partial(self, run_id: str, output: Any) -> RunRecord:
        return await self._finish_with_output(run_id, RunStatus.PARTIAL, output)

    async def fail(self, run_id: str, error: RunError | dict[str, Any]) -> RunRecord:
        """Fail a run, storing the structured error."""
        if isinstance(error, dict):
            error = RunError.from_dict(error)

        def apply(run: RunRecord) -> RunRecord:
            self._require_transition(run, RunStatus.FAILED)
            return replace(run, status=RunStatus.FAILED, error=error)

        previous, run = await self._write(run_id, apply)
        await self._status_changed(previous, run, {"error": error.to_dict()})
        return run

    async def cancel(self, run_id: str, reason: str | None = None) -> RunRecord:
        """Record an externally requested cancellation.

        In-flight steps are not interrupted; the execution engine sees the
        terminal status before starting its next step.
        """
        def apply(run: RunRecord) -> RunRecord:
            self._require_transition(run, RunStatus.CANCELLED)
            return replace(run, status=RunStatus.CANCELLED)

        previous, run = await self._write(run_id, apply)
        await self._status_changed(previous, run, {"reason": reason})
        return run

    async def await_approval(self, run_id: str) -> RunRecord:
        """Pause a running run until its approval is resolved."""
        def apply(run: RunRecord) -> RunRecord:
            if run.status != RunStatus.RUNNING:
                raise InvalidTransitionError(
                    run.status.value,
                    RunStatus.AWAITING_APPROVAL.value,
                    context=ErrorContext(run_id=run.id),
                )
            return replace(run, status=RunStatus.AWAITING_APPROVAL)

        previous, run = await self._write(run_id, apply)
        await self._status_changed(previous, run)
        return run

    async def find_by_id(self, run_id: str) -> RunRecord | None:
        return await self._store.get(run_id)

    async def find_by_idempotency_key(self, key: str) -> RunRecord | None:
        return await self._store.get_by_idempotency_key(key)

    async def find_recent(
        self,
        agent_id: str,
        hours: float | None = None,
        limit: int | None = None,
    ) -> list[RunRecord]:
        """Runs of ``agent_id`` created within the last ``hours``, newest first."""
        hours = hours if hours is not None else self._config.recent_window_hours
        return await self._store.list(RunFilter(
            agent_id=agent_id,
            created_since=self._clock() - hours * 3600.0,
            limit=limit or self._config.default_limit,
        ))

    async def find_by_status(self, status: RunStatus | str, limit: int | None = None) -> list[RunRecord]:
        return await self._store.list(RunFilter(
            status=RunStatus(status),
            limit=limit or self._config.default_limit,
        ))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _finish_with_output(self, run_id: str, status: RunStatus, output: Any) -> RunRecord:
        final_usage = _usage_from_output(output)

        def apply(run: RunRecord) -> RunRecord:
            self._require_transition(run, status)
            updated = replace(run, status=status, output=output)
            if final_usage is not None:
                self._require_monotonic(run, final_usage)
                updated = replace(updated, consumed=final_usage)
            return updated

        previous, run = await self._write(run_id, apply)
        await self._status_changed(previous, run)
        return run

    async def _write(
        self,
        run_id: str,
        apply: Callable[[RunRecord], RunRecord],
    ) -> tuple[RunRecord, RunRecord]:
        """Read, apply, and compare-and-set a run.

        Returns:
            Tuple of (previous, stored)
        """
        for _ in range(MAX_WRITE_ATTEMPTS):
            current = await self._store.get(run_id)
            if current is None:
                raise RunNotFoundError(run_id)

            updated = apply(current)
            now = self._clock()
            completed_at = current.completed_at
            if completed_at is None and updated.status.is_terminal:
                completed_at = now
            updated = replace(
                updated,
                updated_at=now,
                completed_at=completed_at,
                version=current.version + 1,
            )

            stored = await self._store.update(updated, expected_version=current.version)
            if stored is not None:
                return current, stored

        error = LedgerError(
            f"Run {run_id} was modified concurrently too many times",
            code=ErrorCode.INTERNAL_ERROR,
            retryable=True,
            context=ErrorContext(run_id=run_id),
        )
        self._logger.log_error(error, "run_write_conflict", run_id=run_id, attempts=MAX_WRITE_ATTEMPTS)
        raise error

    @staticmethod
    def _require_transition(run: RunRecord, status: RunStatus) -> None:
        if not run.can_transition_to(status):
            raise InvalidTransitionError(
                run.status.value,
                status.value,
                context=ErrorContext(run_id=run.id),
            )

    @staticmethod
    def _require_monotonic(run: RunRecord, usage: Usage) -> None:
        regressed = usage.regressed_fields(run.consumed)
        if regressed:
            raise UsageRegressionError(run.id, regressed)

    async def _status_changed(
        self,
        previous: RunRecord,
        run: RunRecord,
        data: dict[str, Any] | None = None,
    ) -> None:
        with self._logger.trace_context(trace_id=run.trace_id, run_id=run.id, agent_id=run.agent_id):
            self._logger.info(
                "run_status_changed",
                from_status=previous.status.value,
                to_status=run.status.value,
            )

        if run.status in (RunStatus.COMPLETED, RunStatus.PARTIAL):
            event_type = LedgerEventType.RUN_COMPLETED
        elif run.status == RunStatus.FAILED:
            event_type = LedgerEventType.RUN_FAILED
        elif run.status == RunStatus.CANCELLED:
            event_type = LedgerEventType.RUN_CANCELLED
        else:
            event_type = LedgerEventType.RUN_STATUS_CHANGED

        await self._emit(run, event_type, {"previous_status": previous.status.value, **(data or {})})

    async def _emit(
        self,
        run: RunRecord,
        event_type: LedgerEventType,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Emit a run lifecycle event."""
        if not self._event_bus:
            return

        await self._event_bus.publish(LedgerEvent(
            type=event_type,
            timestamp=self._clock(),
            run_id=run.id,
            trace_id=run.trace_id,
            tenant_id=run.tenant_id,
            agent_id=run.agent_id,
            data={"status": run.status.value, **(data or {})},
        ))


def _usage_from_output(output: Any) -> Usage | None:
    """Extract the final usage snapshot an agent output may carry."""
    usage = getattr(output, "usage", None)
    if usage is None and isinstance(output, dict):
        usage = output.get("usage")
    if isinstance(usage, Usage):
        return usage
    if isinstance(usage, dict):
        return Usage.from_dict(usage)
    return None


__all__ = [
    "RunLedger",
]
