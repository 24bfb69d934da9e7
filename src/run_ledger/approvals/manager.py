"""
Approval manager for the human-in-the-loop gate.

This module provides the ApprovalManager that evaluates risk triggers,
pauses runs behind approval requests, and resumes or fails them when a
human decides.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, Callable, NoReturn

import orjson

from ..config import ApprovalConfig
from ..errors import (
    ApprovalAlreadyResolvedError,
    ApprovalExpiredError,
    ApprovalNotFoundError,
    ErrorCode,
    InvalidTransitionError,
)
from ..events import EventBus, LedgerEvent, LedgerEventType
from ..logging import StructuredLogger, get_logger
from ..runs import RunError, RunLedger, RunRecord, RunStatus
from .store import ApprovalStore
from .triggers import DEFAULT_TRIGGERS, check_triggers, load_triggers
from .types import (
    ApprovalAction,
    ApprovalCheck,
    ApprovalContext,
    ApprovalDecision,
    ApprovalRequest,
    ApprovalResolution,
    ApprovalSignal,
    ApprovalStatus,
    ApprovalTrigger,
    RiskLevel,
    ToolDescriptor,
)

if TYPE_CHECKING:
    from ..storage.redis import RedisApprovalSignalChannel


class ApprovalManager:
    """Manages approval requests and run pause/resume.

    The ApprovalManager handles:
    - Evaluating triggers against a pending step
    - Creating requests and moving the run to AWAITING_APPROVAL
    - Atomic resolution (approve resumes the run, decline fails it)
    - Expiring stale requests for an external scheduler
    - Wake-ups for paused workers (in-process and via Redis)
    """

    def __init__(
        self,
        store: ApprovalStore,
        runs: RunLedger,
        *,
        triggers: list[ApprovalTrigger] | None = None,
        config: ApprovalConfig | None = None,
        event_bus: EventBus | None = None,
        signals: RedisApprovalSignalChannel | None = None,
        logger: StructuredLogger | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._runs = runs
        self._config = config or ApprovalConfig()
        self._event_bus = event_bus
        self._signals = signals
        self._logger = logger or get_logger("run_ledger.approvals")
        self._clock = clock
        self._waiters: dict[str, list[asyncio.Event]] = {}  # approval_id -> one event per waiter

        if triggers is not None:
            self._triggers = list(triggers)
        elif self._config.triggers_file:
            self._triggers = load_triggers(self._config.triggers_file)
        else:
            self._triggers = list(DEFAULT_TRIGGERS)

    @property
    def triggers(self) -> list[ApprovalTrigger]:
        return list(self._triggers)

    def build_context(
        self,
        run: RunRecord,
        step_index: int,
        tool: ToolDescriptor,
        input: Any = None,
        estimated_cost: float = 0.0,
    ) -> ApprovalContext:
        """Build an ApprovalContext from a run's budget and consumed usage."""
        remaining = run.budget.remaining_cost(run.consumed)
        total = run.budget.max_cost_usd
        return ApprovalContext(
            run_id=run.id,
            step_index=step_index,
            tool=tool,
            input=input,
            estimated_cost=estimated_cost,
            budget_remaining=remaining if remaining is not None else float("inf"),
            budget_total=total if total is not None else float("inf"),
            environment=self._config.environment,
        )

    def check_approval_required(self, context: ApprovalContext) -> ApprovalCheck:
        """Evaluate every configured trigger; any match requires approval."""
        return check_triggers(self._triggers, context)

    async def request_approval(
        self,
        context: ApprovalContext,
        triggers: list[ApprovalTrigger],
        risk_level: RiskLevel | str,
    ) -> ApprovalRequest:
        """Pause the run and persist a pending approval request.

        Execution must not continue past the gated step until the request
        is resolved.

        Raises:
            RunNotFoundError: Unknown run
            InvalidTransitionError: The run is not RUNNING
        """
        now = self._clock()
        risk_level = RiskLevel(risk_level)

        request = ApprovalRequest(
            run_id=context.run_id,
            step_index=context.step_index,
            action=ApprovalAction(
                tool_name=context.tool.name,
                description=self.describe_action(context.tool, context.input),
                input=context.input,
            ),
            risk_level=risk_level,
            risk_factors=[t.description for t in triggers],
            requested_by=context.tool.name,
            requested_at=now,
            expires_at=now + self._config.ttl_seconds,
            status=ApprovalStatus.PENDING,
        )

        run = await self._runs.await_approval(context.run_id)
        try:
            request = await self._store.insert(request)
        except Exception:
            # A paused run needs a pending request to be resumed
            await self._runs.update_status(run.id, RunStatus.RUNNING)
            raise

        with self._logger.trace_context(trace_id=run.trace_id, run_id=run.id, agent_id=run.agent_id):
            self._logger.info(
                "approval_requested",
                approval_id=request.id,
                tool=context.tool.name,
                risk_level=risk_level.value,
                triggers=[t.id for t in triggers],
            )

        await self._emit(request, LedgerEventType.APPROVAL_REQUESTED, {
            "risk_level": risk_level.value,
            "risk_factors": request.risk_factors,
            "expires_at": request.expires_at,
        })
        return request

    async def resolve(self, approval_id: str, decision: ApprovalDecision) -> ApprovalRequest:
        """Approve or decline a pending request.

        Approval moves the run back to RUNNING; the execution engine resumes
        from the paused step, optionally with ``decision.modified_input``.
        Decline fails the run with APPROVAL_DECLINED. A run that already left
        AWAITING_APPROVAL is left as it is; the decision is still recorded.

        Raises:
            ApprovalNotFoundError: Unknown request
            ApprovalExpiredError: The request is past its expiry
            ApprovalAlreadyResolvedError: The request is no longer pending
        """
        now = self._clock()
        status = ApprovalStatus.APPROVED if decision.approved else ApprovalStatus.DECLINED
        resolution = ApprovalResolution(
            decision="approve" if decision.approved else "decline",
            reason=decision.reason,
            modified_input=decision.modified_input,
        )

        request = await self._store.resolve(
            approval_id,
            status,
            resolved_by=decision.approved_by,
            resolved_at=decision.approved_at if decision.approved_at is not None else now,
            resolution=resolution,
            now=now,
        )
        if request is None:
            await self._raise_unresolvable(approval_id, now)

        self._logger.info(
            "approval_resolved",
            approval_id=approval_id,
            run_id=request.run_id,
            decision=status.value,
            by=decision.approved_by,
        )

        try:
            if decision.approved:
                await self._runs.update_status(request.run_id, RunStatus.RUNNING)
            else:
                await self._runs.fail(request.run_id, RunError(
                    message=f"Approval declined: {decision.reason or 'No reason provided'}",
                    code=ErrorCode.APPROVAL_DECLINED.value,
                    retryable=False,
                    step=request.step_index,
                ))
        except InvalidTransitionError as e:
            # The run left AWAITING_APPROVAL while the request was pending
            self._logger.log_error(
                e,
                "approval_run_not_updated",
                approval_id=approval_id,
                run_id=request.run_id,
                decision=status.value,
            )

        event_type = LedgerEventType.APPROVAL_APPROVED if decision.approved else LedgerEventType.APPROVAL_DECLINED
        await self._settled(request, event_type)
        return request

    async def get_by_id(self, approval_id: str) -> ApprovalRequest | None:
        return await self._store.get(approval_id)

    async def get_pending_for_run(self, run_id: str) -> list[ApprovalRequest]:
        return await self._store.list_pending(run_id=run_id)

    async def get_all_pending(self, limit: int = 100) -> list[ApprovalRequest]:
        return await self._store.list_pending(limit=limit)

    async def expire_old(self) -> int:
        """Mark every pending request past its expiry as expired.

        Meant to be called by an external scheduler more often than the
        approval TTL. Calling it twice in a row returns 0 the second time.
        """
        expired = await self._store.expire_before(self._clock())
        for request in expired:
            await self._settled(request, LedgerEventType.APPROVAL_EXPIRED)

        if expired:
            self._logger.info("approvals_expired", count=len(expired))
        return len(expired)

    async def reconcile_expired_runs(self) -> list[str]:
        """Fail runs left in AWAITING_APPROVAL whose approval expired.

        A run is failed only when it has no pending request and at least
        one expired one. Returns the ids of the failed runs.
        """
        failed: list[str] = []
        for run in await self._runs.find_by_status(RunStatus.AWAITING_APPROVAL):
            requests = await self._store.list_by_run(run.id)
            if any(r.status == ApprovalStatus.PENDING for r in requests):
                continue
            expired = [r for r in requests if r.status == ApprovalStatus.EXPIRED]
            if not expired:
                continue

            latest = expired[0]
            try:
                await self._runs.fail(run.id, RunError(
                    message=f"Approval expired before a decision was made (step {latest.step_index})",
                    code=ErrorCode.APPROVAL_EXPIRED.value,
                    retryable=True,
                    step=latest.step_index,
                ))
            except InvalidTransitionError:
                # Resumed or failed by someone else since the listing
                self._logger.info("approval_reconcile_skipped", run_id=run.id)
                continue
            failed.append(run.id)

        if failed:
            self._logger.warning("runs_failed_on_expired_approval", count=len(failed), run_ids=failed)
        return failed

    async def wait_for_resolution(
        self,
        approval_id: str,
        timeout: float | None = None,
    ) -> ApprovalRequest:
        """Block until a request leaves PENDING or ``timeout`` elapses.

        Returns the request as currently stored; it is still PENDING when
        the wait timed out.
        """
        event = asyncio.Event()
        self._waiters.setdefault(approval_id, []).append(event)

        try:
            request = await self._store.get(approval_id)
            if request is None:
                raise ApprovalNotFoundError(approval_id)
            if request.status.is_terminal:
                return request

            try:
                if self._signals is not None:
                    await self._signals.wait(approval_id, timeout=timeout)
                else:
                    await asyncio.wait_for(event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
        finally:
            waiters = self._waiters.get(approval_id)
            if waiters is not None:
                if event in waiters:
                    waiters.remove(event)
                if not waiters:
                    del self._waiters[approval_id]

        return await self._store.get(approval_id) or request

    def describe_action(self, tool: ToolDescriptor, input: Any) -> str:
        """Human-readable summary: tool, description and a truncated input."""
        text = orjson.dumps(input, default=str, option=orjson.OPT_NON_STR_KEYS).decode("utf-8")
        limit = self._config.input_summary_chars
        summary = text[:limit] + ("..." if len(text) > limit else "")
        return f"{tool.name}: {tool.description}\nInput: {summary}"

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _raise_unresolvable(self, approval_id: str, now: float) -> NoReturn:
        """Explain why the guarded resolve matched nothing."""
        existing = await self._store.get(approval_id)
        if existing is None:
            raise ApprovalNotFoundError(approval_id)

        if existing.status == ApprovalStatus.PENDING:
            expired = await self._store.mark_expired(approval_id, now)
            if expired is not None:
                self._logger.info("approval_expired_on_resolve", approval_id=approval_id, run_id=expired.run_id)
                await self._settled(expired, LedgerEventType.APPROVAL_EXPIRED)
                raise ApprovalExpiredError(approval_id)
            # Settled concurrently; report what won
            existing = await self._store.get(approval_id) or existing

        if existing.status == ApprovalStatus.EXPIRED:
            raise ApprovalExpiredError(approval_id)
        raise ApprovalAlreadyResolvedError(approval_id, existing.status.value)

    async def _settled(self, request: ApprovalRequest, event_type: LedgerEventType) -> None:
        """Publish and wake waiters after a request leaves PENDING."""
        for event in self._waiters.pop(request.id, []):
            event.set()

        if self._signals is not None:
            await self._signals.signal(ApprovalSignal(
                approval_id=request.id,
                run_id=request.run_id,
                status=request.status.value,
                resolution=request.resolution.to_dict() if request.resolution else None,
            ))

        await self._emit(request, event_type)

    async def _emit(
        self,
        request: ApprovalRequest,
        event_type: LedgerEventType,
        data: dict[str, Any] | None = None,
    ) -> None:
        if not self._event_bus:
            return

        await self._event_bus.publish(LedgerEvent(
            type=event_type,
            timestamp=self._clock(),
            run_id=request.run_id,
            step_index=request.step_index,
            approval_id=request.id,
            data={
                "status": request.status.value,
                "tool_name": request.action.tool_name,
                **(data or {}),
            },
        ))


__all__ = [
    "ApprovalManager",
]
