"""
Execution ledger wiring.

ExecutionLedger bundles the run, step and approval managers over one set of
stores and one event bus so callers hold a single explicit object instead of
process-wide singletons.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from .approvals import ApprovalManager, ApprovalStore, InMemoryApprovalStore
from .config import Settings, get_settings
from .events import EventBus, InMemoryEventBus
from .logging import StructuredLogger, get_logger
from .runs import InMemoryRunStore, RunLedger, RunStore
from .steps import InMemoryStepStore, StepLedger, StepStore
from .storage import (
    PostgresApprovalStore,
    PostgresRunStore,
    PostgresStepStore,
    RedisApprovalSignalChannel,
)


class ExecutionLedger:
    """Durable record of agent executions.

    Example:
        ```python
        ledger = ExecutionLedger.create()

        run = await ledger.runs.create(
            idempotency_key="req-1",
            agent_id="researcher",
            input={"query": "..."},
            budget=ExecutionBudget(max_cost_usd=2.0),
            trace_id=generate_trace_id(),
            current_model="claude-sonnet-4-5",
        )
        step, created = await ledger.steps.claim(run.id, 0, StepType.LLM_CALL, input=messages)

        # From a scheduler
        await ledger.sweep()
        ```
    """

    def __init__(
        self,
        runs: RunLedger,
        steps: StepLedger,
        approvals: ApprovalManager,
        event_bus: EventBus,
        *,
        settings: Settings | None = None,
        signals: RedisApprovalSignalChannel | None = None,
        logger: StructuredLogger | None = None,
    ):
        self.runs = runs
        self.steps = steps
        self.approvals = approvals
        self.event_bus = event_bus
        self.settings = settings or get_settings()
        self._signals = signals
        self._logger = logger or get_logger("run_ledger")

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        pool: Any = None,  # asyncpg.Pool
        redis: Any = None,  # redis.asyncio.Redis
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> ExecutionLedger:
        """Create a ledger with in-memory stores, or Postgres stores when a pool is given.

        A redis client enables cross-process approval wake-ups.
        """
        settings = settings or get_settings()
        event_bus = event_bus or InMemoryEventBus()
        logger = get_logger("run_ledger")

        run_store: RunStore
        step_store: StepStore
        approval_store: ApprovalStore
        if pool is not None:
            db = settings.database
            run_store = PostgresRunStore(pool, table_name=db.runs_table)
            step_store = PostgresStepStore(pool, table_name=db.steps_table)
            approval_store = PostgresApprovalStore(pool, table_name=db.approvals_table)
        else:
            run_store = InMemoryRunStore()
            step_store = InMemoryStepStore()
            approval_store = InMemoryApprovalStore()

        signals = None
        if redis is not None:
            signals = RedisApprovalSignalChannel(
                redis,
                channel_prefix=settings.redis.channel_prefix,
                message_ttl_seconds=max(int(settings.approvals.ttl_seconds), 1),
            )

        runs = RunLedger(run_store, config=settings.runs, event_bus=event_bus, clock=clock)
        steps = StepLedger(step_store, config=settings.steps, event_bus=event_bus, clock=clock)
        approvals = ApprovalManager(
            approval_store,
            runs,
            config=settings.approvals,
            event_bus=event_bus,
            signals=signals,
            clock=clock,
        )

        logger.info(
            "ledger_created",
            backend="postgres" if pool is not None else "memory",
            signals="redis" if signals is not None else "local",
            environment=settings.approvals.environment,
        )
        return cls(
            runs=runs,
            steps=steps,
            approvals=approvals,
            event_bus=event_bus,
            settings=settings,
            signals=signals,
            logger=logger,
        )

    async def sweep(self) -> dict[str, Any]:
        """Expire stale approvals; fail their runs when reconciliation is enabled.

        Meant to be called periodically by an external scheduler.
        """
        expired = await self.approvals.expire_old()
        failed_runs: list[str] = []
        if self.settings.approvals.reconcile_expired_runs:
            failed_runs = await self.approvals.reconcile_expired_runs()

        self._logger.debug("ledger_sweep", expired=expired, failed_runs=len(failed_runs))
        return {"expired": expired, "failed_runs": failed_runs}

    async def close(self) -> None:
        """Stop signaling and close the event bus."""
        if self._signals is not None:
            await self._signals.stop()
        await self.event_bus.close()


__all__ = [
    "ExecutionLedger",
]
