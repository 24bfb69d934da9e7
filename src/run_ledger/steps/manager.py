"""
Step ledger.

This module provides the StepLedger that records steps with step-level
idempotency: a step is keyed on ``(run_id, index, hash(input))`` so a worker
that retries an operation with the same input finds the earlier attempt
instead of executing it twice.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from ..config import StepConfig
from ..errors import InvalidTransitionError, StepNotFoundError, ErrorContext
from ..events import EventBus, LedgerEvent, LedgerEventType
from ..hashing import hash_data
from ..logging import StructuredLogger, get_logger
from .store import StepStore
from .types import StepRecord, StepStatus, StepType, generate_idempotency_key


class StepLedger:
    """Records the steps of a run.

    The StepLedger is responsible for:
    - Atomic, idempotent step creation
    - Idempotency lookups before side effects
    - Terminal transitions (complete, fail, skip) from RUNNING only
    """

    def __init__(
        self,
        store: StepStore,
        *,
        config: StepConfig | None = None,
        event_bus: EventBus | None = None,
        logger: StructuredLogger | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._config = config or StepConfig()
        self._event_bus = event_bus
        self._logger = logger or get_logger("run_ledger.steps")
        self._clock = clock

    def hash_data(self, data: Any) -> str:
        return hash_data(data, self._config.hash_length)

    @staticmethod
    def generate_idempotency_key(run_id: str, index: int, input_hash: str) -> str:
        return generate_idempotency_key(run_id, index, input_hash)

    async def claim(
        self,
        run_id: str,
        index: int,
        type: StepType | str,
        *,
        model: str | None = None,
        tool_name: str | None = None,
        input: Any = None,
        store_full_input: bool | None = None,
    ) -> tuple[StepRecord, bool]:
        """Create a step, or return the one already recorded for this input.

        Two racing callers with the same input get the same record; only
        the caller that sees ``created=True`` may perform the operation.

        Returns:
            Tuple of (step, created)

        Raises:
            StepIndexConflictError: A different input is already live at ``index``
        """
        if store_full_input is None:
            store_full_input = self._config.store_full_input

        input_hash = self.hash_data(input)
        step = StepRecord(
            run_id=run_id,
            index=index,
            idempotency_key=self.generate_idempotency_key(run_id, index, input_hash),
            type=StepType(type),
            model=model,
            tool_name=tool_name,
            input_hash=input_hash,
            input=input if store_full_input else None,
            status=StepStatus.RUNNING,
            started_at=self._clock(),
        )

        step, created = await self._store.insert(step)
        if created:
            self._logger.info(
                "step_created",
                run_id=run_id,
                step_index=index,
                step_id=step.id,
                step_type=step.type.value,
            )
            await self._emit(step, LedgerEventType.STEP_CREATED)
        else:
            self._logger.info(
                "step_idempotency_hit",
                run_id=run_id,
                step_index=index,
                step_id=step.id,
                status=step.status.value,
            )
        return step, created

    async def create(
        self,
        run_id: str,
        index: int,
        type: StepType | str,
        *,
        model: str | None = None,
        tool_name: str | None = None,
        input: Any = None,
        store_full_input: bool | None = None,
    ) -> StepRecord:
        """Create a step (see ``claim``); returns the existing record on a replay."""
        step, _ = await self.claim(
            run_id,
            index,
            type,
            model=model,
            tool_name=tool_name,
            input=input,
            store_full_input=store_full_input,
        )
        return step

    async def check_idempotency(self, run_id: str, index: int, input: Any) -> StepRecord | None:
        """Return the step already recorded for this exact input, if any.

        Must be called before any side-effectful operation; a hit means the
        recorded output is to be reused.
        """
        key = self.generate_idempotency_key(run_id, index, self.hash_data(input))
        return await self._store.get_by_idempotency_key(key)

    async def complete(
        self,
        step_id: str,
        output: Any,
        cost_usd: float,
        duration_ms: float,
        input_tokens: int,
        output_tokens: int,
        thinking_tokens: int = 0,
        side_effect_committed: bool = False,
        store_full_output: bool | None = None,
    ) -> StepRecord:
        if store_full_output is None:
            store_full_output = self._config.store_full_output

        step = await self._finish(
            step_id,
            StepStatus.COMPLETED,
            output_hash=self.hash_data(output),
            output=output if store_full_output else None,
            cost_usd=cost_usd,
            duration_ms=duration_ms,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            thinking_tokens=thinking_tokens,
            side_effect_committed=side_effect_committed,
            completed_at=self._clock(),
        )
        await self._emit(step, LedgerEventType.STEP_COMPLETED, {"cost_usd": cost_usd})
        return step

    async def fail(self, step_id: str, duration_ms: float) -> StepRecord:
        step = await self._finish(
            step_id,
            StepStatus.FAILED,
            duration_ms=duration_ms,
            completed_at=self._clock(),
        )
        self._logger.warning("step_failed", run_id=step.run_id, step_index=step.index, step_id=step.id)
        await self._emit(step, LedgerEventType.STEP_FAILED)
        return step

    async def skip(self, step_id: str) -> StepRecord:
        step = await self._finish(step_id, StepStatus.SKIPPED, completed_at=self._clock())
        await self._emit(step, LedgerEventType.STEP_SKIPPED)
        return step

    async def find_by_id(self, step_id: str) -> StepRecord | None:
        return await self._store.get(step_id)

    async def find_by_idempotency_key(self, key: str) -> StepRecord | None:
        return await self._store.get_by_idempotency_key(key)

    async def find_by_run_id(self, run_id: str) -> list[StepRecord]:
        return await self._store.list_by_run(run_id)

    async def _finish(self, step_id: str, status: StepStatus, **fields: Any) -> StepRecord:
        step = await self._store.finish(step_id, status, **fields)
        if step is not None:
            return step

        existing = await self._store.get(step_id)
        if existing is None:
            raise StepNotFoundError(step_id)
        raise InvalidTransitionError(
            existing.status.value,
            status.value,
            context=ErrorContext(run_id=existing.run_id, step_index=existing.index),
        )

    async def _emit(
        self,
        step: StepRecord,
        event_type: LedgerEventType,
        data: dict[str, Any] | None = None,
    ) -> None:
        if not self._event_bus:
            return

        await self._event_bus.publish(LedgerEvent(
            type=event_type,
            timestamp=self._clock(),
            run_id=step.run_id,
            step_index=step.index,
            data={
                "step_id": step.id,
                "status": step.status.value,
                "type": step.type.value,
                **(data or {}),
            },
        ))


__all__ = [
    "StepLedger",
]
