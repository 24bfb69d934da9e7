"""
Step store implementations.

This module provides the StepStore interface and an in-memory
implementation for persisting step records.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any

from ..errors import StepIndexConflictError
from .types import StepRecord, StepStatus


class StepStore(ABC):
    """Abstract interface for step persistence.

    Implementations must make ``insert`` and ``finish`` atomic with
    respect to concurrent callers.
    """

    @abstractmethod
    async def insert(self, step: StepRecord) -> tuple[StepRecord, bool]:
        """Insert a step unless its idempotency key is already taken.

        Returns:
            Tuple of (record, created). On a key collision the stored
            record is returned with created=False.

        Raises:
            StepIndexConflictError: A different, non-failed step already
                occupies (run_id, index)
        """
        ...

    @abstractmethod
    async def get(self, step_id: str) -> StepRecord | None:
        """Get a step by ID."""
        ...

    @abstractmethod
    async def get_by_idempotency_key(self, idempotency_key: str) -> StepRecord | None:
        ...

    @abstractmethod
    async def list_by_run(self, run_id: str) -> list[StepRecord]:
        """All steps of a run ordered by index ascending."""
        ...

    @abstractmethod
    async def finish(self, step_id: str, status: StepStatus, **fields: Any) -> StepRecord | None:
        """Move a RUNNING step to ``status`` and apply ``fields``.

        Returns:
            The updated record, or None when the step does not exist or
            is no longer running.
        """
        ...


class InMemoryStepStore(StepStore):
    """In-memory step store implementation.

    Suitable for testing and single-process deployments.
    Thread-safe via asyncio.Lock.
    """

    def __init__(self):
        self._steps: dict[str, StepRecord] = {}
        self._idempotency_index: dict[str, str] = {}  # key -> step id
        self._lock = asyncio.Lock()

    async def insert(self, step: StepRecord) -> tuple[StepRecord, bool]:
        async with self._lock:
            existing_id = self._idempotency_index.get(step.idempotency_key)
            if existing_id:
                return self._steps[existing_id], False

            for other in self._steps.values():
                if (
                    other.run_id == step.run_id
                    and other.index == step.index
                    and other.status != StepStatus.FAILED
                ):
                    raise StepIndexConflictError(step.run_id, step.index)

            self._steps[step.id] = step
            self._idempotency_index[step.idempotency_key] = step.id
            return step, True

    async def get(self, step_id: str) -> StepRecord | None:
        async with self._lock:
            return self._steps.get(step_id)

    async def get_by_idempotency_key(self, idempotency_key: str) -> StepRecord | None:
        async with self._lock:
            step_id = self._idempotency_index.get(idempotency_key)
            return self._steps.get(step_id) if step_id else None

    async def list_by_run(self, run_id: str) -> list[StepRecord]:
        async with self._lock:
            steps = [s for s in self._steps.values() if s.run_id == run_id]
        steps.sort(key=lambda s: (s.index, s.started_at))
        return steps

    async def finish(self, step_id: str, status: StepStatus, **fields: Any) -> StepRecord | None:
        async with self._lock:
            step = self._steps.get(step_id)
            if step is None or step.status != StepStatus.RUNNING:
                return None
            step = replace(step, status=status, **fields)
            self._steps[step_id] = step
            return step


__all__ = [
    "StepStore",
    "InMemoryStepStore",
]
