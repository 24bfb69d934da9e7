"""
Run store implementations.

This module provides the RunStore interface and an in-memory
implementation for persisting run records.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

from ..errors import DuplicateRecordError
from .types import RunRecord, RunStatus


@dataclass
class RunFilter:
    """Filter criteria for listing runs (newest first)."""
    agent_id: str | None = None
    status: RunStatus | set[RunStatus] | None = None
    tenant_id: str | None = None
    created_since: float | None = None
    limit: int = 100

    def matches(self, run: RunRecord) -> bool:
        """Check if a run matches this filter."""
        if self.agent_id and run.agent_id != self.agent_id:
            return False
        if self.tenant_id and run.tenant_id != self.tenant_id:
            return False
        if self.created_since is not None and run.created_at < self.created_since:
            return False
        if self.status:
            if isinstance(self.status, set):
                if run.status not in self.status:
                    return False
            elif run.status != self.status:
                return False
        return True


class RunStore(ABC):
    """Abstract interface for run persistence."""

    @abstractmethod
    async def insert(self, run: RunRecord) -> RunRecord:
        """Insert a new run.

        Raises:
            DuplicateRecordError: If the idempotency key is already taken
        """
        ...

    @abstractmethod
    async def get(self, run_id: str) -> RunRecord | None:
        """Get a run by ID."""
        ...

    @abstractmethod
    async def get_by_idempotency_key(self, idempotency_key: str) -> RunRecord | None:
        ...

    @abstractmethod
    async def update(self, run: RunRecord, expected_version: int) -> RunRecord | None:
        """Replace a run if its stored version still equals ``expected_version``.

        Returns:
            The stored record, or None when the run is missing or was
            modified concurrently.
        """
        ...

    @abstractmethod
    async def list(self, filter: RunFilter | None = None) -> list[RunRecord]:
        """List runs matching the filter, newest first."""
        ...


class InMemoryRunStore(RunStore):
    """In-memory run store implementation.

    Suitable for testing and single-process deployments.
    Thread-safe via asyncio.Lock.
    """

    def __init__(self):
        self._runs: dict[str, RunRecord] = {}
        self._idempotency_index: dict[str, str] = {}  # key -> run id
        self._lock = asyncio.Lock()

    async def insert(self, run: RunRecord) -> RunRecord:
        async with self._lock:
            if run.idempotency_key in self._idempotency_index:
                raise DuplicateRecordError(
                    f"Run with idempotency key {run.idempotency_key} already exists",
                    key=run.idempotency_key,
                )
            if run.id in self._runs:
                raise DuplicateRecordError(f"Run {run.id} already exists", key=run.id)

            self._runs[run.id] = run
            self._idempotency_index[run.idempotency_key] = run.id
            return run

    async def get(self, run_id: str) -> RunRecord | None:
        async with self._lock:
            return self._runs.get(run_id)

    async def get_by_idempotency_key(self, idempotency_key: str) -> RunRecord | None:
        async with self._lock:
            run_id = self._idempotency_index.get(idempotency_key)
            return self._runs.get(run_id) if run_id else None

    async def update(self, run: RunRecord, expected_version: int) -> RunRecord | None:
        async with self._lock:
            current = self._runs.get(run.id)
            if current is None or current.version != expected_version:
                return None
            self._runs[run.id] = run
            return run

    async def list(self, filter: RunFilter | None = None) -> list[RunRecord]:
        filter = filter or RunFilter()
        async with self._lock:
            runs = [r for r in self._runs.values() if filter.matches(r)]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:filter.limit]


__all__ = [
    "RunFilter",
    "RunStore",
    "InMemoryRunStore",
]
