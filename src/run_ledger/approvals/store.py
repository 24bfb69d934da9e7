"""
Approval store implementations.

This module provides the ApprovalStore interface and an in-memory
implementation. Every status change is a conditional update on
``status = 'pending'`` so two resolvers can never both win.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace

from ..errors import DuplicateRecordError
from .types import ApprovalRequest, ApprovalResolution, ApprovalStatus


class ApprovalStore(ABC):
    """Abstract interface for approval persistence."""

    @abstractmethod
    async def insert(self, request: ApprovalRequest) -> ApprovalRequest:
        ...

    @abstractmethod
    async def get(self, approval_id: str) -> ApprovalRequest | None:
        ...

    @abstractmethod
    async def resolve(
        self,
        approval_id: str,
        status: ApprovalStatus,
        *,
        resolved_by: str,
        resolved_at: float,
        resolution: ApprovalResolution,
        now: float,
    ) -> ApprovalRequest | None:
        """Resolve a request that is pending and not past its expiry at ``now``.

        Returns:
            The updated request, or None when the guard did not match.
        """
        ...

    @abstractmethod
    async def mark_expired(self, approval_id: str, now: float) -> ApprovalRequest | None:
        """Expire one request if it is pending and past its expiry."""
        ...

    @abstractmethod
    async def expire_before(self, now: float) -> list[ApprovalRequest]:
        """Expire every pending request past its expiry; returns those changed."""
        ...

    @abstractmethod
    async def list_pending(self, run_id: str | None = None, limit: int = 100) -> list[ApprovalRequest]:
        """Pending requests, newest first."""
        ...

    @abstractmethod
    async def list_by_run(self, run_id: str) -> list[ApprovalRequest]:
        """All requests of a run, newest first."""
        ...


class InMemoryApprovalStore(ApprovalStore):
    """In-memory approval store implementation.

    Suitable for testing and single-process deployments.
    Thread-safe via asyncio.Lock.
    """

    def __init__(self):
        self._requests: dict[str, ApprovalRequest] = {}
        self._lock = asyncio.Lock()

    async def insert(self, request: ApprovalRequest) -> ApprovalRequest:
        async with self._lock:
            if request.id in self._requests:
                raise DuplicateRecordError(f"Approval request {request.id} already exists", key=request.id)
            self._requests[request.id] = request
            return request

    async def get(self, approval_id: str) -> ApprovalRequest | None:
        async with self._lock:
            return self._requests.get(approval_id)

    async def resolve(
        self,
        approval_id: str,
        status: ApprovalStatus,
        *,
        resolved_by: str,
        resolved_at: float,
        resolution: ApprovalResolution,
        now: float,
    ) -> ApprovalRequest | None:
        async with self._lock:
            request = self._requests.get(approval_id)
            if request is None or request.status != ApprovalStatus.PENDING or request.expires_at < now:
                return None
            request = replace(
                request,
                status=status,
                resolved_by=resolved_by,
                resolved_at=resolved_at,
                resolution=resolution,
            )
            self._requests[approval_id] = request
            return request

    async def mark_expired(self, approval_id: str, now: float) -> ApprovalRequest | None:
        async with self._lock:
            request = self._requests.get(approval_id)
            if request is None or request.status != ApprovalStatus.PENDING or request.expires_at >= now:
                return None
            request = replace(request, status=ApprovalStatus.EXPIRED)
            self._requests[approval_id] = request
            return request

    async def expire_before(self, now: float) -> list[ApprovalRequest]:
        async with self._lock:
            expired = []
            for approval_id, request in self._requests.items():
                if request.status == ApprovalStatus.PENDING and request.expires_at < now:
                    request = replace(request, status=ApprovalStatus.EXPIRED)
                    self._requests[approval_id] = request
                    expired.append(request)
            return expired

    async def list_pending(self, run_id: str | None = None, limit: int = 100) -> list[ApprovalRequest]:
        async with self._lock:
            pending = [
                r for r in self._requests.values()
                if r.status == ApprovalStatus.PENDING and (run_id is None or r.run_id == run_id)
            ]
        pending.sort(key=lambda r: r.requested_at, reverse=True)
        return pending[:limit]

    async def list_by_run(self, run_id: str) -> list[ApprovalRequest]:
        async with self._lock:
            requests = [r for r in self._requests.values() if r.run_id == run_id]
        requests.sort(key=lambda r: r.requested_at, reverse=True)
        return requests


__all__ = [
    "ApprovalStore",
    "InMemoryApprovalStore",
]
