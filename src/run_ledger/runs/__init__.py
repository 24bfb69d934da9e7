"""
Run ledger.

This module provides run lifecycle management:
- RunRecord: Persisted run state
- RunLedger: Lifecycle operations (create, transition, complete, fail)
- RunStore: Persistence interface with an in-memory implementation
"""

from .types import (
    DEFAULT_MODEL,
    RunStatus,
    RunError,
    RunRecord,
    VALID_TRANSITIONS,
)
from .store import (
    RunFilter,
    RunStore,
    InMemoryRunStore,
)
from .manager import RunLedger

__all__ = [
    "DEFAULT_MODEL",
    "RunStatus",
    "RunError",
    "RunRecord",
    "VALID_TRANSITIONS",
    "RunFilter",
    "RunStore",
    "InMemoryRunStore",
    "RunLedger",
]
