"""
Step ledger.

- StepRecord: one individually costed operation of a run
- StepLedger: idempotent creation and terminal transitions
- StepStore: persistence interface with an in-memory implementation
"""

from .types import (
    StepType,
    StepStatus,
    StepRecord,
    generate_idempotency_key,
)
from .store import (
    StepStore,
    InMemoryStepStore,
)
from .manager import StepLedger

__all__ = [
    "StepType",
    "StepStatus",
    "StepRecord",
    "generate_idempotency_key",
    "StepStore",
    "InMemoryStepStore",
    "StepLedger",
]
