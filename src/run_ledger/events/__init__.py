"""
Ledger events.

- LedgerEvent / LedgerEventType: lifecycle events for runs, steps and approvals
- EventBus / InMemoryEventBus: publish/subscribe distribution
"""

from .types import (
    LedgerEventType,
    LedgerEvent,
)
from .bus import (
    EventBus,
    InMemoryEventBus,
    EventSubscription,
)

__all__ = [
    "LedgerEventType",
    "LedgerEvent",
    "EventBus",
    "InMemoryEventBus",
    "EventSubscription",
]
