"""
Event bus for ledger event distribution.

This module provides the EventBus abstraction and an in-memory
implementation for publishing and subscribing to ledger events.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from .types import LedgerEvent, LedgerEventType


@dataclass
class EventSubscription:
    """Subscription to events from the event bus."""
    subscription_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str | None = None
    event_types: set[LedgerEventType] | None = None  # None = all types
    tenant_id: str | None = None

    def matches(self, event: LedgerEvent) -> bool:
        """Check if an event matches this subscription."""
        if self.run_id and event.run_id != self.run_id:
            return False
        if self.tenant_id and event.tenant_id != self.tenant_id:
            return False
        if self.event_types and event.type not in self.event_types:
            return False
        return True


class EventBus(ABC):
    """Abstract event bus for ledger events."""

    @abstractmethod
    async def publish(self, event: LedgerEvent) -> None:
        """Publish an event to all matching subscribers."""
        ...

    @abstractmethod
    def subscribe(
        self,
        run_id: str | None = None,
        event_types: set[LedgerEventType] | None = None,
        tenant_id: str | None = None,
    ) -> EventSubscription:
        """Create a subscription and return it."""
        ...

    @abstractmethod
    def events(self, subscription: EventSubscription) -> AsyncIterator[LedgerEvent]:
        """Iterate over events for a subscription."""
        ...

    @abstractmethod
    def unsubscribe(self, subscription: EventSubscription) -> None:
        """Remove a subscription."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the event bus and clean up resources."""
        ...


class InMemoryEventBus(EventBus):
    """In-memory event bus implementation.

    Uses one bounded asyncio.Queue per subscription; when a queue is full
    the oldest event is dropped.
    """

    def __init__(self, max_queue_size: int = 1000):
        self._queues: dict[str, asyncio.Queue[LedgerEvent | None]] = {}
        self._subscriptions: dict[str, EventSubscription] = {}
        self._max_queue_size = max_queue_size
        self._closed = False
        self._lock = asyncio.Lock()

    async def publish(self, event: LedgerEvent) -> None:
        if self._closed:
            return

        async with self._lock:
            for sub_id, subscription in list(self._subscriptions.items()):
                if not subscription.matches(event):
                    continue
                queue = self._queues.get(sub_id)
                if queue is None:
                    continue
                if queue.full():
                    queue.get_nowait()
                queue.put_nowait(event)

    def subscribe(
        self,
        run_id: str | None = None,
        event_types: set[LedgerEventType] | None = None,
        tenant_id: str | None = None,
    ) -> EventSubscription:
        subscription = EventSubscription(
            run_id=run_id,
            event_types=event_types,
            tenant_id=tenant_id,
        )
        self._subscriptions[subscription.subscription_id] = subscription
        self._queues[subscription.subscription_id] = asyncio.Queue(maxsize=self._max_queue_size)
        return subscription

    def events(self, subscription: EventSubscription) -> AsyncIterator[LedgerEvent]:
        """Yield events until the subscription is closed.

        The queue is bound when this is called, so events published before
        ``close()`` are still delivered to a consumer that starts later.
        """
        queue = self._queues.get(subscription.subscription_id)

        async def iterate() -> AsyncIterator[LedgerEvent]:
            if queue is None:
                return
            while True:
                event = await queue.get()
                if event is None:  # Sentinel for close
                    break
                yield event

        return iterate()

    def unsubscribe(self, subscription: EventSubscription) -> None:
        sub_id = subscription.subscription_id
        self._subscriptions.pop(sub_id, None)
        queue = self._queues.pop(sub_id, None)
        if queue is not None:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(None)

    async def close(self) -> None:
        """Stop accepting events and end every consumer after its buffered events."""
        self._closed = True
        async with self._lock:
            for queue in self._queues.values():
                if queue.full():
                    queue.get_nowait()
                queue.put_nowait(None)  # Unblock consumers
            self._subscriptions.clear()


__all__ = [
    "EventBus",
    "InMemoryEventBus",
    "EventSubscription",
]
