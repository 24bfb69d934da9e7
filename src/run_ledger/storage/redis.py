"""
Redis signaling for approval wake-ups.

Redis is used for SPEED, not DURABILITY: the approval store stays the
source of truth and a signal only tells a paused worker to re-read it.

Channel naming:
- {prefix}:{approval_id} - Per-approval channel
- {prefix}:run:{run_id} - Per-run channel for all approvals of a run
- {prefix}:msg:{approval_id} - Last signal, kept for late subscribers
"""

from __future__ import annotations

import asyncio
from typing import Any

import orjson
import redis.asyncio as aioredis

from ..approvals.types import ApprovalSignal
from ..config import RedisConfig
from ..logging import StructuredLogger, get_logger


class RedisApprovalSignalChannel:
    """Approval resolution signaling using Redis pub/sub.

    Example:
        ```python
        signals = RedisApprovalSignalChannel(redis_client)
        await signals.start()

        # In the paused worker
        signal = await signals.wait(approval_id, timeout=300)

        # In the resolver (ApprovalManager does this on every settle)
        await signals.signal(ApprovalSignal(approval_id=..., run_id=..., status="approved"))
        ```
    """

    def __init__(
        self,
        client: Any,  # redis.asyncio.Redis
        channel_prefix: str = "run_ledger:approval",
        message_ttl_seconds: int = 3600,
        logger: StructuredLogger | None = None,
    ):
        self._client = client
        self._prefix = channel_prefix
        self._ttl = message_ttl_seconds
        self._logger = logger or get_logger("run_ledger.storage.redis")

        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._subscribed: set[str] = set()  # approval ids with a live channel subscription
        self._pubsub: Any = None  # redis.asyncio.client.PubSub
        self._listener_task: asyncio.Task | None = None

    @classmethod
    def from_config(cls, config: RedisConfig, **kwargs: Any) -> RedisApprovalSignalChannel:
        """Build a channel with a client created from ``RedisConfig.url``."""
        if not config.url:
            raise ValueError("RedisConfig.url is required to open a client")
        client = aioredis.from_url(config.url)
        return cls(client, channel_prefix=config.channel_prefix, **kwargs)

    def _channel_name(self, approval_id: str) -> str:
        return f"{self._prefix}:{approval_id}"

    def _run_channel_name(self, run_id: str) -> str:
        return f"{self._prefix}:run:{run_id}"

    def _message_key(self, approval_id: str) -> str:
        return f"{self._prefix}:msg:{approval_id}"

    async def start(self) -> None:
        """Start the listener for incoming signals."""
        if self._listener_task is not None:
            return

        self._pubsub = self._client.pubsub()
        self._listener_task = asyncio.create_task(self._listen())

    async def stop(self) -> None:
        """Stop the listener and cancel pending waiters."""
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

        if self._pubsub:
            await self._pubsub.close()
            self._pubsub = None

        for waiters in self._waiters.values():
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
        self._waiters.clear()
        self._subscribed.clear()

    async def _listen(self) -> None:
        """Background listener for pub/sub messages."""
        async for message in self._pubsub.listen():
            if message["type"] != "message":
                continue
            try:
                signal = ApprovalSignal.from_json(message["data"])
            except (orjson.JSONDecodeError, KeyError) as e:
                self._logger.warning(
                    "approval_signal_malformed",
                    channel=str(message.get("channel")),
                    error=str(e),
                )
                continue
            self._dispatch(signal)

    def _dispatch(self, signal: ApprovalSignal) -> None:
        """Resolve every future waiting on the signal's approval."""
        for waiter in self._waiters.pop(signal.approval_id, []):
            if not waiter.done():
                waiter.set_result(signal)

    async def signal(self, signal: ApprovalSignal) -> int:
        """Publish a signal for an approval.

        Returns:
            Number of subscribers that received the message on the
            per-approval channel
        """
        payload = signal.to_json()
        count = await self._client.publish(self._channel_name(signal.approval_id), payload)
        await self._client.publish(self._run_channel_name(signal.run_id), payload)

        # Store message for late subscribers
        await self._client.setex(self._message_key(signal.approval_id), self._ttl, payload)

        self._logger.debug(
            "approval_signal_sent",
            approval_id=signal.approval_id,
            run_id=signal.run_id,
            status=signal.status,
            subscribers=count,
        )
        return count

    async def wait(
        self,
        approval_id: str,
        timeout: float | None = None,
    ) -> ApprovalSignal | None:
        """Wait for a signal for an approval.

        Returns:
            ApprovalSignal if received, None if timed out
        """
        existing = await self._client.get(self._message_key(approval_id))
        if existing:
            return ApprovalSignal.from_json(existing)

        await self.start()
        channel = self._channel_name(approval_id)

        waiter: asyncio.Future[ApprovalSignal] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(approval_id, []).append(waiter)

        try:
            # One subscription per approval, shared by all of its waiters
            if approval_id not in self._subscribed:
                self._subscribed.add(approval_id)
                await self._pubsub.subscribe(channel)

            # A signal sent between the first read and the subscribe
            existing = await self._client.get(self._message_key(approval_id))
            if existing:
                return ApprovalSignal.from_json(existing)
            return await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            waiters = self._waiters.get(approval_id)
            if waiters is not None:
                if waiter in waiters:
                    waiters.remove(waiter)
                if not waiters:
                    del self._waiters[approval_id]

            if approval_id not in self._waiters and approval_id in self._subscribed:
                self._subscribed.discard(approval_id)
                if self._pubsub is not None:
                    await self._pubsub.unsubscribe(channel)

    async def close(self) -> None:
        """Stop listening and close the underlying client."""
        await self.stop()
        await self._client.aclose()


__all__ = [
    "RedisApprovalSignalChannel",
]
