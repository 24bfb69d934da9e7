"""
Durable storage backends.

- PostgresRunStore / PostgresStepStore / PostgresApprovalStore: asyncpg-backed stores
- RedisApprovalSignalChannel: pub/sub wake-ups for paused workers
"""

from .postgres import (
    create_pool,
    PostgresRunStore,
    PostgresStepStore,
    PostgresApprovalStore,
)
from .redis import RedisApprovalSignalChannel

__all__ = [
    "create_pool",
    "PostgresRunStore",
    "PostgresStepStore",
    "PostgresApprovalStore",
    "RedisApprovalSignalChannel",
]
