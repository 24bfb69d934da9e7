"""
PostgreSQL storage for the ledger.

This module provides asyncpg-backed implementations of:
- RunStore (PostgresRunStore)
- StepStore (PostgresStepStore)
- ApprovalStore (PostgresApprovalStore)

Tables are created on first use. Idempotency and single-winner
resolution are enforced by the database:
- runs: UNIQUE (idempotency_key)
- steps: UNIQUE (idempotency_key) plus a partial unique index on
  (run_id, step_index) WHERE status <> 'failed'
- approvals: every status change is ``UPDATE ... WHERE status = 'pending'``
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from typing import Any

import asyncpg
import orjson

from ..approvals.store import ApprovalStore
from ..approvals.types import (
    ApprovalAction,
    ApprovalRequest,
    ApprovalResolution,
    ApprovalStatus,
    RiskLevel,
)
from ..config import DatabaseConfig
from ..errors import DuplicateRecordError, StepIndexConflictError
from ..runs.store import RunFilter, RunStore
from ..runs.types import RunError, RunRecord, RunStatus
from ..steps.store import StepStore
from ..steps.types import StepRecord, StepStatus, StepType
from ..usage import ExecutionBudget, Usage


def _sanitize_table_name(name: str) -> str:
    """Ensure the table name is safe for SQL interpolation."""
    if not name:
        raise ValueError("table_name cannot be empty")
    if not re.fullmatch(r"[a-zA-Z0-9_]+", name):
        raise ValueError(f"Invalid table name: {name!r}")
    return name


def _to_timestamptz(value: Any) -> Any:
    """Convert epoch seconds floats into timezone-aware datetimes for TIMESTAMPTZ columns."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    return value


def _from_timestamptz(value: Any) -> Any:
    if value is not None and hasattr(value, "timestamp"):
        return value.timestamp()
    return value


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return orjson.dumps(value, default=str, option=orjson.OPT_NON_STR_KEYS).decode("utf-8")


def _loads(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return orjson.loads(value)


async def create_pool(config: DatabaseConfig) -> asyncpg.Pool:
    """Open an asyncpg pool from the database settings."""
    if not config.dsn:
        raise ValueError("DatabaseConfig.dsn is required to open a pool")
    return await asyncpg.create_pool(
        dsn=config.dsn,
        min_size=config.min_pool_size,
        max_size=config.max_pool_size,
    )


class _PostgresTable:
    """Shared lazy DDL handling."""

    TABLE_NAME = ""

    def __init__(self, pool: Any, table_name: str | None = None):  # asyncpg.Pool
        self._pool = pool
        self._table = _sanitize_table_name(table_name or self.TABLE_NAME)
        self._ensured = False
        self._lock = asyncio.Lock()

    def _ddl(self) -> str:
        raise NotImplementedError

    async def _ensure_table(self) -> None:
        """Create the table and its indexes if they don't exist."""
        async with self._lock:
            if self._ensured:
                return

            async with self._pool.acquire() as conn:
                for stmt in [s.strip() for s in self._ddl().split(";") if s.strip()]:
                    await conn.execute(stmt)

            self._ensured = True


# =============================================================================
# PostgresRunStore
# =============================================================================


class PostgresRunStore(_PostgresTable, RunStore):
    """PostgreSQL implementation of RunStore.

    Table schema:
    - id (TEXT PRIMARY KEY), idempotency_key (TEXT UNIQUE)
    - agent_id, status, current_model, effort_level, trace_id, tenant_id, user_id (TEXT)
    - input, output, budget, consumed, error (JSONB)
    - created_at, updated_at, completed_at (TIMESTAMPTZ)
    - version (INTEGER)
    """

    TABLE_NAME = "ledger_runs"

    def _ddl(self) -> str:
        return f'''
        CREATE TABLE IF NOT EXISTS "{self._table}" (
            id TEXT PRIMARY KEY,
            idempotency_key TEXT NOT NULL UNIQUE,
            agent_id TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'running',
            input JSONB,
            output JSONB,
            budget JSONB NOT NULL,
            consumed JSONB NOT NULL,
            current_model TEXT NOT NULL,
            effort_level TEXT NOT NULL,
            trace_id TEXT NOT NULL,
            tenant_id TEXT,
            user_id TEXT,
            error JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            completed_at TIMESTAMPTZ,
            version INTEGER NOT NULL DEFAULT 0
        );
        CREATE INDEX IF NOT EXISTS "{self._table}_agent_created_idx" ON "{self._table}" (agent_id, created_at DESC);
        CREATE INDEX IF NOT EXISTS "{self._table}_status_idx" ON "{self._table}" (status)
        '''

    def _run_to_row(self, run: RunRecord) -> dict[str, Any]:
        return {
            "id": run.id,
            "idempotency_key": run.idempotency_key,
            "agent_id": run.agent_id,
            "status": run.status.value,
            "input": _dumps(run.input),
            "output": _dumps(run.output),
            "budget": _dumps(run.budget.to_dict()),
            "consumed": _dumps(run.consumed.to_dict()),
            "current_model": run.current_model,
            "effort_level": run.effort_level,
            "trace_id": run.trace_id,
            "tenant_id": run.tenant_id,
            "user_id": run.user_id,
            "error": _dumps(run.error.to_dict()) if run.error else None,
            "created_at": _to_timestamptz(run.created_at),
            "updated_at": _to_timestamptz(run.updated_at),
            "completed_at": _to_timestamptz(run.completed_at),
            "version": run.version,
        }

    def _row_to_run(self, row: Any) -> RunRecord:
        error = _loads(row["error"])
        return RunRecord(
            id=row["id"],
            idempotency_key=row["idempotency_key"],
            agent_id=row["agent_id"],
            input=_loads(row["input"]),
            output=_loads(row["output"]),
            status=RunStatus(row["status"]),
            budget=ExecutionBudget.from_dict(_loads(row["budget"]) or {}),
            consumed=Usage.from_dict(_loads(row["consumed"]) or {}),
            current_model=row["current_model"],
            effort_level=row["effort_level"],
            trace_id=row["trace_id"],
            tenant_id=row["tenant_id"],
            user_id=row["user_id"],
            error=RunError.from_dict(error) if error else None,
            created_at=_from_timestamptz(row["created_at"]),
            updated_at=_from_timestamptz(row["updated_at"]),
            completed_at=_from_timestamptz(row["completed_at"]),
            version=row["version"],
        )

    async def insert(self, run: RunRecord) -> RunRecord:
        await self._ensure_table()

        row = self._run_to_row(run)
        columns = list(row.keys())
        placeholders = [f"${i+1}" for i in range(len(columns))]

        q = f'''
        INSERT INTO "{self._table}" ({", ".join(columns)})
        VALUES ({", ".join(placeholders)})
        ON CONFLICT (idempotency_key) DO NOTHING
        RETURNING id
        '''

        async with self._pool.acquire() as conn:
            try:
                inserted = await conn.fetchval(q, *row.values())
            except asyncpg.UniqueViolationError as e:
                raise DuplicateRecordError(f"Run {run.id} already exists", key=run.id) from e

        if inserted is None:
            raise DuplicateRecordError(
                f"Run with idempotency key {run.idempotency_key} already exists",
                key=run.idempotency_key,
            )
        return run

    async def get(self, run_id: str) -> RunRecord | None:
        await self._ensure_table()
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(f'SELECT * FROM "{self._table}" WHERE id = $1', run_id)
        return self._row_to_run(row) if row else None

    async def get_by_idempotency_key(self, idempotency_key: str) -> RunRecord | None:
        await self._ensure_table()
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f'SELECT * FROM "{self._table}" WHERE idempotency_key = $1',
                idempotency_key,
            )
        return self._row_to_run(row) if row else None

    async def update(self, run: RunRecord, expected_version: int) -> RunRecord | None:
        await self._ensure_table()

        row = self._run_to_row(run)
        for immutable in ("id", "idempotency_key", "created_at"):
            row.pop(immutable)

        assignments = []
        values: list[Any] = [run.id, expected_version]
        for column, value in row.items():
            values.append(value)
            if column == "completed_at":
                assignments.append(f"completed_at = COALESCE(completed_at, ${len(values)})")
            else:
                assignments.append(f"{column} = ${len(values)}")

        q = f'''
        UPDATE "{self._table}" SET {", ".join(assignments)}
        WHERE id = $1 AND version = $2
        RETURNING *
        '''

        async with self._pool.acquire() as conn:
            updated = await conn.fetchrow(q, *values)
        return self._row_to_run(updated) if updated else None

    async def list(self, filter: RunFilter | None = None) -> list[RunRecord]:
        await self._ensure_table()
        filter = filter or RunFilter()

        conditions = []
        values: list[Any] = []
        if filter.agent_id:
            values.append(filter.agent_id)
            conditions.append(f"agent_id = ${len(values)}")
        if filter.tenant_id:
            values.append(filter.tenant_id)
            conditions.append(f"tenant_id = ${len(values)}")
        if filter.created_since is not None:
            values.append(_to_timestamptz(filter.created_since))
            conditions.append(f"created_at >= ${len(values)}")
        if filter.status:
            statuses = filter.status if isinstance(filter.status, set) else {filter.status}
            values.append([s.value for s in statuses])
            conditions.append(f"status = ANY(${len(values)}::text[])")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        values.append(filter.limit)
        q = f'SELECT * FROM "{self._table}" {where} ORDER BY created_at DESC LIMIT ${len(values)}'

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(q, *values)
        return [self._row_to_run(r) for r in rows]


# =============================================================================
# PostgresStepStore
# =============================================================================


class PostgresStepStore(_PostgresTable, StepStore):
    """PostgreSQL implementation of StepStore.

    ``insert`` is a single ``INSERT ... ON CONFLICT DO NOTHING`` so that of
    two racing inserts for the same step exactly one succeeds.
    """

    TABLE_NAME = "ledger_steps"

    _JSON_FIELDS = frozenset({"input", "output"})
    _TIME_FIELDS = frozenset({"started_at", "completed_at"})

    def _ddl(self) -> str:
        return f'''
        CREATE TABLE IF NOT EXISTS "{self._table}" (
            id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL,
            step_index INTEGER NOT NULL,
            idempotency_key TEXT NOT NULL UNIQUE,
            type TEXT NOT NULL,
            model TEXT,
            tool_name TEXT,
            input_hash TEXT NOT NULL,
            input JSONB,
            output_hash TEXT,
            output JSONB,
            status TEXT NOT NULL DEFAULT 'running',
            cost_usd DOUBLE PRECISION NOT NULL DEFAULT 0,
            duration_ms DOUBLE PRECISION NOT NULL DEFAULT 0,
            input_tokens INTEGER NOT NULL DEFAULT 0,
            output_tokens INTEGER NOT NULL DEFAULT 0,
            thinking_tokens INTEGER NOT NULL DEFAULT 0,
            side_effect_committed BOOLEAN,
            started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            completed_at TIMESTAMPTZ
        );
        CREATE UNIQUE INDEX IF NOT EXISTS "{self._table}_live_index_idx"
            ON "{self._table}" (run_id, step_index) WHERE status <> 'failed';
        CREATE INDEX IF NOT EXISTS "{self._table}_run_id_idx" ON "{self._table}" (run_id, step_index)
        '''

    def _step_to_row(self, step: StepRecord) -> dict[str, Any]:
        return {
            "id": step.id,
            "run_id": step.run_id,
            "step_index": step.index,
            "idempotency_key": step.idempotency_key,
            "type": step.type.value,
            "model": step.model,
            "tool_name": step.tool_name,
            "input_hash": step.input_hash,
            "input": _dumps(step.input),
            "output_hash": step.output_hash,
            "output": _dumps(step.output),
            "status": step.status.value,
            "cost_usd": step.cost_usd,
            "duration_ms": step.duration_ms,
            "input_tokens": step.input_tokens,
            "output_tokens": step.output_tokens,
            "thinking_tokens": step.thinking_tokens,
            "side_effect_committed": step.side_effect_committed,
            "started_at": _to_timestamptz(step.started_at),
            "completed_at": _to_timestamptz(step.completed_at),
        }

    def _row_to_step(self, row: Any) -> StepRecord:
        return StepRecord(
            id=row["id"],
            run_id=row["run_id"],
            index=row["step_index"],
            idempotency_key=row["idempotency_key"],
            type=StepType(row["type"]),
            model=row["model"],
            tool_name=row["tool_name"],
            input_hash=row["input_hash"],
            input=_loads(row["input"]),
            output_hash=row["output_hash"],
            output=_loads(row["output"]),
            status=StepStatus(row["status"]),
            cost_usd=row["cost_usd"],
            duration_ms=row["duration_ms"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            thinking_tokens=row["thinking_tokens"],
            side_effect_committed=row["side_effect_committed"],
            started_at=_from_timestamptz(row["started_at"]),
            completed_at=_from_timestamptz(row["completed_at"]),
        )

    async def insert(self, step: StepRecord) -> tuple[StepRecord, bool]:
        await self._ensure_table()

        row = self._step_to_row(step)
        columns = list(row.keys())
        placeholders = [f"${i+1}" for i in range(len(columns))]

        q = f'''
        INSERT INTO "{self._table}" ({", ".join(columns)})
        VALUES ({", ".join(placeholders)})
        ON CONFLICT DO NOTHING
        RETURNING *
        '''

        async with self._pool.acquire() as conn:
            inserted = await conn.fetchrow(q, *row.values())
            if inserted is not None:
                return self._row_to_step(inserted), True

            existing = await conn.fetchrow(
                f'SELECT * FROM "{self._table}" WHERE idempotency_key = $1',
                step.idempotency_key,
            )

        if existing is not None:
            return self._row_to_step(existing), False
        raise StepIndexConflictError(step.run_id, step.index)

    async def get(self, step_id: str) -> StepRecord | None:
        await self._ensure_table()
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(f'SELECT * FROM "{self._table}" WHERE id = $1', step_id)
        return self._row_to_step(row) if row else None

    async def get_by_idempotency_key(self, idempotency_key: str) -> StepRecord | None:
        await self._ensure_table()
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f'SELECT * FROM "{self._table}" WHERE idempotency_key = $1',
                idempotency_key,
            )
        return self._row_to_step(row) if row else None

    async def list_by_run(self, run_id: str) -> list[StepRecord]:
        await self._ensure_table()
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f'SELECT * FROM "{self._table}" WHERE run_id = $1 ORDER BY step_index ASC, started_at ASC',
                run_id,
            )
        return [self._row_to_step(r) for r in rows]

    async def finish(self, step_id: str, status: StepStatus, **fields: Any) -> StepRecord | None:
        await self._ensure_table()

        values: list[Any] = [step_id, status.value]
        assignments = ["status = $2"]
        for name, value in fields.items():
            if name in self._JSON_FIELDS:
                value = _dumps(value)
            elif name in self._TIME_FIELDS:
                value = _to_timestamptz(value)
            values.append(value)
            assignments.append(f"{name} = ${len(values)}")

        q = f'''
        UPDATE "{self._table}" SET {", ".join(assignments)}
        WHERE id = $1 AND status = 'running'
        RETURNING *
        '''

        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(q, *values)
        return self._row_to_step(row) if row else None


# =============================================================================
# PostgresApprovalStore
# =============================================================================


class PostgresApprovalStore(_PostgresTable, ApprovalStore):
    """PostgreSQL implementation of ApprovalStore."""

    TABLE_NAME = "ledger_approvals"

    def _ddl(self) -> str:
        return f'''
        CREATE TABLE IF NOT EXISTS "{self._table}" (
            id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL,
            step_index INTEGER NOT NULL,
            tool_name TEXT NOT NULL,
            action_description TEXT NOT NULL,
            action_input JSONB,
            risk_level TEXT NOT NULL,
            risk_factors JSONB NOT NULL DEFAULT '[]'::jsonb,
            requested_by TEXT NOT NULL,
            requested_at TIMESTAMPTZ NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            resolved_by TEXT,
            resolved_at TIMESTAMPTZ,
            resolution JSONB
        );
        CREATE INDEX IF NOT EXISTS "{self._table}_run_id_idx" ON "{self._table}" (run_id);
        CREATE INDEX IF NOT EXISTS "{self._table}_pending_idx" ON "{self._table}" (expires_at) WHERE status = 'pending'
        '''

    def _request_to_row(self, request: ApprovalRequest) -> dict[str, Any]:
        return {
            "id": request.id,
            "run_id": request.run_id,
            "step_index": request.step_index,
            "tool_name": request.action.tool_name,
            "action_description": request.action.description,
            "action_input": _dumps(request.action.input),
            "risk_level": request.risk_level.value,
            "risk_factors": _dumps(list(request.risk_factors)),
            "requested_by": request.requested_by,
            "requested_at": _to_timestamptz(request.requested_at),
            "expires_at": _to_timestamptz(request.expires_at),
            "status": request.status.value,
            "resolved_by": request.resolved_by,
            "resolved_at": _to_timestamptz(request.resolved_at),
            "resolution": _dumps(request.resolution.to_dict()) if request.resolution else None,
        }

    def _row_to_request(self, row: Any) -> ApprovalRequest:
        resolution = _loads(row["resolution"])
        return ApprovalRequest(
            id=row["id"],
            run_id=row["run_id"],
            step_index=row["step_index"],
            action=ApprovalAction(
                tool_name=row["tool_name"],
                description=row["action_description"],
                input=_loads(row["action_input"]),
            ),
            risk_level=RiskLevel(row["risk_level"]),
            risk_factors=list(_loads(row["risk_factors"]) or []),
            requested_by=row["requested_by"],
            requested_at=_from_timestamptz(row["requested_at"]),
            expires_at=_from_timestamptz(row["expires_at"]),
            status=ApprovalStatus(row["status"]),
            resolved_by=row["resolved_by"],
            resolved_at=_from_timestamptz(row["resolved_at"]),
            resolution=ApprovalResolution.from_dict(resolution) if resolution else None,
        )

    async def insert(self, request: ApprovalRequest) -> ApprovalRequest:
        await self._ensure_table()

        row = self._request_to_row(request)
        columns = list(row.keys())
        placeholders = [f"${i+1}" for i in range(len(columns))]

        q = f'''
        INSERT INTO "{self._table}" ({", ".join(columns)})
        VALUES ({", ".join(placeholders)})
        '''

        async with self._pool.acquire() as conn:
            try:
                await conn.execute(q, *row.values())
            except asyncpg.UniqueViolationError as e:
                raise DuplicateRecordError(
                    f"Approval request {request.id} already exists",
                    key=request.id,
                ) from e
        return request

    async def get(self, approval_id: str) -> ApprovalRequest | None:
        await self._ensure_table()
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(f'SELECT * FROM "{self._table}" WHERE id = $1', approval_id)
        return self._row_to_request(row) if row else None

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
        await self._ensure_table()

        q = f'''
        UPDATE "{self._table}" SET
            status = $2,
            resolved_by = $3,
            resolved_at = $4,
            resolution = $5
        WHERE id = $1 AND status = 'pending' AND expires_at >= $6
        RETURNING *
        '''

        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                q,
                approval_id,
                status.value,
                resolved_by,
                _to_timestamptz(resolved_at),
                _dumps(resolution.to_dict()),
                _to_timestamptz(now),
            )
        return self._row_to_request(row) if row else None

    async def mark_expired(self, approval_id: str, now: float) -> ApprovalRequest | None:
        await self._ensure_table()

        q = f'''
        UPDATE "{self._table}" SET status = 'expired'
        WHERE id = $1 AND status = 'pending' AND expires_at < $2
        RETURNING *
        '''

        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(q, approval_id, _to_timestamptz(now))
        return self._row_to_request(row) if row else None

    async def expire_before(self, now: float) -> list[ApprovalRequest]:
        await self._ensure_table()

        q = f'''
        UPDATE "{self._table}" SET status = 'expired'
        WHERE status = 'pending' AND expires_at < $1
        RETURNING *
        '''

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(q, _to_timestamptz(now))
        return [self._row_to_request(r) for r in rows]

    async def list_pending(self, run_id: str | None = None, limit: int = 100) -> list[ApprovalRequest]:
        await self._ensure_table()

        if run_id is None:
            q = f'''
            SELECT * FROM "{self._table}" WHERE status = 'pending'
            ORDER BY requested_at DESC LIMIT $1
            '''
            args: tuple[Any, ...] = (limit,)
        else:
            q = f'''
            SELECT * FROM "{self._table}" WHERE status = 'pending' AND run_id = $2
            ORDER BY requested_at DESC LIMIT $1
            '''
            args = (limit, run_id)

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(q, *args)
        return [self._row_to_request(r) for r in rows]

    async def list_by_run(self, run_id: str) -> list[ApprovalRequest]:
        await self._ensure_table()
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f'SELECT * FROM "{self._table}" WHERE run_id = $1 ORDER BY requested_at DESC',
                run_id,
            )
        return [self._row_to_request(r) for r in rows]


__all__ = [
    "create_pool",
    "PostgresRunStore",
    "PostgresStepStore",
    "PostgresApprovalStore",
]
