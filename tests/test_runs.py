"""
Tests for the run ledger.
"""

import asyncio
import json
import logging
from unittest.mock import AsyncMock

import pytest

from run_ledger.errors import (
    ErrorCode,
    InvalidTransitionError,
    LedgerError,
    RunNotFoundError,
    UsageRegressionError,
)
from run_ledger.events import LedgerEventType
from run_ledger.logging import StructuredLogger
from run_ledger.runs import (
    InMemoryRunStore,
    RunError,
    RunFilter,
    RunLedger,
    RunRecord,
    RunStatus,
    VALID_TRANSITIONS,
)
from run_ledger.usage import ExecutionBudget, Usage


class TestRunCreation:
    """Test run creation and idempotency."""

    @pytest.mark.asyncio
    async def test_create(self, make_run, clock):
        """Test a new run starts RUNNING with zero usage."""
        run = await make_run()

        assert run.status == RunStatus.RUNNING
        assert run.consumed == Usage.zero("claude-sonnet-4-5")
        assert run.created_at == run.updated_at == clock.now
        assert run.completed_at is None
        assert run.error is None
        assert run.effort_level == "medium"

    @pytest.mark.asyncio
    async def test_same_key_returns_same_run(self, make_run, run_ledger):
        """Test a duplicate create hands back the first run unchanged."""
        first = await make_run(key="req-1")
        second = await make_run(key="req-1", input={"query": "something else"})

        assert second.id == first.id
        assert second.input == first.input
        assert len(await run_ledger.find_recent("researcher")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_single_run(self, run_ledger, budget):
        """Test racing creates with one key produce exactly one run."""
        runs = await asyncio.gather(*[
            run_ledger.create(
                idempotency_key="req-race",
                agent_id="researcher",
                input={"n": i},
                budget=budget,
                trace_id=f"trace_{i}",
                current_model="claude-sonnet-4-5",
            )
            for i in range(10)
        ])

        assert len({r.id for r in runs}) == 1
        assert len(await run_ledger.find_recent("researcher")) == 1

    @pytest.mark.asyncio
    async def test_get_or_create(self, run_ledger, budget):
        """Test the created flag."""
        kwargs = dict(
            idempotency_key="req-1",
            agent_id="a",
            input=None,
            budget=budget,
            trace_id="t",
            current_model="m",
        )
        run, created = await run_ledger.get_or_create(**kwargs)
        again, created_again = await run_ledger.get_or_create(**kwargs)

        assert created is True
        assert created_again is False
        assert again.id == run.id

    @pytest.mark.asyncio
    async def test_create_emits_event(self, make_run, event_bus):
        """Test creation publishes run.created."""
        sub = event_bus.subscribe(event_types={LedgerEventType.RUN_CREATED})
        run = await make_run(tenant_id="tenant-1")

        events = event_bus.drain(sub)
        assert len(events) == 1
        assert events[0].run_id == run.id
        assert events[0].tenant_id == "tenant-1"
        assert events[0].trace_id == "trace_test"


class TestRunTransitions:
    """Test the run state machine."""

    @pytest.mark.asyncio
    async def test_complete(self, make_run, run_ledger, clock):
        """Test completion stores output and completed_at."""
        run = await make_run()
        clock.advance(5)

        done = await run_ledger.complete(run.id, {"answer": 42})

        assert done.status == RunStatus.COMPLETED
        assert done.output == {"answer": 42}
        assert done.completed_at == clock.now
        assert done.completed_at >= done.created_at

    @pytest.mark.asyncio
    async def test_complete_applies_final_usage(self, make_run, run_ledger):
        """Test a usage block on the output becomes the consumed snapshot."""
        run = await make_run()
        final = Usage(input_tokens=100, output_tokens=50, total_tokens=150, cost_usd=0.2, steps=3, model_used="m")

        done = await run_ledger.complete(run.id, {"answer": "x", "usage": final.to_dict()})

        assert done.consumed == final

    @pytest.mark.asyncio
    async def test_partial(self, make_run, run_ledger):
        """Test partial completion."""
        run = await make_run()
        done = await run_ledger.partial(run.id, {"answer": "half"})
        assert done.status == RunStatus.PARTIAL
        assert done.completed_at is not None

    @pytest.mark.asyncio
    async def test_fail_stores_error(self, make_run, run_ledger, event_bus):
        """Test failure keeps the structured error."""
        sub = event_bus.subscribe(event_types={LedgerEventType.RUN_FAILED})
        run = await make_run()

        failed = await run_ledger.fail(run.id, {"message": "tool crashed", "code": "TOOL_ERROR", "retryable": True, "step": 2})

        assert failed.status == RunStatus.FAILED
        assert failed.error == RunError(message="tool crashed", code="TOOL_ERROR", retryable=True, step=2)
        assert event_bus.drain(sub)[0].data["error"]["code"] == "TOOL_ERROR"

    @pytest.mark.asyncio
    async def test_cancel(self, make_run, run_ledger, event_bus):
        """Test cancellation is terminal and carries the reason in the event."""
        sub = event_bus.subscribe(event_types={LedgerEventType.RUN_CANCELLED})
        run = await make_run()

        cancelled = await run_ledger.cancel(run.id, reason="user aborted")

        assert cancelled.status == RunStatus.CANCELLED
        assert cancelled.completed_at is not None
        assert event_bus.drain(sub)[0].data["reason"] == "user aborted"

    @pytest.mark.asyncio
    async def test_terminal_run_is_frozen(self, make_run, run_ledger, clock):
        """Test no transition leaves a terminal state and completed_at never changes."""
        run = await make_run()
        done = await run_ledger.complete(run.id, "ok")
        clock.advance(60)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await run_ledger.fail(run.id, RunError(message="late", code="X"))
        assert exc_info.value.code == ErrorCode.INVALID_TRANSITION

        with pytest.raises(InvalidTransitionError):
            await run_ledger.complete(run.id, "again")
        with pytest.raises(InvalidTransitionError):
            await run_ledger.update_status(run.id, RunStatus.RUNNING)

        stored = await run_ledger.find_by_id(run.id)
        assert stored.completed_at == done.completed_at
        assert stored.output == "ok"

    @pytest.mark.asyncio
    async def test_terminal_same_status_rejected(self, make_run, run_ledger, clock):
        """Test re-setting a terminal status is rejected and the record is untouched."""
        run = await make_run()
        done = await run_ledger.complete(run.id, "ok")
        clock.advance(60)

        with pytest.raises(InvalidTransitionError):
            await run_ledger.update_status(run.id, RunStatus.COMPLETED)

        stored = await run_ledger.find_by_id(run.id)
        assert stored.updated_at == done.updated_at
        assert stored.version == done.version

    @pytest.mark.asyncio
    async def test_await_approval_and_resume(self, make_run, run_ledger):
        """Test the pause/resume cycle."""
        run = await make_run()

        paused = await run_ledger.await_approval(run.id)
        assert paused.status == RunStatus.AWAITING_APPROVAL

        with pytest.raises(InvalidTransitionError):
            await run_ledger.await_approval(run.id)
        with pytest.raises(InvalidTransitionError):
            await run_ledger.complete(run.id, "skipped the gate")

        resumed = await run_ledger.update_status(run.id, RunStatus.RUNNING)
        assert resumed.status == RunStatus.RUNNING
        assert resumed.completed_at is None

    @pytest.mark.asyncio
    async def test_same_status_is_a_touch(self, make_run, run_ledger, clock, event_bus):
        """Test setting the current status only refreshes updated_at."""
        run = await make_run()
        sub = event_bus.subscribe(event_types={LedgerEventType.RUN_STATUS_CHANGED})
        clock.advance(1)

        touched = await run_ledger.update_status(run.id, "running")

        assert touched.status == RunStatus.RUNNING
        assert touched.updated_at == clock.now
        assert event_bus.drain(sub) == []

    @pytest.mark.asyncio
    async def test_unknown_run(self, run_ledger):
        """Test operations on a missing run."""
        with pytest.raises(RunNotFoundError) as exc_info:
            await run_ledger.update_status("missing", RunStatus.FAILED)
        assert exc_info.value.code == ErrorCode.NOT_FOUND
        assert exc_info.value.context.run_id == "missing"

    def test_transition_table(self):
        """Test terminal states have no outgoing transitions."""
        for status, targets in VALID_TRANSITIONS.items():
            if status.is_terminal:
                assert targets == set()
        assert VALID_TRANSITIONS[RunStatus.AWAITING_APPROVAL] == {RunStatus.RUNNING, RunStatus.FAILED}


class TestRunUsage:
    """Test consumed snapshots and model changes."""

    @pytest.mark.asyncio
    async def test_update_consumed(self, make_run, run_ledger, event_bus):
        """Test a growing snapshot is stored and published."""
        sub = event_bus.subscribe(event_types={LedgerEventType.RUN_USAGE_UPDATED})
        run = await make_run()
        usage = Usage(input_tokens=10, total_tokens=10, cost_usd=0.01, steps=1, model_used="claude-sonnet-4-5")

        updated = await run_ledger.update_consumed(run.id, usage)

        assert updated.consumed == usage
        assert event_bus.drain(sub)[0].data["consumed"]["cost_usd"] == 0.01

    @pytest.mark.asyncio
    async def test_update_consumed_rejects_regression(self, make_run, run_ledger):
        """Test a shrinking snapshot is rejected and nothing changes."""
        run = await make_run()
        await run_ledger.update_consumed(run.id, Usage(cost_usd=1.0, steps=2))

        with pytest.raises(UsageRegressionError) as exc_info:
            await run_ledger.update_consumed(run.id, Usage(cost_usd=0.5, steps=2))

        assert exc_info.value.fields == ["cost_usd"]
        assert (await run_ledger.find_by_id(run.id)).consumed.cost_usd == 1.0

    @pytest.mark.asyncio
    async def test_update_model(self, make_run, run_ledger):
        """Test switching the current model."""
        run = await make_run()
        updated = await run_ledger.update_model(run.id, "claude-haiku-4-5")
        assert updated.current_model == "claude-haiku-4-5"

    @pytest.mark.asyncio
    async def test_record_downgrade(self, make_run, run_ledger):
        """Test a downgrade switches model and counts."""
        run = await make_run()

        downgraded = await run_ledger.record_downgrade(run.id, "claude-haiku-4-5")

        assert downgraded.current_model == "claude-haiku-4-5"
        assert downgraded.consumed.model_used == "claude-haiku-4-5"
        assert downgraded.consumed.downgrades == 1


class TestRunQueries:
    """Test lookups."""

    @pytest.mark.asyncio
    async def test_find_recent_window_and_order(self, make_run, run_ledger, clock):
        """Test only runs inside the window come back, newest first."""
        old = await make_run(key="old")
        clock.advance_hours(30)
        first = await make_run(key="first")
        clock.advance(10)
        second = await make_run(key="second")
        await make_run(key="other-agent", agent_id="writer")

        recent = await run_ledger.find_recent("researcher")

        assert [r.id for r in recent] == [second.id, first.id]
        assert old.id not in {r.id for r in await run_ledger.find_recent("researcher", hours=24)}
        assert len(await run_ledger.find_recent("researcher", hours=48)) == 3
        assert len(await run_ledger.find_recent("researcher", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_find_by_status(self, make_run, run_ledger):
        """Test filtering by status."""
        a = await make_run(key="a")
        b = await make_run(key="b")
        await run_ledger.await_approval(b.id)

        paused = await run_ledger.find_by_status(RunStatus.AWAITING_APPROVAL)

        assert [r.id for r in paused] == [b.id]
        assert a.id in {r.id for r in await run_ledger.find_by_status("running")}

    @pytest.mark.asyncio
    async def test_find_by_idempotency_key(self, make_run, run_ledger):
        """Test lookup by key."""
        run = await make_run(key="req-9")
        assert (await run_ledger.find_by_idempotency_key("req-9")).id == run.id
        assert await run_ledger.find_by_idempotency_key("nope") is None


class TestConcurrentWrites:
    """Test compare-and-set writes."""

    @pytest.mark.asyncio
    async def test_version_increases(self, make_run, run_ledger):
        """Test every write bumps the version."""
        run = await make_run()
        assert run.version == 0
        updated = await run_ledger.update_model(run.id, "m2")
        assert updated.version == 1

    @pytest.mark.asyncio
    async def test_stale_write_is_retried(self, budget):
        """Test a lost compare-and-set re-reads and re-applies."""
        store = InMemoryRunStore()
        ledger = RunLedger(store)
        run = await ledger.create("k", "a", None, budget, "t", "m")

        real_update = store.update
        attempts = []

        async def flaky_update(updated, expected_version):
            attempts.append(expected_version)
            if len(attempts) == 1:
                return None
            return await real_update(updated, expected_version)

        store.update = AsyncMock(side_effect=flaky_update)

        updated = await ledger.update_model(run.id, "m2")

        assert updated.current_model == "m2"
        assert store.update.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_conflicts(self, budget, caplog):
        """Test a hot run raises a retryable error and logs it."""
        store = InMemoryRunStore()
        ledger = RunLedger(store, logger=StructuredLogger("run_ledger.runs", json_output=True))
        run = await ledger.create("k", "a", None, budget, "t", "m")
        store.update = AsyncMock(return_value=None)

        with caplog.at_level(logging.ERROR, logger="run_ledger.runs"), pytest.raises(LedgerError) as exc_info:
            await ledger.update_model(run.id, "m2")

        assert exc_info.value.retryable is True
        assert exc_info.value.code == ErrorCode.INTERNAL_ERROR

        payload = json.loads(caplog.records[-1].getMessage())
        assert payload["message"] == "run_write_conflict"
        assert payload["error_code"] == "INTERNAL_ERROR"
        assert payload["attempts"] == 5

    @pytest.mark.asyncio
    async def test_concurrent_consumed_updates_keep_max(self, make_run, run_ledger):
        """Test interleaved monotonic updates never lose the larger snapshot."""
        run = await make_run()
        snapshots = [Usage(cost_usd=float(i), steps=i) for i in range(1, 6)]

        results = await asyncio.gather(
            *[run_ledger.update_consumed(run.id, u) for u in snapshots],
            return_exceptions=True,
        )

        stored = await run_ledger.find_by_id(run.id)
        assert stored.consumed.steps == 5
        for result in results:
            assert isinstance(result, (RunRecord, UsageRegressionError))


class TestRunFilter:
    """Test in-memory filtering."""

    def test_matches_status_set(self):
        """Test a set of statuses."""
        run = RunRecord(agent_id="a", status=RunStatus.FAILED, budget=ExecutionBudget())
        assert RunFilter(status={RunStatus.FAILED, RunStatus.CANCELLED}).matches(run)
        assert not RunFilter(status=RunStatus.RUNNING).matches(run)
        assert not RunFilter(agent_id="b").matches(run)
