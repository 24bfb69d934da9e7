"""
Tests for the approval manager.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from run_ledger.approvals import (
    ApprovalDecision,
    ApprovalManager,
    ApprovalSignal,
    ApprovalStatus,
    InMemoryApprovalStore,
    RiskLevel,
    ToolDescriptor,
)
from run_ledger.config import ApprovalConfig
from run_ledger.errors import (
    ApprovalAlreadyResolvedError,
    ApprovalExpiredError,
    ApprovalNotFoundError,
    ErrorCode,
    InvalidTransitionError,
)
from run_ledger.events import LedgerEventType
from run_ledger.runs import RunError, RunStatus
from run_ledger.usage import ExecutionBudget, Usage


async def _request(approval_manager, run, tool, input=None, cost=0.0):
    context = approval_manager.build_context(run, step_index=3, tool=tool, input=input or {"path": "/tmp/x"}, estimated_cost=cost)
    check = approval_manager.check_approval_required(context)
    assert check.required
    return await approval_manager.request_approval(context, check.triggers, check.risk_level)


class TestBuildContext:
    """Test context construction from a run."""

    @pytest.mark.asyncio
    async def test_budget_remaining(self, approval_manager, make_run, run_ledger, search_tool):
        """Test remaining budget reflects consumed cost."""
        run = await make_run()
        run = await run_ledger.update_consumed(run.id, Usage(cost_usd=4.0))

        context = approval_manager.build_context(run, 1, search_tool, estimated_cost=0.5)

        assert context.budget_remaining == pytest.approx(6.0)
        assert context.budget_total == 10.0
        assert context.environment == "development"
        assert context.step_index == 1

    @pytest.mark.asyncio
    async def test_unbounded_budget(self, approval_manager, make_run, search_tool):
        """Test a run without a cost cap has infinite remaining budget."""
        run = await make_run(budget=ExecutionBudget())
        context = approval_manager.build_context(run, 0, search_tool, estimated_cost=1000.0)

        assert context.budget_remaining == float("inf")
        assert not approval_manager.check_approval_required(
            approval_manager.build_context(run, 0, search_tool, estimated_cost=1.0)
        ).required


class TestRequestApproval:
    """Test pausing a run behind a request."""

    @pytest.mark.asyncio
    async def test_request_pauses_run(self, approval_manager, make_run, run_ledger, delete_tool, clock, event_bus):
        """Test a request is pending, expires in 24h and pauses the run."""
        sub = event_bus.subscribe(event_types={LedgerEventType.APPROVAL_REQUESTED})
        run = await make_run()

        request = await _request(approval_manager, run, delete_tool)

        assert request.status == ApprovalStatus.PENDING
        assert request.run_id == run.id
        assert request.step_index == 3
        assert request.risk_level == RiskLevel.CRITICAL
        assert request.requested_by == "delete_file"
        assert request.requested_at == clock.now
        assert request.expires_at == clock.now + 24 * 3600
        assert "Delete operation" in request.risk_factors
        assert request.action.tool_name == "delete_file"
        assert request.action.input == {"path": "/tmp/x"}
        assert request.action.description == 'delete_file: Delete a file from the workspace\nInput: {"path":"/tmp/x"}'

        assert (await run_ledger.find_by_id(run.id)).status == RunStatus.AWAITING_APPROVAL
        assert event_bus.drain(sub)[0].approval_id == request.id

    @pytest.mark.asyncio
    async def test_request_on_non_running_run(self, approval_manager, make_run, run_ledger, delete_tool):
        """Test a finished run cannot be paused and no request is left behind."""
        run = await make_run()
        await run_ledger.complete(run.id, "done")

        with pytest.raises(InvalidTransitionError):
            await _request(approval_manager, run, delete_tool)

        assert await approval_manager.get_pending_for_run(run.id) == []

    @pytest.mark.asyncio
    async def test_pending_queries(self, approval_manager, make_run, delete_tool, clock):
        """Test pending lookups per run and globally, newest first."""
        run_a = await make_run(key="a")
        run_b = await make_run(key="b")
        first = await _request(approval_manager, run_a, delete_tool)
        clock.advance(1)
        second = await _request(approval_manager, run_b, delete_tool)

        assert [r.id for r in await approval_manager.get_pending_for_run(run_a.id)] == [first.id]
        assert [r.id for r in await approval_manager.get_all_pending()] == [second.id, first.id]
        assert len(await approval_manager.get_all_pending(limit=1)) == 1
        assert (await approval_manager.get_by_id(first.id)).id == first.id
        assert await approval_manager.get_by_id("missing") is None

    def test_describe_action_truncates(self, approval_manager, delete_tool):
        """Test long inputs are cut with an ellipsis."""
        description = approval_manager.describe_action(delete_tool, {"data": "x" * 500})
        summary = description.split("\nInput: ", 1)[1]

        assert summary.endswith("...")
        assert len(summary) == 203

    @pytest.mark.asyncio
    async def test_non_string_keys(self, approval_manager, make_run, run_ledger, delete_tool):
        """Test inputs keyed by non-strings are described and stored."""
        run = await make_run()

        request = await _request(approval_manager, run, delete_tool, input={1: "file.txt"})

        assert request.action.description.endswith('Input: {"1":"file.txt"}')
        assert (await run_ledger.find_by_id(run.id)).status == RunStatus.AWAITING_APPROVAL
        assert [r.id for r in await approval_manager.get_pending_for_run(run.id)] == [request.id]

    @pytest.mark.asyncio
    async def test_store_failure_leaves_run_running(self, approval_manager, make_run, run_ledger, delete_tool):
        """Test a request that cannot be stored does not leave the run paused."""
        run = await make_run()
        approval_manager._store.insert = AsyncMock(side_effect=RuntimeError("database unavailable"))

        with pytest.raises(RuntimeError, match="database unavailable"):
            await _request(approval_manager, run, delete_tool)

        assert (await run_ledger.find_by_id(run.id)).status == RunStatus.RUNNING
        assert await approval_manager.get_pending_for_run(run.id) == []


class TestResolve:
    """Test approving and declining."""

    @pytest.mark.asyncio
    async def test_approve_resumes_run(self, approval_manager, make_run, run_ledger, delete_tool, clock, event_bus):
        """Test approval resumes the run and records the decision."""
        sub = event_bus.subscribe(event_types={LedgerEventType.APPROVAL_APPROVED})
        run = await make_run()
        request = await _request(approval_manager, run, delete_tool)
        clock.advance(60)

        resolved = await approval_manager.resolve(request.id, ApprovalDecision(
            approved=True,
            approved_by="alice@example.com",
            reason="looks fine",
            modified_input={"path": "/tmp/y"},
        ))

        assert resolved.status == ApprovalStatus.APPROVED
        assert resolved.resolved_by == "alice@example.com"
        assert resolved.resolved_at == clock.now
        assert resolved.resolution.decision == "approve"
        assert resolved.resolution.modified_input == {"path": "/tmp/y"}
        assert (await run_ledger.find_by_id(run.id)).status == RunStatus.RUNNING
        assert len(event_bus.drain(sub)) == 1

    @pytest.mark.asyncio
    async def test_decline_fails_run(self, approval_manager, make_run, run_ledger, delete_tool):
        """Test decline fails the run with a non-retryable error."""
        run = await make_run()
        request = await _request(approval_manager, run, delete_tool)

        resolved = await approval_manager.resolve(request.id, ApprovalDecision(
            approved=False,
            approved_by="bob",
            reason="too risky",
        ))

        assert resolved.status == ApprovalStatus.DECLINED
        assert resolved.resolution.decision == "decline"
        failed = await run_ledger.find_by_id(run.id)
        assert failed.status == RunStatus.FAILED
        assert failed.error.code == ErrorCode.APPROVAL_DECLINED.value
        assert failed.error.message == "Approval declined: too risky"
        assert failed.error.retryable is False
        assert failed.error.step == 3
        assert failed.completed_at is not None

    @pytest.mark.asyncio
    async def test_decline_without_reason(self, approval_manager, make_run, run_ledger, delete_tool):
        """Test the default decline message."""
        run = await make_run()
        request = await _request(approval_manager, run, delete_tool)

        await approval_manager.resolve(request.id, ApprovalDecision(approved=False, approved_by="bob"))

        assert (await run_ledger.find_by_id(run.id)).error.message == "Approval declined: No reason provided"

    @pytest.mark.asyncio
    async def test_resolve_twice(self, approval_manager, make_run, delete_tool):
        """Test a second resolution is rejected and the first stands."""
        run = await make_run()
        request = await _request(approval_manager, run, delete_tool)
        await approval_manager.resolve(request.id, ApprovalDecision(approved=True, approved_by="alice"))

        with pytest.raises(ApprovalAlreadyResolvedError) as exc_info:
            await approval_manager.resolve(request.id, ApprovalDecision(approved=False, approved_by="bob"))

        assert exc_info.value.code == ErrorCode.ALREADY_RESOLVED
        assert "approved" in str(exc_info.value)
        assert (await approval_manager.get_by_id(request.id)).resolved_by == "alice"

    @pytest.mark.asyncio
    async def test_concurrent_resolutions_single_winner(self, approval_manager, make_run, run_ledger, delete_tool):
        """Test racing approve/decline calls produce exactly one winner."""
        run = await make_run()
        request = await _request(approval_manager, run, delete_tool)

        results = await asyncio.gather(
            approval_manager.resolve(request.id, ApprovalDecision(approved=True, approved_by="alice")),
            approval_manager.resolve(request.id, ApprovalDecision(approved=False, approved_by="bob")),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, ApprovalAlreadyResolvedError)]
        assert len(winners) == 1
        assert len(losers) == 1

        stored = await approval_manager.get_by_id(request.id)
        run = await run_ledger.find_by_id(run.id)
        expected_run_status = RunStatus.RUNNING if stored.status == ApprovalStatus.APPROVED else RunStatus.FAILED
        assert run.status == expected_run_status

    @pytest.mark.asyncio
    async def test_resolve_unknown(self, approval_manager):
        """Test resolving a missing request."""
        with pytest.raises(ApprovalNotFoundError, match="Approval request not found: nope"):
            await approval_manager.resolve("nope", ApprovalDecision(approved=True, approved_by="alice"))

    @pytest.mark.asyncio
    async def test_approve_after_run_failed(self, approval_manager, make_run, run_ledger, delete_tool, event_bus):
        """Test approving a request whose run already failed still settles it."""
        run = await make_run()
        request = await _request(approval_manager, run, delete_tool)
        await run_ledger.fail(run.id, RunError(message="worker crashed", code="TOOL_ERROR"))
        sub = event_bus.subscribe(event_types={LedgerEventType.APPROVAL_APPROVED})
        waiter = asyncio.create_task(approval_manager.wait_for_resolution(request.id, timeout=5))
        await asyncio.sleep(0)

        resolved = await approval_manager.resolve(request.id, ApprovalDecision(approved=True, approved_by="alice"))

        assert resolved.status == ApprovalStatus.APPROVED
        stored_run = await run_ledger.find_by_id(run.id)
        assert stored_run.status == RunStatus.FAILED
        assert stored_run.error.code == "TOOL_ERROR"
        assert len(event_bus.drain(sub)) == 1
        assert (await asyncio.wait_for(waiter, timeout=1)).status == ApprovalStatus.APPROVED

    @pytest.mark.asyncio
    async def test_decline_after_run_failed(self, approval_manager, make_run, run_ledger, delete_tool):
        """Test declining keeps the run's own failure."""
        run = await make_run()
        request = await _request(approval_manager, run, delete_tool)
        await run_ledger.fail(run.id, RunError(message="worker crashed", code="TOOL_ERROR"))

        resolved = await approval_manager.resolve(request.id, ApprovalDecision(approved=False, approved_by="bob"))

        assert resolved.status == ApprovalStatus.DECLINED
        assert (await run_ledger.find_by_id(run.id)).error.code == "TOOL_ERROR"


class TestExpiry:
    """Test expiry on resolve and via the sweep."""

    @pytest.mark.asyncio
    async def test_resolve_at_exact_expiry_succeeds(self, approval_manager, make_run, delete_tool, clock):
        """Test the expiry instant is still resolvable."""
        run = await make_run()
        request = await _request(approval_manager, run, delete_tool)
        clock.now = request.expires_at

        resolved = await approval_manager.resolve(request.id, ApprovalDecision(approved=True, approved_by="alice"))
        assert resolved.status == ApprovalStatus.APPROVED

    @pytest.mark.asyncio
    async def test_resolve_after_expiry(self, approval_manager, make_run, run_ledger, delete_tool, clock, event_bus):
        """Test a late resolution expires the request and leaves the run paused."""
        sub = event_bus.subscribe(event_types={LedgerEventType.APPROVAL_EXPIRED})
        run = await make_run()
        request = await _request(approval_manager, run, delete_tool)
        clock.advance_hours(25)

        with pytest.raises(ApprovalExpiredError) as exc_info:
            await approval_manager.resolve(request.id, ApprovalDecision(approved=True, approved_by="alice"))

        assert exc_info.value.code == ErrorCode.APPROVAL_EXPIRED
        assert (await approval_manager.get_by_id(request.id)).status == ApprovalStatus.EXPIRED
        assert (await run_ledger.find_by_id(run.id)).status == RunStatus.AWAITING_APPROVAL
        assert len(event_bus.drain(sub)) == 1

        with pytest.raises(ApprovalExpiredError):
            await approval_manager.resolve(request.id, ApprovalDecision(approved=False, approved_by="bob"))

    @pytest.mark.asyncio
    async def test_expire_old_is_idempotent(self, approval_manager, make_run, delete_tool, clock):
        """Test the sweep expires stale requests once."""
        stale = await _request(approval_manager, await make_run(key="a"), delete_tool)
        clock.advance_hours(23)
        fresh = await _request(approval_manager, await make_run(key="b"), delete_tool)
        clock.advance_hours(2)

        assert await approval_manager.expire_old() == 1
        assert await approval_manager.expire_old() == 0

        assert (await approval_manager.get_by_id(stale.id)).status == ApprovalStatus.EXPIRED
        assert (await approval_manager.get_by_id(fresh.id)).status == ApprovalStatus.PENDING

    @pytest.mark.asyncio
    async def test_reconcile_expired_runs(self, approval_manager, make_run, run_ledger, delete_tool, clock):
        """Test runs stuck behind an expired request are failed as retryable."""
        stuck = await make_run(key="stuck")
        await _request(approval_manager, stuck, delete_tool)
        clock.advance_hours(25)
        waiting = await make_run(key="waiting")
        await _request(approval_manager, waiting, delete_tool)
        await approval_manager.expire_old()

        failed = await approval_manager.reconcile_expired_runs()

        assert failed == [stuck.id]
        run = await run_ledger.find_by_id(stuck.id)
        assert run.status == RunStatus.FAILED
        assert run.error.code == ErrorCode.APPROVAL_EXPIRED.value
        assert run.error.retryable is True
        assert run.error.step == 3
        assert (await run_ledger.find_by_id(waiting.id)).status == RunStatus.AWAITING_APPROVAL
        assert await approval_manager.reconcile_expired_runs() == []


class TestWaitForResolution:
    """Test in-process wake-ups."""

    @pytest.mark.asyncio
    async def test_wakes_on_resolve(self, approval_manager, make_run, delete_tool):
        """Test a waiter returns once another task resolves."""
        run = await make_run()
        request = await _request(approval_manager, run, delete_tool)

        waiter = asyncio.create_task(approval_manager.wait_for_resolution(request.id, timeout=5))
        await asyncio.sleep(0)
        await approval_manager.resolve(request.id, ApprovalDecision(approved=True, approved_by="alice"))

        result = await waiter
        assert result.status == ApprovalStatus.APPROVED

    @pytest.mark.asyncio
    async def test_timeout_returns_pending(self, approval_manager, make_run, delete_tool):
        """Test a timed-out wait hands back the pending request."""
        run = await make_run()
        request = await _request(approval_manager, run, delete_tool)

        result = await approval_manager.wait_for_resolution(request.id, timeout=0.01)
        assert result.status == ApprovalStatus.PENDING

    @pytest.mark.asyncio
    async def test_already_resolved_returns_immediately(self, approval_manager, make_run, delete_tool):
        """Test no wait happens for a settled request."""
        run = await make_run()
        request = await _request(approval_manager, run, delete_tool)
        await approval_manager.resolve(request.id, ApprovalDecision(approved=False, approved_by="bob"))

        result = await approval_manager.wait_for_resolution(request.id)
        assert result.status == ApprovalStatus.DECLINED

    @pytest.mark.asyncio
    async def test_unknown_request(self, approval_manager):
        """Test waiting on a missing request."""
        with pytest.raises(ApprovalNotFoundError):
            await approval_manager.wait_for_resolution("missing", timeout=0.01)
        assert approval_manager._waiters == {}

    @pytest.mark.asyncio
    async def test_timed_out_waiter_does_not_strand_others(self, approval_manager, make_run, delete_tool):
        """Test one waiter timing out leaves the other waiters wakeable."""
        run = await make_run()
        request = await _request(approval_manager, run, delete_tool)

        short = asyncio.create_task(approval_manager.wait_for_resolution(request.id, timeout=0.01))
        long = asyncio.create_task(approval_manager.wait_for_resolution(request.id, timeout=5))
        assert (await short).status == ApprovalStatus.PENDING

        await approval_manager.resolve(request.id, ApprovalDecision(approved=True, approved_by="alice"))

        result = await asyncio.wait_for(long, timeout=1)
        assert result.status == ApprovalStatus.APPROVED
        assert approval_manager._waiters == {}


class TestSignals:
    """Test cross-process signaling hooks."""

    @pytest.mark.asyncio
    async def test_resolve_sends_signal(self, run_ledger, make_run, delete_tool, clock):
        """Test every settle publishes an ApprovalSignal."""
        signals = AsyncMock()
        manager = ApprovalManager(InMemoryApprovalStore(), run_ledger, signals=signals, clock=clock)
        run = await make_run()
        request = await _request(manager, run, delete_tool)

        await manager.resolve(request.id, ApprovalDecision(approved=True, approved_by="alice"))

        signals.signal.assert_awaited_once()
        sent = signals.signal.await_args.args[0]
        assert isinstance(sent, ApprovalSignal)
        assert sent.approval_id == request.id
        assert sent.run_id == run.id
        assert sent.status == "approved"
        assert sent.resolution["decision"] == "approve"

    @pytest.mark.asyncio
    async def test_wait_uses_signal_channel(self, run_ledger, make_run, delete_tool, clock):
        """Test waits go through the channel when one is configured."""
        signals = AsyncMock()
        signals.wait.return_value = None
        manager = ApprovalManager(InMemoryApprovalStore(), run_ledger, signals=signals, clock=clock)
        run = await make_run()
        request = await _request(manager, run, delete_tool)

        result = await manager.wait_for_resolution(request.id, timeout=1)

        signals.wait.assert_awaited_once_with(request.id, timeout=1)
        assert result.status == ApprovalStatus.PENDING


class TestTriggerSource:
    """Test where the manager gets its triggers."""

    def test_defaults(self, approval_manager):
        """Test the default set is used when nothing is configured."""
        assert len(approval_manager.triggers) == 8

    def test_triggers_file(self, tmp_path, run_ledger):
        """Test a configured trigger file replaces the defaults."""
        path = tmp_path / "triggers.json"
        path.write_text(json.dumps({"triggers": [
            {"id": "only", "condition": "environment_is_production", "risk_level": "high"},
        ]}))

        manager = ApprovalManager(InMemoryApprovalStore(), run_ledger, config=ApprovalConfig(triggers_file=path))

        assert [t.id for t in manager.triggers] == ["only"]

    @pytest.mark.asyncio
    async def test_production_environment(self, run_ledger, make_run, search_tool):
        """Test the configured environment reaches the triggers."""
        manager = ApprovalManager(
            InMemoryApprovalStore(),
            run_ledger,
            config=ApprovalConfig(environment="production"),
        )
        run = await make_run()

        check = manager.check_approval_required(manager.build_context(run, 0, search_tool))

        assert check.required
        assert check.trigger_ids == ["production_env"]
        assert check.risk_level == RiskLevel.MEDIUM


class TestRiskMonotonicity:
    """Test adding triggers never lowers the required risk."""

    @pytest.mark.asyncio
    async def test_more_matches_never_lower_risk(self, approval_manager, make_run):
        """Test a riskier tool never gets a lower level."""
        run = await make_run()
        plain = ToolDescriptor(name="write", scopes=["write:staging"], side_effectful=True, has_rollback=True)
        riskier = ToolDescriptor(name="write", scopes=["write:staging", "billing:charge"], side_effectful=True)

        low = approval_manager.check_approval_required(approval_manager.build_context(run, 0, plain))
        high = approval_manager.check_approval_required(approval_manager.build_context(run, 0, riskier))

        assert high.risk_level.rank >= low.risk_level.rank
        assert set(low.trigger_ids) <= set(high.trigger_ids)
