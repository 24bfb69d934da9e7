"""
Shared test fixtures for run-ledger tests.

This module provides:
- A controllable clock
- In-memory ledgers wired to one event bus
- Budget and tool fixtures
"""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from run_ledger.approvals import ApprovalManager, InMemoryApprovalStore, ToolDescriptor
from run_ledger.config import ApprovalConfig, RunConfig, StepConfig
from run_ledger.events import InMemoryEventBus
from run_ledger.runs import InMemoryRunStore, RunLedger
from run_ledger.steps import InMemoryStepStore, StepLedger
from run_ledger.usage import ExecutionBudget

T0 = 1_700_000_000.0


# =============================================================================
# Clock
# =============================================================================


@dataclass
class FakeClock:
    """Deterministic replacement for time.time."""
    now: float = T0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def advance_hours(self, hours: float) -> None:
        self.now += hours * 3600.0


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Ledgers
# =============================================================================


class RecordingEventBus(InMemoryEventBus):
    """In-memory bus whose buffered events can be read without blocking."""

    def drain(self, subscription) -> list:
        queue = self._queues.get(subscription.subscription_id)
        drained = []
        while queue is not None and not queue.empty():
            event = queue.get_nowait()
            if event is not None:
                drained.append(event)
        return drained


@pytest.fixture
def make_event_bus():
    return RecordingEventBus


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def run_ledger(clock, event_bus) -> RunLedger:
    return RunLedger(InMemoryRunStore(), config=RunConfig(), event_bus=event_bus, clock=clock)


@pytest.fixture
def step_ledger(clock, event_bus) -> StepLedger:
    return StepLedger(InMemoryStepStore(), config=StepConfig(), event_bus=event_bus, clock=clock)


@pytest.fixture
def approval_manager(run_ledger, clock, event_bus) -> ApprovalManager:
    return ApprovalManager(
        InMemoryApprovalStore(),
        run_ledger,
        config=ApprovalConfig(environment="development"),
        event_bus=event_bus,
        clock=clock,
    )


# =============================================================================
# Sample data
# =============================================================================


@pytest.fixture
def budget() -> ExecutionBudget:
    return ExecutionBudget(max_cost_usd=10.0, max_tokens=100_000, max_steps=20)


@pytest.fixture
def delete_tool() -> ToolDescriptor:
    return ToolDescriptor(
        name="delete_file",
        description="Delete a file from the workspace",
        scopes=["delete:files"],
        side_effectful=True,
        has_rollback=False,
    )


@pytest.fixture
def search_tool() -> ToolDescriptor:
    return ToolDescriptor(
        name="web_search",
        description="Search the web",
        scopes=["read:web"],
        allowlisted_domains=["example.com"],
    )


@pytest.fixture
def make_run(run_ledger, budget):
    """Factory creating a running run with sensible defaults."""
    async def _make(key: str = "req-1", agent_id: str = "researcher", **kwargs):
        return await run_ledger.create(
            idempotency_key=key,
            agent_id=agent_id,
            input=kwargs.pop("input", {"query": "summarize the quarterly report"}),
            budget=kwargs.pop("budget", budget),
            trace_id=kwargs.pop("trace_id", "trace_test"),
            current_model=kwargs.pop("current_model", "claude-sonnet-4-5"),
            **kwargs,
        )
    return _make
