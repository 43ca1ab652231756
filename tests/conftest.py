"""Shared test fixtures for all test groups."""

import json

import pytest
import pytest_asyncio

from phasegate.agent.runner_fake import AgentRunnerFake
from phasegate.core.locking import InMemoryProjectLock
from phasegate.core.metrics import InMemoryMetrics
from phasegate.core.orchestrator_spec import default_orchestrator_spec
from phasegate.db.memory_store import InMemoryProjectStore
from phasegate.schemas.orchestration import Project
from phasegate.services.approval_gate_service import ApprovalGateService
from phasegate.services.legacy_migrator import LegacyMigrator
from phasegate.services.phase_state_machine import PhaseStateMachine


@pytest.fixture
def complete_stack():
    """stack.json content with every required key."""
    return json.dumps({"frontend": "Next.js", "backend": "FastAPI", "database": "PostgreSQL"})


@pytest.fixture
def spec():
    """Built-in orchestrator spec."""
    return default_orchestrator_spec()


@pytest.fixture
def store():
    """Fresh in-memory project store."""
    return InMemoryProjectStore()


@pytest.fixture
def metrics():
    return InMemoryMetrics()


@pytest.fixture
def runner_fake():
    """AgentRunnerFake with happy_path scenario (default)."""
    return AgentRunnerFake(scenario="happy_path")


@pytest.fixture
def gate_service(store, spec, metrics):
    return ApprovalGateService(store, spec, metrics)


@pytest.fixture
def migrator(spec, metrics):
    return LegacyMigrator.from_spec(spec, metrics)


@pytest.fixture
def make_state_machine(store, spec, gate_service, migrator, metrics):
    """Factory: state machine over the shared store with a chosen runner scenario."""

    def _make(scenario: str = "happy_path", agent_timeout: float = 5.0, lock_wait: float = 5.0):
        return PhaseStateMachine(
            store,
            AgentRunnerFake(scenario=scenario),
            gate_service,
            spec,
            lock=InMemoryProjectLock(wait_timeout=lock_wait),
            migrator=migrator,
            metrics=metrics,
            agent_timeout=agent_timeout,
        )

    return _make


@pytest.fixture
def state_machine(make_state_machine):
    """Happy-path state machine."""
    return make_state_machine()


@pytest_asyncio.fixture
async def project(store):
    """Stored project at ANALYSIS."""
    return await store.create_project(Project(slug="inventory-tracker", name="Inventory Tracker"))
