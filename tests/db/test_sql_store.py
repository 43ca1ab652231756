"""Tests for SqlAlchemyProjectStore against in-memory SQLite (aiosqlite)."""

from datetime import UTC, datetime

import pytest
import pytest_asyncio

from phasegate.agent.runner_fake import AgentRunnerFake
from phasegate.core.exceptions import ConcurrentModificationError, PersistenceError, ProjectNotFoundError
from phasegate.db.base import build_engine, build_session_factory, create_tables
from phasegate.db.sql_store import SqlAlchemyProjectStore
from phasegate.domain.gates import GateStatus
from phasegate.domain.phases import Phase, PhaseStatus
from phasegate.domain.transitions import TransitionOutcome
from phasegate.domain.validation import Severity, ValidationIssue
from phasegate.schemas.orchestration import ApprovalGateRecord, PhaseHistoryRecord, Project
from phasegate.services.approval_gate_service import ApprovalGateService
from phasegate.services.phase_state_machine import PhaseStateMachine

pytestmark = pytest.mark.unit


@pytest_asyncio.fixture
async def sql_store():
    """Store over a fresh in-memory SQLite database."""
    engine = build_engine("sqlite+aiosqlite://")
    await create_tables(engine)

    yield SqlAlchemyProjectStore(build_session_factory(engine))

    await engine.dispose()


@pytest_asyncio.fixture
async def stored_project(sql_store):
    return await sql_store.create_project(Project(slug="sql-project", name="SQL Project"))


# =============================================================================
# PROJECTS
# =============================================================================


@pytest.mark.asyncio
async def test_create_and_load_round_trip(sql_store, stored_project):
    loaded = await sql_store.load_project(stored_project.id)

    assert loaded.version == 1
    assert loaded.slug == "sql-project"
    assert loaded.current_phase == Phase.ANALYSIS
    assert loaded.phases_completed == []
    assert loaded.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_save_project_bumps_version_and_persists_fields(sql_store, stored_project):
    warning = ValidationIssue(Severity.WARNING, "No frontmatter", Phase.ANALYSIS, "constitution.md")
    approved_at = datetime(2024, 5, 1, 8, 0, tzinfo=UTC)

    saved = await sql_store.save_project(
        stored_project.with_phase(
            Phase.STACK_SELECTION,
            [Phase.ANALYSIS],
            accumulated_warnings=[warning],
            stack_approved=True,
            stack_approval_date=approved_at,
        )
    )

    assert saved.version == 2
    loaded = await sql_store.load_project(stored_project.id)
    assert loaded.phases_completed == [Phase.ANALYSIS]
    assert loaded.accumulated_warnings == [warning]
    assert loaded.stack_approval_date == approved_at


@pytest.mark.asyncio
async def test_stale_save_is_rejected(sql_store, stored_project):
    await sql_store.save_project(stored_project.with_changes(name="first"))

    with pytest.raises(ConcurrentModificationError):
        await sql_store.save_project(stored_project.with_changes(name="second"))

    assert (await sql_store.load_project(stored_project.id)).name == "first"


@pytest.mark.asyncio
async def test_missing_project(sql_store):
    assert await sql_store.get_project("nope") is None
    with pytest.raises(ProjectNotFoundError):
        await sql_store.load_project("nope")
    with pytest.raises(ProjectNotFoundError):
        await sql_store.save_project(Project(id="nope", slug="nope", version=1))


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(sql_store, stored_project):
    with pytest.raises(RuntimeError):
        async with sql_store.transaction():
            await sql_store.save_artifact(stored_project.id, Phase.ANALYSIS, "brief.md", "draft")
            await sql_store.save_project(stored_project.with_changes(name="renamed"))
            raise RuntimeError("abort")

    assert await sql_store.list_artifacts(stored_project.id) == []
    loaded = await sql_store.load_project(stored_project.id)
    assert loaded.name == "SQL Project"
    assert loaded.version == 1


# =============================================================================
# HISTORY, ARTIFACTS, GATES
# =============================================================================


@pytest.mark.asyncio
async def test_phase_history_keeps_insertion_order(sql_store, stored_project):
    first = await sql_store.add_phase_history(PhaseHistoryRecord(project_id=stored_project.id, phase=Phase.ANALYSIS))
    await sql_store.add_phase_history(PhaseHistoryRecord(project_id=stored_project.id, phase=Phase.STACK_SELECTION))

    assert (await sql_store.get_open_phase_history(stored_project.id, Phase.ANALYSIS)).id == first.id

    await sql_store.update_phase_history(first.model_copy(update={"status": PhaseStatus.COMPLETED}))

    history = await sql_store.list_phase_history(stored_project.id)
    assert [(h.phase, h.status) for h in history] == [
        (Phase.ANALYSIS, PhaseStatus.COMPLETED),
        (Phase.STACK_SELECTION, PhaseStatus.IN_PROGRESS),
    ]
    assert await sql_store.get_open_phase_history(stored_project.id, Phase.ANALYSIS) is None


@pytest.mark.asyncio
async def test_history_for_unknown_project_is_rejected(sql_store):
    with pytest.raises(PersistenceError):
        await sql_store.add_phase_history(PhaseHistoryRecord(project_id="no-such-project", phase=Phase.ANALYSIS))

    assert await sql_store.list_phase_history("no-such-project") == []


@pytest.mark.asyncio
async def test_artifact_versions(sql_store, stored_project):
    v1 = await sql_store.save_artifact(stored_project.id, Phase.SPEC, "PRD.md", "one")
    same = await sql_store.save_artifact(stored_project.id, Phase.SPEC, "PRD.md", "one")
    v2 = await sql_store.save_artifact(stored_project.id, Phase.SPEC, "PRD.md", "two")
    await sql_store.save_artifact(stored_project.id, Phase.ANALYSIS, "brief.md", "brief")

    assert (v1.version, same.version, v2.version) == (1, 1, 2)
    assert same.id == v1.id

    latest = await sql_store.list_artifacts(stored_project.id)
    assert [(a.phase, a.filename, a.content) for a in latest] == [
        (Phase.ANALYSIS, "brief.md", "brief"),
        (Phase.SPEC, "PRD.md", "two"),
    ]
    assert [a.filename for a in await sql_store.list_artifacts(stored_project.id, Phase.SPEC)] == ["PRD.md"]
    versions = await sql_store.list_artifact_versions(stored_project.id, Phase.SPEC, "PRD.md")
    assert [a.content for a in versions] == ["one", "two"]


@pytest.mark.asyncio
async def test_save_gate_upserts(sql_store, stored_project):
    pending = await sql_store.save_gate(ApprovalGateRecord(project_id=stored_project.id, gate_name="stack"))
    approved = await sql_store.save_gate(
        pending.model_copy(update={"status": GateStatus.APPROVED, "approved": True, "approver": "cto"})
    )

    gates = await sql_store.list_gates(stored_project.id)
    assert len(gates) == 1
    assert approved.id == pending.id
    assert gates[0].status == GateStatus.APPROVED
    assert (await sql_store.get_gate(stored_project.id, "stack")).approver == "cto"
    assert await sql_store.get_gate(stored_project.id, "prd") is None


# =============================================================================
# STATE MACHINE OVER SQL
# =============================================================================


@pytest.mark.asyncio
async def test_state_machine_runs_over_sql_store(sql_store, stored_project, spec):
    gates = ApprovalGateService(sql_store, spec)
    machine = PhaseStateMachine(sql_store, AgentRunnerFake(), gates, spec)

    advanced = await machine.advance(stored_project.id)
    await machine.select_stack(stored_project.id, "nextjs_fullstack_expo")
    pending = await machine.advance(stored_project.id)
    await gates.approve(stored_project.id, "stack", approver="cto")
    resumed = await machine.advance(stored_project.id)

    assert advanced.outcome == TransitionOutcome.ADVANCED
    assert pending.outcome == TransitionOutcome.GATE_PENDING
    assert resumed.outcome == TransitionOutcome.ADVANCED

    project = await sql_store.load_project(stored_project.id)
    assert project.current_phase == Phase.SPEC
    assert project.phases_completed == [Phase.ANALYSIS, Phase.STACK_SELECTION]
    assert project.stack_approved is True
    statuses = [(h.phase, h.status) for h in await sql_store.list_phase_history(stored_project.id)]
    assert statuses == [
        (Phase.ANALYSIS, PhaseStatus.COMPLETED),
        (Phase.STACK_SELECTION, PhaseStatus.COMPLETED),
    ]
