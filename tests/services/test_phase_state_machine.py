"""Tests for PhaseStateMachine.

Covers advancing through every phase, gate-pending resumption, agent and
validation failures, rollback, atomicity under storage failure, locking,
stack selection and history idempotency. All runs use AgentRunnerFake and
the in-memory store.
"""

import asyncio
import json

import pytest

from phasegate.agent.runner import AgentRunResult
from phasegate.core.exceptions import CompositionLockedError, ProjectNotFoundError
from phasegate.domain.phases import PHASE_ORDER, AgentRole, Phase, PhaseStatus
from phasegate.domain.transitions import TransitionOutcome
from phasegate.services.phase_state_machine import ROLLED_BACK_MESSAGE, PhaseStateMachine

pytestmark = pytest.mark.unit

EXPO_COMPOSITION = "nextjs_app_router+expo_integration+integrated+neon_postgres+monolith"


async def advance_to(state_machine, gate_service, project_id, target):
    """Drive a project forward, selecting a stack and approving blocking gates on the way."""
    project = await state_machine.store.load_project(project_id)
    while project.current_phase != target:
        if project.current_phase == Phase.STACK_SELECTION and project.stack_choice is None:
            await state_machine.select_stack(project_id, EXPO_COMPOSITION)
        result = await state_machine.advance(project_id)
        if result.outcome == TransitionOutcome.GATE_PENDING:
            await gate_service.approve(project_id, result.pending_gate, approver="lead")
            result = await state_machine.advance(project_id)
        assert result.outcome == TransitionOutcome.ADVANCED, result
        project = await state_machine.store.load_project(project_id)
    return project


class RaisingRunner:
    async def run_agent(self, phase, role, project, context_artifacts):
        raise RuntimeError("connection reset by peer")


class NoneRunner:
    async def run_agent(self, phase, role, project, context_artifacts):
        return None


class JsonContentRunner:
    """Hands back parsed JSON instead of text, bypassing model validation."""

    async def run_agent(self, phase, role, project, context_artifacts):
        return AgentRunResult.model_construct(
            artifacts={"project-brief.md": {"title": "x"}, "constitution.md": "# Constitution\n"},
            error=None,
        )


class ValidatingJsonContentRunner:
    async def run_agent(self, phase, role, project, context_artifacts):
        return AgentRunResult(artifacts={"project-brief.md": {"title": "x"}})


# =============================================================================
# ADVANCE
# =============================================================================


@pytest.mark.asyncio
async def test_advance_analysis_happy_path(state_machine, store, project):
    result = await state_machine.advance(project.id)

    assert result.outcome == TransitionOutcome.ADVANCED
    assert result.advanced
    assert result.from_phase == Phase.ANALYSIS
    assert result.to_phase == Phase.STACK_SELECTION
    assert result.validation.passed

    stored = await store.load_project(project.id)
    assert stored.current_phase == Phase.STACK_SELECTION
    assert stored.phases_completed == [Phase.ANALYSIS]
    assert stored.version == project.version + 1

    artifacts = {a.filename for a in await store.list_artifacts(project.id, Phase.ANALYSIS)}
    assert artifacts == {"project-brief.md", "constitution.md"}

    history = await store.list_phase_history(project.id)
    assert [(h.phase, h.status) for h in history] == [(Phase.ANALYSIS, PhaseStatus.COMPLETED)]
    assert history[0].completed_at is not None


@pytest.mark.asyncio
async def test_agents_receive_accumulated_context(state_machine, gate_service, project):
    await advance_to(state_machine, gate_service, project.id, Phase.SOLUTIONING)

    await state_machine.advance(project.id)

    calls = {role: context for _, role, context in state_machine.runner.calls}
    assert calls[AgentRole.ANALYST] == ()
    assert "stack.json" in calls[AgentRole.PM]
    assert "DEPENDENCIES.md" in calls[AgentRole.ARCHITECT]
    # Later roles in a phase see earlier roles' output
    assert "architecture.md" in calls[AgentRole.SCRUMMASTER]


@pytest.mark.asyncio
async def test_full_run_reaches_done(state_machine, gate_service, store, project):
    final = await advance_to(state_machine, gate_service, project.id, Phase.DONE)

    assert final.phases_completed == list(PHASE_ORDER[:-1])
    assert final.stack_approved and final.dependencies_approved

    again = await state_machine.advance(project.id)
    assert again.outcome == TransitionOutcome.ALREADY_COMPLETE
    assert (await store.load_project(project.id)).version == final.version


@pytest.mark.asyncio
async def test_unknown_project_raises(state_machine):
    with pytest.raises(ProjectNotFoundError):
        await state_machine.advance("no-such-project")


# =============================================================================
# STACK SELECTION AND GATES
# =============================================================================


@pytest.mark.asyncio
async def test_stack_selection_without_stack_fails_validation(state_machine, gate_service, project):
    await advance_to(state_machine, gate_service, project.id, Phase.STACK_SELECTION)

    result = await state_machine.advance(project.id)

    assert result.outcome == TransitionOutcome.VALIDATION_FAILED
    assert "stack.json" in result.error
    assert result.to_phase == Phase.STACK_SELECTION


@pytest.mark.asyncio
async def test_unapproved_stack_is_gate_pending(state_machine, gate_service, store, project):
    await advance_to(state_machine, gate_service, project.id, Phase.STACK_SELECTION)
    await state_machine.select_stack(project.id, EXPO_COMPOSITION)

    result = await state_machine.advance(project.id)

    assert result.outcome == TransitionOutcome.GATE_PENDING
    assert result.pending_gate == "stack"
    assert result.validation.passed
    stored = await store.load_project(project.id)
    assert stored.current_phase == Phase.STACK_SELECTION
    assert Phase.STACK_SELECTION not in stored.phases_completed

    open_record = await store.get_open_phase_history(project.id, Phase.STACK_SELECTION)
    assert open_record.status == PhaseStatus.IN_PROGRESS
    assert open_record.awaiting_gate == "stack"

    await gate_service.approve(project.id, "stack", approver="cto")
    resumed = await state_machine.advance(project.id)

    assert resumed.outcome == TransitionOutcome.ADVANCED
    assert resumed.to_phase == Phase.SPEC
    history = [h for h in await store.list_phase_history(project.id) if h.phase == Phase.STACK_SELECTION]
    assert len(history) == 1
    assert history[0].status == PhaseStatus.COMPLETED
    assert history[0].awaiting_gate is None


@pytest.mark.asyncio
async def test_gate_resumption_does_not_rerun_agents(state_machine, gate_service, store, project):
    await advance_to(state_machine, gate_service, project.id, Phase.DEPENDENCIES)

    pending = await state_machine.advance(project.id)
    assert pending.outcome == TransitionOutcome.GATE_PENDING
    assert pending.pending_gate == "dependencies"
    saved = await store.list_artifacts(project.id, Phase.DEPENDENCIES)
    assert {a.filename for a in saved} == {"DEPENDENCIES.md", "dependencies.json"}
    calls_before = len(state_machine.runner.calls)

    await gate_service.approve(project.id, "dependencies", approver="security")
    resumed = await state_machine.advance(project.id)

    assert resumed.outcome == TransitionOutcome.ADVANCED
    assert len(state_machine.runner.calls) == calls_before


@pytest.mark.asyncio
async def test_rejected_gate_keeps_blocking(state_machine, gate_service, project):
    await advance_to(state_machine, gate_service, project.id, Phase.DEPENDENCIES)
    await state_machine.advance(project.id)

    await gate_service.reject(project.id, "dependencies", rejected_by="security", reason="GPL dependency")
    result = await state_machine.advance(project.id)

    assert result.outcome == TransitionOutcome.GATE_PENDING
    assert result.pending_gate == "dependencies"


@pytest.mark.asyncio
async def test_non_blocking_gate_does_not_stop_spec(state_machine, gate_service, store, project):
    await advance_to(state_machine, gate_service, project.id, Phase.SPEC)

    result = await state_machine.advance(project.id)

    assert result.outcome == TransitionOutcome.ADVANCED
    assert (await store.get_gate(project.id, "prd")).approved is False


@pytest.mark.asyncio
async def test_select_stack_converts_legacy_id(state_machine, store, project):
    updated = await state_machine.select_stack(project.id, "nextjs_fullstack_expo")

    assert updated.stack_choice == EXPO_COMPOSITION
    [stack] = await store.list_artifacts(project.id, Phase.STACK_SELECTION)
    document = json.loads(stack.content)
    assert document["composition"] == EXPO_COMPOSITION
    assert document["frontend"] == "nextjs_app_router"
    assert document["database"] == "neon_postgres"


@pytest.mark.asyncio
async def test_select_stack_rejects_unknown_id(state_machine, project):
    with pytest.raises(ValueError):
        await state_machine.select_stack(project.id, "cobol_mainframe")


@pytest.mark.asyncio
async def test_select_stack_locked_after_approval(state_machine, gate_service, project):
    await state_machine.select_stack(project.id, EXPO_COMPOSITION)
    await gate_service.approve(project.id, "stack", approver="cto")

    with pytest.raises(CompositionLockedError):
        await state_machine.select_stack(project.id, "react_spa+none+express_api+postgresql+monolith")

    await gate_service.reject(project.id, "stack", rejected_by="cto", reason="Reconsider")
    updated = await state_machine.select_stack(project.id, "react_spa+none+express_api+postgresql+monolith")
    assert updated.stack_choice.startswith("react_spa+")


# =============================================================================
# FAILURES
# =============================================================================


@pytest.mark.asyncio
async def test_agent_failure_marks_history_failed(make_state_machine, store, project):
    failing = make_state_machine("agent_failure")

    result = await failing.advance(project.id)

    assert result.outcome == TransitionOutcome.AGENT_FAILED
    assert "rate limit" in result.error
    stored = await store.load_project(project.id)
    assert stored.current_phase == Phase.ANALYSIS
    assert stored.version == project.version
    [record] = await store.list_phase_history(project.id)
    assert record.status == PhaseStatus.FAILED
    assert "rate limit" in record.error_message

    retry = await make_state_machine().advance(project.id)
    assert retry.outcome == TransitionOutcome.ADVANCED
    statuses = [h.status for h in await store.list_phase_history(project.id)]
    assert statuses == [PhaseStatus.FAILED, PhaseStatus.COMPLETED]


@pytest.mark.asyncio
async def test_agent_timeout_is_agent_failure(make_state_machine, store, project):
    slow = make_state_machine("timeout", agent_timeout=0.05)

    result = await slow.advance(project.id)

    assert result.outcome == TransitionOutcome.AGENT_FAILED
    assert "timed out" in result.error
    assert (await store.load_project(project.id)).current_phase == Phase.ANALYSIS


@pytest.mark.asyncio
async def test_raising_agent_is_agent_failure(store, gate_service, spec, project):
    machine = PhaseStateMachine(store, RaisingRunner(), gate_service, spec)

    result = await machine.advance(project.id)

    assert result.outcome == TransitionOutcome.AGENT_FAILED
    assert result.error == "analyst agent failed: connection reset by peer"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("runner", "message"),
    [
        (NoneRunner(), "analyst agent returned NoneType, expected AgentRunResult"),
        (JsonContentRunner(), "analyst agent returned non-text artifacts: project-brief.md"),
        (ValidatingJsonContentRunner(), "analyst agent failed:"),
    ],
)
async def test_malformed_agent_result_is_agent_failure(store, gate_service, spec, project, runner, message):
    machine = PhaseStateMachine(store, runner, gate_service, spec)

    result = await machine.advance(project.id)

    assert result.outcome == TransitionOutcome.AGENT_FAILED
    assert result.error.startswith(message)
    stored = await store.load_project(project.id)
    assert stored.current_phase == Phase.ANALYSIS
    assert await store.list_artifacts(project.id) == []
    [record] = await store.list_phase_history(project.id)
    assert record.status == PhaseStatus.FAILED
    assert record.error_message == result.error


@pytest.mark.asyncio
async def test_missing_runner_is_agent_failure(store, gate_service, spec, project):
    machine = PhaseStateMachine(store, None, gate_service, spec)

    result = await machine.advance(project.id)

    assert result.outcome == TransitionOutcome.AGENT_FAILED


@pytest.mark.asyncio
async def test_invalid_output_fails_validation(make_state_machine, store, project):
    machine = make_state_machine("invalid_output")

    result = await machine.advance(project.id)

    assert result.outcome == TransitionOutcome.VALIDATION_FAILED
    assert not result.validation.passed
    assert "constitution.md" in result.error
    stored = await store.load_project(project.id)
    assert stored.current_phase == Phase.ANALYSIS
    assert stored.phases_completed == []
    assert await store.list_artifacts(project.id) == []
    [record] = await store.list_phase_history(project.id)
    assert record.status == PhaseStatus.FAILED


@pytest.mark.asyncio
async def test_warnings_accumulate_across_phases(make_state_machine, gate_service, store, project):
    machine = make_state_machine("with_warnings")

    first = await machine.advance(project.id)

    assert first.outcome == TransitionOutcome.ADVANCED
    assert first.validation.warnings
    after_analysis = (await store.load_project(project.id)).accumulated_warnings
    assert len(after_analysis) == len(first.validation.warnings)

    await advance_to(machine, gate_service, project.id, Phase.DEPENDENCIES)

    after_spec = (await store.load_project(project.id)).accumulated_warnings
    assert len(after_spec) > len(after_analysis)
    assert after_spec[: len(after_analysis)] == after_analysis


@pytest.mark.asyncio
async def test_storage_failure_leaves_state_unchanged(state_machine, store, metrics, project):
    store.fail_on.add("save_project")

    result = await state_machine.advance(project.id)

    assert result.outcome == TransitionOutcome.PERSISTENCE_FAILED
    stored = await store.load_project(project.id)
    assert stored.current_phase == Phase.ANALYSIS
    assert stored.phases_completed == []
    assert stored.version == project.version
    assert await store.list_artifacts(project.id) == []
    assert metrics.count("phase.advance", phase="ANALYSIS", outcome="persistence_failed") == 1

    store.fail_on.clear()
    retry = await state_machine.advance(project.id)

    assert retry.outcome == TransitionOutcome.ADVANCED
    [record] = await store.list_phase_history(project.id)
    assert record.status == PhaseStatus.COMPLETED


# =============================================================================
# CONCURRENCY
# =============================================================================


@pytest.mark.asyncio
async def test_concurrent_advances_are_serialized(state_machine, store, project):
    results = await asyncio.gather(state_machine.advance(project.id), state_machine.advance(project.id))

    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes == ["advanced", "validation_failed"]
    stored = await store.load_project(project.id)
    assert stored.phases_completed == [Phase.ANALYSIS]
    assert stored.current_phase == Phase.STACK_SELECTION


@pytest.mark.asyncio
async def test_busy_project_reports_project_busy(make_state_machine, store, project):
    machine = make_state_machine(lock_wait=0.05)

    async with machine.lock.lock(project.id, "another-worker"):
        result = await machine.advance(project.id)

    assert result.outcome == TransitionOutcome.PROJECT_BUSY
    assert (await store.load_project(project.id)).current_phase == Phase.ANALYSIS


# =============================================================================
# ROLLBACK
# =============================================================================


@pytest.mark.asyncio
async def test_rollback_inverts_advance(state_machine, store, project):
    before = await store.load_project(project.id)
    await state_machine.advance(project.id)

    result = await state_machine.rollback(project.id)

    assert result.allowed
    assert result.from_phase == Phase.STACK_SELECTION
    assert result.to_phase == Phase.ANALYSIS
    after = await store.load_project(project.id)
    assert after.current_phase == before.current_phase
    assert after.phases_completed == before.phases_completed


@pytest.mark.asyncio
async def test_rollback_from_analysis_is_rejected(state_machine, store, metrics, project):
    result = await state_machine.rollback(project.id)

    assert result.allowed is False
    assert "no completed phases" in result.reason
    assert (await store.load_project(project.id)).version == project.version
    assert metrics.count("phase.rollback", allowed="false") == 1


@pytest.mark.asyncio
async def test_rollback_closes_gate_pending_record(state_machine, gate_service, store, project):
    await advance_to(state_machine, gate_service, project.id, Phase.STACK_SELECTION)
    await state_machine.select_stack(project.id, EXPO_COMPOSITION)
    await state_machine.advance(project.id)

    result = await state_machine.rollback(project.id)

    assert result.allowed
    assert await store.get_open_phase_history(project.id, Phase.STACK_SELECTION) is None
    last = (await store.list_phase_history(project.id))[-1]
    assert last.status == PhaseStatus.FAILED
    assert last.error_message == ROLLED_BACK_MESSAGE


# =============================================================================
# HISTORY AND ARTIFACTS
# =============================================================================


@pytest.mark.asyncio
async def test_record_phase_history_is_idempotent(state_machine, store, project):
    opened = await state_machine.record_phase_history(project.id, Phase.ANALYSIS, PhaseStatus.IN_PROGRESS)
    reopened = await state_machine.record_phase_history(project.id, Phase.ANALYSIS, PhaseStatus.IN_PROGRESS)
    assert reopened.id == opened.id

    completed = await state_machine.record_phase_history(project.id, Phase.ANALYSIS, PhaseStatus.COMPLETED)
    again = await state_machine.record_phase_history(project.id, Phase.ANALYSIS, PhaseStatus.COMPLETED)
    assert completed.id == opened.id
    assert again.id == opened.id

    failed = await state_machine.record_phase_history(project.id, Phase.SPEC, PhaseStatus.FAILED, "boom")
    failed_again = await state_machine.record_phase_history(project.id, Phase.SPEC, PhaseStatus.FAILED, "boom")
    assert failed_again.id == failed.id

    assert len(await store.list_phase_history(project.id)) == 2


@pytest.mark.asyncio
async def test_save_artifact_versions_content(state_machine, store, project):
    first = await state_machine.save_artifact(project.id, "notes.md", "v1")
    same = await state_machine.save_artifact(project.id, "notes.md", "v1")
    second = await state_machine.save_artifact(project.id, "notes.md", "v2")

    assert first.phase == Phase.ANALYSIS
    assert same.version == 1
    assert second.version == 2
    versions = await store.list_artifact_versions(project.id, Phase.ANALYSIS, "notes.md")
    assert [v.content for v in versions] == ["v1", "v2"]


@pytest.mark.asyncio
async def test_metrics_recorded(state_machine, metrics, project):
    await state_machine.advance(project.id)
    await state_machine.rollback(project.id)

    assert metrics.count("phase.advance", phase="ANALYSIS", outcome="advanced") == 1
    assert metrics.count("phase.rollback", allowed="true") == 1
    assert metrics.observations["phase.produce_seconds[phase=ANALYSIS]"]
