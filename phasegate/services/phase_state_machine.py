"""PhaseStateMachine: drives a project through the ordered phase sequence.

ANALYSIS -> STACK_SELECTION -> SPEC -> DEPENDENCIES -> SOLUTIONING -> DONE

One ``advance`` call:
1. Takes the per-project lock (busy projects report PROJECT_BUSY)
2. Opens (or reuses) the phase's in_progress history record
3. Produces the phase's artifacts: agent phases run each bound role under a
   timeout; user-driven phases read the artifacts already persisted
4. Validates them inline; errors close the record as failed
5. Consults the approval gates bound to the transition
6. Commits artifacts, history and the project's new phase in one transaction

Agent and storage failures are converted into TransitionResult outcomes;
they never escape and never leave the project half-advanced.
"""

import asyncio
import json
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog

from phasegate.agent.runner import AgentRunner, AgentRunResult
from phasegate.core.exceptions import (
    AgentExecutionError,
    AgentTimeoutError,
    CompositionLockedError,
    ConcurrentModificationError,
    PersistenceError,
    ProjectLockTimeoutError,
)
from phasegate.core.locking import InMemoryProjectLock, ProjectLock
from phasegate.core.logging import get_correlation_id, reset_correlation_id, set_correlation_id
from phasegate.core.metrics import MetricsSink, NullMetrics
from phasegate.core.orchestrator_spec import OrchestratorSpec, PhaseDefinition
from phasegate.db.store import ProjectStore
from phasegate.domain.composition import parse_composition_id
from phasegate.domain.phases import (
    PHASE_ORDER,
    AgentRole,
    Phase,
    PhaseStatus,
    ensure_exhaustive,
    is_terminal,
    next_phase,
)
from phasegate.domain.transitions import RollbackResult, TransitionOutcome, TransitionResult
from phasegate.domain.validation import InlineValidationSystem, classify_outcome, failed_artifacts
from phasegate.schemas.orchestration import ArtifactRecord, PhaseHistoryRecord, Project
from phasegate.services.approval_gate_service import ApprovalGateService
from phasegate.services.legacy_migrator import LegacyMigrator

logger = structlog.get_logger(__name__)

DEFAULT_AGENT_TIMEOUT = 300.0
ROLLED_BACK_MESSAGE = "rolled back"

# Produces the candidate artifacts (filename -> content) for a phase
PhaseHandler = Callable[[Project, Phase, PhaseDefinition], Awaitable[dict[str, str]]]


def _now() -> datetime:
    return datetime.now(UTC)


def stack_document(composition_id: str) -> str:
    """stack.json content for a composition id."""
    composition = parse_composition_id(composition_id)
    return json.dumps(
        {
            "composition": composition_id,
            "frontend": composition.base,
            "mobile": composition.mobile,
            "backend": composition.backend,
            "database": composition.data,
            "architecture": composition.architecture,
        },
        indent=2,
    )


class PhaseStateMachine:
    """Orchestrates phase transitions for projects.

    Every collaborator is injected; there is no module-level state.
    """

    def __init__(
        self,
        store: ProjectStore,
        runner: AgentRunner | None,
        gates: ApprovalGateService,
        spec: OrchestratorSpec,
        validation: InlineValidationSystem | None = None,
        lock: ProjectLock | None = None,
        migrator: LegacyMigrator | None = None,
        metrics: MetricsSink | None = None,
        agent_timeout: float = DEFAULT_AGENT_TIMEOUT,
    ):
        """Initialize with dependency injection.

        Args:
            store: Project storage
            runner: Agent runner invoked for agent-driven phases (None disables them)
            gates: Approval gate service consulted before gated transitions
            spec: Orchestrator spec (phase definitions, gate bindings)
            validation: Inline validation system (built from spec if omitted)
            lock: Per-project lock (in-process asyncio locks if omitted)
            migrator: Legacy stack migrator (built from spec if omitted)
            metrics: Metrics sink (no-op if omitted)
            agent_timeout: Seconds each agent role may run before the phase fails
        """
        self.store = store
        self.runner = runner
        self.gates = gates
        self.spec = spec
        self.metrics = metrics or NullMetrics()
        self.validation = validation or InlineValidationSystem(spec)
        self.lock = lock or InMemoryProjectLock()
        self.migrator = migrator or LegacyMigrator.from_spec(spec, self.metrics)
        self.agent_timeout = agent_timeout

        self._handlers: dict[Phase, PhaseHandler] = {
            phase: self._collect_persisted if spec.phase(phase).is_user_driven else self._run_agents
            for phase in PHASE_ORDER
        }
        ensure_exhaustive(self._handlers, "phase handlers")

    # ------------------------------------------------------------------
    # advance
    # ------------------------------------------------------------------

    async def advance(self, project_id: str, owner: str | None = None) -> TransitionResult:
        """Attempt to move the project to the next phase.

        Raises:
            ProjectNotFoundError: Unknown project id
        """
        owner = owner or f"advance-{uuid.uuid4()}"
        token = set_correlation_id(get_correlation_id() or owner)
        try:
            async with self.lock.lock(project_id, owner):
                return await self._advance_locked(project_id)
        except ProjectLockTimeoutError as e:
            project = await self.store.load_project(project_id)
            return self._result(
                TransitionOutcome.PROJECT_BUSY, project, project.current_phase, error=str(e)
            )
        finally:
            reset_correlation_id(token)

    async def _advance_locked(self, project_id: str) -> TransitionResult:
        project = await self.store.load_project(project_id)
        phase = project.current_phase
        log = logger.bind(project_id=project_id, phase=phase.value)

        if is_terminal(phase):
            return self._result(TransitionOutcome.ALREADY_COMPLETE, project, phase)

        successor = next_phase(phase)
        definition = self.spec.phase(phase)

        try:
            history = await self.record_phase_history(project_id, phase, PhaseStatus.IN_PROGRESS)
            resuming = history.awaiting_gate is not None

            started = time.monotonic()
            try:
                if resuming:
                    # Gate-pending: the phase already produced and persisted its artifacts
                    artifacts = await self._collect_persisted(project, phase, definition)
                else:
                    artifacts = await self._handlers[phase](project, phase, definition)
            except AgentExecutionError as e:
                await self._close_history(history, PhaseStatus.FAILED, str(e))
                log.warning("phase_agent_failed", error=str(e), error_type=type(e).__name__)
                return self._result(TransitionOutcome.AGENT_FAILED, project, phase, error=str(e))
            finally:
                self.metrics.observe("phase.produce_seconds", time.monotonic() - started, phase=phase.value)

            validation = self.validation.validate(phase, artifacts, project.accumulated_warnings)
            if not validation.passed:
                await self._close_history(history, PhaseStatus.FAILED, validation.error_summary)
                log.warning(
                    "phase_validation_failed",
                    errors=len(validation.errors),
                    warnings=len(validation.warnings),
                    failed_artifacts=failed_artifacts(validation),
                )
                return self._result(
                    TransitionOutcome.VALIDATION_FAILED,
                    project,
                    phase,
                    validation=validation,
                    error=validation.error_summary,
                    artifacts=artifacts,
                )

            pending_gate = await self.gates.is_transition_blocked(project_id, phase, successor)
            if pending_gate:
                async with self.store.transaction():
                    await self._save_artifacts(project_id, phase, artifacts)
                    await self.store.update_phase_history(history.model_copy(update={"awaiting_gate": pending_gate}))
                log.info("phase_gate_pending", gate=pending_gate, outcome=classify_outcome(validation).value)
                return self._result(
                    TransitionOutcome.GATE_PENDING,
                    project,
                    phase,
                    validation=validation,
                    pending_gate=pending_gate,
                    artifacts=artifacts,
                )

            async with self.store.transaction():
                # Re-read: gate decisions may have bumped the version while the agent ran
                current = await self.store.load_project(project_id)
                if current.current_phase != phase:
                    raise ConcurrentModificationError(project_id, project.version)

                await self._save_artifacts(project_id, phase, artifacts)
                await self._close_history(history, PhaseStatus.COMPLETED)
                advanced = await self.store.save_project(
                    current.with_phase(
                        successor,
                        [*current.phases_completed, phase],
                        accumulated_warnings=list(validation.accumulated_warnings),
                    )
                )

        except PersistenceError as e:
            log.error("phase_persistence_failed", error=str(e), error_type=type(e).__name__)
            return self._result(TransitionOutcome.PERSISTENCE_FAILED, project, phase, error=str(e))

        log.info(
            "phase_advanced",
            to_phase=successor.value,
            outcome=classify_outcome(validation).value,
            warnings=len(validation.warnings),
            total_warnings=validation.total_warnings,
        )
        return self._result(
            TransitionOutcome.ADVANCED,
            advanced,
            phase,
            validation=validation,
            artifacts=artifacts,
        )

    def _result(
        self,
        outcome: TransitionOutcome,
        project: Project,
        from_phase: Phase,
        **details,
    ) -> TransitionResult:
        self.metrics.increment("phase.advance", phase=from_phase.value, outcome=outcome.value)
        return TransitionResult(
            outcome=outcome,
            project_id=project.id,
            from_phase=from_phase,
            to_phase=project.current_phase,
            **details,
        )

    # ------------------------------------------------------------------
    # phase handlers
    # ------------------------------------------------------------------

    async def _run_agents(self, project: Project, phase: Phase, definition: PhaseDefinition) -> dict[str, str]:
        """Run each bound agent role in order; later roles see earlier roles' output."""
        if self.runner is None:
            raise AgentExecutionError(f"No agent runner configured for phase {phase.value}")

        context = {a.filename: a.content for a in await self.store.list_artifacts(project.id)}
        produced: dict[str, str] = {}

        for role in definition.agent_roles:
            try:
                result = await asyncio.wait_for(
                    self.runner.run_agent(phase, role, project, {**context, **produced}),
                    timeout=self.agent_timeout,
                )
            except TimeoutError as e:
                raise AgentTimeoutError(phase.value, self.agent_timeout) from e
            except AgentExecutionError:
                raise
            except Exception as e:
                # Any fault inside the external agent is a phase failure
                raise AgentExecutionError(f"{role.value} agent failed: {e}") from e

            produced.update(self._checked_artifacts(role, result))

        return produced

    @staticmethod
    def _checked_artifacts(role: AgentRole, result: object) -> dict[str, str]:
        """Artifacts of a well-formed, successful result; anything else fails the phase."""
        if not isinstance(result, AgentRunResult):
            raise AgentExecutionError(
                f"{role.value} agent returned {type(result).__name__}, expected AgentRunResult"
            )
        if result.error:
            raise AgentExecutionError(f"{role.value} agent failed: {result.error}")

        # model_construct() skips validation, so re-check the payload shape
        if not isinstance(result.artifacts, dict):
            raise AgentExecutionError(f"{role.value} agent returned malformed artifacts")
        malformed = sorted(
            str(name)
            for name, content in result.artifacts.items()
            if not isinstance(name, str) or not isinstance(content, str)
        )
        if malformed:
            raise AgentExecutionError(f"{role.value} agent returned non-text artifacts: {', '.join(malformed)}")
        return result.artifacts

    async def _collect_persisted(self, project: Project, phase: Phase, definition: PhaseDefinition) -> dict[str, str]:
        return {a.filename: a.content for a in await self.store.list_artifacts(project.id, phase)}

    async def _save_artifacts(self, project_id: str, phase: Phase, artifacts: dict[str, str]) -> None:
        for filename in sorted(artifacts):
            await self.store.save_artifact(project_id, phase, filename, artifacts[filename])

    async def _close_history(
        self, record: PhaseHistoryRecord, status: PhaseStatus, error_message: str | None = None
    ) -> PhaseHistoryRecord:
        return await self.store.update_phase_history(
            record.model_copy(
                update={
                    "status": status,
                    "completed_at": _now(),
                    "error_message": error_message,
                    "awaiting_gate": None,
                }
            )
        )

    # ------------------------------------------------------------------
    # rollback
    # ------------------------------------------------------------------

    async def rollback(self, project_id: str, owner: str | None = None) -> RollbackResult:
        """Step back to the last completed phase.

        Exact inverse of the last successful advance for ``current_phase`` and
        ``phases_completed``. Rejected, without touching state, when nothing
        has been completed yet.

        Raises:
            ProjectNotFoundError: Unknown project id
        """
        owner = owner or f"rollback-{uuid.uuid4()}"
        token = set_correlation_id(get_correlation_id() or owner)
        try:
            async with self.lock.lock(project_id, owner):
                return await self._rollback_locked(project_id)
        except ProjectLockTimeoutError as e:
            project = await self.store.load_project(project_id)
            return RollbackResult(
                allowed=False,
                from_phase=project.current_phase,
                to_phase=project.current_phase,
                reason=str(e),
            )
        finally:
            reset_correlation_id(token)

    async def _rollback_locked(self, project_id: str) -> RollbackResult:
        project = await self.store.load_project(project_id)
        current = project.current_phase

        if not project.phases_completed:
            self.metrics.increment("phase.rollback", allowed="false")
            return RollbackResult(
                allowed=False,
                from_phase=current,
                to_phase=current,
                reason=f"Cannot roll back from {current.value}: no completed phases",
            )

        target = project.phases_completed[-1]
        try:
            async with self.store.transaction():
                open_record = await self.store.get_open_phase_history(project_id, current)
                if open_record is not None:
                    await self._close_history(open_record, PhaseStatus.FAILED, ROLLED_BACK_MESSAGE)
                await self.store.save_project(project.with_phase(target, project.phases_completed[:-1]))
        except PersistenceError as e:
            logger.error("phase_rollback_failed", project_id=project_id, error=str(e))
            return RollbackResult(allowed=False, from_phase=current, to_phase=current, reason=str(e))

        logger.info("phase_rolled_back", project_id=project_id, from_phase=current.value, to_phase=target.value)
        self.metrics.increment("phase.rollback", allowed="true")
        return RollbackResult(allowed=True, from_phase=current, to_phase=target)

    # ------------------------------------------------------------------
    # history, artifacts, stack
    # ------------------------------------------------------------------

    async def record_phase_history(
        self,
        project_id: str,
        phase: Phase,
        status: PhaseStatus,
        error_message: str | None = None,
    ) -> PhaseHistoryRecord:
        """Idempotently record a phase status.

        - in_progress: returns the open record, opening one if none exists
        - completed: closes the open record, else returns an existing completed
          record, else appends a closed one
        - failed: closes the open record, else returns the latest record if it
          already failed, else appends a closed one
        """
        open_record = await self.store.get_open_phase_history(project_id, phase)

        if status == PhaseStatus.IN_PROGRESS:
            if open_record is not None:
                return open_record
            return await self.store.add_phase_history(PhaseHistoryRecord(project_id=project_id, phase=phase))

        if open_record is not None:
            return await self._close_history(open_record, status, error_message)

        phase_records = [r for r in await self.store.list_phase_history(project_id) if r.phase == phase]
        if status == PhaseStatus.COMPLETED:
            existing = next((r for r in phase_records if r.status == PhaseStatus.COMPLETED), None)
        else:
            existing = phase_records[-1] if phase_records and phase_records[-1].status == status else None
        if existing is not None:
            return existing

        now = _now()
        return await self.store.add_phase_history(
            PhaseHistoryRecord(
                project_id=project_id,
                phase=phase,
                status=status,
                started_at=now,
                completed_at=now,
                error_message=error_message,
            )
        )

    async def save_artifact(
        self,
        project_id: str,
        filename: str,
        content: str,
        phase: Phase | None = None,
    ) -> ArtifactRecord:
        """Store user-supplied content for a phase (defaults to the current phase)."""
        project = await self.store.load_project(project_id)
        target = phase or project.current_phase
        record = await self.store.save_artifact(project_id, target, filename, content)
        logger.info(
            "artifact_saved",
            project_id=project_id,
            phase=target.value,
            filename=filename,
            version=record.version,
        )
        return record

    async def select_stack(self, project_id: str, stack_id: str, owner: str | None = None) -> Project:
        """Attach a stack to the project and write its stack.json.

        Legacy template ids are converted to composition ids.

        Raises:
            ValueError: Unknown or malformed stack id
            CompositionLockedError: The stack is already approved
            ProjectLockTimeoutError: The project is busy
        """
        composition_id = self.migrator.resolve_stack_id(stack_id)

        async with self.lock.lock(project_id, owner or f"select-stack-{uuid.uuid4()}"):
            project = await self.store.load_project(project_id)
            if project.stack_approved:
                raise CompositionLockedError(
                    f"Stack of project '{project_id}' is approved; reject the stack gate before changing it"
                )

            async with self.store.transaction():
                await self.store.save_artifact(
                    project_id, Phase.STACK_SELECTION, "stack.json", stack_document(composition_id)
                )
                updated = await self.store.save_project(project.with_changes(stack_choice=composition_id))

        logger.info(
            "stack_selected",
            project_id=project_id,
            stack_id=stack_id,
            composition=composition_id,
            migrated=stack_id != composition_id,
        )
        return updated
