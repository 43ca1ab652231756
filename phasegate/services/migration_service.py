"""LegacyProjectMigration: bring projects created before gates and compositions up to date.

For every selected project:
- legacy ``stack_choice`` template ids become composition ids
- each phase in ``phases_completed`` gets a completed history record
- every configured gate gets a record
- gates mirrored by a project flag that is already set are approved

Every step is idempotent, so the job can be re-run safely. A failure on one
project is collected in the result and the batch moves on.
"""

from dataclasses import dataclass, field

import structlog

from phasegate.core.exceptions import PhaseGateError
from phasegate.core.metrics import MetricsSink, NullMetrics
from phasegate.db.store import ProjectStore
from phasegate.domain.composition import is_composition_id
from phasegate.domain.gates import GateStatus
from phasegate.domain.phases import Phase, PhaseStatus
from phasegate.schemas.orchestration import Project
from phasegate.services.approval_gate_service import ApprovalGateService, approval_date_field
from phasegate.services.legacy_migrator import LegacyMigrator
from phasegate.services.phase_state_machine import PhaseStateMachine

logger = structlog.get_logger(__name__)

MIGRATION_APPROVER = "legacy-migration"


@dataclass
class MigrationResult:
    projects_processed: int = 0
    projects_migrated: int = 0
    projects_skipped: int = 0
    stacks_converted: int = 0
    history_backfilled: int = 0
    gates_initialized: int = 0
    gates_approved: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class _ProjectPlan:
    """Changes pending for one project."""

    new_stack: str | None = None
    missing_history: list[Phase] = field(default_factory=list)
    missing_gates: list[str] = field(default_factory=list)
    gates_to_approve: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.new_stack or self.missing_history or self.missing_gates or self.gates_to_approve)


class LegacyProjectMigration:
    def __init__(
        self,
        store: ProjectStore,
        state_machine: PhaseStateMachine,
        gates: ApprovalGateService,
        migrator: LegacyMigrator,
        metrics: MetricsSink | None = None,
    ):
        self.store = store
        self.state_machine = state_machine
        self.gates = gates
        self.migrator = migrator
        self.metrics = metrics or NullMetrics()

    async def run(self, dry_run: bool = False, project_ids: list[str] | None = None) -> MigrationResult:
        """Migrate all projects, or only ``project_ids``.

        With ``dry_run`` nothing is written; counts report what would change.
        """
        logger.info("legacy_migration_started", dry_run=dry_run, project_ids=project_ids)
        result = MigrationResult()

        projects = await self._select_projects(project_ids, result)
        for project in projects:
            try:
                plan = await self._plan(project)
                result.projects_processed += 1

                if plan.empty:
                    result.projects_skipped += 1
                    logger.debug("legacy_migration_project_skipped", project_id=project.id, slug=project.slug)
                    continue

                if dry_run:
                    logger.info(
                        "legacy_migration_dry_run",
                        project_id=project.id,
                        slug=project.slug,
                        new_stack=plan.new_stack,
                        missing_history=[p.value for p in plan.missing_history],
                        missing_gates=plan.missing_gates,
                        gates_to_approve=plan.gates_to_approve,
                    )
                else:
                    await self._apply(project, plan)

                result.projects_migrated += 1
                result.stacks_converted += 1 if plan.new_stack else 0
                result.history_backfilled += len(plan.missing_history)
                result.gates_initialized += len(plan.missing_gates)
                result.gates_approved += len(plan.gates_to_approve)
            except (PhaseGateError, ValueError) as e:
                message = f"Failed to migrate project {project.slug}: {e}"
                logger.error("legacy_migration_project_failed", project_id=project.id, error=str(e))
                self.metrics.increment("legacy.migration_errors")
                result.errors.append(message)

        logger.info(
            "legacy_migration_complete",
            dry_run=dry_run,
            processed=result.projects_processed,
            migrated=result.projects_migrated,
            skipped=result.projects_skipped,
            errors=len(result.errors),
        )
        return result

    async def _select_projects(self, project_ids: list[str] | None, result: MigrationResult) -> list[Project]:
        if project_ids is None:
            return await self.store.list_projects()

        projects = []
        for project_id in project_ids:
            project = await self.store.get_project(project_id)
            if project is None:
                result.errors.append(f"Project {project_id} not found")
                continue
            projects.append(project)
        return projects

    async def _plan(self, project: Project) -> _ProjectPlan:
        plan = _ProjectPlan()

        stack = project.stack_choice
        if stack and not is_composition_id(stack):
            composition = self.migrator.migrate_template_id(stack)
            if composition is not None:
                plan.new_stack = composition.to_id()

        history = await self.store.list_phase_history(project.id)
        completed = {r.phase for r in history if r.status == PhaseStatus.COMPLETED}
        plan.missing_history = [p for p in project.phases_completed if p not in completed]

        records = {g.gate_name: g for g in await self.store.list_gates(project.id)}
        for definition in self.gates.spec.gates:
            record = records.get(definition.name)
            if record is None:
                plan.missing_gates.append(definition.name)
            flag_set = definition.project_flag is not None and getattr(project, definition.project_flag)
            if flag_set and (record is None or record.status == GateStatus.PENDING):
                plan.gates_to_approve.append(definition.name)

        return plan

    async def _apply(self, project: Project, plan: _ProjectPlan) -> None:
        # All or nothing per project
        async with self.store.transaction():
            if plan.new_stack:
                current = await self.store.load_project(project.id)
                await self.store.save_project(current.with_changes(stack_choice=plan.new_stack))

            for phase in plan.missing_history:
                await self.state_machine.record_phase_history(project.id, phase, PhaseStatus.COMPLETED)

            if plan.missing_gates:
                await self.gates.initialize_gates_for_project(project.id)

            for gate_name in plan.gates_to_approve:
                definition = self.gates.get_gate_definition(gate_name)
                approved_at = getattr(project, approval_date_field(definition.project_flag))
                await self.gates.approve(
                    project.id,
                    gate_name,
                    approver=MIGRATION_APPROVER,
                    rationale="Backfilled from existing project approval",
                    approved_at=approved_at,
                )

        if plan.new_stack:
            logger.info(
                "legacy_stack_converted",
                project_id=project.id,
                legacy_id=project.stack_choice,
                composition=plan.new_stack,
                reason=self.migrator.get_migration_reason(project.stack_choice),
            )
