"""ApprovalGateService: per-project human approval checkpoints."""

from datetime import UTC, datetime

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from phasegate.core.exceptions import ConcurrentModificationError, UnknownGateError
from phasegate.core.metrics import MetricsSink, NullMetrics
from phasegate.core.orchestrator_spec import GateDefinition, OrchestratorSpec
from phasegate.db.store import ProjectStore
from phasegate.domain.gates import GateStatus, first_blocking_gate
from phasegate.domain.phases import Phase
from phasegate.schemas.orchestration import ApprovalGateRecord, Project

logger = structlog.get_logger(__name__)

# Attempts at mirroring a gate decision onto a project that is being updated concurrently
FLAG_UPDATE_ATTEMPTS = 3


def approval_date_field(project_flag: str) -> str:
    # "stack_approved" -> "stack_approval_date"
    return project_flag.removesuffix("_approved") + "_approval_date"


def _project_flags(project: Project) -> dict[str, bool]:
    return {
        "stack_approved": project.stack_approved,
        "dependencies_approved": project.dependencies_approved,
    }


class ApprovalGateService:
    """Service layer for approval gate operations.

    Gates are only ever consulted by the phase state machine, never
    auto-satisfied. Gate records are created lazily and never deleted.
    """

    def __init__(self, store: ProjectStore, spec: OrchestratorSpec, metrics: MetricsSink | None = None):
        """Initialize with dependency injection.

        Args:
            store: Project storage
            spec: Orchestrator spec supplying the gate bindings
            metrics: Metrics sink (defaults to a no-op sink)
        """
        self.store = store
        self.spec = spec
        self.metrics = metrics or NullMetrics()

    def get_gate_definition(self, gate_name: str) -> GateDefinition:
        """Raises UnknownGateError if the gate is not configured."""
        definition = self.spec.gate(gate_name)
        if definition is None:
            raise UnknownGateError(gate_name)
        return definition

    def gate_for_transition(self, from_phase: Phase, to_phase: Phase) -> GateDefinition | None:
        """First gate configured on a transition, or None."""
        gates = self.spec.gates_for_transition(from_phase, to_phase)
        return gates[0] if gates else None

    async def get_project_gates(self, project_id: str) -> list[ApprovalGateRecord]:
        """Every gate record for the project (empty if none created yet)."""
        return await self.store.list_gates(project_id)

    async def initialize_gates_for_project(self, project_id: str) -> list[ApprovalGateRecord]:
        """Create a pending record for every configured gate the project lacks.

        Returns:
            The records created by this call (empty on re-run)
        """
        await self.store.load_project(project_id)

        created = []
        async with self.store.transaction():
            for definition in self.spec.gates:
                if await self.store.get_gate(project_id, definition.name) is None:
                    created.append(
                        await self.store.save_gate(
                            ApprovalGateRecord(project_id=project_id, gate_name=definition.name)
                        )
                    )

        if created:
            logger.info("gates_initialized", project_id=project_id, gates=[g.gate_name for g in created])
        return created

    async def approve(
        self,
        project_id: str,
        gate_name: str,
        approver: str,
        rationale: str | None = None,
        approved_at: datetime | None = None,
    ) -> ApprovalGateRecord:
        """Approve a gate, creating the record if absent.

        Idempotent: re-approving only refreshes approver, timestamp and rationale.
        ``approved_at`` defaults to now; backfills pass the original decision time.

        Raises:
            UnknownGateError: Gate not configured
            ProjectNotFoundError: Project does not exist
        """
        definition = self.get_gate_definition(gate_name)
        record = await self._decide(
            project_id,
            definition,
            status=GateStatus.APPROVED,
            approver=approver,
            approved_at=approved_at or datetime.now(UTC),
            rationale=rationale,
            rejection_reason=None,
        )

        logger.info("gate_approved", project_id=project_id, gate=gate_name, approver=approver)
        self.metrics.increment("gates.approved", gate=gate_name)
        return record

    async def reject(
        self,
        project_id: str,
        gate_name: str,
        rejected_by: str,
        reason: str,
    ) -> ApprovalGateRecord:
        """Reject a gate. Clears the mirrored project flag so the transition blocks again.

        Raises:
            UnknownGateError: Gate not configured
            ProjectNotFoundError: Project does not exist
        """
        definition = self.get_gate_definition(gate_name)

        record = await self._decide(
            project_id,
            definition,
            status=GateStatus.REJECTED,
            approver=rejected_by,
            approved_at=None,
            rationale=None,
            rejection_reason=reason,
        )

        logger.info("gate_rejected", project_id=project_id, gate=gate_name, rejected_by=rejected_by, reason=reason)
        self.metrics.increment("gates.rejected", gate=gate_name)
        return record

    async def _decide(
        self,
        project_id: str,
        definition: GateDefinition,
        *,
        status: GateStatus,
        approver: str,
        approved_at: datetime | None,
        rationale: str | None,
        rejection_reason: str | None,
    ) -> ApprovalGateRecord:
        approved = status == GateStatus.APPROVED

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ConcurrentModificationError),
            stop=stop_after_attempt(FLAG_UPDATE_ATTEMPTS),
            reraise=True,
            before_sleep=lambda rs: logger.warning(
                "gate_flag_update_retrying",
                project_id=project_id,
                gate=definition.name,
                attempt=rs.attempt_number,
            ),
        ):
            with attempt:
                project = await self.store.load_project(project_id)
                async with self.store.transaction():
                    existing = await self.store.get_gate(project_id, definition.name)
                    record = existing or ApprovalGateRecord(project_id=project_id, gate_name=definition.name)
                    record = record.model_copy(
                        update={
                            "status": status,
                            "approved": approved,
                            "approver": approver,
                            "approved_at": approved_at,
                            "rationale": rationale,
                            "rejection_reason": rejection_reason,
                            "updated_at": datetime.now(UTC),
                        }
                    )
                    record = await self.store.save_gate(record)

                    if definition.project_flag:
                        await self.store.save_project(
                            project.with_changes(
                                **{
                                    definition.project_flag: approved,
                                    approval_date_field(definition.project_flag): approved_at,
                                }
                            )
                        )
        return record

    async def is_transition_blocked(self, project_id: str, from_phase: Phase, to_phase: Phase) -> str | None:
        """Name of the gate holding ``from_phase -> to_phase``, or None if it may proceed.

        Lazily creates a pending record for each configured gate on first query.
        """
        definitions = self.spec.gates_for_transition(from_phase, to_phase)
        if not definitions:
            return None

        project = await self.store.load_project(project_id)
        statuses: dict[str, GateStatus] = {}
        for definition in definitions:
            record = await self.store.get_gate(project_id, definition.name)
            if record is None:
                record = await self.store.save_gate(
                    ApprovalGateRecord(project_id=project_id, gate_name=definition.name)
                )
            statuses[definition.name] = record.status

        return first_blocking_gate(definitions, statuses, _project_flags(project))
