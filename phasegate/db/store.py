"""ProjectStore protocol: persistence seam of the orchestrator.

Two implementations:
- InMemoryProjectStore (phasegate.db.memory_store): tests and local runs
- SqlAlchemyProjectStore (phasegate.db.sql_store): PostgreSQL in production
"""

from contextlib import AbstractAsyncContextManager
from typing import Protocol, runtime_checkable

from phasegate.domain.phases import Phase
from phasegate.schemas.orchestration import (
    ApprovalGateRecord,
    ArtifactRecord,
    PhaseHistoryRecord,
    Project,
)


@runtime_checkable
class ProjectStore(Protocol):
    """Storage for projects, phase history, artifacts and approval gates.

    Writes issued inside ``transaction()`` commit together or not at all.
    """

    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Group the enclosed writes into one atomic unit."""
        ...

    async def create_project(self, project: Project) -> Project:
        """Insert a new project. Returns it with version 1."""
        ...

    async def get_project(self, project_id: str) -> Project | None:
        ...

    async def load_project(self, project_id: str) -> Project:
        """Like get_project, raising ProjectNotFoundError when absent."""
        ...

    async def save_project(self, project: Project) -> Project:
        """Persist an update guarded by ``project.version``.

        Raises:
            ConcurrentModificationError: If the stored version differs
        """
        ...

    async def list_projects(self) -> list[Project]:
        ...

    async def add_phase_history(self, record: PhaseHistoryRecord) -> PhaseHistoryRecord:
        ...

    async def update_phase_history(self, record: PhaseHistoryRecord) -> PhaseHistoryRecord:
        ...

    async def get_open_phase_history(self, project_id: str, phase: Phase) -> PhaseHistoryRecord | None:
        """Most recent in_progress record for the phase, if any."""
        ...

    async def list_phase_history(self, project_id: str) -> list[PhaseHistoryRecord]:
        """Records in start order."""
        ...

    async def save_artifact(self, project_id: str, phase: Phase, filename: str, content: str) -> ArtifactRecord:
        """Store a new version of an artifact; identical content returns the latest version unchanged."""
        ...

    async def list_artifacts(self, project_id: str, phase: Phase | None = None) -> list[ArtifactRecord]:
        """Latest version of each artifact, ordered by phase then filename."""
        ...

    async def list_artifact_versions(self, project_id: str, phase: Phase, filename: str) -> list[ArtifactRecord]:
        ...

    async def get_gate(self, project_id: str, gate_name: str) -> ApprovalGateRecord | None:
        ...

    async def list_gates(self, project_id: str) -> list[ApprovalGateRecord]:
        ...

    async def save_gate(self, record: ApprovalGateRecord) -> ApprovalGateRecord:
        """Insert or update by (project_id, gate_name)."""
        ...
