"""InMemoryProjectStore: dict-backed ProjectStore for tests and local runs."""

import asyncio
import copy
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from contextvars import ContextVar

import structlog

from phasegate.core.exceptions import ConcurrentModificationError, PersistenceError, ProjectNotFoundError
from phasegate.domain.phases import PHASE_ORDER, Phase, PhaseStatus
from phasegate.schemas.orchestration import (
    ApprovalGateRecord,
    ArtifactRecord,
    PhaseHistoryRecord,
    Project,
    content_hash,
)

logger = structlog.get_logger(__name__)

_in_transaction: ContextVar[bool] = ContextVar("phasegate_memory_tx", default=False)


class InMemoryProjectStore:
    """ProjectStore keeping everything in process memory.

    Transactions snapshot the whole state and restore it if the block raises.
    Records are copied on the way in and out so callers never share state.

    ``fail_on`` lets tests make a named operation raise PersistenceError,
    e.g. ``store.fail_on.add("save_project")``.
    """

    def __init__(self):
        self._projects: dict[str, Project] = {}
        self._history: dict[str, list[PhaseHistoryRecord]] = {}
        self._artifacts: dict[tuple[str, Phase, str], list[ArtifactRecord]] = {}
        self._gates: dict[tuple[str, str], ApprovalGateRecord] = {}
        self._tx_lock = asyncio.Lock()
        self.fail_on: set[str] = set()

    def _check_failure(self, operation: str) -> None:
        if operation in self.fail_on:
            raise PersistenceError(f"Simulated storage failure in {operation}")

    def _snapshot(self) -> tuple:
        return copy.deepcopy((self._projects, self._history, self._artifacts, self._gates))

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[None, None]:
        if _in_transaction.get():
            # Nested: the outer block owns commit/rollback
            yield
            return

        async with self._tx_lock:
            snapshot = self._snapshot()
            token = _in_transaction.set(True)
            try:
                yield
            except BaseException:
                self._projects, self._history, self._artifacts, self._gates = snapshot
                logger.debug("memory_store_rolled_back")
                raise
            finally:
                _in_transaction.reset(token)

    # -- projects ---------------------------------------------------------

    async def create_project(self, project: Project) -> Project:
        self._check_failure("create_project")
        if project.id in self._projects:
            raise PersistenceError(f"Project {project.id} already exists")
        stored = project.model_copy(update={"version": 1}, deep=True)
        self._projects[project.id] = stored
        return stored.model_copy(deep=True)

    async def get_project(self, project_id: str) -> Project | None:
        project = self._projects.get(project_id)
        return project.model_copy(deep=True) if project else None

    async def load_project(self, project_id: str) -> Project:
        project = await self.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    async def save_project(self, project: Project) -> Project:
        self._check_failure("save_project")
        stored = self._projects.get(project.id)
        if stored is None:
            raise ProjectNotFoundError(project.id)
        if stored.version != project.version:
            raise ConcurrentModificationError(project.id, project.version)
        updated = project.model_copy(update={"version": project.version + 1}, deep=True)
        self._projects[project.id] = updated
        return updated.model_copy(deep=True)

    async def list_projects(self) -> list[Project]:
        return [p.model_copy(deep=True) for p in sorted(self._projects.values(), key=lambda p: p.created_at)]

    # -- phase history ----------------------------------------------------

    async def add_phase_history(self, record: PhaseHistoryRecord) -> PhaseHistoryRecord:
        self._check_failure("add_phase_history")
        self._history.setdefault(record.project_id, []).append(record.model_copy(deep=True))
        return record.model_copy(deep=True)

    async def update_phase_history(self, record: PhaseHistoryRecord) -> PhaseHistoryRecord:
        self._check_failure("update_phase_history")
        records = self._history.get(record.project_id, [])
        for i, existing in enumerate(records):
            if existing.id == record.id:
                records[i] = record.model_copy(deep=True)
                return record.model_copy(deep=True)
        raise PersistenceError(f"Phase history record {record.id} not found")

    async def get_open_phase_history(self, project_id: str, phase: Phase) -> PhaseHistoryRecord | None:
        for record in reversed(self._history.get(project_id, [])):
            if record.phase == phase and record.status == PhaseStatus.IN_PROGRESS:
                return record.model_copy(deep=True)
        return None

    async def list_phase_history(self, project_id: str) -> list[PhaseHistoryRecord]:
        return [r.model_copy(deep=True) for r in self._history.get(project_id, [])]

    # -- artifacts --------------------------------------------------------

    async def save_artifact(self, project_id: str, phase: Phase, filename: str, content: str) -> ArtifactRecord:
        self._check_failure("save_artifact")
        versions = self._artifacts.setdefault((project_id, phase, filename), [])
        if versions and versions[-1].content_hash == content_hash(content):
            return versions[-1].model_copy(deep=True)
        record = ArtifactRecord(
            project_id=project_id,
            phase=phase,
            filename=filename,
            content=content,
            version=len(versions) + 1,
        )
        versions.append(record)
        return record.model_copy(deep=True)

    async def list_artifacts(self, project_id: str, phase: Phase | None = None) -> list[ArtifactRecord]:
        latest = [
            versions[-1]
            for (pid, artifact_phase, _), versions in self._artifacts.items()
            if pid == project_id and versions and (phase is None or artifact_phase == phase)
        ]
        latest.sort(key=lambda a: (PHASE_ORDER.index(a.phase), a.filename))
        return [a.model_copy(deep=True) for a in latest]

    async def list_artifact_versions(self, project_id: str, phase: Phase, filename: str) -> list[ArtifactRecord]:
        return [a.model_copy(deep=True) for a in self._artifacts.get((project_id, phase, filename), [])]

    # -- approval gates ---------------------------------------------------

    async def get_gate(self, project_id: str, gate_name: str) -> ApprovalGateRecord | None:
        record = self._gates.get((project_id, gate_name))
        return record.model_copy(deep=True) if record else None

    async def list_gates(self, project_id: str) -> list[ApprovalGateRecord]:
        return [
            r.model_copy(deep=True)
            for (pid, _), r in sorted(self._gates.items(), key=lambda item: item[1].created_at)
            if pid == project_id
        ]

    async def save_gate(self, record: ApprovalGateRecord) -> ApprovalGateRecord:
        self._check_failure("save_gate")
        self._gates[(record.project_id, record.gate_name)] = record.model_copy(deep=True)
        return record.model_copy(deep=True)
