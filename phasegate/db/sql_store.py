"""SqlAlchemyProjectStore: ProjectStore over an async SQLAlchemy session factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import UTC, datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phasegate.core.exceptions import ConcurrentModificationError, PersistenceError, ProjectNotFoundError
from phasegate.db import models
from phasegate.domain.phases import PHASE_ORDER, Phase, PhaseStatus
from phasegate.domain.validation import ValidationIssue
from phasegate.schemas.orchestration import (
    ApprovalGateRecord,
    ArtifactRecord,
    PhaseHistoryRecord,
    Project,
    content_hash,
)

logger = structlog.get_logger(__name__)

_current_session: ContextVar[AsyncSession | None] = ContextVar("phasegate_sql_session", default=None)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _project_record(row: models.Project) -> Project:
    return Project(
        id=row.id,
        slug=row.slug,
        name=row.name,
        description=row.description,
        current_phase=Phase(row.current_phase),
        phases_completed=[Phase(p) for p in row.phases_completed or []],
        stack_choice=row.stack_choice,
        stack_approved=row.stack_approved,
        stack_approval_date=_aware(row.stack_approval_date),
        dependencies_approved=row.dependencies_approved,
        dependencies_approval_date=_aware(row.dependencies_approval_date),
        accumulated_warnings=[ValidationIssue.from_dict(w) for w in row.accumulated_warnings or []],
        version=row.version,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _project_values(project: Project) -> dict:
    """Mutable columns of a project row."""
    return {
        "slug": project.slug,
        "name": project.name,
        "description": project.description,
        "current_phase": project.current_phase.value,
        "phases_completed": [p.value for p in project.phases_completed],
        "stack_choice": project.stack_choice,
        "stack_approved": project.stack_approved,
        "stack_approval_date": project.stack_approval_date,
        "dependencies_approved": project.dependencies_approved,
        "dependencies_approval_date": project.dependencies_approval_date,
        "accumulated_warnings": [w.to_dict() for w in project.accumulated_warnings],
        "updated_at": project.updated_at,
    }


def _history_record(row: models.PhaseHistory) -> PhaseHistoryRecord:
    return PhaseHistoryRecord(
        id=row.id,
        project_id=row.project_id,
        phase=Phase(row.phase),
        status=PhaseStatus(row.status),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        error_message=row.error_message,
        awaiting_gate=row.awaiting_gate,
    )


def _artifact_record(row: models.Artifact) -> ArtifactRecord:
    return ArtifactRecord(
        id=row.id,
        project_id=row.project_id,
        phase=Phase(row.phase),
        filename=row.filename,
        content=row.content,
        version=row.version,
        content_hash=row.content_hash,
        created_at=_aware(row.created_at),
    )


def _gate_record(row: models.ApprovalGate) -> ApprovalGateRecord:
    return ApprovalGateRecord(
        id=row.id,
        project_id=row.project_id,
        gate_name=row.gate_name,
        status=row.status,
        approved=row.approved,
        approver=row.approver,
        approved_at=_aware(row.approved_at),
        rationale=row.rationale,
        rejection_reason=row.rejection_reason,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


class SqlAlchemyProjectStore:
    """ProjectStore backed by PostgreSQL (or SQLite in tests).

    Outside ``transaction()`` every call runs in its own short session and
    commits on return. Inside it, calls share the transaction's session and
    commit together when the block exits.

    SQLAlchemy errors surface as PersistenceError.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize with dependency injection.

        Args:
            session_factory: SQLAlchemy async session factory
        """
        self.session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[None, None]:
        if _current_session.get() is not None:
            yield
            return

        try:
            async with self.session_factory() as session, session.begin():
                token = _current_session.set(session)
                try:
                    yield
                finally:
                    _current_session.reset(token)
        except SQLAlchemyError as e:
            logger.error("store_transaction_failed", error=str(e), error_type=type(e).__name__)
            raise PersistenceError(f"Transaction failed: {e}") from e

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        session = _current_session.get()
        if session is not None:
            try:
                yield session
            except SQLAlchemyError as e:
                raise PersistenceError(str(e)) from e
            return

        try:
            async with self.session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error("store_operation_failed", error=str(e), error_type=type(e).__name__)
            raise PersistenceError(str(e)) from e

    # -- projects ---------------------------------------------------------

    async def create_project(self, project: Project) -> Project:
        async with self._session() as session:
            row = models.Project(
                id=project.id,
                version=1,
                created_at=project.created_at,
                **_project_values(project),
            )
            session.add(row)
            await session.flush()
            return _project_record(row)

    async def get_project(self, project_id: str) -> Project | None:
        async with self._session() as session:
            row = await session.get(models.Project, project_id, populate_existing=True)
            return _project_record(row) if row else None

    async def load_project(self, project_id: str) -> Project:
        project = await self.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    async def save_project(self, project: Project) -> Project:
        async with self._session() as session:
            result = await session.execute(
                update(models.Project)
                .where(models.Project.id == project.id, models.Project.version == project.version)
                .values(version=project.version + 1, **_project_values(project))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                exists = await session.scalar(
                    select(func.count()).select_from(models.Project).where(models.Project.id == project.id)
                )
                if not exists:
                    raise ProjectNotFoundError(project.id)
                raise ConcurrentModificationError(project.id, project.version)

            row = await session.get(models.Project, project.id, populate_existing=True)
            return _project_record(row)

    async def list_projects(self) -> list[Project]:
        async with self._session() as session:
            rows = (await session.execute(select(models.Project).order_by(models.Project.created_at))).scalars()
            return [_project_record(row) for row in rows]

    # -- phase history ----------------------------------------------------

    async def add_phase_history(self, record: PhaseHistoryRecord) -> PhaseHistoryRecord:
        async with self._session() as session:
            sequence = await session.scalar(
                select(func.coalesce(func.max(models.PhaseHistory.sequence), 0)).where(
                    models.PhaseHistory.project_id == record.project_id
                )
            )
            session.add(
                models.PhaseHistory(
                    id=record.id,
                    project_id=record.project_id,
                    phase=record.phase.value,
                    status=record.status.value,
                    started_at=record.started_at,
                    completed_at=record.completed_at,
                    error_message=record.error_message,
                    awaiting_gate=record.awaiting_gate,
                    sequence=sequence + 1,
                )
            )
            await session.flush()
            return record

    async def update_phase_history(self, record: PhaseHistoryRecord) -> PhaseHistoryRecord:
        async with self._session() as session:
            row = await session.get(models.PhaseHistory, record.id)
            if row is None:
                raise PersistenceError(f"Phase history record {record.id} not found")
            row.status = record.status.value
            row.completed_at = record.completed_at
            row.error_message = record.error_message
            row.awaiting_gate = record.awaiting_gate
            await session.flush()
            return record

    async def get_open_phase_history(self, project_id: str, phase: Phase) -> PhaseHistoryRecord | None:
        async with self._session() as session:
            row = await session.scalar(
                select(models.PhaseHistory)
                .where(
                    models.PhaseHistory.project_id == project_id,
                    models.PhaseHistory.phase == phase.value,
                    models.PhaseHistory.status == PhaseStatus.IN_PROGRESS.value,
                )
                .order_by(models.PhaseHistory.sequence.desc())
                .limit(1)
            )
            return _history_record(row) if row else None

    async def list_phase_history(self, project_id: str) -> list[PhaseHistoryRecord]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(models.PhaseHistory)
                    .where(models.PhaseHistory.project_id == project_id)
                    .order_by(models.PhaseHistory.sequence)
                )
            ).scalars()
            return [_history_record(row) for row in rows]

    # -- artifacts --------------------------------------------------------

    async def save_artifact(self, project_id: str, phase: Phase, filename: str, content: str) -> ArtifactRecord:
        async with self._session() as session:
            latest = await session.scalar(
                select(models.Artifact)
                .where(
                    models.Artifact.project_id == project_id,
                    models.Artifact.phase == phase.value,
                    models.Artifact.filename == filename,
                )
                .order_by(models.Artifact.version.desc())
                .limit(1)
            )
            digest = content_hash(content)
            if latest is not None and latest.content_hash == digest:
                return _artifact_record(latest)

            record = ArtifactRecord(
                project_id=project_id,
                phase=phase,
                filename=filename,
                content=content,
                version=(latest.version + 1) if latest else 1,
                content_hash=digest,
            )
            session.add(
                models.Artifact(
                    id=record.id,
                    project_id=project_id,
                    phase=phase.value,
                    filename=filename,
                    version=record.version,
                    content=content,
                    content_hash=digest,
                    created_at=record.created_at,
                )
            )
            await session.flush()
            return record

    async def list_artifacts(self, project_id: str, phase: Phase | None = None) -> list[ArtifactRecord]:
        async with self._session() as session:
            stmt = select(models.Artifact).where(models.Artifact.project_id == project_id)
            if phase is not None:
                stmt = stmt.where(models.Artifact.phase == phase.value)
            rows = (await session.execute(stmt.order_by(models.Artifact.version))).scalars()

            latest: dict[tuple[str, str], models.Artifact] = {}
            for row in rows:
                latest[(row.phase, row.filename)] = row

        records = [_artifact_record(row) for row in latest.values()]
        records.sort(key=lambda a: (PHASE_ORDER.index(a.phase), a.filename))
        return records

    async def list_artifact_versions(self, project_id: str, phase: Phase, filename: str) -> list[ArtifactRecord]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(models.Artifact)
                    .where(
                        models.Artifact.project_id == project_id,
                        models.Artifact.phase == phase.value,
                        models.Artifact.filename == filename,
                    )
                    .order_by(models.Artifact.version)
                )
            ).scalars()
            return [_artifact_record(row) for row in rows]

    # -- approval gates ---------------------------------------------------

    async def _gate_row(self, session: AsyncSession, project_id: str, gate_name: str) -> models.ApprovalGate | None:
        return await session.scalar(
            select(models.ApprovalGate).where(
                models.ApprovalGate.project_id == project_id,
                models.ApprovalGate.gate_name == gate_name,
            )
        )

    async def get_gate(self, project_id: str, gate_name: str) -> ApprovalGateRecord | None:
        async with self._session() as session:
            row = await self._gate_row(session, project_id, gate_name)
            return _gate_record(row) if row else None

    async def list_gates(self, project_id: str) -> list[ApprovalGateRecord]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(models.ApprovalGate)
                    .where(models.ApprovalGate.project_id == project_id)
                    .order_by(models.ApprovalGate.created_at, models.ApprovalGate.gate_name)
                )
            ).scalars()
            return [_gate_record(row) for row in rows]

    async def save_gate(self, record: ApprovalGateRecord) -> ApprovalGateRecord:
        async with self._session() as session:
            row = await self._gate_row(session, record.project_id, record.gate_name)
            if row is None:
                row = models.ApprovalGate(
                    id=record.id,
                    project_id=record.project_id,
                    gate_name=record.gate_name,
                    created_at=record.created_at,
                )
                session.add(row)
            row.status = record.status.value
            row.approved = record.approved
            row.approver = record.approver
            row.approved_at = record.approved_at
            row.rationale = record.rationale
            row.rejection_reason = record.rejection_reason
            row.updated_at = datetime.now(UTC)
            await session.flush()
            return _gate_record(row)
