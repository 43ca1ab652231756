"""Wiring: build the orchestrator services around one store."""

from dataclasses import dataclass

from redis.asyncio import Redis

from phasegate.agent.runner import AgentRunner
from phasegate.core.config import Settings, get_settings
from phasegate.core.locking import InMemoryProjectLock, ProjectLock, RedisProjectLock
from phasegate.core.metrics import MetricsSink, NullMetrics
from phasegate.core.orchestrator_spec import OrchestratorSpec, get_orchestrator_spec
from phasegate.db.store import ProjectStore
from phasegate.domain.validation import InlineValidationSystem
from phasegate.services.approval_gate_service import ApprovalGateService
from phasegate.services.legacy_migrator import LegacyMigrator
from phasegate.services.migration_service import LegacyProjectMigration
from phasegate.services.phase_state_machine import PhaseStateMachine


@dataclass(frozen=True)
class Orchestrator:
    state_machine: PhaseStateMachine
    gates: ApprovalGateService
    migrator: LegacyMigrator
    migration: LegacyProjectMigration
    validation: InlineValidationSystem


def build_project_lock(settings: Settings, redis: Redis | None = None) -> ProjectLock:
    """Redis lock when a client is supplied (multi-process), else in-process locks."""
    if redis is not None:
        return RedisProjectLock(
            redis,
            ttl=settings.project_lock_ttl_seconds,
            wait_timeout=settings.project_lock_wait_seconds,
        )
    return InMemoryProjectLock(wait_timeout=settings.project_lock_wait_seconds)


def build_orchestrator(
    store: ProjectStore,
    runner: AgentRunner | None = None,
    *,
    spec: OrchestratorSpec | None = None,
    settings: Settings | None = None,
    lock: ProjectLock | None = None,
    redis: Redis | None = None,
    metrics: MetricsSink | None = None,
) -> Orchestrator:
    settings = settings or get_settings()
    spec = spec or get_orchestrator_spec()
    metrics = metrics or NullMetrics()

    validation = InlineValidationSystem(spec)
    migrator = LegacyMigrator.from_spec(spec, metrics)
    gates = ApprovalGateService(store, spec, metrics)
    state_machine = PhaseStateMachine(
        store,
        runner,
        gates,
        spec,
        validation=validation,
        lock=lock or build_project_lock(settings, redis),
        migrator=migrator,
        metrics=metrics,
        agent_timeout=settings.agent_timeout_seconds,
    )
    migration = LegacyProjectMigration(store, state_machine, gates, migrator, metrics)

    return Orchestrator(
        state_machine=state_machine,
        gates=gates,
        migrator=migrator,
        migration=migration,
        validation=validation,
    )
