"""Phase enum, canonical ordering, and agent-role bindings.

Pure domain logic with no external dependencies.
"""
from enum import StrEnum


class Phase(StrEnum):
    """Six-phase project workflow. Declaration order is the canonical order."""

    ANALYSIS = "ANALYSIS"
    STACK_SELECTION = "STACK_SELECTION"
    SPEC = "SPEC"
    DEPENDENCIES = "DEPENDENCIES"
    SOLUTIONING = "SOLUTIONING"
    DONE = "DONE"  # Terminal


class AgentRole(StrEnum):
    """Agent roles that produce phase artifacts."""

    ANALYST = "analyst"
    PM = "pm"
    ARCHITECT = "architect"
    SCRUMMASTER = "scrummaster"
    DEVOPS = "devops"


class PhaseStatus(StrEnum):
    """Status of one phase attempt in the history."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)

INITIAL_PHASE = Phase.ANALYSIS
TERMINAL_PHASE = Phase.DONE

# Default phase -> agent roles. Empty tuple: the phase is user-driven and is
# validated against artifacts already saved for it.
DEFAULT_PHASE_AGENT_ROLES: dict[Phase, tuple[AgentRole, ...]] = {
    Phase.ANALYSIS: (AgentRole.ANALYST,),
    Phase.STACK_SELECTION: (),
    Phase.SPEC: (AgentRole.PM,),
    Phase.DEPENDENCIES: (AgentRole.DEVOPS,),
    Phase.SOLUTIONING: (AgentRole.ARCHITECT, AgentRole.SCRUMMASTER),
    Phase.DONE: (),
}


def ensure_exhaustive(table: dict, name: str) -> None:
    """Raise if a phase-keyed table does not cover every phase exactly."""
    missing = [p.value for p in PHASE_ORDER if p not in table]
    extra = [str(k) for k in table if k not in PHASE_ORDER]
    if missing or extra:
        raise ValueError(f"{name} must cover every phase (missing={missing}, unknown={extra})")


ensure_exhaustive(DEFAULT_PHASE_AGENT_ROLES, "DEFAULT_PHASE_AGENT_ROLES")


def phase_index(phase: Phase) -> int:
    return PHASE_ORDER.index(phase)


def next_phase(phase: Phase) -> Phase | None:
    """Immediate successor, or None at the terminal phase."""
    idx = phase_index(phase)
    if idx + 1 >= len(PHASE_ORDER):
        return None
    return PHASE_ORDER[idx + 1]


def previous_phase(phase: Phase) -> Phase | None:
    """Immediate predecessor, or None at the initial phase."""
    idx = phase_index(phase)
    if idx == 0:
        return None
    return PHASE_ORDER[idx - 1]


def is_terminal(phase: Phase) -> bool:
    return phase == TERMINAL_PHASE


def is_valid_completed_sequence(current_phase: Phase, phases_completed: list[Phase]) -> bool:
    """Check the completed-phase invariant.

    Every completed phase must be strictly earlier than current_phase, in
    canonical order, without duplicates.
    """
    current_idx = phase_index(current_phase)
    last_idx = -1
    for phase in phases_completed:
        idx = phase_index(phase)
        if idx >= current_idx or idx <= last_idx:
            return False
        last_idx = idx
    return True
