"""Result types returned by the phase state machine."""

from dataclasses import dataclass, field
from enum import StrEnum

from phasegate.domain.phases import Phase
from phasegate.domain.validation import ValidationResult


class TransitionOutcome(StrEnum):
    ADVANCED = "advanced"
    VALIDATION_FAILED = "validation_failed"
    GATE_PENDING = "gate_pending"
    AGENT_FAILED = "agent_failed"
    PERSISTENCE_FAILED = "persistence_failed"
    PROJECT_BUSY = "project_busy"
    ALREADY_COMPLETE = "already_complete"


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one advance attempt.

    ``to_phase`` is the project's phase after the attempt: the successor on
    ADVANCED, otherwise unchanged.
    """

    outcome: TransitionOutcome
    project_id: str
    from_phase: Phase
    to_phase: Phase
    validation: ValidationResult | None = None
    pending_gate: str | None = None
    error: str | None = None
    artifacts: dict[str, str] = field(default_factory=dict)

    @property
    def advanced(self) -> bool:
        return self.outcome == TransitionOutcome.ADVANCED


@dataclass(frozen=True)
class RollbackResult:
    allowed: bool
    from_phase: Phase
    to_phase: Phase
    reason: str | None = None
