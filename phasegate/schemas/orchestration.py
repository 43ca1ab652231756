"""Pydantic records exchanged between the orchestrator and storage."""

import hashlib
import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, Field, model_validator

from phasegate.domain.gates import GateStatus
from phasegate.domain.phases import INITIAL_PHASE, Phase, PhaseStatus, is_valid_completed_sequence
from phasegate.domain.validation import ValidationIssue


def _now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class Project(BaseModel):
    """Aggregate root. Phase fields change only through the phase state machine."""

    id: str = Field(default_factory=_new_id)
    slug: str = Field(min_length=1)
    name: str = ""
    description: str = ""

    current_phase: Phase = INITIAL_PHASE
    phases_completed: list[Phase] = Field(default_factory=list)

    stack_choice: str | None = None
    stack_approved: bool = False
    stack_approval_date: datetime | None = None
    dependencies_approved: bool = False
    dependencies_approval_date: datetime | None = None

    # Every warning raised for this project, in order
    accumulated_warnings: list[ValidationIssue] = Field(default_factory=list)

    # Optimistic concurrency counter, bumped by the store on every save
    version: int = 0

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _check_phase_invariant(self) -> "Project":
        if not is_valid_completed_sequence(self.current_phase, self.phases_completed):
            raise ValueError(
                f"phases_completed {[p.value for p in self.phases_completed]} is inconsistent "
                f"with current_phase {self.current_phase.value}"
            )
        return self

    def with_phase(self, current_phase: Phase, phases_completed: list[Phase], **changes) -> "Project":
        """Validated copy with new phase fields (and any other field changes)."""
        data = self.model_dump()
        data.update(changes)
        data["current_phase"] = current_phase
        data["phases_completed"] = list(phases_completed)
        data["updated_at"] = _now()
        return Project.model_validate(data)

    def with_changes(self, **changes) -> "Project":
        """Validated copy with field changes."""
        data = self.model_dump()
        data.update(changes)
        data["updated_at"] = _now()
        return Project.model_validate(data)


class PhaseHistoryRecord(BaseModel):
    """One attempt at one phase."""

    id: str = Field(default_factory=_new_id)
    project_id: str
    phase: Phase
    status: PhaseStatus = PhaseStatus.IN_PROGRESS
    started_at: datetime = Field(default_factory=_now)
    completed_at: datetime | None = None
    error_message: str | None = None
    # Set while a passed phase waits on an approval gate
    awaiting_gate: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status == PhaseStatus.IN_PROGRESS


class ArtifactRecord(BaseModel):
    """One version of a named phase artifact."""

    id: str = Field(default_factory=_new_id)
    project_id: str
    phase: Phase
    filename: str = Field(min_length=1)
    content: str
    version: int = Field(default=1, ge=1)
    content_hash: str = ""
    created_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _fill_hash(self) -> "ArtifactRecord":
        if not self.content_hash:
            self.content_hash = content_hash(self.content)
        return self


class ApprovalGateRecord(BaseModel):
    """Per-project approval checkpoint. Never deleted."""

    id: str = Field(default_factory=_new_id)
    project_id: str
    gate_name: str
    status: GateStatus = GateStatus.PENDING
    approved: bool = False
    approver: str | None = None
    approved_at: datetime | None = None
    rationale: str | None = None
    rejection_reason: str | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
