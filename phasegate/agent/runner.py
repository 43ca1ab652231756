"""AgentRunner Protocol: the seam between the orchestrator and phase agents.

An agent is an external collaborator (typically LLM-backed) that produces a
phase's artifacts. The orchestrator calls it once per agent role bound to the
phase, passing every artifact the project has accumulated so far as context.

Implementations report failure either by returning ``AgentRunResult.error``
or by raising; the phase state machine treats both the same way.
"""

from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from phasegate.domain.phases import AgentRole, Phase
from phasegate.schemas.orchestration import Project


class AgentRunResult(BaseModel):
    """Artifacts produced by one agent role (filename -> content), or an error.

    Content must already be text: parsed JSON or bytes handed back for a
    file are rejected at construction.
    """

    model_config = ConfigDict(frozen=True)

    artifacts: dict[StrictStr, StrictStr] = Field(default_factory=dict)
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@runtime_checkable
class AgentRunner(Protocol):
    """Protocol for invoking the agent bound to a phase role."""

    async def run_agent(
        self,
        phase: Phase,
        role: AgentRole,
        project: Project,
        context_artifacts: Mapping[str, str],
    ) -> AgentRunResult:
        """Run one agent role for a phase.

        Args:
            phase: Phase being executed
            role: Agent role bound to the phase
            project: Current project state (read-only)
            context_artifacts: Latest content of every persisted artifact, by filename

        Returns:
            AgentRunResult with the produced artifacts or an error message
        """
        ...
