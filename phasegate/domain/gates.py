"""Approval gate resolution logic.

Pure domain functions deciding whether a phase transition is held by a
human-approval checkpoint. No DB access, fully deterministic.
"""

from enum import StrEnum

from phasegate.core.orchestrator_spec import GateDefinition


class GateStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def is_gate_satisfied(
    definition: GateDefinition,
    status: GateStatus | None,
    project_flag: bool = False,
) -> bool:
    """Check whether a gate lets its transition through.

    Args:
        definition: Gate binding from the orchestrator spec
        status: Status of the project's gate record, None if no record yet
        project_flag: Value of the project's mirrored approval flag, if the gate has one

    Rules:
        - Non-blocking gates never hold a transition
        - A rejected gate always holds, whatever the project flag says
        - An approved record, or the mirrored project flag, satisfies the gate
          (projects created before gate records existed only carry the flag)
    """
    if not definition.blocking:
        return True
    if status == GateStatus.REJECTED:
        return False
    return status == GateStatus.APPROVED or project_flag


def first_blocking_gate(
    definitions: list[GateDefinition],
    statuses: dict[str, GateStatus],
    project_flags: dict[str, bool],
) -> str | None:
    """Name of the first gate (in spec order) holding the transition, or None."""
    for definition in definitions:
        flag = project_flags.get(definition.project_flag, False) if definition.project_flag else False
        if not is_gate_satisfied(definition, statuses.get(definition.name), flag):
            return definition.name
    return None
