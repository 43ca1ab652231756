class PhaseGateError(Exception):
    """Base exception for the orchestrator."""

    pass


class ConfigurationError(PhaseGateError):
    """Raised when the orchestrator spec is malformed."""

    pass


class ProjectNotFoundError(PhaseGateError):
    """Raised when a project id does not resolve to a stored project."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project '{project_id}' not found")


class PersistenceError(PhaseGateError):
    """Raised when a storage operation fails."""

    pass


class ConcurrentModificationError(PersistenceError):
    """Raised when a project was modified since it was loaded."""

    def __init__(self, project_id: str, expected_version: int):
        self.project_id = project_id
        self.expected_version = expected_version
        super().__init__(
            f"Project '{project_id}' was modified concurrently (expected version {expected_version})"
        )


class AgentExecutionError(PhaseGateError):
    """Raised when a phase agent fails."""

    pass


class AgentTimeoutError(AgentExecutionError):
    """Raised when a phase agent exceeds its time budget."""

    def __init__(self, phase: str, timeout_seconds: float):
        self.phase = phase
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Agent for phase {phase} timed out after {timeout_seconds:g}s")


class ProjectLockTimeoutError(PhaseGateError):
    """Raised when the per-project lock cannot be acquired in time."""

    def __init__(self, project_id: str, wait_seconds: float):
        self.project_id = project_id
        self.wait_seconds = wait_seconds
        super().__init__(f"Project '{project_id}' is busy (lock wait {wait_seconds:g}s exceeded)")


class CompositionLockedError(PhaseGateError):
    """Raised when changing the stack of a project whose stack is already approved."""

    pass


class UnknownGateError(PhaseGateError):
    """Raised when a gate name is not in the orchestrator spec."""

    def __init__(self, gate_name: str):
        self.gate_name = gate_name
        super().__init__(f"Unknown approval gate: {gate_name}")
