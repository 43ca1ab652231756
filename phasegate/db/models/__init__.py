"""Re-export all models so Base.metadata sees them."""

from phasegate.db.models.approval_gate import ApprovalGate
from phasegate.db.models.artifact import Artifact
from phasegate.db.models.phase_history import PhaseHistory
from phasegate.db.models.project import Project

__all__ = [
    "ApprovalGate",
    "Artifact",
    "PhaseHistory",
    "Project",
]
