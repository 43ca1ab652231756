"""PhaseHistory model: one row per phase attempt."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from phasegate.db.base import Base


class PhaseHistory(Base):
    __tablename__ = "phase_history"

    id = Column(String(36), primary_key=True)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False, index=True)
    phase = Column(String(32), nullable=False)
    status = Column(String(20), nullable=False, default="in_progress")  # in_progress, completed, failed

    started_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    awaiting_gate = Column(String(64), nullable=True)

    # Insertion order; started_at can tie within one transaction
    sequence = Column(Integer, nullable=False, default=0)
