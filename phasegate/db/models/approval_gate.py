"""ApprovalGate model: per-project human approval checkpoints."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text, UniqueConstraint

from phasegate.db.base import Base


class ApprovalGate(Base):
    __tablename__ = "approval_gates"
    __table_args__ = (UniqueConstraint("project_id", "gate_name", name="uq_project_gate"),)

    id = Column(String(36), primary_key=True)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False, index=True)
    gate_name = Column(String(64), nullable=False)  # "stack", "prd", "dependencies", "architecture"
    status = Column(String(20), nullable=False, default="pending")  # pending, approved, rejected
    approved = Column(Boolean, nullable=False, default=False)

    approver = Column(String(255), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rationale = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC)
    )
