"""Artifact model: append-only versions of phase documents."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from phasegate.db.base import Base


class Artifact(Base):
    """One stored version of a phase artifact.

    Never updated in place: a changed document is a new row with version + 1.
    """

    __tablename__ = "artifacts"

    id = Column(String(36), primary_key=True)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False, index=True)
    phase = Column(String(32), nullable=False)
    filename = Column(String(255), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    content = Column(Text, nullable=False)
    content_hash = Column(String(64), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    __table_args__ = (
        UniqueConstraint("project_id", "phase", "filename", "version", name="uq_artifact_version"),
    )
