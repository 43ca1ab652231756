"""Project model: phase state and approval flags."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from phasegate.db.base import Base, JSONType


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True)
    slug = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False, default="")
    description = Column(Text, nullable=False, default="")

    current_phase = Column(String(32), nullable=False, default="ANALYSIS")
    # Ordered phase names: ["ANALYSIS", "STACK_SELECTION"]
    phases_completed = Column(JSONType, nullable=False, default=list)

    stack_choice = Column(String(255), nullable=True)  # composition id or legacy template id
    stack_approved = Column(Boolean, nullable=False, default=False)
    stack_approval_date = Column(DateTime(timezone=True), nullable=True)
    dependencies_approved = Column(Boolean, nullable=False, default=False)
    dependencies_approval_date = Column(DateTime(timezone=True), nullable=True)

    # [{"severity", "message", "phase", "artifact_id"}]
    accumulated_warnings = Column(JSONType, nullable=False, default=list)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC)
    )
