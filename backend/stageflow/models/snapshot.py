from sqlalchemy import Column, String, Text, ForeignKey, DateTime, JSON
from uuid import uuid4

from stageflow.db.base import Base
from stageflow.models.workflow import utcnow


class Snapshot(Base):
    """Immutable capture of a workflow and its ordered stages."""

    __tablename__ = "snapshots"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String, nullable=False, default="workflow")
    source_workflow_id = Column(String, ForeignKey("workflows.id", ondelete="SET NULL"), nullable=True)
    snapshot_data = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def __repr__(self):
        return f"<Snapshot {self.name}>"
