from sqlalchemy import Column, String, JSON, DateTime
from uuid import uuid4

from stageflow.db.base import Base
from stageflow.models.workflow import utcnow


class AuditLog(Base):
    """Who changed which workflow, stage, execution or snapshot, and when."""

    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)
    event_type = Column(String, nullable=False, index=True)  # e.g. "execution.retry"
    user_id = Column(String, nullable=False, index=True)
    resource_type = Column(String, nullable=False, index=True)  # workflow, stage, execution, snapshot
    resource_id = Column(String, nullable=False, index=True)
    details = Column(JSON, nullable=False, default=dict)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)

    def __repr__(self):
        return f"<AuditLog {self.event_type} {self.resource_type}:{self.resource_id}>"
