from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, JSON, UniqueConstraint
from uuid import uuid4

from stageflow.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Workflow(Base):
    """Workflow database model."""

    __tablename__ = "workflows"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=True)
    workflow_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Workflow {self.name}>"


class Stage(Base):
    """One step of a workflow: a prompt, a validation policy and pass/fail links."""

    __tablename__ = "stages"
    __table_args__ = (
        UniqueConstraint("workflow_id", "stage_order", name="uq_stages_workflow_order"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    workflow_id = Column(String, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    stage_order = Column(Integer, nullable=False)
    name = Column(String, nullable=True)
    prompt_template = Column(Text, nullable=True)
    model_id = Column(String, nullable=True)
    validation_type = Column(String, nullable=False, default="none")  # none, manual, regex
    validation_criteria = Column(Text, nullable=True)
    retry_limit = Column(Integer, nullable=False, default=0)
    next_stage_on_pass = Column(String, nullable=True)
    next_stage_on_fail = Column(String, nullable=True)
    output_variables = Column(JSON, nullable=False, default=list)
    input_variable_mapping = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Stage {self.stage_order} of {self.workflow_id}>"
