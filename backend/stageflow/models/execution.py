from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, JSON, UniqueConstraint
from uuid import uuid4

from stageflow.db.base import Base
from stageflow.models.workflow import utcnow


class Execution(Base):
    """One run of a workflow, tracked by status and current stage pointer."""

    __tablename__ = "executions"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    workflow_id = Column(String, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True, default="pending")  # pending, running, paused, completed, failed
    current_stage_order = Column(Integer, nullable=True)
    execution_inputs = Column(JSON, nullable=False, default=dict)
    execution_context = Column(JSON, nullable=False, default=dict)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    # Every transition bumps the version; a concurrent writer holding a stale
    # copy fails its flush with StaleDataError.
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Execution {self.id} ({self.status})>"


class ExecutionLog(Base):
    """
    A single attempt of one stage within an execution.

    ``stage_id`` is nulled if the stage is later deleted; ``stage_order`` keeps
    the attempt readable in the execution history.
    """

    __tablename__ = "execution_logs"
    __table_args__ = (
        UniqueConstraint("execution_id", "stage_id", "retry_count", name="uq_execution_logs_attempt"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    execution_id = Column(String, ForeignKey("executions.id", ondelete="CASCADE"), nullable=False, index=True)
    stage_id = Column(String, ForeignKey("stages.id", ondelete="SET NULL"), nullable=True, index=True)
    stage_order = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending")
    inputs = Column(JSON, nullable=True)
    prompt_sent = Column(Text, nullable=True)
    raw_output = Column(Text, nullable=True)
    processed_output = Column(JSON, nullable=True)
    validation_result = Column(String, nullable=True)  # pass, fail
    validation_details = Column(Text, nullable=True)
    error_details = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), default=utcnow)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def __repr__(self):
        return f"<ExecutionLog {self.stage_order}#{self.retry_count} [{self.status}]>"
