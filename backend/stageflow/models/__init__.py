# stageflow/models/__init__.py
from stageflow.models.workflow import Workflow, Stage
from stageflow.models.execution import Execution, ExecutionLog
from stageflow.models.snapshot import Snapshot
from stageflow.models.audit import AuditLog


# Re-export all models
__all__ = ["Workflow", "Stage", "Execution", "ExecutionLog", "Snapshot", "AuditLog"]
