from typing import Dict, List, Optional, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from stageflow.schemas.execution import ExecutionResponse
from stageflow.schemas.workflow import WorkflowDetailResponse


class SnapshotCreate(BaseModel):
    """Model for capturing a workflow snapshot."""
    name: str = Field(..., min_length=1, description="Snapshot name")
    description: Optional[str] = Field(None, description="Snapshot description")
    source_workflow_id: str = Field(..., min_length=1, description="ID of the workflow to capture")


class SnapshotSummary(BaseModel):
    """Snapshot without its captured data."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    name: str
    description: Optional[str] = None
    type: str
    source_workflow_id: Optional[str] = None
    created_at: datetime


class SnapshotResponse(SnapshotSummary):
    """Snapshot including the captured workflow and stages."""
    snapshot_data: Dict[str, Any]


class SnapshotRestoreRequest(BaseModel):
    """Options for restoring a snapshot as a new workflow."""
    start_execution: bool = Field(False, description="Also start an execution of the restored workflow")
    execution_inputs: Dict[str, Any] = Field(default_factory=dict, description="Inputs for the started execution")


class SnapshotRestoreResponse(BaseModel):
    """The restored workflow, and the execution when one was started."""
    workflow: WorkflowDetailResponse
    execution: Optional[ExecutionResponse] = None


class SnapshotListResponse(BaseModel):
    total: int
    items: List[SnapshotSummary]
