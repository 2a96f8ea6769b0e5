from typing import Dict, List, Optional, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, StrictBool


class ExecutionCreate(BaseModel):
    """Model for starting a workflow execution."""
    workflow_id: str = Field(..., min_length=1, description="ID of the workflow to execute")
    execution_inputs: Dict[str, Any] = Field(default_factory=dict, description="Input parameters for the workflow")


class ExecutionStatusUpdate(BaseModel):
    """Model for changing an execution's status (pause, resume, cancel)."""
    status: str = Field(..., description="New status (pending, running, paused, completed, failed)")


class ExecutionResponse(BaseModel):
    """Response model for workflow executions."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Execution ID")
    workflow_id: str = Field(..., description="ID of the associated workflow")
    user_id: str = Field(..., description="User that launched the execution")
    status: str = Field(..., description="Execution status (pending, running, paused, completed, failed)")
    current_stage_order: Optional[int] = Field(None, description="Order of the stage the execution is at")
    execution_inputs: Dict[str, Any] = Field(default_factory=dict, description="Input parameters")
    execution_context: Dict[str, Any] = Field(default_factory=dict, description="Variables accumulated across stages")
    error_message: Optional[str] = Field(None, description="Error message if execution failed")
    started_at: datetime = Field(..., description="Start timestamp")
    completed_at: Optional[datetime] = Field(None, description="Completion timestamp")


class ExecutionListResponse(BaseModel):
    """Response model for listing executions."""
    total: int = Field(..., description="Total number of executions")
    items: List[ExecutionResponse] = Field(..., description="List of executions")


class StageOutcomeCreate(BaseModel):
    """Result of running a stage, reported by a runner."""
    raw_output: Optional[str] = Field(None, description="Raw model output")
    processed_output: Optional[Any] = Field(None, description="Parsed output; defaults to the decoded raw output")
    error: Optional[str] = Field(None, description="Error message if the model call failed")


class ManualValidationCreate(BaseModel):
    """Reviewer decision for an attempt awaiting manual validation."""
    validation_result: StrictBool = Field(..., description="True to pass the attempt, False to fail it")
    comments: Optional[str] = Field(None, description="Reviewer notes")


class ExecutionLogResponse(BaseModel):
    """Response model for stage attempt logs."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Log entry ID")
    execution_id: str = Field(..., description="ID of the associated execution")
    stage_id: Optional[str] = Field(None, description="ID of the stage, null once the stage is deleted")
    stage_order: int = Field(..., description="Order of the stage")
    status: str = Field(..., description="pending, running, completed, failed, skipped or awaiting_validation")
    inputs: Optional[Dict[str, Any]] = Field(None, description="Template variables used for the prompt")
    prompt_sent: Optional[str] = Field(None, description="Rendered prompt")
    raw_output: Optional[str] = Field(None, description="Raw model output")
    processed_output: Optional[Any] = Field(None, description="Parsed model output")
    validation_result: Optional[str] = Field(None, description="pass, fail or null")
    validation_details: Optional[str] = Field(None, description="Validator or reviewer notes")
    error_details: Optional[str] = Field(None, description="Error recorded for the attempt")
    retry_count: int = Field(..., description="0-based attempt index for this stage")
    started_at: Optional[datetime] = Field(None, description="Attempt start")
    ended_at: Optional[datetime] = Field(None, description="Attempt end")
    duration_ms: Optional[int] = Field(None, description="Attempt duration in milliseconds")


class ExecutionLogsResponse(BaseModel):
    """Response model for listing execution logs."""
    total: int = Field(..., description="Total number of log entries")
    items: List[ExecutionLogResponse] = Field(..., description="List of log entries")
    execution_id: str = Field(..., description="ID of the associated execution")
