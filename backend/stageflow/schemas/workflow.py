import re
from typing import Dict, List, Optional, Any
from datetime import datetime
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from stageflow.models.enums import ValidationType


class WorkflowBase(BaseModel):
    """Base model for workflow operations."""
    name: str = Field(..., min_length=1, description="Workflow name")
    description: Optional[str] = Field(None, description="Workflow description")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form editor metadata")


class WorkflowCreate(WorkflowBase):
    """Model for creating a workflow."""
    pass


class WorkflowUpdate(BaseModel):
    """Model for updating a workflow."""
    name: Optional[str] = Field(None, min_length=1, description="Workflow name")
    description: Optional[str] = Field(None, description="Workflow description")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Free-form editor metadata")


class WorkflowResponse(BaseModel):
    """Response model for workflow operations."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Workflow ID")
    user_id: str = Field(..., description="User ID of the owner")
    name: str = Field(..., description="Workflow name")
    description: Optional[str] = Field(None, description="Workflow description")
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("workflow_metadata", "metadata"),
        description="Free-form editor metadata",
    )
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")


class StageFields(BaseModel):
    """Configuration fields shared by stage create and update payloads."""
    name: Optional[str] = Field(None, description="Display name for the stage")
    prompt_template: Optional[str] = Field(None, description="Prompt with {{ variable }} placeholders")
    model_id: Optional[str] = Field(None, description="Model the prompt is sent to")
    validation_criteria: Optional[str] = Field(None, description="Regex pattern for regex validation")
    next_stage_on_pass: Optional[str] = Field(None, description="Stage ID to run after a pass; null completes the workflow")
    next_stage_on_fail: Optional[str] = Field(None, description="Stage ID to run after a failure; null halts the workflow")


class StageCreate(StageFields):
    """Model for creating a stage."""
    stage_order: int = Field(..., ge=1, description="Position of the stage, unique within the workflow")
    validation_type: ValidationType = Field(ValidationType.NONE, description="none, manual or regex")
    retry_limit: int = Field(0, ge=0, description="Retries allowed after the first failed attempt")
    output_variables: List[str] = Field(default_factory=list, description="Context variables bound from the output")
    input_variable_mapping: Dict[str, str] = Field(default_factory=dict, description="Template variable to context key")

    @model_validator(mode="after")
    def check_regex_pattern(self):
        if self.validation_type == ValidationType.REGEX:
            if not self.validation_criteria:
                raise ValueError("Regex validation requires a pattern in validation_criteria")
            try:
                re.compile(self.validation_criteria)
            except re.error as e:
                raise ValueError(f"Invalid regex pattern: {e}")
        return self


class StageUpdate(StageFields):
    """Model for updating a stage. Only fields that are sent are changed."""
    stage_order: Optional[int] = Field(None, ge=1, description="Position of the stage, unique within the workflow")
    validation_type: Optional[ValidationType] = Field(None, description="none, manual or regex")
    retry_limit: Optional[int] = Field(None, ge=0, description="Retries allowed after the first failed attempt")
    output_variables: Optional[List[str]] = Field(None, description="Context variables bound from the output")
    input_variable_mapping: Optional[Dict[str, str]] = Field(None, description="Template variable to context key")

    @field_validator("stage_order", "retry_limit", "validation_type", "output_variables", "input_variable_mapping")
    def reject_explicit_null(cls, v, info):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v


class StageResponse(BaseModel):
    """Response model for stages."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    stage_order: int
    name: Optional[str] = None
    prompt_template: Optional[str] = None
    model_id: Optional[str] = None
    validation_type: str
    validation_criteria: Optional[str] = None
    retry_limit: int
    next_stage_on_pass: Optional[str] = None
    next_stage_on_fail: Optional[str] = None
    output_variables: List[str] = Field(default_factory=list)
    input_variable_mapping: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class WorkflowDetailResponse(WorkflowResponse):
    """Workflow together with its stages in order."""
    stages: List[StageResponse] = Field(default_factory=list, description="Stages ordered by stage_order")

    @classmethod
    def from_workflow(cls, workflow, stages) -> "WorkflowDetailResponse":
        detail = cls.model_validate(workflow)
        detail.stages = [StageResponse.model_validate(stage) for stage in stages]
        return detail


class WorkflowListResponse(BaseModel):
    """Response model for listing workflows."""
    total: int = Field(..., description="Total number of workflows")
    items: List[WorkflowResponse] = Field(..., description="List of workflows")
    skip: int = Field(..., description="Number of workflows skipped")
    limit: int = Field(..., description="Maximum number of workflows returned")
