from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class AuditLogResponse(BaseModel):
    """One recorded change to a workflow, stage, execution or snapshot."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    timestamp: datetime
    event_type: str = Field(..., description="Action, e.g. workflow.create or execution.validate")
    user_id: str = Field(..., description="User that performed the action")
    resource_type: str = Field(..., description="workflow, stage, execution or snapshot")
    resource_id: str = Field(..., description="ID of the affected resource")
    details: Dict[str, Any] = Field(default_factory=dict, description="Action-specific context")
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditLogListResponse(BaseModel):
    total: int
    items: List[AuditLogResponse]
    skip: int
    limit: int
