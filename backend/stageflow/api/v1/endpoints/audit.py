from typing import Optional
from datetime import datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stageflow.api.deps import get_db, require_admin
from stageflow.schemas.audit import AuditLogListResponse
from stageflow.services.audit import get_audit_logs

router = APIRouter()


@router.get(
    "",
    response_model=AuditLogListResponse,
    summary="List audit logs",
    dependencies=[Depends(require_admin)]
)
async def list_audit_logs(
    db: AsyncSession = Depends(get_db),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=100),
    event_type: Optional[str] = None,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = Query(None, description="workflow, stage, execution or snapshot"),
    resource_id: Optional[str] = Query(None, description="History of a single resource"),
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
):
    """
    Admin view of the audit trail across all users.
    """
    total, audit_logs = await get_audit_logs(
        db,
        skip=skip,
        limit=limit,
        event_type=event_type,
        user_id=user_id,
        resource_type=resource_type,
        resource_id=resource_id,
        start_time=start_time,
        end_time=end_time,
    )

    return {"total": total, "items": audit_logs, "skip": skip, "limit": limit}
