"""Audit trail of user actions on workflows, stages, executions and snapshots."""

from typing import Dict, List, Optional, Any, Tuple
from datetime import datetime
import logging

from sqlalchemy import desc, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from stageflow.models.audit import AuditLog

logger = logging.getLogger(__name__)


async def log_audit_event(
    db: AsyncSession,
    event_type: str,
    user_id: str,
    resource_id: str,
    details: Optional[Dict[str, Any]] = None,
    client_info: Optional[Dict[str, Optional[str]]] = None,
) -> Optional[AuditLog]:
    """
    Record an action that has already been committed.

    The resource type is the prefix of ``event_type`` ("stage" for
    "stage.update"). A failed audit write is logged and rolled back; it never
    undoes or fails the action itself.

    Args:
        db: Database session
        event_type: "<resource>.<action>", e.g. "execution.start"
        user_id: ID of the user who performed the action
        resource_id: ID of the workflow, stage, execution or snapshot acted on
        details: Action-specific context such as changed fields
        client_info: IP address and user agent of the caller

    Returns:
        The created audit log entry, or None if it could not be written
    """
    client_info = client_info or {}
    audit_log = AuditLog(
        event_type=event_type,
        user_id=user_id,
        resource_type=event_type.split(".", 1)[0],
        resource_id=resource_id,
        details=details or {},
        ip_address=client_info.get("ip_address"),
        user_agent=client_info.get("user_agent"),
    )

    db.add(audit_log)
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.error(f"Failed to write audit event {event_type} for {resource_id}", exc_info=True)
        return None

    return audit_log


async def get_audit_logs(
    db: AsyncSession,
    skip: int = 0,
    limit: int = 100,
    event_type: Optional[str] = None,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
) -> Tuple[int, List[AuditLog]]:
    """
    Page through the audit trail, newest first.

    Returns:
        Total count of matching entries and the requested page
    """
    filters = []
    if event_type:
        filters.append(AuditLog.event_type == event_type)
    if user_id:
        filters.append(AuditLog.user_id == user_id)
    if resource_type:
        filters.append(AuditLog.resource_type == resource_type)
    if resource_id:
        filters.append(AuditLog.resource_id == resource_id)
    if start_time:
        filters.append(AuditLog.timestamp >= start_time)
    if end_time:
        filters.append(AuditLog.timestamp <= end_time)

    total = (await db.execute(select(func.count()).select_from(AuditLog).where(*filters))).scalar_one()

    result = await db.execute(
        select(AuditLog).where(*filters).order_by(desc(AuditLog.timestamp), AuditLog.id).offset(skip).limit(limit)
    )
    return total, list(result.scalars().all())
