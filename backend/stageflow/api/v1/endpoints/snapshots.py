from typing import Dict, Optional
from fastapi import APIRouter, Depends, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from stageflow.api.deps import get_db, get_current_user, get_client_info
from stageflow.core.auth import TokenPayload
from stageflow.schemas.execution import ExecutionResponse
from stageflow.schemas.snapshot import (
    SnapshotCreate,
    SnapshotSummary,
    SnapshotResponse,
    SnapshotListResponse,
    SnapshotRestoreRequest,
    SnapshotRestoreResponse,
)
from stageflow.schemas.workflow import WorkflowDetailResponse
from stageflow.services import snapshots as snapshot_service
from stageflow.services.audit import log_audit_event

router = APIRouter()


@router.post(
    "",
    response_model=SnapshotSummary,
    status_code=status.HTTP_201_CREATED,
    summary="Capture a snapshot of a workflow"
)
async def create_snapshot(
    snapshot_in: SnapshotCreate,
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    snapshot = await snapshot_service.create_snapshot(
        db,
        current_user.sub,
        snapshot_in.source_workflow_id,
        snapshot_in.name,
        snapshot_in.description,
    )

    await log_audit_event(
        db,
        "snapshot.create",
        current_user.sub,
        snapshot.id,
        {"workflow_id": snapshot.source_workflow_id},
        client_info,
    )

    return snapshot


@router.get(
    "",
    response_model=SnapshotListResponse,
    summary="List snapshots"
)
async def list_snapshots(
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
):
    """
    List the caller's snapshots without their captured data.
    """
    snapshots = await snapshot_service.list_snapshots(db, current_user.sub)
    return {"total": len(snapshots), "items": snapshots}


@router.get(
    "/{snapshot_id}",
    response_model=SnapshotResponse,
    summary="Get a snapshot with its captured data"
)
async def get_snapshot(
    snapshot_id: str = Path(..., title="The ID of the snapshot"),
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
):
    return await snapshot_service.get_snapshot(db, snapshot_id, current_user.sub)


@router.delete(
    "/{snapshot_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a snapshot"
)
async def delete_snapshot(
    snapshot_id: str = Path(..., title="The ID of the snapshot"),
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    await snapshot_service.delete_snapshot(db, snapshot_id, current_user.sub)
    await log_audit_event(db, "snapshot.delete", current_user.sub, snapshot_id, client_info=client_info)


@router.post(
    "/{snapshot_id}/restore",
    response_model=SnapshotRestoreResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Restore a snapshot as a new workflow"
)
async def restore_snapshot(
    restore_in: Optional[SnapshotRestoreRequest] = None,
    snapshot_id: str = Path(..., title="The ID of the snapshot"),
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    """
    Create a new workflow from the snapshot's captured data, optionally
    starting an execution of it straight away.
    """
    restore_in = restore_in or SnapshotRestoreRequest()
    workflow, stages, execution = await snapshot_service.restore_snapshot(
        db,
        snapshot_id,
        current_user.sub,
        start_execution=restore_in.start_execution,
        inputs=restore_in.execution_inputs,
    )

    await log_audit_event(
        db,
        "snapshot.restore",
        current_user.sub,
        snapshot_id,
        {
            "workflow_id": workflow.id,
            "execution_id": execution.id if execution else None,
        },
        client_info,
    )

    return SnapshotRestoreResponse(
        workflow=WorkflowDetailResponse.from_workflow(workflow, stages),
        execution=ExecutionResponse.model_validate(execution) if execution else None,
    )
