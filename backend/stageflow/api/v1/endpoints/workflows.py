from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, Query, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from stageflow.api.deps import get_db, get_current_user, get_client_info
from stageflow.core.auth import TokenPayload
from stageflow.schemas.workflow import (
    WorkflowCreate,
    WorkflowUpdate,
    WorkflowResponse,
    WorkflowDetailResponse,
    WorkflowListResponse,
    StageCreate,
    StageUpdate,
    StageResponse,
)
from stageflow.services import workflows as workflow_service
from stageflow.services.audit import log_audit_event

router = APIRouter()


@router.post(
    "",
    response_model=WorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new workflow"
)
async def create_workflow(
    workflow: WorkflowCreate,
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    """
    Create a new workflow owned by the caller.
    """
    new_workflow = await workflow_service.create_workflow(db, current_user.sub, workflow)

    await log_audit_event(
        db,
        "workflow.create",
        current_user.sub,
        new_workflow.id,
        {"name": new_workflow.name},
        client_info,
    )

    return new_workflow


@router.get(
    "",
    response_model=WorkflowListResponse,
    summary="List workflows"
)
async def list_workflows(
    db: AsyncSession = Depends(get_db),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=100),
    name: Optional[str] = None,
    current_user: TokenPayload = Depends(get_current_user),
):
    """
    List the caller's workflows, optionally filtered by name.
    """
    total, workflows = await workflow_service.list_workflows(db, current_user.sub, skip, limit, name)

    return {
        "total": total,
        "items": [WorkflowResponse.model_validate(workflow) for workflow in workflows],
        "skip": skip,
        "limit": limit
    }


@router.get(
    "/{workflow_id}",
    response_model=WorkflowDetailResponse,
    summary="Get a workflow with its stages"
)
async def get_workflow(
    workflow_id: str = Path(..., title="The ID of the workflow to get"),
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
):
    workflow = await workflow_service.get_workflow(db, workflow_id, current_user.sub)
    stages = await workflow_service.list_stages(db, workflow_id, current_user.sub)
    return WorkflowDetailResponse.from_workflow(workflow, stages)


@router.put(
    "/{workflow_id}",
    response_model=WorkflowResponse,
    summary="Update a workflow"
)
async def update_workflow(
    workflow_update: WorkflowUpdate,
    workflow_id: str = Path(..., title="The ID of the workflow to update"),
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    workflow = await workflow_service.update_workflow(db, workflow_id, current_user.sub, workflow_update)

    await log_audit_event(
        db,
        "workflow.update",
        current_user.sub,
        workflow.id,
        {"updated_fields": list(workflow_update.model_dump(exclude_unset=True).keys())},
        client_info,
    )

    return workflow


@router.delete(
    "/{workflow_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a workflow"
)
async def delete_workflow(
    workflow_id: str = Path(..., title="The ID of the workflow to delete"),
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    """
    Delete a workflow. Its stages and executions are removed with it.
    """
    await workflow_service.delete_workflow(db, workflow_id, current_user.sub)
    await log_audit_event(db, "workflow.delete", current_user.sub, workflow_id, client_info=client_info)


@router.get(
    "/{workflow_id}/stages",
    response_model=List[StageResponse],
    summary="List the stages of a workflow"
)
async def list_stages(
    workflow_id: str = Path(..., title="The ID of the workflow"),
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
):
    return await workflow_service.list_stages(db, workflow_id, current_user.sub)


@router.post(
    "/{workflow_id}/stages",
    response_model=StageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a stage to a workflow"
)
async def create_stage(
    stage: StageCreate,
    workflow_id: str = Path(..., title="The ID of the workflow"),
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    """
    Add a stage. A stage_order already used in the workflow is a conflict.
    """
    new_stage = await workflow_service.create_stage(db, workflow_id, current_user.sub, stage)

    await log_audit_event(
        db,
        "stage.create",
        current_user.sub,
        new_stage.id,
        {"workflow_id": workflow_id, "stage_order": new_stage.stage_order},
        client_info,
    )

    return new_stage


@router.get(
    "/{workflow_id}/stages/{stage_id}",
    response_model=StageResponse,
    summary="Get a stage"
)
async def get_stage(
    workflow_id: str = Path(..., title="The ID of the workflow"),
    stage_id: str = Path(..., title="The ID of the stage"),
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
):
    return await workflow_service.get_stage(db, workflow_id, stage_id, current_user.sub)


@router.put(
    "/{workflow_id}/stages/{stage_id}",
    response_model=StageResponse,
    summary="Update a stage"
)
async def update_stage(
    stage_update: StageUpdate,
    workflow_id: str = Path(..., title="The ID of the workflow"),
    stage_id: str = Path(..., title="The ID of the stage"),
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    stage = await workflow_service.update_stage(db, workflow_id, stage_id, current_user.sub, stage_update)

    await log_audit_event(
        db,
        "stage.update",
        current_user.sub,
        stage.id,
        {
            "workflow_id": workflow_id,
            "updated_fields": list(stage_update.model_dump(exclude_unset=True).keys()),
        },
        client_info,
    )

    return stage


@router.delete(
    "/{workflow_id}/stages/{stage_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a stage"
)
async def delete_stage(
    workflow_id: str = Path(..., title="The ID of the workflow"),
    stage_id: str = Path(..., title="The ID of the stage"),
    db: AsyncSession = Depends(get_db),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    await workflow_service.delete_stage(db, workflow_id, stage_id, current_user.sub)
    await log_audit_event(
        db,
        "stage.delete",
        current_user.sub,
        stage_id,
        {"workflow_id": workflow_id},
        client_info,
    )
