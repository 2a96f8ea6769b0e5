from typing import Dict, Optional
from fastapi import APIRouter, Depends, Query, Path, status
import logging

from stageflow.api.deps import get_current_user, get_client_info, get_state_machine, get_stage_runner
from stageflow.core.auth import TokenPayload
from stageflow.schemas.execution import (
    ExecutionCreate,
    ExecutionStatusUpdate,
    ExecutionResponse,
    ExecutionListResponse,
    ExecutionLogResponse,
    ExecutionLogsResponse,
    StageOutcomeCreate,
    ManualValidationCreate,
)
from stageflow.services.audit import log_audit_event
from stageflow.services.executor import ExecutionStateMachine
from stageflow.services.runner import StageRunner

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "",
    response_model=ExecutionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a workflow execution"
)
async def start_execution(
    execution_in: ExecutionCreate,
    state_machine: ExecutionStateMachine = Depends(get_state_machine),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    """
    Start an execution positioned at the workflow's first stage.
    """
    execution = await state_machine.start_execution(
        execution_in.workflow_id, current_user.sub, execution_in.execution_inputs
    )

    await log_audit_event(
        state_machine.db,
        "execution.start",
        current_user.sub,
        execution.id,
        {"workflow_id": execution.workflow_id},
        client_info,
    )

    return execution


@router.get(
    "",
    response_model=ExecutionListResponse,
    summary="List executions"
)
async def list_executions(
    status: Optional[str] = Query(None, description="Filter by execution status"),
    workflow_id: Optional[str] = Query(None, description="Filter by workflow"),
    state_machine: ExecutionStateMachine = Depends(get_state_machine),
    current_user: TokenPayload = Depends(get_current_user),
):
    executions = await state_machine.list_executions(current_user.sub, status=status, workflow_id=workflow_id)
    return {"total": len(executions), "items": executions}


@router.get(
    "/{execution_id}",
    response_model=ExecutionResponse,
    summary="Get an execution"
)
async def get_execution(
    execution_id: str = Path(..., title="The ID of the execution"),
    state_machine: ExecutionStateMachine = Depends(get_state_machine),
    current_user: TokenPayload = Depends(get_current_user),
):
    return await state_machine.get_execution(execution_id, current_user.sub)


@router.put(
    "/{execution_id}",
    response_model=ExecutionResponse,
    summary="Change the status of an execution"
)
async def update_execution_status(
    status_update: ExecutionStatusUpdate,
    execution_id: str = Path(..., title="The ID of the execution"),
    state_machine: ExecutionStateMachine = Depends(get_state_machine),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    """
    Pause, resume or cancel an execution.
    """
    execution = await state_machine.update_status(execution_id, current_user.sub, status_update.status)

    await log_audit_event(
        state_machine.db,
        "execution.status",
        current_user.sub,
        execution.id,
        {"status": execution.status},
        client_info,
    )

    return execution


@router.delete(
    "/{execution_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an execution"
)
async def delete_execution(
    execution_id: str = Path(..., title="The ID of the execution"),
    state_machine: ExecutionStateMachine = Depends(get_state_machine),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    await state_machine.delete_execution(execution_id, current_user.sub)
    await log_audit_event(
        state_machine.db, "execution.delete", current_user.sub, execution_id, client_info=client_info
    )


@router.get(
    "/{execution_id}/logs",
    response_model=ExecutionLogsResponse,
    summary="List the attempt logs of an execution"
)
async def list_execution_logs(
    execution_id: str = Path(..., title="The ID of the execution"),
    stage_id: Optional[str] = Query(None, description="Only logs for this stage"),
    state_machine: ExecutionStateMachine = Depends(get_state_machine),
    current_user: TokenPayload = Depends(get_current_user),
):
    logs = await state_machine.list_execution_logs(execution_id, current_user.sub, stage_id=stage_id)
    return {"total": len(logs), "items": logs, "execution_id": execution_id}


@router.post(
    "/{execution_id}/stages/{stage_id}/outcome",
    response_model=ExecutionLogResponse,
    summary="Record the outcome of running a stage"
)
async def record_stage_outcome(
    outcome: StageOutcomeCreate,
    execution_id: str = Path(..., title="The ID of the execution"),
    stage_id: str = Path(..., title="The ID of the stage"),
    state_machine: ExecutionStateMachine = Depends(get_state_machine),
    current_user: TokenPayload = Depends(get_current_user),
):
    """
    Report raw model output (or an error) for the current stage. The stage's
    validation decides whether the execution advances, retries, waits for a
    reviewer or stops.
    """
    return await state_machine.record_stage_outcome(
        execution_id,
        stage_id,
        current_user.sub,
        raw_output=outcome.raw_output,
        processed_output=outcome.processed_output,
        error=outcome.error,
    )


@router.post(
    "/{execution_id}/run",
    response_model=ExecutionLogResponse,
    summary="Run the current stage against its model"
)
async def run_current_stage(
    execution_id: str = Path(..., title="The ID of the execution"),
    runner: StageRunner = Depends(get_stage_runner),
    current_user: TokenPayload = Depends(get_current_user),
):
    return await runner.run_current_stage(execution_id, current_user.sub)


@router.post(
    "/{execution_id}/stages/{stage_id}/retry",
    response_model=ExecutionLogResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Retry a failed stage"
)
async def retry_stage(
    execution_id: str = Path(..., title="The ID of the execution"),
    stage_id: str = Path(..., title="The ID of the stage"),
    state_machine: ExecutionStateMachine = Depends(get_state_machine),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    log = await state_machine.retry_stage(execution_id, stage_id, current_user.sub)

    await log_audit_event(
        state_machine.db,
        "execution.retry",
        current_user.sub,
        execution_id,
        {"stage_id": stage_id, "retry_count": log.retry_count},
        client_info,
    )

    return log


@router.post(
    "/{execution_id}/stages/{stage_id}/validate",
    response_model=ExecutionLogResponse,
    summary="Approve or reject an attempt awaiting manual validation"
)
async def validate_stage(
    decision: ManualValidationCreate,
    execution_id: str = Path(..., title="The ID of the execution"),
    stage_id: str = Path(..., title="The ID of the stage"),
    state_machine: ExecutionStateMachine = Depends(get_state_machine),
    current_user: TokenPayload = Depends(get_current_user),
    client_info: Dict = Depends(get_client_info),
):
    log = await state_machine.record_manual_validation(
        execution_id, stage_id, current_user.sub, decision.validation_result, decision.comments
    )

    await log_audit_event(
        state_machine.db,
        "execution.validate",
        current_user.sub,
        execution_id,
        {"stage_id": stage_id, "validation_result": log.validation_result},
        client_info,
    )

    return log
