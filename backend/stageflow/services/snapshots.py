"""Capture workflows into immutable snapshots and restore them as new workflows."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from stageflow.core.errors import EmptyWorkflowError, InvalidInputError, NotFoundError
from stageflow.models import Execution, Snapshot, Stage, Workflow
from stageflow.models.enums import SnapshotType
from stageflow.services.executor import ExecutionStateMachine
from stageflow.services.stage_graph import load_stage_graph
from stageflow.services.workflows import get_workflow

logger = logging.getLogger(__name__)

# Stage fields copied into and out of snapshot data; ids are handled separately
STAGE_FIELDS = (
    "stage_order",
    "name",
    "prompt_template",
    "model_id",
    "validation_type",
    "validation_criteria",
    "retry_limit",
    "next_stage_on_pass",
    "next_stage_on_fail",
    "output_variables",
    "input_variable_mapping",
)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_workflow(workflow: Workflow, stages: List[Stage]) -> Dict[str, Any]:
    """Build the JSON-safe snapshot payload for a workflow and its ordered stages."""
    return {
        "workflow": {
            "id": workflow.id,
            "name": workflow.name,
            "description": workflow.description,
            "metadata": workflow.workflow_metadata or {},
            "created_at": _isoformat(workflow.created_at),
            "updated_at": _isoformat(workflow.updated_at),
        },
        "stages": [
            {"id": stage.id, **{field: getattr(stage, field) for field in STAGE_FIELDS}}
            for stage in sorted(stages, key=lambda s: s.stage_order)
        ],
    }


async def create_snapshot(
    db: AsyncSession,
    user_id: str,
    workflow_id: str,
    name: str,
    description: Optional[str] = None,
) -> Snapshot:
    workflow = await get_workflow(db, workflow_id, user_id)
    graph = await load_stage_graph(db, workflow_id)

    snapshot = Snapshot(
        user_id=user_id,
        name=name,
        description=description,
        type=SnapshotType.WORKFLOW.value,
        source_workflow_id=workflow.id,
        snapshot_data=serialize_workflow(workflow, graph.stages),
    )
    db.add(snapshot)
    await db.commit()
    await db.refresh(snapshot)

    logger.info(f"Captured snapshot {snapshot.id} of workflow {workflow_id} with {len(graph)} stage(s)")
    return snapshot


async def list_snapshots(db: AsyncSession, user_id: str) -> List[Snapshot]:
    result = await db.execute(
        select(Snapshot).where(Snapshot.user_id == user_id).order_by(Snapshot.created_at.desc(), Snapshot.id)
    )
    return list(result.scalars().all())


async def get_snapshot(db: AsyncSession, snapshot_id: str, user_id: str) -> Snapshot:
    result = await db.execute(
        select(Snapshot).where(Snapshot.id == snapshot_id, Snapshot.user_id == user_id)
    )
    snapshot = result.scalars().first()
    if not snapshot:
        raise NotFoundError(f"Snapshot with ID {snapshot_id} not found")
    return snapshot


async def delete_snapshot(db: AsyncSession, snapshot_id: str, user_id: str) -> None:
    result = await db.execute(
        delete(Snapshot).where(Snapshot.id == snapshot_id, Snapshot.user_id == user_id)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise NotFoundError(f"Snapshot with ID {snapshot_id} not found")
    await db.commit()


async def restore_snapshot(
    db: AsyncSession,
    snapshot_id: str,
    user_id: str,
    start_execution: bool = False,
    inputs: Optional[Dict[str, Any]] = None,
) -> Tuple[Workflow, List[Stage], Optional[Execution]]:
    """
    Restore a snapshot as a brand-new, independent workflow.

    Stages get new ids and their pass/fail links are remapped onto the new
    ids. A link that pointed outside the captured stages is dropped. The
    source workflow does not need to exist any more.

    Returns:
        The new workflow, its stages in order, and the started execution if
        ``start_execution`` was requested
    """
    snapshot = await get_snapshot(db, snapshot_id, user_id)
    data = snapshot.snapshot_data or {}
    source = data.get("workflow")
    captured_stages = data.get("stages")
    if not isinstance(source, dict) or not isinstance(captured_stages, list):
        raise InvalidInputError(
            f"Snapshot with ID {snapshot_id} has malformed data",
            reason="malformed_snapshot",
        )
    if start_execution and not captured_stages:
        raise EmptyWorkflowError(f"Snapshot with ID {snapshot_id} has no stages to execute")

    restored_at = datetime.now(timezone.utc).isoformat()
    workflow = Workflow(
        user_id=user_id,
        name=f"{source.get('name', snapshot.name)} (Restored {restored_at})",
        description=source.get("description"),
        workflow_metadata=source.get("metadata") or {},
    )
    db.add(workflow)
    await db.flush()

    # First pass creates the stages so every new id is known before links are remapped
    ordered = sorted(captured_stages, key=lambda s: s["stage_order"])
    id_map: Dict[str, Stage] = {}
    stages: List[Stage] = []
    for captured in ordered:
        stage = Stage(workflow_id=workflow.id, **{field: captured.get(field) for field in STAGE_FIELDS})
        stage.next_stage_on_pass = None
        stage.next_stage_on_fail = None
        stage.validation_type = stage.validation_type or "none"
        stage.retry_limit = stage.retry_limit or 0
        stage.output_variables = stage.output_variables or []
        stage.input_variable_mapping = stage.input_variable_mapping or {}
        db.add(stage)
        stages.append(stage)
        if captured.get("id"):
            id_map[captured["id"]] = stage
    await db.flush()

    for captured, stage in zip(ordered, stages):
        for field in ("next_stage_on_pass", "next_stage_on_fail"):
            old_target = captured.get(field)
            if not old_target:
                continue
            target = id_map.get(old_target)
            if target is None:
                logger.warning(
                    f"Snapshot {snapshot_id}: stage {stage.stage_order} {field} points outside the snapshot, dropping it"
                )
                continue
            setattr(stage, field, target.id)

    await db.commit()
    logger.info(f"Restored snapshot {snapshot_id} as workflow {workflow.id}")

    execution = None
    if start_execution:
        execution = await ExecutionStateMachine(db).start_execution(workflow.id, user_id, inputs)

    return workflow, stages, execution
