# stageflow/services/workflows.py

import logging
from typing import List, Optional, Tuple

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from stageflow.core.errors import ConflictError, NotFoundError
from stageflow.models import Execution, Stage, Workflow
from stageflow.models.enums import ExecutionStatus
from stageflow.schemas.workflow import StageCreate, StageUpdate, WorkflowCreate, WorkflowUpdate

logger = logging.getLogger(__name__)


async def create_workflow(db: AsyncSession, user_id: str, data: WorkflowCreate) -> Workflow:
    workflow = Workflow(
        user_id=user_id,
        name=data.name,
        description=data.description,
        workflow_metadata=data.metadata,
    )
    db.add(workflow)
    await db.commit()
    await db.refresh(workflow)
    return workflow


async def list_workflows(
    db: AsyncSession,
    user_id: str,
    skip: int = 0,
    limit: int = 100,
    name: Optional[str] = None,
) -> Tuple[int, List[Workflow]]:
    """
    List a user's workflows, newest first.

    Returns:
        The total number of matching workflows and the requested page
    """
    filters = [Workflow.user_id == user_id]
    if name:
        filters.append(Workflow.name.ilike(f"%{name}%"))

    total = (await db.execute(select(func.count()).select_from(Workflow).where(*filters))).scalar_one()
    result = await db.execute(
        select(Workflow).where(*filters).order_by(Workflow.created_at.desc(), Workflow.id).offset(skip).limit(limit)
    )
    return total, list(result.scalars().all())


async def get_workflow(db: AsyncSession, workflow_id: str, user_id: str) -> Workflow:
    """Fetch a workflow owned by ``user_id``; anything else is not found."""
    result = await db.execute(
        select(Workflow).where(Workflow.id == workflow_id, Workflow.user_id == user_id)
    )
    workflow = result.scalars().first()
    if not workflow:
        raise NotFoundError(f"Workflow with ID {workflow_id} not found")
    return workflow


async def update_workflow(db: AsyncSession, workflow_id: str, user_id: str, data: WorkflowUpdate) -> Workflow:
    workflow = await get_workflow(db, workflow_id, user_id)

    update_data = data.model_dump(exclude_unset=True)
    if "metadata" in update_data:
        update_data["workflow_metadata"] = update_data.pop("metadata") or {}
    for key, value in update_data.items():
        setattr(workflow, key, value)

    await db.commit()
    await db.refresh(workflow)
    return workflow


async def delete_workflow(db: AsyncSession, workflow_id: str, user_id: str) -> None:
    result = await db.execute(
        delete(Workflow).where(Workflow.id == workflow_id, Workflow.user_id == user_id)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise NotFoundError(f"Workflow with ID {workflow_id} not found")
    await db.commit()


async def list_stages(db: AsyncSession, workflow_id: str, user_id: str) -> List[Stage]:
    await get_workflow(db, workflow_id, user_id)
    result = await db.execute(
        select(Stage).where(Stage.workflow_id == workflow_id).order_by(Stage.stage_order)
    )
    return list(result.scalars().all())


async def get_stage(db: AsyncSession, workflow_id: str, stage_id: str, user_id: str) -> Stage:
    await get_workflow(db, workflow_id, user_id)
    result = await db.execute(
        select(Stage).where(Stage.id == stage_id, Stage.workflow_id == workflow_id)
    )
    stage = result.scalars().first()
    if not stage:
        raise NotFoundError(f"Stage with ID {stage_id} not found")
    return stage


async def _ensure_order_free(db: AsyncSession, workflow_id: str, stage_order: int) -> None:
    result = await db.execute(
        select(Stage.id).where(Stage.workflow_id == workflow_id, Stage.stage_order == stage_order)
    )
    if result.scalars().first() is not None:
        raise ConflictError(
            f"Stage with order {stage_order} already exists in this workflow",
            reason="stage_order_conflict",
            details={"stage_order": stage_order},
        )


ACTIVE_EXECUTION_STATUSES = (
    ExecutionStatus.PENDING.value,
    ExecutionStatus.RUNNING.value,
    ExecutionStatus.PAUSED.value,
)


async def _ensure_stage_not_current(db: AsyncSession, stage: Stage) -> None:
    """Executions address their current stage by order, so that order cannot move under them."""
    result = await db.execute(
        select(func.count())
        .select_from(Execution)
        .where(
            Execution.workflow_id == stage.workflow_id,
            Execution.current_stage_order == stage.stage_order,
            Execution.status.in_(ACTIVE_EXECUTION_STATUSES),
        )
    )
    active = result.scalar_one()
    if active:
        raise ConflictError(
            f"Stage {stage.stage_order} is the current stage of {active} active execution(s)",
            reason="stage_in_use",
            details={"stage_order": stage.stage_order, "active_executions": active},
        )


async def _commit_stage(db: AsyncSession, stage: Stage) -> Stage:
    try:
        await db.commit()
    except IntegrityError:
        # Another writer took the order between the check and the insert
        await db.rollback()
        raise ConflictError(
            f"Stage with order {stage.stage_order} already exists in this workflow",
            reason="stage_order_conflict",
            details={"stage_order": stage.stage_order},
        )
    await db.refresh(stage)
    return stage


async def create_stage(db: AsyncSession, workflow_id: str, user_id: str, data: StageCreate) -> Stage:
    await get_workflow(db, workflow_id, user_id)
    await _ensure_order_free(db, workflow_id, data.stage_order)

    stage = Stage(
        workflow_id=workflow_id,
        stage_order=data.stage_order,
        name=data.name,
        prompt_template=data.prompt_template,
        model_id=data.model_id,
        validation_type=data.validation_type.value,
        validation_criteria=data.validation_criteria,
        retry_limit=data.retry_limit,
        next_stage_on_pass=data.next_stage_on_pass,
        next_stage_on_fail=data.next_stage_on_fail,
        output_variables=data.output_variables,
        input_variable_mapping=data.input_variable_mapping,
    )
    db.add(stage)
    stage = await _commit_stage(db, stage)
    logger.info(f"Created stage {stage.stage_order} ({stage.id}) in workflow {workflow_id}")
    return stage


async def update_stage(
    db: AsyncSession,
    workflow_id: str,
    stage_id: str,
    user_id: str,
    data: StageUpdate,
) -> Stage:
    """
    Update only the fields present in ``data``.

    A new order that is taken, or a stage that an active execution currently
    sits on, is a conflict and leaves the stage untouched.
    """
    stage = await get_stage(db, workflow_id, stage_id, user_id)

    update_data = data.model_dump(exclude_unset=True)
    new_order = update_data.get("stage_order")
    if new_order is not None and new_order != stage.stage_order:
        await _ensure_order_free(db, workflow_id, new_order)
        await _ensure_stage_not_current(db, stage)

    if update_data.get("validation_type") is not None:
        update_data["validation_type"] = update_data["validation_type"].value
    for key, value in update_data.items():
        setattr(stage, key, value)

    return await _commit_stage(db, stage)


async def delete_stage(db: AsyncSession, workflow_id: str, stage_id: str, user_id: str) -> None:
    await get_workflow(db, workflow_id, user_id)
    result = await db.execute(
        delete(Stage).where(Stage.id == stage_id, Stage.workflow_id == workflow_id)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise NotFoundError(f"Stage with ID {stage_id} not found")
    await db.commit()
