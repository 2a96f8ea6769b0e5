"""Read-only view over a workflow's ordered stages and their pass/fail links."""

from typing import Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from stageflow.core.errors import EmptyWorkflowError, NotFoundError, StructuralError
from stageflow.models import Stage
from stageflow.models.enums import ValidationOutcome


class StageGraph:
    """
    Ordered stages of one workflow.

    Stages are kept sorted by ``stage_order``; lookups by order and by id are
    both constant time.
    """

    def __init__(self, workflow_id: str, stages: Sequence[Stage]):
        self.workflow_id = workflow_id
        self.stages: List[Stage] = sorted(stages, key=lambda s: s.stage_order)
        self._by_id: Dict[str, Stage] = {stage.id: stage for stage in self.stages}
        self._by_order: Dict[int, Stage] = {stage.stage_order: stage for stage in self.stages}

    def __len__(self) -> int:
        return len(self.stages)

    def __iter__(self):
        return iter(self.stages)

    def get_stage(self, stage_order: int) -> Stage:
        stage = self._by_order.get(stage_order)
        if stage is None:
            raise NotFoundError(f"Stage with order {stage_order} not found in workflow {self.workflow_id}")
        return stage

    def get_stage_by_id(self, stage_id: str) -> Stage:
        stage = self._by_id.get(stage_id)
        if stage is None:
            raise NotFoundError(f"Stage with ID {stage_id} not found in workflow {self.workflow_id}")
        return stage

    def first_stage(self) -> Stage:
        if not self.stages:
            raise EmptyWorkflowError(f"Workflow with ID {self.workflow_id} has no stages")
        return self.stages[0]

    def resolve_next(self, stage: Stage, outcome: ValidationOutcome) -> Optional[Stage]:
        """
        Follow the stage's link for ``outcome``.

        Returns None when the link is empty, meaning the workflow is terminal
        for that outcome: completed on pass, halted on fail. A link to a stage
        outside this workflow raises StructuralError.
        """
        if outcome == ValidationOutcome.PASS:
            target_id = stage.next_stage_on_pass
        elif outcome == ValidationOutcome.FAIL:
            target_id = stage.next_stage_on_fail
        else:
            raise ValueError(f"Cannot resolve a next stage for outcome {outcome!r}")

        if not target_id:
            return None

        target = self._by_id.get(target_id)
        if target is None:
            raise StructuralError(
                f"Stage {stage.stage_order} links to stage {target_id} on {outcome.value}, "
                f"which is not part of workflow {self.workflow_id}",
                stage_id=stage.id,
                target_id=target_id,
            )
        return target


async def load_stage_graph(db: AsyncSession, workflow_id: str) -> StageGraph:
    """Load every stage of a workflow into a StageGraph."""
    result = await db.execute(
        select(Stage).where(Stage.workflow_id == workflow_id).order_by(Stage.stage_order)
    )
    return StageGraph(workflow_id, result.scalars().all())
