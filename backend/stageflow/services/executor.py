from typing import Dict, List, Any, Optional
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from stageflow.core.errors import (
    ConflictError,
    InternalError,
    InvalidInputError,
    NotFoundError,
    StageflowError,
    StructuralError,
)
from stageflow.models import Execution, ExecutionLog, Stage, Workflow
from stageflow.models.enums import (
    ACTIVE_LOG_STATUSES,
    ExecutionStatus,
    LogStatus,
    ValidationOutcome,
)
from stageflow.models.workflow import utcnow
from stageflow.services.stage_graph import StageGraph, load_stage_graph
from stageflow.services import validation

# Set up logger for the execution state machine
logger = logging.getLogger(__name__)


ALLOWED_STATUS_TRANSITIONS = {
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.PAUSED, ExecutionStatus.FAILED},
    ExecutionStatus.RUNNING: {ExecutionStatus.PAUSED, ExecutionStatus.COMPLETED, ExecutionStatus.FAILED},
    ExecutionStatus.PAUSED: {ExecutionStatus.RUNNING, ExecutionStatus.FAILED},
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
}


def process_output(raw_output: Optional[str]) -> Any:
    """Decode a JSON model response, falling back to the stripped text."""
    if raw_output is None:
        return None
    text = raw_output.strip()
    try:
        return json.loads(text)
    except ValueError:
        return text


def bind_stage_output(context: Optional[Dict[str, Any]], stage: Stage, processed_output: Any) -> Dict[str, Any]:
    """
    Return a new execution context with a passed stage's output bound into it.

    The whole output is always bound as ``stage_<order>_output``. Each name in
    the stage's ``output_variables`` is bound to that key of a JSON object
    output, or to the whole output otherwise.
    """
    bound = dict(context or {})
    bound[f"stage_{stage.stage_order}_output"] = processed_output
    for name in stage.output_variables or []:
        if isinstance(processed_output, dict):
            bound[name] = processed_output.get(name)
        else:
            bound[name] = processed_output
    return bound


def _elapsed_ms(started_at: Optional[datetime], ended_at: datetime) -> Optional[int]:
    if started_at is None:
        return None
    # SQLite hands back naive datetimes
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return max(0, int((ended_at - started_at).total_seconds() * 1000))


class ExecutionStateMachine:
    """
    Owns the lifecycle of workflow executions.

    Executions move ``pending -> running -> {paused, completed, failed}``.
    Each transition locks the execution row, writes its attempt log changes
    and the execution update, and commits once. Concurrent transitions on the
    same execution are serialized by the row lock where the database supports
    it and by the execution's version counter everywhere.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the state machine.

        Args:
            db (AsyncSession): SQLAlchemy async database session
        """
        self.db = db

    # Reads

    async def get_execution(self, execution_id: str, user_id: str) -> Execution:
        result = await self.db.execute(
            select(Execution).where(Execution.id == execution_id, Execution.user_id == user_id)
        )
        execution = result.scalars().first()
        if not execution:
            raise NotFoundError(f"Execution with ID {execution_id} not found")
        return execution

    async def list_executions(
        self,
        user_id: str,
        status: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> List[Execution]:
        query = select(Execution).where(Execution.user_id == user_id)
        if status:
            query = query.where(Execution.status == status)
        if workflow_id:
            query = query.where(Execution.workflow_id == workflow_id)

        result = await self.db.execute(query.order_by(Execution.started_at.desc(), Execution.id))
        return list(result.scalars().all())

    async def list_execution_logs(
        self,
        execution_id: str,
        user_id: str,
        stage_id: Optional[str] = None,
    ) -> List[ExecutionLog]:
        await self.get_execution(execution_id, user_id)

        query = select(ExecutionLog).where(ExecutionLog.execution_id == execution_id)
        if stage_id:
            query = query.where(ExecutionLog.stage_id == stage_id)

        result = await self.db.execute(
            query.order_by(
                ExecutionLog.created_at,
                ExecutionLog.stage_order,
                ExecutionLog.retry_count,
                ExecutionLog.id,
            )
        )
        return list(result.scalars().all())

    # Transitions

    async def start_execution(
        self,
        workflow_id: str,
        user_id: str,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> Execution:
        """
        Create an execution positioned at the workflow's first stage.

        Args:
            workflow_id: ID of the workflow to execute
            user_id: ID of the user launching the execution
            inputs: Initial input payload, also used to seed the execution context

        Returns:
            The created execution, already ``running``
        """
        async with self._transaction():
            result = await self.db.execute(
                select(Workflow).where(Workflow.id == workflow_id, Workflow.user_id == user_id)
            )
            if not result.scalars().first():
                raise NotFoundError(f"Workflow with ID {workflow_id} not found")

            graph = await load_stage_graph(self.db, workflow_id)
            first_stage = graph.first_stage()

            execution = Execution(
                workflow_id=workflow_id,
                user_id=user_id,
                status=ExecutionStatus.RUNNING.value,
                current_stage_order=first_stage.stage_order,
                execution_inputs=dict(inputs or {}),
                execution_context=dict(inputs or {}),
            )
            self.db.add(execution)

        logger.info(
            f"Started execution {execution.id} of workflow {workflow_id} "
            f"at stage {first_stage.stage_order}"
        )
        return execution

    async def begin_attempt(
        self,
        execution_id: str,
        stage_id: str,
        user_id: str,
        inputs: Optional[Dict[str, Any]] = None,
        prompt_sent: Optional[str] = None,
    ) -> ExecutionLog:
        """Mark the current stage's attempt as running before the model is called."""
        async with self._transaction():
            execution = await self._lock_execution(execution_id, user_id)
            graph, stage = await self._current_stage(execution, stage_id)
            log = await self._open_attempt(execution, stage)

            log.status = LogStatus.RUNNING.value
            log.inputs = inputs
            log.prompt_sent = prompt_sent
            log.started_at = utcnow()
            self._touch(execution)

        logger.info(f"Execution {execution_id}: stage {stage.stage_order} attempt {log.retry_count} running")
        return log

    async def record_stage_outcome(
        self,
        execution_id: str,
        stage_id: str,
        user_id: str,
        raw_output: Optional[str] = None,
        processed_output: Any = None,
        error: Optional[str] = None,
    ) -> ExecutionLog:
        """
        Record the result of running the current stage and transition.

        An ``error`` fails the attempt without validation. Otherwise the
        stage's validation policy decides between pass, fail and
        awaiting_validation.

        Returns:
            The attempt log written for this outcome
        """
        async with self._transaction():
            execution = await self._lock_execution(execution_id, user_id)
            graph, stage = await self._current_stage(execution, stage_id)
            log = await self._open_attempt(execution, stage)

            now = utcnow()
            log.raw_output = raw_output

            if error:
                log.status = LogStatus.FAILED.value
                log.error_details = error
                log.ended_at = now
                log.duration_ms = _elapsed_ms(log.started_at, now)
                logger.warning(
                    f"Execution {execution_id}: stage {stage.stage_order} attempt {log.retry_count} errored: {error}"
                )
                self._apply_outcome(execution, graph, stage, log, ValidationOutcome.FAIL)
            else:
                log.processed_output = processed_output if processed_output is not None else process_output(raw_output)
                verdict = validation.evaluate(stage, raw_output)
                log.validation_details = verdict.details

                if verdict.outcome == ValidationOutcome.AWAITING_VALIDATION:
                    log.status = LogStatus.AWAITING_VALIDATION.value
                    logger.info(
                        f"Execution {execution_id}: stage {stage.stage_order} attempt {log.retry_count} "
                        "awaiting manual validation"
                    )
                else:
                    log.ended_at = now
                    log.duration_ms = _elapsed_ms(log.started_at, now)
                    self._resolve_attempt(execution, graph, stage, log, verdict.outcome)

            self._touch(execution)

        return log

    async def record_manual_validation(
        self,
        execution_id: str,
        stage_id: str,
        user_id: str,
        result: bool,
        comments: Optional[str] = None,
    ) -> ExecutionLog:
        """Resolve an attempt held for manual validation, then transition."""
        async with self._transaction():
            execution = await self._lock_execution(execution_id, user_id)
            graph = await load_stage_graph(self.db, execution.workflow_id)
            stage = graph.get_stage_by_id(stage_id)

            log = await self._latest_log(execution.id, stage.id)
            if log is None:
                raise NotFoundError(f"No execution log found for stage {stage_id}")
            if log.status != LogStatus.AWAITING_VALIDATION.value:
                raise ConflictError(
                    f"Latest log for stage {stage_id} is {log.status}, not awaiting validation",
                    reason="not_awaiting_validation",
                )
            if execution.status != ExecutionStatus.RUNNING.value:
                raise ConflictError(
                    f"Execution with ID {execution_id} is {execution.status}, not running",
                    reason="invalid_state",
                )

            outcome = ValidationOutcome.PASS if result else ValidationOutcome.FAIL
            now = utcnow()
            log.validation_details = comments or ("Approved by reviewer" if result else "Rejected by reviewer")
            log.ended_at = now
            log.duration_ms = _elapsed_ms(log.started_at, now)
            self._resolve_attempt(execution, graph, stage, log, outcome)
            self._touch(execution)

        return log

    async def retry_stage(self, execution_id: str, stage_id: str, user_id: str) -> ExecutionLog:
        """
        Open a new pending attempt for a stage whose latest attempt failed.

        Enforces the same retry limit as automatic retries: the latest attempt's
        ``retry_count`` must be below the stage's ``retry_limit``.
        """
        async with self._transaction():
            execution = await self._lock_execution(execution_id, user_id)
            if execution.status == ExecutionStatus.COMPLETED.value:
                raise ConflictError(
                    f"Execution with ID {execution_id} is completed",
                    reason="invalid_state",
                )

            graph = await load_stage_graph(self.db, execution.workflow_id)
            stage = graph.get_stage_by_id(stage_id)

            latest = await self._latest_log(execution.id, stage.id)
            if latest is None:
                raise NotFoundError(f"No execution log found for stage {stage_id}")
            if latest.status != LogStatus.FAILED.value:
                raise ConflictError(
                    f"Latest log for stage {stage_id} is {latest.status}, only failed attempts can be retried",
                    reason="not_retryable",
                )
            if latest.retry_count >= stage.retry_limit:
                raise ConflictError(
                    "Retry limit reached for this stage",
                    reason="retry_limit_reached",
                    details={"attempts": latest.retry_count + 1, "limit": stage.retry_limit},
                )

            log = ExecutionLog(
                execution_id=execution.id,
                stage_id=stage.id,
                stage_order=stage.stage_order,
                status=LogStatus.PENDING.value,
                retry_count=latest.retry_count + 1,
                inputs=latest.inputs,
                prompt_sent=latest.prompt_sent,
            )
            self.db.add(log)

            execution.status = ExecutionStatus.RUNNING.value
            execution.current_stage_order = stage.stage_order
            execution.completed_at = None
            execution.error_message = None
            self._touch(execution)

        logger.info(f"Execution {execution_id}: retrying stage {stage.stage_order} (attempt {log.retry_count})")
        return log

    async def update_status(self, execution_id: str, user_id: str, status: str) -> Execution:
        """Apply a caller-requested status change such as pause, resume or cancel."""
        try:
            new_status = ExecutionStatus(status)
        except ValueError:
            allowed = ", ".join(s.value for s in ExecutionStatus)
            raise InvalidInputError(f"Invalid status value. Allowed: {allowed}", reason="invalid_status")

        async with self._transaction():
            execution = await self._lock_execution(execution_id, user_id)
            current = ExecutionStatus(execution.status)
            if new_status == current:
                return execution
            if new_status not in ALLOWED_STATUS_TRANSITIONS[current]:
                raise ConflictError(
                    f"Cannot change execution status from {current.value} to {new_status.value}",
                    reason="invalid_transition",
                )

            execution.status = new_status.value
            if new_status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED):
                execution.completed_at = utcnow()
            if new_status == ExecutionStatus.FAILED:
                execution.error_message = execution.error_message or "Execution cancelled"
                await self._skip_active_logs(execution)
            self._touch(execution)

        logger.info(f"Execution {execution_id}: status {current.value} -> {new_status.value}")
        return execution

    async def delete_execution(self, execution_id: str, user_id: str) -> None:
        async with self._transaction():
            result = await self.db.execute(
                delete(Execution).where(Execution.id == execution_id, Execution.user_id == user_id)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Execution with ID {execution_id} not found")

    # Internals

    @asynccontextmanager
    async def _transaction(self):
        """Commit once on success; roll back and translate persistence errors on failure."""
        try:
            yield
            await self.db.commit()
        except StageflowError:
            await self.db.rollback()
            raise
        except (StaleDataError, IntegrityError) as e:
            await self.db.rollback()
            logger.warning(f"Concurrent modification detected: {e}")
            raise ConflictError(
                "Execution was modified concurrently, reload and try again",
                reason="concurrent_modification",
            )
        except SQLAlchemyError:
            await self.db.rollback()
            logger.error("Failed to persist execution state", exc_info=True)
            raise InternalError("Failed to persist execution state")
        except Exception:
            await self.db.rollback()
            raise

    async def _lock_execution(self, execution_id: str, user_id: str) -> Execution:
        result = await self.db.execute(
            select(Execution)
            .where(Execution.id == execution_id, Execution.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        execution = result.scalars().first()
        if not execution:
            raise NotFoundError(f"Execution with ID {execution_id} not found")
        return execution

    async def _current_stage(self, execution: Execution, stage_id: str):
        """Check that ``stage_id`` is the stage the running execution points at."""
        if execution.status != ExecutionStatus.RUNNING.value:
            raise ConflictError(
                f"Execution with ID {execution.id} is {execution.status}, not running",
                reason="invalid_state",
            )

        graph = await load_stage_graph(self.db, execution.workflow_id)
        stage = graph.get_stage_by_id(stage_id)
        if stage.stage_order != execution.current_stage_order:
            raise ConflictError(
                f"Stage {stage.stage_order} is not the current stage "
                f"(current stage is {execution.current_stage_order})",
                reason="stale_stage",
            )
        return graph, stage

    async def _latest_log(self, execution_id: str, stage_id: str) -> Optional[ExecutionLog]:
        result = await self.db.execute(
            select(ExecutionLog)
            .where(ExecutionLog.execution_id == execution_id, ExecutionLog.stage_id == stage_id)
            .order_by(ExecutionLog.retry_count.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def _open_attempt(self, execution: Execution, stage: Stage) -> ExecutionLog:
        """
        Return the stage's active attempt, or append a new one.

        A pending or running attempt is reused so a stage never has two
        active logs. An attempt held for manual validation blocks new ones.
        """
        latest = await self._latest_log(execution.id, stage.id)
        if latest is not None:
            if latest.status == LogStatus.AWAITING_VALIDATION.value:
                raise ConflictError(
                    f"Stage {stage.stage_order} is awaiting manual validation",
                    reason="awaiting_validation",
                )
            if latest.status in ACTIVE_LOG_STATUSES:
                return latest

        count_result = await self.db.execute(
            select(func.count())
            .select_from(ExecutionLog)
            .where(ExecutionLog.execution_id == execution.id, ExecutionLog.stage_id == stage.id)
        )
        log = ExecutionLog(
            execution_id=execution.id,
            stage_id=stage.id,
            stage_order=stage.stage_order,
            status=LogStatus.PENDING.value,
            retry_count=count_result.scalar_one(),
            started_at=utcnow(),
        )
        self.db.add(log)
        return log

    def _resolve_attempt(
        self,
        execution: Execution,
        graph: StageGraph,
        stage: Stage,
        log: ExecutionLog,
        outcome: ValidationOutcome,
    ) -> None:
        log.validation_result = outcome.value
        if outcome == ValidationOutcome.PASS:
            log.status = LogStatus.COMPLETED.value
            execution.execution_context = bind_stage_output(
                execution.execution_context, stage, log.processed_output
            )
        else:
            log.status = LogStatus.FAILED.value
        logger.info(
            f"Execution {execution.id}: stage {stage.stage_order} attempt {log.retry_count} "
            f"resolved {outcome.value}"
        )
        self._apply_outcome(execution, graph, stage, log, outcome)

    def _apply_outcome(
        self,
        execution: Execution,
        graph: StageGraph,
        stage: Stage,
        log: ExecutionLog,
        outcome: ValidationOutcome,
    ) -> None:
        """Move the execution after an attempt passed or failed."""
        if outcome == ValidationOutcome.FAIL and log.retry_count < stage.retry_limit:
            logger.info(
                f"Execution {execution.id}: stage {stage.stage_order} may be retried "
                f"({log.retry_count + 1} of {stage.retry_limit + 1} attempts used)"
            )
            return

        try:
            next_stage = graph.resolve_next(stage, outcome)
        except StructuralError as e:
            logger.error(f"Execution {execution.id}: {e.message}")
            log.error_details = f"{log.error_details}\n{e.message}" if log.error_details else e.message
            execution.status = ExecutionStatus.FAILED.value
            execution.error_message = e.message
            execution.completed_at = utcnow()
            return

        if next_stage is not None:
            logger.info(
                f"Execution {execution.id}: advancing from stage {stage.stage_order} "
                f"to stage {next_stage.stage_order} on {outcome.value}"
            )
            execution.current_stage_order = next_stage.stage_order
            return

        execution.completed_at = utcnow()
        if outcome == ValidationOutcome.PASS:
            execution.status = ExecutionStatus.COMPLETED.value
            logger.info(f"Execution {execution.id} completed")
        else:
            execution.status = ExecutionStatus.FAILED.value
            execution.error_message = (
                f"Stage {stage.stage_order} failed after {log.retry_count + 1} attempt(s)"
            )
            logger.info(f"Execution {execution.id} failed at stage {stage.stage_order}")

    async def _skip_active_logs(self, execution: Execution) -> None:
        result = await self.db.execute(
            select(ExecutionLog).where(
                ExecutionLog.execution_id == execution.id,
                ExecutionLog.status.in_(
                    list(ACTIVE_LOG_STATUSES) + [LogStatus.AWAITING_VALIDATION.value]
                ),
            )
        )
        now = utcnow()
        for log in result.scalars().all():
            log.status = LogStatus.SKIPPED.value
            log.ended_at = now

    def _touch(self, execution: Execution) -> None:
        # Always dirty the row so the version counter moves on every transition
        execution.updated_at = utcnow()
