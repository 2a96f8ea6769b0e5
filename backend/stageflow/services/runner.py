"""Runs the current stage of an execution against a model and reports the outcome."""

import asyncio
import logging
import re
from typing import Any, Dict, Optional

from stageflow.core.config import settings
from stageflow.core.errors import ConflictError
from stageflow.models import ExecutionLog, Stage
from stageflow.models.enums import ExecutionStatus
from stageflow.services.executor import ExecutionStateMachine
from stageflow.services.llm_client import LLMClient, LLMError
from stageflow.services.stage_graph import load_stage_graph

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")

_MISSING = object()


def _lookup(context: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted path such as ``stage_1_output.summary``."""
    value: Any = context
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def resolve_inputs(stage: Stage, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Collect the values for every placeholder in a stage's prompt template.

    ``input_variable_mapping`` renames a template variable to a context key;
    unmapped variables are looked up under their own name.
    """
    mapping = stage.input_variable_mapping or {}
    variables: Dict[str, Any] = {}
    for name in PLACEHOLDER_PATTERN.findall(stage.prompt_template or ""):
        value = _lookup(context or {}, mapping.get(name, name))
        if value is _MISSING:
            logger.warning(f"Stage {stage.id}: no value for template variable {name!r}")
            value = None
        variables[name] = value
    return variables


def render_prompt(template: str, variables: Dict[str, Any]) -> str:
    def _substitute(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(_substitute, template or "")


class StageRunner:
    """
    Executes an execution's current stage.

    The model call runs outside any database transaction and is bounded by a
    timeout; a timeout or any error raised by the model client is reported to
    the state machine as a failed attempt, never left running.
    """

    def __init__(
        self,
        state_machine: ExecutionStateMachine,
        llm_client: LLMClient,
        timeout: Optional[float] = None,
        default_model_id: Optional[str] = None,
    ):
        self.state_machine = state_machine
        self.llm_client = llm_client
        self.timeout = timeout or settings.MODEL_TIMEOUT_SECONDS
        self.default_model_id = default_model_id or settings.DEFAULT_MODEL_ID

    async def run_current_stage(self, execution_id: str, user_id: str) -> ExecutionLog:
        execution = await self.state_machine.get_execution(execution_id, user_id)
        if execution.status != ExecutionStatus.RUNNING.value:
            raise ConflictError(
                f"Execution with ID {execution_id} is {execution.status}, not running",
                reason="invalid_state",
            )

        graph = await load_stage_graph(self.state_machine.db, execution.workflow_id)
        stage = graph.get_stage(execution.current_stage_order)

        variables = resolve_inputs(stage, execution.execution_context)
        prompt = render_prompt(stage.prompt_template, variables)

        await self.state_machine.begin_attempt(
            execution_id, stage.id, user_id, inputs=variables, prompt_sent=prompt
        )

        model_id = stage.model_id or self.default_model_id
        try:
            raw_output = await asyncio.wait_for(
                self.llm_client.complete(model_id, prompt),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Execution {execution_id}: model {model_id} timed out after {self.timeout}s")
            return await self.state_machine.record_stage_outcome(
                execution_id, stage.id, user_id,
                error=f"Model call timed out after {self.timeout} seconds",
            )
        except LLMError as e:
            return await self.state_machine.record_stage_outcome(
                execution_id, stage.id, user_id, error=str(e)
            )
        except Exception as e:
            logger.error(f"Execution {execution_id}: model {model_id} raised unexpectedly", exc_info=True)
            return await self.state_machine.record_stage_outcome(
                execution_id, stage.id, user_id, error=f"Model call failed: {e}"
            )

        return await self.state_machine.record_stage_outcome(
            execution_id, stage.id, user_id, raw_output=raw_output
        )
