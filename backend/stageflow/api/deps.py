from typing import Dict, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from stageflow.core.auth import TokenPayload, get_current_user
from stageflow.core.errors import ForbiddenError
from stageflow.db.session import get_db
from stageflow.services.executor import ExecutionStateMachine
from stageflow.services.llm_client import LLMClient, OpenAIClient
from stageflow.services.runner import StageRunner

__all__ = [
    "get_db",
    "get_current_user",
    "require_admin",
    "get_client_info",
    "get_state_machine",
    "get_llm_client",
    "get_stage_runner",
]


async def require_admin(user: TokenPayload = Depends(get_current_user)) -> TokenPayload:
    """
    Dependency that requires the user to be an admin.
    """
    if "admin:access" not in (user.permissions or []):
        raise ForbiddenError("Admin privileges required")
    return user


async def get_client_info(request: Request) -> Dict[str, Optional[str]]:
    """
    Dependency for getting client info (IP, user agent).
    """
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


async def get_state_machine(db: AsyncSession = Depends(get_db)) -> ExecutionStateMachine:
    return ExecutionStateMachine(db)


_llm_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    """Process-wide model client; overridden in tests."""
    global _llm_client
    if _llm_client is None:
        _llm_client = OpenAIClient()
    return _llm_client


async def get_stage_runner(
    state_machine: ExecutionStateMachine = Depends(get_state_machine),
    llm_client: LLMClient = Depends(get_llm_client),
) -> StageRunner:
    return StageRunner(state_machine, llm_client)
