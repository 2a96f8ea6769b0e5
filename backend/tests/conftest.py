"""Pytest configuration and fixtures."""

import asyncio
import os
from typing import Any, AsyncGenerator, Dict, List, Optional

# Settings are read at import time
os.environ.setdefault("AUTH0_DOMAIN", "stageflow-test.example.com")
os.environ.setdefault("AUTH0_AUDIENCE", "https://api.stageflow.test")
os.environ.setdefault("DATABASE_URI", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")

import pytest
from httpx import ASGITransport, AsyncClient

from stageflow.api.deps import get_current_user, get_db, get_llm_client
from stageflow.core.auth import TokenPayload
from stageflow.db.base import Base
from stageflow.db.session import create_engine, create_session_factory
from stageflow.main import app
from stageflow.models import Stage, Workflow
from stageflow.services.llm_client import LLMClient


class FakeLLMClient(LLMClient):
    """Returns queued responses; an exception in the queue is raised instead."""

    def __init__(self, responses: Optional[List[Any]] = None, delay: float = 0):
        self.responses = list(responses or [])
        self.delay = delay
        self.calls: List[Dict[str, str]] = []

    async def complete(self, model_id: str, prompt: str) -> str:
        self.calls.append({"model_id": model_id, "prompt": prompt})
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses.pop(0) if self.responses else "ok"
        if isinstance(response, Exception):
            raise response
        return response


class AuthState:
    """The user the API sees as authenticated."""

    def __init__(self):
        self.user = TokenPayload(sub="user-1", permissions=[])

    def login(self, sub: str, permissions: Optional[List[str]] = None) -> None:
        self.user = TokenPayload(sub=sub, permissions=permissions or [])


@pytest.fixture
async def engine(tmp_path):
    """A fresh SQLite database per test."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'stageflow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def auth() -> AuthState:
    return AuthState()


@pytest.fixture
def llm() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
async def client(session_factory, auth, llm) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client wired to the test database."""

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_current_user] = lambda: auth.user
    app.dependency_overrides[get_llm_client] = lambda: llm

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def make_workflow(db):
    """
    Persist a workflow and its stages directly.

    Each stage is a dict of Stage columns; ``next_stage_on_pass`` and
    ``next_stage_on_fail`` may name another stage by its ``stage_order``
    (an int), which is resolved to that stage's id.
    """

    async def _make(stages: List[Dict[str, Any]], user_id: str = "user-1", name: str = "Test workflow"):
        workflow = Workflow(user_id=user_id, name=name, description="A test workflow")
        db.add(workflow)
        await db.flush()

        created = []
        for definition in stages:
            fields = {k: v for k, v in definition.items() if k not in ("next_stage_on_pass", "next_stage_on_fail")}
            stage = Stage(workflow_id=workflow.id, **fields)
            db.add(stage)
            created.append((definition, stage))
        await db.flush()

        by_order = {stage.stage_order: stage for _, stage in created}
        for definition, stage in created:
            for link in ("next_stage_on_pass", "next_stage_on_fail"):
                target = definition.get(link)
                if isinstance(target, int):
                    target = by_order[target].id
                setattr(stage, link, target)

        await db.commit()
        return workflow, [stage for _, stage in created]

    return _make
