import os

# Ensure config reads these during import in tests.
os.environ.setdefault("ALLOW_NO_AUTH", "true")
os.environ.setdefault("API_KEY_PEPPER", "test-pepper")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("MODEL_API_KEY", "test-model-key")
os.environ.setdefault("NEAR_RANK_LOOKUP_ENABLED", "false")

from collections.abc import AsyncIterator
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from legion_chat.engine.model_client import ModelDelta, ModelResponse


@pytest_asyncio.fixture
async def engine(monkeypatch):
    test_engine = create_async_engine(
        os.environ["DATABASE_URL"],
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    import legion_chat.db.session as session_module

    session_module._ENGINE = test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    try:
        yield test_engine
    finally:
        await test_engine.dispose()
        session_module._ENGINE = None


@pytest_asyncio.fixture
async def session(engine):
    async with AsyncSession(engine, expire_on_commit=False) as s:
        yield s


class ScriptedModel:
    """Fake model backend replaying one scripted turn per call.

    Each script entry is either a list of ModelDelta (used by `stream`), a
    ModelResponse (used by `complete`), or an exception to raise.
    """

    model = "fake-model"

    def __init__(self, turns: List[Any], *, repeat_last: bool = False):
        self._turns = list(turns)
        self._repeat_last = repeat_last
        self.calls: List[List[Dict[str, Any]]] = []

    def _next(self) -> Any:
        if len(self._turns) == 1 and self._repeat_last:
            return self._turns[0]
        return self._turns.pop(0)

    async def complete(
        self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None
    ) -> ModelResponse:
        self.calls.append([dict(m) for m in messages])
        turn = self._next()
        if isinstance(turn, BaseException):
            raise turn
        return turn

    async def stream(
        self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[ModelDelta]:
        self.calls.append([dict(m) for m in messages])
        turn = self._next()
        if isinstance(turn, BaseException):
            raise turn
        for delta in turn:
            if isinstance(delta, BaseException):
                raise delta
            yield delta


@pytest.fixture
def scripted_model():
    return ScriptedModel
