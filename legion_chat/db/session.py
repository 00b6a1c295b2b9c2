from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession

from .. import config


_ENGINE: Optional[AsyncEngine] = None


def _engine_options(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


def get_engine() -> AsyncEngine:
    global _ENGINE
    if _ENGINE is None:
        if not config.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set")
        _ENGINE = create_async_engine(config.DATABASE_URL, **_engine_options(config.DATABASE_URL))
    return _ENGINE


async def dispose_engine() -> None:
    global _ENGINE
    if _ENGINE is not None:
        await _ENGINE.dispose()
        _ENGINE = None


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """One unit of work: commits on success, rolls back on error.

    The conversation store opens one of these per write, so the user message is
    committed before the model is called and survives a failed turn.
    """
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise


async def get_session() -> AsyncIterator[AsyncSession]:
    """Request-scoped session for FastAPI dependencies (API key lookup)."""
    async with session_scope() as session:
        yield session
