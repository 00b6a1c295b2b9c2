from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, status

from .. import config
from ..engine.model_client import ModelClient
from ..engine.prompts import SystemPromptBuilder
from ..services.agent import AgentOrchestrator
from ..services.conversation_store import ConversationStore
from ..services.directory import DirectoryRepository
from ..services.near import NearRankService, RankLookup
from ..services.sql_store import SqlConversationStore
from ..tools.handlers import build_default_registry


def get_store() -> ConversationStore:
    return SqlConversationStore()


def get_rank_lookup() -> Optional[RankLookup]:
    if not config.NEAR_RANK_LOOKUP_ENABLED:
        return None
    return NearRankService()


def get_model_client() -> ModelClient:
    if not config.model_configured():
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="model_backend_unconfigured")
    return ModelClient()


def get_orchestrator(store: ConversationStore = Depends(get_store)) -> AgentOrchestrator:
    """Orchestrator for history reads; no model backend needed."""
    return AgentOrchestrator(store)


def get_chat_orchestrator(
    store: ConversationStore = Depends(get_store),
    ranks: Optional[RankLookup] = Depends(get_rank_lookup),
    model: ModelClient = Depends(get_model_client),
) -> AgentOrchestrator:
    return AgentOrchestrator(
        store,
        model,
        build_default_registry(DirectoryRepository(), ranks),
        prompt_builder=SystemPromptBuilder(ranks),
    )
