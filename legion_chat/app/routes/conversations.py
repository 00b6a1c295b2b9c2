from typing import List, Optional

from fastapi import APIRouter, Depends

from ..dependencies import get_orchestrator
from ..schemas.chat import ChatMessage
from ..schemas.conversations import ConversationHistory, ConversationInfo, ConversationMetadata, Pagination
from ...services.agent import AgentOrchestrator
from ...services.auth import get_account_id


router = APIRouter()

DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 200


def _page_params(limit: Optional[str], offset: Optional[str]) -> tuple[int, int]:
    # Out-of-range or non-numeric values fall back to both defaults.
    try:
        parsed_limit = DEFAULT_PAGE_LIMIT if limit is None else int(limit)
        parsed_offset = 0 if offset is None else int(offset)
    except ValueError:
        return DEFAULT_PAGE_LIMIT, 0
    if not (1 <= parsed_limit <= MAX_PAGE_LIMIT) or parsed_offset < 0:
        return DEFAULT_PAGE_LIMIT, 0
    return parsed_limit, parsed_offset


@router.get("/conversations", response_model=List[ConversationMetadata])
async def list_conversations(
    account_id: str = Depends(get_account_id),
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
):
    """List the caller's conversations, most recently active first."""
    summaries = await orchestrator.list_conversations(account_id)
    return [
        ConversationMetadata(
            id=s.id,
            title=s.title,
            message_count=s.message_count,
            last_message_at=s.last_message_at,
        )
        for s in summaries
    ]


@router.get("/conversations/{conversation_id}", response_model=ConversationHistory)
async def get_conversation(
    conversation_id: str,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    account_id: str = Depends(get_account_id),
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
):
    """Get one conversation with a page of its messages (oldest first)."""
    page_limit, page_offset = _page_params(limit, offset)
    page = await orchestrator.get_conversation(account_id, conversation_id, limit=page_limit, offset=page_offset)
    return ConversationHistory(
        conversation=ConversationInfo(**page.conversation),
        messages=[ChatMessage(**m) for m in page.messages],
        pagination=Pagination(limit=page.limit, offset=page.offset, has_more=page.has_more),
    )
