from fastapi import APIRouter, Depends

from ..dependencies import get_chat_orchestrator
from ..schemas.chat import ChatMessage, ChatRequest, ChatResponse
from ..sse import event_stream_response
from ...services.agent import AgentOrchestrator
from ...services.auth import get_account_id


router = APIRouter()


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    account_id: str = Depends(get_account_id),
    orchestrator: AgentOrchestrator = Depends(get_chat_orchestrator),
):
    """Send a message and return the complete assistant reply."""
    reply = await orchestrator.process_message(account_id, request.message, request.conversation_id)
    return ChatResponse(
        conversation_id=reply.conversation_id,
        message=ChatMessage(**reply.message),
    )


@router.post("/chat/stream")
async def chat_stream(
    request: ChatRequest,
    account_id: str = Depends(get_account_id),
    orchestrator: AgentOrchestrator = Depends(get_chat_orchestrator),
):
    """
    Send a message and stream the reply as Server-Sent Events.
    Emits `chunk` events, then exactly one `complete` or `error` event.
    """
    channel = await orchestrator.process_message_stream(account_id, request.message, request.conversation_id)
    return event_stream_response(channel)
