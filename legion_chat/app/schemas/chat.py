from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ... import config


class ChatRequest(BaseModel):
    """Request to send one user message (new conversation when conversationId is absent)."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    message: str = Field(min_length=1, max_length=config.CHAT_MAX_MESSAGE_CHARS)
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")


class ChatMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    role: str
    content: str
    created_at: str = Field(alias="createdAt")


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(alias="conversationId")
    message: ChatMessage
