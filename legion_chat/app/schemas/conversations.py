from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .chat import ChatMessage


class ConversationInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: Optional[str] = None
    account_id: str = Field(alias="accountId")
    created_at: str = Field(alias="createdAt")
    updated_at: str = Field(alias="updatedAt")


class Pagination(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    limit: int
    offset: int
    has_more: bool = Field(alias="hasMore")


class ConversationHistory(BaseModel):
    """One conversation plus a chronological page of its messages."""

    conversation: ConversationInfo
    messages: List[ChatMessage]
    pagination: Pagination


class ConversationMetadata(BaseModel):
    """Conversation metadata for list view."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: Optional[str] = None
    message_count: int = Field(alias="messageCount")
    last_message_at: Optional[str] = Field(default=None, alias="lastMessageAt")
