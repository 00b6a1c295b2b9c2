from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple


class ConversationStore(Protocol):
    """Persistence contract used by the chat orchestrator.

    Conversations and messages are returned as plain dicts with ISO-8601
    timestamps. Messages are append-only; the store never rewrites one.
    """

    async def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        """Return {id, account_id, title, created_at, updated_at} or None."""

    async def recent_messages(self, conversation_id: str, limit: int) -> List[Dict[str, Any]]:
        """Return the newest `limit` messages in chronological order."""

    async def list_messages(
        self, conversation_id: str, *, limit: int, offset: int
    ) -> Tuple[List[Dict[str, Any]], bool]:
        """Return one page (newest first, skipping `offset`) in chronological order, plus has_more."""

    async def list_conversations(self, account_id: str, *, limit: int) -> List[Dict[str, Any]]:
        ...

    async def add_user_message(
        self,
        conversation_id: str,
        account_id: str,
        content: str,
        *,
        create: bool,
        title: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Persist a user message, creating the conversation first when `create` is set."""

    async def add_assistant_message(
        self,
        conversation_id: str,
        content: str,
        *,
        message_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        ...
