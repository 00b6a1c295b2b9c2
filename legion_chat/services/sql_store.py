from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..db.models import Conversation, Message
from ..db.session import session_scope
from ..utils.ids import new_id

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def _conversation_dict(convo: Conversation) -> Dict[str, Any]:
    return {
        "id": convo.id,
        "account_id": convo.owner_account_id,
        "title": convo.title,
        "created_at": convo.created_at.isoformat(),
        "updated_at": convo.updated_at.isoformat(),
    }


def _message_dict(msg: Message) -> Dict[str, Any]:
    return {
        "id": msg.id,
        "role": msg.role,
        "content": msg.content,
        "created_at": msg.created_at.isoformat(),
    }


class SqlConversationStore:
    """ConversationStore over SQLModel tables.

    Each write runs in its own committed unit of work so that a persisted user
    message survives a later model failure in the same request.
    """

    def __init__(self, session_factory: SessionFactory = session_scope):
        self._session_factory = session_factory

    async def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        async with self._session_factory() as session:
            convo = await session.get(Conversation, conversation_id)
            return _conversation_dict(convo) if convo is not None else None

    async def recent_messages(self, conversation_id: str, limit: int) -> List[Dict[str, Any]]:
        async with self._session_factory() as session:
            rows = (
                await session.exec(
                    select(Message)
                    .where(Message.conversation_id == conversation_id)
                    .order_by(Message.created_at.desc())
                    .limit(limit)
                )
            ).all()
        return [_message_dict(m) for m in reversed(rows)]

    async def list_messages(
        self, conversation_id: str, *, limit: int, offset: int
    ) -> Tuple[List[Dict[str, Any]], bool]:
        async with self._session_factory() as session:
            rows = (
                await session.exec(
                    select(Message)
                    .where(Message.conversation_id == conversation_id)
                    .order_by(Message.created_at.desc())
                    .offset(offset)
                    .limit(limit + 1)
                )
            ).all()
        has_more = len(rows) > limit
        page = list(rows[:limit])
        return [_message_dict(m) for m in reversed(page)], has_more

    async def list_conversations(self, account_id: str, *, limit: int) -> List[Dict[str, Any]]:
        async with self._session_factory() as session:
            stmt = (
                select(
                    Conversation.id,
                    Conversation.title,
                    Conversation.updated_at,
                    func.count(Message.id).label("message_count"),
                    func.max(Message.created_at).label("last_message_at"),
                )
                .where(Conversation.owner_account_id == account_id)
                .join(Message, Message.conversation_id == Conversation.id, isouter=True)
                .group_by(Conversation.id, Conversation.title, Conversation.updated_at)
                .order_by(Conversation.updated_at.desc())
                .limit(limit)
            )
            rows = (await session.exec(stmt)).all()
        return [
            {
                "id": row.id,
                "title": row.title,
                "message_count": int(row.message_count or 0),
                "last_message_at": row.last_message_at.isoformat() if row.last_message_at else None,
            }
            for row in rows
        ]

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
        now = created_at or datetime.utcnow()
        async with self._session_factory() as session:
            if create:
                convo = Conversation(
                    id=conversation_id,
                    owner_account_id=account_id,
                    title=title,
                    created_at=now,
                    updated_at=now,
                )
            else:
                convo = await session.get(Conversation, conversation_id)
                if convo is None:
                    raise ValueError(f"Conversation {conversation_id} not found")
                convo.updated_at = now
            session.add(convo)
            # Conversation row must exist before the message row references it.
            await session.flush()

            msg = Message(id=new_id(), conversation_id=conversation_id, role="user", content=content, created_at=now)
            session.add(msg)
            await session.flush()
            return _message_dict(msg)

    async def add_assistant_message(
        self,
        conversation_id: str,
        content: str,
        *,
        message_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = created_at or datetime.utcnow()
        async with self._session_factory() as session:
            convo = await session.get(Conversation, conversation_id)
            if convo is None:
                raise ValueError(f"Conversation {conversation_id} not found")

            msg = Message(
                id=message_id or new_id(),
                conversation_id=conversation_id,
                role="assistant",
                content=content,
                created_at=now,
            )
            convo.updated_at = now
            session.add(msg)
            session.add(convo)
            await session.flush()
            return _message_dict(msg)
