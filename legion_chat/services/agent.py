"""Chat turn orchestration: context build, bounded model/tool loop, persistence."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .. import config
from ..engine.channel import ChannelClosed, EventChannel
from ..engine.errors import ChatError, ErrorKind, map_provider_error
from ..engine.events import StreamEvent
from ..engine.model_client import ModelDelta, ModelResponse
from ..engine.prompts import BASE_PROMPT
from ..engine.tool_calls import (
    ToolCall,
    ToolCallFragment,
    ToolResult,
    finalize_tool_calls,
    merge_tool_call_deltas,
)
from ..tools.registry import ToolRegistry, error_result
from ..utils.ids import new_id
from .conversation_store import ConversationStore

logger = logging.getLogger(__name__)

PromptBuilder = Callable[[str], Awaitable[str]]


class ChatModel(Protocol):
    model: str

    async def complete(
        self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None
    ) -> ModelResponse: ...

    def stream(
        self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[ModelDelta]: ...


@dataclass(frozen=True)
class ChatReply:
    conversation_id: str
    message: Dict[str, Any]


@dataclass(frozen=True)
class ConversationPage:
    conversation: Dict[str, Any]
    messages: List[Dict[str, Any]]
    limit: int
    offset: int
    has_more: bool


@dataclass(frozen=True)
class ConversationSummary:
    id: str
    title: Optional[str]
    message_count: int
    last_message_at: Optional[str]


@dataclass
class _Turn:
    conversation_id: str
    account_id: str
    context: List[Dict[str, Any]]
    started: float


class AgentOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        model: Optional[ChatModel] = None,
        tools: Optional[ToolRegistry] = None,
        *,
        prompt_builder: Optional[PromptBuilder] = None,
        history_limit: Optional[int] = None,
        max_iterations: Optional[int] = None,
        max_message_chars: Optional[int] = None,
        title_max_chars: Optional[int] = None,
        tool_status_text: Optional[str] = None,
    ):
        self._store = store
        self._model = model
        self._tools = tools
        self._prompt_builder = prompt_builder
        self._history_limit = history_limit if history_limit is not None else config.CHAT_HISTORY_LIMIT
        self._max_iterations = max_iterations if max_iterations is not None else config.CHAT_MAX_TOOL_ITERATIONS
        self._max_message_chars = (
            max_message_chars if max_message_chars is not None else config.CHAT_MAX_MESSAGE_CHARS
        )
        self._title_max_chars = title_max_chars if title_max_chars is not None else config.CONVERSATION_TITLE_MAX_CHARS
        self._tool_status_text = tool_status_text if tool_status_text is not None else config.TOOL_STATUS_TEXT

    # ------------------------------------------------------------------
    # Turn setup
    # ------------------------------------------------------------------

    def _tool_definitions(self) -> Optional[List[Dict[str, Any]]]:
        if self._tools is None:
            return None
        return self._tools.definitions() or None

    async def _system_prompt(self, account_id: str) -> str:
        if self._prompt_builder is None:
            return BASE_PROMPT
        return await self._prompt_builder(account_id)

    async def _prepare_turn(self, account_id: str, text: str, conversation_id: Optional[str]) -> _Turn:
        if self._model is None:
            raise ChatError(ErrorKind.SERVICE_UNAVAILABLE, "Model backend not configured")
        if not isinstance(text, str) or not (1 <= len(text) <= self._max_message_chars):
            raise ChatError(
                ErrorKind.VALIDATION,
                f"Message must be between 1 and {self._max_message_chars} characters",
            )

        existing = None
        if conversation_id:
            existing = await self._store.get_conversation(conversation_id)
            if existing is not None and existing["account_id"] != account_id:
                logger.warning(
                    "chat_forbidden conversation_id=%s account_id=%s", conversation_id, account_id
                )
                raise ChatError(ErrorKind.FORBIDDEN, "Access denied")

        if existing is None:
            # Unknown or absent ids start a fresh conversation under a server-minted id.
            conversation_id = new_id()
            history: List[Dict[str, Any]] = []
        else:
            conversation_id = existing["id"]
            history = await self._store.recent_messages(conversation_id, self._history_limit)

        context: List[Dict[str, Any]] = [{"role": "system", "content": await self._system_prompt(account_id)}]
        context.extend({"role": m["role"], "content": m["content"]} for m in history)
        context.append({"role": "user", "content": text})

        await self._store.add_user_message(
            conversation_id,
            account_id,
            text,
            create=existing is None,
            title=text[: self._title_max_chars] if existing is None else None,
        )
        logger.info(
            "chat_turn_start conversation_id=%s account_id=%s new=%s history=%s",
            conversation_id,
            account_id,
            existing is None,
            len(history),
        )
        return _Turn(
            conversation_id=conversation_id,
            account_id=account_id,
            context=context,
            started=time.monotonic(),
        )

    async def _run_tools(self, turn: _Turn, content: str, calls: List[ToolCall]) -> None:
        turn.context.append(
            {
                "role": "assistant",
                "content": content or None,
                "tool_calls": [call.to_openai() for call in calls],
            }
        )
        for call in calls:
            if self._tools is None:
                result = ToolResult(tool_call_id=call.id, result=error_result(f"Unknown tool: {call.name}"))
            else:
                result = await self._tools.execute(call)
            turn.context.append({"role": "tool", "tool_call_id": result.tool_call_id, "content": result.result})

    def _log_complete(self, turn: _Turn, message_id: str, iterations: int, content: str) -> None:
        logger.info(
            "chat_turn_complete conversation_id=%s message_id=%s iterations=%s chars=%s latency_ms=%s",
            turn.conversation_id,
            message_id,
            iterations,
            len(content),
            int((time.monotonic() - turn.started) * 1000),
        )

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def process_message(
        self, account_id: str, text: str, conversation_id: Optional[str] = None
    ) -> ChatReply:
        turn = await self._prepare_turn(account_id, text, conversation_id)
        tools = self._tool_definitions()

        parts: List[str] = []
        iterations = 0
        try:
            for iterations in range(1, self._max_iterations + 1):
                response = await self._model.complete(turn.context, tools)
                if response.content:
                    parts.append(response.content)
                if not response.tool_calls:
                    break
                logger.info(
                    "chat_tool_iteration conversation_id=%s iteration=%s tools=%s",
                    turn.conversation_id,
                    iterations,
                    ",".join(c.name for c in response.tool_calls),
                )
                await self._run_tools(turn, response.content, response.tool_calls)
        except ChatError:
            raise
        except Exception as e:
            error = map_provider_error(e)
            logger.warning(
                "chat_turn_failed conversation_id=%s kind=%s error=%r",
                turn.conversation_id,
                error.kind.value,
                e,
            )
            raise error from e

        content = "".join(parts)
        message = await self._store.add_assistant_message(turn.conversation_id, content)
        self._log_complete(turn, message["id"], iterations, content)
        return ChatReply(conversation_id=turn.conversation_id, message=message)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def process_message_stream(
        self, account_id: str, text: str, conversation_id: Optional[str] = None
    ) -> EventChannel:
        """Run setup now, then stream the turn through the returned channel.

        Validation, ownership and user-message persistence happen before this
        returns, so those failures raise ``ChatError``. Everything after is
        reported in-band: chunk events, then exactly one complete or error.
        """
        turn = await self._prepare_turn(account_id, text, conversation_id)
        channel = EventChannel()
        channel.start(self._produce(turn, channel))
        return channel

    async def _produce(self, turn: _Turn, channel: EventChannel) -> None:
        tools = self._tool_definitions()
        parts: List[str] = []
        iterations = 0
        try:
            for iterations in range(1, self._max_iterations + 1):
                fragments: Dict[int, ToolCallFragment] = {}
                iteration_parts: List[str] = []
                async for delta in self._model.stream(turn.context, tools):
                    if delta.content:
                        iteration_parts.append(delta.content)
                        parts.append(delta.content)
                        await channel.send(StreamEvent.chunk(delta.content))
                    if delta.tool_calls:
                        fragments = merge_tool_call_deltas(fragments, delta.tool_calls)

                calls = finalize_tool_calls(fragments)
                if not calls:
                    break

                logger.info(
                    "chat_tool_iteration conversation_id=%s iteration=%s tools=%s",
                    turn.conversation_id,
                    iterations,
                    ",".join(c.name for c in calls),
                )
                if self._tool_status_text:
                    parts.append(self._tool_status_text)
                    await channel.send(StreamEvent.chunk(self._tool_status_text))
                await self._run_tools(turn, "".join(iteration_parts), calls)

            content = "".join(parts)
            message = await self._store.add_assistant_message(turn.conversation_id, content)
            self._log_complete(turn, message["id"], iterations, content)
            await channel.send(StreamEvent.complete(turn.conversation_id, message["id"]))
        except asyncio.CancelledError:
            logger.info("chat_stream_cancelled conversation_id=%s", turn.conversation_id)
            raise
        except ChannelClosed:
            logger.info("chat_stream_closed conversation_id=%s", turn.conversation_id)
        except Exception as e:
            error = map_provider_error(e)
            logger.warning(
                "chat_stream_failed conversation_id=%s kind=%s error=%r",
                turn.conversation_id,
                error.kind.value,
                e,
            )
            try:
                await channel.send(StreamEvent.error(error.message))
            except ChannelClosed:
                pass

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def get_conversation(
        self, account_id: str, conversation_id: str, *, limit: int = 100, offset: int = 0
    ) -> ConversationPage:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise ChatError(ErrorKind.NOT_FOUND, "Conversation not found")
        if conversation["account_id"] != account_id:
            raise ChatError(ErrorKind.FORBIDDEN, "Access denied")

        messages, has_more = await self._store.list_messages(conversation_id, limit=limit, offset=offset)
        return ConversationPage(
            conversation=conversation,
            messages=messages,
            limit=limit,
            offset=offset,
            has_more=has_more,
        )

    async def list_conversations(self, account_id: str) -> List[ConversationSummary]:
        rows = await self._store.list_conversations(account_id, limit=config.CONVERSATION_LIST_LIMIT)
        return [
            ConversationSummary(
                id=row["id"],
                title=row.get("title"),
                message_count=row.get("message_count", 0),
                last_message_at=row.get("last_message_at"),
            )
            for row in rows
        ]
