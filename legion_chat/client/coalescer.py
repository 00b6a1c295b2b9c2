"""Client-side turn state: optimistic placeholder, throttled token flushes, rollback.

A turn goes IDLE -> STREAMING -> FINALIZED | ROLLED_BACK. Incoming chunk text
is buffered and applied to the placeholder at most once per flush interval; a
terminal ``complete`` flushes what is left and promotes the placeholder, while
an ``error``, a transport failure or a cancellation restores the message list
captured just before the placeholder was inserted.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from .. import config
from ..engine.events import StreamEvent

logger = logging.getLogger(__name__)

Transport = Callable[[str, Optional[str]], AsyncIterator[StreamEvent]]


class TurnState(str, enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    ROLLED_BACK = "rolled_back"


@dataclass
class ClientMessage:
    id: str
    role: str
    content: str
    created_at: datetime
    is_streaming: bool = False


class FlushTimer:
    """Pending text for one turn plus at most one scheduled flush."""

    def __init__(self, apply: Callable[[str], None], interval: float):
        self._apply = apply
        self._interval = interval
        self._buffer: List[str] = []
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> str:
        return "".join(self._buffer)

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def append(self, text: str) -> None:
        self._buffer.append(text)

    def schedule(self) -> None:
        if self._handle is None:
            self._handle = asyncio.get_running_loop().call_later(self._interval, self.flush)

    def flush(self) -> bool:
        """Apply the whole buffer in one mutation. Returns False when there was nothing to apply."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if not self._buffer:
            return False
        text = "".join(self._buffer)
        self._buffer.clear()
        self._apply(text)
        return True

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._buffer.clear()


@dataclass
class _Turn:
    snapshot: List[ClientMessage]
    placeholder: ClientMessage
    timer: FlushTimer
    task: Optional[asyncio.Task] = None
    ended: bool = False


class ChatBufferCoalescer:
    def __init__(
        self,
        transport: Transport,
        *,
        flush_interval: Optional[float] = None,
        notify: Optional[Callable[[str], None]] = None,
        on_change: Optional[Callable[[], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._transport = transport
        self._flush_interval = (
            flush_interval if flush_interval is not None else config.STREAM_FLUSH_INTERVAL_SECONDS
        )
        self._notify = notify
        self._on_change = on_change
        self._clock = clock or datetime.utcnow
        self.messages: List[ClientMessage] = []
        self.conversation_id: Optional[str] = None
        self.state = TurnState.IDLE
        self._turn: Optional[_Turn] = None
        # Held from teardown of the previous turn through insert of the next placeholder.
        self._submit_lock = asyncio.Lock()

    @property
    def is_streaming(self) -> bool:
        return self.state == TurnState.STREAMING

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _toast(self, message: str) -> None:
        if self._notify is not None:
            self._notify(message)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, text: str) -> asyncio.Task:
        """Start a new turn, superseding any turn still streaming.

        The superseded turn is rolled back and its transport torn down before
        the new placeholder appears. Overlapping submits take turns, so the
        last one in is the only turn left streaming. The returned task
        resolves when the new turn reaches a terminal state.
        """
        async with self._submit_lock:
            await self.stop()

            now = self._clock()
            self.messages.append(
                ClientMessage(id=f"temp-{uuid.uuid4().hex}", role="user", content=text, created_at=now)
            )
            snapshot = list(self.messages)
            placeholder = ClientMessage(
                id=f"streaming-{uuid.uuid4().hex}",
                role="assistant",
                content="",
                created_at=now,
                is_streaming=True,
            )
            self.messages.append(placeholder)
            turn = _Turn(
                snapshot=snapshot,
                placeholder=placeholder,
                timer=FlushTimer(lambda chunk: self._apply(turn, chunk), self._flush_interval),
            )
            self._turn = turn
            self.state = TurnState.STREAMING
            self._changed()

            turn.task = asyncio.create_task(self._run(turn, text, self.conversation_id))
            return turn.task

    async def stop(self) -> None:
        """Abort the active turn, if any, and wait until it has been torn down."""
        turn = self._turn
        if turn is None or turn.ended:
            return
        self._rollback(turn)
        task = turn.task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise

    async def wait(self) -> None:
        turn = self._turn
        if turn is None or turn.task is None:
            return
        try:
            await turn.task
        except asyncio.CancelledError:
            if not turn.task.cancelled():
                raise

    # ------------------------------------------------------------------
    # Turn mechanics
    # ------------------------------------------------------------------

    def _apply(self, turn: _Turn, text: str) -> None:
        if turn.ended:
            return
        turn.placeholder.content += text
        self._changed()

    def _finalize(self, turn: _Turn, data: dict) -> None:
        turn.timer.flush()
        turn.timer.cancel()
        turn.ended = True
        turn.placeholder.id = str(data.get("messageId") or turn.placeholder.id)
        turn.placeholder.is_streaming = False
        conversation_id = data.get("conversationId")
        if conversation_id:
            self.conversation_id = str(conversation_id)
        self.state = TurnState.FINALIZED
        self._changed()

    def _rollback(self, turn: _Turn) -> None:
        if turn.ended:
            return
        turn.ended = True
        turn.timer.cancel()
        self.messages = list(turn.snapshot)
        self.state = TurnState.ROLLED_BACK
        self._changed()

    async def _run(self, turn: _Turn, text: str, conversation_id: Optional[str]) -> None:
        events = self._transport(text, conversation_id)
        try:
            async for event in events:
                if turn.ended:
                    return
                if event.type == "chunk":
                    content = event.data.get("content")
                    if content:
                        turn.timer.append(str(content))
                        turn.timer.schedule()
                elif event.type == "complete":
                    self._finalize(turn, event.data)
                    return
                elif event.type == "error":
                    message = str(event.data.get("message") or "Something went wrong")
                    logger.info("chat_turn_error_event message=%s", message)
                    self._rollback(turn)
                    self._toast(message)
                    return
            if not turn.ended:
                logger.warning("chat_turn_stream_ended_early")
                self._rollback(turn)
                self._toast("Connection closed before the reply finished")
        except asyncio.CancelledError:
            self._rollback(turn)
            raise
        except Exception as e:
            logger.warning("chat_turn_transport_failed error=%r", e)
            self._rollback(turn)
            self._toast(str(e) or "Failed to send message")
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()
