"""Single-producer, single-consumer channel carrying one turn's stream events.

The orchestrator's producer task pushes events with ``send``; the transport
drains the channel with ``async for``. Closing the channel from the consumer
side cancels the producer, so a disconnected client stops the turn without the
producer having to know about the transport.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional

from .events import StreamEvent

logger = logging.getLogger(__name__)

_DONE = object()


class ChannelClosed(RuntimeError):
    pass


class EventChannel:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._producer: Optional[asyncio.Task[None]] = None
        self._closed = False
        self._finished = False
        self._consumed = False
        self._error: Optional[BaseException] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self, producer: Coroutine[Any, Any, None]) -> "EventChannel":
        if self._producer is not None:
            raise RuntimeError("EventChannel producer already started")
        self._producer = asyncio.create_task(producer)
        self._producer.add_done_callback(self._on_producer_done)
        return self

    def _on_producer_done(self, task: asyncio.Task[None]) -> None:
        if not task.cancelled() and task.exception() is not None:
            self._error = task.exception()
            logger.error("event_channel_producer_failed error=%r", self._error)
        self._finish()

    def _finish(self) -> None:
        if not self._finished:
            self._finished = True
            self._queue.put_nowait(_DONE)

    async def send(self, event: StreamEvent) -> None:
        if self._closed or self._finished:
            raise ChannelClosed("channel closed")
        await self._queue.put(event)

    async def close(self) -> None:
        """Stop the producer (if still running) and end the sequence."""
        if self._closed:
            return
        self._closed = True
        producer = self._producer
        if producer is not None and not producer.done():
            producer.cancel()
            try:
                await producer
            except asyncio.CancelledError:
                pass
            except Exception:
                # Already recorded by the done callback.
                pass
        self._finish()

    def __aiter__(self) -> "EventChannel":
        if self._consumed:
            raise RuntimeError("EventChannel can only be consumed once")
        self._consumed = True
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _DONE:
            if self._error is not None:
                error, self._error = self._error, None
                raise error
            raise StopAsyncIteration
        return item
