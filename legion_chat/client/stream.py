"""Client side of the chat stream: SSE frame parsing and an httpx-based reader."""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any, Optional, Union

import httpx

from ..engine.events import StreamEvent

logger = logging.getLogger(__name__)

_EVENT_TYPES = ("chunk", "complete", "error")


class StreamRequestError(Exception):
    """The stream request was rejected before any event was sent."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"Stream failed: {status_code} {detail}")
        self.status_code = status_code
        self.detail = detail


class _FrameBuilder:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.type: Optional[str] = None
        self.id: Optional[str] = None
        self.data: dict[str, Any] = {}

    def feed(self, line: str) -> Optional[StreamEvent]:
        if line.endswith("\r"):
            line = line[:-1]
        if line == "":
            return self.take()
        if line.startswith("event:"):
            event_type = line[6:].strip()
            if event_type and event_type != "message":
                self.type = event_type
        elif line.startswith("id:"):
            self.id = line[3:].strip()
        elif line.startswith("data:"):
            data_str = line[5:].strip()
            if data_str:
                try:
                    parsed = json.loads(data_str)
                except json.JSONDecodeError:
                    logger.debug("sse_undecodable_data data=%s", data_str[:200])
                else:
                    if isinstance(parsed, dict):
                        self.data = parsed
        return None

    def take(self) -> Optional[StreamEvent]:
        event_type, event_id, data = self.type, self.id, self.data
        self.reset()
        if not (event_type and event_id):
            return None
        if event_type not in _EVENT_TYPES:
            logger.debug("sse_unknown_event type=%s", event_type)
            return None
        return StreamEvent(type=event_type, id=event_id, data=data)  # type: ignore[arg-type]


async def iter_sse_events(chunks: AsyncIterable[Union[bytes, str]]) -> AsyncIterator[StreamEvent]:
    """Parse a chunked SSE body into events, in arrival order.

    Chunk boundaries may fall anywhere, including inside a multi-byte UTF-8
    sequence, a line or a frame. A final frame missing its blank line is
    still emitted at end of input.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    frame = _FrameBuilder()
    buffer = ""

    async for chunk in chunks:
        buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        lines = buffer.split("\n")
        buffer = lines.pop()
        for line in lines:
            event = frame.feed(line)
            if event is not None:
                yield event

    buffer += decoder.decode(b"", final=True)
    for line in buffer.split("\n") if buffer else []:
        event = frame.feed(line)
        if event is not None:
            yield event

    event = frame.take()
    if event is not None:
        yield event


def _error_detail(resp: httpx.Response, body: bytes) -> str:
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return resp.reason_phrase or body.decode("utf-8", errors="replace")[:200]
    if isinstance(payload, dict) and isinstance(payload.get("detail"), str):
        return payload["detail"]
    return resp.reason_phrase


class ChatStreamClient:
    """Posts chat messages to the streaming endpoint and yields parsed events."""

    def __init__(
        self,
        base_url: str = "",
        *,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 120.0,
    ):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._owns_client = client is None
        self._api_key = api_key

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "text/event-stream", "Content-Type": "application/json"}
        if self._api_key:
            headers["X-API-Key"] = self._api_key
        return headers

    async def stream_chat(self, message: str, conversation_id: Optional[str] = None) -> AsyncIterator[StreamEvent]:
        body: dict[str, Any] = {"message": message}
        if conversation_id:
            body["conversationId"] = conversation_id

        async with self._client.stream("POST", "/chat/stream", json=body, headers=self._headers()) as resp:
            if resp.status_code >= 400:
                raise StreamRequestError(resp.status_code, _error_detail(resp, await resp.aread()))
            async for event in iter_sse_events(resp.aiter_bytes()):
                yield event

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ChatStreamClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
