from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi.responses import StreamingResponse

from ..engine.channel import EventChannel
from ..engine.events import StreamEvent

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def encode_event(event: StreamEvent) -> str:
    return f"event: {event.type}\nid: {event.id}\ndata: {json.dumps(event.data, ensure_ascii=False)}\n\n"


async def _frames(channel: EventChannel) -> AsyncIterator[str]:
    try:
        async for event in channel:
            yield encode_event(event)
            if event.is_terminal:
                break
    except Exception:
        # Headers are already sent; the stream just ends.
        logger.exception("sse_stream_failed")
    finally:
        # Runs on client disconnect too (generator closed), cancelling the producer.
        await channel.close()


def event_stream_response(channel: EventChannel) -> StreamingResponse:
    return StreamingResponse(
        _frames(channel),
        media_type="text/event-stream",
        headers=dict(SSE_HEADERS),
    )
