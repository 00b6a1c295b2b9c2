from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, Literal

EventType = Literal["chunk", "complete", "error"]

TERMINAL_EVENT_TYPES = frozenset({"complete", "error"})

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_event_id() -> str:
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(7))
    return f"evt-{int(time.time() * 1000)}-{suffix}"


@dataclass(frozen=True)
class StreamEvent:
    type: EventType
    id: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    @classmethod
    def chunk(cls, content: str) -> "StreamEvent":
        return cls(type="chunk", id=new_event_id(), data={"content": content})

    @classmethod
    def complete(cls, conversation_id: str, message_id: str) -> "StreamEvent":
        return cls(
            type="complete",
            id=new_event_id(),
            data={"conversationId": conversation_id, "messageId": message_id},
        )

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(type="error", id=new_event_id(), data={"message": message})
