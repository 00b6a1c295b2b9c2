"""Incremental assembly of streamed tool calls.

Streaming completions split one logical tool call across many deltas, keyed by
``index``. ``merge_tool_call_delta`` is a pure reducer over those deltas and
``finalize_tool_calls`` turns the merged fragments into executable calls once
the model has finished its turn.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from typing import Any, Iterable, Mapping, Optional


@dataclass(frozen=True)
class ToolCallDelta:
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None

    @classmethod
    def from_openai(cls, raw: Mapping[str, Any]) -> Optional["ToolCallDelta"]:
        index = raw.get("index")
        if index is None:
            return None
        function = raw.get("function") or {}
        return cls(
            index=int(index),
            id=raw.get("id") or None,
            name=function.get("name") or None,
            arguments=function.get("arguments") or None,
        )


@dataclass(frozen=True)
class ToolCallFragment:
    index: int
    id: str = ""
    name: str = ""
    arguments_text: str = ""


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]
    arguments_text: str = ""
    arguments_error: Optional[str] = None

    def to_openai(self) -> dict[str, Any]:
        arguments = self.arguments_text
        if self.arguments_error is not None or not arguments:
            arguments = json.dumps(self.arguments)
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": arguments},
        }


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    result: str


def merge_tool_call_delta(
    fragments: Mapping[int, ToolCallFragment],
    delta: ToolCallDelta,
) -> dict[int, ToolCallFragment]:
    merged = dict(fragments)
    existing = merged.get(delta.index)
    if existing is None:
        merged[delta.index] = ToolCallFragment(
            index=delta.index,
            id=delta.id or "",
            name=delta.name or "",
            arguments_text=delta.arguments or "",
        )
        return merged

    updated = existing
    if delta.id and not updated.id:
        updated = replace(updated, id=delta.id)
    if delta.name and not updated.name:
        updated = replace(updated, name=delta.name)
    if delta.arguments:
        updated = replace(updated, arguments_text=updated.arguments_text + delta.arguments)
    merged[delta.index] = updated
    return merged


def merge_tool_call_deltas(
    fragments: Mapping[int, ToolCallFragment],
    deltas: Iterable[ToolCallDelta],
) -> dict[int, ToolCallFragment]:
    merged = dict(fragments)
    for delta in deltas:
        merged = merge_tool_call_delta(merged, delta)
    return merged


def parse_tool_arguments(arguments_text: str) -> tuple[dict[str, Any], Optional[str]]:
    if not arguments_text.strip():
        return {}, None
    try:
        parsed = json.loads(arguments_text)
    except json.JSONDecodeError as e:
        return {}, f"invalid JSON: {e.msg}"
    if not isinstance(parsed, dict):
        return {}, "arguments must be a JSON object"
    return parsed, None


def finalize_tool_calls(fragments: Mapping[int, ToolCallFragment]) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for index in sorted(fragments):
        fragment = fragments[index]
        arguments, error = parse_tool_arguments(fragment.arguments_text)
        calls.append(
            ToolCall(
                id=fragment.id or f"call_{index}",
                name=fragment.name,
                arguments=arguments,
                arguments_text=fragment.arguments_text,
                arguments_error=error,
            )
        )
    return calls
