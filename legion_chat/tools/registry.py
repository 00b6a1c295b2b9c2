"""Named, schema-described tools the model may call mid-conversation."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..engine.tool_calls import ToolCall, ToolResult

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[str]]


def error_result(error: str, /, **extra: Any) -> str:
    """JSON error string for the model; extra keys (e.g. message) ride alongside."""
    return json.dumps({"error": error, **extra})


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """Closed set of tools plus an executor that never raises to its caller."""

    def __init__(self, tools: Optional[list[Tool]] = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug("tool_registered name=%s", tool.name)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        return [tool.to_openai() for tool in self._tools.values()]

    async def execute(self, call: ToolCall) -> ToolResult:
        tool = self._tools.get(call.name)
        if tool is None:
            logger.warning("tool_unknown name=%s tool_call_id=%s", call.name, call.id)
            return ToolResult(tool_call_id=call.id, result=error_result(f"Unknown tool: {call.name}"))

        if call.arguments_error is not None:
            logger.warning("tool_bad_arguments name=%s tool_call_id=%s error=%s", call.name, call.id, call.arguments_error)
            return ToolResult(tool_call_id=call.id, result=error_result(f"Invalid arguments for {call.name}"))

        started = time.monotonic()
        try:
            result = await tool.handler(dict(call.arguments))
            if not isinstance(result, str):
                result = json.dumps(result)
        except Exception:
            logger.exception("tool_error name=%s tool_call_id=%s", call.name, call.id)
            return ToolResult(tool_call_id=call.id, result=error_result(f"{call.name} failed"))

        logger.info(
            "tool_call name=%s tool_call_id=%s latency_ms=%s",
            call.name,
            call.id,
            int((time.monotonic() - started) * 1000),
        )
        return ToolResult(tool_call_id=call.id, result=result)
