"""Execute model tool calls through the registry."""

from __future__ import annotations

from loguru import logger
from pydantic import ValidationError

from vibex.tools.registry import ToolRegistry
from vibex.turn.models import ToolCallRequest, ToolResult


class ToolRunner:
    """Turns a ``ToolCallRequest`` into a ``ToolResult``; never raises for tool failures."""

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    async def run(self, call: ToolCallRequest) -> ToolResult:
        if not self._registry.has(call.name):
            logger.warning("tool.call.unknown name={} call_id={}", call.name, call.id)
            return ToolResult(tool_call_id=call.id, error=f"unknown tool: {call.name}")

        try:
            value = await self._registry.execute(call.name, kwargs=dict(call.input), call_id=call.id)
        except ValidationError as exc:
            return ToolResult(tool_call_id=call.id, error=f"invalid input: {exc.error_count()} validation error(s)")
        except Exception as exc:
            return ToolResult(tool_call_id=call.id, error=f"{type(exc).__name__}: {exc!s}")
        return ToolResult(tool_call_id=call.id, result=value)
