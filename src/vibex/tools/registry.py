"""Unified tool registry."""

from __future__ import annotations

import builtins
import inspect
import json
import time
from copy import deepcopy
from dataclasses import dataclass
from typing import Any

from loguru import logger
from republic import Tool


def _shorten_text(text: str, width: int = 30, placeholder: str = "...") -> str:
    """Shorten text to width characters, cutting in the middle of words if needed.

    Unlike textwrap.shorten, long strings without spaces are still truncated.
    """
    if len(text) <= width:
        return text

    available = width - len(placeholder)
    if available <= 0:
        return placeholder

    return text[:available] + placeholder


@dataclass(frozen=True)
class ToolDescriptor:
    """Tool metadata and runtime handle."""

    name: str
    short_description: str
    detail: str
    tool: Tool
    source: str = "builtin"


class ToolRegistry:
    """Registry of tools the model may call during a turn."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDescriptor] = {}

    def register(self, descriptor: ToolDescriptor) -> None:
        self._tools[descriptor.name] = descriptor

    def has(self, name: str) -> bool:
        return self.resolve(name) is not None

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def resolve(self, name: str) -> ToolDescriptor | None:
        """Look a tool up by its registered name or its model-facing name."""
        if (descriptor := self._tools.get(name)) is not None:
            return descriptor
        for descriptor in self._tools.values():
            if self.to_model_name(descriptor.name) == name:
                return descriptor
        return None

    def descriptors(self) -> builtins.list[ToolDescriptor]:
        return sorted(self._tools.values(), key=lambda item: item.name)

    @staticmethod
    def to_model_name(name: str) -> str:
        return name.replace(".", "_")

    def compact_rows(self, *, for_model: bool = False) -> builtins.list[str]:
        rows: builtins.list[str] = []
        for descriptor in self.descriptors():
            display_name = self.to_model_name(descriptor.name) if for_model else descriptor.name
            if for_model and display_name != descriptor.name:
                rows.append(f"{display_name} (command: {descriptor.name}): {descriptor.short_description}")
            else:
                rows.append(f"{display_name}: {descriptor.short_description}")
        return rows

    def model_schemas(self) -> tuple[dict[str, Any], ...]:
        """Function schemas with model-safe names, ready for a generation request."""
        schemas: builtins.list[dict[str, Any]] = []
        seen_names: set[str] = set()
        for descriptor in self.descriptors():
            model_name = self.to_model_name(descriptor.name)
            if model_name in seen_names:
                raise ValueError(f"Duplicate model tool name after conversion: {model_name}")
            seen_names.add(model_name)

            schema = deepcopy(descriptor.tool.schema())
            function = schema.get("function")
            if isinstance(function, dict):
                function["name"] = model_name
            schemas.append(schema)
        return tuple(schemas)

    def _log_tool_call(self, name: str, call_id: str, kwargs: dict[str, Any]) -> None:
        params: list[str] = []
        for key, value in kwargs.items():
            try:
                rendered = json.dumps(value, ensure_ascii=False)
            except TypeError:
                rendered = repr(value)
            value = _shorten_text(rendered, width=30, placeholder="...")
            if value.startswith('"') and not value.endswith('"'):
                value = value + '"'
            if value.startswith("{") and not value.endswith("}"):
                value = value + "}"
            if value.startswith("[") and not value.endswith("]"):
                value = value + "]"
            params.append(f"{key}={value}")
        logger.info("tool.call.start name={} call_id={} {{ {} }}", name, call_id, ", ".join(params))

    async def execute(self, name: str, *, kwargs: dict[str, Any], call_id: str = "-") -> Any:
        descriptor = self.resolve(name)
        if descriptor is None:
            raise KeyError(name)

        self._log_tool_call(descriptor.name, call_id, kwargs)
        start = time.monotonic()
        try:
            result = descriptor.tool.run(**kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception:
            logger.exception("tool.call.error name={} call_id={}", descriptor.name, call_id)
            raise
        finally:
            duration = time.monotonic() - start
            logger.info("tool.call.end name={} duration={:.3f}ms", descriptor.name, duration * 1000)
