"""Content generator backed by any-llm's OpenAI-compatible completion API."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from any_llm import acompletion  # type: ignore[import-untyped]
from loguru import logger

from vibex.generation.base import (
    GenerationConfig,
    GenerationResult,
    StreamEvent,
    TokenCount,
    estimate_tokens,
)
from vibex.turn.models import Message, Role, ToolCallRequest, Usage

DEFAULT_CONTEXT_LIMIT = 128_000

CompletionFn = Callable[..., Awaitable[Any]]


@dataclass
class _PartialToolCall:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)

    def build(self, index: int) -> ToolCallRequest:
        raw = "".join(self.arguments).strip()
        try:
            parsed = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            logger.warning("generation.tool_call.bad_arguments name={} raw={!r}", self.name, raw[:200])
            parsed = {"raw": raw}
        if not isinstance(parsed, dict):
            parsed = {"value": parsed}
        return ToolCallRequest(id=self.id or f"call_{index}", name=self.name, input=parsed)


class AnyLLMContentGenerator:
    """Streams chat completions through ``any_llm.acompletion``."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        api_base: str | None = None,
        context_limit: int = DEFAULT_CONTEXT_LIMIT,
        completion: CompletionFn | None = None,
    ) -> None:
        self._api_key = api_key
        self._api_base = api_base
        self._context_limit = context_limit
        self._completion = completion or acompletion

    async def generate_stream(self, messages: Sequence[Message], config: GenerationConfig) -> AsyncIterator[StreamEvent]:
        stream = await self._completion(**self._request(messages, config, stream=True))
        partial_calls: dict[int, _PartialToolCall] = {}
        usage: Usage | None = None
        async for chunk in stream:
            if (chunk_usage := _usage_of(getattr(chunk, "usage", None))) is not None:
                usage = chunk_usage
            for choice in getattr(chunk, "choices", None) or []:
                delta = getattr(choice, "delta", None)
                if delta is None:
                    continue
                if text := getattr(delta, "content", None):
                    yield StreamEvent.content(text)
                for call_delta in getattr(delta, "tool_calls", None) or []:
                    _merge_tool_call(partial_calls, call_delta)

        for index in sorted(partial_calls):
            yield StreamEvent.call(partial_calls[index].build(index))
        yield StreamEvent.end(usage)

    async def generate(self, messages: Sequence[Message], config: GenerationConfig) -> GenerationResult:
        response = await self._completion(**self._request(messages, config, stream=False))
        choices = getattr(response, "choices", None) or []
        content = ""
        if choices:
            content = getattr(choices[0].message, "content", None) or ""
        return GenerationResult(content=content, usage=_usage_of(getattr(response, "usage", None)))

    async def count_tokens(self, messages: Sequence[Message]) -> TokenCount:
        return TokenCount(token_count=estimate_tokens(messages), context_limit=self._context_limit)

    def _request(self, messages: Sequence[Message], config: GenerationConfig, *, stream: bool) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": to_any_llm_model(config.model),
            "messages": to_chat_messages(messages, config.system_prompt),
            "max_tokens": config.max_tokens,
            "stream": stream,
        }
        if config.temperature is not None:
            request["temperature"] = config.temperature
        if config.tools:
            request["tools"] = list(config.tools)
        if self._api_key:
            request["api_key"] = self._api_key
        if self._api_base:
            request["api_base"] = self._api_base
        return request


def to_any_llm_model(model: str) -> str:
    """Convert ``provider:model`` to the ``provider/model`` form any-llm expects."""
    provider, separator, name = model.partition(":")
    if not separator:
        return model
    return f"{provider}/{name}"


def to_chat_messages(messages: Sequence[Message], system_prompt: str = "") -> list[dict[str, Any]]:
    """Render a transcript as OpenAI-style chat messages.

    Consecutive tool-result messages are preceded by the assistant message that
    requested them, since chat APIs reject tool results without it.
    """
    rendered: list[dict[str, Any]] = []
    if system_prompt.strip():
        rendered.append({"role": "system", "content": system_prompt})

    index = 0
    while index < len(messages):
        message = messages[index]
        if message.role != Role.TOOL:
            rendered.append({"role": str(message.role), "content": message.content})
            index += 1
            continue

        group: list[Message] = []
        while index < len(messages) and messages[index].role == Role.TOOL:
            group.append(messages[index])
            index += 1
        rendered.append({
            "role": "assistant",
            "content": None,
            "tool_calls": [_render_call(item.tool_call) for item in group if item.tool_call is not None],
        })
        rendered.extend(
            {
                "role": "tool",
                "tool_call_id": item.tool_call.id if item.tool_call is not None else "",
                "content": item.content,
            }
            for item in group
        )
    return rendered


def _render_call(call: ToolCallRequest) -> dict[str, Any]:
    return {
        "id": call.id,
        "type": "function",
        "function": {"name": call.name, "arguments": json.dumps(dict(call.input), ensure_ascii=False)},
    }


def _merge_tool_call(partial_calls: dict[int, _PartialToolCall], call_delta: Any) -> None:
    index = getattr(call_delta, "index", None)
    if not isinstance(index, int):
        index = len(partial_calls)
    partial = partial_calls.setdefault(index, _PartialToolCall())
    if call_id := getattr(call_delta, "id", None):
        partial.id = call_id
    function = getattr(call_delta, "function", None)
    if function is None:
        return
    if name := getattr(function, "name", None):
        partial.name = name
    if arguments := getattr(function, "arguments", None):
        partial.arguments.append(arguments)


def _usage_of(raw: Any) -> Usage | None:
    if raw is None:
        return None
    prompt_tokens = getattr(raw, "prompt_tokens", None)
    completion_tokens = getattr(raw, "completion_tokens", None)
    if prompt_tokens is None and completion_tokens is None:
        return None
    return Usage(input_tokens=prompt_tokens or 0, output_tokens=completion_tokens or 0)
