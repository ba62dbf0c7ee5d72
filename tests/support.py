from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field

from vibex.generation.base import GenerationConfig, GenerationResult, StreamEvent, TokenCount, estimate_tokens
from vibex.turn.models import Message, ToolCallRequest

type Script = Sequence[StreamEvent | BaseException] | BaseException


@dataclass
class ScriptedGenerator:
    """Replays one script per opened stream. A script may be an exception raised on open."""

    scripts: list[Script]
    gate: asyncio.Event | None = None
    context_limit: int = 100_000
    calls: list[tuple[Message, ...]] = field(default_factory=list)

    async def generate_stream(self, messages: Sequence[Message], config: GenerationConfig) -> AsyncIterator[StreamEvent]:
        self.calls.append(tuple(messages))
        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        for item in script:
            if self.gate is not None:
                await self.gate.wait()
            if isinstance(item, BaseException):
                raise item
            yield item

    async def generate(self, messages: Sequence[Message], config: GenerationConfig) -> GenerationResult:
        return GenerationResult(content="")

    async def count_tokens(self, messages: Sequence[Message]) -> TokenCount:
        return TokenCount(token_count=estimate_tokens(messages), context_limit=self.context_limit)


@dataclass
class RecordingSleep:
    delays: list[float] = field(default_factory=list)

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def text(*chunks: str) -> list[StreamEvent]:
    return [*(StreamEvent.content(chunk) for chunk in chunks), StreamEvent.end()]


def tool_call(call_id: str, name: str, **arguments: object) -> StreamEvent:
    return StreamEvent.call(ToolCallRequest(id=call_id, name=name, input=arguments))


