"""Content generator contract consumed by the turn engine."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from vibex.turn.models import Message, ToolCallRequest, Usage

CHARS_PER_TOKEN = 4
COMPRESSION_THRESHOLD = 0.8


class StreamEventKind(StrEnum):
    CONTENT = "content"
    TOOL_CALL = "tool_call"
    END = "end"


@dataclass(frozen=True)
class StreamEvent:
    """One item of a generation stream."""

    kind: StreamEventKind
    text: str = ""
    tool_call: ToolCallRequest | None = None
    usage: Usage | None = None

    @classmethod
    def content(cls, text: str) -> StreamEvent:
        return cls(StreamEventKind.CONTENT, text=text)

    @classmethod
    def call(cls, request: ToolCallRequest) -> StreamEvent:
        return cls(StreamEventKind.TOOL_CALL, tool_call=request)

    @classmethod
    def end(cls, usage: Usage | None = None) -> StreamEvent:
        return cls(StreamEventKind.END, usage=usage)


@dataclass(frozen=True)
class GenerationConfig:
    """Request settings resolved once per session."""

    model: str
    system_prompt: str = ""
    max_tokens: int = 4096
    temperature: float | None = None
    tools: tuple[dict[str, Any], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class GenerationResult:
    content: str
    usage: Usage | None = None


@dataclass(frozen=True)
class TokenCount:
    token_count: int
    context_limit: int

    @property
    def available_tokens(self) -> int:
        return max(0, self.context_limit - self.token_count)

    @property
    def compression_recommended(self) -> bool:
        return self.token_count > self.context_limit * COMPRESSION_THRESHOLD


@runtime_checkable
class ContentGenerator(Protocol):
    """Abstraction over the model API."""

    def generate_stream(self, messages: Sequence[Message], config: GenerationConfig) -> AsyncIterator[StreamEvent]: ...

    async def generate(self, messages: Sequence[Message], config: GenerationConfig) -> GenerationResult: ...

    async def count_tokens(self, messages: Sequence[Message]) -> TokenCount: ...


def estimate_tokens(messages: Sequence[Message]) -> int:
    """Rough token estimate used when the provider exposes no counter."""
    chars = sum(len(message.content) for message in messages)
    return -(-chars // CHARS_PER_TOKEN)
