"""Turn data model: messages, tool calls and turn events."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from vibex.types import Failure, Outcome, Success


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class TurnStatus(StrEnum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_TOOL = "waiting_for_tool"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (TurnStatus.IN_PROGRESS, TurnStatus.WAITING_FOR_TOOL)


@dataclass(frozen=True)
class ToolCallRequest:
    """A structured request from the model to run a tool."""

    id: str
    name: str
    input: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """The caller's answer to one tool call."""

    tool_call_id: str
    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_outcome(self) -> Outcome:
        if self.error is not None:
            return Failure(error_kind="tool_error", message=self.error)
        return Success(self.result)

    def render(self) -> str:
        if self.error is not None:
            return f"error: {self.error}"
        if isinstance(self.result, str):
            return self.result
        try:
            return json.dumps(self.result, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return repr(self.result)


@dataclass(frozen=True)
class Message:
    """One transcript entry. ``tool`` messages carry the call they answer."""

    role: Role
    content: str
    tool_call: ToolCallRequest | None = None

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(Role.ASSISTANT, content)

    @classmethod
    def tool_result(cls, call: ToolCallRequest, result: ToolResult) -> Message:
        return cls(Role.TOOL, result.render(), tool_call=call)


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(self.input_tokens + other.input_tokens, self.output_tokens + other.output_tokens)


@dataclass(frozen=True)
class TurnResult:
    """Snapshot returned when a turn stops streaming."""

    status: TurnStatus
    content: str
    tool_calls: tuple[ToolCallRequest, ...] = ()
    usage: Usage | None = None


class TurnEventKind(StrEnum):
    START = "start"
    CONTENT = "content"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class TurnEvent:
    kind: TurnEventKind
    text: str = ""
    tool_call: ToolCallRequest | None = None
    tool_result: ToolResult | None = None
    result: TurnResult | None = None
    error: BaseException | None = None
