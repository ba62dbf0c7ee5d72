from __future__ import annotations

import pytest
from pydantic import BaseModel, Field
from republic import tool_from_model
from support import ScriptedGenerator, text, tool_call

from vibex.errors import NetworkError
from vibex.generation.base import GenerationConfig, StreamEvent
from vibex.retry import RetryConfiguration, RetryPolicy
from vibex.tools.registry import ToolDescriptor, ToolRegistry
from vibex.turn.models import Role, TurnStatus
from vibex.turn.session import TurnSession


class AddInput(BaseModel):
    a: int = Field(..., description="Left operand")
    b: int = Field(..., description="Right operand")


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    tool = tool_from_model(AddInput, lambda params: params.a + params.b, name="math.add", description="Add numbers")
    registry.register(ToolDescriptor(name="math.add", short_description="add", detail="add", tool=tool))
    return registry


def _session(generator: ScriptedGenerator, config: GenerationConfig, **kwargs: object) -> TurnSession:
    retry = RetryPolicy(RetryConfiguration(max_attempts=0))
    return TurnSession(generator, config, registry=_registry(), retry_policy=retry, **kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_session_runs_tool_calls_and_returns_final_text(generation_config: GenerationConfig) -> None:
    generator = ScriptedGenerator(
        [
            [tool_call("c1", "math_add", a=1, b=2), StreamEvent.end()],
            text("The sum is 3."),
        ]
    )
    session = _session(generator, generation_config)

    reply = await session.ask("what is 1 + 2?")

    assert reply.error is None
    assert reply.status == TurnStatus.COMPLETED
    assert reply.text == "The sum is 3."
    assert reply.steps == 2
    assert reply.tool_calls == 1
    tool_message = generator.calls[1][-1]
    assert tool_message.role == Role.TOOL
    assert tool_message.content == "3"
    entry = session.manager.tracker.get("c1")
    assert entry is not None and entry.duration is not None


@pytest.mark.asyncio
async def test_session_advertises_registry_tools_to_the_model(generation_config: GenerationConfig) -> None:
    session = _session(ScriptedGenerator([text("hi")]), generation_config)

    schemas = session.manager.config.tools

    assert [schema["function"]["name"] for schema in schemas] == ["math_add"]


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_back_to_the_model(generation_config: GenerationConfig) -> None:
    generator = ScriptedGenerator([[tool_call("c1", "shell_exec", cmd="ls"), StreamEvent.end()], text("sorry")])
    session = _session(generator, generation_config)

    reply = await session.ask("list files")

    assert reply.text == "sorry"
    assert generator.calls[1][-1].content == "error: unknown tool: shell_exec"


@pytest.mark.asyncio
async def test_invalid_tool_input_becomes_tool_error(generation_config: GenerationConfig) -> None:
    generator = ScriptedGenerator([[tool_call("c1", "math_add", a="x"), StreamEvent.end()], text("bad input")])
    session = _session(generator, generation_config)

    reply = await session.ask("add")

    assert reply.status == TurnStatus.COMPLETED
    assert generator.calls[1][-1].content.startswith("error: ")
    assert session.manager.tracker.get("c1").outcome.ok is False  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_tool_round_limit_cancels_the_turn(generation_config: GenerationConfig) -> None:
    generator = ScriptedGenerator(
        [
            [tool_call("c1", "math_add", a=1, b=1), StreamEvent.end()],
            [tool_call("c2", "math_add", a=2, b=2), StreamEvent.end()],
        ]
    )
    session = _session(generator, generation_config, max_tool_rounds=2)

    reply = await session.ask("loop forever")

    assert reply.error == "max_tool_rounds_reached=2"
    assert reply.status == TurnStatus.CANCELLED
    assert reply.steps == 2


@pytest.mark.asyncio
async def test_model_errors_are_reported_in_the_reply(generation_config: GenerationConfig) -> None:
    session = _session(ScriptedGenerator([NetworkError("connection refused")]), generation_config)

    reply = await session.ask("hello")

    assert reply.error == "model_call_error: connection refused"
    assert reply.status == TurnStatus.FAILED


@pytest.mark.asyncio
async def test_max_turns_is_enforced(generation_config: GenerationConfig) -> None:
    session = _session(ScriptedGenerator([text("one")]), generation_config, max_turns=1)

    first = await session.ask("1")
    second = await session.ask("2")

    assert first.text == "one"
    assert second.error == "max_turns_reached=1"
    assert second.steps == 0


@pytest.mark.asyncio
async def test_history_is_truncated_near_the_context_limit(generation_config: GenerationConfig) -> None:
    generator = ScriptedGenerator([text("a" * 40), text("b" * 40)], context_limit=20)
    session = _session(generator, generation_config, keep_messages=2)

    await session.ask("first")
    await session.ask("second")

    assert [m.content for m in session.manager.messages] == ["second", "b" * 40]
    stats = await session.memory_stats()
    assert (stats.token_count, stats.context_limit) == (12, 20)


@pytest.mark.asyncio
async def test_reset_clears_turn_count(generation_config: GenerationConfig) -> None:
    session = _session(ScriptedGenerator([text("one"), text("two")]), generation_config, max_turns=1)

    await session.ask("1")
    session.reset()
    reply = await session.ask("2")

    assert reply.text == "two"
    assert session.turns == 1
